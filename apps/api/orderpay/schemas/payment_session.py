from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict

from orderpay.models.order import PaymentStatus


class PaymentDestination(BaseModel):
    label: str
    account: str


class SessionViewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    state: Literal["active"] = "active"
    order_token: str
    name: str
    email: str
    payment_destination: PaymentDestination
    payment_status: PaymentStatus
    payment_expires_at: datetime
    seconds_remaining: int
    proof_submitted: bool
    payment_proof_submitted_at: datetime | None = None


class ProofSubmissionResponse(BaseModel):
    status: Literal["accepted"] = "accepted"
    order_token: str
    payment_status: PaymentStatus


class ProofRejectionDetail(BaseModel):
    reason: Literal["expired", "invalid_file", "transient_error"]
    message: str
