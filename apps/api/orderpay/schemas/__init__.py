from orderpay.schemas.health import HealthResponse, ReadinessDependency, ReadinessResponse
from orderpay.schemas.order import (
    OrderCreate,
    OrderItemCreate,
    OrderPlacementResponse,
    OrderValidationErrorResponse,
)
from orderpay.schemas.payment_session import (
    PaymentDestination,
    ProofRejectionDetail,
    ProofSubmissionResponse,
    SessionViewResponse,
)

__all__ = [
    "HealthResponse",
    "ReadinessDependency",
    "ReadinessResponse",
    "OrderCreate",
    "OrderItemCreate",
    "OrderPlacementResponse",
    "OrderValidationErrorResponse",
    "PaymentDestination",
    "ProofRejectionDetail",
    "ProofSubmissionResponse",
    "SessionViewResponse",
]
