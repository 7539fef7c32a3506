"""Order placement and the time-boxed manual payment session.

Online orders move ``pending -> paid`` exactly once, when a proof of payment
is accepted before the deadline. Expiry is never stored: it is evaluated on
every call against ``payment_expires_at``. Bad tokens, unknown tokens and
lapsed deadlines all produce the same expired outcome for the client.
"""

import enum
import mimetypes
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath

from fastapi import BackgroundTasks

from orderpay.config import MIB, Settings, settings
from orderpay.integrations.errors import IntegrationError, TokenCollisionError
from orderpay.integrations.notifications import (
    NotificationDispatcher,
    NotificationEvent,
    OrderNotification,
)
from orderpay.integrations.proof_store import ProofStoreProtocol
from orderpay.models.order import PaymentMethod, PaymentStatus
from orderpay.observability import log_event, metrics_store, observe_timing
from orderpay.schemas.order import OrderCreate
from orderpay.services.expiry import is_expired, seconds_remaining, utc_now
from orderpay.services.order_store import ApplyOutcome, OrderSnapshot, OrderStore, ProofMutation
from orderpay.services.session_tokens import MalformedTokenError, issue_order_token, parse_order_token

_REQUIRED_BUYER_FIELDS = ("name", "email", "phone", "address")
_EXTENSION_PATTERN = re.compile(r"[a-z0-9]{1,8}")


class OrderValidationError(ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class PlacementStatus(str, enum.Enum):
    PLACED = "placed"
    AWAITING_PAYMENT = "awaiting_payment"


@dataclass(frozen=True)
class OrderPlacement:
    order_token: str
    payment_method: PaymentMethod
    status: PlacementStatus
    payment_expires_at: datetime | None = None


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionView:
    state: SessionState
    order_token: str | None = None
    name: str | None = None
    email: str | None = None
    payment_destination_label: str | None = None
    payment_destination: str | None = None
    payment_status: PaymentStatus | None = None
    payment_expires_at: datetime | None = None
    seconds_remaining: int = 0
    proof_submitted: bool = False
    payment_proof_submitted_at: datetime | None = None


EXPIRED_SESSION = SessionView(state=SessionState.EXPIRED)


@dataclass(frozen=True)
class ProofFileMeta:
    content_type: str | None
    filename: str | None = None


class RejectionReason(str, enum.Enum):
    EXPIRED = "expired"
    INVALID_FILE = "invalid_file"
    TRANSIENT_ERROR = "transient_error"


@dataclass(frozen=True)
class ProofSubmissionResult:
    accepted: bool
    order_token: str | None = None
    reason: RejectionReason | None = None
    message: str | None = None

    @classmethod
    def accept(cls, order_token: str) -> "ProofSubmissionResult":
        return cls(accepted=True, order_token=order_token)

    @classmethod
    def reject(cls, reason: RejectionReason, message: str) -> "ProofSubmissionResult":
        return cls(accepted=False, reason=reason, message=message)


_EXPIRED_REJECTION = ProofSubmissionResult.reject(
    RejectionReason.EXPIRED, "Your payment session has expired. Please reorder to continue."
)
_TRANSIENT_REJECTION = ProofSubmissionResult.reject(
    RejectionReason.TRANSIENT_ERROR, "Failed to upload payment proof. Please try again."
)


def proof_extension(meta: ProofFileMeta) -> str:
    suffix = PurePosixPath(meta.filename or "").suffix.lstrip(".").lower()
    if _EXTENSION_PATTERN.fullmatch(suffix):
        return suffix
    guessed = (mimetypes.guess_extension(meta.content_type or "") or "").lstrip(".")
    if _EXTENSION_PATTERN.fullmatch(guessed):
        return guessed
    return "bin"


class PaymentSessionService:
    def __init__(
        self,
        store: OrderStore,
        proof_store: ProofStoreProtocol,
        dispatcher: NotificationDispatcher,
        *,
        config: Settings = settings,
        clock: Callable[[], datetime] = utc_now,
        token_factory: Callable[[], str] = issue_order_token,
    ) -> None:
        self.store = store
        self.proof_store = proof_store
        self.dispatcher = dispatcher
        self.config = config
        self.clock = clock
        self.token_factory = token_factory

    def create_order(
        self,
        draft: OrderCreate,
        *,
        background_tasks: BackgroundTasks | None = None,
    ) -> OrderPlacement:
        payment_method = self._validate_draft(draft)

        max_attempts = self.config.token_issue_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                order = self.store.create(
                    draft,
                    order_token=self.token_factory(),
                    now=self.clock(),
                    grace_period_s=self.config.payment_grace_period_s,
                )
                break
            except TokenCollisionError:
                metrics_store.increment("order_token_collision_total")
                log_event("order_token_collision", reason=f"attempt={attempt}")
                if attempt >= max_attempts:
                    raise

        metrics_store.increment("orders_created_total")
        log_event(
            "order_created",
            order_id=str(order.id),
            order_token=order.order_token,
            reason=payment_method.value,
        )

        if payment_method == PaymentMethod.CASH:
            self._notify(order, NotificationEvent.ORDER_PLACED, background_tasks)
            return OrderPlacement(
                order_token=order.order_token,
                payment_method=payment_method,
                status=PlacementStatus.PLACED,
            )

        return OrderPlacement(
            order_token=order.order_token,
            payment_method=payment_method,
            status=PlacementStatus.AWAITING_PAYMENT,
            payment_expires_at=order.payment_expires_at,
        )

    def resolve_session(self, token_input: str | None) -> SessionView:
        opened = self._open_session(token_input)
        if opened is None:
            return EXPIRED_SESSION

        order, now = opened
        return SessionView(
            state=SessionState.ACTIVE,
            order_token=order.order_token,
            name=order.name,
            email=order.email,
            payment_destination_label=self.config.payment_destination_label,
            payment_destination=self.config.payment_destination,
            payment_status=order.payment_status,
            payment_expires_at=order.payment_expires_at,
            seconds_remaining=seconds_remaining(order.payment_expires_at, now),
            proof_submitted=order.proof_submitted,
            payment_proof_submitted_at=order.payment_proof_submitted_at,
        )

    def submit_proof(
        self,
        token_input: str | None,
        content: bytes,
        meta: ProofFileMeta,
        *,
        background_tasks: BackgroundTasks | None = None,
    ) -> ProofSubmissionResult:
        try:
            opened = self._open_session(token_input)
        except IntegrationError as err:
            return self._transient(err, order_id=None)
        if opened is None:
            metrics_store.increment("payment_proof_rejected_total")
            return _EXPIRED_REJECTION

        order, now = opened
        problem = self._file_problem(content, meta)
        if problem is not None:
            metrics_store.increment("payment_proof_invalid_file_total")
            log_event("payment_proof_invalid_file", order_id=str(order.id), reason=problem)
            return ProofSubmissionResult.reject(RejectionReason.INVALID_FILE, problem)

        if order.proof_submitted:
            metrics_store.increment("payment_proof_replayed_total")
            return ProofSubmissionResult.accept(order.order_token)

        try:
            with observe_timing("payment_proof_store_seconds"):
                proof_url = self.proof_store.store(
                    order.order_token,
                    content,
                    proof_extension(meta),
                    content_type=meta.content_type or "application/octet-stream",
                    submitted_at=now,
                )
            outcome = self.store.apply_if_pending(
                order.id,
                ProofMutation(payment_proof_url=proof_url, payment_proof_submitted_at=now),
                now=self.clock(),
            )
        except IntegrationError as err:
            return self._transient(err, order_id=str(order.id))

        if outcome == ApplyOutcome.DEADLINE_PASSED:
            # the upload outlasted the deadline; the stored object stays orphaned
            self._session_closed("deadline_passed_during_upload", order_token=order.order_token)

        if outcome in (ApplyOutcome.NOT_FOUND, ApplyOutcome.DEADLINE_PASSED):
            metrics_store.increment("payment_proof_rejected_total")
            return _EXPIRED_REJECTION

        if outcome == ApplyOutcome.ALREADY_APPLIED:
            # the upload above is redundant and stays orphaned in storage
            metrics_store.increment("payment_proof_replayed_total")
            log_event("payment_proof_already_applied", order_id=str(order.id))
            return ProofSubmissionResult.accept(order.order_token)

        metrics_store.increment("payment_proof_accepted_total")
        log_event("payment_proof_accepted", order_id=str(order.id), order_token=order.order_token)
        self._notify(order, NotificationEvent.ORDER_PAID, background_tasks)
        return ProofSubmissionResult.accept(order.order_token)

    def _open_session(self, token_input: str | None) -> tuple[OrderSnapshot, datetime] | None:
        try:
            order_token = parse_order_token(token_input)
        except MalformedTokenError:
            self._session_closed("malformed_token")
            return None

        order = self.store.find_by_token(order_token)
        if order is None:
            self._session_closed("not_found", order_token=order_token)
            return None
        if order.payment_method != PaymentMethod.ONLINE:
            self._session_closed("no_payment_session", order_token=order_token)
            return None

        now = self.clock()
        if is_expired(order.payment_expires_at, now):
            self._session_closed("deadline_passed", order_token=order_token)
            return None
        return order, now

    def _session_closed(self, reason: str, *, order_token: str | None = None) -> None:
        metrics_store.increment("payment_session_expired_total")
        log_event("payment_session_unavailable", order_token=order_token, reason=reason)

    def _validate_draft(self, draft: OrderCreate) -> PaymentMethod:
        for field in _REQUIRED_BUYER_FIELDS:
            value = getattr(draft, field, None)
            if not isinstance(value, str) or not value.strip():
                raise OrderValidationError(field, f"{field} is required")
        if "@" not in draft.email:
            raise OrderValidationError("email", "email must be a valid address")

        try:
            return PaymentMethod(draft.payment_method)
        except ValueError as err:
            allowed = ", ".join(method.value for method in PaymentMethod)
            raise OrderValidationError(
                "payment_method", f"payment_method must be one of: {allowed}"
            ) from err

    def _file_problem(self, content: bytes, meta: ProofFileMeta) -> str | None:
        if not (meta.content_type or "").lower().startswith("image/"):
            return "Please select an image file"
        if not content:
            return "Uploaded file is empty"
        if len(content) > self.config.proof_max_bytes:
            return f"File size must be less than {self.config.proof_max_bytes // MIB}MB"
        return None

    def _transient(self, err: IntegrationError, *, order_id: str | None) -> ProofSubmissionResult:
        metrics_store.increment("payment_proof_transient_error_total")
        log_event("payment_proof_transient_error", order_id=order_id, reason=str(err))
        return _TRANSIENT_REJECTION

    def _notify(
        self,
        order: OrderSnapshot,
        event: NotificationEvent,
        background_tasks: BackgroundTasks | None,
    ) -> None:
        notification = OrderNotification(
            event=event,
            order_id=str(order.id),
            order_token=order.order_token,
            name=order.name,
            email=order.email,
            payment_method=order.payment_method,
        )
        if background_tasks is not None:
            background_tasks.add_task(self.dispatcher.dispatch, notification)
        else:
            self.dispatcher.dispatch(notification)
