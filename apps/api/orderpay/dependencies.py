from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from orderpay.config import settings
from orderpay.db.session import get_db
from orderpay.integrations.notifications import NotificationDispatcher, get_notification_dispatcher
from orderpay.integrations.proof_store import ProofStoreProtocol, get_proof_store
from orderpay.observability import metrics_store
from orderpay.services.order_store import OrderStore
from orderpay.services.payment_sessions import PaymentSessionService
from orderpay.services.rate_limiter import rate_limiter


def get_payment_session_service(
    db: Session = Depends(get_db),
    proof_store: ProofStoreProtocol = Depends(get_proof_store),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> PaymentSessionService:
    return PaymentSessionService(OrderStore(db), proof_store, dispatcher)


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _enforce_rate_limit(request: Request, scope: str, *, max_requests: int, window_s: int) -> None:
    result = rate_limiter.check(
        f"{scope}:{_client_key(request)}",
        max_requests=max_requests,
        window_s=window_s,
    )
    if not result.allowed:
        metrics_store.increment(f"{scope}_rate_limited_total")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(result.reset_after_s)},
        )


def rate_limit_order_creation(request: Request) -> None:
    _enforce_rate_limit(
        request,
        "order_create",
        max_requests=settings.order_create_rate_limit_requests,
        window_s=settings.order_create_rate_limit_window_s,
    )


def rate_limit_payment_session(request: Request) -> None:
    _enforce_rate_limit(
        request,
        "payment_session",
        max_requests=settings.payment_session_rate_limit_requests,
        window_s=settings.payment_session_rate_limit_window_s,
    )


def reset_rate_limits() -> None:
    rate_limiter.reset()
