from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Response, status
from sqlalchemy.orm import Session

from orderpay.db.session import get_db
from orderpay.dependencies import get_payment_session_service, rate_limit_order_creation
from orderpay.integrations.errors import IntegrationError
from orderpay.observability import observe_timing
from orderpay.schemas.order import OrderCreate, OrderPlacementResponse, OrderValidationErrorResponse
from orderpay.services.idempotency_service import (
    check_idempotency,
    save_idempotency_result,
    validate_idempotency_key,
)
from orderpay.services.payment_sessions import (
    OrderPlacement,
    OrderValidationError,
    PaymentSessionService,
)

router = APIRouter(prefix="/api/v1/orders", tags=["orders"])

_CREATE_ORDER_ROUTE = "POST:/api/v1/orders"


def translate_integration_error(err: IntegrationError, message: str) -> HTTPException:
    if err.retryable:
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"reason": "transient_error", "code": err.code, "message": message},
        )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"reason": "upstream_error", "code": err.code, "message": message},
    )


def _placement_response(placement: OrderPlacement) -> OrderPlacementResponse:
    return OrderPlacementResponse(
        order_token=placement.order_token,
        payment_method=placement.payment_method,
        status=placement.status.value,
        payment_expires_at=placement.payment_expires_at,
    )


@router.post(
    "",
    response_model=OrderPlacementResponse,
    summary="Place order",
    status_code=status.HTTP_201_CREATED,
    responses={
        422: {"model": OrderValidationErrorResponse, "description": "Invalid buyer details"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Order store unavailable, safe to retry"},
    },
    dependencies=[Depends(rate_limit_order_creation)],
)
def create_order_endpoint(
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    response: Response,
    db: Session = Depends(get_db),
    service: PaymentSessionService = Depends(get_payment_session_service),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> OrderPlacementResponse:
    idempotency_key = validate_idempotency_key(idempotency_key)
    request_payload = payload.model_dump(mode="json")

    if idempotency_key:
        idem = check_idempotency(
            db=db,
            route=_CREATE_ORDER_ROUTE,
            idempotency_key=idempotency_key,
            request_payload=request_payload,
        )
        if idem.replay and idem.response_payload:
            response.status_code = idem.status_code or status.HTTP_201_CREATED
            return OrderPlacementResponse.model_validate(idem.response_payload)

    try:
        with observe_timing("order_create_seconds"):
            placement = service.create_order(payload, background_tasks=background_tasks)
    except OrderValidationError as err:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"field": err.field, "message": err.message},
        ) from err
    except IntegrationError as err:
        raise translate_integration_error(
            err, "Failed to create order. Please try again."
        ) from err

    response_payload = _placement_response(placement).model_dump(mode="json")

    if idempotency_key:
        response_payload = save_idempotency_result(
            db=db,
            route=_CREATE_ORDER_ROUTE,
            idempotency_key=idempotency_key,
            request_payload=request_payload,
            response_payload=response_payload,
            status_code=status.HTTP_201_CREATED,
        )

    return OrderPlacementResponse.model_validate(response_payload)
