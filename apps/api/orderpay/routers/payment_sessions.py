from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Header,
    HTTPException,
    Query,
    UploadFile,
    status,
)

from orderpay.config import settings
from orderpay.dependencies import get_payment_session_service, rate_limit_payment_session
from orderpay.integrations.errors import IntegrationError
from orderpay.models.order import PaymentStatus
from orderpay.routers.orders import translate_integration_error
from orderpay.schemas.payment_session import (
    PaymentDestination,
    ProofRejectionDetail,
    ProofSubmissionResponse,
    SessionViewResponse,
)
from orderpay.services.payment_sessions import (
    PaymentSessionService,
    ProofFileMeta,
    RejectionReason,
    SessionState,
)

router = APIRouter(
    prefix="/api/v1/payment-sessions",
    tags=["payment-sessions"],
    dependencies=[Depends(rate_limit_payment_session)],
)

SESSION_EXPIRED_DETAIL = "Payment session expired"

_REJECTION_STATUS = {
    RejectionReason.EXPIRED: status.HTTP_404_NOT_FOUND,
    RejectionReason.INVALID_FILE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RejectionReason.TRANSIENT_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def order_token_input(
    ref: str | None = Query(default=None, description="Order token from the payment link"),
    x_order_token: str | None = Header(default=None, description="Order token cached by the client"),
) -> str | None:
    return ref or x_order_token


@router.get(
    "",
    response_model=SessionViewResponse,
    summary="Resolve payment session",
    responses={
        404: {"description": "Session expired, unknown, or malformed token"},
        503: {"description": "Order store unavailable, safe to retry"},
    },
)
def resolve_session_endpoint(
    token_input: str | None = Depends(order_token_input),
    service: PaymentSessionService = Depends(get_payment_session_service),
) -> SessionViewResponse:
    try:
        view = service.resolve_session(token_input)
    except IntegrationError as err:
        raise translate_integration_error(
            err, "Failed to load payment session. Please try again."
        ) from err

    if view.state == SessionState.EXPIRED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=SESSION_EXPIRED_DETAIL)

    return SessionViewResponse(
        order_token=view.order_token,
        name=view.name,
        email=view.email,
        payment_destination=PaymentDestination(
            label=view.payment_destination_label,
            account=view.payment_destination,
        ),
        payment_status=view.payment_status,
        payment_expires_at=view.payment_expires_at,
        seconds_remaining=view.seconds_remaining,
        proof_submitted=view.proof_submitted,
        payment_proof_submitted_at=view.payment_proof_submitted_at,
    )


@router.post(
    "/proof",
    response_model=ProofSubmissionResponse,
    summary="Submit proof of payment",
    responses={
        404: {"model": ProofRejectionDetail, "description": "Session expired"},
        422: {"model": ProofRejectionDetail, "description": "File is not an acceptable image"},
        503: {"model": ProofRejectionDetail, "description": "Upload failed, safe to retry"},
    },
)
def submit_proof_endpoint(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    token_input: str | None = Depends(order_token_input),
    service: PaymentSessionService = Depends(get_payment_session_service),
) -> ProofSubmissionResponse:
    # one byte past the ceiling is enough to reject oversized uploads
    content = file.file.read(settings.proof_max_bytes + 1)

    result = service.submit_proof(
        token_input,
        content,
        ProofFileMeta(content_type=file.content_type, filename=file.filename),
        background_tasks=background_tasks,
    )
    if not result.accepted:
        raise HTTPException(
            status_code=_REJECTION_STATUS[result.reason],
            detail=ProofRejectionDetail(
                reason=result.reason.value,
                message=result.message,
            ).model_dump(),
        )

    return ProofSubmissionResponse(
        order_token=result.order_token,
        payment_status=PaymentStatus.PAID,
    )
