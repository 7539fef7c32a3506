from datetime import timedelta

import pytest
from fastapi import BackgroundTasks
from sqlalchemy import func, select

from orderpay.integrations.errors import PersistenceError, StorageError, TokenCollisionError
from orderpay.integrations.notifications import NotificationDispatcher, NotificationEvent
from orderpay.models.order import Order, PaymentMethod, PaymentStatus
from orderpay.observability import metrics_store
from orderpay.schemas.order import OrderCreate
from orderpay.services.order_store import OrderStore
from orderpay.services.payment_sessions import (
    OrderValidationError,
    PaymentSessionService,
    PlacementStatus,
    ProofFileMeta,
    RejectionReason,
    SessionState,
    proof_extension,
)

PNG = ProofFileMeta(content_type="image/png", filename="receipt.png")
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def service(db_session, proof_store, dispatcher, clock):
    return PaymentSessionService(OrderStore(db_session), proof_store, dispatcher, clock=clock)


def _place_online_order(service, order_payload) -> str:
    placement = service.create_order(OrderCreate.model_validate(order_payload))
    assert placement.status == PlacementStatus.AWAITING_PAYMENT
    return placement.order_token


def test_cash_order_is_placed_immediately_and_notified_once(service, notification_sink):
    draft = OrderCreate.model_validate(
        {
            "name": "A",
            "email": "a@x.com",
            "phone": "1",
            "address": "addr",
            "payment_method": "cash",
        }
    )

    placement = service.create_order(draft)

    assert placement.status == PlacementStatus.PLACED
    assert placement.payment_expires_at is None
    assert len(notification_sink.sent) == 1
    assert notification_sink.sent[0].event == NotificationEvent.ORDER_PLACED
    assert notification_sink.sent[0].payment_method == PaymentMethod.CASH


def test_online_order_awaits_payment_without_notifying(
    service, notification_sink, order_payload, clock
):
    placement = service.create_order(OrderCreate.model_validate(order_payload))

    assert placement.status == PlacementStatus.AWAITING_PAYMENT
    assert placement.payment_expires_at == clock() + timedelta(minutes=5)
    assert notification_sink.sent == []


def test_cash_notification_is_deferred_to_background_tasks(
    service, notification_sink, order_payload
):
    background_tasks = BackgroundTasks()

    service.create_order(
        OrderCreate.model_validate({**order_payload, "payment_method": "cash"}),
        background_tasks=background_tasks,
    )

    assert notification_sink.sent == []
    assert len(background_tasks.tasks) == 1


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"name": "   "}, "name"),
        ({"email": ""}, "email"),
        ({"email": "not-an-address"}, "email"),
        ({"phone": " "}, "phone"),
        ({"address": ""}, "address"),
    ],
)
def test_create_order_rejects_missing_buyer_fields(
    service, db_session, order_payload, overrides, field
):
    with pytest.raises(OrderValidationError) as exc_info:
        service.create_order(OrderCreate.model_validate({**order_payload, **overrides}))

    assert exc_info.value.field == field
    assert db_session.scalar(select(func.count()).select_from(Order)) == 0


def test_token_collision_is_retried_with_a_fresh_token(
    db_session, proof_store, dispatcher, clock, order_payload
):
    tokens = iter(["T" * 24, "T" * 24, "U" * 24])
    service = PaymentSessionService(
        OrderStore(db_session), proof_store, dispatcher, clock=clock, token_factory=lambda: next(tokens)
    )

    first = service.create_order(OrderCreate.model_validate(order_payload))
    second = service.create_order(OrderCreate.model_validate(order_payload))

    assert first.order_token == "T" * 24
    assert second.order_token == "U" * 24
    assert metrics_store.snapshot().counters["order_token_collision_total"] == 1


def test_token_collision_surfaces_after_max_attempts(
    db_session, proof_store, dispatcher, clock, order_payload
):
    service = PaymentSessionService(
        OrderStore(db_session), proof_store, dispatcher, clock=clock, token_factory=lambda: "V" * 24
    )
    service.create_order(OrderCreate.model_validate(order_payload))

    with pytest.raises(TokenCollisionError):
        service.create_order(OrderCreate.model_validate(order_payload))

    assert metrics_store.snapshot().counters["order_token_collision_total"] == 3


def test_many_orders_receive_distinct_tokens(service, order_payload):
    tokens = {_place_online_order(service, order_payload) for _ in range(50)}

    assert len(tokens) == 50


def test_resolve_session_within_window_then_expired(service, order_payload, clock):
    token = _place_online_order(service, order_payload)

    clock.advance(minutes=4)
    view = service.resolve_session(token)

    assert view.state == SessionState.ACTIVE
    assert view.payment_status == PaymentStatus.PENDING
    assert view.seconds_remaining == 60
    assert view.name == order_payload["name"]
    assert view.payment_destination == "03368862917"
    assert view.proof_submitted is False

    clock.advance(minutes=2)
    assert service.resolve_session(token).state == SessionState.EXPIRED


def test_resolve_session_is_expired_after_deadline_even_when_paid(service, order_payload, clock):
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=1)
    assert service.submit_proof(token, PNG_BYTES, PNG).accepted

    paid_view = service.resolve_session(token)
    assert paid_view.payment_status == PaymentStatus.PAID
    assert paid_view.proof_submitted is True

    clock.advance(minutes=5)
    assert service.resolve_session(token).state == SessionState.EXPIRED


@pytest.mark.parametrize("token_input", [None, "", "short", "A" * 24, "a" * 24])
def test_unknown_and_malformed_tokens_resolve_to_the_same_expired_view(service, token_input):
    view = service.resolve_session(token_input)

    assert view.state == SessionState.EXPIRED
    assert view.order_token is None
    assert metrics_store.snapshot().counters["payment_session_expired_total"] == 1


def test_cash_order_has_no_payment_session(service, order_payload):
    placement = service.create_order(
        OrderCreate.model_validate({**order_payload, "payment_method": "cash"})
    )

    assert service.resolve_session(placement.order_token).state == SessionState.EXPIRED
    result = service.submit_proof(placement.order_token, PNG_BYTES, PNG)
    assert result.reason == RejectionReason.EXPIRED


def test_submit_proof_marks_order_paid_and_notifies(
    service, proof_store, notification_sink, order_payload, clock, db_session
):
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=1)

    result = service.submit_proof(token, PNG_BYTES, PNG)

    assert result.accepted is True
    assert result.order_token == token
    assert list(proof_store.objects.values()) == [PNG_BYTES]

    order = OrderStore(db_session).find_by_token(token)
    assert order.payment_status == PaymentStatus.PAID
    assert order.payment_proof_url.startswith("https://blobs.test/payment-proofs/")
    assert order.payment_proof_submitted_at == clock()

    assert [n.event for n in notification_sink.sent] == [NotificationEvent.ORDER_PAID]


def test_repeated_submission_is_accepted_without_second_transition(
    service, proof_store, notification_sink, order_payload, clock, db_session
):
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=1)
    service.submit_proof(token, PNG_BYTES, PNG)
    first_url = OrderStore(db_session).find_by_token(token).payment_proof_url

    clock.advance(seconds=30)
    second = service.submit_proof(token, b"\xff\xd8\xff" + b"\x00" * 10, ProofFileMeta("image/jpeg"))

    assert second.accepted is True
    assert proof_store.calls == 1
    assert len(notification_sink.sent) == 1
    assert OrderStore(db_session).find_by_token(token).payment_proof_url == first_url


def test_interleaved_submissions_transition_exactly_once(
    service, proof_store, notification_sink, dispatcher, order_payload, clock, session_factory
):
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=1)

    other_db = session_factory()
    other_service = PaymentSessionService(
        OrderStore(other_db), proof_store, dispatcher, clock=clock
    )
    results = []
    # the second submission commits while the first one is between its read and its write
    proof_store.before_store = lambda: results.append(
        other_service.submit_proof(token, PNG_BYTES, PNG)
    )
    try:
        results.append(service.submit_proof(token, PNG_BYTES, PNG))
    finally:
        other_db.close()

    assert [result.accepted for result in results] == [True, True]
    assert proof_store.calls == 2
    assert len(notification_sink.sent) == 1
    counters = metrics_store.snapshot().counters
    assert counters["payment_proof_accepted_total"] == 1
    assert counters["payment_proof_replayed_total"] == 1


def test_late_submission_is_rejected_without_storing(
    service, proof_store, notification_sink, order_payload, clock, db_session
):
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=5, seconds=1)

    result = service.submit_proof(token, PNG_BYTES, PNG)

    assert result.accepted is False
    assert result.reason == RejectionReason.EXPIRED
    assert proof_store.calls == 0
    assert notification_sink.sent == []
    assert OrderStore(db_session).find_by_token(token).payment_status == PaymentStatus.PENDING


def test_upload_that_outlasts_the_deadline_is_rejected_as_expired(
    service, proof_store, notification_sink, order_payload, clock, db_session
):
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=4, seconds=59)
    # storage is slow enough that the deadline passes before the write
    proof_store.before_store = lambda: clock.advance(minutes=2)

    result = service.submit_proof(token, PNG_BYTES, PNG)

    assert result.accepted is False
    assert result.reason == RejectionReason.EXPIRED
    assert proof_store.calls == 1
    assert notification_sink.sent == []
    stored = OrderStore(db_session).find_by_token(token)
    assert stored.payment_status == PaymentStatus.PENDING
    assert stored.payment_proof_url is None
    assert metrics_store.snapshot().counters.get("payment_proof_accepted_total", 0) == 0


@pytest.mark.parametrize(
    ("content", "meta"),
    [
        (b"plain text receipt", ProofFileMeta(content_type="text/plain", filename="receipt.txt")),
        (b"%PDF-1.7", ProofFileMeta(content_type="application/pdf", filename="receipt.pdf")),
        (PNG_BYTES, ProofFileMeta(content_type=None, filename="receipt.png")),
        (b"", PNG),
    ],
)
def test_invalid_files_are_rejected_before_storage(
    service, proof_store, order_payload, clock, content, meta
):
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=1)

    result = service.submit_proof(token, content, meta)

    assert result.reason == RejectionReason.INVALID_FILE
    assert proof_store.calls == 0


def test_oversized_file_is_rejected(service, proof_store, order_payload, clock):
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=1)
    oversized = b"\x00" * (service.config.proof_max_bytes + 1)

    result = service.submit_proof(token, oversized, PNG)

    assert result.reason == RejectionReason.INVALID_FILE
    assert result.message == "File size must be less than 5MB"
    assert proof_store.calls == 0


def test_storage_failure_leaves_order_pending_and_is_retryable(
    service, proof_store, notification_sink, order_payload, clock, db_session
):
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=1)
    proof_store.error = StorageError("bucket unavailable", code="UNAVAILABLE")

    failed = service.submit_proof(token, PNG_BYTES, PNG)

    assert failed.reason == RejectionReason.TRANSIENT_ERROR
    assert OrderStore(db_session).find_by_token(token).payment_status == PaymentStatus.PENDING
    assert notification_sink.sent == []

    proof_store.error = None
    clock.advance(seconds=10)
    assert service.submit_proof(token, PNG_BYTES, PNG).accepted is True
    assert len(notification_sink.sent) == 1


def test_order_store_failure_during_lookup_is_transient(
    service, order_payload, clock, monkeypatch
):
    token = _place_online_order(service, order_payload)

    def _unavailable(_token):
        raise PersistenceError("Order store unavailable", code="UNAVAILABLE")

    monkeypatch.setattr(service.store, "find_by_token", _unavailable)

    result = service.submit_proof(token, PNG_BYTES, PNG)

    assert result.reason == RejectionReason.TRANSIENT_ERROR
    with pytest.raises(PersistenceError):
        service.resolve_session(token)


def test_notification_failure_does_not_undo_payment(
    db_session, proof_store, notification_sink, order_payload, clock
):
    notification_sink.error = RuntimeError("mailer down")
    service = PaymentSessionService(
        OrderStore(db_session), proof_store, NotificationDispatcher(notification_sink), clock=clock
    )
    token = _place_online_order(service, order_payload)
    clock.advance(minutes=1)

    result = service.submit_proof(token, PNG_BYTES, PNG)

    assert result.accepted is True
    assert OrderStore(db_session).find_by_token(token).payment_status == PaymentStatus.PAID
    assert metrics_store.snapshot().counters["notification_failed_total"] == 1


@pytest.mark.parametrize(
    ("meta", "expected"),
    [
        (ProofFileMeta("image/png", "Receipt.PNG"), "png"),
        (ProofFileMeta("image/png", "receipt"), "png"),
        (ProofFileMeta("image/jpeg", "photo.JPEG"), "jpeg"),
        (ProofFileMeta("image/x-unknown", "../../etc/passwd"), "bin"),
    ],
)
def test_proof_extension(meta, expected):
    assert proof_extension(meta) == expected


def test_create_order_rejects_unknown_payment_method(service, db_session, order_payload):
    with pytest.raises(OrderValidationError) as exc_info:
        service.create_order(OrderCreate.model_validate({**order_payload, "payment_method": "card"}))

    assert exc_info.value.field == "payment_method"
    assert db_session.scalar(select(func.count()).select_from(Order)) == 0
