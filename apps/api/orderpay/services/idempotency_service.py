import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderpay.config import settings
from orderpay.models.idempotency_record import IdempotencyRecord
from orderpay.observability import metrics_store

IDEMPOTENCY_KEY_MAX_LENGTH = 255


@dataclass
class IdempotencyResult:
    replay: bool
    response_payload: dict[str, Any] | None = None
    status_code: int | None = None


def validate_idempotency_key(idempotency_key: str | None) -> str | None:
    if idempotency_key is None:
        return None

    normalized_key = idempotency_key.strip()
    if not normalized_key or len(normalized_key) > IDEMPOTENCY_KEY_MAX_LENGTH:
        metrics_store.increment("idempotency_invalid_key_total")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Idempotency-Key must be 1-{IDEMPOTENCY_KEY_MAX_LENGTH} characters",
        )
    return normalized_key


def _payload_conflict() -> HTTPException:
    metrics_store.increment("idempotency_conflict_total")
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="Idempotency key reused with different payload",
    )


def _hash_payload(payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _find_record(db: Session, route: str, idempotency_key: str) -> IdempotencyRecord | None:
    return db.scalar(
        select(IdempotencyRecord).where(
            IdempotencyRecord.route == route,
            IdempotencyRecord.idempotency_key == idempotency_key,
        )
    )


def _purge_expired_records(db: Session, now: datetime) -> int:
    result = db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= now))
    return int(result.rowcount or 0)


def check_idempotency(
    *,
    db: Session,
    route: str,
    idempotency_key: str,
    request_payload: Any,
) -> IdempotencyResult:
    now = datetime.now(timezone.utc)
    purged = _purge_expired_records(db, now)
    if purged:
        db.commit()
        metrics_store.increment("idempotency_purged_total", purged)

    record = _find_record(db, route, idempotency_key)
    if record is None:
        return IdempotencyResult(replay=False)
    if record.request_hash != _hash_payload(request_payload):
        raise _payload_conflict()

    metrics_store.increment("idempotency_replay_total")
    return IdempotencyResult(
        replay=True,
        response_payload=record.response_payload,
        status_code=record.response_status_code,
    )


def save_idempotency_result(
    *,
    db: Session,
    route: str,
    idempotency_key: str,
    request_payload: Any,
    response_payload: dict[str, Any],
    status_code: int = 200,
) -> dict[str, Any]:
    """Persist the first response for a key and return whichever response won.

    Two concurrent requests with the same key can both miss the replay check;
    the unique constraint decides which response is kept and the loser
    returns the stored one so both callers see the same order token.
    """
    payload_hash = _hash_payload(request_payload)
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.idempotency_ttl_s)

    existing = _find_record(db, route, idempotency_key)
    if existing is not None:
        if existing.request_hash != payload_hash:
            raise _payload_conflict()
        return existing.response_payload

    db.add(
        IdempotencyRecord(
            route=route,
            idempotency_key=idempotency_key,
            request_hash=payload_hash,
            response_status_code=status_code,
            response_payload=response_payload,
            expires_at=expires_at,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_record(db, route, idempotency_key)
        if existing is None:
            raise
        if existing.request_hash != payload_hash:
            raise _payload_conflict()
        return existing.response_payload

    metrics_store.increment("idempotency_store_total")
    return response_payload
