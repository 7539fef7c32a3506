import enum
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from orderpay.integrations.errors import PersistenceError, TokenCollisionError
from orderpay.models.order import Order, PaymentMethod, PaymentStatus
from orderpay.models.order_item import OrderItem
from orderpay.schemas.order import OrderCreate
from orderpay.services.expiry import as_utc, payment_deadline


@dataclass(frozen=True)
class OrderSnapshot:
    id: uuid.UUID
    order_token: str
    name: str
    email: str
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    payment_expires_at: datetime
    payment_proof_url: str | None
    payment_proof_submitted_at: datetime | None

    @property
    def proof_submitted(self) -> bool:
        return self.payment_proof_url is not None


@dataclass(frozen=True)
class ProofMutation:
    payment_proof_url: str
    payment_proof_submitted_at: datetime

    def as_values(self) -> dict:
        return {
            "payment_status": PaymentStatus.PAID,
            "payment_proof_url": self.payment_proof_url,
            "payment_proof_submitted_at": self.payment_proof_submitted_at,
            "updated_at": self.payment_proof_submitted_at,
        }


class ApplyOutcome(str, enum.Enum):
    UPDATED = "updated"
    ALREADY_APPLIED = "already_applied"
    DEADLINE_PASSED = "deadline_passed"
    NOT_FOUND = "not_found"


_SNAPSHOT_COLUMNS = (
    Order.id,
    Order.order_token,
    Order.name,
    Order.email,
    Order.payment_method,
    Order.payment_status,
    Order.payment_expires_at,
    Order.payment_proof_url,
    Order.payment_proof_submitted_at,
)


def _snapshot_from_mapping(values) -> OrderSnapshot:
    submitted_at = values["payment_proof_submitted_at"]
    return OrderSnapshot(
        id=values["id"],
        order_token=values["order_token"],
        name=values["name"],
        email=values["email"],
        payment_method=values["payment_method"],
        payment_status=values["payment_status"],
        payment_expires_at=as_utc(values["payment_expires_at"]),
        payment_proof_url=values["payment_proof_url"],
        payment_proof_submitted_at=as_utc(submitted_at) if submitted_at else None,
    )


class OrderStore:
    """All persistence access for orders.

    Orders are only ever looked up by their public token. The single
    mutation path, ``apply_if_pending``, is a conditional write so that
    concurrent proof submissions cannot both transition the same order.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def create(
        self,
        draft: OrderCreate,
        *,
        order_token: str,
        now: datetime,
        grace_period_s: int,
    ) -> OrderSnapshot:
        order = Order(
            order_token=order_token,
            name=draft.name,
            email=draft.email,
            phone=draft.phone,
            address=draft.address,
            payment_method=PaymentMethod(draft.payment_method),
            payment_status=PaymentStatus.PENDING,
            payment_expires_at=payment_deadline(now, grace_period_s),
            created_at=now,
            updated_at=now,
        )
        try:
            self.db.add(order)
            self.db.flush()
            for position, item in enumerate(draft.items):
                self.db.add(
                    OrderItem(
                        order_id=order.id,
                        position=position,
                        product_name=item.product_name,
                        price=item.price,
                        quantity=item.quantity,
                    )
                )
            snapshot = _snapshot_from_mapping(
                {column.key: getattr(order, column.key) for column in _SNAPSHOT_COLUMNS}
            )
            self.db.commit()
        except IntegrityError as err:
            self.db.rollback()
            try:
                collided = self._token_exists(order_token)
            except SQLAlchemyError as lookup_err:
                self.db.rollback()
                raise PersistenceError(
                    "Order store unavailable", code="UNAVAILABLE"
                ) from lookup_err
            if collided:
                raise TokenCollisionError() from err
            raise PersistenceError("Order could not be created") from err
        except SQLAlchemyError as err:
            self.db.rollback()
            raise PersistenceError("Order store unavailable", code="UNAVAILABLE") from err
        return snapshot

    def find_by_token(self, order_token: str) -> OrderSnapshot | None:
        try:
            row = self.db.execute(
                select(*_SNAPSHOT_COLUMNS).where(Order.order_token == order_token)
            ).one_or_none()
        except SQLAlchemyError as err:
            self.db.rollback()
            raise PersistenceError("Order store unavailable", code="UNAVAILABLE") from err
        if row is None:
            return None
        return _snapshot_from_mapping(row._mapping)

    def apply_if_pending(
        self, order_id: uuid.UUID, mutation: ProofMutation, *, now: datetime
    ) -> ApplyOutcome:
        """Mark the order paid if it is still pending and ``now`` is within its deadline."""
        statement = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status == PaymentStatus.PENDING,
                Order.payment_proof_url.is_(None),
                Order.payment_expires_at >= now,
            )
            .values(**mutation.as_values())
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(statement)
            self.db.commit()
            if result.rowcount == 1:
                return ApplyOutcome.UPDATED
            current = self.db.execute(
                select(Order.payment_status, Order.payment_proof_url).where(Order.id == order_id)
            ).one_or_none()
        except SQLAlchemyError as err:
            self.db.rollback()
            raise PersistenceError("Order store unavailable", code="UNAVAILABLE") from err
        if current is None:
            return ApplyOutcome.NOT_FOUND
        if current.payment_status == PaymentStatus.PENDING and current.payment_proof_url is None:
            return ApplyOutcome.DEADLINE_PASSED
        return ApplyOutcome.ALREADY_APPLIED

    def list_items(self, order_id: uuid.UUID) -> list[OrderItem]:
        return list(
            self.db.scalars(
                select(OrderItem)
                .where(OrderItem.order_id == order_id)
                .order_by(OrderItem.position.asc())
            )
        )

    def _token_exists(self, order_token: str) -> bool:
        return self.db.scalar(select(Order.id).where(Order.order_token == order_token)) is not None
