# Import SQLAlchemy models so they register on Base.metadata
from orderpay.models.idempotency_record import IdempotencyRecord  # noqa: F401
from orderpay.models.order import Order, PaymentMethod, PaymentStatus  # noqa: F401
from orderpay.models.order_item import OrderItem  # noqa: F401
