from orderpay.integrations.errors import (
    IntegrationBadGatewayError,
    IntegrationError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
    PersistenceError,
    StorageError,
    TokenCollisionError,
)

__all__ = [
    "IntegrationError",
    "IntegrationTimeoutError",
    "IntegrationUnavailableError",
    "IntegrationBadGatewayError",
    "PersistenceError",
    "StorageError",
    "TokenCollisionError",
]
