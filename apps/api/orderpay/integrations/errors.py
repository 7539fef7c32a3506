from dataclasses import dataclass


@dataclass
class IntegrationError(Exception):
    service: str
    code: str
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.service}:{self.code}:{self.message}"


class IntegrationTimeoutError(IntegrationError):
    def __init__(self, service: str, message: str = "Upstream timeout") -> None:
        super().__init__(service=service, code="TIMEOUT", message=message, retryable=True)


class IntegrationUnavailableError(IntegrationError):
    def __init__(self, service: str, message: str = "Upstream unavailable") -> None:
        super().__init__(service=service, code="UNAVAILABLE", message=message, retryable=True)


class IntegrationBadGatewayError(IntegrationError):
    def __init__(self, service: str, message: str = "Unexpected upstream response") -> None:
        super().__init__(service=service, code="BAD_GATEWAY", message=message, retryable=False)


class StorageError(IntegrationError):
    """The proof store could not persist an upload."""

    def __init__(self, message: str, *, code: str = "STORE_FAILED", retryable: bool = True) -> None:
        super().__init__(service="proof_store", code=code, message=message, retryable=retryable)


class PersistenceError(IntegrationError):
    """The order store rejected a write or could not be reached."""

    def __init__(self, message: str, *, code: str = "WRITE_FAILED", retryable: bool = True) -> None:
        super().__init__(service="order_store", code=code, message=message, retryable=retryable)


class TokenCollisionError(PersistenceError):
    def __init__(self, message: str = "Order token already in use") -> None:
        super().__init__(message, code="TOKEN_COLLISION", retryable=True)
