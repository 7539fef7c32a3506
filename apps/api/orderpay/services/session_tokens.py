import re
import secrets
import string
from typing import NewType

OrderToken = NewType("OrderToken", str)

ORDER_TOKEN_LENGTH = 24
_TOKEN_ALPHABET = string.ascii_uppercase + string.digits
_TOKEN_PATTERN = re.compile(rf"^[A-Z0-9]{{{ORDER_TOKEN_LENGTH}}}$")


class MalformedTokenError(ValueError):
    """Client input cannot be an order token (wrong length or charset)."""


def issue_order_token() -> OrderToken:
    return OrderToken("".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(ORDER_TOKEN_LENGTH)))


def parse_order_token(raw: str | None) -> OrderToken:
    if raw is None:
        raise MalformedTokenError("Order token is missing")

    candidate = raw.strip()
    if not _TOKEN_PATTERN.fullmatch(candidate):
        raise MalformedTokenError("Order token has an invalid shape")
    return OrderToken(candidate)
