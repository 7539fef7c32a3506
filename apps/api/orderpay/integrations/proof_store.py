import time
from datetime import datetime
from pathlib import Path
from typing import Protocol

import httpx

from orderpay.config import settings
from orderpay.integrations.errors import StorageError
from orderpay.services.expiry import as_utc

PROOF_KEY_PREFIX = "payment-proofs"


def build_proof_key(order_token: str, submitted_at: datetime, extension: str) -> str:
    millis = int(as_utc(submitted_at).timestamp() * 1000)
    return f"{PROOF_KEY_PREFIX}/{order_token}_{millis}.{extension}"


class ProofStoreProtocol(Protocol):
    def store(
        self,
        order_token: str,
        content: bytes,
        extension: str,
        *,
        content_type: str,
        submitted_at: datetime,
    ) -> str: ...


class LocalProofStore:
    """Write proofs under a directory that the API serves back statically."""

    def __init__(self, root_dir: str | Path, public_base_url: str) -> None:
        self.root_dir = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def path_for(self, key: str) -> Path:
        return self.root_dir / key

    def store(
        self,
        order_token: str,
        content: bytes,
        extension: str,
        *,
        content_type: str,
        submitted_at: datetime,
    ) -> str:
        key = build_proof_key(order_token, submitted_at, extension)
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # append-only: an existing key is never overwritten
            with path.open("xb") as handle:
                handle.write(content)
        except FileExistsError as err:
            raise StorageError("Proof object already exists", code="CONFLICT") from err
        except OSError as err:
            raise StorageError(f"Proof could not be written: {err.strerror}") from err
        return f"{self.public_base_url}/{key}"


class HttpBlobProofStore:
    """Upload proofs to an external blob service that exposes public URLs."""

    def __init__(
        self,
        base_url: str,
        public_base_url: str,
        *,
        auth_token: str,
        timeout_s: float,
        max_retries: int,
        backoff_s: float,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.public_base_url = (public_base_url or base_url).rstrip("/")
        self.auth_token = auth_token
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def _headers(self, content_type: str) -> dict[str, str]:
        headers = {
            "Content-Type": content_type,
            "Cache-Control": "max-age=3600",
            "x-upsert": "false",
        }
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def store(
        self,
        order_token: str,
        content: bytes,
        extension: str,
        *,
        content_type: str,
        submitted_at: datetime,
    ) -> str:
        if not self.base_url:
            raise StorageError(
                "Blob service URL is not configured", code="UNCONFIGURED", retryable=False
            )

        key = build_proof_key(order_token, submitted_at, extension)
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                with httpx.Client(timeout=self.timeout_s) as client:
                    response = client.put(
                        f"{self.base_url}/{key}",
                        content=content,
                        headers=self._headers(content_type),
                    )

                if response.status_code >= 500:
                    raise StorageError("Blob service returned 5xx", code="UNAVAILABLE")
                if response.status_code == 409:
                    raise StorageError("Proof object already exists", code="CONFLICT")
                if response.status_code >= 400:
                    raise StorageError(
                        f"Blob service returned {response.status_code}",
                        code="BAD_GATEWAY",
                        retryable=False,
                    )
                return f"{self.public_base_url}/{key}"
            except httpx.TimeoutException:
                storage_error = StorageError("Blob service timeout", code="TIMEOUT")
            except httpx.TransportError as err:
                storage_error = StorageError(str(err), code="UNAVAILABLE")
            except StorageError as err:
                if err.code != "UNAVAILABLE":
                    raise
                storage_error = err

            if attempt >= self.max_retries:
                raise storage_error
            time.sleep(self.backoff_s * (2**attempt))

        raise StorageError("Blob upload retry loop exhausted")


def get_proof_store() -> ProofStoreProtocol:
    if settings.proof_storage_backend == "http":
        return HttpBlobProofStore(
            settings.blob_service_url,
            settings.blob_public_base_url,
            auth_token=settings.blob_service_token,
            timeout_s=settings.blob_service_timeout_s,
            max_retries=settings.blob_service_max_retries,
            backoff_s=settings.blob_service_backoff_s,
        )
    return LocalProofStore(settings.proof_storage_dir, settings.proof_public_base_url)
