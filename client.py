"""
Small HTTP client for the customer side of the ordering API.

Requests carry a bounded timeout. Reads are retried on transport errors;
writes are only retried when the connection never got established, so a
request that may have reached the server is never sent twice. Error
responses come back as the same ``OrderingError`` subclasses the server
raised.
"""

import logging
import time
from typing import Dict, Optional, Type

import httpx

from errors import (
    NotAuthenticated,
    NotAuthorized,
    NotFound,
    OrderingError,
    PreconditionFailed,
    RateLimited,
    TransientIOError,
    ValidationFailed,
)
from payments import StagedProof, StagedProofCache

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
MAX_RETRIES = 2
RETRY_BACKOFF = 0.5

ERRORS_BY_STATUS: Dict[int, Type[OrderingError]] = {
    400: ValidationFailed,
    401: NotAuthenticated,
    403: NotAuthorized,
    404: NotFound,
    409: PreconditionFailed,
    429: RateLimited,
    503: TransientIOError,
}


class OrderingClient:
    def __init__(self, base_url: str = "", http: Optional[httpx.Client] = None, timeout: float = DEFAULT_TIMEOUT, retries: int = MAX_RETRIES):
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.retries = retries

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        safe = method.upper() == "GET"
        attempt = 0
        while True:
            try:
                response = self.http.request(method, path, **kwargs)
                break
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                error = e
            except httpx.TransportError as e:
                if not safe:
                    raise TransientIOError(f"Network error: {e}")
                error = e
            attempt += 1
            if attempt > self.retries:
                raise TransientIOError(f"Network error after {attempt} attempts: {error}")
            logger.warning(f"{method} {path} failed ({error}); retrying ({attempt}/{self.retries})")
            time.sleep(RETRY_BACKOFF * attempt)

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ERRORS_BY_STATUS.get(response.status_code, OrderingError)(str(detail))
        return response

    def login(self, email: str, password: str) -> dict:
        return self._request("POST", "/api/auth/login", json={"email": email, "password": password}).json()

    def create_order(self, draft: dict) -> str:
        return self._request("POST", "/api/orders", json=draft).json()["order_id"]

    def get_order(self, order_id: str) -> dict:
        return self._request("GET", f"/api/orders/{order_id}").json()

    def cancel_order(self, order_id: str) -> dict:
        return self._request("POST", f"/api/orders/{order_id}/cancel").json()

    def send_message(self, order_id: str, message: str, kind: str = "text") -> dict:
        return self._request("POST", f"/api/orders/{order_id}/messages", json={"message": message, "kind": kind}).json()

    def upload_file(self, data: bytes, content_type: str) -> str:
        response = self._request("POST", "/api/storage/upload", content=data, headers={"Content-Type": content_type})
        return response.json()["storage_id"]

    def submit_remaining_proof(self, order_id: str, storage_id: str) -> dict:
        return self._request(
            "PATCH", f"/api/orders/{order_id}", json={"remaining_payment_proof_url": storage_id}
        ).json()

    def confirm_staged_proof(self, cache: StagedProofCache, order_id: str) -> str:
        """Upload the staged remaining-balance proof and attach it to the order."""
        def push(staged: StagedProof) -> str:
            storage_id = self.upload_file(staged.data, staged.content_type)
            return self.submit_remaining_proof(order_id, storage_id)["remaining_payment_proof_url"]

        return cache.confirm(order_id, push)
