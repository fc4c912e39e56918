import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from .payloads import to_wire

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message: Optional[str] = None


def _response_failure(response: httpx.Response) -> str:
    # Prefer the receiver's own message over the bare status code.
    try:
        body = response.json()
    except ValueError:
        body = {}
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return f"http_{response.status_code}"


class DeliveryClient:
    """Posts notification bodies to the delivery endpoint.

    Never raises for delivery problems: HTTP errors, a body without
    ``success: true``, transport errors and timeouts all come back as a failed
    ``DeliveryResult``. ``noop://`` URLs succeed without any network I/O.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self.timeout_seconds = max(0.2, float(timeout_seconds))
        self._transport = transport

    def send(self, kind, payload: Mapping[str, Any]) -> DeliveryResult:
        body = to_wire(kind, payload)
        if self.url.startswith("noop://"):
            logger.debug("noop delivery of %s to %s", body["type"], body.get("email"))
            return DeliveryResult(True, "noop")
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.post(self.url, json=body)
        except httpx.TimeoutException:
            return DeliveryResult(False, f"timed out after {self.timeout_seconds}s")
        except httpx.HTTPError as e:
            return DeliveryResult(False, f"transport error: {e}")

        if response.status_code >= 400:
            return DeliveryResult(False, _response_failure(response))
        try:
            data = response.json()
        except ValueError:
            return DeliveryResult(False, "invalid response body")
        if not isinstance(data, dict):
            return DeliveryResult(False, "invalid response body")
        if data.get("success") is True:
            return DeliveryResult(True, data.get("message"))
        return DeliveryResult(False, data.get("message") or "Failed to send notification")
