from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Protocol

logger = logging.getLogger(__name__)

EVENTS_ENDPOINT = "/api/events/ingest"
SNAPSHOTS_ENDPOINT = "/api/snapshots/ingest"


class DeliveryError(RuntimeError):
    """Collection endpoint answered with a non-2xx status."""


class Transport(Protocol):
    def send(self, endpoint: str, body: dict[str, Any]) -> bool: ...

    def beacon(self, endpoint: str, body: dict[str, Any]) -> bool: ...


def encode_body(body: dict[str, Any]) -> bytes:
    return json.dumps(body, default=str).encode("utf-8")


class HttpTransport:
    """POSTs JSON batches to the collection endpoint."""

    def __init__(self, base_url: str, timeout: float = 15.0, beacon_timeout: float = 2.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.beacon_timeout = beacon_timeout

    def url_for(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    def send(self, endpoint: str, body: dict[str, Any]) -> bool:
        """Deliver one batch; False on network error or bad status."""
        try:
            self._post(endpoint, body, self.timeout)
            return True
        except (urllib.error.URLError, OSError, DeliveryError) as exc:
            logger.warning("delivery to %s failed: %s", endpoint, exc)
            return False

    def beacon(self, endpoint: str, body: dict[str, Any]) -> bool:
        """Last-chance delivery used during teardown. Never raises."""
        try:
            self._post(endpoint, body, self.beacon_timeout)
            return True
        except (urllib.error.URLError, OSError, DeliveryError, ValueError) as exc:
            logger.warning("beacon to %s failed: %s", endpoint, exc)
            return False

    def _post(self, endpoint: str, body: dict[str, Any], timeout: float) -> None:
        request = urllib.request.Request(
            self.url_for(endpoint),
            data=encode_body(body),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                code = response.getcode()
                if code < 200 or code >= 300:
                    raise DeliveryError(f"delivery failed with status {code}")
        except urllib.error.HTTPError as exc:
            raise DeliveryError(f"delivery failed with status {exc.code}") from exc
