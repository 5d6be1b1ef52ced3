"""Message transport between the Queue Dispatcher and the Worker Pool.

The transport is only a wake-up signal carrying a job id. It may deliver a
message more than once; the ledger's conditional claim is what deduplicates.
"""

from __future__ import annotations

import itertools
import json
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from replicator.errors import TransportError

logger = structlog.get_logger()


@dataclass
class Message:
    """A delivered message. ``receipt`` identifies this delivery for ack/nack."""

    id: str
    body: dict[str, Any]
    attempts: int = 1
    receipt: str = field(default_factory=lambda: uuid.uuid4().hex)


class MessageTransport(ABC):
    """Abstract at-least-once message channel."""

    @abstractmethod
    def enqueue(self, body: dict[str, Any]) -> str:
        """Publish a message. Returns its id."""
        ...

    @abstractmethod
    def dequeue(self, timeout: float = 0.0) -> Message | None:
        """Receive one message, waiting up to ``timeout`` seconds."""
        ...

    @abstractmethod
    def ack(self, message: Message) -> None:
        """Mark a delivery as handled."""
        ...

    @abstractmethod
    def nack(self, message: Message, delay: float = 0.0) -> None:
        """Return a delivery to the queue for redelivery after ``delay``."""
        ...

    def close(self) -> None:
        """Release resources and wake any blocked receivers."""


# ── In-memory ────────────────────────────────────────────


class InMemoryTransport(MessageTransport):
    """Process-local transport with visibility timeout semantics.

    ``duplicate_deliveries`` publishes every message that many extra times,
    which simulates an at-least-once broker.
    """

    def __init__(
        self, visibility_timeout: float = 30.0, duplicate_deliveries: int = 0
    ) -> None:
        self.visibility_timeout = visibility_timeout
        self.duplicate_deliveries = duplicate_deliveries
        self._cond = threading.Condition()
        self._ready: deque[tuple[float, Message]] = deque()
        self._in_flight: dict[str, tuple[float, Message]] = {}
        self._ids = itertools.count(1)
        self._closed = False

    def enqueue(self, body: dict[str, Any]) -> str:
        with self._cond:
            if self._closed:
                raise TransportError("Transport is closed")
            message_id = f"msg-{next(self._ids)}"
            for _ in range(1 + self.duplicate_deliveries):
                self._ready.append((0.0, Message(id=message_id, body=dict(body), attempts=0)))
            self._cond.notify_all()
        return message_id

    def dequeue(self, timeout: float = 0.0) -> Message | None:
        deadline = time.monotonic() + timeout
        with self._cond:
            while not self._closed:
                now = time.monotonic()
                self._expire_leases(now)
                for index, (available_at, message) in enumerate(self._ready):
                    if available_at <= now:
                        del self._ready[index]
                        delivery = Message(
                            id=message.id, body=message.body, attempts=message.attempts + 1
                        )
                        self._in_flight[delivery.receipt] = (
                            now + self.visibility_timeout,
                            delivery,
                        )
                        return delivery
                remaining = deadline - now
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, 0.05))
            return None

    def _expire_leases(self, now: float) -> None:
        expired = [r for r, (until, _) in self._in_flight.items() if until <= now]
        for receipt in expired:
            _, message = self._in_flight.pop(receipt)
            self._ready.append((now, message))

    def ack(self, message: Message) -> None:
        with self._cond:
            self._in_flight.pop(message.receipt, None)

    def nack(self, message: Message, delay: float = 0.0) -> None:
        with self._cond:
            if self._in_flight.pop(message.receipt, None) is None:
                return
            self._ready.append((time.monotonic() + delay, message))
            self._cond.notify_all()

    def pending(self) -> int:
        with self._cond:
            return len(self._ready)

    def in_flight(self) -> int:
        with self._cond:
            return len(self._in_flight)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


# ── Cloudflare Queues (HTTP pull consumer) ───────────────

CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"


class CloudflareQueueTransport(MessageTransport):
    """Cloudflare Queues over the REST API.

    Uses the HTTP pull consumer: messages are leased with a visibility
    timeout and acknowledged or retried by ``lease_id``.
    """

    def __init__(
        self,
        account_id: str,
        queue_id: str,
        api_token: str,
        visibility_timeout: float = 30.0,
        batch_size: int = 5,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not (account_id and queue_id and api_token):
            raise TransportError("Cloudflare queue transport is not configured")
        self.visibility_timeout = visibility_timeout
        self.batch_size = batch_size
        self._path = f"/accounts/{account_id}/queues/{queue_id}/messages"
        self._client = httpx.Client(
            base_url=CLOUDFLARE_API,
            headers={"Authorization": f"Bearer {api_token}"},
            timeout=15.0,
            transport=http_transport,
        )
        self._buffer: deque[Message] = deque()
        self._lock = threading.Lock()
        # One slot pulls at a time; the HTTP call runs outside the lock
        self._pulling = False

    def _post(self, suffix: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = self._client.post(self._path + suffix, json=payload)
            resp.raise_for_status()
            data: dict[str, Any] = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("cloudflare_queue_error", endpoint=suffix or "send", error=str(e))
            raise TransportError(f"Cloudflare queue request failed: {e}") from e
        if not data.get("success", False):
            raise TransportError(f"Cloudflare queue rejected request: {data.get('errors')}")
        return data

    def enqueue(self, body: dict[str, Any]) -> str:
        self._post("", {"body": body, "content_type": "json"})
        return str(body.get("job_id", ""))

    def dequeue(self, timeout: float = 0.0) -> Message | None:
        with self._lock:
            if self._buffer:
                return self._buffer.popleft()
            pulling, self._pulling = self._pulling, True
        if not pulling:
            try:
                messages = self._pull()
            finally:
                with self._lock:
                    self._pulling = False
            with self._lock:
                self._buffer.extend(messages)
                if self._buffer:
                    return self._buffer.popleft()
        if timeout > 0:
            time.sleep(timeout)
        return None

    def _pull(self) -> list[Message]:
        data = self._post(
            "/pull",
            {
                "visibility_timeout_ms": int(self.visibility_timeout * 1000),
                "batch_size": self.batch_size,
            },
        )
        messages: list[Message] = []
        for raw in (data.get("result") or {}).get("messages", []):
            body = raw.get("body")
            if isinstance(body, str):
                try:
                    body = json.loads(body)
                except ValueError:
                    logger.warning("cloudflare_queue_bad_body", message_id=raw.get("id"))
                    body = {}
            messages.append(
                Message(
                    id=str(raw.get("id", "")),
                    body=body or {},
                    attempts=int(raw.get("attempts", 1)),
                    receipt=str(raw["lease_id"]),
                )
            )
        return messages

    def ack(self, message: Message) -> None:
        self._post("/ack", {"acks": [{"lease_id": message.receipt}], "retries": []})

    def nack(self, message: Message, delay: float = 0.0) -> None:
        self._post(
            "/ack",
            {
                "acks": [],
                "retries": [{"lease_id": message.receipt, "delay_seconds": int(delay)}],
            },
        )

    def close(self) -> None:
        self._client.close()
