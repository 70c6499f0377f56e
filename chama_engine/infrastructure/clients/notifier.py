"""Event notifier: fire-and-forget webhook delivery with exponential backoff retry logic"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import httpx

from chama_engine.config import settings
from chama_engine.domain.exceptions import NotificationError
from chama_engine.domain.models import EventType
from chama_engine.infrastructure.observability.metrics import webhook_failure_counter, webhook_latency_histogram

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def publish(self, event_type: EventType, payload: Dict[str, Any]) -> None: ...

    def close(self) -> None: ...


def build_envelope(event_type: EventType, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "event_type": EventType(event_type).value,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "service": settings.service_name,
        "payload": payload,
    }


class LoggingNotifier:
    """Writes events to the structured log only; used when no webhook is configured"""

    def publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        logger.info("Event published", extra={"event_type": EventType(event_type).value, "payload": payload})

    def close(self) -> None:
        pass


class WebhookNotifier:
    """Posts events to the notification layer's webhook from a small worker pool"""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        timeout: Optional[float] = None,
        workers: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.webhook_url = webhook_url or settings.notifier_webhook_url
        if not self.webhook_url:
            raise ValueError("WebhookNotifier requires a webhook URL")
        self.max_retries = settings.webhook_max_retries if max_retries is None else max_retries
        self.backoff_base = settings.webhook_backoff_base if backoff_base is None else backoff_base
        self.timeout = timeout or settings.http_timeout_seconds
        self._client = httpx.Client(timeout=self.timeout, transport=transport)
        self._executor = ThreadPoolExecutor(
            max_workers=workers or settings.notifier_workers,
            thread_name_prefix="notifier",
        )

    def publish(self, event_type: EventType, payload: Dict[str, Any]) -> Future:
        """Queue delivery and return immediately; callers never wait on the network"""
        envelope = build_envelope(event_type, payload)
        return self._executor.submit(self._deliver_logged, envelope)

    def _deliver_logged(self, envelope: Dict[str, Any]) -> bool:
        try:
            self.deliver(envelope)
            return True
        except NotificationError as e:
            # Engine state is already committed; the notification layer reconciles from logs
            logger.error(
                "Event delivery failed",
                extra={"event_type": envelope["event_type"], "error": str(e), "payload": envelope["payload"]},
            )
            return False
        except Exception as e:
            logger.exception(
                "Unexpected error delivering event",
                extra={"event_type": envelope["event_type"], "error": str(e), "payload": envelope["payload"]},
            )
            return False

    def deliver(self, envelope: Dict[str, Any]) -> None:
        """
        Send one event with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s (base * 2^attempt)
        - Retries on non-2xx responses and network failures
        - Tracks latency histogram and failure counter

        Raises:
            NotificationError: every attempt failed
        """
        attempt = 0
        while attempt < self.max_retries:
            try:
                with webhook_latency_histogram.time():
                    response = self._client.post(self.webhook_url, json=envelope)
                    response.raise_for_status()
                    return  # Success

            except (httpx.HTTPStatusError, httpx.RequestError) as e:
                attempt += 1
                webhook_failure_counter.inc()

                if attempt >= self.max_retries:
                    # Final failure after all retries
                    raise NotificationError(
                        f"Webhook delivery of {envelope['event_type']} failed after {attempt} attempts"
                    ) from e

                backoff = self.backoff_base * (2 ** (attempt - 1))
                time.sleep(backoff)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._client.close()


def default_notifier() -> Notifier:
    """Webhook delivery when configured, otherwise log-only"""
    if settings.notifier_webhook_url:
        return WebhookNotifier()
    return LoggingNotifier()
