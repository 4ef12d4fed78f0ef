"""
Error notification channel.

Unexpected exceptions (never routine HTTP failures) are reported here with
url / record context so a human can be alerted outside dead-letter review.
"""

import logging
import traceback
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

MAX_RECENT = 100
WEBHOOK_TIMEOUT = 5.0


class ErrorNotifier:
    """Logs unexpected errors and forwards them to an optional webhook."""

    def __init__(self, webhook_url: Optional[str] = None, max_recent: int = MAX_RECENT):
        self.webhook_url = webhook_url
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=max_recent)

    @classmethod
    def from_config(cls, config) -> "ErrorNotifier":
        return cls(webhook_url=config.error_webhook_url)

    @property
    def recent(self) -> List[Dict[str, Any]]:
        return list(self._recent)

    def notify(self, exc: BaseException, context: str, severity: str = "error", **fields: Any) -> Dict[str, Any]:
        """
        Report an unexpected exception.

        Args:
            exc: The exception being reported
            context: Where it happened (e.g. "html_fetch", "orchestration")
            severity: "error" or "warning"
            **fields: Extra context such as url, record_id, attempt_id

        Returns:
            The notification payload that was recorded
        """
        payload = {
            "context": context,
            "severity": severity,
            "error_type": type(exc).__name__,
            "error_message": str(exc),
            "backtrace": traceback.format_exception(type(exc), exc, exc.__traceback__)[-5:],
            "notified_at": datetime.now(timezone.utc).isoformat(),
        }
        payload.update({k: v for k, v in fields.items() if v is not None})
        self._recent.append(payload)

        context_str = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
        log = logger.warning if severity == "warning" else logger.error
        log(f"[notifier] {context}: {type(exc).__name__}: {exc} {context_str}",
            exc_info=(type(exc), exc, exc.__traceback__))

        if self.webhook_url:
            self._deliver(payload)
        return payload

    def _deliver(self, payload: Dict[str, Any]) -> None:
        try:
            response = httpx.post(self.webhook_url, json=payload, timeout=WEBHOOK_TIMEOUT)
            if response.status_code >= 400:
                logger.warning(f"[notifier] Webhook returned {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"[notifier] Webhook delivery failed: {e}")
