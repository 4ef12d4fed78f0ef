"""
Pipeline event recorder.

Every step of an attempt is written as an append-only event with a gapless,
increasing step_order. Payloads go through one recursive sanitizer that caps
string and array sizes at any depth before they are stored.
"""

import time
import logging
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from .models import Attempt, EventStatus, EventType, PipelineEvent, utcnow
from .storage import PipelineStore

logger = logging.getLogger(__name__)

MAX_STRING_LENGTH = 10_000
MAX_ARRAY_LENGTH = 100
TRUNCATION_MARKER = "... [TRUNCATED]"


def truncate_payload(value: Any, max_string: int = MAX_STRING_LENGTH, max_array: int = MAX_ARRAY_LENGTH) -> Any:
    """
    Depth-first sanitizer for event payloads.

    Strings longer than ``max_string`` are cut and marked, sequences keep their
    first ``max_array`` items, and everything is reduced to JSON-safe types.
    """
    if isinstance(value, Enum):
        return truncate_payload(value.value, max_string, max_array)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        if len(value) > max_string:
            return value[:max_string] + TRUNCATION_MARKER
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): truncate_payload(v, max_string, max_array) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)[:max_array]
        return [truncate_payload(item, max_string, max_array) for item in items]
    if isinstance(value, bytes):
        return truncate_payload(value.decode('utf-8', errors='replace'), max_string, max_array)
    return truncate_payload(str(value), max_string, max_array)


def _event_type_value(event_type) -> str:
    return event_type.value if isinstance(event_type, Enum) else str(event_type)


class EventContext:
    """Handle given to a recorded block so it can attach output data."""

    def __init__(self, event: PipelineEvent):
        self.event = event
        self.output_data: Dict[str, Any] = {}
        self.error_message: Optional[str] = None
        self.error_type: Optional[str] = None

    def set_output(self, **data: Any) -> None:
        self.output_data.update(data)

    def add_metadata(self, **data: Any) -> None:
        self.event.metadata.update(data)

    def fail(self, message: str, error_type: Optional[str] = None) -> None:
        """Finish the event as failed without raising out of the block."""
        self.error_message = message
        self.error_type = error_type


class EventRecorder:
    """Records ordered events for one attempt."""

    def __init__(self, store: PipelineStore, attempt: Attempt,
                 max_string: int = MAX_STRING_LENGTH, max_array: int = MAX_ARRAY_LENGTH):
        self.store = store
        self.attempt = attempt
        self.max_string = max_string
        self.max_array = max_array
        # Continue numbering when an attempt is resumed by a retry
        self.current_step = store.max_step_order(attempt.id)

    @classmethod
    def from_config(cls, store: PipelineStore, attempt: Attempt, config) -> "EventRecorder":
        return cls(store, attempt, max_string=config.event_max_string_length,
                   max_array=config.event_max_array_length)

    def _sanitize(self, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return truncate_payload(payload or {}, self.max_string, self.max_array)

    def _next_step(self) -> int:
        self.current_step += 1
        return self.current_step

    def _log(self, event: PipelineEvent) -> None:
        message = (
            f"[events] attempt={event.attempt_id} step={event.step_order} "
            f"type={event.event_type} status={event.status.value}"
        )
        if event.duration_ms is not None:
            message += f" duration_ms={event.duration_ms}"
        if event.error_message:
            message += f" error={event.error_message}"
        if event.status == EventStatus.FAILED:
            logger.warning(message)
        else:
            logger.info(message)

    @contextmanager
    def record(self, event_type, input_data: Optional[Dict[str, Any]] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Iterator[EventContext]:
        """
        Wrap a unit of work in a started -> success/failed event.

        Exceptions raised inside the block mark the event failed and propagate.
        """
        event = PipelineEvent(
            attempt_id=self.attempt.id,
            record_id=self.attempt.record_id,
            event_type=_event_type_value(event_type),
            step_order=self._next_step(),
            status=EventStatus.STARTED,
            input_payload=self._sanitize(input_data),
            metadata=dict(metadata or {}),
        )
        self.store.insert_event(event)
        logger.debug(f"[events] attempt={event.attempt_id} step={event.step_order} type={event.event_type} started")

        context = EventContext(event)
        start = time.monotonic()
        try:
            yield context
        except Exception as e:
            event.status = EventStatus.FAILED
            event.completed_at = utcnow()
            event.duration_ms = int(round((time.monotonic() - start) * 1000))
            event.error_type = type(e).__name__
            event.error_message = str(e)
            event.output_payload = self._sanitize(context.output_data)
            event.metadata = truncate_payload(event.metadata, self.max_string, self.max_array)
            self.store.update_event(event)
            self._log(event)
            raise

        if context.error_message is not None:
            event.status = EventStatus.FAILED
            event.error_message = context.error_message
            event.error_type = context.error_type
        else:
            event.status = EventStatus.SUCCESS
        event.completed_at = utcnow()
        event.duration_ms = int(round((time.monotonic() - start) * 1000))
        event.output_payload = self._sanitize(context.output_data)
        event.metadata = truncate_payload(event.metadata, self.max_string, self.max_array)
        self.store.update_event(event)
        self._log(event)

    def record_simple(self, event_type, status: EventStatus, input_data: Optional[Dict[str, Any]] = None,
                      output: Optional[Dict[str, Any]] = None, metadata: Optional[Dict[str, Any]] = None,
                      error_message: Optional[str] = None, error_type: Optional[str] = None) -> PipelineEvent:
        """Record an instantaneous event."""
        now = utcnow()
        event = PipelineEvent(
            attempt_id=self.attempt.id,
            record_id=self.attempt.record_id,
            event_type=_event_type_value(event_type),
            step_order=self._next_step(),
            status=status,
            started_at=now,
            completed_at=now,
            duration_ms=0,
            input_payload=self._sanitize(input_data),
            output_payload=self._sanitize(output),
            metadata=truncate_payload(metadata or {}, self.max_string, self.max_array),
            error_type=error_type,
            error_message=error_message,
        )
        self.store.insert_event(event)
        self._log(event)
        return event

    def record_skipped(self, event_type, reason: str, metadata: Optional[Dict[str, Any]] = None) -> PipelineEvent:
        return self.record_simple(event_type, EventStatus.SKIPPED,
                                  output={"skipped_reason": reason}, metadata=metadata)

    def record_completion(self, summary: Optional[Dict[str, Any]] = None) -> PipelineEvent:
        return self.record_simple(EventType.COMPLETION, EventStatus.SUCCESS, output=summary,
                                  metadata={"total_steps": self.current_step + 1})

    def record_failure(self, message: str, error_type: Optional[str] = None,
                       details: Optional[Dict[str, Any]] = None) -> PipelineEvent:
        return self.record_simple(EventType.FAILURE, EventStatus.FAILED, output=details,
                                  error_message=message, error_type=error_type,
                                  metadata={"total_steps": self.current_step + 1})
