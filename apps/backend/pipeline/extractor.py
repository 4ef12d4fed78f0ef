"""
Common extraction interface.

Every extraction method (vendor API, LLM, HTML heuristics) implements
``BaseExtractor.extract(input) -> ExtractionOutcome``. The orchestrator holds an
ordered list of extractors and walks it until one clears the confidence
threshold, so it never needs to know which kind it is talking to.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .board_detector import BoardInfo
from .models import Attempt, TargetRecord

logger = logging.getLogger(__name__)

# Default confidence by extraction method
CONFIDENCE_SCORES = {
    'api': 1.0,
    'ai': 0.8,
    'heuristic': 0.6,
    # head-of-page tags on limited-access boards
    'meta': 0.5,
}

# Cap applied when required fields are missing, keeps the result below acceptance
MISSING_REQUIRED_CAP = 0.69
REQUIRED_FIELDS = ('title', 'company_name', 'description')


def clamp_confidence(value: Any) -> float:
    """Coerce any confidence value into [0, 1]; unparseable values become 0."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return max(0.0, min(1.0, confidence))


def has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict, tuple)):
        return len(value) > 0
    return True


@dataclass
class ExtractionInput:
    """Everything an extractor may look at for one attempt."""
    record: TargetRecord
    url: str
    board: BoardInfo
    raw_html: Optional[str] = None
    cleaned_html: Optional[str] = None
    attempt: Optional[Attempt] = None


@dataclass
class ExtractionOutcome:
    """Fields plus confidence from one method. ``error`` set means no usable data."""
    method: str
    confidence: float = 0.0
    fields: Dict[str, Any] = field(default_factory=dict)
    provider: Optional[str] = None
    model: Optional[str] = None
    tokens_used: Optional[int] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)

    @classmethod
    def failed(cls, method: str, error: str, **kwargs) -> "ExtractionOutcome":
        return cls(method=method, confidence=0.0, error=error, **kwargs)

    @property
    def success(self) -> bool:
        return self.error is None and bool(self.produced_fields())

    def produced_fields(self) -> Dict[str, Any]:
        """Only fields that carry a value."""
        return {name: value for name, value in self.fields.items() if has_value(value)}

    def accepted(self, threshold: float) -> bool:
        return self.success and self.confidence >= threshold

    def summary(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "provider": self.provider,
            "model": self.model,
            "confidence": self.confidence,
            "tokens_used": self.tokens_used,
            "fields_extracted": sorted(self.produced_fields().keys()),
            "error": self.error,
        }


class BaseExtractor(ABC):
    """One step of the extraction cascade."""

    #: method name recorded on the attempt ("api", "ai", "heuristic")
    method: str = "unknown"
    #: event type the orchestrator records this step under
    event_type: str = "unknown"

    def applies_to(self, extraction_input: ExtractionInput) -> Optional[str]:
        """Return a skip reason when this extractor cannot run for the input, else None."""
        return None

    @abstractmethod
    async def extract(self, extraction_input: ExtractionInput) -> ExtractionOutcome:
        ...
