"""
Pipeline configuration.

Loaded once from the environment at startup and frozen afterwards. Selector
tables for the HTML heuristics live here too so they can be reviewed in one place.
"""

import os
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_UA = "JobExtractorBot/1.0 (+contact@jobextractor.app)"
DEFAULT_AI_MODEL = "anthropic/claude-3-haiku"


class ConfigError(ValueError):
    """Raised when an environment value cannot be turned into configuration."""


# Per-field CSS selectors, in priority order
FIELD_SELECTORS: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    'title': (
        "h1.job-title",
        "[data-job-title]",
        "[class*='job-title']",
        "[id*='job-title']",
        "h1",
        ".title",
        "[class*='title']",
    ),
    'location': (
        "[data-location]",
        "[class*='location']",
        "[id*='location']",
        "address",
        ".location",
        "[class*='address']",
    ),
    'company_name': (
        "[data-company]",
        "[class*='company']",
        "[id*='company']",
        ".company",
        ".company-name",
        "[itemprop='name']",
    ),
    'description': (
        "[data-description]",
        "[class*='description']",
        "[id*='description']",
        ".description",
        ".job-description",
        "main p",
        "article p",
        "[role='main'] p",
    ),
    'about_company': (
        "[data-about]",
        "[id*='about']",
        "[class*='about']",
        ".about",
        ".about-us",
        ".company-about",
    ),
    'company_culture': (
        "[data-culture]",
        "[id*='culture']",
        "[class*='culture']",
        "[id*='values']",
        "[class*='values']",
        "[id*='mission']",
        "[class*='mission']",
    ),
    'salary': (
        "[data-salary]",
        "[class*='salary']",
        "[id*='salary']",
        ".salary",
        "[class*='compensation']",
    ),
})

ASHBY_SELECTORS: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    'title': (
        ".ashby-job-posting-heading",
        "h1[class*='_title_']",
        "h1",
        "meta[property='og:title']",
    ),
    'company_name': (
        ".ashby-job-posting-header img[alt]",
        "[class*='_navLogoWordmarkImage_']",
        "title",
    ),
    'location': (
        ".ashby-job-posting-left-pane [class*='_section_'] p",
        "[class*='_section_'] p",
    ),
    'description': (
        ".ashby-job-posting-right-pane",
        "[class*='_details_']",
        "[class*='_content_']",
        "meta[name='description']",
    ),
    # Structured sections are embedded in the description; left to AI extraction
    'about_company': (),
    'company_culture': (),
    'requirements': (),
    'responsibilities': (),
    'salary': (),
})


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_vendor_thresholds(raw: Optional[str]) -> Dict[str, float]:
    """
    Parse a vendor threshold override map.

    Format: ``greenhouse=0.8,lever=0.75``
    """
    thresholds: Dict[str, float] = {}
    if not raw:
        return thresholds

    for part in raw.split(','):
        part = part.strip()
        if not part:
            continue
        if '=' not in part:
            raise ConfigError(f"Invalid vendor threshold entry: {part!r}")
        vendor, value = part.split('=', 1)
        try:
            thresholds[vendor.strip().lower()] = float(value)
        except ValueError:
            raise ConfigError(f"Invalid threshold for vendor {vendor.strip()!r}: {value!r}")
    return thresholds


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable runtime configuration for the extraction pipeline."""

    confidence_threshold: float = 0.7
    vendor_thresholds: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    retry_budget: int = 3

    cache_validity_days: int = 30
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    max_redirects: int = 3
    user_agent: str = DEFAULT_UA

    quick_timeout: float = 15.0
    followup_delay_seconds: float = 30.0
    stuck_attempt_minutes: int = 10
    attempt_reuse_window_seconds: int = 120

    cleaner_max_tokens: int = 25_000
    cleaner_chars_per_token: int = 3
    cleaner_min_content_length: int = 100
    cleaner_hard_floor_chars: int = 10_000

    event_max_string_length: int = 10_000
    event_max_array_length: int = 100

    greenhouse_enabled: bool = True
    lever_enabled: bool = True

    openrouter_api_key: Optional[str] = None
    ai_model: str = DEFAULT_AI_MODEL
    ai_timeout: float = 60.0

    error_webhook_url: Optional[str] = None
    database_url: Optional[str] = None
    internal_api_key: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ConfigError(f"confidence_threshold must be within [0, 1], got {self.confidence_threshold}")
        for vendor, value in self.vendor_thresholds.items():
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"threshold for {vendor} must be within [0, 1], got {value}")
        if self.retry_budget < 0:
            raise ConfigError("retry_budget must not be negative")
        if not isinstance(self.vendor_thresholds, MappingProxyType):
            object.__setattr__(self, 'vendor_thresholds', MappingProxyType(dict(self.vendor_thresholds)))

    @property
    def max_cleaned_chars(self) -> int:
        return self.cleaner_max_tokens * self.cleaner_chars_per_token

    def threshold_for(self, board_type: Optional[str] = None) -> float:
        """Acceptance threshold for a vendor, falling back to the global value."""
        if board_type and board_type in self.vendor_thresholds:
            return self.vendor_thresholds[board_type]
        return self.confidence_threshold


def load_config() -> PipelineConfig:
    """Build configuration from environment variables (and a .env file if present)."""
    load_dotenv()

    config = PipelineConfig(
        confidence_threshold=_get_float("EXTRACTION_CONFIDENCE_THRESHOLD", 0.7),
        vendor_thresholds=parse_vendor_thresholds(os.getenv("EXTRACTION_VENDOR_THRESHOLDS")),
        retry_budget=_get_int("EXTRACTION_RETRY_BUDGET", 3),
        cache_validity_days=_get_int("HTML_CACHE_VALIDITY_DAYS", 30),
        connect_timeout=_get_float("HTTP_CONNECT_TIMEOUT", 10.0),
        read_timeout=_get_float("HTTP_READ_TIMEOUT", 30.0),
        max_redirects=_get_int("HTTP_MAX_REDIRECTS", 3),
        user_agent=os.getenv("EXTRACTION_USER_AGENT", DEFAULT_UA),
        quick_timeout=_get_float("QUICK_EXTRACTION_TIMEOUT", 15.0),
        followup_delay_seconds=_get_float("FOLLOWUP_DELAY_SECONDS", 30.0),
        stuck_attempt_minutes=_get_int("STUCK_ATTEMPT_MINUTES", 10),
        attempt_reuse_window_seconds=_get_int("ATTEMPT_REUSE_WINDOW_SECONDS", 120),
        cleaner_max_tokens=_get_int("CLEANER_MAX_TOKENS", 25_000),
        cleaner_chars_per_token=_get_int("CLEANER_CHARS_PER_TOKEN", 3),
        cleaner_min_content_length=_get_int("CLEANER_MIN_CONTENT_LENGTH", 100),
        event_max_string_length=_get_int("EVENT_MAX_STRING_LENGTH", 10_000),
        event_max_array_length=_get_int("EVENT_MAX_ARRAY_LENGTH", 100),
        greenhouse_enabled=_get_bool("GREENHOUSE_ENABLED", True),
        lever_enabled=_get_bool("LEVER_ENABLED", True),
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
        ai_model=os.getenv("AI_EXTRACTION_MODEL", DEFAULT_AI_MODEL),
        ai_timeout=_get_float("AI_EXTRACTION_TIMEOUT", 60.0),
        error_webhook_url=os.getenv("ERROR_WEBHOOK_URL") or None,
        database_url=os.getenv("DATABASE_URL") or None,
        internal_api_key=os.getenv("INTERNAL_API_KEY") or None,
    )

    logger.info(
        f"[config] threshold={config.confidence_threshold} retry_budget={config.retry_budget} "
        f"vendor_overrides={dict(config.vendor_thresholds)} ai_enabled={bool(config.openrouter_api_key)} "
        f"db={'postgres' if config.database_url else 'memory'}"
    )
    return config


_config: Optional[PipelineConfig] = None


def get_config() -> PipelineConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config(config: Optional[PipelineConfig] = None) -> None:
    """Replace (or clear) the process-wide configuration."""
    global _config
    _config = config
