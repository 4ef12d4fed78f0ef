"""
Salary parsing and validation.

Parsing is deliberately conservative: no salary is better than a false positive
pulled from unrelated numbers in the page ("a team of 89 - 7 people").
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

MIN_ANNUAL_SALARY = 10_000
MAX_ANNUAL_SALARY = 2_000_000
CURRENCY_RE = re.compile(r'^[A-Z]{3}$')

MONEY_SIGNAL_RE = re.compile(
    r'\b(?:salary|compensation|pay|remuneration|total\s+comp|ote|base)\b'
    r'|[$€£]'
    r'|\b(?:usd|eur|gbp|pln|chf|cad|aud)\b',
    re.IGNORECASE,
)

CURRENCY_SYMBOLS = {
    '$': 'USD',
    '€': 'EUR',
    '£': 'GBP',
}

_AMOUNT = r'\d[\d\s,\.]*\d\s*[kK]?'
_DASH = r'(?:-|–|—|\bto\b)'

RANGE_PATTERNS = [
    re.compile(
        rf'(?P<cur>[$€£])?\s*(?P<min>{_AMOUNT})\s*{_DASH}\s*(?P<cur2>[$€£])?\s*(?P<max>{_AMOUNT})\s*(?P<code>(?-i:[A-Z]{{3}}))?\b',
        re.IGNORECASE,
    ),
    re.compile(
        rf'(?P<min>{_AMOUNT})\s*(?P<code>(?-i:[A-Z]{{3}}))\s*{_DASH}\s*(?P<max>{_AMOUNT})',
        re.IGNORECASE,
    ),
]

SINGLE_PATTERN = re.compile(
    rf'(?P<cur>[$€£])?\s*(?P<min>{_AMOUNT})\s*\+\s*(?P<code>(?-i:[A-Z]{{3}}))?\b',
    re.IGNORECASE,
)

HOURLY_RE = re.compile(r'(?:\bper\s*hour\b|\bhourly\b|/\s*hr\b|/\s*h\b)', re.IGNORECASE)
MONTHLY_RE = re.compile(r'(?:\bper\s*month\b|\bmonthly\b|/\s*mo\b|/\s*month\b)', re.IGNORECASE)
YEARLY_RE = re.compile(r'(?:\bper\s*year\b|\bannual(?:ly)?\b|\byearly\b|/\s*yr\b|/\s*year\b)', re.IGNORECASE)


@dataclass
class SalaryValidation:
    """Outcome of validating a parsed salary range."""
    valid: bool
    min: Optional[float] = None
    max: Optional[float] = None
    currency: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "min": self.min,
            "max": self.max,
            "currency": self.currency,
            "reason": self.reason,
        }


def has_money_signal(text: Optional[str]) -> bool:
    return bool(text) and MONEY_SIGNAL_RE.search(text) is not None


def compensation_candidate_text(text: str, max_lines: int = 15) -> str:
    """Keep only the lines of a page that look like they talk about pay."""
    if not text:
        return ""
    lines = [line.strip() for line in re.split(r'\r?\n', text) if line.strip()]
    picked = [line for line in lines if MONEY_SIGNAL_RE.search(line)]
    return "\n".join(picked[:max_lines])


def _currency_from_match(match: re.Match) -> Optional[str]:
    groups = match.groupdict()
    code = (groups.get('code') or '').strip().upper()
    if code:
        return code
    symbol = (groups.get('cur') or groups.get('cur2') or '').strip()
    return CURRENCY_SYMBOLS.get(symbol)


def parse_salary_from_text(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Find a salary range in free text.

    Returns the raw matched strings ({min, max, currency}) without any numeric
    checks; run the result through ``validate_salary_range`` before trusting it.
    Returns None when the text has no money signal or no usable match.
    """
    if not text or not has_money_signal(text):
        return None

    for pattern in RANGE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        currency = _currency_from_match(match)
        if not currency:
            return None
        return {
            "min": match.group('min').strip(),
            "max": match.group('max').strip(),
            "currency": currency,
        }

    match = SINGLE_PATTERN.search(text)
    if not match:
        return None
    currency = _currency_from_match(match)
    if not currency:
        return None
    return {
        "min": match.group('min').strip(),
        "max": None,
        "currency": currency,
    }


def _parse_decimalish(value: str) -> Optional[float]:
    if not value:
        return None
    # "89,7" reads as a decimal comma; any other comma is a thousands separator
    if ',' in value and '.' not in value and re.fullmatch(r'\d+,\d{1,2}', value):
        value = value.replace(',', '.')
    else:
        value = value.replace(',', '')
    try:
        return float(value)
    except ValueError:
        return None


def coerce_amount(value: Any) -> Optional[float]:
    """Turn '120k', '$150,000' or 95000 into a float."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)

    cleaned = re.sub(r'[^\d.,kK]', '', str(value).strip())
    if not cleaned:
        return None

    multiplier = 1.0
    if cleaned[-1] in 'kK':
        multiplier = 1000.0
        cleaned = cleaned[:-1]

    number = _parse_decimalish(cleaned)
    return number * multiplier if number is not None else None


def infer_unit(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    if HOURLY_RE.search(text):
        return 'hour'
    if MONTHLY_RE.search(text):
        return 'month'
    if YEARLY_RE.search(text):
        return 'year'
    return None


def _plausible_annual(amount: float) -> bool:
    return MIN_ANNUAL_SALARY <= amount <= MAX_ANNUAL_SALARY


def validate_salary_range(min_value: Any, max_value: Any, currency: Optional[str],
                          context_text: Optional[str] = None) -> SalaryValidation:
    """Check a salary range for plausibility before it can reach a job record."""
    min_n = coerce_amount(min_value)
    max_n = coerce_amount(max_value)
    cur = (currency or '').strip().upper()

    if min_n is None and max_n is None:
        return SalaryValidation(valid=False, reason="missing_salary")
    if not cur or not CURRENCY_RE.match(cur):
        return SalaryValidation(valid=False, reason="missing_currency")
    if min_n is not None and max_n is not None and max_n < min_n:
        return SalaryValidation(valid=False, reason="inverted_range")

    unit = infer_unit(context_text)
    if unit and unit != 'year':
        return SalaryValidation(valid=False, reason="non_annual_unit")

    if min_n is not None and not _plausible_annual(min_n):
        return SalaryValidation(valid=False, reason="min_out_of_bounds")
    if max_n is not None and not _plausible_annual(max_n):
        return SalaryValidation(valid=False, reason="max_out_of_bounds")

    return SalaryValidation(valid=True, min=min_n, max=max_n, currency=cur)


def extract_salary(text: Optional[str], context_text: Optional[str] = None) -> Optional[SalaryValidation]:
    """Parse and validate in one step; None when nothing acceptable was found."""
    parsed = parse_salary_from_text(text)
    if not parsed:
        return None

    result = validate_salary_range(
        parsed['min'], parsed['max'], parsed['currency'],
        context_text=context_text if context_text is not None else text,
    )
    if not result.valid:
        logger.debug(f"[salary] Rejected parsed salary {parsed}: {result.reason}")
        return None
    return result
