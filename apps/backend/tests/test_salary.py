"""
Tests for salary parsing and validation.
"""

import pytest

from core.salary import (
    coerce_amount,
    compensation_candidate_text,
    extract_salary,
    parse_salary_from_text,
    validate_salary_range,
)


class TestExtractSalary:

    def test_k_suffix_range(self):
        result = extract_salary("We pay $120k - $150k")
        assert result is not None
        assert result.min == 120000
        assert result.max == 150000
        assert result.currency == "USD"

    def test_no_money_signal(self):
        """Numeric pairs in prose are not salaries."""
        assert parse_salary_from_text("great team of 89 - 7 people") is None
        assert extract_salary("great team of 89 - 7 people") is None

    def test_euro_thousands_separator(self):
        result = extract_salary("Salary: €50,000 - €70,000 per year")
        assert result.min == 50000
        assert result.max == 70000
        assert result.currency == "EUR"

    def test_iso_code(self):
        result = extract_salary("Compensation 90000 - 110000 GBP")
        assert result.currency == "GBP"
        assert (result.min, result.max) == (90000, 110000)

    def test_hourly_rejected(self):
        assert extract_salary("Pay: $50 - $70 per hour") is None

    def test_missing_currency_rejected(self):
        assert extract_salary("salary 60k - 80k") is None


class TestValidateSalaryRange:

    def test_inverted_range(self):
        result = validate_salary_range(89, 7, "USD")
        assert not result.valid
        assert result.reason == "inverted_range"

    @pytest.mark.parametrize("min_value,max_value,currency,reason", [
        (None, None, "USD", "missing_salary"),
        (50000, 60000, None, "missing_currency"),
        (50000, 60000, "dollars", "missing_currency"),
        (500, 900, "USD", "min_out_of_bounds"),
        (50000, 9_000_000, "USD", "max_out_of_bounds"),
    ])
    def test_rejections(self, min_value, max_value, currency, reason):
        result = validate_salary_range(min_value, max_value, currency)
        assert not result.valid
        assert result.reason == reason

    def test_valid_range_normalizes_currency(self):
        result = validate_salary_range("120k", "$150,000", "usd")
        assert result.valid
        assert (result.min, result.max, result.currency) == (120000, 150000, "USD")


class TestHelpers:

    @pytest.mark.parametrize("value,expected", [
        ("120k", 120000),
        ("$150,000", 150000),
        (95000, 95000),
        ("89,7", 89.7),
        (None, None),
        (True, None),
        ("n/a", None),
    ])
    def test_coerce_amount(self, value, expected):
        assert coerce_amount(value) == (pytest.approx(expected) if expected is not None else None)

    def test_compensation_candidate_text(self):
        text = "About us\nWe build things\nSalary: $100k - $120k\nTeam of 12 people"
        assert compensation_candidate_text(text) == "Salary: $100k - $120k"
