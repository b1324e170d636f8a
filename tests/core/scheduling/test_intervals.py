"""Tests for interval parsing and bounds."""

import pytest

from pulse.core.errors import InvalidIntervalError
from pulse.core.scheduling.intervals import (
    DEFAULT_INTERVAL_MS,
    HOUR_MS,
    MAX_INTERVAL_MS,
    MIN_INTERVAL_MS,
    MINUTE_MS,
    format_interval,
    normalize_interval,
    parse_interval,
    validate_interval,
)


class TestParseInterval:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("30m", 30 * MINUTE_MS),
            ("45", 45 * MINUTE_MS),
            ("2h", 2 * HOUR_MS),
            ("1 hour", HOUR_MS),
            ("90 mins", 90 * MINUTE_MS),
            ("12HRS", 12 * HOUR_MS),
            ("0", 0),
            (" 5m ", 5 * MINUTE_MS),
        ],
    )
    def test_text(self, text, expected):
        assert parse_interval(text) == expected

    def test_int_is_milliseconds(self):
        assert parse_interval(HOUR_MS) == HOUR_MS

    @pytest.mark.parametrize("value", ["", "soon", "1.5h", "-5m", "10s", -1, True])
    def test_invalid(self, value):
        with pytest.raises(InvalidIntervalError):
            parse_interval(value)


class TestBounds:
    def test_validate_accepts_edges_and_zero(self):
        assert validate_interval(0) == 0
        assert validate_interval(MIN_INTERVAL_MS) == MIN_INTERVAL_MS
        assert validate_interval(MAX_INTERVAL_MS) == MAX_INTERVAL_MS

    @pytest.mark.parametrize("value", [1, MIN_INTERVAL_MS - 1, MAX_INTERVAL_MS + 1])
    def test_validate_rejects_out_of_range(self, value):
        with pytest.raises(InvalidIntervalError, match="out of range"):
            validate_interval(value)

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (HOUR_MS, HOUR_MS),
            (0, 0),
            (1000, DEFAULT_INTERVAL_MS),
            (MAX_INTERVAL_MS * 2, DEFAULT_INTERVAL_MS),
            ("1h", DEFAULT_INTERVAL_MS),
            (None, DEFAULT_INTERVAL_MS),
            (False, DEFAULT_INTERVAL_MS),
            (float("inf"), DEFAULT_INTERVAL_MS),
            (float("nan"), DEFAULT_INTERVAL_MS),
        ],
    )
    def test_normalize(self, value, expected):
        assert normalize_interval(value) == expected


def test_format_interval():
    assert format_interval(0) == "off"
    assert format_interval(30 * MINUTE_MS) == "30m"
    assert format_interval(HOUR_MS) == "1h"
    assert format_interval(90 * MINUTE_MS) == "1.5h"
    assert format_interval(24 * HOUR_MS) == "24h"
