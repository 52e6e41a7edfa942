"""Tests for timezone utilities in datetime_utils."""

from datetime import UTC, datetime, time

import pytest

from dailybrief.core.datetime_utils import (
    get_cutoff,
    get_zone,
    is_valid_timezone,
    local_minute_matches,
    parse_delivery_time,
    start_of_utc_day,
    to_naive_utc,
    truncate_to_minute,
    user_local_time,
)
from dailybrief.core.exceptions import ConfigurationError


class TestIsValidTimezone:
    """Tests for is_valid_timezone."""

    def test_valid_iana_timezone(self):
        """Should return True for valid IANA timezone."""
        assert is_valid_timezone("America/New_York") is True
        assert is_valid_timezone("Europe/Paris") is True
        assert is_valid_timezone("UTC") is True

    def test_invalid_timezone(self):
        """Should return False for invalid timezone."""
        assert is_valid_timezone("Invalid/Timezone") is False
        assert is_valid_timezone("") is False
        assert is_valid_timezone("America/Atlantis") is False


class TestGetZone:
    def test_unknown_zone_raises_configuration_error(self):
        with pytest.raises(ConfigurationError):
            get_zone("Mars/Olympus_Mons")

    def test_empty_zone_raises_configuration_error(self):
        with pytest.raises(ConfigurationError):
            get_zone("")


class TestParseDeliveryTime:
    """Tests for parse_delivery_time."""

    def test_valid_time_format(self):
        """Should parse valid HH:MM format."""
        assert parse_delivery_time("08:00") == time(8, 0)
        assert parse_delivery_time("14:30") == time(14, 30)
        assert parse_delivery_time("7:05") == time(7, 5)

    def test_seconds_are_tolerated_and_dropped(self):
        """SQL TIME columns come back as HH:MM:SS."""
        assert parse_delivery_time("08:00:00") == time(8, 0)

    @pytest.mark.parametrize("value", ["", "8", "25:00", "12:60", "noon", "08-00", None])
    def test_malformed_time_raises(self, value):
        with pytest.raises(ConfigurationError):
            parse_delivery_time(value)


class TestUserLocalTime:
    """Tests for user_local_time."""

    def test_returns_aware_datetime(self):
        """Should return timezone-aware datetime."""
        local = user_local_time("America/New_York")
        assert local.tzinfo is not None

    def test_naive_reference_is_treated_as_utc(self):
        local = user_local_time("Asia/Tokyo", datetime(2026, 1, 15, 0, 0))
        assert (local.hour, local.minute) == (9, 0)

    def test_invalid_timezone_raises(self):
        with pytest.raises(ConfigurationError):
            user_local_time("Invalid/Zone")


class TestLocalMinuteMatches:
    def test_matches_delivery_minute(self):
        # 13:00 UTC in January is 08:00 in New York
        now = datetime(2026, 1, 15, 13, 0, 42, tzinfo=UTC)
        assert local_minute_matches("America/New_York", "08:00", now) is True

    def test_different_minute_does_not_match(self):
        now = datetime(2026, 1, 15, 13, 1, tzinfo=UTC)
        assert local_minute_matches("America/New_York", "08:00", now) is False


class TestUtcHelpers:
    def test_start_of_utc_day(self):
        now = datetime(2026, 3, 8, 17, 45, 12)
        assert start_of_utc_day(now) == datetime(2026, 3, 8)

    def test_start_of_utc_day_converts_aware_input(self):
        # 23:30 in New York on March 7 is already March 8 in UTC
        from zoneinfo import ZoneInfo

        now = datetime(2026, 3, 7, 23, 30, tzinfo=ZoneInfo("America/New_York"))
        assert start_of_utc_day(now) == datetime(2026, 3, 8)

    def test_get_cutoff(self):
        now = datetime(2026, 3, 8, 12, 0)
        assert get_cutoff(seconds=3000, now=now) == datetime(2026, 3, 8, 11, 10)

    def test_to_naive_utc(self):
        aware = datetime(2026, 7, 1, 8, 0, tzinfo=get_zone("America/New_York"))
        assert to_naive_utc(aware) == datetime(2026, 7, 1, 12, 0)

    def test_truncate_to_minute(self):
        assert truncate_to_minute(datetime(2026, 1, 1, 8, 0, 59, 999)) == datetime(2026, 1, 1, 8, 0)
