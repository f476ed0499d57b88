from datetime import UTC, datetime

import pytest
from pytest_assume.plugin import assume

from reminder_sync.helpers.quick_add import parse_quick_add

# Wednesday afternoon
NOW = datetime(2024, 3, 13, 15, tzinfo=UTC)


@pytest.mark.parametrize(
    "text, title, scheduled_at, detected_phrases",
    [
        pytest.param(
            "call Alex next tue 3p",
            "call Alex",
            datetime(2024, 3, 19, 15, tzinfo=UTC),
            ["next tue", "3p"],
            id="next_weekday_and_short_meridiem",
        ),
        pytest.param(
            "review notes next wednesday",
            "review notes",
            datetime(2024, 3, 20, 9, tzinfo=UTC),
            ["next wednesday"],
            id="next_same_weekday_is_next_week",
        ),
        pytest.param(
            "water plants tomorrow",
            "water plants",
            datetime(2024, 3, 14, 9, tzinfo=UTC),
            ["tomorrow"],
            id="tomorrow_default_time",
        ),
        pytest.param(
            "dinner tonight",
            "dinner",
            datetime(2024, 3, 13, 20, tzinfo=UTC),
            ["tonight"],
            id="tonight_default_time",
        ),
        pytest.param(
            "stretch in 45 minutes",
            "stretch",
            datetime(2024, 3, 13, 15, 45, tzinfo=UTC),
            ["in 45 minutes"],
            id="relative_minutes",
        ),
        pytest.param(
            "renew passport in 3 days",
            "renew passport",
            datetime(2024, 3, 16, 15, tzinfo=UTC),
            ["in 3 days"],
            id="relative_days",
        ),
        pytest.param(
            "meeting 2024-12-01 14:30",
            "meeting",
            datetime(2024, 12, 1, 14, 30, tzinfo=UTC),
            ["2024-12-01", "14:30"],
            id="iso_date_and_time",
        ),
        pytest.param(
            "pay rent 4/1",
            "pay rent",
            datetime(2024, 4, 1, 9, tzinfo=UTC),
            ["4/1"],
            id="month_day",
        ),
        pytest.param(
            "standup 9:15",
            "standup",
            datetime(2024, 3, 14, 9, 15, tzinfo=UTC),
            ["9:15"],
            id="past_time_moves_to_tomorrow",
        ),
        pytest.param(
            "call mom at 5",
            "call mom",
            datetime(2024, 3, 13, 17, tzinfo=UTC),
            ["at 5"],
            id="bare_hour_is_afternoon",
        ),
        pytest.param(
            "tomorrow",
            "tomorrow",
            datetime(2024, 3, 14, 9, tzinfo=UTC),
            ["tomorrow"],
            id="title_falls_back_to_text",
        ),
    ],
)
def test_parse(
    text: str,
    title: str,
    scheduled_at: datetime,
    detected_phrases: list[str],
) -> None:
    parsed = parse_quick_add(text, "UTC", now=NOW)
    assume(parsed.title == title)
    assume(parsed.scheduled_at == scheduled_at)
    assume(parsed.detected_phrases == detected_phrases)
    assume(parsed.source == text)
    assume(parsed.timezone == "UTC")


def test_parse_in_timezone() -> None:
    """
    Test times are read as wall-clock times of the user.
    """
    # 11:00 in New York
    parsed = parse_quick_add("lunch with Sam 12:30pm", "America/New_York", now=NOW)
    assume(parsed.title == "lunch with Sam")
    assume(parsed.scheduled_at == datetime(2024, 3, 13, 16, 30, tzinfo=UTC))
    assume(parsed.timezone == "America/New_York")

    # Invalid timezones fall back to UTC
    parsed = parse_quick_add("lunch 12:30pm", "Nowhere", now=NOW)
    assume(parsed.timezone == "UTC")
    assume(parsed.scheduled_at == datetime(2024, 3, 14, 12, 30, tzinfo=UTC))


def test_parse_empty() -> None:
    with pytest.raises(ValueError):
        parse_quick_add("   ", "UTC", now=NOW)


@pytest.mark.parametrize(
    "text",
    [
        pytest.param("renew passport in 999999999999 days", id="offset_too_large"),
        pytest.param("renew passport in 5000000 days", id="date_past_year_9999"),
    ],
)
def test_parse_offset_out_of_range(text: str) -> None:
    """
    Test relative offsets past the supported years are invalid input, not crashes.
    """
    with pytest.raises(ValueError):
        parse_quick_add(text, "UTC", now=NOW)
