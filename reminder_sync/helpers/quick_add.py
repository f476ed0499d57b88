import re
from datetime import UTC, date, datetime, time, timedelta

from pytz import timezone as pytz_timezone

from reminder_sync.helpers.logging import logger
from reminder_sync.helpers.timezone import (
    DEFAULT_TIMEZONE,
    ensure_timezone,
    parse_to_utc,
)
from reminder_sync.models.quick_add import QuickAddParseModel

# Monday is 0, as in `date.weekday()`
_WEEKDAYS = {
    "fri": 4,
    "friday": 4,
    "mon": 0,
    "monday": 0,
    "sat": 5,
    "saturday": 5,
    "sun": 6,
    "sunday": 6,
    "thu": 3,
    "thurs": 3,
    "thursday": 3,
    "tue": 1,
    "tues": 1,
    "tuesday": 1,
    "wed": 2,
    "wednesday": 2,
}

DEFAULT_TIME = time(hour=9)
TONIGHT_TIME = time(hour=20)

_RELATIVE_PATTERN = re.compile(
    r"\bin\s+(\d+)\s+(minutes?|hours?|days?)\b", re.IGNORECASE
)
_ISO_DATE_PATTERN = re.compile(r"\b((?:19|20)\d{2})-(\d{1,2})-(\d{1,2})\b")
_SHORT_DATE_PATTERN = re.compile(r"(?<![\d/])(\d{1,2})/(\d{1,2})(?![\d/])")
_WEEKDAY_PATTERN = re.compile(
    rf"\bnext\s+({'|'.join(sorted(_WEEKDAYS, key=len, reverse=True))})\b",
    re.IGNORECASE,
)
_KEYWORD_PATTERN = re.compile(r"\b(today|tomorrow|tonight)\b", re.IGNORECASE)
_TIME_PATTERN = re.compile(
    r"(?:\bat\s+)?(?<![\d/:-])(\d{1,2})(?::?(\d{2}))?\s*(am|pm|a|p)?\b(?![/:-]\d)",
    re.IGNORECASE,
)


def parse_quick_add(
    text: str,
    timezone: str | None = DEFAULT_TIMEZONE,
    now: datetime | None = None,
) -> QuickAddParseModel:
    """
    Parse quick-add text, like "call Alex next tue 3p", into a title and a schedule.

    Understood phrases, the first match of each kind is used:
    - Relative offsets: "in 45 minutes", "in 2 hours", "in 3 days"
    - Dates: "2024-12-01", "12/31" (month first, current year), "next tue", "today", "tomorrow", "tonight"
    - Times: "14:30", "0930", "3pm", "3p", "at 9"; bare hours up to 6 are read as PM

    Dates are read in `timezone`. Without a time, the reminder is at 9:00, or 20:00 for "tonight". When only a time is given and it is already past today, the reminder is moved to tomorrow.

    The title is what remains of the text, or the whole text if nothing remains.

    Raises `ValueError` if the text is empty or the relative offset goes past the supported years.
    """
    if not text or not text.strip():
        raise ValueError("Quick-add text is required")

    zone = ensure_timezone(timezone)
    now = (now or datetime.now(UTC)).astimezone(UTC)
    today = now.astimezone(pytz_timezone(zone)).date()
    working = text.strip()
    detected_phrases: list[str] = []

    # Relative offset, it wins over any date or time
    relative_target: datetime | None = None
    match, working = _consume(_RELATIVE_PATTERN, working)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        try:
            if unit.startswith("minute"):
                offset = timedelta(minutes=amount)
            elif unit.startswith("hour"):
                offset = timedelta(hours=amount)
            else:
                offset = timedelta(days=amount)
            relative_target = now + offset
        except OverflowError as e:
            raise ValueError(f'Offset "{match.group(0)}" is out of range') from e
        detected_phrases.append(match.group(0))

    day: date | None = None
    tonight = False

    # Dates are consumed before times, so their digits are not read as hours
    match, working = _consume(_ISO_DATE_PATTERN, working, _date_from_match)
    if match:
        day = _date_from_match(match)
        detected_phrases.append(match.group(0))

    if not day:
        match, working = _consume(
            _SHORT_DATE_PATTERN,
            working,
            lambda m: _date_from_match(m, year=today.year),
        )
        if match:
            day = _date_from_match(match, year=today.year)
            detected_phrases.append(match.group(0))

    if not day:
        match, working = _consume(_WEEKDAY_PATTERN, working)
        if match:
            target = _WEEKDAYS[match.group(1).lower()]
            delta = target - today.weekday()
            if delta <= 0:
                delta += 7
            day = today + timedelta(days=delta)
            detected_phrases.append(match.group(0))

    if not day:
        match, working = _consume(_KEYWORD_PATTERN, working)
        if match:
            keyword = match.group(1).lower()
            day = today + timedelta(days=1) if keyword == "tomorrow" else today
            tonight = keyword == "tonight"
            detected_phrases.append(match.group(0))

    explicit_time: time | None = None
    match, working = _consume(_TIME_PATTERN, working, _time_from_match)
    if match:
        explicit_time = _time_from_match(match)
        detected_phrases.append(match.group(0).strip())

    if relative_target:
        scheduled_at = relative_target
    else:
        at = explicit_time or (TONIGHT_TIME if tonight else DEFAULT_TIME)
        scheduled_at = parse_to_utc(datetime.combine(day or today, at), zone)
        # Never schedule in the past when only a time was given
        if not day and scheduled_at < now:
            scheduled_at = parse_to_utc(
                datetime.combine(today + timedelta(days=1), at), zone
            )

    title = " ".join(working.split()) or text.strip()
    logger.debug("Quick-add parsed %s from text", detected_phrases)

    return QuickAddParseModel(
        detected_phrases=detected_phrases,
        scheduled_at=scheduled_at,
        source=text,
        timezone=zone,
        title=title,
    )


def _consume(
    pattern: re.Pattern,
    text: str,
    check=None,
) -> tuple[re.Match | None, str]:
    """
    Remove the first match of a pattern from the text.

    If `check` is given, matches for which it returns `None` are skipped.

    Returns the match, and the text without it.
    """
    for match in pattern.finditer(text):
        if check and check(match) is None:
            continue
        remainder = f"{text[: match.start()].strip()} {text[match.end() :].strip()}"
        return match, " ".join(remainder.split())
    return None, text


def _date_from_match(
    match: re.Match,
    year: int | None = None,
) -> date | None:
    """
    Build the date of a match, month before day.

    Returns `None` if the date does not exist.
    """
    groups = [int(group) for group in match.groups()]
    if year is None:
        year = groups.pop(0)
    month, day = groups
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _time_from_match(match: re.Match) -> time | None:
    """
    Build the time of a match.

    Returns `None` if the values are not a valid time of day.
    """
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").lower()

    if meridiem:
        if hour > 12 or hour == 0:
            return None
        if hour == 12:
            hour = 0 if meridiem.startswith("a") else 12
        elif meridiem.startswith("p"):
            hour += 12
    elif hour <= 6:
        # Bare small hours are most likely in the afternoon
        hour += 12

    if hour > 23 or minute > 59:
        return None
    return time(hour=hour, minute=minute)
