import re
from datetime import UTC, date, datetime, time, tzinfo

from pydantic import BaseModel, Field
from pytz import UnknownTimeZoneError, timezone as pytz_timezone

from reminder_sync.helpers.logging import logger
from reminder_sync.models.localized import LocalizedDateTimeModel

DEFAULT_TIMEZONE = "UTC"

_DATE_ONLY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class InvalidTimezoneError(ValueError):
    pass


class InvalidDateError(ValueError):
    pass


class TimePartsModel(BaseModel, frozen=True):
    """
    Wall-clock parts applied to a date-only value.

    Unset parts default to midnight.
    """

    hour: int = Field(default=0, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    second: int = Field(default=0, ge=0, le=59)
    millisecond: int = Field(default=0, ge=0, le=999)


START_OF_DAY = TimePartsModel()
END_OF_DAY = TimePartsModel(hour=23, minute=59, second=59, millisecond=999)


def ensure_timezone(name: str | None) -> str:
    """
    Validate a timezone name.

    Returns the canonical IANA name, or `UTC` if the name is empty or unknown. Never raises.
    """
    if not name:
        return DEFAULT_TIMEZONE
    try:
        return pytz_timezone(name).zone
    except UnknownTimeZoneError:
        logger.warning('Invalid timezone "%s", falling back to UTC', name)
        return DEFAULT_TIMEZONE


def resolve_request_timezone(*candidates: str | None) -> str:
    """
    Pick the timezone of a request.

    Candidates are given by priority (e.g. body, query, header), the first non-empty one wins and is validated.
    """
    for candidate in candidates:
        if candidate:
            return ensure_timezone(candidate)
    return DEFAULT_TIMEZONE


def is_date_only(value: str) -> bool:
    return bool(_DATE_ONLY_PATTERN.match(value.strip()))


def parse_to_utc(
    value: str | datetime | int | float,
    timezone: str = DEFAULT_TIMEZONE,
    override_parts: TimePartsModel | None = None,
) -> datetime:
    """
    Convert a client date value to an UTC instant.

    Supported inputs:
    - Date-only string (`YYYY-MM-DD`), read as midnight in `timezone`, or at `override_parts` if given
    - ISO 8601 date-time string, with an offset or not (naive values are read in `timezone`)
    - `datetime` instance (naive values are read in `timezone`)
    - Epoch timestamp in milliseconds

    Raises `InvalidTimezoneError` if the timezone is unknown, `InvalidDateError` if the value cannot be parsed.
    """
    zone = _zone(timezone)

    if value is None:
        raise InvalidDateError("Date value is required")

    if isinstance(value, datetime):
        return _to_utc(value, zone)

    # Booleans are integers in Python, but never a valid date
    if isinstance(value, int | float) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise InvalidDateError(f"Invalid timestamp {value}") from e

    if isinstance(value, str):
        trimmed = value.strip()

        if is_date_only(trimmed):
            try:
                day = date.fromisoformat(trimmed)
            except ValueError as e:
                raise InvalidDateError(f'Invalid date "{value}"') from e
            parts = override_parts or START_OF_DAY
            local = datetime.combine(
                day,
                time(
                    hour=parts.hour,
                    minute=parts.minute,
                    second=parts.second,
                    microsecond=parts.millisecond * 1000,
                ),
            )
            return _to_utc(local, zone)

        try:
            parsed = datetime.fromisoformat(trimmed)
        except ValueError as e:
            raise InvalidDateError(f'Unable to parse date "{value}"') from e
        return _to_utc(parsed, zone)

    raise InvalidDateError(f"Unsupported date input type {type(value).__name__}")


def project_to_local(
    instant: datetime,
    timezone: str = DEFAULT_TIMEZONE,
) -> LocalizedDateTimeModel:
    """
    Project an UTC instant to the wall-clock of a timezone, for display.

    Invalid timezones fall back to UTC, as well as instants with no wall-clock in the timezone (edges of the supported years).
    """
    safe_zone = ensure_timezone(timezone)
    if not instant.tzinfo:
        instant = instant.replace(tzinfo=UTC)
    try:
        local = instant.astimezone(pytz_timezone(safe_zone))
    except OverflowError:
        logger.warning("Cannot project %s to %s, using UTC", instant, safe_zone)
        safe_zone = DEFAULT_TIMEZONE
        local = instant.astimezone(UTC)

    local_date = local.strftime("%Y-%m-%d")
    hour_12 = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return LocalizedDateTimeModel(
        local_date=local_date,
        local_date_time_display=f"{local:%b} {local.day}, {local.year}, {hour_12}:{local:%M} {meridiem}",
        local_date_time_iso=f"{local_date}T{local:%H:%M:%S}",
        local_time=local.strftime("%H:%M"),
        local_timezone=safe_zone,
    )


def start_of_day_utc(
    timezone: str,
    reference: datetime | None = None,
) -> datetime:
    """
    Start of the local day (00:00:00.000) containing `reference`, as an UTC instant.
    """
    return parse_to_utc(
        value=_local_date(timezone, reference),
        timezone=ensure_timezone(timezone),
    )


def end_of_day_utc(
    timezone: str,
    reference: datetime | None = None,
) -> datetime:
    """
    End of the local day (23:59:59.999) containing `reference`, as an UTC instant.
    """
    return parse_to_utc(
        override_parts=END_OF_DAY,
        timezone=ensure_timezone(timezone),
        value=_local_date(timezone, reference),
    )


def _local_date(timezone: str, reference: datetime | None) -> str:
    reference = reference or datetime.now(UTC)
    return project_to_local(reference, timezone).local_date


def _zone(name: str) -> tzinfo:
    try:
        return pytz_timezone(name)
    except UnknownTimeZoneError as e:
        raise InvalidTimezoneError(f'Unknown timezone "{name}"') from e


def _to_utc(value: datetime, zone: tzinfo) -> datetime:
    """
    Convert a datetime to UTC, reading naive values as wall-clock time in `zone`.

    Ambiguous and non-existent wall-clock times (DST transitions) resolve to standard time. Raises `InvalidDateError` if the instant falls outside the supported years.
    """
    try:
        if value.tzinfo:
            return value.astimezone(UTC)
        return zone.localize(value, is_dst=False).astimezone(UTC)  # pyright: ignore
    except OverflowError as e:
        raise InvalidDateError(f"Date {value.isoformat()} is out of range") from e
