"""Render the synchronized instant as timezone-aware strings."""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Optional, Union
from zoneinfo import ZoneInfo

from server_time_sync.configuration import FormatConfig, initialize_config

DEFAULT_FORMAT = "YYYY-MM-DD HH:mm:ss"

TIMEZONE_PREFIXES = (
    "Africa/",
    "America/",
    "Antarctica/",
    "Arctic/",
    "Asia/",
    "Atlantic/",
    "Australia/",
    "Europe/",
    "Indian/",
    "Pacific/",
)
BASIC_TIMEZONES = ("UTC", "GMT", "Zulu")


@lru_cache(maxsize=32)
def get_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def to_zone(instant: datetime, tz: Optional[str] = None) -> datetime:
    """Convert an aware datetime to ``tz``, or to the system timezone if unset."""
    if tz:
        return instant.astimezone(get_zone(tz))
    return instant.astimezone()


def get_date_part(
    instant: datetime,
    part: str,
    tz: Optional[str] = None,
    pad: bool = True,
    use_12_hour: bool = False,
) -> str:
    """
    Get a calendar part of ``instant`` as seen in ``tz``.

    :param part: One of year, month, day, hour, minute, second.
    :param pad: Zero-pad to fixed width (4 for year, 2 otherwise).
    :param use_12_hour: Render hours on a 12-hour clock (0 becomes 12).
    """
    local = to_zone(instant, tz)
    value = getattr(local, part)
    if part == "hour" and use_12_hour:
        value = value % 12 or 12
    if not pad:
        return str(value)
    width = 4 if part == "year" else 2
    return f"{value:0{width}d}"


def get_am_pm(instant: datetime, tz: Optional[str] = None, uppercase: bool = True) -> str:
    period = "AM" if to_zone(instant, tz).hour < 12 else "PM"
    return period if uppercase else period.lower()


FORMAT_HANDLERS = MappingProxyType(
    {
        # Padded
        "YYYY": lambda date, tz: get_date_part(date, "year", tz, True),
        "MM": lambda date, tz: get_date_part(date, "month", tz, True),
        "DD": lambda date, tz: get_date_part(date, "day", tz, True),
        "HH": lambda date, tz: get_date_part(date, "hour", tz, True, False),
        "hh": lambda date, tz: get_date_part(date, "hour", tz, True, True),
        "mm": lambda date, tz: get_date_part(date, "minute", tz, True),
        "ss": lambda date, tz: get_date_part(date, "second", tz, True),
        # Non-padded
        "M": lambda date, tz: get_date_part(date, "month", tz, False),
        "D": lambda date, tz: get_date_part(date, "day", tz, False),
        "H": lambda date, tz: get_date_part(date, "hour", tz, False, False),
        "h": lambda date, tz: get_date_part(date, "hour", tz, False, True),
        "m": lambda date, tz: get_date_part(date, "minute", tz, False),
        "s": lambda date, tz: get_date_part(date, "second", tz, False),
        # AM/PM
        "A": lambda date, tz: get_am_pm(date, tz, True),
        "a": lambda date, tz: get_am_pm(date, tz, False),
    }
)

# Longest first so "MM" is matched before "M"
_TOKENS_BY_LENGTH = tuple(sorted(FORMAT_HANDLERS, key=len, reverse=True))


def format_date(instant: datetime, fmt: str, tz: Optional[str] = None) -> str:
    """
    Substitute every format token in ``fmt`` with its value for ``instant``.

    The format string is scanned once, left to right. At each position the
    longest token that matches is replaced; any other character is copied.
    """
    values = {}
    pieces = []
    i = 0
    while i < len(fmt):
        for token in _TOKENS_BY_LENGTH:
            if fmt.startswith(token, i):
                if token not in values:
                    values[token] = FORMAT_HANDLERS[token](instant, tz)
                pieces.append(values[token])
                i += len(token)
                break
        else:
            pieces.append(fmt[i])
            i += 1
    return "".join(pieces)


def is_valid_timezone(value) -> bool:
    """Syntactic check for an IANA timezone name. Does not consult the tz database."""
    if not isinstance(value, str):
        return False
    return value.startswith(TIMEZONE_PREFIXES) or value in BASIC_TIMEZONES


@dataclass(frozen=True)
class FormatOptions:
    timezone: Optional[str] = None
    fmt: str = DEFAULT_FORMAT

    @classmethod
    def resolve(
        cls,
        timezone_or_format: Optional[str] = None,
        fmt: Optional[str] = None,
        default_format: str = DEFAULT_FORMAT,
        default_timezone: Optional[str] = None,
    ) -> FormatOptions:
        """
        Resolve the optional (timezone, format) pair.

        With only the first argument, it is a timezone if it looks like one
        and a format string otherwise. With both, the first is the timezone.
        """
        if fmt is None:
            if timezone_or_format is None:
                return cls(default_timezone, default_format)
            if is_valid_timezone(timezone_or_format):
                return cls(timezone_or_format, default_format)
            return cls(default_timezone, timezone_or_format)
        return cls(timezone_or_format or default_timezone, fmt)


class TimeFormatter:
    """
    Format the current server time of a ServerClock.
    """

    @classmethod
    def from_config_file(
        cls, config_file: Union[str, Path], clock, **kwargs
    ) -> TimeFormatter:
        configs = initialize_config(config=config_file)
        combined_args = {**configs["TimeFormatter"], **kwargs}
        return cls(clock, **combined_args)

    def __init__(self, clock, config: Optional[FormatConfig] = None):
        """
        :param clock: Anything with a ``now_ms()`` method, usually a ServerClock.
        :param config: Default format and timezone.
        """
        self.clock = clock
        self.config = config or FormatConfig()

    def get_current_instant(self, timezone: Optional[str] = None) -> datetime:
        # The timezone only matters for display, the instant is the same
        return datetime.fromtimestamp(self.clock.now_ms() / 1000, tz=dt_timezone.utc)

    def format(
        self, timezone_or_format: Optional[str] = None, fmt: Optional[str] = None
    ) -> str:
        options = FormatOptions.resolve(
            timezone_or_format,
            fmt,
            default_format=self.config.default_format,
            default_timezone=self.config.default_timezone,
        )
        return self.format_with(options)

    def format_with(self, options: FormatOptions) -> str:
        instant = self.get_current_instant(options.timezone)
        return format_date(instant, options.fmt, options.timezone)
