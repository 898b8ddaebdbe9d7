#!/usr/bin/env python3
"""
Run Configuration

Turns raw command-line values into the immutable configuration consumed by
the photo date fixer: time delta, target timezone, GPS coordinates and
source/destination directories.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional, Tuple

from dateutil import parser as dtparse

from exif_time_utils import format_offset, load_capture_timestamp, parse_offset
from fixer_errors import ConfigurationError, TimeParsingError

LOGGER = logging.getLogger("photo_date_fixer")

DEFAULT_NAME_SUFFIX = "_date_fixed"
DEFAULT_LOCATION = "0.0,0.0"

# Microseconds per duration unit
DURATION_UNITS = {
    "ns": Decimal("0.001"),
    "us": Decimal(1),
    "µs": Decimal(1),
    "μs": Decimal(1),
    "ms": Decimal(1000),
    "s": Decimal(1000000),
    "m": Decimal(60 * 1000000),
    "h": Decimal(3600 * 1000000),
}
DURATION_COMPONENT = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|h|m|s)"
DURATION_PATTERN = re.compile(rf"([+-]?)((?:{DURATION_COMPONENT})+)")


@dataclass(frozen=True)
class RunConfiguration:
    """Everything the batch processor needs, resolved once at startup."""

    source_path: Path
    destination_path: Path
    name_suffix: str
    time_delta: timedelta
    target_timezone: Optional[timezone] = None
    latitude: float = 0.0
    longitude: float = 0.0
    set_gps: bool = False
    dry_run: bool = False
    reference_file: Optional[Path] = None
    reference_time: Optional[datetime] = None


def parse_duration(duration_string: str) -> timedelta:
    """
    Parse a signed duration string to timedelta.

    Supports formats like:
    - 1h30m
    - -2h45m10.5s
    - 300ms, 15us, 1500ns
    - 0

    Args:
        duration_string: Duration made of <number><unit> groups

    Returns:
        timedelta, truncated to microsecond precision

    Raises:
        TimeParsingError: If the format cannot be parsed
    """
    text = duration_string.strip()

    if text in ("0", "+0", "-0"):
        return timedelta(0)

    match = DURATION_PATTERN.fullmatch(text)
    if not match:
        raise TimeParsingError(f"Invalid duration format: {duration_string!r}")

    sign, body = match.group(1), match.group(2)
    total_microseconds = Decimal(0)

    for value_str, unit in re.findall(DURATION_COMPONENT, body):
        total_microseconds += Decimal(value_str) * DURATION_UNITS[unit]

    microseconds = int(total_microseconds)
    return timedelta(microseconds=-microseconds if sign == "-" else microseconds)


def format_duration(delta: timedelta) -> str:
    """
    Format a timedelta the way parse_duration reads it: '-2h45m10s', '1.5s', '300ms'.
    """
    total = delta // timedelta(microseconds=1)
    if total == 0:
        return "0s"

    sign = "-" if total < 0 else ""
    total = abs(total)

    if total < 1000000:
        if total % 1000 == 0:
            return f"{sign}{total // 1000}ms"
        return f"{sign}{total}us"

    hours, remainder = divmod(total, 3600 * 1000000)
    minutes, remainder = divmod(remainder, 60 * 1000000)
    seconds, microseconds = divmod(remainder, 1000000)

    text = sign
    if hours:
        text += f"{hours}h"
    if hours or minutes:
        text += f"{minutes}m"
    text += str(seconds)
    if microseconds:
        text += f".{microseconds:06d}".rstrip("0")
    return text + "s"


def parse_location(location_string: str) -> Tuple[float, float]:
    """
    Parse a 'lat,lon' string into two floats.

    Raises:
        ConfigurationError: If there are not exactly two numeric fields or
            the values are outside the valid coordinate range
    """
    fields = location_string.split(",")
    if len(fields) != 2:
        raise ConfigurationError(f"Can't parse location '{location_string}'")

    try:
        latitude, longitude = float(fields[0]), float(fields[1])
    except ValueError as error:
        raise ConfigurationError(
            f"Can't parse location '{location_string}': {error}"
        ) from error

    if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
        raise ConfigurationError(f"Location out of range: '{location_string}'")

    return latitude, longitude


def parse_timezone_offset(offset_string: str) -> Optional[timezone]:
    """
    Parse a GMT offset like '+03:00' into a fixed timezone.

    An empty string means timestamps keep the zone they were recorded in.

    Raises:
        ConfigurationError: If the offset is malformed
    """
    if not offset_string or not offset_string.strip():
        return None

    target_zone = parse_offset(offset_string)
    if target_zone is None:
        raise ConfigurationError(
            f"Invalid timezone offset '{offset_string}', expected e.g. +03:00"
        )
    return target_zone


def parse_reference_time(time_string: str) -> datetime:
    """
    Parse an RFC3339 timestamp such as 2018-05-21T23:30:00+12:00.

    Raises:
        TimeParsingError: If the value is malformed or has no UTC offset
    """
    try:
        reference_time = dtparse.isoparse(time_string)
    except ValueError as error:
        raise TimeParsingError(f"Invalid RFC3339 time '{time_string}': {error}") from error

    if reference_time.tzinfo is None:
        raise TimeParsingError(
            f"Time '{time_string}' must include a UTC offset, e.g. 2018-05-21T23:30:00+12:00"
        )
    return reference_time


def derive_time_delta(reference_file: Path, reference_time: datetime) -> timedelta:
    """
    Compute the delta between a reference file's capture time and the real time.

    Args:
        reference_file: JPEG whose capture time is known to be wrong
        reference_time: Real time the reference photo was taken

    Returns:
        reference_time - recorded capture time
    """
    _, capture = load_capture_timestamp(reference_file)
    recorded_time = capture.moment
    if recorded_time.tzinfo is None:
        recorded_time = recorded_time.astimezone()

    delta = reference_time - recorded_time
    LOGGER.info(
        "EXIF date %s is %s %s than %s",
        recorded_time.isoformat(),
        format_duration(abs(delta)),
        "earlier" if delta >= timedelta(0) else "later",
        reference_time.isoformat(),
    )
    return delta


def resolve_time_delta(
    reference_file: Optional[str], reference_time: Optional[datetime], delta_string: str
) -> timedelta:
    """
    Work out the time delta to apply.

    A reference file together with an already parsed reference time overrides
    the explicit delta. Giving only one of the two is an error.
    """
    if reference_file or reference_time is not None:
        if not reference_file or reference_time is None:
            raise ConfigurationError(
                "Both a reference file (-f) and a reference time (-t) are required"
            )
        delta = derive_time_delta(Path(reference_file), reference_time)
        LOGGER.info("Delta is %s", format_duration(delta))
        return delta

    return parse_duration(delta_string)


def resolve_configuration(
    source_path: str,
    destination_path: str,
    time_delta: timedelta,
    name_suffix: str = "",
    location: str = DEFAULT_LOCATION,
    timezone_offset: str = "",
    dry_run: bool = False,
    reference_file: Optional[str] = None,
    reference_time: Optional[datetime] = None,
) -> RunConfiguration:
    """
    Validate the remaining flags and build the run configuration.

    Creates the destination directory when it does not exist yet.

    Raises:
        ConfigurationError: If any value is invalid
    """
    source = Path(source_path)
    if not source.is_dir():
        raise ConfigurationError(f"Source path does not exist: {source_path}")

    destination = Path(destination_path)
    if source.resolve() == destination.resolve() and not name_suffix:
        name_suffix = DEFAULT_NAME_SUFFIX
        LOGGER.info(
            "Source and destination directories match but no suffix is defined, "
            "using default one: %s",
            name_suffix,
        )

    if not destination.exists():
        LOGGER.info("Creating output directory '%s'", destination)
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise ConfigurationError(
                f"Could not create output directory '{destination}': {error}"
            ) from error
    elif not destination.is_dir():
        raise ConfigurationError(f"Destination is not a directory: {destination_path}")

    set_gps = bool(location)
    latitude, longitude = parse_location(location) if set_gps else (0.0, 0.0)

    target_zone = parse_timezone_offset(timezone_offset)
    if target_zone is not None:
        LOGGER.info(
            "Going to set timezone to GMT%s", format_offset(target_zone.utcoffset(None))
        )

    return RunConfiguration(
        source_path=source,
        destination_path=destination,
        name_suffix=name_suffix,
        time_delta=time_delta,
        target_timezone=target_zone,
        latitude=latitude,
        longitude=longitude,
        set_gps=set_gps,
        dry_run=dry_run,
        reference_file=Path(reference_file) if reference_file else None,
        reference_time=reference_time,
    )

