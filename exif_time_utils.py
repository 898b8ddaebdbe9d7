#!/usr/bin/env python3
"""
EXIF Time Utilities
Shared helpers for reading and writing capture timestamps and GPS tags in
piexif dictionaries.
"""

import re
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import piexif

from fixer_errors import MetadataError

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"
GPS_DATE_FORMAT = "%Y:%m:%d"

OFFSET_PATTERN = re.compile(r"^(?:(Z)|([+-])(\d{2})(?::?(\d{2}))?)$", re.IGNORECASE)


@dataclass(frozen=True)
class TimestampField:
    """Location of a date-time tag and its offset/sub-second companions."""

    name: str
    ifd: str
    tag: int
    offset_tag: int
    subsec_tag: int


# Lookup order for the capture timestamp. Companion tags always live in the Exif IFD.
CAPTURE_TIMESTAMP_FIELDS = (
    TimestampField(
        "DateTimeOriginal",
        "Exif",
        piexif.ExifIFD.DateTimeOriginal,
        piexif.ExifIFD.OffsetTimeOriginal,
        piexif.ExifIFD.SubSecTimeOriginal,
    ),
    TimestampField(
        "DateTimeDigitized",
        "Exif",
        piexif.ExifIFD.DateTimeDigitized,
        piexif.ExifIFD.OffsetTimeDigitized,
        piexif.ExifIFD.SubSecTimeDigitized,
    ),
    TimestampField(
        "DateTime",
        "0th",
        piexif.ImageIFD.DateTime,
        piexif.ExifIFD.OffsetTime,
        piexif.ExifIFD.SubSecTime,
    ),
)


@dataclass(frozen=True)
class CaptureTimestamp:
    """Capture time decoded from EXIF and the field it was read from."""

    moment: datetime
    field: TimestampField


def _to_text(value: Union[bytes, str, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    return value.strip().rstrip("\x00").strip()


def parse_exif_datetime(value: Union[bytes, str, None]) -> Optional[datetime]:
    """
    Parse an EXIF date-time value: '2018:05:21 23:30:00'

    Args:
        value: Raw tag value as returned by piexif (bytes) or a string

    Returns:
        Naive datetime or None if the value is empty or malformed
    """
    try:
        return datetime.strptime(_to_text(value), EXIF_DATETIME_FORMAT)
    except ValueError:
        return None


def format_exif_datetime(moment: datetime) -> str:
    """Format the wall-clock part of a datetime as an EXIF date-time string."""
    return moment.strftime(EXIF_DATETIME_FORMAT)


def parse_offset(value: Union[bytes, str, None]) -> Optional[timezone]:
    """
    Parse a GMT offset such as '+03:00', '-0530', '+12' or 'Z'.

    Args:
        value: Offset text (EXIF OffsetTime* value or user input)

    Returns:
        Fixed-offset timezone, or None if the value is empty or malformed
    """
    match = OFFSET_PATTERN.match(_to_text(value))
    if match is None:
        return None

    if match.group(1):
        return timezone.utc

    sign, hours, minutes = match.group(2), int(match.group(3)), int(match.group(4) or 0)
    if minutes >= 60:
        return None

    offset = timedelta(hours=hours, minutes=minutes)
    if offset >= timedelta(hours=24):
        return None

    return timezone(-offset if sign == "-" else offset)


def format_offset(offset: timedelta) -> str:
    """Format a UTC offset as '+HH:MM'."""
    total_minutes = int(offset.total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"


def _parse_subsec(value: Union[bytes, str, None]) -> int:
    """Convert SubSecTime digits ('5', '123', '000450') to microseconds."""
    digits = _to_text(value)
    if not digits.isdigit():
        return 0
    return int(digits[:6].ljust(6, "0"))


def read_capture_timestamp(exif_dict: Dict) -> Optional[CaptureTimestamp]:
    """
    Find the capture timestamp in a piexif dictionary.

    DateTimeOriginal is preferred, then DateTimeDigitized, then the image
    DateTime. The matching OffsetTime* tag makes the result timezone aware.

    Args:
        exif_dict: Dictionary returned by piexif.load

    Returns:
        CaptureTimestamp or None if no usable date-time tag exists
    """
    exif_ifd = exif_dict.get("Exif") or {}

    for field in CAPTURE_TIMESTAMP_FIELDS:
        ifd = exif_dict.get(field.ifd) or {}
        moment = parse_exif_datetime(ifd.get(field.tag))
        if moment is None:
            continue

        moment = moment.replace(microsecond=_parse_subsec(exif_ifd.get(field.subsec_tag)))

        offset = parse_offset(exif_ifd.get(field.offset_tag))
        if offset is not None:
            moment = moment.replace(tzinfo=offset)

        return CaptureTimestamp(moment, field)

    return None


def load_capture_timestamp(file_path: Path) -> Tuple[Dict, CaptureTimestamp]:
    """
    Decode a file's EXIF block and its capture timestamp.

    Args:
        file_path: Path to the JPEG file

    Returns:
        Tuple of (piexif dictionary, capture timestamp)

    Raises:
        MetadataError: If the file cannot be decoded or has no capture timestamp
    """
    try:
        exif_dict = piexif.load(str(file_path))
    except (OSError, ValueError, IndexError, struct.error) as error:
        raise MetadataError(f"Could not read EXIF from {file_path}: {error}") from error

    capture = read_capture_timestamp(exif_dict)
    if capture is None:
        raise MetadataError(f"Can't get capture date from EXIF of {file_path}")

    return exif_dict, capture


def apply_capture_timestamp(
    exif_dict: Dict, field: TimestampField, moment: datetime
) -> None:
    """
    Store a new capture timestamp in the tag it was originally read from.

    The offset companion tag is written for aware datetimes. The sub-second
    companion is written when the moment has microseconds or the tag already
    existed.
    """
    exif_ifd = exif_dict.setdefault("Exif", {})
    exif_dict.setdefault(field.ifd, {})[field.tag] = format_exif_datetime(moment).encode()

    if moment.utcoffset() is not None:
        exif_ifd[field.offset_tag] = format_offset(moment.utcoffset()).encode()

    if moment.microsecond or field.subsec_tag in exif_ifd:
        subsec = f"{moment.microsecond:06d}".rstrip("0") or "0"
        exif_ifd[field.subsec_tag] = subsec.encode()


def decimal_to_dms_rational(
    value: float,
) -> Tuple[Tuple[int, int], Tuple[int, int], Tuple[int, int]]:
    """
    Convert decimal degrees to EXIF degree/minute/second rationals.

    Seconds keep four decimal places. The sign is dropped; it is carried by
    the *Ref tag.
    """
    total = round(abs(value) * 3600 * 10000)
    degrees, remainder = divmod(total, 3600 * 10000)
    minutes, seconds = divmod(remainder, 60 * 10000)
    return ((degrees, 1), (minutes, 1), (seconds, 10000))


def build_gps_ifd(latitude: float, longitude: float, moment: datetime) -> Dict[int, object]:
    """
    Build a GPS IFD carrying a position and the time it was recorded.

    GPS date and time stamps are always UTC. A naive moment is taken as
    local system time.

    Args:
        latitude: Decimal latitude, negative for south
        longitude: Decimal longitude, negative for west
        moment: Time the position applies to

    Returns:
        Dictionary suitable for exif_dict["GPS"]
    """
    moment_utc = moment.astimezone(timezone.utc)

    if moment_utc.microsecond:
        seconds = (moment_utc.second * 1000000 + moment_utc.microsecond, 1000000)
    else:
        seconds = (moment_utc.second, 1)

    return {
        piexif.GPSIFD.GPSVersionID: (2, 2, 0, 0),
        piexif.GPSIFD.GPSLatitudeRef: b"N" if latitude >= 0 else b"S",
        piexif.GPSIFD.GPSLatitude: decimal_to_dms_rational(latitude),
        piexif.GPSIFD.GPSLongitudeRef: b"E" if longitude >= 0 else b"W",
        piexif.GPSIFD.GPSLongitude: decimal_to_dms_rational(longitude),
        piexif.GPSIFD.GPSTimeStamp: (
            (moment_utc.hour, 1),
            (moment_utc.minute, 1),
            seconds,
        ),
        piexif.GPSIFD.GPSDateStamp: moment_utc.strftime(GPS_DATE_FORMAT).encode(),
    }
