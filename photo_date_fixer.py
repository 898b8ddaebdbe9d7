#!/usr/bin/env python3
"""
Photo Date Fixer

Shifts the EXIF capture timestamp of every JPEG in a directory by a fixed
delta, optionally re-expressing it in another timezone and stamping a GPS
position, and writes the corrected copies to a destination directory.

The delta can be given directly or derived from one reference photo whose
real capture time is known.
"""

import argparse
import logging
import re
import struct
import sys
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import piexif

from exif_time_utils import apply_capture_timestamp, build_gps_ifd, load_capture_timestamp
from fixer_errors import PhotoDateFixerError, ProcessingError
from run_configuration import (
    DEFAULT_LOCATION,
    RunConfiguration,
    format_duration,
    parse_reference_time,
    resolve_configuration,
    resolve_time_delta,
)

LOGGER = logging.getLogger("photo_date_fixer")

# Flags taking a value; a following token starting with "-" is still their value
VALUE_FLAGS = ("-in", "-out", "-s", "-l", "-f", "-t", "-tz", "-d")


@dataclass(frozen=True)
class GpsPayload:
    """Position stamped into a photo and the time it applies to."""

    latitude: float
    longitude: float
    timestamp: datetime


@dataclass(frozen=True)
class ImageRecord:
    """Outcome of processing one image."""

    source_path: Path
    destination_path: Path
    captured_time: datetime
    corrected_time: datetime
    timestamp_field: str
    gps: Optional[GpsPayload] = None
    written: bool = False


class PhotoDateFixer:
    """Applies a resolved run configuration to every JPEG in the source directory."""

    IMAGE_NAME_PATTERN = re.compile(r"(.*)\.(jpe?g)", re.IGNORECASE)

    def __init__(self, configuration: RunConfiguration):
        """
        Initialize the fixer.

        Args:
            configuration: Resolved, immutable run configuration
        """
        self.configuration = configuration

    @classmethod
    def is_image_name(cls, file_name: str) -> bool:
        """Check if a file name looks like a JPEG: <name>.jpg or <name>.jpeg, any case."""
        return cls.IMAGE_NAME_PATTERN.fullmatch(file_name) is not None

    def destination_for(self, file_name: str) -> Path:
        """
        Build the destination path by inserting the suffix before the extension.

        Args:
            file_name: Name of a JPEG in the source directory

        Returns:
            Path inside the destination directory, extension case preserved
        """
        match = self.IMAGE_NAME_PATTERN.fullmatch(file_name)
        if match is None:
            raise ValueError(f"Not a JPEG file name: {file_name}")

        base_name, extension = match.groups()
        return self.configuration.destination_path / (
            f"{base_name}{self.configuration.name_suffix}.{extension}"
        )

    def find_image_files(self) -> List[Path]:
        """
        Find JPEG files directly inside the source directory.

        Subdirectories are skipped, not descended into.

        Returns:
            Sorted list of Path objects for matching files
        """
        try:
            directory_entries = sorted(self.configuration.source_path.iterdir())
        except OSError as error:
            raise ProcessingError(
                f"Could not list {self.configuration.source_path}: {error}"
            ) from error

        image_files = []
        for entry in directory_entries:
            if entry.is_dir():
                LOGGER.info("Skipping a dir without errors: %s", entry.name)
            elif self.is_image_name(entry.name):
                image_files.append(entry)
            else:
                LOGGER.info("Skipping %s", entry.name)

        return image_files

    def correct_time(self, captured_time: datetime) -> datetime:
        """
        Apply the configured timezone and delta to a capture time.

        Naive capture times are taken as local system time when converted to
        the target timezone.
        """
        if self.configuration.target_timezone is not None:
            captured_time = captured_time.astimezone(self.configuration.target_timezone)
        return captured_time + self.configuration.time_delta

    def process_file(self, file_path: Path) -> ImageRecord:
        """
        Correct a single image: read its capture time, shift it and write the copy.

        Args:
            file_path: Path to a JPEG in the source directory

        Returns:
            ImageRecord describing the change

        Raises:
            MetadataError: If the capture timestamp cannot be read
            ProcessingError: If the corrected copy cannot be written
        """
        exif_dict, capture = load_capture_timestamp(file_path)
        LOGGER.debug("%s: capture time read from %s", file_path.name, capture.field.name)

        corrected_time = self.correct_time(capture.moment)
        destination_path = self.destination_for(file_path.name)

        gps = None
        if self.configuration.set_gps:
            gps = GpsPayload(
                self.configuration.latitude, self.configuration.longitude, corrected_time
            )

        LOGGER.info(
            "%s%s => %s: %s => %s%s",
            "[DRY RUN] " if self.configuration.dry_run else "",
            file_path,
            destination_path,
            capture.moment,
            corrected_time,
            f", location: {gps.latitude:f},{gps.longitude:f}" if gps else "",
        )

        record = ImageRecord(
            source_path=file_path,
            destination_path=destination_path,
            captured_time=capture.moment,
            corrected_time=corrected_time,
            timestamp_field=capture.field.name,
            gps=gps,
        )

        if self.configuration.dry_run:
            return record

        apply_capture_timestamp(exif_dict, capture.field, corrected_time)
        if gps is not None:
            exif_dict["GPS"] = build_gps_ifd(gps.latitude, gps.longitude, gps.timestamp)

        self.write_corrected_copy(file_path, destination_path, exif_dict)

        return replace(record, written=True)

    def write_corrected_copy(
        self, source_path: Path, destination_path: Path, exif_dict: Dict
    ) -> None:
        """
        Copy the source JPEG to the destination with its EXIF segment replaced.

        Image data is copied unchanged; only the APP1 EXIF segment is re-encoded.
        """
        try:
            exif_bytes = piexif.dump(exif_dict)
        except (ValueError, TypeError, struct.error) as error:
            raise ProcessingError(f"Could not encode EXIF for {source_path}: {error}") from error

        try:
            piexif.insert(exif_bytes, str(source_path), str(destination_path))
        except (OSError, ValueError) as error:
            raise ProcessingError(
                f"Could not write {destination_path}: {error}"
            ) from error

    def process_directory(self) -> List[ImageRecord]:
        """
        Process every JPEG in the source directory, in name order.

        The first error aborts the batch and propagates to the caller.

        Returns:
            List of ImageRecord, one per processed file
        """
        if self.configuration.reference_file is not None:
            LOGGER.info(
                "Delta derived from %s, taken at %s",
                self.configuration.reference_file,
                self.configuration.reference_time,
            )

        image_files = self.find_image_files()
        LOGGER.info(
            "Found %d JPEG files in %s", len(image_files), self.configuration.source_path
        )

        return [self.process_file(file_path) for file_path in image_files]


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        description="Shift EXIF capture timestamps of JPEG photos taken with a misconfigured camera clock",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -f IMG_0001.JPG -t 2018-05-21T23:30:00+12:00 -i   # Print the delta
  %(prog)s -in photos -out fixed -d 1h30m                     # Add 1.5 hours
  %(prog)s -in photos -out fixed -d -2h45m -tz -05:00         # Subtract, move to GMT-5
  %(prog)s -in photos -s _fixed -l 53.0326,158.63075 -c       # Preview with location

Durations use h, m, s, ms, us, ns units. Negative values may be given either
as a separate argument (-d -1h) or attached with '=' (-d=-1h).
        """,
    )

    parser.add_argument(
        "-in", dest="source", default=".", help="source directory, default is current one"
    )
    parser.add_argument(
        "-out",
        dest="destination",
        default=".",
        help="destination directory, default is current one",
    )
    parser.add_argument(
        "-s",
        dest="suffix",
        default="",
        help="output file name suffix, required when source and destination match",
    )
    parser.add_argument(
        "-l",
        dest="location",
        default=DEFAULT_LOCATION,
        help="location where pictures were taken as 'lat,lon', empty string disables GPS",
    )
    parser.add_argument(
        "-i",
        dest="info",
        action="store_true",
        help=(
            "info mode, print time delta and exit; the delta is printed in the -d "
            "format (e.g. 1h30m0s) so it can be passed back to -d"
        ),
    )
    parser.add_argument("-f", dest="reference_file", default="", help="file to check date against")
    parser.add_argument(
        "-t",
        dest="reference_time",
        default="",
        help="real time of the reference file in RFC3339 format, e.g. 2018-05-21T23:30:00+12:00",
    )
    parser.add_argument(
        "-tz",
        dest="timezone",
        default="",
        help="timezone as GMT offset, e.g. +03:00 stands for MSK",
    )
    parser.add_argument(
        "-d",
        dest="delta",
        default="0",
        help="time delta to be applied, ignored if -f and -t are set",
    )
    parser.add_argument("-c", dest="dry_run", action="store_true", help="dry run")
    parser.add_argument("-v", dest="verbose", action="store_true", help="verbose logging")

    return parser


def attach_flag_values(arguments: List[str]) -> List[str]:
    """
    Attach the value of each value flag with '=' so argparse keeps
    negative values such as '-d -1h' or '-tz -05:00' as values.

    Args:
        arguments: Raw command-line arguments, without the program name

    Returns:
        Arguments with '<flag> <value>' pairs joined as '<flag>=<value>'
    """
    attached = []
    index = 0
    while index < len(arguments):
        argument = arguments[index]
        if argument in VALUE_FLAGS and index + 1 < len(arguments):
            attached.append(f"{argument}={arguments[index + 1]}")
            index += 2
        else:
            attached.append(argument)
            index += 1
    return attached


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the script."""
    if argv is None:
        argv = sys.argv[1:]
    parsed_arguments = build_argument_parser().parse_args(attach_flag_values(argv))

    logging.basicConfig(
        level=logging.DEBUG if parsed_arguments.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    LOGGER.info("Starting...")

    try:
        reference_time = None
        if parsed_arguments.reference_time:
            reference_time = parse_reference_time(parsed_arguments.reference_time)

        time_delta = resolve_time_delta(
            parsed_arguments.reference_file, reference_time, parsed_arguments.delta
        )

        if parsed_arguments.info:
            print(format_duration(time_delta))
            return 0

        configuration = resolve_configuration(
            parsed_arguments.source,
            parsed_arguments.destination,
            time_delta,
            name_suffix=parsed_arguments.suffix,
            location=parsed_arguments.location,
            timezone_offset=parsed_arguments.timezone,
            dry_run=parsed_arguments.dry_run,
            reference_file=parsed_arguments.reference_file,
            reference_time=reference_time,
        )

        records = PhotoDateFixer(configuration).process_directory()

    except PhotoDateFixerError as error:
        LOGGER.error("Error: %s", error)
        return 1

    LOGGER.info(
        "%s %d files, delta %s",
        "Would fix" if configuration.dry_run else "Fixed",
        len(records),
        format_duration(configuration.time_delta),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
