"""
Configuration for pytest: human-readable test names and JPEG fixtures.

Test docstrings are displayed as test names in reports, using the technique from
https://medium.com/@dsmd90/python-displayname-analog-from-java-6a1d1ad3c468
"""

from pathlib import Path

import piexif
import pytest
from PIL import Image


def pytest_collection_modifyitems(items):
    """Modify test items to use docstrings as human-readable test names."""
    for item in items:
        docstring = item.function.__doc__
        if docstring:
            summary = next(
                (
                    line.strip()
                    for line in docstring.strip().splitlines()
                    if line.strip()
                ),
                None,
            )
            if summary:
                if hasattr(item, "callspec"):
                    # For parameterized tests, preserve parameter id from the original nodeid
                    start = item.nodeid.find("[")
                    parameter_part = item.nodeid[start:] if start != -1 else ""
                    item._nodeid = summary + parameter_part
                else:
                    item._nodeid = summary


def write_test_jpeg(
    file_path: Path,
    date_time_original: str = None,
    offset_time_original: str = None,
    date_time: str = None,
    subsec_time_original: str = None,
) -> Path:
    """
    Write a small real JPEG, optionally with EXIF date-time tags.

    Args:
        file_path: Where to write the image
        date_time_original: EXIF DateTimeOriginal, e.g. '2018:05:21 10:00:00'
        offset_time_original: EXIF OffsetTimeOriginal, e.g. '+00:00'
        date_time: 0th IFD DateTime
        subsec_time_original: EXIF SubSecTimeOriginal digits

    Returns:
        The written path
    """
    exif_dict = {"0th": {}, "Exif": {}, "GPS": {}}
    if date_time_original is not None:
        exif_dict["Exif"][piexif.ExifIFD.DateTimeOriginal] = date_time_original.encode()
    if offset_time_original is not None:
        exif_dict["Exif"][piexif.ExifIFD.OffsetTimeOriginal] = offset_time_original.encode()
    if subsec_time_original is not None:
        exif_dict["Exif"][piexif.ExifIFD.SubSecTimeOriginal] = subsec_time_original.encode()
    if date_time is not None:
        exif_dict["0th"][piexif.ImageIFD.DateTime] = date_time.encode()

    image = Image.new("RGB", (16, 16), color=(200, 120, 40))
    if exif_dict["0th"] or exif_dict["Exif"]:
        image.save(file_path, "JPEG", exif=piexif.dump(exif_dict))
    else:
        image.save(file_path, "JPEG")

    return file_path


@pytest.fixture
def make_jpeg():
    """Factory fixture writing real JPEG files with chosen EXIF timestamps."""
    return write_test_jpeg
