"""Shared fixtures: a controllable clock and Pillow-built test images."""

import datetime
import io
from unittest.mock import patch

import PIL.Image
import pytest


class ManualClock:
    """A monotonic clock that only moves when a test advances it."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualWallClock:
    """Wall-clock counterpart returning aware UTC datetimes."""

    def __init__(self, start: datetime.datetime | None = None) -> None:
        self.now = start or datetime.datetime(2025, 10, 19, 9, 0, tzinfo=datetime.UTC)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


def build_image_bytes(
    size: tuple[int, int] = (8, 8),
    color: tuple[int, ...] = (200, 30, 30, 255),
    image_format: str = "PNG",
    mode: str = "RGBA",
) -> bytes:
    image = PIL.Image.new(mode, size, color)
    output_buffer = io.BytesIO()
    image.save(output_buffer, format=image_format)
    return output_buffer.getvalue()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def frozen_time():
    """
    A ``ManualClock`` standing in for ``time.time``, for code (such as the
    ``limits`` in-memory storage) that reads the wall clock directly.
    """
    wall_clock = ManualClock(start=1_760_864_400.0)
    with patch("time.time", wall_clock):
        yield wall_clock


@pytest.fixture
def manual_wall_clock() -> ManualWallClock:
    return ManualWallClock()


@pytest.fixture
def png_bytes() -> bytes:
    return build_image_bytes()


@pytest.fixture
def image_bytes_factory():
    return build_image_bytes
