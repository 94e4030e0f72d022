"""Shared fixtures for the glyph camera test suite."""
from __future__ import annotations

from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from glyph_cam import CaptureError, DrawInstruction, FrameBuffer, Presenter


def solid_pixels(width: int, height: int, rgb: Tuple[int, int, int] = (100, 100, 100)) -> np.ndarray:
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[..., :3] = rgb
    pixels[..., 3] = 255
    return pixels


class FakeCapture:
    """Hands out queued frames; raises CaptureError once the queue is empty."""

    def __init__(self, frames: Sequence[Optional[FrameBuffer]]) -> None:
        self.frames = list(frames)
        self.reads: List[Tuple[int, int]] = []

    def read(self, width: int, height: int) -> Optional[FrameBuffer]:
        self.reads.append((width, height))
        if not self.frames:
            raise CaptureError("Permission denied")
        return self.frames.pop(0)


class RecordingPresenter(Presenter):
    def __init__(self) -> None:
        self.batches: List[Tuple[List[DrawInstruction], int, int]] = []

    def present(self, batch: Sequence[DrawInstruction], width: int, height: int) -> None:
        self.batches.append((list(batch), width, height))


@pytest.fixture
def make_frame() -> Callable[..., FrameBuffer]:
    """Build a solid RGBA frame, optionally overriding single pixels."""

    def _make(
        width: int = 8,
        height: int = 8,
        rgb: Tuple[int, int, int] = (100, 100, 100),
        overrides: Optional[dict] = None,
    ) -> FrameBuffer:
        pixels = solid_pixels(width, height, rgb)
        for (x, y), value in (overrides or {}).items():
            pixels[y, x, : len(value)] = value
        return FrameBuffer.from_rgba(pixels)

    return _make


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()
