"""Glyph camera.

Sample a live webcam feed on a coarse grid and redraw every cell as a colored
glyph. Glyphs follow the brightness of the cell, colors follow a fixed
three-band scheme with a disc in the middle band, and cells that changed since
the previous frame are drawn at full opacity while static cells are dimmed.
"""
from __future__ import annotations

import argparse
from collections.abc import Sequence as SequenceABC
from dataclasses import dataclass
from enum import Enum, IntEnum
import logging
import math
import select
import shutil
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TextIO, Tuple

import cv2  # type: ignore
import numpy as np
from PIL import Image, ImageDraw, ImageFont  # type: ignore

try:  # Windows-specific keyboard polling
    import msvcrt  # type: ignore
except ImportError:  # pragma: no cover - non-Windows runtimes
    msvcrt = None  # type: ignore

try:  # POSIX terminal helpers for runtime controls
    import termios
    import tty
except ImportError:  # pragma: no cover - Windows runtimes
    termios = None  # type: ignore
    tty = None  # type: ignore

logger = logging.getLogger(__name__)

DEFAULT_PALETTE = " @%#*+=-:. "
GLYPH_SIZE = 4
MOTION_THRESHOLD = 8
BRIGHTNESS_FLOOR = 15
LIGHTNESS_BOUNDS = (30.0, 80.0)
MOVING_OPACITY = 1.0
STATIC_OPACITY = 0.3
BACKGROUND = (0, 0, 0)


class GlyphCamError(Exception):
    """Base class for glyph camera errors."""


class ConfigError(GlyphCamError, ValueError):
    """Raised at startup when a configuration value is unusable."""


class CaptureError(GlyphCamError, RuntimeError):
    """Raised when the camera cannot be opened or read."""


# --- Configuration -----------------------------------------------------------


@dataclass(frozen=True)
class HueSat:
    hue: float
    saturation: float


@dataclass(frozen=True)
class ZoneScheme:
    """Hue/saturation pairs for the three bands and the middle-band disc."""

    top: HueSat = HueSat(25.0, 100.0)
    disc: HueSat = HueSat(240.0, 100.0)
    middle: HueSat = HueSat(0.0, 0.0)
    bottom: HueSat = HueSat(130.0, 90.0)

    def tones(self) -> Dict[str, HueSat]:
        return {"top": self.top, "disc": self.disc, "middle": self.middle, "bottom": self.bottom}


DEFAULT_ZONES = ZoneScheme()


@dataclass(frozen=True)
class TranscoderConfig:
    glyph_size: int = GLYPH_SIZE
    palette: str = DEFAULT_PALETTE
    motion_threshold: float = MOTION_THRESHOLD
    brightness_floor: float = BRIGHTNESS_FLOOR
    lightness_min: float = LIGHTNESS_BOUNDS[0]
    lightness_max: float = LIGHTNESS_BOUNDS[1]
    zones: ZoneScheme = DEFAULT_ZONES
    moving_opacity: float = MOVING_OPACITY
    static_opacity: float = STATIC_OPACITY

    def __post_init__(self) -> None:
        self.validate()

    @property
    def lightness_bounds(self) -> Tuple[float, float]:
        return (self.lightness_min, self.lightness_max)

    def validate(self) -> None:
        if isinstance(self.glyph_size, bool) or not isinstance(self.glyph_size, int) or self.glyph_size < 1:
            raise ConfigError(f"Glyph size must be a positive integer, got {self.glyph_size!r}.")
        if len(self.palette) < 2:
            raise ConfigError("The palette must contain at least two characters.")
        if not 0 <= self.motion_threshold <= 255:
            raise ConfigError(f"Motion threshold must be within 0-255, got {self.motion_threshold}.")
        if not 0 <= self.brightness_floor < 255:
            raise ConfigError(f"Brightness floor must be within 0-254, got {self.brightness_floor}.")
        if not 0 <= self.lightness_min <= self.lightness_max <= 100:
            raise ConfigError(
                f"Lightness bounds must satisfy 0 <= min <= max <= 100, got {self.lightness_min}-{self.lightness_max}."
            )
        for name, tone in self.zones.tones().items():
            if not 0 <= tone.hue <= 360:
                raise ConfigError(f"Hue for the {name} zone must be within 0-360, got {tone.hue}.")
            if not 0 <= tone.saturation <= 100:
                raise ConfigError(f"Saturation for the {name} zone must be within 0-100, got {tone.saturation}.")
        for name in ("moving_opacity", "static_opacity"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name.replace('_', ' ').capitalize()} must be within 0-1, got {value}.")


# --- Data model --------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class FrameBuffer:
    """Read-only RGBA pixels of one frame, flat and row-major."""

    data: np.ndarray
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.data is None:
            data = np.zeros(0, dtype=np.uint8)
        else:
            data = np.ascontiguousarray(self.data, dtype=np.uint8).reshape(-1)
        data.flags.writeable = False
        object.__setattr__(self, "data", data)

    @classmethod
    def empty(cls) -> "FrameBuffer":
        return cls(np.zeros(0, dtype=np.uint8), 0, 0)

    @classmethod
    def from_rgba(cls, pixels: np.ndarray) -> "FrameBuffer":
        height, width = pixels.shape[:2]
        return cls(pixels.reshape(-1), width, height)

    @classmethod
    def from_bgr(cls, frame: np.ndarray) -> "FrameBuffer":
        return cls.from_rgba(cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA))

    @property
    def is_valid(self) -> bool:
        return self.width > 0 and self.height > 0 and self.data.size == self.width * self.height * 4

    def same_shape(self, other: "FrameBuffer") -> bool:
        return (
            self.width == other.width
            and self.height == other.height
            and self.data.size == other.data.size
        )

    def pixels(self) -> np.ndarray:
        return self.data.reshape(self.height, self.width, 4)

    def copy(self) -> "FrameBuffer":
        return FrameBuffer(self.data.copy(), self.width, self.height)


@dataclass(frozen=True)
class HSLColor:
    hue: float
    saturation: float
    lightness: float


@dataclass(frozen=True)
class DrawInstruction:
    x: int
    y: int
    glyph: str
    color: HSLColor
    opacity: float


class GlyphBatch(SequenceABC):
    """One tick's draw instructions held as parallel arrays.

    Indexing or iterating yields ``DrawInstruction`` values, so a batch reads
    like a list. Presenters use the arrays directly and draw the whole grid in
    a few numpy operations. ``indices`` point into the ``glyphs`` table.
    """

    def __init__(
        self,
        xs: Any,
        ys: Any,
        glyphs: Sequence[str],
        indices: Any,
        hue: Any,
        saturation: Any,
        lightness: Any,
        opacity: Any,
    ) -> None:
        self.xs = np.asarray(xs, dtype=np.int64).reshape(-1)
        self.ys = np.asarray(ys, dtype=np.int64).reshape(-1)
        self.glyphs = tuple(glyphs)
        self.indices = np.asarray(indices, dtype=np.int64).reshape(-1)
        self.hue = np.asarray(hue, dtype=np.float64).reshape(-1)
        self.saturation = np.asarray(saturation, dtype=np.float64).reshape(-1)
        self.lightness = np.asarray(lightness, dtype=np.float64).reshape(-1)
        self.opacity = np.asarray(opacity, dtype=np.float64).reshape(-1)

    @classmethod
    def empty(cls, glyphs: Sequence[str] = ()) -> "GlyphBatch":
        return cls([], [], glyphs, [], [], [], [], [])

    @classmethod
    def from_instructions(cls, items: Iterable[DrawInstruction]) -> "GlyphBatch":
        if isinstance(items, GlyphBatch):
            return items
        items = list(items)
        glyphs = list(dict.fromkeys(item.glyph for item in items))
        lookup = {glyph: n for n, glyph in enumerate(glyphs)}
        return cls(
            [item.x for item in items],
            [item.y for item in items],
            glyphs,
            [lookup[item.glyph] for item in items],
            [item.color.hue for item in items],
            [item.color.saturation for item in items],
            [item.color.lightness for item in items],
            [item.opacity for item in items],
        )

    def __len__(self) -> int:
        return int(self.xs.size)

    def __getitem__(self, index: Any) -> Any:
        if isinstance(index, slice):
            return [self[i] for i in range(len(self))[index]]
        i = range(len(self))[index]
        return DrawInstruction(
            int(self.xs[i]),
            int(self.ys[i]),
            self.glyphs[int(self.indices[i])],
            HSLColor(float(self.hue[i]), float(self.saturation[i]), float(self.lightness[i])),
            float(self.opacity[i]),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SequenceABC) or isinstance(other, str):
            return NotImplemented
        return list(self) == list(other)

    __hash__ = None  # type: ignore[assignment]

    def glyph_chars(self) -> np.ndarray:
        return np.array(self.glyphs, dtype="<U1")[self.indices] if self.glyphs else np.array([], dtype="<U1")

    def rgb(self) -> np.ndarray:
        return hsl_to_rgb(self.hue, self.saturation, self.lightness)


class Zone(IntEnum):
    TOP = 0
    MIDDLE = 1
    BOTTOM = 2


def hsl_to_rgb(hue: Any, saturation: Any, lightness: Any) -> np.ndarray:
    """Convert HSL (degrees, percent, percent) to an (N, 3) uint8 RGB array."""
    hls = np.stack(
        [
            np.asarray(hue, dtype=np.float32).reshape(-1),
            np.asarray(lightness, dtype=np.float32).reshape(-1) / 100.0,
            np.asarray(saturation, dtype=np.float32).reshape(-1) / 100.0,
        ],
        axis=-1,
    )
    if hls.shape[0] == 0:
        return np.zeros((0, 3), dtype=np.uint8)
    rgb = cv2.cvtColor(np.ascontiguousarray(hls.reshape(-1, 1, 3)), cv2.COLOR_HLS2RGB)
    return np.clip(np.rint(rgb.reshape(-1, 3) * 255.0), 0, 255).astype(np.uint8)


# --- Sampling and glyphs -------------------------------------------------------


def sample(frame: FrameBuffer, x: int, y: int) -> Tuple[int, int, int, float]:
    i = (y * frame.width + x) * 4
    r = int(frame.data[i])
    g = int(frame.data[i + 1])
    b = int(frame.data[i + 2])
    return r, g, b, (r + g + b) / 3


def grid_axes(width: int, height: int, step: int) -> Tuple[np.ndarray, np.ndarray]:
    return np.arange(0, width, step), np.arange(0, height, step)


def sample_grid(frame: FrameBuffer, step: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Top-left sample of every cell as (rows, cols) arrays of r, g, b and avg."""
    cells = frame.pixels()[::step, ::step]
    r = cells[..., 0].astype(np.int32)
    g = cells[..., 1].astype(np.int32)
    b = cells[..., 2].astype(np.int32)
    return r, g, b, (r + g + b) / 3


def glyph_index(avg: Any, palette_length: int) -> Any:
    """Palette index for a brightness; bright samples land near the start."""
    top = palette_length - 1
    idx = np.floor((np.asarray(avg, dtype=np.float64) / 255.0) * top).astype(np.int64)
    result = top - idx
    if np.ndim(result) == 0:
        return int(result)
    return result


def glyph_for(avg: float, palette: Sequence[str]) -> str:
    return palette[glyph_index(avg, len(palette))]


# --- Zone colors ---------------------------------------------------------------


def lightness_for(
    brightness: Any,
    low: float = LIGHTNESS_BOUNDS[0],
    high: float = LIGHTNESS_BOUNDS[1],
) -> Any:
    lit = np.clip(np.asarray(brightness, dtype=np.float64) / 255.0 * 100.0, low, high)
    if np.ndim(lit) == 0:
        return float(lit)
    return lit


def zone_for(y: float, height: float) -> Zone:
    if y < height / 3:
        return Zone.TOP
    if y < (height / 3) * 2:
        return Zone.MIDDLE
    return Zone.BOTTOM


def zone_grid(ys: np.ndarray, height: float) -> np.ndarray:
    ys = np.asarray(ys)
    return np.where(
        ys < height / 3,
        int(Zone.TOP),
        np.where(ys < (height / 3) * 2, int(Zone.MIDDLE), int(Zone.BOTTOM)),
    )


def in_disc(x: float, y: float, width: float, height: float) -> bool:
    dist = math.sqrt((x - width / 2) ** 2 + (y - height / 2) ** 2)
    return dist < height / 6


def zone_tone(zone: Zone, inside_disc: bool, scheme: ZoneScheme = DEFAULT_ZONES) -> HueSat:
    if zone is Zone.TOP:
        return scheme.top
    if zone is Zone.MIDDLE:
        return scheme.disc if inside_disc else scheme.middle
    return scheme.bottom


def color_for(
    x: float,
    y: float,
    width: float,
    height: float,
    brightness: float,
    scheme: ZoneScheme = DEFAULT_ZONES,
    lightness_bounds: Tuple[float, float] = LIGHTNESS_BOUNDS,
) -> HSLColor:
    lit = lightness_for(brightness, *lightness_bounds)
    tone = zone_tone(zone_for(y, height), in_disc(x, y, width, height), scheme)
    return HSLColor(tone.hue, tone.saturation, lit)


def color_grid(
    xs: np.ndarray,
    ys: np.ndarray,
    width: float,
    height: float,
    brightness: np.ndarray,
    scheme: ZoneScheme = DEFAULT_ZONES,
    lightness_bounds: Tuple[float, float] = LIGHTNESS_BOUNDS,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Vectorized color_for over a cell grid; returns hue, saturation, lightness."""
    grid_x, grid_y = np.meshgrid(xs, ys)
    zones = zone_grid(grid_y, height)
    dist = np.sqrt((grid_x - width / 2) ** 2 + (grid_y - height / 2) ** 2)
    top = zones == Zone.TOP
    middle = zones == Zone.MIDDLE
    disc = middle & (dist < height / 6)
    conditions = [top, disc, middle]
    hue = np.select(conditions, [scheme.top.hue, scheme.disc.hue, scheme.middle.hue], scheme.bottom.hue)
    sat = np.select(
        conditions,
        [scheme.top.saturation, scheme.disc.saturation, scheme.middle.saturation],
        scheme.bottom.saturation,
    )
    lit = lightness_for(brightness, *lightness_bounds)
    return hue.astype(np.float64), sat.astype(np.float64), np.asarray(lit, dtype=np.float64)


# --- Motion --------------------------------------------------------------------


class MotionDetector:
    """Flags cells whose green channel moved since the previous frame."""

    def __init__(self, threshold: float = MOTION_THRESHOLD) -> None:
        self.threshold = threshold
        self._history: Optional[FrameBuffer] = None

    @property
    def history(self) -> Optional[FrameBuffer]:
        return self._history

    def matches(self, frame: FrameBuffer) -> bool:
        return self._history is not None and self._history.same_shape(frame)

    def invalidate(self) -> None:
        if self._history is not None:
            logger.debug("Motion history discarded.")
        self._history = None

    def adjust_threshold(self, delta: float) -> float:
        self.threshold = float(np.clip(self.threshold + delta, 0, 255))
        return self.threshold

    def is_moving(self, frame: FrameBuffer, x: int, y: int) -> bool:
        if not self.matches(frame):
            return False
        i = (y * frame.width + x) * 4 + 1
        return abs(int(frame.data[i]) - int(self._history.data[i])) > self.threshold

    def motion_mask(self, frame: FrameBuffer, step: int) -> np.ndarray:
        if not frame.is_valid:
            return np.zeros((0, 0), dtype=bool)
        if not self.matches(frame):
            rows = len(range(0, frame.height, step))
            cols = len(range(0, frame.width, step))
            return np.zeros((rows, cols), dtype=bool)
        current = frame.pixels()[::step, ::step, 1].astype(np.int16)
        previous = self._history.pixels()[::step, ::step, 1].astype(np.int16)
        return np.abs(current - previous) > self.threshold

    def update(self, frame: FrameBuffer) -> None:
        self._history = frame.copy()

    def step(self, frame: FrameBuffer, grid_step: int) -> np.ndarray:
        """Classify one frame, then keep it as the history for the next one."""
        if self._history is not None and not self.matches(frame):
            logger.debug("Frame size changed to %dx%d.", frame.width, frame.height)
            self.invalidate()
        mask = self.motion_mask(frame, grid_step)
        self.update(frame)
        return mask


# --- Transcoding and the render loop -------------------------------------------


class GlyphTranscoder:
    def __init__(self, config: Optional[TranscoderConfig] = None, detector: Optional[MotionDetector] = None) -> None:
        self.config = config or TranscoderConfig()
        self.detector = detector or MotionDetector(self.config.motion_threshold)

    def transcode(self, frame: Optional[FrameBuffer]) -> GlyphBatch:
        if frame is None or not frame.is_valid:
            return GlyphBatch.empty(self.config.palette)
        cfg = self.config
        step = cfg.glyph_size
        _, _, _, avg = sample_grid(frame, step)
        moving = self.detector.step(frame, step)

        visible = avg > cfg.brightness_floor
        if not np.any(visible):
            return GlyphBatch.empty(cfg.palette)

        xs, ys = grid_axes(frame.width, frame.height, step)
        indices = glyph_index(avg, len(cfg.palette))
        hue, sat, lit = color_grid(xs, ys, frame.width, frame.height, avg, cfg.zones, cfg.lightness_bounds)
        opacity = np.where(moving, cfg.moving_opacity, cfg.static_opacity)

        rows, cols = np.nonzero(visible)
        return GlyphBatch(
            xs[cols],
            ys[rows],
            cfg.palette,
            indices[rows, cols],
            hue[rows, cols],
            sat[rows, cols],
            lit[rows, cols],
            opacity[rows, cols],
        )


class LoopState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


def report_to_stderr(message: str) -> None:
    print(message, file=sys.stderr)


class RenderLoop:
    """One capture -> transcode -> present cycle per tick."""

    def __init__(
        self,
        capture: Any,
        presenter: "Presenter",
        transcoder: GlyphTranscoder,
        width: int,
        height: int,
        report_error: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.capture = capture
        self.presenter = presenter
        self.transcoder = transcoder
        self.width = width
        self.height = height
        self.state = LoopState.IDLE
        self.report_error = report_error or report_to_stderr

    def start(self) -> None:
        if self.state is not LoopState.IDLE:
            raise RuntimeError(f"Render loop cannot start from the {self.state.value} state.")
        self.state = LoopState.RUNNING
        logger.debug("Render loop running at %dx%d.", self.width, self.height)

    def handle_resize(self, width: int, height: int) -> None:
        if (width, height) == (self.width, self.height):
            return
        self.width = width
        self.height = height
        self.transcoder.detector.invalidate()

    def tick(self) -> Optional[GlyphBatch]:
        if self.state is not LoopState.RUNNING:
            return None
        try:
            frame = self.capture.read(self.width, self.height)
        except CaptureError as exc:
            self.state = LoopState.STOPPED
            self.report_error(f"Camera error: {exc}")
            return None

        batch = self.transcoder.transcode(frame)
        if frame is not None and frame.is_valid:
            self.presenter.present(batch, frame.width, frame.height)
        else:
            self.presenter.present(batch, self.width, self.height)
        return batch


def run_loop(
    loop: RenderLoop,
    fps: float = 0.0,
    before_tick: Optional[Callable[[], bool]] = None,
) -> LoopState:
    """Tick until the loop stops or before_tick() returns False.

    Hosts use before_tick to poll resize and key events between frames.
    """
    frame_interval = 0.0 if fps <= 0 else 1.0 / fps
    next_frame_time = time.perf_counter()

    if loop.state is LoopState.IDLE:
        loop.start()
    while loop.state is LoopState.RUNNING:
        if before_tick is not None and not before_tick():
            break
        if frame_interval > 0:
            now = time.perf_counter()
            if now < next_frame_time:
                time.sleep(next_frame_time - now)
            next_frame_time = max(next_frame_time + frame_interval, time.perf_counter())
        loop.tick()
    return loop.state


# --- Capture -----------------------------------------------------------------


def compute_interpolation(original_width: int, target_width: int) -> int:
    return cv2.INTER_AREA if target_width < original_width else cv2.INTER_LINEAR


def frame_to_buffer(frame: np.ndarray, width: int, height: int) -> FrameBuffer:
    original_height, original_width = frame.shape[:2]
    if (original_width, original_height) != (width, height):
        frame = cv2.resize(frame, (width, height), interpolation=compute_interpolation(original_width, width))
    return FrameBuffer.from_bgr(frame)


class CameraCapture:
    """OpenCV camera scaled to the requested canvas size on every read."""

    def __init__(self, device: int = 0) -> None:
        self.device = device
        self._capture: Optional[Any] = None

    def open(self) -> None:
        capture = cv2.VideoCapture(self.device)
        if not capture.isOpened():
            capture.release()
            raise CaptureError(f"Could not open camera device {self.device}.")
        self._capture = capture
        logger.debug("Opened camera device %s.", self.device)

    def read(self, width: int, height: int) -> FrameBuffer:
        if self._capture is None:
            raise CaptureError("Camera is not open.")
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise CaptureError("Failed to read from camera.")
        try:
            return frame_to_buffer(frame, width, height)
        except cv2.error as exc:
            raise CaptureError(f"Unsupported camera frame with shape {frame.shape}: {exc}") from exc

    def release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None


# --- Presenters ----------------------------------------------------------------


class Presenter:
    """Clears a surface and draws one batch of glyphs on it."""

    def present(self, batch: Sequence[DrawInstruction], width: int, height: int) -> None:
        raise NotImplementedError


def batch_rgb(batch: Sequence[DrawInstruction]) -> np.ndarray:
    return GlyphBatch.from_instructions(batch).rgb()


def composite_colors(
    batch: Sequence[DrawInstruction], background: Tuple[int, int, int] = BACKGROUND
) -> np.ndarray:
    """Flatten each glyph's opacity against a solid background."""
    batch = GlyphBatch.from_instructions(batch)
    rgb = batch.rgb().astype(np.float32)
    if rgb.shape[0] == 0:
        return rgb.astype(np.uint8)
    alpha = batch.opacity.astype(np.float32)[:, None]
    bg = np.array(background, dtype=np.float32)
    return np.clip(np.rint(rgb * alpha + bg * (1.0 - alpha)), 0, 255).astype(np.uint8)


def render_ansi(chars: np.ndarray, colors: np.ndarray, background: Tuple[int, int, int] = BACKGROUND) -> str:
    bg_code = "\x1b[48;2;{};{};{}m".format(*background)
    lines: list[str] = []
    for char_row, color_row in zip(chars, colors):
        parts: list[str] = [bg_code]
        active: Optional[Tuple[int, ...]] = None
        for ch, color in zip(char_row.tolist(), color_row.tolist()):
            code = tuple(color)
            if ch != " " and active != code:
                parts.append(f"\x1b[38;2;{code[0]};{code[1]};{code[2]}m")
                active = code
            parts.append(ch)
        parts.append("\x1b[0m")
        lines.append("".join(parts))
    return "\n".join(lines)


class TerminalPresenter(Presenter):
    """One terminal character per cell in 24-bit color.

    Terminal glyphs are always upright, so the selfie mirror only reverses the
    column order.
    """

    def __init__(
        self,
        glyph_size: int,
        mirror: bool = True,
        background: Tuple[int, int, int] = BACKGROUND,
        stream: Optional[TextIO] = None,
    ) -> None:
        self.glyph_size = glyph_size
        self.mirror = mirror
        self.background = background
        self.stream = stream or sys.stdout

    def layout(
        self, batch: Sequence[DrawInstruction], width: int, height: int
    ) -> Tuple[np.ndarray, np.ndarray]:
        cols = max(1, math.ceil(width / self.glyph_size))
        rows = max(1, math.ceil(height / self.glyph_size))
        chars = np.full((rows, cols), " ", dtype="<U1")
        colors = np.empty((rows, cols, 3), dtype=np.uint8)
        colors[:] = self.background
        batch = GlyphBatch.from_instructions(batch)
        if len(batch):
            row = batch.ys // self.glyph_size
            col = batch.xs // self.glyph_size
            if self.mirror:
                col = cols - 1 - col
            chars[row, col] = batch.glyph_chars()
            colors[row, col] = composite_colors(batch, self.background)
        return chars, colors

    def present(self, batch: Sequence[DrawInstruction], width: int, height: int) -> None:
        chars, colors = self.layout(batch, width, height)
        self.stream.write("\x1b[H")
        self.stream.write(render_ansi(chars, colors, self.background))
        self.stream.write("\x1b[0m")
        self.stream.write("\x1b[J")  # Clear anything below the current frame
        self.stream.flush()


def resolve_font(font_path: Optional[Path], font_size: int) -> ImageFont.ImageFont:
    if font_path:
        try:
            return ImageFont.truetype(str(font_path), font_size)
        except OSError as exc:
            raise ConfigError(f"Could not load font at {font_path}: {exc}") from exc
    for candidate in ("DejaVuSansMono-Bold.ttf", "C:\\Windows\\Fonts\\consolab.ttf"):
        try:
            return ImageFont.truetype(candidate, font_size)
        except OSError:
            continue
    return ImageFont.load_default()


class ImagePresenter(Presenter):
    """Composite glyph masks onto an RGB canvas.

    With mirror enabled each glyph is flipped before it is drawn and the whole
    canvas is flipped afterwards, so the output is a selfie view whose glyphs
    still read left to right.
    """

    def __init__(
        self,
        glyph_size: int,
        font: Optional[ImageFont.ImageFont] = None,
        mirror: bool = True,
        background: Tuple[int, int, int] = BACKGROUND,
    ) -> None:
        self.glyph_size = glyph_size
        self.font = font or resolve_font(None, glyph_size)
        self.mirror = mirror
        self.background = background
        self.canvas = np.zeros((0, 0, 3), dtype=np.uint8)
        self._masks: Dict[Tuple[str, bool], np.ndarray] = {}

    def glyph_mask(self, glyph: str) -> np.ndarray:
        key = (glyph, self.mirror)
        mask = self._masks.get(key)
        if mask is None:
            image = Image.new("L", (self.glyph_size, self.glyph_size), 0)
            draw = ImageDraw.Draw(image)
            draw.text((0, 0), glyph, font=self.font, fill=255)
            if self.mirror:
                image = image.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
            mask = np.asarray(image, dtype=np.float32) / 255.0
            self._masks[key] = mask
        return mask

    def clear(self, width: int, height: int) -> np.ndarray:
        canvas = np.empty((height, width, 3), dtype=np.float32)
        canvas[:] = self.background
        return canvas

    def glyph_atlas(self, glyphs: Sequence[str]) -> np.ndarray:
        return np.stack([self.glyph_mask(glyph) for glyph in glyphs])

    def present(self, batch: Sequence[DrawInstruction], width: int, height: int) -> None:
        batch = GlyphBatch.from_instructions(batch)
        size = self.glyph_size
        rows = max(1, math.ceil(height / size))
        cols = max(1, math.ceil(width / size))
        # Per-cell alpha tiles and colors, stitched into one canvas-sized layer.
        alpha = np.zeros((rows, cols, size, size), dtype=np.float32)
        color = np.zeros((rows, cols, 3), dtype=np.float32)
        if len(batch):
            row = batch.ys // size
            col = batch.xs // size
            atlas = self.glyph_atlas(batch.glyphs)
            alpha[row, col] = atlas[batch.indices] * batch.opacity.astype(np.float32)[:, None, None]
            color[row, col] = batch.rgb()
        alpha = alpha.transpose(0, 2, 1, 3).reshape(rows * size, cols * size)[:height, :width, None]
        color = np.repeat(np.repeat(color, size, axis=0), size, axis=1)[:height, :width]

        canvas = self.clear(width, height)
        canvas = canvas * (1.0 - alpha) + color * alpha
        frame = np.clip(np.rint(canvas), 0, 255).astype(np.uint8)
        if self.mirror:
            frame = cv2.flip(frame, 1)
        self.canvas = frame


# --- Runtime controls ----------------------------------------------------------


class ControlPoller:
    """Non-blocking key polling that works on Windows and most POSIX shells."""

    def __init__(self) -> None:
        self.mode = "none"
        self.fd: Optional[int] = None
        self.old_settings: Optional[List[Any]] = None
        if msvcrt:
            self.mode = "windows"
        elif termios and tty and sys.stdin.isatty():
            self.mode = "posix"
            self.fd = sys.stdin.fileno()
            self.old_settings = termios.tcgetattr(self.fd)
            tty.setcbreak(self.fd)

    def close(self) -> None:
        if self.mode == "posix" and self.fd is not None and self.old_settings is not None and termios:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)
            self.old_settings = None

    def poll(self) -> List[str]:
        if self.mode == "windows":
            return self._poll_windows()
        if self.mode == "posix":
            return self._poll_posix()
        return []

    def _poll_windows(self) -> List[str]:
        events: List[str] = []
        if not msvcrt:
            return events
        while msvcrt.kbhit():
            key = msvcrt.getch()
            if key in (b"\x00", b"\xe0"):
                continue  # Skip function-key prefixes
            events.extend(self._translate(key.decode("latin1", errors="ignore")))
        return events

    def _poll_posix(self) -> List[str]:
        events: List[str] = []
        if self.fd is None:
            return events
        while True:
            readable, _, _ = select.select([sys.stdin], [], [], 0)
            if not readable:
                break
            ch = sys.stdin.read(1)
            if not ch:
                break
            events.extend(self._translate(ch))
        return events

    @staticmethod
    def _translate(ch: str) -> List[str]:
        if ch in ("q", "Q"):
            return ["quit"]
        if ch in ("m", "M"):
            return ["mirror_toggle"]
        if ch in ("r", "R"):
            return ["motion_reset"]
        if ch in ("[", "{"):
            return ["threshold_down"]
        if ch in ("]", "}"):
            return ["threshold_up"]
        return []


CONTROLS_HELP = "Controls: q quit | m mirror | r reset motion | [ ] motion threshold"


def apply_control_events(events: Iterable[str], loop: RenderLoop, presenter: Any) -> bool:
    """Apply key events to a running loop; returns False once quit was requested."""
    detector = loop.transcoder.detector
    for event in events:
        if event == "quit":
            return False
        if event == "mirror_toggle":
            presenter.mirror = not presenter.mirror
        elif event == "motion_reset":
            detector.invalidate()
        elif event == "threshold_up":
            print(f"Motion threshold: {detector.adjust_threshold(1):g}", file=sys.stderr)
        elif event == "threshold_down":
            print(f"Motion threshold: {detector.adjust_threshold(-1):g}", file=sys.stderr)
    return True


# --- Command line --------------------------------------------------------------


def parse_hue_sat(text: str) -> HueSat:
    try:
        hue_text, sat_text = text.split(",")
        return HueSat(float(hue_text), float(sat_text))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected HUE,SAT (e.g. 25,100), got {text!r}") from exc


def add_transcoder_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--glyph-size",
        type=int,
        default=GLYPH_SIZE,
        help=f"Sampling stride in pixels; one glyph per cell (default: {GLYPH_SIZE}).",
    )
    parser.add_argument(
        "--palette",
        default=DEFAULT_PALETTE,
        help=f"Glyphs ordered dark to light; brighter cells pick earlier glyphs (default: {DEFAULT_PALETTE!r}).".replace("%", "%%"),
    )
    parser.add_argument(
        "--motion-threshold",
        type=float,
        default=MOTION_THRESHOLD,
        help=f"Green-channel change that marks a cell as moving (default: {MOTION_THRESHOLD}).",
    )
    parser.add_argument(
        "--brightness-floor",
        type=float,
        default=BRIGHTNESS_FLOOR,
        help=f"Cells at or below this brightness are left blank (default: {BRIGHTNESS_FLOOR}).",
    )
    parser.add_argument(
        "--lightness-min",
        type=float,
        default=LIGHTNESS_BOUNDS[0],
        help="Lowest glyph lightness in percent (default: 30).",
    )
    parser.add_argument(
        "--lightness-max",
        type=float,
        default=LIGHTNESS_BOUNDS[1],
        help="Highest glyph lightness in percent (default: 80).",
    )
    for name, tone in DEFAULT_ZONES.tones().items():
        parser.add_argument(
            f"--{name}-color",
            type=parse_hue_sat,
            default=tone,
            metavar="HUE,SAT",
            help=f"Hue and saturation of the {name} zone (default: {tone.hue:g},{tone.saturation:g}).",
        )
    parser.add_argument(
        "--no-mirror",
        action="store_true",
        help="Disable the selfie-style horizontal mirror.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log diagnostic messages to stderr.",
    )


def config_from_args(args: argparse.Namespace) -> TranscoderConfig:
    zones = ZoneScheme(
        top=args.top_color,
        disc=args.disc_color,
        middle=args.middle_color,
        bottom=args.bottom_color,
    )
    return TranscoderConfig(
        glyph_size=args.glyph_size,
        palette=args.palette,
        motion_threshold=args.motion_threshold,
        brightness_floor=args.brightness_floor,
        lightness_min=args.lightness_min,
        lightness_max=args.lightness_max,
        zones=zones,
    )


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Stream the webcam feed as colored, motion-highlighted glyphs in your terminal."
    )
    parser.add_argument(
        "--device",
        type=int,
        default=0,
        help="Zero-based camera index passed to OpenCV (default: 0).",
    )
    parser.add_argument(
        "--fps",
        type=float,
        default=30.0,
        help="Limit refresh rate in frames per second (<=0 disables throttling).",
    )
    add_transcoder_arguments(parser)
    return parser.parse_args(argv)


def terminal_canvas_size(glyph_size: int) -> Tuple[int, int]:
    term_size = shutil.get_terminal_size((80, 24))
    columns = max(2, term_size.columns)
    rows = max(2, term_size.lines - 1)
    return columns * glyph_size, rows * glyph_size


def clear_screen() -> None:
    sys.stdout.write("\x1b[2J")
    sys.stdout.flush()


def move_cursor_home() -> None:
    sys.stdout.write("\x1b[H")
    sys.stdout.flush()


def hide_cursor() -> None:
    sys.stdout.write("\x1b[?25l")
    sys.stdout.flush()


def show_cursor() -> None:
    sys.stdout.write("\x1b[?25h")
    sys.stdout.flush()


def main(argv: Optional[Sequence[str]] = None) -> int:
    if not sys.stdout.isatty():
        print("This program needs an interactive terminal to display glyph video.", file=sys.stderr)
        return 1

    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = config_from_args(args)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    capture = CameraCapture(args.device)
    try:
        capture.open()
    except CaptureError as exc:
        print(f"Camera error: {exc}", file=sys.stderr)
        return 1

    presenter = TerminalPresenter(config.glyph_size, mirror=not args.no_mirror)
    width, height = terminal_canvas_size(config.glyph_size)
    loop = RenderLoop(capture, presenter, GlyphTranscoder(config), width, height)

    controls = ControlPoller()
    if controls.mode == "none":
        print("Controls: Ctrl+C to quit (runtime controls unavailable on this terminal).", file=sys.stderr)
    else:
        print(CONTROLS_HELP, file=sys.stderr)

    def before_tick() -> bool:
        loop.handle_resize(*terminal_canvas_size(config.glyph_size))
        return apply_control_events(controls.poll(), loop, presenter)

    clear_screen()
    hide_cursor()

    try:
        state = run_loop(loop, args.fps, before_tick)
        return 1 if state is LoopState.STOPPED else 0
    except KeyboardInterrupt:
        return 0
    finally:
        controls.close()
        show_cursor()
        move_cursor_home()
        capture.release()
        sys.stdout.write("\x1b[0m\n")
        sys.stdout.flush()


if __name__ == "__main__":
    raise SystemExit(main())
