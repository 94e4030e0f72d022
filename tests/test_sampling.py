"""Tests for frame sampling and brightness-to-glyph mapping."""
from __future__ import annotations

import numpy as np
import pytest

from glyph_cam import (
    DEFAULT_PALETTE,
    FrameBuffer,
    GlyphTranscoder,
    frame_to_buffer,
    glyph_for,
    glyph_index,
    grid_axes,
    sample,
    sample_grid,
)


# --- FrameBuffer --------------------------------------------------------------

class TestFrameBuffer:
    def test_from_rgba_is_flat_and_read_only(self, make_frame):
        frame = make_frame(3, 2)
        assert frame.data.shape == (24,)
        assert (frame.width, frame.height) == (3, 2)
        with pytest.raises(ValueError):
            frame.data[0] = 1

    def test_copy_is_independent(self, make_frame):
        frame = make_frame(2, 2)
        clone = frame.copy()
        assert clone.data is not frame.data
        assert np.array_equal(clone.data, frame.data)

    def test_empty_and_missing_data_are_invalid(self):
        assert not FrameBuffer.empty().is_valid
        assert not FrameBuffer(None, 4, 4).is_valid

    def test_length_mismatch_is_invalid(self):
        assert not FrameBuffer(np.zeros(10, dtype=np.uint8), 2, 2).is_valid

    def test_from_bgr_swaps_channels_and_adds_alpha(self):
        bgr = np.zeros((1, 1, 3), dtype=np.uint8)
        bgr[0, 0] = (255, 10, 0)
        frame = FrameBuffer.from_bgr(bgr)
        assert frame.data.tolist() == [0, 10, 255, 255]

    def test_frame_to_buffer_scales_to_target(self):
        bgr = np.full((48, 64, 3), 200, dtype=np.uint8)
        frame = frame_to_buffer(bgr, 32, 24)
        assert (frame.width, frame.height) == (32, 24)
        assert frame.is_valid
        assert sample(frame, 31, 23)[:3] == (200, 200, 200)


# --- sample -------------------------------------------------------------------

class TestSample:
    def test_reads_pixel_at_flat_offset(self, make_frame):
        frame = make_frame(4, 3, overrides={(2, 1): (30, 60, 90)})
        assert sample(frame, 2, 1) == (30, 60, 90, 60.0)

    def test_average_is_true_division(self, make_frame):
        frame = make_frame(1, 1, rgb=(1, 1, 2))
        assert sample(frame, 0, 0)[3] == pytest.approx(4 / 3)

    def test_grid_uses_top_left_pixel_of_each_cell(self, make_frame):
        frame = make_frame(8, 8, rgb=(0, 0, 0), overrides={(4, 4): (90, 90, 90), (5, 5): (255, 255, 255)})
        r, g, b, avg = sample_grid(frame, 4)
        assert avg.shape == (2, 2)
        assert avg[1, 1] == 90.0
        assert avg[0, 0] == 0.0

    def test_grid_matches_scalar_sample(self):
        rng = np.random.default_rng(7)
        pixels = rng.integers(0, 256, size=(13, 11, 4), dtype=np.uint8)
        frame = FrameBuffer.from_rgba(pixels)
        xs, ys = grid_axes(frame.width, frame.height, 3)
        r, g, b, avg = sample_grid(frame, 3)
        for row, y in enumerate(ys):
            for col, x in enumerate(xs):
                assert (r[row, col], g[row, col], b[row, col], avg[row, col]) == sample(frame, int(x), int(y))

    def test_partial_cells_cover_the_frame(self):
        xs, ys = grid_axes(10, 7, 4)
        assert xs.tolist() == [0, 4, 8]
        assert ys.tolist() == [0, 4]


# --- glyph mapping ------------------------------------------------------------

class TestGlyphMapping:
    @pytest.mark.parametrize("length", [2, 3, 5, 11, 64])
    def test_inversion_at_extremes(self, length):
        assert glyph_index(0, length) == length - 1
        assert glyph_index(255, length) == 0

    def test_index_truncates_instead_of_rounding(self):
        # 127 / 255 * 10 = 4.98 -> floor 4 -> index 10 - 4
        assert glyph_index(127, 11) == 6
        assert glyph_index(128, 11) == 5

    def test_default_palette_ends(self):
        assert len(DEFAULT_PALETTE) == 11
        assert glyph_for(255, DEFAULT_PALETTE) == DEFAULT_PALETTE[0]
        assert glyph_for(100, DEFAULT_PALETTE) == DEFAULT_PALETTE[10 - 3]

    def test_vectorized_matches_scalar(self):
        values = np.arange(0, 256, dtype=np.float64)
        vector = glyph_index(values, 11)
        assert vector.tolist() == [glyph_index(float(v), 11) for v in values]

    def test_pure(self):
        assert glyph_for(42.5, "abcdef") == glyph_for(42.5, "abcdef")


# --- suppression --------------------------------------------------------------

class TestSuppression:
    def test_floor_is_strict(self, make_frame):
        transcoder = GlyphTranscoder()
        assert transcoder.transcode(make_frame(4, 4, rgb=(15, 15, 15))) == []
        batch = transcoder.transcode(make_frame(4, 4, rgb=(16, 16, 16)))
        assert len(batch) == 1
        assert batch[0].glyph == glyph_for(16, DEFAULT_PALETTE)

    def test_dark_cells_are_skipped_individually(self, make_frame):
        frame = make_frame(8, 4, rgb=(0, 0, 0), overrides={(4, 0): (200, 200, 200)})
        batch = GlyphTranscoder().transcode(frame)
        assert [(item.x, item.y) for item in batch] == [(4, 0)]
