"""Tests for frame-to-frame motion detection."""
from __future__ import annotations

import numpy as np

from glyph_cam import GlyphTranscoder, MotionDetector


def moving_cells(batch):
    return {(item.x, item.y) for item in batch if item.opacity == 1.0}


class TestMotionDetector:
    def test_no_history_means_static(self, make_frame):
        detector = MotionDetector()
        frame = make_frame()
        assert detector.history is None
        assert not detector.is_moving(frame, 0, 0)
        assert not detector.motion_mask(frame, 4).any()

    def test_green_threshold_is_strict(self, make_frame):
        detector = MotionDetector(threshold=8)
        detector.update(make_frame())
        assert detector.is_moving(make_frame(overrides={(4, 4): (100, 109, 100)}), 4, 4)
        assert not detector.is_moving(make_frame(overrides={(4, 4): (100, 108, 100)}), 4, 4)
        assert detector.is_moving(make_frame(overrides={(4, 4): (100, 91, 100)}), 4, 4)

    def test_only_green_counts(self, make_frame):
        detector = MotionDetector()
        detector.update(make_frame())
        frame = make_frame(overrides={(0, 0): (255, 100, 0)})
        assert not detector.is_moving(frame, 0, 0)

    def test_mask_matches_scalar(self, make_frame):
        detector = MotionDetector()
        detector.update(make_frame(rgb=(0, 0, 0)))
        frame = make_frame(rgb=(0, 0, 0), overrides={(0, 4): (0, 50, 0), (4, 0): (0, 5, 0)})
        mask = detector.motion_mask(frame, 4)
        assert mask.tolist() == [[False, False], [True, False]]
        assert detector.is_moving(frame, 0, 4)

    def test_step_commits_a_copy(self, make_frame):
        detector = MotionDetector()
        frame = make_frame()
        detector.step(frame, 4)
        assert detector.history is not frame
        assert np.array_equal(detector.history.data, frame.data)

    def test_step_discards_history_on_resize(self, make_frame):
        detector = MotionDetector()
        detector.step(make_frame(8, 8), 4)
        mask = detector.step(make_frame(12, 8, rgb=(0, 255, 0)), 4)
        assert mask.shape == (2, 3)
        assert not mask.any()
        assert detector.history.width == 12

    def test_invalidate(self, make_frame):
        detector = MotionDetector()
        detector.update(make_frame())
        detector.invalidate()
        assert detector.history is None
        assert not detector.is_moving(make_frame(rgb=(0, 0, 0)), 0, 0)

    def test_adjust_threshold_is_clamped(self):
        detector = MotionDetector(threshold=8)
        assert detector.adjust_threshold(2) == 10
        assert detector.adjust_threshold(-50) == 0
        assert detector.adjust_threshold(400) == 255


class TestMotionThroughTranscoder:
    def test_single_cell_moves(self, make_frame):
        transcoder = GlyphTranscoder()
        first = transcoder.transcode(make_frame())
        assert len(first) == 4
        assert moving_cells(first) == set()

        second = transcoder.transcode(make_frame(overrides={(4, 4): (100, 109, 100)}))
        assert moving_cells(second) == {(4, 4)}
        assert {item.opacity for item in second if (item.x, item.y) != (4, 4)} == {0.3}

    def test_difference_equal_to_threshold_is_static(self, make_frame):
        transcoder = GlyphTranscoder()
        transcoder.transcode(make_frame())
        batch = transcoder.transcode(make_frame(overrides={(4, 4): (100, 108, 100)}))
        assert moving_cells(batch) == set()

    def test_diff_is_against_previous_tick_only(self, make_frame):
        transcoder = GlyphTranscoder()
        transcoder.transcode(make_frame())
        transcoder.transcode(make_frame(overrides={(0, 0): (100, 150, 100)}))
        batch = transcoder.transcode(make_frame(overrides={(0, 0): (100, 150, 100)}))
        assert moving_cells(batch) == set()

    def test_resize_suppresses_first_tick_then_resumes(self, make_frame):
        transcoder = GlyphTranscoder()
        transcoder.transcode(make_frame(8, 8))

        resized = transcoder.transcode(make_frame(12, 8, rgb=(200, 20, 200)))
        assert len(resized) == 6
        assert moving_cells(resized) == set()

        follow_up = transcoder.transcode(make_frame(12, 8, rgb=(200, 20, 200), overrides={(8, 4): (200, 40, 200)}))
        assert moving_cells(follow_up) == {(8, 4)}

    def test_motion_never_changes_glyph_or_color(self, make_frame):
        transcoder = GlyphTranscoder()
        static = transcoder.transcode(make_frame(overrides={(4, 4): (90, 90, 90)}))
        moved = transcoder.transcode(make_frame(overrides={(4, 4): (90, 90, 90), (0, 0): (130, 70, 100)}))
        before = {(i.x, i.y): (i.glyph, i.color) for i in static}
        after = {(i.x, i.y): (i.glyph, i.color) for i in moved}
        assert before == after

    def test_invalid_frame_keeps_history(self, make_frame):
        transcoder = GlyphTranscoder()
        frame = make_frame()
        transcoder.transcode(frame)
        assert transcoder.transcode(None) == []
        assert np.array_equal(transcoder.detector.history.data, frame.data)
