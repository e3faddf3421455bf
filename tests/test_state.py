"""Tests for the frame buffer, statistics and localization results."""

import numpy as np
import pytest

from camloc.datatypes import Associations, Features, Pose
from camloc.state.frame_buffer import BufferedFrame, FrameBuffer
from camloc.state.localization_result import LocalizationResult, LocalizerState
from camloc.state.statistics import LocalizationStats


def buffered(frame_id: int, n: int = 10) -> BufferedFrame:
    features = Features(np.zeros((n, 2)), np.zeros((n, 8), dtype=np.float32))
    return BufferedFrame(frame_id, features, np.arange(n))


class TestFrameBuffer:
    """Bounded buffer of localized frames."""

    def test_evicts_oldest_at_capacity(self):
        buffer = FrameBuffer(3)
        for i in range(5):
            buffer.push(buffered(i))
        assert len(buffer) == 3
        assert buffer.frame_ids() == [2, 3, 4]

    def test_iterates_most_recent_first(self):
        buffer = FrameBuffer(3)
        for i in range(3):
            buffer.push(buffered(i))
        assert [f.frame_id for f in buffer] == [2, 1, 0]

    def test_disabled_buffer_stays_empty(self):
        buffer = FrameBuffer(0)
        buffer.push(buffered(0))
        assert not buffer.enabled
        assert len(buffer) == 0

    def test_total_correspondences(self):
        buffer = FrameBuffer(4)
        buffer.push(buffered(0, 10))
        buffer.push(buffered(1, 7))
        assert buffer.total_correspondences() == 17

    def test_clear(self):
        buffer = FrameBuffer(2)
        buffer.push(buffered(0))
        buffer.clear()
        assert len(buffer) == 0

    def test_negative_capacity(self):
        with pytest.raises(ValueError):
            FrameBuffer(-1)


class TestStatistics:
    """Per-frame latency aggregates."""

    def test_aggregates(self):
        stats = LocalizationStats()
        for ms in (10.0, 30.0, 20.0):
            stats.add(ms)
        assert stats.count == 3
        assert stats.mean == pytest.approx(20.0)
        assert stats.minimum == 10.0
        assert stats.maximum == 30.0

    def test_merge(self):
        a, b = LocalizationStats(), LocalizationStats()
        a.add(5.0)
        a.add_localized("a.png", 40)
        b.add(15.0)
        merged = a.merge(b)
        assert merged.count == 2
        assert merged.mean == pytest.approx(10.0)
        assert merged.localized == [("a.png", 40)]

    def test_summary(self):
        stats = LocalizationStats()
        stats.add(12.0)
        stats.add(8.0)
        stats.add_localized("img_001.png", 57)
        lines = stats.summary_lines()
        assert lines[0] == "Localized 1/2 images"
        assert "  img_001.png : 57" in lines

    def test_empty_summary(self):
        assert LocalizationStats().summary_lines()[0] == "Localized 0/0 images"


def inliers(n: int) -> Associations:
    return Associations(np.arange(n), np.arange(n), np.zeros((n, 2)), np.ones((n, 3)))


class TestLocalizationResult:
    """Per-frame result records."""

    def test_valid_result_needs_six_inliers(self, ring):
        with pytest.raises(ValueError):
            LocalizationResult(0, "a", Pose.identity(), ring.intrinsic, inliers(5), valid=True)

    def test_valid_result_needs_a_pose(self, ring):
        with pytest.raises(ValueError):
            LocalizationResult(0, "a", None, ring.intrinsic, inliers(6), valid=True)

    def test_invalid_result(self):
        result = LocalizationResult.invalid(3, "b", None, "EstimationFailed: nope")
        assert not result.valid
        assert result.pose is None
        assert result.state == LocalizerState.POSE_INVALID
        assert result.num_inliers == 0
        assert len(result.reprojection_errors()) == 0

    def test_is_immutable(self):
        result = LocalizationResult.invalid(3, "b", None, "x")
        with pytest.raises(AttributeError):
            result.valid = True

    def test_reprojection_errors(self, ring):
        pose = ring.poses[0]
        assoc = Associations(
            np.arange(10), np.arange(10), ring.projections[0][:10], ring.points[:10]
        )
        result = LocalizationResult(
            0, "a", pose, ring.intrinsic, assoc, valid=True, state=LocalizerState.POSE_VALID
        )
        assert np.max(result.reprojection_errors()) < 1e-9

    def test_dict_round_trip_keeps_fields(self, ring):
        pose = ring.poses[1]
        result = LocalizationResult(
            4,
            "c.png",
            pose,
            ring.intrinsic,
            inliers(8),
            valid=True,
            state=LocalizerState.POSE_VALID,
            threshold=1.5,
            matched_views=(0, 2),
            from_buffer=True,
        )
        back = LocalizationResult.from_dict(result.to_dict())
        assert back.frame_id == 4
        assert back.matched_views == (0, 2)
        assert back.from_buffer
        assert back.threshold == 1.5
        assert np.allclose(back.pose.rotation, pose.rotation)
        assert np.array_equal(back.inliers.landmark_ids, np.arange(8))
