"""Tests for the fundamental matrix solvers."""

import numpy as np
import pytest

from camloc.modules.fundamental import (
    eight_point,
    epipolar_distance_sq,
    fundamental_from_poses,
    normalization_transform,
    normalized_eight_point,
    normalized_seven_point,
    seven_point,
)


def camera_pair(ring, a: int = 0, b: int = 1):
    K = ring.intrinsic.K
    pa, pb = ring.poses[a], ring.poses[b]
    F = fundamental_from_poses(K, pa.rotation, pa.translation, K, pb.rotation, pb.translation)
    return ring.projections[a], ring.projections[b], F


def normalized_coordinates(ring, px: np.ndarray) -> np.ndarray:
    K_inv = np.linalg.inv(ring.intrinsic.K)
    return (np.hstack([px, np.ones((len(px), 1))]) @ K_inv.T)[:, :2]


def colinear(F: np.ndarray, G: np.ndarray, tol: float = 1e-6) -> bool:
    """sin of the angle between the two matrices below tol."""
    c = np.sum(F * G) / (np.linalg.norm(F) * np.linalg.norm(G))
    return np.sqrt(max(0.0, 1.0 - c * c)) < tol


def assert_fundamental_properties(F: np.ndarray, x1: np.ndarray, x2: np.ndarray) -> None:
    h1 = np.hstack([x1, np.ones((len(x1), 1))])
    h2 = np.hstack([x2, np.ones((len(x2), 1))])
    assert abs(np.linalg.det(F)) < 1e-8
    assert np.max(np.abs(np.sum(h2 * (h1 @ F.T), axis=1))) < 1e-8


def easy_case(n: int) -> tuple[np.ndarray, np.ndarray]:
    """Integer grid shifted by one row in the second image."""
    x1 = np.array([[0, 0], [0, 1], [0, 2], [1, 0], [1, 1], [1, 2], [2, 0], [2, 1]], dtype=float)
    x2 = x1 + [0.0, 1.0]
    return x1[:n], x2[:n]


PAIRS = [(0, 1), (1, 3), (2, 5), (0, 4)]


class TestFromPoses:
    """Fundamental matrix of two known cameras."""

    def test_true_correspondences_satisfy_the_constraint(self, ring):
        x1, x2, F = camera_pair(ring)
        assert np.max(epipolar_distance_sq(F, x1, x2)) < 1e-12

    def test_unit_norm_and_rank_two(self, ring):
        _, _, F = camera_pair(ring)
        assert np.linalg.norm(F) == pytest.approx(1.0)
        assert abs(np.linalg.det(F)) < 1e-10


class TestEpipolarDistance:
    """Point to epipolar line distance."""

    def test_horizontal_translation_gives_vertical_distance(self):
        # pure translation along x: epipolar lines are image rows
        F = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, -1.0], [0.0, 1.0, 0.0]])
        x1 = np.array([[0.1, 0.2], [0.3, -0.4]])
        x2 = np.array([[0.5, 0.2], [-0.7, -0.1]])
        assert np.allclose(epipolar_distance_sq(F, x1, x2), [0.0, 0.09])


class TestNormalization:
    """Hartley normalization transform."""

    def test_centroid_and_mean_distance(self, ring):
        pts = ring.projections[0]
        T = normalization_transform(pts)
        moved = pts @ T[:2, :2].T + T[:2, 2]
        assert np.allclose(moved.mean(axis=0), 0.0, atol=1e-9)
        assert np.mean(np.linalg.norm(moved, axis=1)) == pytest.approx(np.sqrt(2.0))

    def test_coincident_points_keep_unit_scale(self):
        T = normalization_transform(np.ones((5, 2)))
        assert T[0, 0] == 1.0


class TestEightPoint:
    """Linear eight point solver."""

    def test_normalized_recovers_the_true_matrix(self, ring):
        x1, x2, F_true = camera_pair(ring)
        F = normalized_eight_point(x1[:30], x2[:30])
        assert colinear(F, F_true)
        assert np.max(epipolar_distance_sq(F, x1, x2)) < 1e-6

    def test_result_is_rank_two(self, ring):
        x1, x2, _ = camera_pair(ring)
        F = normalized_eight_point(x1, x2)
        assert np.linalg.svd(F, compute_uv=False)[2] < 1e-10
        assert np.linalg.norm(F) == pytest.approx(1.0)

    def test_plain_solver_on_normalized_camera_coordinates(self, ring):
        x1, x2, _ = camera_pair(ring)
        n1, n2 = normalized_coordinates(ring, x1), normalized_coordinates(ring, x2)
        pa, pb = ring.poses[0], ring.poses[1]
        E_true = fundamental_from_poses(
            np.eye(3), pa.rotation, pa.translation, np.eye(3), pb.rotation, pb.translation
        )
        assert colinear(eight_point(n1[:20], n2[:20]), E_true)

    def test_too_few_points(self, ring):
        x1, x2, _ = camera_pair(ring)
        with pytest.raises(ValueError):
            normalized_eight_point(x1[:7], x2[:7])

    def test_shape_mismatch(self, ring):
        x1, x2, _ = camera_pair(ring)
        with pytest.raises(ValueError):
            eight_point(x1[:10], x2[:9])


class TestSevenPoint:
    """Minimal seven point solver."""

    def test_true_matrix_is_among_the_candidates(self, ring):
        x1, x2, F_true = camera_pair(ring)
        candidates = normalized_seven_point(x1[:7], x2[:7])
        assert 1 <= len(candidates) <= 3
        assert any(colinear(F, F_true) for F in candidates)

    def test_candidates_are_singular_with_unit_norm(self, ring):
        x1, x2, _ = camera_pair(ring, 2, 5)
        n1, n2 = normalized_coordinates(ring, x1), normalized_coordinates(ring, x2)
        for F in seven_point(n1[:7], n2[:7]):
            assert np.linalg.norm(F) == pytest.approx(1.0)
            assert abs(np.linalg.det(F)) < 1e-8

    def test_candidates_explain_the_sample(self, ring):
        x1, x2, _ = camera_pair(ring, 1, 3)
        n1, n2 = normalized_coordinates(ring, x1), normalized_coordinates(ring, x2)
        for F in seven_point(n1[:7], n2[:7]):
            assert np.max(epipolar_distance_sq(F, n1[:7], n2[:7])) < 1e-12

    def test_too_few_points(self, ring):
        x1, x2, _ = camera_pair(ring)
        with pytest.raises(ValueError):
            seven_point(x1[:6], x2[:6])


class TestEasyCase:
    """Small integer configuration solved by every kernel."""

    @pytest.mark.parametrize("solver", [seven_point, normalized_seven_point])
    def test_seven_point(self, solver):
        x1, x2 = easy_case(7)
        candidates = solver(x1, x2)
        assert candidates
        for F in candidates:
            assert_fundamental_properties(F, x1, x2)

    @pytest.mark.parametrize("solver", [eight_point, normalized_eight_point])
    def test_eight_point(self, solver):
        x1, x2 = easy_case(8)
        assert_fundamental_properties(solver(x1, x2), x1, x2)


class TestRingPairs:
    """Normalized kernels on exact correspondences of two ring cameras."""

    @staticmethod
    def calibrated_pair(ring, a: int, b: int):
        x1, x2, _ = camera_pair(ring, a, b)
        pa, pb = ring.poses[a], ring.poses[b]
        E = fundamental_from_poses(
            np.eye(3), pa.rotation, pa.translation, np.eye(3), pb.rotation, pb.translation
        )
        return normalized_coordinates(ring, x1), normalized_coordinates(ring, x2), E

    @pytest.mark.parametrize("a, b", PAIRS)
    def test_eight_point(self, ring, a, b):
        n1, n2, E = self.calibrated_pair(ring, a, b)
        F = normalized_eight_point(n1[:8], n2[:8])
        assert_fundamental_properties(F, n1, n2)
        assert colinear(F, E)

    @pytest.mark.parametrize("a, b", PAIRS)
    def test_seven_point(self, ring, a, b):
        n1, n2, E = self.calibrated_pair(ring, a, b)
        candidates = normalized_seven_point(n1[:7], n2[:7])
        assert candidates
        for F in candidates:
            assert_fundamental_properties(F, n1[:7], n2[:7])
        assert any(colinear(F, E) for F in candidates)

    @pytest.mark.parametrize("a, b", PAIRS)
    def test_pixel_coordinates(self, ring, a, b):
        x1, x2, F_true = camera_pair(ring, a, b)
        assert colinear(normalized_eight_point(x1, x2), F_true)
        assert any(colinear(F, F_true) for F in normalized_seven_point(x1[:7], x2[:7]))
