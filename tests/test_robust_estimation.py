"""Tests for LO-RANSAC and AC-RANSAC."""

import numpy as np
import pytest

from camloc.config.config import RobustEstimator, check_robust_estimator
from camloc.errors import ConfigurationError, EstimationFailed, InsufficientCorrespondences
from camloc.modules.robust_estimation import Kernel, ac_ransac, lo_ransac, robust_estimate
from camloc.modules.state_estimation import ResectionKernel

N_OUTLIERS = 30


def contaminated(ring, camera: int = 1, seed: int = 3):
    """Projections of a ring camera where the first N_OUTLIERS are replaced by noise."""
    rng = np.random.default_rng(seed)
    pts_2d = ring.projections[camera].copy()
    pts_2d[:N_OUTLIERS] = rng.uniform(0.0, 1000.0, size=(N_OUTLIERS, 2))
    clean = np.arange(N_OUTLIERS, len(pts_2d))
    return pts_2d, clean


class TestThresholdCheck:
    """Inlier threshold validation per estimator."""

    def test_acransac_zero_means_unbounded(self):
        assert check_robust_estimator(RobustEstimator.ACRANSAC, 0.0) == float("inf")

    def test_acransac_keeps_a_positive_threshold(self):
        assert check_robust_estimator(RobustEstimator.ACRANSAC, 4.0) == 4.0

    @pytest.mark.parametrize("value", [0.0, 1e-7, -1.0])
    def test_loransac_rejects_tiny_thresholds(self, value):
        with pytest.raises(ConfigurationError):
            check_robust_estimator(RobustEstimator.LORANSAC, value)

    def test_plain_ransac_is_not_supported(self):
        with pytest.raises(ConfigurationError):
            check_robust_estimator(RobustEstimator.RANSAC, 4.0)


class TestResectionKernel:
    """Minimal-sample resection plugged into the estimators."""

    def test_kernel_contract_is_abstract(self):
        with pytest.raises(TypeError):
            Kernel()

    def test_insufficient_correspondences(self, ring, rng):
        kernel = ResectionKernel(
            ring.projections[0][:5], ring.points[:5], ring.intrinsic.K, 1000, 1000
        )
        with pytest.raises(InsufficientCorrespondences) as exc:
            ac_ransac(kernel, 0.0, 6, 64, rng)
        assert exc.value.available == 5
        assert exc.value.required == 6

    def test_exact_sample_has_zero_residuals(self, ring):
        kernel = ResectionKernel(ring.projections[2], ring.points, ring.intrinsic.K, 1000, 1000)
        models = kernel.fit(np.arange(6))
        assert len(models) == 1
        assert np.max(kernel.residuals(models[0])) < 1e-6


class TestACRansac:
    """A-contrario estimation with automatic threshold."""

    def test_finds_the_clean_set_with_known_intrinsics(self, ring, rng):
        pts_2d, clean = contaminated(ring)
        kernel = ResectionKernel(pts_2d, ring.points, ring.intrinsic.K, 1000, 1000)
        fit = ac_ransac(kernel, 0.0, 6, 256, rng)
        assert set(fit.inliers.tolist()) == set(clean.tolist())
        assert fit.threshold < 1.0
        assert fit.iterations == 256

    def test_finds_the_clean_set_with_unknown_intrinsics(self, ring, rng):
        pts_2d, clean = contaminated(ring, camera=3)
        kernel = ResectionKernel(pts_2d, ring.points, None, 1000, 1000)
        fit = ac_ransac(kernel, 0.0, 6, 512, rng)
        assert set(fit.inliers.tolist()) == set(clean.tolist())
        assert fit.model.K[0, 0] == pytest.approx(1000.0, rel=1e-3)

    def test_upper_bound_on_threshold(self, ring, rng):
        pts_2d, _ = contaminated(ring)
        kernel = ResectionKernel(pts_2d, ring.points, ring.intrinsic.K, 1000, 1000)
        fit = ac_ransac(kernel, 4.0, 6, 256, rng)
        assert fit.threshold <= 4.0

    def test_inlier_floor(self, ring, rng):
        pts_2d, _ = contaminated(ring)
        kernel = ResectionKernel(pts_2d, ring.points, ring.intrinsic.K, 1000, 1000)
        with pytest.raises(EstimationFailed):
            ac_ransac(kernel, 0.0, len(pts_2d), 128, rng)


class TestLORansac:
    """Fixed threshold estimation with local optimization."""

    def test_finds_the_clean_set(self, ring, rng):
        pts_2d, clean = contaminated(ring)
        kernel = ResectionKernel(pts_2d, ring.points, ring.intrinsic.K, 1000, 1000)
        fit = lo_ransac(kernel, 2.0, 6, 1024, 0.99, rng)
        assert set(fit.inliers.tolist()) == set(clean.tolist())
        assert fit.threshold == 2.0

    def test_adaptive_iterations_stop_early(self, ring, rng):
        kernel = ResectionKernel(ring.projections[1], ring.points, ring.intrinsic.K, 1000, 1000)
        fit = lo_ransac(kernel, 2.0, 6, 1024, 0.99, rng)
        assert fit.iterations < 1024
        assert len(fit.inliers) == len(ring.points)

    def test_zero_threshold_rejected(self, ring, rng):
        kernel = ResectionKernel(ring.projections[1], ring.points, ring.intrinsic.K, 1000, 1000)
        with pytest.raises(ConfigurationError):
            lo_ransac(kernel, 0.0, 6, 64, 0.99, rng)

    def test_inlier_floor(self, ring, rng):
        pts_2d, _ = contaminated(ring)
        kernel = ResectionKernel(pts_2d, ring.points, ring.intrinsic.K, 1000, 1000)
        with pytest.raises(EstimationFailed):
            lo_ransac(kernel, 2.0, len(pts_2d), 128, 0.99, rng)


class TestDispatch:
    """Estimator selection."""

    @pytest.mark.parametrize(
        "estimator, threshold",
        [(RobustEstimator.ACRANSAC, 0.0), (RobustEstimator.LORANSAC, 2.0)],
    )
    def test_same_inliers_from_both_estimators(self, ring, rng, estimator, threshold):
        pts_2d, clean = contaminated(ring)
        kernel = ResectionKernel(pts_2d, ring.points, ring.intrinsic.K, 1000, 1000)
        fit = robust_estimate(kernel, estimator, threshold, 6, 256, 0.99, rng)
        assert set(fit.inliers.tolist()) == set(clean.tolist())

    def test_unsupported_estimator(self, ring, rng):
        kernel = ResectionKernel(ring.projections[1], ring.points, ring.intrinsic.K, 1000, 1000)
        with pytest.raises(ConfigurationError):
            robust_estimate(kernel, RobustEstimator.RANSAC, 4.0, 6, 64, 0.99, rng)
