"""Descriptor matching with ratio test and optional epipolar filtering."""

import logging

import cv2
import numpy as np

from camloc.config.config import LocalizerConfig
from camloc.datatypes import Features, Matches
from camloc.modules.fundamental import (
    epipolar_distance_sq,
    normalized_eight_point,
    normalized_seven_point,
)
from camloc.modules.robust_estimation import Kernel, robust_estimate

logger = logging.getLogger(__name__)


def _as_matchable(descriptors: np.ndarray) -> np.ndarray:
    if descriptors.dtype == np.uint8:
        return np.ascontiguousarray(descriptors)
    return np.ascontiguousarray(descriptors, dtype=np.float32)


def match_descriptors(
    query_descriptors: np.ndarray,
    train_descriptors: np.ndarray,
    ratio_threshold: float = 0.8,
) -> Matches:
    """
    Match descriptors between two sets using ratio test and brute force.

    Hamming distance is used for binary (uint8) descriptors, L2 otherwise.

    Args:
        query_descriptors: (N1, D) descriptors of the query image
        train_descriptors: (N2, D) descriptors to match against
        ratio_threshold: Lowe's ratio test threshold (typically 0.8)

    Returns:
        matches: accepted query/train index pairs with their distance

    """
    if len(query_descriptors) == 0 or len(train_descriptors) < 2:
        return Matches()

    binary = query_descriptors.dtype == np.uint8
    if binary != (train_descriptors.dtype == np.uint8):
        msg = "cannot match binary descriptors against float descriptors"
        raise ValueError(msg)

    norm = cv2.NORM_HAMMING if binary else cv2.NORM_L2
    matcher = cv2.BFMatcher(norm, crossCheck=False)
    # knn with k=2 to apply the ratio test
    knn_matches = matcher.knnMatch(
        _as_matchable(query_descriptors), _as_matchable(train_descriptors), k=2
    )

    query_idx, train_idx, distances = [], [], []
    for m_n in knn_matches:
        if len(m_n) != 2:
            continue
        m, n = m_n
        if m.distance < ratio_threshold * n.distance:
            query_idx.append(m.queryIdx)
            train_idx.append(m.trainIdx)
            distances.append(m.distance)

    return Matches(
        np.array(query_idx, dtype=int),
        np.array(train_idx, dtype=int),
        np.array(distances, dtype=np.float64),
    )


class FundamentalKernel(Kernel):
    """Normalized 7-point fundamental matrix fitting, refit with the normalized 8-point."""

    sample_size = 7
    max_models = 3
    # residuals are squared point to line distances
    mult_error = 0.5

    def __init__(self, x1: np.ndarray, x2: np.ndarray, width: int, height: int) -> None:
        self.x1 = np.asarray(x1, dtype=np.float64)
        self.x2 = np.asarray(x2, dtype=np.float64)
        # a random point falls within distance e of a line with probability 2 D e / area
        diameter = np.hypot(width, height)
        self.logalpha0 = float(np.log10(2.0 * diameter / (width * height)))

    def __len__(self) -> int:
        return len(self.x1)

    def fit(self, idx: np.ndarray) -> list[np.ndarray]:
        models = normalized_seven_point(self.x1[idx], self.x2[idx])
        return [F for F in models if np.all(np.isfinite(F))]

    def refit(self, idx: np.ndarray) -> np.ndarray | None:
        if len(idx) < 8:
            return super().refit(idx)
        return normalized_eight_point(self.x1[idx], self.x2[idx])

    def residuals(self, model: np.ndarray) -> np.ndarray:
        return epipolar_distance_sq(model, self.x1, self.x2)


def geometric_filter(
    query_keypoints: np.ndarray,
    train_keypoints: np.ndarray,
    matches: Matches,
    cfg: LocalizerConfig,
    image_size: tuple[int, int],
    rng: np.random.Generator | None = None,
) -> Matches:
    """
    Keep the matches consistent with a fundamental matrix.

    Args:
        query_keypoints: (N1, 2) query keypoints.
        train_keypoints: (N2, 2) keypoints of the matched view.
        matches: Putative matches between them.
        cfg: Validated configuration (matching estimator and threshold).
        image_size: (width, height) of the query image.
        rng: Random generator.

    Raises:
        InsufficientCorrespondences: Fewer than 7 putative matches.
        EstimationFailed: No epipolar geometry explains the matches.

    """
    kernel = FundamentalKernel(
        query_keypoints[matches.query_idx],
        train_keypoints[matches.train_idx],
        *image_size,
    )
    fit = robust_estimate(
        kernel,
        cfg.matching_estimator,
        cfg.matching_error_max,
        kernel.sample_size,
        cfg.max_iterations,
        cfg.confidence,
        rng,
    )
    logger.debug("geometric filter kept %d/%d matches", len(fit.inliers), len(matches))
    return matches.subset(fit.inliers)


def match_features(
    query: Features,
    train: Features,
    cfg: LocalizerConfig,
    image_size: tuple[int, int],
    rng: np.random.Generator | None = None,
) -> Matches:
    """Ratio test matching, followed by the epipolar check in robust mode."""
    matches = match_descriptors(query.descriptors, train.descriptors, cfg.ratio_threshold)
    if cfg.robust_matching and len(matches):
        matches = geometric_filter(
            query.keypoints, train.keypoints, matches, cfg, image_size, rng
        )
    return matches
