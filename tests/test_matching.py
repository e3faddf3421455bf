"""Tests for descriptor matching and the epipolar filter."""

from dataclasses import replace

import numpy as np
import pytest

from camloc.config.config import RobustEstimator
from camloc.datatypes import Features, Matches
from camloc.errors import InsufficientCorrespondences
from camloc.modules.feature_matching import geometric_filter, match_descriptors, match_features

N_WRONG = 20


class TestMatchDescriptors:
    """Nearest neighbour ratio test."""

    def test_identical_descriptors_match_themselves(self, descriptors):
        matches = match_descriptors(descriptors[:50], descriptors)
        assert len(matches) == 50
        assert np.array_equal(matches.query_idx, matches.train_idx)
        assert np.allclose(matches.distances, 0.0)

    def test_ratio_test_drops_ambiguous_matches(self, descriptors):
        train = np.vstack([descriptors, descriptors[:10]])
        matches = match_descriptors(descriptors, train)
        assert set(matches.query_idx.tolist()) == set(range(10, len(descriptors)))

    def test_binary_descriptors_use_hamming(self):
        rng = np.random.default_rng(0)
        train = rng.integers(0, 256, size=(40, 32), dtype=np.uint8)
        query = train[:5].copy()
        query[:, 0] ^= 1  # one flipped bit
        matches = match_descriptors(query, train)
        assert matches.train_idx.tolist() == [0, 1, 2, 3, 4]
        assert np.allclose(matches.distances, 1.0)

    def test_single_train_descriptor_gives_no_match(self, descriptors):
        assert len(match_descriptors(descriptors, descriptors[:1])) == 0

    def test_empty_query(self, descriptors):
        assert len(match_descriptors(descriptors[:0], descriptors)) == 0

    def test_mixed_descriptor_types(self, descriptors):
        binary = np.zeros((10, 32), dtype=np.uint8)
        with pytest.raises(ValueError):
            match_descriptors(descriptors, binary)


class TestGeometricFilter:
    """Two-view consistency check of putative matches."""

    def test_wrong_matches_are_removed(self, ring, cfg, rng):
        n = len(ring.points)
        train_idx = np.arange(n)
        train_idx[:N_WRONG] = np.roll(train_idx[:N_WRONG], 1)
        matches = Matches(np.arange(n), train_idx, np.zeros(n))

        kept = geometric_filter(
            ring.projections[1], ring.projections[0], matches, cfg, (1000, 1000), rng
        )
        assert set(kept.query_idx.tolist()) == set(range(N_WRONG, n))
        assert np.array_equal(kept.query_idx, kept.train_idx)

    def test_loransac_filter(self, ring, cfg, rng):
        lo_cfg = replace(cfg, matching_estimator=RobustEstimator.LORANSAC, matching_error_max=1.0)
        n = len(ring.points)
        matches = Matches(np.arange(n), np.arange(n), np.zeros(n))
        kept = geometric_filter(
            ring.projections[3], ring.projections[6], matches, lo_cfg, (1000, 1000), rng
        )
        assert len(kept) == n

    def test_too_few_matches(self, ring, cfg, rng):
        matches = Matches(np.arange(6), np.arange(6), np.zeros(6))
        with pytest.raises(InsufficientCorrespondences):
            geometric_filter(
                ring.projections[1], ring.projections[0], matches, cfg, (1000, 1000), rng
            )


class TestMatchFeatures:
    """Matching with and without the geometric check."""

    def test_robust_matching(self, ring, descriptors, cfg, rng):
        query = Features(ring.projections[1], descriptors)
        train = Features(ring.projections[2], descriptors)
        matches = match_features(query, train, cfg, (1000, 1000), rng)
        assert len(matches) == len(descriptors)

    def test_ratio_only(self, ring, descriptors, cfg, rng):
        # train keypoints unrelated to the query: only the ratio test runs
        query = Features(ring.projections[1], descriptors)
        train = Features(np.zeros_like(ring.projections[2]), descriptors)
        ratio_cfg = replace(cfg, robust_matching=False)
        matches = match_features(query, train, ratio_cfg, (1000, 1000), rng)
        assert len(matches) == len(descriptors)
