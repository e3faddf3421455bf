"""Candidate map views for a query image."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
from scipy.cluster.vq import kmeans2, vq

from camloc.errors import RetrievalUnavailable
from camloc.modules.frustum import Frustum
from camloc.state.map_model import MapModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalCandidate:
    """A map view likely to overlap the query, with its similarity score."""

    view_id: int
    score: float


class CandidateRetriever(ABC):
    """
    Ranked candidates contract.

    query returns at most top_k candidates (all of them when top_k <= 0),
    ordered by non-increasing score. An unusable index raises
    RetrievalUnavailable instead of returning an empty list.
    """

    @abstractmethod
    def is_ready(self) -> bool:
        pass

    @abstractmethod
    def query(self, signature: np.ndarray, top_k: int) -> list[RetrievalCandidate]:
        pass


def _as_float(descriptors: np.ndarray) -> np.ndarray:
    """Binary descriptors are clustered on their unpacked bits."""
    if descriptors.dtype == np.uint8:
        return np.unpackbits(descriptors, axis=1).astype(np.float32)
    return np.ascontiguousarray(descriptors, dtype=np.float32)


class VocabularyRetriever(CandidateRetriever):
    """
    Bag of visual words over the reconstructed features of the map.

    Words are k-means centers of the map descriptors. Each view becomes a
    tf-idf histogram and a query is scored against every view with the
    cosine similarity of the histograms.
    """

    def __init__(self, n_words: int = 256, seed: int = 0) -> None:
        self.n_words = n_words
        self.seed = seed
        self._words: np.ndarray | None = None
        self._idf: np.ndarray | None = None
        self._view_ids: list[int] = []
        self._histograms: np.ndarray | None = None

    def build(self, map_model: MapModel) -> "VocabularyRetriever":
        view_ids = map_model.localized_view_ids()
        if not view_ids:
            logger.warning("no localized view with features, retrieval index is empty")
            self._words = None
            return self

        per_view = [_as_float(map_model.view_features[v].features.descriptors) for v in view_ids]
        data = np.vstack(per_view)
        # more words than distinct descriptors leaves empty clusters
        k = max(1, min(self.n_words, len(np.unique(data, axis=0))))

        centers, _ = kmeans2(data, k, iter=20, minit="++", missing="warn", seed=self.seed)
        self._words = centers.astype(np.float32)

        counts = np.array([self._word_counts(des) for des in per_view])
        df = np.count_nonzero(counts, axis=0)
        self._idf = np.log(len(view_ids) / np.maximum(df, 1)) + 1.0
        self._view_ids = view_ids
        self._histograms = np.array([self._weighted(c) for c in counts])
        logger.info("retrieval index: %d views, %d words", len(view_ids), k)
        return self

    def _word_counts(self, descriptors: np.ndarray) -> np.ndarray:
        words, _ = vq(descriptors, self._words, check_finite=False)
        return np.bincount(words, minlength=len(self._words)).astype(np.float64)

    def _weighted(self, counts: np.ndarray) -> np.ndarray:
        hist = counts * self._idf
        norm = np.linalg.norm(hist)
        return hist / norm if norm > 0 else hist

    def is_ready(self) -> bool:
        return self._words is not None and len(self._view_ids) > 0

    def query(self, signature: np.ndarray, top_k: int) -> list[RetrievalCandidate]:
        if not self.is_ready():
            msg = "retrieval index is empty or was not built"
            raise RetrievalUnavailable(msg)
        if len(signature) == 0:
            return []

        query_hist = self._weighted(self._word_counts(_as_float(signature)))
        scores = self._histograms @ query_hist
        # best score first, view id breaks ties
        order = sorted(range(len(scores)), key=lambda i: (-scores[i], self._view_ids[i]))
        candidates = [
            RetrievalCandidate(self._view_ids[i], float(scores[i]))
            for i in order
            if scores[i] > 0
        ]
        return candidates[:top_k] if top_k > 0 else candidates


class ExhaustiveRetriever(CandidateRetriever):
    """Every localized view is a candidate, all with the same score. top_k is ignored."""

    def __init__(self, map_model: MapModel) -> None:
        self._view_ids = map_model.localized_view_ids()

    def is_ready(self) -> bool:
        return len(self._view_ids) > 0

    def query(self, signature: np.ndarray, top_k: int) -> list[RetrievalCandidate]:
        if not self.is_ready():
            msg = "the map has no localized view to match against"
            raise RetrievalUnavailable(msg)
        return [RetrievalCandidate(v, 1.0) for v in self._view_ids]


def prune_candidates(
    candidates: list[RetrievalCandidate],
    map_model: MapModel,
    reference: Frustum,
) -> list[RetrievalCandidate]:
    """
    Drop candidates whose view volume cannot overlap a reference frustum.

    Views without a depth range use an infinite frustum.
    """
    kept = []
    for cand in candidates:
        pose = map_model.view_pose(cand.view_id)
        if pose is None:
            continue
        frustum = Frustum.from_camera(
            map_model.view_intrinsic(cand.view_id), pose, map_model.depth_range(cand.view_id)
        )
        if reference.intersect(frustum):
            kept.append(cand)
    logger.debug("frustum pruning kept %d/%d candidates", len(kept), len(candidates))
    return kept
