"""Per-frame localization against a map, with a temporal buffer."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np

from camloc.config.config import LocalizerConfig, LocalizerKind, MatchingAlgorithm
from camloc.datatypes import Associations, Features, FrameData, Matches
from camloc.errors import (
    ConfigurationError,
    EstimationFailed,
    InsufficientCorrespondences,
    LocalizationError,
)
from camloc.modules.feature_matching import match_descriptors, match_features
from camloc.modules.frustum import Frustum
from camloc.modules.retrieval import (
    CandidateRetriever,
    ExhaustiveRetriever,
    VocabularyRetriever,
    prune_candidates,
)
from camloc.modules.state_estimation import PoseEstimate, estimate_pose
from camloc.state.frame_buffer import BufferedFrame, FrameBuffer
from camloc.state.localization_result import (
    MIN_RESECTION_SAMPLES,
    LocalizationResult,
    LocalizerState,
)
from camloc.state.map_model import MapModel

logger = logging.getLogger(__name__)


@dataclass
class _Session:
    """Mutable state of one sequence, owned by a single localizer."""

    cfg: LocalizerConfig
    buffer: FrameBuffer
    rng: np.random.Generator
    last_valid: LocalizationResult | None = None
    states: list[LocalizerState] = field(default_factory=list)

    def enter(self, state: LocalizerState) -> None:
        self.states.append(state)


def _image_size(frame: FrameData) -> tuple[int, int]:
    if frame.intrinsic is not None:
        return frame.intrinsic.width, frame.intrinsic.height
    height, width = frame.image.shape[:2]
    return width, height


def _match_buffer(session: _Session, map_model: MapModel, features: Features) -> Associations:
    """2D-3D associations of the query through the buffered frames."""
    parts = []
    for buffered in session.buffer:
        matches = match_descriptors(
            features.descriptors, buffered.features.descriptors, session.cfg.ratio_threshold
        )
        if len(matches) == 0:
            continue
        landmark_ids = buffered.landmark_ids[matches.train_idx]
        parts.append(
            Associations(
                matches.query_idx,
                landmark_ids,
                features.keypoints[matches.query_idx].astype(np.float64),
                map_model.landmark_positions(landmark_ids),
            )
        )
    return Associations.concatenate(parts)


def _resect(
    session: _Session, assoc: Associations, frame: FrameData
) -> tuple[PoseEstimate, Associations]:
    width, height = _image_size(frame)
    estimate = estimate_pose(assoc, frame.intrinsic, width, height, session.cfg, session.rng)
    return estimate, assoc.subset(estimate.inliers)


def _try_buffer(
    session: _Session, map_model: MapModel, frame: FrameData, features: Features
) -> tuple[PoseEstimate, Associations] | None:
    """Localize through the buffered frames, None when retrieval is needed."""
    cfg = session.cfg
    if not session.buffer.enabled or len(session.buffer) == 0:
        return None
    if session.buffer.total_correspondences() < cfg.min_buffer_correspondences:
        return None

    assoc = _match_buffer(session, map_model, features).deduplicate()
    if len(assoc) < cfg.min_buffer_correspondences:
        logger.debug(
            "frame %d: %d buffer correspondences, falling back to retrieval",
            frame.frame_id,
            len(assoc),
        )
        return None
    try:
        return _resect(session, assoc, frame)
    except (InsufficientCorrespondences, EstimationFailed) as e:
        logger.debug("frame %d: buffer resection failed (%s)", frame.frame_id, e)
        return None


def _match_candidate(
    session: _Session,
    map_model: MapModel,
    view_id: int,
    frame: FrameData,
    features: Features,
) -> Associations:
    vf = map_model.view_features[view_id]
    try:
        matches = match_features(
            features, vf.features, session.cfg, _image_size(frame), session.rng
        )
    except (InsufficientCorrespondences, EstimationFailed) as e:
        logger.debug("frame %d: view %d rejected by matching (%s)", frame.frame_id, view_id, e)
        matches = Matches()
    if len(matches) == 0:
        return Associations()
    return map_model.associations(view_id, features, matches.query_idx, matches.train_idx)


def _localize_candidates(
    session: _Session,
    map_model: MapModel,
    candidate_ids: list[int],
    frame: FrameData,
    features: Features,
) -> tuple[PoseEstimate, Associations, tuple[int, ...]]:
    """
    Match the query against candidate views and resect.

    first_best resects after every matched candidate and keeps the first
    pose found. all_results accumulates the associations of up to
    max_results matched candidates and resects once.
    """
    cfg = session.cfg
    matched_views: list[int] = []
    collected: list[Associations] = []
    last_error: LocalizationError | None = None

    for view_id in candidate_ids:
        assoc = _match_candidate(session, map_model, view_id, frame, features)
        if len(assoc) == 0:
            continue
        session.enter(LocalizerState.MATCHED)
        matched_views.append(view_id)

        if cfg.algorithm == MatchingAlgorithm.FIRST_BEST:
            try:
                estimate, inliers = _resect(session, assoc, frame)
            except (InsufficientCorrespondences, EstimationFailed) as e:
                logger.debug("frame %d: view %d gave no pose (%s)", frame.frame_id, view_id, e)
                last_error = e
                continue
            return estimate, inliers, (view_id,)

        collected.append(assoc)
        if cfg.max_results > 0 and len(collected) >= cfg.max_results:
            break

    if cfg.algorithm == MatchingAlgorithm.FIRST_BEST or not collected:
        if last_error is not None:
            raise last_error
        logger.debug("frame %d: none of %d candidates matched", frame.frame_id, len(candidate_ids))
        raise InsufficientCorrespondences(0, MIN_RESECTION_SAMPLES)

    combined = Associations.concatenate(collected).deduplicate()
    estimate, inliers = _resect(session, combined, frame)
    return estimate, inliers, tuple(matched_views)


def _finish(
    session: _Session,
    frame: FrameData,
    features: Features,
    estimate: PoseEstimate,
    inliers: Associations,
    matched_views: tuple[int, ...],
    from_buffer: bool,
) -> LocalizationResult:
    session.enter(LocalizerState.POSE_VALID)
    result = LocalizationResult(
        frame.frame_id,
        frame.name,
        estimate.pose,
        estimate.intrinsic,
        inliers,
        valid=True,
        state=LocalizerState.POSE_VALID,
        threshold=estimate.threshold,
        matched_views=matched_views,
        from_buffer=from_buffer,
    )
    session.buffer.push(
        BufferedFrame(frame.frame_id, features.subset(inliers.feature_ids), inliers.landmark_ids)
    )
    session.last_valid = result
    return result


def _fail(session: _Session, frame: FrameData, error: LocalizationError) -> LocalizationResult:
    session.enter(LocalizerState.POSE_INVALID)
    reason = f"{type(error).__name__}: {error}"
    logger.warning("frame %d (%s) not localized: %s", frame.frame_id, frame.name, reason)
    return LocalizationResult.invalid(frame.frame_id, frame.name, frame.intrinsic, reason)


def check_descriptor_layout(map_model: MapModel, binary: bool, width: int) -> None:
    """
    Check that query descriptors can be compared with the map descriptors.

    Raises:
        ConfigurationError: If the descriptor type or width differs from the map's.

    """
    layout = map_model.descriptor_layout()
    if layout is None or layout == (binary, width):
        return
    map_binary, map_width = layout
    msg = (
        f"query descriptors ({'binary' if binary else 'float'}, width {width}) do not match "
        f"the map descriptors ({'binary' if map_binary else 'float'}, width {map_width})"
    )
    raise ConfigurationError(msg)


def _run(
    session: _Session,
    map_model: MapModel,
    retriever: CandidateRetriever,
    frame: FrameData,
    features: Features,
) -> LocalizationResult:
    cfg = session.cfg
    session.states = [LocalizerState.IDLE]

    try:
        if len(features):
            check_descriptor_layout(map_model, features.is_binary, features.descriptors.shape[1])

        buffered = _try_buffer(session, map_model, frame, features)
        if buffered is not None:
            session.enter(LocalizerState.MATCHED)
            estimate, inliers = buffered
            views = session.last_valid.matched_views if session.last_valid else ()
            return _finish(session, frame, features, estimate, inliers, views, True)

        candidates = retriever.query(features.descriptors, cfg.nb_image_match)
        if cfg.prune_with_frustum and session.last_valid is not None:
            last = session.last_valid
            reference = Frustum.from_camera(last.intrinsic, last.pose)
            candidates = prune_candidates(candidates, map_model, reference)
        session.enter(LocalizerState.RETRIEVED)
        logger.debug(
            "frame %d: candidates %s", frame.frame_id, [c.view_id for c in candidates]
        )

        estimate, inliers, views = _localize_candidates(
            session, map_model, [c.view_id for c in candidates], frame, features
        )
        return _finish(session, frame, features, estimate, inliers, views, False)

    except LocalizationError as e:
        return _fail(session, frame, e)


class Localizer(ABC):
    """
    Frame by frame localization against a map.

    The variants differ only in where candidate views come from.
    """

    kind: LocalizerKind

    def __init__(self, cfg: LocalizerConfig) -> None:
        self.cfg = cfg.validated()
        self._map: MapModel | None = None
        self._retriever: CandidateRetriever | None = None
        self._session: _Session | None = None

    @abstractmethod
    def _build_retriever(self, map_model: MapModel) -> CandidateRetriever:
        pass

    def initialize(self, map_model: MapModel) -> None:
        self._map = map_model
        self._retriever = self._build_retriever(map_model)
        self._session = _Session(
            self.cfg,
            FrameBuffer(self.cfg.nb_frame_buffer_matching),
            np.random.default_rng(self.cfg.seed),
        )

    def is_ready(self) -> bool:
        return self._retriever is not None and self._retriever.is_ready()

    def check_descriptors(self, binary: bool, width: int) -> None:
        """Fail early when a describer cannot produce descriptors comparable to the map."""
        if self._map is None:
            msg = "localizer used before initialize()"
            raise RuntimeError(msg)
        check_descriptor_layout(self._map, binary, width)

    @property
    def buffer(self) -> FrameBuffer:
        return self._session.buffer

    @property
    def states(self) -> list[LocalizerState]:
        """States visited while localizing the last frame."""
        return list(self._session.states)

    def localize(self, frame: FrameData, features: Features) -> LocalizationResult:
        if self._session is None:
            msg = "localizer used before initialize()"
            raise RuntimeError(msg)
        return _run(self._session, self._map, self._retriever, frame, features)


class RetrievalLocalizer(Localizer):
    """Candidates come from an image retrieval index over the map."""

    kind = LocalizerKind.RETRIEVAL

    def __init__(self, cfg: LocalizerConfig, retriever: CandidateRetriever | None = None) -> None:
        super().__init__(cfg)
        self._given_retriever = retriever

    def _build_retriever(self, map_model: MapModel) -> CandidateRetriever:
        if self._given_retriever is not None:
            return self._given_retriever
        seed = self.cfg.seed if self.cfg.seed is not None else 0
        return VocabularyRetriever(seed=seed).build(map_model)


class ExhaustiveLocalizer(Localizer):
    """Every localized view of the map is a candidate, in view id order."""

    kind = LocalizerKind.EXHAUSTIVE

    def _build_retriever(self, map_model: MapModel) -> CandidateRetriever:
        return ExhaustiveRetriever(map_model)


def create_localizer(
    cfg: LocalizerConfig, retriever: CandidateRetriever | None = None
) -> Localizer:
    """Select the localizer variant named by the configuration."""
    kind = LocalizerKind(cfg.localizer)
    if kind == LocalizerKind.EXHAUSTIVE:
        return ExhaustiveLocalizer(cfg)
    return RetrievalLocalizer(cfg, retriever)
