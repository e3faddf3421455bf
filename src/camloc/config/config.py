import logging
from dataclasses import dataclass, replace
from enum import Enum

from camloc.errors import ConfigurationError

logger = logging.getLogger(__name__)


class RobustEstimator(str, Enum):
    """Enum for the robust estimation frameworks."""

    ACRANSAC = "acransac"
    LORANSAC = "loransac"
    RANSAC = "ransac"


class MatchingAlgorithm(str, Enum):
    """How retrieved candidates are combined before resection."""

    FIRST_BEST = "first_best"
    ALL_RESULTS = "all_results"


class LocalizerKind(str, Enum):
    """Localizer variants that can be selected at startup."""

    RETRIEVAL = "retrieval"
    EXHAUSTIVE = "exhaustive"


# below this value the LO-RANSAC inlier band is meaningless
LORANSAC_MIN_THRESHOLD = 1e-6


def check_robust_estimator(estimator: RobustEstimator, value: float) -> float:
    """
    Check that an error threshold is compatible with a robust estimator.

    Args:
        estimator: The estimator the threshold is meant for.
        value: The reprojection or matching error in pixels.

    Returns:
        The threshold to use. For AC-RANSAC a value of 0 becomes infinity,
        i.e. the threshold is estimated during the ransac process.

    Raises:
        ConfigurationError: If the estimator is not supported or the value
            cannot be used with LO-RANSAC.

    """
    estimator = RobustEstimator(estimator)
    if estimator not in (RobustEstimator.ACRANSAC, RobustEstimator.LORANSAC):
        msg = (
            f"Only {RobustEstimator.ACRANSAC.value} and "
            f"{RobustEstimator.LORANSAC.value} are supported, got {estimator.value}"
        )
        raise ConfigurationError(msg)
    if estimator == RobustEstimator.ACRANSAC:
        return float("inf") if value == 0 else float(value)
    if value <= LORANSAC_MIN_THRESHOLD:
        msg = (
            f"error threshold {value} cannot be used with "
            f"{RobustEstimator.LORANSAC.value}, it must be > {LORANSAC_MIN_THRESHOLD}"
        )
        raise ConfigurationError(msg)
    return float(value)


@dataclass(frozen=True)
class LocalizerConfig:
    """Configuration data class for the per-frame localizer."""

    # localizer variant
    localizer: LocalizerKind = LocalizerKind.RETRIEVAL
    describer: str = "sift"

    # resection
    resection_estimator: RobustEstimator = RobustEstimator.ACRANSAC
    resection_error_max: float = 4.0  # px, 0 lets acransac choose
    refine_intrinsics: bool = False
    min_inliers: int = 6
    max_iterations: int = 1024
    confidence: float = 0.99
    seed: int | None = 0

    # matching
    matching_estimator: RobustEstimator = RobustEstimator.ACRANSAC
    matching_error_max: float = 4.0  # px, 0 lets acransac choose
    ratio_threshold: float = 0.8
    robust_matching: bool = True

    # retrieval
    algorithm: MatchingAlgorithm = MatchingAlgorithm.ALL_RESULTS
    nb_image_match: int = 4  # images retrieved from the database
    max_results: int = 10  # stop once this many images matched, 0 = no limit
    prune_with_frustum: bool = False

    # temporal buffer
    nb_frame_buffer_matching: int = 10  # 0 disables the buffer
    min_buffer_correspondences: int = 20

    def validated(self) -> "LocalizerConfig":
        """
        Return a copy with thresholds checked against their estimators.

        Raises:
            ConfigurationError: On any invalid combination.

        """
        if self.ratio_threshold <= 0.0 or self.ratio_threshold > 1.0:
            msg = f"ratio_threshold must be in (0, 1], got {self.ratio_threshold}"
            raise ConfigurationError(msg)
        if self.min_inliers < 6:
            msg = f"min_inliers must be >= 6 for resection, got {self.min_inliers}"
            raise ConfigurationError(msg)
        if self.nb_frame_buffer_matching < 0:
            msg = "nb_frame_buffer_matching cannot be negative"
            raise ConfigurationError(msg)
        return replace(
            self,
            localizer=LocalizerKind(self.localizer),
            algorithm=MatchingAlgorithm(self.algorithm),
            resection_estimator=RobustEstimator(self.resection_estimator),
            matching_estimator=RobustEstimator(self.matching_estimator),
            resection_error_max=check_robust_estimator(
                self.resection_estimator, self.resection_error_max
            ),
            matching_error_max=check_robust_estimator(
                self.matching_estimator, self.matching_error_max
            ),
        )


@dataclass(frozen=True)
class BundleConfig:
    """Configuration for the optional refinement of the whole sequence."""

    global_bundle: bool = False
    no_distortion: bool = False  # distortion considered all equal to 0
    no_ba_refine_intrinsics: bool = False
    refine_structure: bool = False
    min_point_visibility: int = 0  # 0 keeps every point
    max_iterations: int = 100
    backend: str = "scipy"  # scipy, ceres

    def resolved(self, refine_intrinsics_per_frame: bool) -> "BundleConfig":
        """The global bundle only runs when intrinsics were not refined per frame."""
        if self.backend not in ("scipy", "ceres"):
            msg = f"Unsupported refinement backend {self.backend}"
            raise ConfigurationError(msg)
        if self.global_bundle and refine_intrinsics_per_frame:
            logger.warning(
                "global bundle disabled: intrinsics are already refined per frame"
            )
            return replace(self, global_bundle=False)
        return self


def get_config(preset: str = "default") -> LocalizerConfig:
    """
    Return the configuration for a named preset.

    Args:
        preset: Name of the preset (default, fast, accurate).

    Returns:
        The configuration object with preset-specific overrides.

    """
    cfg = LocalizerConfig()

    if preset == "fast":
        cfg = replace(
            cfg,
            describer="orb",
            nb_image_match=2,
            max_results=4,
            max_iterations=256,
            algorithm=MatchingAlgorithm.FIRST_BEST,
            robust_matching=False,
        )

    elif preset == "accurate":
        cfg = replace(
            cfg,
            nb_image_match=8,
            max_results=0,
            max_iterations=4096,
            confidence=0.999,
            refine_intrinsics=True,
        )

    elif preset != "default":
        msg = f"Unknown preset {preset}"
        raise ConfigurationError(msg)

    return cfg
