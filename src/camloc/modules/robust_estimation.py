"""LO-RANSAC and AC-RANSAC over pluggable model kernels."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import numpy as np
from scipy.special import gammaln

from camloc.config.config import RobustEstimator, check_robust_estimator
from camloc.errors import EstimationFailed, InsufficientCorrespondences

logger = logging.getLogger(__name__)

_LN10 = np.log(10.0)


class Kernel(ABC):
    """
    Model family plugged into the robust estimators.

    Subclasses set sample_size, max_models and the a-contrario constants,
    and implement fit / residuals. refit is used for local optimization.

    Attributes:
        sample_size: Minimal number of correspondences for fit.
        max_models: Maximum number of models a minimal sample can produce.
        logalpha0: log10 of the probability that a random point has error 1.
        mult_error: Exponent applied to the residuals in the NFA.

    """

    sample_size: int = 0
    max_models: int = 1
    logalpha0: float = 0.0
    mult_error: float = 1.0

    @abstractmethod
    def __len__(self) -> int:
        pass

    @abstractmethod
    def fit(self, idx: np.ndarray) -> list[Any]:
        """Models explaining the given sample, empty for a degenerate sample."""

    @abstractmethod
    def residuals(self, model: Any) -> np.ndarray:
        """Squared error of every correspondence under a model."""

    def refit(self, idx: np.ndarray) -> Any | None:
        models = self.fit(idx)
        return models[0] if models else None


@dataclass
class RobustFit:
    """
    Result of a robust estimation.

    Attributes:
        model: The retained model.
        inliers: Sorted indices of the inlier correspondences.
        threshold: Inlier threshold on the (non squared) error.
        iterations: Number of hypotheses sampled.

    """

    model: Any
    inliers: np.ndarray
    threshold: float
    iterations: int


def _log_combi(n: int, k: np.ndarray) -> np.ndarray:
    """log10 of the binomial coefficient C(n, k)."""
    return (gammaln(n + 1) - gammaln(k + 1) - gammaln(n - k + 1)) / _LN10


def _ransac_iterations(inlier_ratio: float, sample_size: int, confidence: float) -> float:
    if inlier_ratio <= 0.0:
        return np.inf
    p = inlier_ratio**sample_size
    if p >= 1.0:
        return 0.0
    return np.log(1.0 - confidence) / np.log(1.0 - p)


def _check_data(kernel: Kernel) -> int:
    n = len(kernel)
    if n < kernel.sample_size:
        raise InsufficientCorrespondences(n, kernel.sample_size)
    return n


def lo_ransac(
    kernel: Kernel,
    threshold: float,
    min_inliers: int,
    max_iterations: int = 1024,
    confidence: float = 0.99,
    rng: np.random.Generator | None = None,
    lo_steps: int = 4,
) -> RobustFit:
    """
    LO-RANSAC: fixed inlier band with local re-optimization of the best model.

    Args:
        kernel: The model family and data.
        threshold: Inlier threshold on the error, must be > 1e-6.
        min_inliers: Inlier floor of an acceptable model.
        max_iterations: Upper bound on the number of samples.
        confidence: Probability of drawing one outlier-free sample.
        rng: Random generator.
        lo_steps: Refit iterations of the local optimization.

    Raises:
        ConfigurationError: If the threshold is not usable.
        InsufficientCorrespondences: If there is not a single minimal sample.
        EstimationFailed: If no model reaches the inlier floor.

    """
    threshold = check_robust_estimator(RobustEstimator.LORANSAC, threshold)
    n = _check_data(kernel)
    rng = rng or np.random.default_rng()
    thr_sq = threshold * threshold
    s = kernel.sample_size

    best_model = None
    best_inliers = np.empty(0, dtype=int)
    needed = float(max_iterations)
    it = 0
    while it < min(needed, max_iterations):
        it += 1
        sample = rng.choice(n, size=s, replace=False)
        for model in kernel.fit(sample):
            inliers = np.flatnonzero(kernel.residuals(model) < thr_sq)
            if len(inliers) <= len(best_inliers):
                continue

            # local optimization on the consensus set
            for _ in range(lo_steps):
                if len(inliers) <= s:
                    break
                refined = kernel.refit(inliers)
                if refined is None:
                    break
                refined_inliers = np.flatnonzero(kernel.residuals(refined) < thr_sq)
                if len(refined_inliers) < len(inliers):
                    break
                model, inliers = refined, refined_inliers

            best_model, best_inliers = model, inliers
            needed = _ransac_iterations(len(inliers) / n, s, confidence)

    logger.debug(
        "lo-ransac: %d/%d inliers after %d iterations", len(best_inliers), n, it
    )
    if best_model is None or len(best_inliers) < max(min_inliers, s):
        msg = (
            f"lo-ransac found {len(best_inliers)} inliers, "
            f"{max(min_inliers, s)} required"
        )
        raise EstimationFailed(msg)
    return RobustFit(best_model, best_inliers, threshold, it)


def _best_nfa(
    sorted_errors: np.ndarray,
    n: int,
    kernel: Kernel,
    loge0: float,
    log_cn: np.ndarray,
    log_ck: np.ndarray,
    precision: float,
) -> tuple[float, int]:
    """Smallest NFA over the number of inliers, and the matching inlier count."""
    s = kernel.sample_size
    ks = np.arange(s + 1, n + 1)
    errors = sorted_errors[s:]
    usable = errors <= precision
    if not np.any(usable):
        return np.inf, 0
    logalpha = kernel.logalpha0 + kernel.mult_error * np.log10(errors + np.finfo(float).eps)
    # the inlier band can never be larger than the whole image
    logalpha = np.minimum(logalpha, 0.0)
    nfa = loge0 + logalpha * (ks - s) + log_cn[ks] + log_ck[ks]
    nfa = np.where(usable, nfa, np.inf)
    best = int(np.argmin(nfa))
    return float(nfa[best]), int(ks[best])


def ac_ransac(
    kernel: Kernel,
    threshold: float,
    min_inliers: int,
    max_iterations: int = 1024,
    rng: np.random.Generator | None = None,
) -> RobustFit:
    """
    AC-RANSAC: hypotheses ranked by their number of false alarms.

    The inlier threshold is whichever makes the consensus least likely to be
    due to chance. A threshold of 0 or inf leaves the band unbounded;
    otherwise it caps the threshold that can be selected.

    Args:
        kernel: The model family and data.
        threshold: Upper bound of the inlier threshold on the error.
        min_inliers: Inlier floor of an acceptable model.
        max_iterations: Number of samples drawn.
        rng: Random generator.

    Raises:
        InsufficientCorrespondences: If there is not a single minimal sample.
        EstimationFailed: If no meaningful model reaches the inlier floor.

    """
    threshold = check_robust_estimator(RobustEstimator.ACRANSAC, threshold)
    n = _check_data(kernel)
    rng = rng or np.random.default_rng()
    s = kernel.sample_size
    precision = threshold * threshold

    loge0 = np.log10(kernel.max_models * max(n - s, 1))
    k = np.arange(n + 1)
    log_cn = _log_combi(n, k)
    log_ck = np.full(n + 1, -np.inf)
    log_ck[s:] = (gammaln(k[s:] + 1) - gammaln(s + 1) - gammaln(k[s:] - s + 1)) / _LN10

    # the last tenth of the iterations samples from the best consensus
    reserve = max_iterations // 10
    best_nfa = np.inf
    best_model = None
    best_errors = None
    best_k = 0
    pool = np.arange(n)
    it = 0
    while it < max_iterations:
        it += 1
        if it == max_iterations - reserve and best_model is not None and best_k > s:
            order = np.argsort(best_errors, kind="stable")
            pool = np.sort(order[:best_k])
        sample = pool[rng.choice(len(pool), size=s, replace=False)]
        for model in kernel.fit(sample):
            errors = kernel.residuals(model)
            nfa, k = _best_nfa(
                np.sort(errors), n, kernel, loge0, log_cn, log_ck, precision
            )
            if nfa < best_nfa:
                best_nfa, best_model, best_errors, best_k = nfa, model, errors, k

    if best_model is None or best_nfa >= 0.0:
        msg = f"ac-ransac found no meaningful model (best log10 NFA {best_nfa:.2f})"
        raise EstimationFailed(msg)

    kth_error = np.sort(best_errors)[best_k - 1]
    inliers = np.flatnonzero(best_errors <= kth_error)
    logger.debug(
        "ac-ransac: %d/%d inliers, threshold %.3f, log10 NFA %.2f",
        len(inliers),
        n,
        np.sqrt(kth_error),
        best_nfa,
    )
    if len(inliers) < max(min_inliers, s):
        msg = f"ac-ransac found {len(inliers)} inliers, {max(min_inliers, s)} required"
        raise EstimationFailed(msg)
    return RobustFit(best_model, inliers, float(np.sqrt(kth_error)), it)


def robust_estimate(
    kernel: Kernel,
    estimator: RobustEstimator,
    threshold: float,
    min_inliers: int,
    max_iterations: int = 1024,
    confidence: float = 0.99,
    rng: np.random.Generator | None = None,
) -> RobustFit:
    """
    Dispatch to the estimator selected by configuration.

    Raises:
        ConfigurationError: For an unsupported estimator or threshold.

    """
    estimator = RobustEstimator(estimator)
    threshold = check_robust_estimator(estimator, threshold)
    if estimator == RobustEstimator.LORANSAC:
        return lo_ransac(kernel, threshold, min_inliers, max_iterations, confidence, rng)
    return ac_ransac(kernel, threshold, min_inliers, max_iterations, rng)
