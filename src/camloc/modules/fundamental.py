"""Fundamental matrix minimal and linear solvers."""

import numpy as np


def _epipolar_system(x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """One row per correspondence of x2^T F x1 = 0, F in row-major order."""
    u1, v1 = x1[:, 0], x1[:, 1]
    u2, v2 = x2[:, 0], x2[:, 1]
    ones = np.ones(len(x1))
    return np.stack(
        [u2 * u1, u2 * v1, u2, v2 * u1, v2 * v1, v2, u1, v1, ones], axis=1
    )


def _check_input(x1: np.ndarray, x2: np.ndarray, minimum: int) -> tuple[np.ndarray, np.ndarray]:
    x1 = np.asarray(x1, dtype=np.float64)
    x2 = np.asarray(x2, dtype=np.float64)
    if x1.shape != x2.shape or x1.ndim != 2 or x1.shape[1] != 2:
        msg = f"expected two (N, 2) point arrays, got {x1.shape} and {x2.shape}"
        raise ValueError(msg)
    if len(x1) < minimum:
        msg = f"at least {minimum} correspondences are required, got {len(x1)}"
        raise ValueError(msg)
    return x1, x2


def _unit(F: np.ndarray) -> np.ndarray:
    return F / np.linalg.norm(F)


def enforce_rank2(F: np.ndarray) -> np.ndarray:
    U, S, Vt = np.linalg.svd(F)
    S[2] = 0.0
    return U @ np.diag(S) @ Vt


def normalization_transform(pts: np.ndarray) -> np.ndarray:
    """Similarity moving the centroid to the origin with mean distance sqrt(2)."""
    centroid = pts.mean(axis=0)
    mean_dist = np.mean(np.linalg.norm(pts - centroid, axis=1))
    scale = np.sqrt(2.0) / mean_dist if mean_dist > 1e-12 else 1.0
    return np.array(
        [
            [scale, 0.0, -scale * centroid[0]],
            [0.0, scale, -scale * centroid[1]],
            [0.0, 0.0, 1.0],
        ]
    )


def _apply(T: np.ndarray, pts: np.ndarray) -> np.ndarray:
    return pts @ T[:2, :2].T + T[:2, 2]


def seven_point(x1: np.ndarray, x2: np.ndarray) -> list[np.ndarray]:
    """
    Fundamental matrices from 7 correspondences.

    The two-dimensional null space of the epipolar system is intersected with
    the rank-2 constraint det(a F1 + (1 - a) F2) = 0, which gives one or three
    real solutions.

    Args:
        x1: (7, 2) points in the first image.
        x2: (7, 2) points in the second image.

    Returns:
        List of unit Frobenius norm candidates.

    """
    x1, x2 = _check_input(x1, x2, 7)
    A = _epipolar_system(x1, x2)
    _, _, Vt = np.linalg.svd(A)
    F1 = Vt[-1].reshape(3, 3)
    F2 = Vt[-2].reshape(3, 3)

    # det of the pencil is a cubic in a, fit it exactly from four samples
    samples = np.array([-1.0, 0.0, 1.0, 2.0])
    dets = [np.linalg.det(a * F1 + (1.0 - a) * F2) for a in samples]
    coeffs = np.linalg.solve(np.vander(samples, 4), dets)

    if np.max(np.abs(coeffs)) < 1e-12:
        # every member of the pencil is already singular
        return [_unit(F1)]

    solutions = []
    for root in np.roots(coeffs):
        if abs(root.imag) > 1e-10:
            continue
        a = root.real
        F = a * F1 + (1.0 - a) * F2
        if np.linalg.norm(F) > 1e-12:
            solutions.append(_unit(F))
    return solutions


def eight_point(x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """
    Linear least squares fundamental matrix from at least 8 correspondences.

    Args:
        x1: (N, 2) points in the first image.
        x2: (N, 2) points in the second image.

    Returns:
        Rank-2 fundamental matrix with unit Frobenius norm.

    """
    x1, x2 = _check_input(x1, x2, 8)
    A = _epipolar_system(x1, x2)
    _, _, Vt = np.linalg.svd(A)
    F = Vt[-1].reshape(3, 3)
    return _unit(enforce_rank2(F))


def normalized_seven_point(x1: np.ndarray, x2: np.ndarray) -> list[np.ndarray]:
    x1, x2 = _check_input(x1, x2, 7)
    T1 = normalization_transform(x1)
    T2 = normalization_transform(x2)
    return [_unit(T2.T @ F @ T1) for F in seven_point(_apply(T1, x1), _apply(T2, x2))]


def normalized_eight_point(x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """Hartley-normalized eight point solver."""
    x1, x2 = _check_input(x1, x2, 8)
    T1 = normalization_transform(x1)
    T2 = normalization_transform(x2)
    F = eight_point(_apply(T1, x1), _apply(T2, x2))
    return _unit(T2.T @ F @ T1)


def epipolar_distance_sq(F: np.ndarray, x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """Squared distance of each x2 to the epipolar line F x1."""
    h1 = np.hstack([x1, np.ones((len(x1), 1))])
    h2 = np.hstack([x2, np.ones((len(x2), 1))])
    lines = h1 @ F.T
    num = np.sum(h2 * lines, axis=1) ** 2
    den = lines[:, 0] ** 2 + lines[:, 1] ** 2
    return num / np.maximum(den, 1e-24)


def fundamental_from_poses(
    K1: np.ndarray, R1: np.ndarray, t1: np.ndarray, K2: np.ndarray, R2: np.ndarray, t2: np.ndarray
) -> np.ndarray:
    """Fundamental matrix between two calibrated cameras given world-to-camera poses."""
    R = R2 @ R1.T
    t = t2 - R @ t1
    tx = np.array([[0.0, -t[2], t[1]], [t[2], 0.0, -t[0]], [-t[1], t[0], 0.0]])
    F = np.linalg.inv(K2).T @ tx @ R @ np.linalg.inv(K1)
    return _unit(F)
