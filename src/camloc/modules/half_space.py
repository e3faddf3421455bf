"""Convex half-space intersection tests."""

import logging
from dataclasses import dataclass
from typing import Iterable

import numpy as np
from scipy.optimize import linprog

from camloc.errors import GeometryIndeterminate

logger = logging.getLogger(__name__)

# half size of the box keeping the feasibility problem bounded
DEFAULT_BOUND = 1e6
# solver feasibility noise, boundary contact still counts as non-empty
DEFAULT_TOLERANCE = 1e-7


@dataclass(frozen=True, eq=False)
class HalfPlane:
    """
    Closed half-space {p : (p - point) . normal >= 0}.

    Attributes:
        point: A point on the supporting plane (3,).
        normal: Unit normal pointing into the half-space (3,).

    """

    point: np.ndarray
    normal: np.ndarray

    def __post_init__(self) -> None:
        point = np.asarray(self.point, dtype=np.float64).reshape(3)
        normal = np.asarray(self.normal, dtype=np.float64).reshape(3)
        norm = np.linalg.norm(normal)
        if not np.isfinite(norm) or norm < 1e-12:
            msg = f"degenerate half-plane normal {normal}"
            raise ValueError(msg)
        object.__setattr__(self, "point", point)
        object.__setattr__(self, "normal", normal / norm)

    @classmethod
    def through(cls, a: np.ndarray, b: np.ndarray, c: np.ndarray) -> "HalfPlane":
        """
        Half-space bounded by the plane through a, b, c.

        The kept side is the one opposite to (b - a) x (c - a), so for a
        counter-clockwise triangle seen from above the half-space lies below.
        """
        a = np.asarray(a, dtype=np.float64)
        normal = -np.cross(np.asarray(b) - a, np.asarray(c) - a)
        return cls(a, normal)

    def flipped(self) -> "HalfPlane":
        return HalfPlane(self.point, -self.normal)

    def signed_distance(self, pts: np.ndarray) -> np.ndarray:
        return (np.atleast_2d(pts) - self.point) @ self.normal

    def contains(self, pts: np.ndarray, tol: float = 0.0) -> np.ndarray:
        return self.signed_distance(pts) >= -tol


def find_deepest_point(
    half_planes: Iterable[HalfPlane], bound: float = DEFAULT_BOUND
) -> tuple[np.ndarray, float]:
    """
    Find the point that lies deepest inside all half-spaces.

    Solves  max s  s.t.  (x - p_i) . n_i >= s  for every half-plane, with x
    restricted to a box around the plane points and s capped at 1.

    Args:
        half_planes: The half-spaces to intersect.
        bound: Half size of the bounding box.

    Returns:
        The witness point and its slack s. The intersection is non-empty
        iff s >= 0.

    Raises:
        GeometryIndeterminate: If the solver does not reach an optimum.

    """
    planes = list(half_planes)
    if not planes:
        return np.zeros(3), 1.0

    points = np.array([hp.point for hp in planes])
    normals = np.array([hp.normal for hp in planes])
    center = points.mean(axis=0)
    rel = points - center

    # variables [x, y, z, s], minimize -s
    c = np.array([0.0, 0.0, 0.0, -1.0])
    A_ub = np.hstack([-normals, np.ones((len(planes), 1))])
    b_ub = -np.sum(normals * rel, axis=1)
    bounds = [(-bound, bound)] * 3 + [(None, 1.0)]

    res = linprog(c, A_ub=A_ub, b_ub=b_ub, bounds=bounds, method="highs")
    if res.status != 0 or res.x is None:
        msg = f"half-space feasibility undecided: {res.message}"
        raise GeometryIndeterminate(msg)

    return res.x[:3] + center, float(res.x[3])


def is_not_empty(
    half_planes: Iterable[HalfPlane],
    bound: float = DEFAULT_BOUND,
    tolerance: float = DEFAULT_TOLERANCE,
) -> bool:
    """
    Check whether a set of closed half-spaces has a common point.

    Args:
        half_planes: The half-spaces to intersect.
        bound: Half size of the bounding box of the search.
        tolerance: Solver noise accepted on the slack.

    Returns:
        True if at least one point satisfies every half-space, touching
        boundaries included.

    Raises:
        GeometryIndeterminate: If the solver cannot decide.

    """
    _, slack = find_deepest_point(half_planes, bound)
    logger.debug("half-space intersection slack %.3g", slack)
    return slack >= -tolerance
