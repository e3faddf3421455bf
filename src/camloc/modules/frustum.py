"""Camera view volumes as intersections of half-spaces."""

import logging

import numpy as np

from camloc.datatypes import Intrinsic, Pose
from camloc.errors import GeometryIndeterminate
from camloc.modules.half_space import HalfPlane, is_not_empty

logger = logging.getLogger(__name__)


class Frustum:
    """
    Visible volume of a pinhole camera.

    Four lateral half-planes through the camera center and the image corners
    define an infinite pyramid. When a depth range is given, near and far
    half-planes truncate it.
    """

    def __init__(
        self,
        width: int,
        height: int,
        K: np.ndarray,
        R: np.ndarray,
        C: np.ndarray,
        z_near: float | None = None,
        z_far: float | None = None,
    ) -> None:
        """
        Build the frustum of a camera.

        Args:
            width: Image width in pixels.
            height: Image height in pixels.
            K: Intrinsic matrix (3x3).
            R: World-to-camera rotation (3x3).
            C: Camera center in world coordinates (3,).
            z_near: Optional minimum depth along the optical axis.
            z_far: Optional maximum depth along the optical axis.

        """
        if (z_near is None) != (z_far is None):
            msg = "z_near and z_far must be given together"
            raise ValueError(msg)
        if z_near is not None and not 0.0 <= z_near <= z_far:
            msg = f"invalid depth range [{z_near}, {z_far}]"
            raise ValueError(msg)

        self.C = np.asarray(C, dtype=np.float64).reshape(3)
        self.z_near = z_near
        self.z_far = z_far

        K_inv = np.linalg.inv(np.asarray(K, dtype=np.float64))
        R_t = np.asarray(R, dtype=np.float64).T

        # image corners back-projected at unit depth
        corners = np.array(
            [[0.0, 0.0, 1.0], [width, 0.0, 1.0], [width, height, 1.0], [0.0, height, 1.0]]
        )
        rays = (R_t @ (K_inv @ corners.T)).T
        self.cones = np.vstack([self.C, rays + self.C])

        c0, c1, c2, c3, c4 = self.cones
        self.planes = [
            HalfPlane.through(c0, c4, c3),
            HalfPlane.through(c0, c1, c4),
            HalfPlane.through(c0, c2, c1),
            HalfPlane.through(c0, c3, c2),
        ]

        if z_near is not None:
            axis = R_t @ np.array([0.0, 0.0, 1.0])
            self.planes.append(HalfPlane(self.C + z_near * axis, axis))
            self.planes.append(HalfPlane(self.C + z_far * axis, -axis))

    @classmethod
    def from_camera(
        cls,
        intrinsic: Intrinsic,
        pose: Pose,
        depth_range: tuple[float, float] | None = None,
    ) -> "Frustum":
        z_near, z_far = depth_range if depth_range is not None else (None, None)
        return cls(
            intrinsic.width,
            intrinsic.height,
            intrinsic.K,
            pose.rotation,
            pose.center,
            z_near,
            z_far,
        )

    def is_infinite(self) -> bool:
        return self.z_near is None

    def is_truncated(self) -> bool:
        return self.z_near is not None

    def contains(self, pts: np.ndarray) -> np.ndarray:
        pts = np.atleast_2d(pts)
        inside = np.ones(len(pts), dtype=bool)
        for hp in self.planes:
            inside &= hp.contains(pts, tol=1e-9)
        return inside

    def intersect(self, other: "Frustum") -> bool:
        """
        Check whether two frusta share some space.

        An undecidable feasibility problem is reported as no intersection.
        """
        try:
            return is_not_empty(self.planes + other.planes)
        except GeometryIndeterminate as e:
            logger.warning("frustum intersection treated as empty: %s", e)
            return False

    def __repr__(self) -> str:
        kind = "infinite" if self.is_infinite() else f"[{self.z_near:.3g}, {self.z_far:.3g}]"
        return f"Frustum(C={self.C.round(3).tolist()}, {kind})"
