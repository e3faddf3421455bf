"""Passive data structures shared by the localization pipeline."""

from dataclasses import dataclass, field

import cv2
import numpy as np


def _readonly(arr: np.ndarray, dtype: type = np.float64) -> np.ndarray:
    out = np.array(arr, dtype=dtype, copy=True)
    out.flags.writeable = False
    return out


@dataclass(frozen=True, eq=False)
class Intrinsic:
    """
    Pinhole camera with up to three radial distortion coefficients.

    Attributes:
        width: Image width in pixels.
        height: Image height in pixels.
        fx, fy: Focal lengths in pixels.
        cx, cy: Principal point in pixels.
        k1, k2, k3: Radial distortion coefficients.

    """

    width: int
    height: int
    fx: float
    fy: float
    cx: float
    cy: float
    k1: float = 0.0
    k2: float = 0.0
    k3: float = 0.0

    @classmethod
    def from_matrix(
        cls,
        K: np.ndarray,
        width: int,
        height: int,
        radial: tuple[float, float, float] = (0.0, 0.0, 0.0),
    ) -> "Intrinsic":
        return cls(
            int(width),
            int(height),
            float(K[0, 0]),
            float(K[1, 1]),
            float(K[0, 2]),
            float(K[1, 2]),
            *(float(k) for k in radial),
        )

    @property
    def K(self) -> np.ndarray:
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]]
        )

    @property
    def radial(self) -> np.ndarray:
        return np.array([self.k1, self.k2, self.k3])

    @property
    def dist_coeffs(self) -> np.ndarray:
        """Distortion vector in OpenCV order (k1, k2, p1, p2, k3)."""
        return np.array([self.k1, self.k2, 0.0, 0.0, self.k3])

    @property
    def has_distortion(self) -> bool:
        return bool(np.any(self.radial != 0.0))

    def without_distortion(self) -> "Intrinsic":
        return Intrinsic(
            self.width, self.height, self.fx, self.fy, self.cx, self.cy
        )

    def cam_to_pixel(self, pts_cam: np.ndarray) -> np.ndarray:
        """
        Project camera-frame points onto the image, applying radial distortion.

        Args:
            pts_cam: (N, 3) points in the camera frame.

        Returns:
            (N, 2) pixel coordinates.

        """
        # avoid zero div
        z = pts_cam[:, 2] + 1e-12
        x = pts_cam[:, 0] / z
        y = pts_cam[:, 1] / z
        if self.has_distortion:
            r2 = x * x + y * y
            factor = 1.0 + self.k1 * r2 + self.k2 * r2**2 + self.k3 * r2**3
            x = x * factor
            y = y * factor
        return np.stack([self.fx * x + self.cx, self.fy * y + self.cy], axis=1)

    def undistort_points(self, px: np.ndarray) -> np.ndarray:
        """Remove radial distortion, returning pinhole pixel coordinates."""
        if not self.has_distortion or len(px) == 0:
            return np.asarray(px, dtype=np.float64)
        und = cv2.undistortPoints(
            np.asarray(px, dtype=np.float64).reshape(-1, 1, 2),
            self.K,
            self.dist_coeffs,
            P=self.K,
        )
        return und.reshape(-1, 2)

    def to_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "fx": self.fx,
            "fy": self.fy,
            "cx": self.cx,
            "cy": self.cy,
            "radial": [self.k1, self.k2, self.k3],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Intrinsic":
        radial = data.get("radial", [0.0, 0.0, 0.0])
        return cls(
            int(data["width"]),
            int(data["height"]),
            float(data["fx"]),
            float(data["fy"]),
            float(data["cx"]),
            float(data["cy"]),
            *(float(k) for k in radial),
        )


@dataclass(frozen=True, eq=False)
class Pose:
    """
    Camera pose as rotation plus camera center.

    Attributes:
        rotation: World-to-camera rotation matrix (3x3).
        center: Camera center in world coordinates (3,).

    """

    rotation: np.ndarray
    center: np.ndarray

    def __post_init__(self) -> None:
        R = np.asarray(self.rotation, dtype=np.float64)
        C = np.asarray(self.center, dtype=np.float64).reshape(3)
        if R.shape != (3, 3):
            msg = f"rotation must be 3x3, got {R.shape}"
            raise ValueError(msg)
        object.__setattr__(self, "rotation", _readonly(R))
        object.__setattr__(self, "center", _readonly(C))

    @classmethod
    def from_rt(cls, R: np.ndarray, t: np.ndarray) -> "Pose":
        """Build a pose from a world-to-camera rotation and translation."""
        R = np.asarray(R, dtype=np.float64)
        return cls(R, -R.T @ np.asarray(t, dtype=np.float64).reshape(3))

    @classmethod
    def identity(cls) -> "Pose":
        return cls(np.eye(3), np.zeros(3))

    @property
    def translation(self) -> np.ndarray:
        return -self.rotation @ self.center

    @property
    def T_cw(self) -> np.ndarray:
        """World -> Camera (4x4)."""
        T = np.eye(4)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    @property
    def optical_axis(self) -> np.ndarray:
        """Viewing direction in world coordinates."""
        return self.rotation[2].copy()

    def transform(self, pts_world: np.ndarray) -> np.ndarray:
        """Map (N, 3) world points into the camera frame."""
        return (self.rotation @ (np.asarray(pts_world) - self.center).T).T

    def depth(self, pts_world: np.ndarray) -> np.ndarray:
        return self.transform(np.atleast_2d(pts_world))[:, 2]

    def to_dict(self) -> dict:
        return {
            "rotation": self.rotation.tolist(),
            "center": self.center.tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Pose":
        return cls(np.array(data["rotation"]), np.array(data["center"]))


@dataclass(frozen=True, eq=False)
class Features:
    """
    Output of a describer for one image.

    Attributes:
        keypoints: (N, 2) pixel coordinates.
        descriptors: (N, D) descriptors, float32 or uint8 (binary).

    """

    keypoints: np.ndarray
    descriptors: np.ndarray

    def __post_init__(self) -> None:
        if len(self.keypoints) != len(self.descriptors):
            msg = "keypoints and descriptors must have the same length"
            raise ValueError(msg)

    def __len__(self) -> int:
        return len(self.keypoints)

    @property
    def is_binary(self) -> bool:
        return self.descriptors.dtype == np.uint8

    def subset(self, idx: np.ndarray) -> "Features":
        return Features(self.keypoints[idx], self.descriptors[idx])


@dataclass(frozen=True, eq=False)
class Matches:
    """
    Putative correspondences between a query and a train descriptor set.

    Attributes:
        query_idx: (M,) indices into the query features.
        train_idx: (M,) indices into the train features.
        distances: (M,) descriptor distance of each match.

    """

    query_idx: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=int))
    train_idx: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=int))
    distances: np.ndarray = field(default_factory=lambda: np.empty(0))

    def __len__(self) -> int:
        return len(self.query_idx)

    def subset(self, mask: np.ndarray) -> "Matches":
        return Matches(self.query_idx[mask], self.train_idx[mask], self.distances[mask])


@dataclass(frozen=True, eq=False)
class Associations:
    """
    2D-3D correspondences between query features and map landmarks.

    Attributes:
        feature_ids: (M,) query feature indices.
        landmark_ids: (M,) map landmark identifiers.
        pts_2d: (M, 2) query keypoints in pixels.
        pts_3d: (M, 3) landmark positions in world coordinates.

    """

    feature_ids: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=int))
    landmark_ids: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=int))
    pts_2d: np.ndarray = field(default_factory=lambda: np.empty((0, 2)))
    pts_3d: np.ndarray = field(default_factory=lambda: np.empty((0, 3)))

    def __len__(self) -> int:
        return len(self.feature_ids)

    def subset(self, idx: np.ndarray) -> "Associations":
        return Associations(
            self.feature_ids[idx],
            self.landmark_ids[idx],
            self.pts_2d[idx],
            self.pts_3d[idx],
        )

    @classmethod
    def concatenate(cls, parts: list["Associations"]) -> "Associations":
        parts = [p for p in parts if len(p) > 0]
        if not parts:
            return cls()
        return cls(
            np.concatenate([p.feature_ids for p in parts]).astype(int),
            np.concatenate([p.landmark_ids for p in parts]).astype(int),
            np.vstack([p.pts_2d for p in parts]),
            np.vstack([p.pts_3d for p in parts]),
        )

    def deduplicate(self) -> "Associations":
        """
        Keep one association per query feature.

        A feature associated with two different landmarks is ambiguous and dropped.
        """
        if len(self) == 0:
            return self
        keep = []
        seen: dict[int, int] = {}
        conflicted: set[int] = set()
        for i, (fid, lid) in enumerate(zip(self.feature_ids, self.landmark_ids)):
            fid, lid = int(fid), int(lid)
            if fid in seen:
                if self.landmark_ids[seen[fid]] != lid:
                    conflicted.add(fid)
                continue
            seen[fid] = i
            keep.append(i)
        keep = [i for i in keep if int(self.feature_ids[i]) not in conflicted]
        return self.subset(np.array(keep, dtype=int))


@dataclass
class FrameData:
    """
    A query frame handed over by a feed.

    Attributes:
        frame_id: Sequential index in the stream.
        name: Image identifier (file name or video frame tag).
        image: Grayscale image data.
        intrinsic: Known intrinsics for this frame, if any.

    """

    frame_id: int
    name: str
    image: np.ndarray
    intrinsic: Intrinsic | None = None
