from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from camloc.datatypes import Associations, Intrinsic, Pose


class LocalizerState(str, Enum):
    """Stages a frame goes through inside the localizer."""

    IDLE = "idle"
    RETRIEVED = "retrieved"
    MATCHED = "matched"
    POSE_VALID = "pose_valid"
    POSE_INVALID = "pose_invalid"


# minimal sample of the 6-point resection
MIN_RESECTION_SAMPLES = 6


@dataclass(frozen=True, eq=False)
class LocalizationResult:
    """
    Outcome of localizing one query frame. Immutable once created.

    Attributes:
        frame_id: Sequential index of the frame in the stream.
        name: Image identifier of the frame.
        pose: Estimated camera pose (None when invalid).
        intrinsic: Intrinsics used or estimated for the frame.
        inliers: Inlier 2D-3D correspondences supporting the pose.
        valid: Whether the pose can be trusted.
        state: Final state reached by the localizer.
        threshold: Inlier threshold (px) retained by the estimator.
        failure_reason: Name of the error that invalidated the frame.
        matched_views: Map views that contributed correspondences.
        from_buffer: Correspondences came from the temporal buffer.

    """

    frame_id: int
    name: str
    pose: Pose | None
    intrinsic: Intrinsic | None
    inliers: Associations = field(default_factory=Associations)
    valid: bool = False
    state: LocalizerState = LocalizerState.POSE_INVALID
    threshold: float = float("nan")
    failure_reason: str | None = None
    matched_views: tuple[int, ...] = ()
    from_buffer: bool = False

    def __post_init__(self) -> None:
        if self.valid:
            if self.pose is None or self.intrinsic is None:
                msg = "a valid result needs a pose and an intrinsic"
                raise ValueError(msg)
            if len(self.inliers) < MIN_RESECTION_SAMPLES:
                msg = (
                    f"a valid result needs at least {MIN_RESECTION_SAMPLES} inliers, "
                    f"got {len(self.inliers)}"
                )
                raise ValueError(msg)

    @classmethod
    def invalid(
        cls,
        frame_id: int,
        name: str,
        intrinsic: Intrinsic | None,
        reason: str,
    ) -> "LocalizationResult":
        return cls(frame_id, name, None, intrinsic, failure_reason=reason)

    @property
    def num_inliers(self) -> int:
        return len(self.inliers)

    def reprojection_errors(self) -> np.ndarray:
        """Pixel reprojection error of each inlier under the stored pose."""
        if not self.valid:
            return np.empty(0)
        proj = self.intrinsic.cam_to_pixel(self.pose.transform(self.inliers.pts_3d))
        return np.linalg.norm(proj - self.inliers.pts_2d, axis=1)

    def to_dict(self) -> dict:
        return {
            "frame_id": self.frame_id,
            "name": self.name,
            "valid": self.valid,
            "state": self.state.value,
            "threshold": None if not np.isfinite(self.threshold) else self.threshold,
            "failure_reason": self.failure_reason,
            "matched_views": list(self.matched_views),
            "from_buffer": self.from_buffer,
            "pose": None if self.pose is None else self.pose.to_dict(),
            "intrinsic": None if self.intrinsic is None else self.intrinsic.to_dict(),
            "inliers": {
                "feature_ids": self.inliers.feature_ids.tolist(),
                "landmark_ids": self.inliers.landmark_ids.tolist(),
                "pts_2d": self.inliers.pts_2d.tolist(),
                "pts_3d": self.inliers.pts_3d.tolist(),
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LocalizationResult":
        inl = data.get("inliers") or {}
        inliers = Associations(
            np.array(inl.get("feature_ids", []), dtype=int),
            np.array(inl.get("landmark_ids", []), dtype=int),
            np.array(inl.get("pts_2d", []), dtype=np.float64).reshape(-1, 2),
            np.array(inl.get("pts_3d", []), dtype=np.float64).reshape(-1, 3),
        )
        threshold = data.get("threshold")
        return cls(
            frame_id=int(data["frame_id"]),
            name=str(data["name"]),
            pose=None if data.get("pose") is None else Pose.from_dict(data["pose"]),
            intrinsic=(
                None
                if data.get("intrinsic") is None
                else Intrinsic.from_dict(data["intrinsic"])
            ),
            inliers=inliers,
            valid=bool(data["valid"]),
            state=LocalizerState(data.get("state", LocalizerState.POSE_INVALID.value)),
            threshold=float("nan") if threshold is None else float(threshold),
            failure_reason=data.get("failure_reason"),
            matched_views=tuple(int(v) for v in data.get("matched_views", [])),
            from_buffer=bool(data.get("from_buffer", False)),
        )
