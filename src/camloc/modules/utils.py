import json
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from scipy.spatial.transform import Rotation as R_scipy

from camloc.datatypes import Intrinsic, Pose
from camloc.state.localization_result import LocalizationResult


@dataclass(frozen=True)
class Keyframe:
    """
    One entry of a camera track.

    Attributes:
        index: Position of the frame in the stream.
        name: Image identifier.
        pose: Camera pose, None for a jump.
        intrinsic: Camera intrinsics, None for a jump.

    """

    index: int
    name: str
    pose: Pose | None = None
    intrinsic: Intrinsic | None = None

    @property
    def is_jump(self) -> bool:
        return self.pose is None


class CameraTrack:
    """Ordered keyframes of a localized sequence, with jumps for the missing frames."""

    def __init__(self) -> None:
        self.keyframes: list[Keyframe] = []

    def add_keyframe(self, name: str, pose: Pose, intrinsic: Intrinsic) -> None:
        self.keyframes.append(Keyframe(len(self.keyframes), name, pose, intrinsic))

    def jump_keyframe(self, name: str) -> None:
        """Mark a frame without a pose, it is never interpolated."""
        self.keyframes.append(Keyframe(len(self.keyframes), name))

    @classmethod
    def from_results(cls, results: list[LocalizationResult]) -> "CameraTrack":
        track = cls()
        for r in results:
            if r.valid:
                track.add_keyframe(r.name, r.pose, r.intrinsic)
            else:
                track.jump_keyframe(r.name)
        return track

    def __len__(self) -> int:
        return len(self.keyframes)

    def num_jumps(self) -> int:
        return sum(k.is_jump for k in self.keyframes)

    def positions(self) -> np.ndarray:
        """(N, 3) camera centers of the non-jump keyframes."""
        centers = [k.pose.center for k in self.keyframes if not k.is_jump]
        return np.array(centers) if centers else np.empty((0, 3))

    def to_dict(self) -> dict:
        return {
            "keyframes": [
                {
                    "index": k.index,
                    "name": k.name,
                    "jump": k.is_jump,
                    "pose": None if k.is_jump else k.pose.to_dict(),
                    "intrinsic": None if k.is_jump else k.intrinsic.to_dict(),
                }
                for k in self.keyframes
            ]
        }


def compute_trajectory_length(track: CameraTrack) -> float:
    """
    Compute total length of the camera trajectory, jumps excluded.

    Args:
        track: Camera track

    Returns:
        length: Total trajectory length (map units)

    """
    positions = track.positions()
    if len(positions) < 2:
        return 0.0
    # euclidian distance
    return float(np.sum(np.linalg.norm(np.diff(positions, axis=0), axis=1)))


def save_track_json(track: CameraTrack, filename: str | Path) -> None:
    with Path(filename).open("w") as f:
        json.dump(track.to_dict(), f, indent=2)


def save_trajectory(track: CameraTrack, filename: str | Path) -> None:
    """
    Save trajectory to file in TUM format (timestamp tx ty tz qx qy qz qw).

    The frame index is used as timestamp and jumps are not written. The
    translation is the camera center and the quaternion the camera-to-world
    rotation.

    Args:
        track: Camera track
        filename: Output filename

    """
    with Path(filename).open("w") as f:
        for k in track.keyframes:
            if k.is_jump:
                continue
            c = k.pose.center
            # rotation matrix to quaternion
            quat = R_scipy.from_matrix(k.pose.rotation.T).as_quat()
            f.write(
                f"{k.index:.6f} {c[0]:.6f} {c[1]:.6f} {c[2]:.6f} "
                f"{quat[0]:.6f} {quat[1]:.6f} {quat[2]:.6f} {quat[3]:.6f}\n"
            )


def load_trajectory(filename: str | Path) -> list[tuple[float, Pose]]:
    """
    Load a TUM trajectory.

    Args:
        filename: Input filename

    Returns:
        trajectory: (timestamp, pose) pairs

    """
    data = np.loadtxt(filename)
    if data.size == 0:
        return []
    if data.ndim == 1:
        data = data.reshape(1, -1)

    trajectory = []
    for row in data:
        quat = row[4:8]  # x,y,z,w
        R_wc = R_scipy.from_quat(quat).as_matrix()
        trajectory.append((float(row[0]), Pose(R_wc.T, row[1:4])))
    return trajectory

