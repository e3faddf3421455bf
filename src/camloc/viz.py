"""Visual log of a localization run with rerun."""

import numpy as np
import rerun as rr

from camloc.datatypes import FrameData
from camloc.state.localization_result import LocalizationResult
from camloc.state.map_model import MapModel


def init_rerun(spawn: bool = True) -> None:
    """Initialize Rerun logging with correct coordinate systems."""
    rr.init("Camera Localization", spawn=spawn)

    # forward +Z, right +X, down +Y
    rr.log("world", rr.ViewCoordinates.RIGHT_HAND_Y_DOWN, static=True)


def log_map(map_model: MapModel) -> None:
    """Landmarks and map cameras, logged once."""
    ids = np.array(sorted(map_model.landmarks), dtype=int)
    if len(ids):
        points = map_model.landmark_positions(ids)
        rr.log(
            "world/map/landmarks",
            rr.Points3D(points, colors=[0, 255, 0], radii=0.02),
            static=True,
        )
    centers = [
        map_model.view_pose(v).center
        for v in sorted(map_model.views)
        if map_model.is_pose_and_intrinsic_defined(v)
    ]
    if centers:
        rr.log(
            "world/map/cameras",
            rr.Points3D(np.array(centers), colors=[128, 128, 255], radii=0.05),
            static=True,
        )


def log_frame(
    frame: FrameData,
    result: LocalizationResult,
    trajectory_history: list[np.ndarray],
) -> None:
    rr.set_time("frame", sequence=frame.frame_id)
    rr.log("diagnostics/inliers", rr.Scalars(float(result.num_inliers)))

    if not result.valid:
        return

    # camera-world for rerun
    R_wc = result.pose.rotation.T
    rr.log("world/camera", rr.Transform3D(translation=result.pose.center, mat3x3=R_wc))

    viz_depth = 1
    rr.log(
        "world/camera/image",
        rr.Pinhole(
            image_from_camera=result.intrinsic.K,
            width=result.intrinsic.width,
            height=result.intrinsic.height,
            image_plane_distance=viz_depth,
        ),
    )
    rr.log("world/camera/image", rr.Image(frame.image))

    # observed inliers and their reprojection
    proj = result.intrinsic.cam_to_pixel(result.pose.transform(result.inliers.pts_3d))
    rr.log(
        "world/camera/image/inliers",
        rr.Points2D(result.inliers.pts_2d, colors=[255, 0, 0], radii=2),
    )
    rr.log(
        "world/camera/image/reprojections",
        rr.Points2D(proj, colors=[0, 255, 0], radii=2),
    )

    if len(trajectory_history) > 1:
        rr.log(
            "world/trajectory",
            rr.LineStrips3D([trajectory_history], colors=[255, 255, 0], radii=0.01),
        )
