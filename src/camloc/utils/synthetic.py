"""Synthetic scenes for geometry tests and smoke runs."""

from dataclasses import dataclass

import numpy as np

from camloc.datatypes import Features, Intrinsic, Pose
from camloc.state.map_model import Landmark, MapModel, View, ViewFeatures


def look_at(direction: np.ndarray, up: np.ndarray | None = None) -> np.ndarray:
    """
    World-to-camera rotation of a camera looking along a direction.

    Rows of the result are the camera x, y and z axes expressed in the world frame.
    """
    up = np.array([0.0, 1.0, 0.0]) if up is None else np.asarray(up, dtype=np.float64)
    zc = np.asarray(direction, dtype=np.float64)
    zc = zc / np.linalg.norm(zc)
    xc = np.cross(up, zc)
    xc = xc / np.linalg.norm(xc)
    yc = np.cross(zc, xc)
    return np.vstack([xc, yc, zc])


def rotation_y(angle: float) -> np.ndarray:
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


@dataclass
class RingDataset:
    """
    Cameras evenly spread on a circle, all looking at the origin.

    Attributes:
        intrinsic: Shared pinhole camera.
        poses: One pose per camera.
        points: (N, 3) scene points around the origin.
        projections: projections[i] is the (N, 2) image of points in camera i.

    """

    intrinsic: Intrinsic
    poses: list[Pose]
    points: np.ndarray
    projections: list[np.ndarray]


def ring_of_cameras(
    n_views: int,
    n_points: int,
    focal: float = 1000.0,
    principal_point: float = 500.0,
    distance: float = 5.0,
    jitter: float = 0.0,
    seed: int = 0,
) -> RingDataset:
    """
    Build a ring of cameras looking at a random point cloud.

    Args:
        n_views: Number of cameras.
        n_points: Number of scene points, uniform in [-0.6, 0.6]^3.
        focal: Focal length in pixels (fx = fy).
        principal_point: cx = cy.
        distance: Radius of the ring.
        jitter: Std of the gaussian noise added to the projections, in pixels.
        seed: Seed of the random generator.

    """
    rng = np.random.default_rng(seed)
    points = rng.uniform(-1.0, 1.0, size=(n_points, 3)) * 0.6
    side = int(round(2 * principal_point))
    intrinsic = Intrinsic(side, side, focal, focal, principal_point, principal_point)

    poses = []
    projections = []
    for i in range(n_views):
        theta = i * 2.0 * np.pi / n_views
        center = np.array([np.sin(theta), 0.0, np.cos(theta)]) * distance
        pose = Pose(look_at(-center), center)
        poses.append(pose)
        px = intrinsic.cam_to_pixel(pose.transform(points))
        if jitter > 0:
            px = px + rng.normal(0.0, jitter, size=px.shape)
        projections.append(px)

    return RingDataset(intrinsic, poses, points, projections)


def random_descriptors(n: int, dim: int = 128, seed: int = 0) -> np.ndarray:
    """Well separated unit float32 descriptors, one per landmark."""
    rng = np.random.default_rng(seed)
    des = rng.normal(size=(n, dim)).astype(np.float32)
    return des / np.linalg.norm(des, axis=1, keepdims=True)


def ring_map(
    dataset: RingDataset,
    descriptors: np.ndarray,
    map_views: list[int] | None = None,
) -> MapModel:
    """
    Turn a ring dataset into a map where every camera observes every point.

    Args:
        dataset: The synthetic scene.
        descriptors: (N, D) descriptor of each scene point.
        map_views: Cameras that become map views, all by default.

    """
    map_views = list(range(len(dataset.poses))) if map_views is None else map_views
    n = len(dataset.points)
    landmark_ids = np.arange(n)

    landmarks = {
        int(lid): Landmark(int(lid), dataset.points[lid], {v: int(lid) for v in map_views})
        for lid in landmark_ids
    }
    views = {v: View(v, f"view_{v:03d}.png", 0, v) for v in map_views}
    poses = {v: dataset.poses[v] for v in map_views}
    view_features = {
        v: ViewFeatures(Features(dataset.projections[v], descriptors), landmark_ids)
        for v in map_views
    }
    return MapModel(landmarks, views, {0: dataset.intrinsic}, poses, view_features)
