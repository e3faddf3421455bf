from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

import numpy as np

from camloc.datatypes import Associations, Features, Intrinsic, Pose


@dataclass(frozen=True, eq=False)
class Landmark:
    """
    A reconstructed 3D point.

    Attributes:
        landmark_id: Unique identifier.
        position: 3D world coordinates [x, y, z].
        observations: view_id -> feature index of the observation in that view.

    """

    landmark_id: int
    position: np.ndarray
    observations: Mapping[int, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        pos = np.array(self.position, dtype=np.float64).reshape(3)
        pos.flags.writeable = False
        object.__setattr__(self, "position", pos)
        object.__setattr__(
            self, "observations", MappingProxyType(dict(self.observations))
        )


@dataclass(frozen=True)
class View:
    """A camera observation of the map; pose_id is None while unresolved."""

    view_id: int
    image_path: str
    intrinsic_id: int
    pose_id: int | None = None


@dataclass(frozen=True, eq=False)
class ViewFeatures:
    """
    Reconstructed regions of one view: features associated with a landmark.

    Attributes:
        features: keypoints + descriptors of the view.
        landmark_ids: (N,) landmark observed by each feature.

    """

    features: Features
    landmark_ids: np.ndarray

    def __post_init__(self) -> None:
        if len(self.landmark_ids) != len(self.features):
            msg = "one landmark id per feature is required"
            raise ValueError(msg)
        kps = np.array(self.features.keypoints, dtype=np.float64)
        des = np.array(self.features.descriptors)
        lids = np.array(self.landmark_ids, dtype=int)
        for arr in (kps, des, lids):
            arr.flags.writeable = False
        object.__setattr__(self, "features", Features(kps, des))
        object.__setattr__(self, "landmark_ids", lids)

    def __len__(self) -> int:
        return len(self.landmark_ids)


class MapModel:
    """
    Read-only snapshot of a reconstruction used as localization reference.

    Nothing in the pipeline mutates it, so it can be shared freely between
    readers.
    """

    def __init__(
        self,
        landmarks: Mapping[int, Landmark],
        views: Mapping[int, View],
        intrinsics: Mapping[int, Intrinsic],
        poses: Mapping[int, Pose],
        view_features: Mapping[int, ViewFeatures],
    ) -> None:
        self._landmarks = MappingProxyType(dict(landmarks))
        self._views = MappingProxyType(dict(views))
        self._intrinsics = MappingProxyType(dict(intrinsics))
        self._poses = MappingProxyType(dict(poses))
        self._view_features = MappingProxyType(dict(view_features))
        self._check_references()

        ids = np.array(sorted(self._landmarks), dtype=int)
        positions = (
            np.array([self._landmarks[i].position for i in ids])
            if len(ids)
            else np.empty((0, 3))
        )
        positions.flags.writeable = False
        self._landmark_ids = ids
        self._landmark_positions = positions
        self._landmark_row = {int(lid): row for row, lid in enumerate(ids)}

    def _check_references(self) -> None:
        for view in self._views.values():
            if view.intrinsic_id not in self._intrinsics:
                msg = f"view {view.view_id} references unknown intrinsic {view.intrinsic_id}"
                raise ValueError(msg)
            if view.pose_id is not None and view.pose_id not in self._poses:
                msg = f"view {view.view_id} references unknown pose {view.pose_id}"
                raise ValueError(msg)
        for view_id, vf in self._view_features.items():
            if view_id not in self._views:
                msg = f"features given for unknown view {view_id}"
                raise ValueError(msg)
            unknown = set(vf.landmark_ids.tolist()) - set(self._landmarks)
            if unknown:
                msg = f"view {view_id} features reference unknown landmarks {sorted(unknown)[:5]}"
                raise ValueError(msg)

    @property
    def landmarks(self) -> Mapping[int, Landmark]:
        return self._landmarks

    @property
    def views(self) -> Mapping[int, View]:
        return self._views

    @property
    def intrinsics(self) -> Mapping[int, Intrinsic]:
        return self._intrinsics

    @property
    def poses(self) -> Mapping[int, Pose]:
        return self._poses

    @property
    def view_features(self) -> Mapping[int, ViewFeatures]:
        return self._view_features

    def is_pose_and_intrinsic_defined(self, view_id: int) -> bool:
        view = self._views.get(view_id)
        return view is not None and view.pose_id is not None

    def view_pose(self, view_id: int) -> Pose | None:
        view = self._views[view_id]
        return None if view.pose_id is None else self._poses[view.pose_id]

    def view_intrinsic(self, view_id: int) -> Intrinsic:
        return self._intrinsics[self._views[view_id].intrinsic_id]

    def localized_view_ids(self) -> list[int]:
        """Views with a pose and reconstructed features, sorted by id."""
        return sorted(
            vid
            for vid in self._view_features
            if self.is_pose_and_intrinsic_defined(vid) and len(self._view_features[vid])
        )

    def descriptor_layout(self) -> tuple[bool, int] | None:
        """Whether the map descriptors are binary, and their width. None without features."""
        view_ids = self.localized_view_ids()
        if not view_ids:
            return None
        des = self._view_features[view_ids[0]].features.descriptors
        return des.dtype == np.uint8, des.shape[1]

    def landmark_positions(self, landmark_ids: np.ndarray) -> np.ndarray:
        rows = [self._landmark_row[int(lid)] for lid in landmark_ids]
        return self._landmark_positions[rows] if rows else np.empty((0, 3))

    def associations(
        self, view_id: int, query_features: Features, query_idx: np.ndarray, train_idx: np.ndarray
    ) -> Associations:
        """
        Turn query-to-view feature matches into 2D-3D associations.

        Args:
            view_id: Map view the train indices refer to.
            query_features: Features of the query image.
            query_idx: (M,) matched query feature indices.
            train_idx: (M,) matched feature indices in the view.

        """
        lids = self._view_features[view_id].landmark_ids[train_idx]
        return Associations(
            np.asarray(query_idx, dtype=int),
            lids.astype(int),
            query_features.keypoints[query_idx].astype(np.float64),
            self.landmark_positions(lids),
        )

    def depth_range(self, view_id: int) -> tuple[float, float] | None:
        """Min and max depth of the landmarks observed by a view."""
        pose = self.view_pose(view_id)
        vf = self._view_features.get(view_id)
        if pose is None or vf is None or len(vf) == 0:
            return None
        depths = pose.depth(self.landmark_positions(vf.landmark_ids))
        depths = depths[depths > 0]
        if len(depths) == 0:
            return None
        return float(depths.min()), float(depths.max())

    def __repr__(self) -> str:
        return (
            f"MapModel(landmarks={len(self._landmarks)}, views={len(self._views)}, "
            f"intrinsics={len(self._intrinsics)}, poses={len(self._poses)})"
        )
