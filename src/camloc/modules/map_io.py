"""Map, result log and calibration files."""

import json
import logging
from pathlib import Path

import numpy as np

from camloc.datatypes import Features, Intrinsic, Pose
from camloc.errors import MapFormatError
from camloc.state.localization_result import LocalizationResult
from camloc.state.map_model import Landmark, MapModel, View, ViewFeatures

logger = logging.getLogger(__name__)


def features_path(map_path: Path) -> Path:
    """The reconstructed features live next to the scene file."""
    return Path(map_path).with_suffix(".npz")


def save_map(map_model: MapModel, path: str | Path) -> None:
    """
    Write a map as a JSON scene plus an .npz sidecar of view features.

    Args:
        map_model: The map to save.
        path: Destination of the JSON scene.

    """
    path = Path(path)
    scene = {
        "intrinsics": {str(k): v.to_dict() for k, v in map_model.intrinsics.items()},
        "poses": {str(k): v.to_dict() for k, v in map_model.poses.items()},
        "views": [
            {
                "view_id": v.view_id,
                "image_path": v.image_path,
                "intrinsic_id": v.intrinsic_id,
                "pose_id": v.pose_id,
            }
            for v in map_model.views.values()
        ],
        "landmarks": [
            {
                "landmark_id": lm.landmark_id,
                "position": lm.position.tolist(),
                "observations": {str(k): int(f) for k, f in lm.observations.items()},
            }
            for lm in map_model.landmarks.values()
        ],
    }
    with path.open("w") as f:
        json.dump(scene, f)

    arrays = {}
    for view_id, vf in map_model.view_features.items():
        arrays[f"keypoints_{view_id}"] = vf.features.keypoints
        arrays[f"descriptors_{view_id}"] = vf.features.descriptors
        arrays[f"landmarks_{view_id}"] = vf.landmark_ids
    np.savez_compressed(features_path(path), **arrays)
    logger.info("saved %r to %s", map_model, path)


def load_map(path: str | Path) -> MapModel:
    """
    Read a map written by save_map.

    Raises:
        MapFormatError: If a file is missing or malformed.

    """
    path = Path(path)
    try:
        with path.open() as f:
            scene = json.load(f)
        intrinsics = {int(k): Intrinsic.from_dict(v) for k, v in scene["intrinsics"].items()}
        poses = {int(k): Pose.from_dict(v) for k, v in scene["poses"].items()}
        views = {
            int(v["view_id"]): View(
                int(v["view_id"]),
                str(v["image_path"]),
                int(v["intrinsic_id"]),
                None if v.get("pose_id") is None else int(v["pose_id"]),
            )
            for v in scene["views"]
        }
        landmarks = {
            int(lm["landmark_id"]): Landmark(
                int(lm["landmark_id"]),
                np.array(lm["position"], dtype=np.float64),
                {int(k): int(f) for k, f in lm.get("observations", {}).items()},
            )
            for lm in scene["landmarks"]
        }
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        msg = f"cannot read map scene {path}: {e}"
        raise MapFormatError(msg) from e

    view_features = {}
    sidecar = features_path(path)
    if sidecar.exists():
        try:
            with np.load(sidecar) as data:
                for view_id in views:
                    key = f"keypoints_{view_id}"
                    if key not in data:
                        continue
                    view_features[view_id] = ViewFeatures(
                        Features(data[key], data[f"descriptors_{view_id}"]),
                        data[f"landmarks_{view_id}"],
                    )
        except (OSError, KeyError, ValueError) as e:
            msg = f"cannot read map features {sidecar}: {e}"
            raise MapFormatError(msg) from e
    else:
        logger.warning("no features next to %s, the map cannot be matched against", path)

    try:
        map_model = MapModel(landmarks, views, intrinsics, poses, view_features)
    except ValueError as e:
        msg = f"inconsistent map {path}: {e}"
        raise MapFormatError(msg) from e
    logger.info("loaded %r from %s", map_model, path)
    return map_model


class ResultLog:
    """Append-only JSON Lines log of per-frame localization results."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def clear(self) -> None:
        self.path.write_text("")

    def append(self, result: LocalizationResult) -> None:
        with self.path.open("a") as f:
            f.write(json.dumps(result.to_dict()) + "\n")

    def extend(self, results: list[LocalizationResult]) -> None:
        with self.path.open("a") as f:
            for result in results:
                f.write(json.dumps(result.to_dict()) + "\n")

    def load(self) -> list[LocalizationResult]:
        return load_results(self.path)


def load_results(path: str | Path) -> list[LocalizationResult]:
    """
    Reload a result log, in the order it was written.

    Raises:
        MapFormatError: If the log is missing or a record is malformed.

    """
    path = Path(path)
    results = []
    try:
        with path.open() as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    results.append(LocalizationResult.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    msg = f"{path}:{line_no}: bad result record: {e}"
                    raise MapFormatError(msg) from e
    except OSError as e:
        msg = f"cannot read result log {path}: {e}"
        raise MapFormatError(msg) from e
    return results


def bundle_path(log_path: str | Path) -> Path:
    """Where the refined sequence is saved next to a result log."""
    log_path = Path(log_path)
    return log_path.with_name(f"{log_path.stem}.BUNDLE{log_path.suffix}")


def save_results(results: list[LocalizationResult], path: str | Path) -> None:
    log = ResultLog(path)
    log.clear()
    log.extend(results)


def load_calibration(path: str | Path) -> Intrinsic:
    """
    Read a calibration file.

    Expected format: fx fy cx cy width height [k1 k2 k3], whitespace or comma separated.

    Raises:
        MapFormatError: If the file cannot be parsed.

    """
    path = Path(path)
    try:
        values = [float(v) for v in path.read_text().replace(",", " ").split()]
    except (OSError, ValueError) as e:
        msg = f"cannot read calibration {path}: {e}"
        raise MapFormatError(msg) from e
    if len(values) not in (6, 7, 8, 9):
        msg = f"calibration {path} needs 6 to 9 values, got {len(values)}"
        raise MapFormatError(msg)
    fx, fy, cx, cy, width, height = values[:6]
    radial = (values[6:] + [0.0, 0.0, 0.0])[:3]
    return Intrinsic(int(width), int(height), fx, fy, cx, cy, *radial)
