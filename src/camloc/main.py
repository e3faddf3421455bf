import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Literal

import numpy as np
import tyro

from camloc.config.config import (
    BundleConfig,
    LocalizerConfig,
    LocalizerKind,
    MatchingAlgorithm,
    RobustEstimator,
    get_config,
)
from camloc.dataset_loader import create_feed
from camloc.datatypes import FrameData
from camloc.errors import ConfigurationError, MapFormatError, RefinementDidNotConverge
from camloc.modules.bundle_adjustment import refine_sequence
from camloc.modules.localizer import Localizer, create_localizer
from camloc.modules.map_io import (
    ResultLog,
    bundle_path,
    load_calibration,
    load_map,
    load_results,
    save_results,
)
from camloc.modules.utils import CameraTrack, save_track_json, save_trajectory
from camloc.state.localization_result import LocalizationResult
from camloc.state.statistics import LocalizationStats
from camloc.utils.describers import Describer

logger = logging.getLogger("camloc")


@dataclass
class Args:
    map: Path = Path("map.json")
    """JSON scene of the map, with its .npz features next to it."""
    source: Path = Path("images")
    """Directory of query images or a video file."""
    preset: Literal["default", "fast", "accurate"] = "default"
    calibration: Path | None = None
    """Known query intrinsics: fx fy cx cy width height [k1 k2 k3]."""
    localizer: LocalizerKind | None = None
    algorithm: MatchingAlgorithm | None = None
    describer: Literal["sift", "orb", "akaze"] | None = None
    resection_estimator: RobustEstimator | None = None
    resection_error_max: float | None = None
    matching_estimator: RobustEstimator | None = None
    matching_error_max: float | None = None
    refine_intrinsics: bool | None = None
    nb_frame_buffer_matching: int | None = None
    video_step: int = 1
    bundle: BundleConfig = field(default_factory=BundleConfig)
    refine_only: Path | None = None
    """Skip localization and refine an existing result log."""
    output_dir: Path = Path("output")
    viz: bool = False
    log_level: str = "INFO"


def build_config(args: Args) -> LocalizerConfig:
    """Preset plus command line overrides, validated."""
    cfg = get_config(args.preset)
    overrides = {
        name: getattr(args, name)
        for name in (
            "localizer",
            "algorithm",
            "describer",
            "resection_estimator",
            "resection_error_max",
            "matching_estimator",
            "matching_error_max",
            "refine_intrinsics",
            "nb_frame_buffer_matching",
        )
        if getattr(args, name) is not None
    }
    return replace(cfg, **overrides).validated()


def run_sequence(
    localizer: Localizer,
    describer: Describer,
    frames: Iterable[FrameData],
    stats: LocalizationStats,
    log: ResultLog | None = None,
    viz: bool = False,
) -> list[LocalizationResult]:
    """
    Localize every frame of a stream, in order.

    A frame that cannot be localized yields an invalid result and the stream
    goes on.
    """
    if viz:
        from camloc import viz as rr_viz

    results = []
    trajectory_history: list[np.ndarray] = []
    for frame in frames:
        start = time.perf_counter()
        features = describer.describe(frame.image)
        result = localizer.localize(frame, features)
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        stats.add(elapsed_ms)

        if result.valid:
            stats.add_localized(frame.name, result.num_inliers)
            trajectory_history.append(result.pose.center)
            logger.info(
                "Frame %04d %s | Features: %d | Inliers: %d | Views: %s | %s | %.1f ms",
                frame.frame_id,
                frame.name,
                len(features),
                result.num_inliers,
                list(result.matched_views),
                "buffer" if result.from_buffer else "retrieval",
                elapsed_ms,
            )

        if log is not None:
            log.append(result)
        if viz:
            rr_viz.log_frame(frame, result, trajectory_history)
        results.append(result)
    return results


def export_tracks(results: list[LocalizationResult], output_dir: Path, suffix: str = "") -> None:
    track = CameraTrack.from_results(results)
    save_trajectory(track, output_dir / f"trajectory{suffix}.txt")
    save_track_json(track, output_dir / f"track{suffix}.json")
    logger.info("exported %d keyframes, %d jumps", len(track), track.num_jumps())


def run_bundle(results: list[LocalizationResult], bundle_cfg: BundleConfig, log_path: Path) -> None:
    try:
        report = refine_sequence(results, bundle_cfg)
    except RefinementDidNotConverge as e:
        logger.warning("global bundle failed, keeping the unrefined poses: %s", e)
        return
    out = bundle_path(log_path)
    save_results(report.results, out)
    export_tracks(report.results, log_path.parent, ".BUNDLE")
    logger.info(
        "global bundle: %d frames refined, %d skipped, rms %.4f -> %.4f px, saved to %s",
        len(report.refined_frames),
        len(report.skipped_frames),
        report.initial_rms,
        report.final_rms,
        out,
    )


def main(args: Args) -> int:
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        cfg = build_config(args)
        bundle_cfg = args.bundle.resolved(cfg.refine_intrinsics)
        args.output_dir.mkdir(parents=True, exist_ok=True)

        if args.refine_only is not None:
            results = load_results(args.refine_only)
            logger.info("loaded %d results from %s", len(results), args.refine_only)
            log_path = args.output_dir / args.refine_only.name
            run_bundle(results, replace(bundle_cfg, global_bundle=True), log_path)
            return 0

        map_model = load_map(args.map)
        intrinsic = load_calibration(args.calibration) if args.calibration else None
        feed = create_feed(args.source, intrinsic, args.video_step)
    except (ConfigurationError, MapFormatError, FileNotFoundError, OSError) as e:
        logger.error("%s", e)
        return 1

    localizer = create_localizer(cfg)
    localizer.initialize(map_model)
    if not localizer.is_ready():
        logger.error("%s localizer not ready, nothing to match in the map", cfg.localizer.value)
        return 1

    describer = Describer(cfg.describer)
    try:
        localizer.check_descriptors(*describer.descriptor_layout())
    except ConfigurationError as e:
        logger.error("describer %s: %s", describer.describer_type.value, e)
        return 1

    if args.viz:
        from camloc import viz as rr_viz

        rr_viz.init_rerun()
        rr_viz.log_map(map_model)

    log = ResultLog(args.output_dir / "results.jsonl")
    log.clear()
    stats = LocalizationStats()
    results = run_sequence(localizer, describer, feed, stats, log, args.viz)

    for line in stats.summary_lines():
        logger.info(line)
    export_tracks(results, args.output_dir)

    if bundle_cfg.global_bundle:
        run_bundle(results, bundle_cfg, log.path)
    return 0


def cli() -> None:
    raise SystemExit(main(tyro.cli(Args)))


if __name__ == "__main__":
    cli()
