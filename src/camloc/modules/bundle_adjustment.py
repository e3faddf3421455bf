"""Batch refinement of a localized sequence."""

import logging
from dataclasses import dataclass, field, replace

import numpy as np
import pyceres
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from camloc.config.config import BundleConfig
from camloc.datatypes import Associations, Intrinsic, Pose
from camloc.errors import RefinementDidNotConverge
from camloc.state.localization_result import LocalizationResult

logger = logging.getLogger(__name__)


@dataclass
class RefinementReport:
    """
    Outcome of a successful sequence refinement.

    Attributes:
        results: Same length and order as the input; refined copies for the
            frames that took part, the untouched input for the others.
        initial_rms: RMS reprojection error (px) before optimization.
        final_rms: RMS reprojection error (px) after optimization.
        refined_frames: Frame ids whose pose was optimized.
        skipped_frames: Frame ids left as they were.
        num_landmarks: Landmarks kept after the visibility filter.
        num_observations: Reprojection terms in the problem.

    """

    results: list[LocalizationResult]
    initial_rms: float
    final_rms: float
    refined_frames: list[int] = field(default_factory=list)
    skipped_frames: list[int] = field(default_factory=list)
    num_landmarks: int = 0
    num_observations: int = 0


@dataclass
class _Problem:
    """Observations of the retained frames and landmarks, indexed densely."""

    frame_rows: list[int]  # index in the input sequence of each optimized frame
    landmark_ids: np.ndarray
    points: np.ndarray  # (L, 3)
    obs_frame: np.ndarray  # (M,)
    obs_point: np.ndarray  # (M,)
    obs_uv: np.ndarray  # (M, 2)
    poses: np.ndarray  # (F, 6) rotvec + t
    pinholes: np.ndarray  # (F, 4) fx fy cx cy
    distortions: np.ndarray  # (F, 3) k1 k2 k3


def _build_problem(results: list[LocalizationResult], cfg: BundleConfig) -> _Problem:
    candidates = [i for i, r in enumerate(results) if r.valid]

    # landmark visibility over distinct frames
    visibility: dict[int, set[int]] = {}
    positions: dict[int, np.ndarray] = {}
    for i in candidates:
        inl = results[i].inliers
        for lid, X in zip(inl.landmark_ids.tolist(), inl.pts_3d):
            visibility.setdefault(lid, set()).add(i)
            positions.setdefault(lid, X)

    kept = sorted(
        lid for lid, frames in visibility.items() if len(frames) >= cfg.min_point_visibility
    )
    dropped = len(visibility) - len(kept)
    if dropped:
        logger.info(
            "dropped %d landmarks seen by fewer than %d frames", dropped, cfg.min_point_visibility
        )
    landmark_row = {lid: k for k, lid in enumerate(kept)}

    frame_rows, obs_frame, obs_point, obs_uv = [], [], [], []
    for i in candidates:
        inl = results[i].inliers
        rows = [
            (landmark_row[lid], uv)
            for lid, uv in zip(inl.landmark_ids.tolist(), inl.pts_2d)
            if lid in landmark_row
        ]
        if not rows:
            continue
        f = len(frame_rows)
        frame_rows.append(i)
        for p, uv in rows:
            obs_frame.append(f)
            obs_point.append(p)
            obs_uv.append(uv)

    poses = []
    pinholes = []
    distortions = []
    for i in frame_rows:
        r = results[i]
        rvec = Rotation.from_matrix(r.pose.rotation).as_rotvec()
        poses.append(np.concatenate([rvec, r.pose.translation]))
        pinholes.append([r.intrinsic.fx, r.intrinsic.fy, r.intrinsic.cx, r.intrinsic.cy])
        distortions.append(np.zeros(3) if cfg.no_distortion else r.intrinsic.radial)

    return _Problem(
        frame_rows=frame_rows,
        landmark_ids=np.array(kept, dtype=int),
        points=np.array([positions[lid] for lid in kept]).reshape(-1, 3),
        obs_frame=np.array(obs_frame, dtype=int),
        obs_point=np.array(obs_point, dtype=int),
        obs_uv=np.array(obs_uv, dtype=np.float64).reshape(-1, 2),
        poses=np.array(poses).reshape(-1, 6),
        pinholes=np.array(pinholes, dtype=np.float64).reshape(-1, 4),
        distortions=np.array(distortions, dtype=np.float64).reshape(-1, 3),
    )


def _project(
    pose: np.ndarray, pinhole: np.ndarray, distortion: np.ndarray, points: np.ndarray
) -> np.ndarray:
    """Project points with row-wise camera parameters. All inputs are (M, .)."""
    R = Rotation.from_rotvec(pose[:, :3]).as_matrix()
    X_cam = np.einsum("mij,mj->mi", R, points) + pose[:, 3:]

    # avoid zero div
    z = X_cam[:, 2] + 1e-12
    x = X_cam[:, 0] / z
    y = X_cam[:, 1] / z
    r2 = x * x + y * y
    factor = 1.0 + distortion[:, 0] * r2 + distortion[:, 1] * r2**2 + distortion[:, 2] * r2**3
    u = pinhole[:, 0] * x * factor + pinhole[:, 2]
    v = pinhole[:, 1] * y * factor + pinhole[:, 3]
    return np.stack([u, v], axis=1)


class _Layout:
    """Position of each parameter group inside the optimization vector."""

    def __init__(
        self,
        problem: _Problem,
        refine_intrinsics: bool,
        refine_distortion: bool,
        refine_structure: bool,
    ) -> None:
        self.n_frames = len(problem.frame_rows)
        self.n_points = len(problem.points)
        self.refine_intrinsics = refine_intrinsics
        self.refine_distortion = refine_distortion
        self.refine_structure = refine_structure
        self.pin = 6 * self.n_frames
        self.dist = self.pin + (4 if refine_intrinsics else 0)
        self.pts = self.dist + (3 if refine_distortion else 0)
        self.size = self.pts + (3 * self.n_points if refine_structure else 0)

    def pack(self, problem: _Problem) -> np.ndarray:
        parts = [problem.poses.ravel()]
        # intrinsics shared by every frame, started from the first one
        if self.refine_intrinsics:
            parts.append(problem.pinholes[0])
        if self.refine_distortion:
            parts.append(problem.distortions[0])
        if self.refine_structure:
            parts.append(problem.points.ravel())
        return np.concatenate(parts)

    def unpack(self, x: np.ndarray, problem: _Problem) -> tuple[np.ndarray, ...]:
        poses = x[: self.pin].reshape(-1, 6)
        pinholes = problem.pinholes
        if self.refine_intrinsics:
            pinholes = np.tile(x[self.pin : self.pin + 4], (self.n_frames, 1))
        distortions = problem.distortions
        if self.refine_distortion:
            distortions = np.tile(x[self.dist : self.dist + 3], (self.n_frames, 1))
        points = problem.points
        if self.refine_structure:
            points = x[self.pts :].reshape(-1, 3)
        return poses, pinholes, distortions, points

    def sparsity(self, problem: _Problem) -> lil_matrix:
        m = len(problem.obs_frame)
        A = lil_matrix((2 * m, self.size), dtype=int)
        rows = np.arange(m)
        for k in range(6):
            A[2 * rows, 6 * problem.obs_frame + k] = 1
            A[2 * rows + 1, 6 * problem.obs_frame + k] = 1
        if self.refine_intrinsics:
            A[:, self.pin : self.pin + 4] = 1
        if self.refine_distortion:
            A[:, self.dist : self.dist + 3] = 1
        if self.refine_structure:
            for k in range(3):
                A[2 * rows, self.pts + 3 * problem.obs_point + k] = 1
                A[2 * rows + 1, self.pts + 3 * problem.obs_point + k] = 1
        return A


def _residuals(x: np.ndarray, layout: _Layout, problem: _Problem) -> np.ndarray:
    poses, pinholes, distortions, points = layout.unpack(x, problem)
    f, p = problem.obs_frame, problem.obs_point
    proj = _project(poses[f], pinholes[f], distortions[f], points[p])
    return (proj - problem.obs_uv).ravel()


def _rms(residuals: np.ndarray) -> float:
    return float(np.sqrt(np.mean(residuals**2))) if len(residuals) else 0.0


def _solve_scipy(layout: _Layout, problem: _Problem, cfg: BundleConfig) -> np.ndarray:
    x0 = layout.pack(problem)
    res = least_squares(
        _residuals,
        x0,
        jac_sparsity=layout.sparsity(problem),
        x_scale="jac",
        method="trf",
        max_nfev=cfg.max_iterations,
        args=(layout, problem),
    )
    logger.debug("least_squares: status %d, %d evaluations, %s", res.status, res.nfev, res.message)
    if res.status <= 0:
        msg = f"least squares refinement did not converge: {res.message}"
        raise RefinementDidNotConverge(msg)
    return res.x


class ReprojectionCost(pyceres.CostFunction):
    """Reprojection of one observation, numeric jacobians."""

    def __init__(self, observed: np.ndarray):
        super().__init__()
        self.set_num_residuals(2)
        # pose, pinhole, distortion, point
        self.set_parameter_block_sizes([6, 4, 3, 3])
        self.observed = np.asarray(observed, dtype=np.float64)

    def _residual(self, blocks: list[np.ndarray]) -> np.ndarray:
        pose, pinhole, distortion, point = (np.asarray(b).reshape(1, -1) for b in blocks)
        return _project(pose, pinhole, distortion, point)[0] - self.observed

    def Evaluate(self, parameters, residuals, jacobians):
        blocks = [np.array(p, dtype=np.float64) for p in parameters]
        r0 = self._residual(blocks)
        residuals[:] = r0
        if jacobians is None:
            return True
        for i, block in enumerate(blocks):
            if jacobians[i] is None:
                continue
            J = np.zeros((2, len(block)))
            for k in range(len(block)):
                step = 1e-6 * max(1.0, abs(block[k]))
                shifted = [b.copy() for b in blocks]
                shifted[i][k] += step
                J[:, k] = (self._residual(shifted) - r0) / step
            jacobians[i][:] = J.ravel()
        return True


def _solve_ceres(layout: _Layout, problem: _Problem, cfg: BundleConfig) -> np.ndarray:
    poses = [np.array(p, dtype=np.float64) for p in problem.poses]
    points = [np.array(p, dtype=np.float64) for p in problem.points]
    if layout.refine_intrinsics:
        shared = np.array(problem.pinholes[0], dtype=np.float64)
        pinholes = [shared] * layout.n_frames
    else:
        pinholes = [np.array(p, dtype=np.float64) for p in problem.pinholes]
    if layout.refine_distortion:
        shared_dist = np.array(problem.distortions[0], dtype=np.float64)
        distortions = [shared_dist] * layout.n_frames
    else:
        distortions = [np.array(d, dtype=np.float64) for d in problem.distortions]

    ceres_problem = pyceres.Problem()
    for f, p, uv in zip(problem.obs_frame, problem.obs_point, problem.obs_uv):
        ceres_problem.add_residual_block(
            ReprojectionCost(uv),
            None,
            [poses[f], pinholes[f], distortions[f], points[p]],
        )

    if not layout.refine_intrinsics:
        for block in {id(b): b for b in pinholes}.values():
            ceres_problem.set_parameter_block_constant(block)
    if not layout.refine_distortion:
        for block in {id(b): b for b in distortions}.values():
            ceres_problem.set_parameter_block_constant(block)
    if not layout.refine_structure:
        for block in points:
            ceres_problem.set_parameter_block_constant(block)

    options = pyceres.SolverOptions()
    options.linear_solver_type = pyceres.LinearSolverType.DENSE_QR
    options.minimizer_progress_to_stdout = False
    options.max_num_iterations = cfg.max_iterations

    summary = pyceres.SolverSummary()
    pyceres.solve(options, ceres_problem, summary)
    logger.debug("ceres: %s", summary.BriefReport())
    if summary.termination_type != pyceres.TerminationType.CONVERGENCE:
        msg = f"ceres refinement did not converge: {summary.BriefReport()}"
        raise RefinementDidNotConverge(msg)

    parts = [np.concatenate(poses)]
    if layout.refine_intrinsics:
        parts.append(pinholes[0])
    if layout.refine_distortion:
        parts.append(distortions[0])
    if layout.refine_structure:
        parts.append(np.concatenate(points))
    return np.concatenate(parts)


def refine_sequence(results: list[LocalizationResult], cfg: BundleConfig) -> RefinementReport:
    """
    Minimize the reprojection error of all valid frames in one batch.

    Poses are always optimized. Intrinsics, shared by every frame, are refined
    unless no_ba_refine_intrinsics is set, distortion is dropped when
    no_distortion is set, and landmarks move only with refine_structure.
    Invalid frames never take part. The input list and its results are not
    modified.

    Args:
        results: Localization results of the sequence, in stream order.
        cfg: Refinement options.

    Returns:
        Report holding the refined sequence.

    Raises:
        RefinementDidNotConverge: If nothing can be refined or the optimizer
            stops before convergence.

    """
    problem = _build_problem(results, cfg)
    if not problem.frame_rows:
        msg = "no valid frame with observations to refine"
        raise RefinementDidNotConverge(msg)

    refine_intrinsics = not cfg.no_ba_refine_intrinsics
    layout = _Layout(
        problem,
        refine_intrinsics=refine_intrinsics,
        refine_distortion=refine_intrinsics and not cfg.no_distortion,
        refine_structure=cfg.refine_structure,
    )
    x0 = layout.pack(problem)
    initial_rms = _rms(_residuals(x0, layout, problem))

    if cfg.backend == "ceres":
        x = _solve_ceres(layout, problem, cfg)
    else:
        x = _solve_scipy(layout, problem, cfg)
    final_rms = _rms(_residuals(x, layout, problem))
    logger.info(
        "refined %d frames, %d landmarks: rms %.4f -> %.4f px",
        len(problem.frame_rows),
        len(problem.points),
        initial_rms,
        final_rms,
    )

    poses, pinholes, distortions, points = layout.unpack(x, problem)
    point_of = {int(lid): points[k] for k, lid in enumerate(problem.landmark_ids)}

    refined = list(results)
    for f, i in enumerate(problem.frame_rows):
        r = results[i]
        R = Rotation.from_rotvec(poses[f, :3]).as_matrix()
        intrinsic = Intrinsic(
            r.intrinsic.width,
            r.intrinsic.height,
            *(float(v) for v in pinholes[f]),
            *(float(v) for v in distortions[f]),
        )
        inliers = r.inliers
        if layout.refine_structure:
            pts_3d = np.array(
                [point_of.get(int(lid), X) for lid, X in zip(inliers.landmark_ids, inliers.pts_3d)]
            ).reshape(-1, 3)
            inliers = Associations(
                inliers.feature_ids, inliers.landmark_ids, inliers.pts_2d, pts_3d
            )
        refined[i] = replace(
            r, pose=Pose.from_rt(R, poses[f, 3:]), intrinsic=intrinsic, inliers=inliers
        )

    refined_ids = [results[i].frame_id for i in problem.frame_rows]
    refined_set = set(refined_ids)
    return RefinementReport(
        results=refined,
        initial_rms=initial_rms,
        final_rms=final_rms,
        refined_frames=refined_ids,
        skipped_frames=[r.frame_id for r in results if r.frame_id not in refined_set],
        num_landmarks=len(problem.points),
        num_observations=len(problem.obs_frame),
    )
