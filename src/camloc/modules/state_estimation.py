"""Camera resection from 2D-3D correspondences."""

import logging
from dataclasses import dataclass

import cv2
import numpy as np
from scipy.linalg import rq
from scipy.optimize import least_squares

from camloc.config.config import LocalizerConfig
from camloc.datatypes import Associations, Intrinsic, Pose
from camloc.modules.fundamental import normalization_transform
from camloc.modules.robust_estimation import Kernel, robust_estimate
from camloc.state.localization_result import MIN_RESECTION_SAMPLES

logger = logging.getLogger(__name__)


@dataclass
class CameraEstimate:
    """
    Projection model P = K [R | t] recovered by resection.

    Attributes:
        K: 3x3 camera matrix.
        R: 3x3 world-to-camera rotation.
        t: (3,) world-to-camera translation.

    """

    K: np.ndarray
    R: np.ndarray
    t: np.ndarray


@dataclass
class PoseEstimate:
    """
    Resection output for one frame.

    Attributes:
        pose: Estimated camera pose.
        intrinsic: Known, refined or recovered intrinsics.
        inliers: Indices of the inlier correspondences.
        threshold: Inlier threshold (px) retained by the estimator.

    """

    pose: Pose
    intrinsic: Intrinsic
    inliers: np.ndarray
    threshold: float


def project_points(
    points_3d: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    K: np.ndarray,
) -> np.ndarray:
    """
    Project 3D points to the 2D image plane.

    Args:
        points_3d: (N, 3) 3D points in world frame
        R: 3x3 rotation matrix (world to camera)
        t: (3,) translation vector (world to camera)
        K: 3x3 camera matrix

    Returns:
        points_2d: (N, 2) projected 2D points

    """
    X_cam = points_3d @ R.T + t.reshape(1, 3)

    # avoid zero div
    z = X_cam[:, 2] + 1e-12
    u = K[0, 0] * X_cam[:, 0] / z + K[0, 2]
    v = K[1, 1] * X_cam[:, 1] / z + K[1, 2]
    return np.stack([u, v], axis=1)


def compute_reprojection_error(
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    K: np.ndarray,
) -> np.ndarray:
    """
    Reprojection error of each 3D-2D correspondence in pixels.

    Points behind the camera get an infinite error.
    """
    depth = points_3d @ R[2] + t[2]
    errors = np.linalg.norm(project_points(points_3d, R, t, K) - points_2d, axis=1)
    return np.where(depth > 0, errors, np.inf)


def _normalization_3d(pts: np.ndarray) -> np.ndarray:
    centroid = pts.mean(axis=0)
    mean_dist = np.mean(np.linalg.norm(pts - centroid, axis=1))
    scale = np.sqrt(3.0) / mean_dist if mean_dist > 1e-12 else 1.0
    T = np.eye(4)
    T[:3, :3] *= scale
    T[:3, 3] = -scale * centroid
    return T


def dlt_projection(pts_2d: np.ndarray, pts_3d: np.ndarray) -> np.ndarray | None:
    """
    Direct linear transform of a 3x4 projection matrix from >= 6 points.

    Returns None when the configuration does not determine a unique matrix
    (e.g. coplanar points).
    """
    T2 = normalization_transform(pts_2d)
    T3 = _normalization_3d(pts_3d)
    x = pts_2d @ T2[:2, :2].T + T2[:2, 2]
    X = np.hstack([pts_3d, np.ones((len(pts_3d), 1))]) @ T3.T

    A = np.zeros((2 * len(x), 12))
    A[0::2, 0:4] = X
    A[0::2, 8:12] = -x[:, :1] * X
    A[1::2, 4:8] = X
    A[1::2, 8:12] = -x[:, 1:2] * X

    _, S, Vt = np.linalg.svd(A)
    # rank-deficient system, the null space is not one dimensional
    if S[-2] < 1e-10 * S[0]:
        return None
    P = np.linalg.inv(T2) @ Vt[-1].reshape(3, 4) @ T3
    return P / np.linalg.norm(P)


def decompose_calibrated(P: np.ndarray) -> tuple[np.ndarray, np.ndarray] | None:
    """Closest [R | t] to a projection matrix expressed in normalized coordinates."""
    if np.linalg.det(P[:, :3]) < 0:
        P = -P
    U, S, Vt = np.linalg.svd(P[:, :3])
    if S[-1] < 1e-12:
        return None
    R = U @ Vt
    return R, P[:, 3] / S.mean()


def decompose_projection(P: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray] | None:
    """Split P into K, R, t with an RQ decomposition."""
    if np.linalg.det(P[:, :3]) < 0:
        P = -P
    K, R = rq(P[:, :3])
    D = np.diag(np.sign(np.diag(K)))
    if np.any(np.diag(D) == 0):
        return None
    K = K @ D
    R = D @ R
    t = np.linalg.solve(K, P[:, 3])
    K = K / K[2, 2]
    if not np.all(np.isfinite(K)) or K[0, 0] <= 0 or K[1, 1] <= 0:
        return None
    # skew is not modelled
    K[0, 1] = 0.0
    return K, R, t


class ResectionKernel(Kernel):
    """6-point DLT resection, calibrated when K is known."""

    sample_size = MIN_RESECTION_SAMPLES
    max_models = 1
    mult_error = 1.0

    def __init__(
        self,
        pts_2d: np.ndarray,
        pts_3d: np.ndarray,
        K: np.ndarray | None,
        width: int,
        height: int,
    ) -> None:
        self.pts_2d = np.asarray(pts_2d, dtype=np.float64)
        self.pts_3d = np.asarray(pts_3d, dtype=np.float64)
        self.K = K
        # a random point falls within radius e of its prediction with probability pi e^2 / area
        self.logalpha0 = float(np.log10(np.pi / (width * height)))
        if K is not None:
            rays = np.hstack([self.pts_2d, np.ones((len(self.pts_2d), 1))]) @ np.linalg.inv(K).T
            self._normalized = rays[:, :2]

    def __len__(self) -> int:
        return len(self.pts_2d)

    def fit(self, idx: np.ndarray) -> list[CameraEstimate]:
        pts_3d = self.pts_3d[idx]
        if self.K is not None:
            P = dlt_projection(self._normalized[idx], pts_3d)
            if P is None:
                return []
            Rt = decompose_calibrated(P)
            if Rt is None:
                return []
            model = CameraEstimate(self.K, *Rt)
        else:
            P = dlt_projection(self.pts_2d[idx], pts_3d)
            if P is None:
                return []
            KRt = decompose_projection(P)
            if KRt is None:
                return []
            model = CameraEstimate(*KRt)

        # the sample must lie in front of the camera
        depth = pts_3d @ model.R[2] + model.t[2]
        if np.mean(depth > 0) < 0.5:
            return []
        return [model]

    def residuals(self, model: CameraEstimate) -> np.ndarray:
        errors = compute_reprojection_error(
            self.pts_3d, self.pts_2d, model.R, model.t, model.K
        )
        return errors * errors


def refine_pose_nonlinear(
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    R_init: np.ndarray,
    t_init: np.ndarray,
    K: np.ndarray,
    refine_intrinsics: bool = False,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Refine pose (and optionally focal and principal point) by minimizing reprojection error.

    Args:
        points_3d: (N, 3) inlier 3D points
        points_2d: (N, 2) inlier 2D points
        R_init: 3x3 initial rotation
        t_init: (3,) initial translation
        K: 3x3 initial camera matrix
        refine_intrinsics: Also optimize fx, fy, cx, cy.

    Returns:
        R_refined: 3x3 refined rotation
        t_refined: (3,) refined translation
        K_refined: 3x3 camera matrix (unchanged unless refine_intrinsics)

    """
    # angle axis rotation representation
    r_vec_init, _ = cv2.Rodrigues(R_init)
    x0 = np.hstack((r_vec_init.ravel(), np.ravel(t_init)))
    if refine_intrinsics:
        x0 = np.hstack((x0, [K[0, 0], K[1, 1], K[0, 2], K[1, 2]]))

    def unpack(x: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        R_curr, _ = cv2.Rodrigues(x[:3])
        K_curr = K
        if refine_intrinsics:
            K_curr = np.array([[x[6], 0.0, x[8]], [0.0, x[7], x[9]], [0.0, 0.0, 1.0]])
        return R_curr, x[3:6], K_curr

    def residuals(x: np.ndarray) -> np.ndarray:
        R_curr, t_curr, K_curr = unpack(x)
        return (project_points(points_3d, R_curr, t_curr, K_curr) - points_2d).ravel()

    # reject outliers that the robust estimator missed
    res = least_squares(residuals, x0, loss="soft_l1", f_scale=1.0)
    if not res.success:
        logger.debug("pose refinement stopped: %s", res.message)
        return R_init, np.ravel(t_init), K
    return unpack(res.x)


def estimate_pose(
    associations: Associations,
    intrinsic: Intrinsic | None,
    width: int,
    height: int,
    cfg: LocalizerConfig,
    rng: np.random.Generator | None = None,
) -> PoseEstimate:
    """
    Robust resection of a query camera followed by nonlinear refinement.

    When the intrinsics are unknown they are recovered from the DLT and always
    refined; known intrinsics are refined only if the configuration asks for it.

    Args:
        associations: 2D-3D correspondences of the query frame.
        intrinsic: Known intrinsics of the query, or None.
        width: Query image width.
        height: Query image height.
        cfg: Validated localizer configuration.
        rng: Random generator.

    Raises:
        InsufficientCorrespondences: Fewer than 6 correspondences.
        EstimationFailed: No pose reaches the inlier floor.

    """
    pts_3d = associations.pts_3d
    if intrinsic is not None:
        pts_2d = intrinsic.undistort_points(associations.pts_2d)
        K = intrinsic.K
    else:
        pts_2d = np.asarray(associations.pts_2d, dtype=np.float64)
        K = None

    kernel = ResectionKernel(pts_2d, pts_3d, K, width, height)
    fit = robust_estimate(
        kernel,
        cfg.resection_estimator,
        cfg.resection_error_max,
        cfg.min_inliers,
        cfg.max_iterations,
        cfg.confidence,
        rng,
    )
    model: CameraEstimate = fit.model
    inl = fit.inliers

    refine_intrinsics = intrinsic is None or cfg.refine_intrinsics
    R, t, K_ref = refine_pose_nonlinear(
        pts_3d[inl], pts_2d[inl], model.R, model.t, model.K, refine_intrinsics
    )
    before = compute_reprojection_error(pts_3d[inl], pts_2d[inl], model.R, model.t, model.K)
    after = compute_reprojection_error(pts_3d[inl], pts_2d[inl], R, t, K_ref)
    if not np.mean(after) <= np.mean(before):
        R, t, K_ref = model.R, model.t, model.K
        after = before

    radial = (0.0, 0.0, 0.0) if intrinsic is None else tuple(intrinsic.radial)
    if intrinsic is None or refine_intrinsics:
        out_intrinsic = Intrinsic.from_matrix(K_ref, width, height, radial)
    else:
        out_intrinsic = intrinsic

    logger.debug(
        "resection: %d/%d inliers, mean error %.3f px",
        len(inl),
        len(kernel),
        float(np.mean(after)),
    )
    return PoseEstimate(Pose.from_rt(R, t), out_intrinsic, inl, fit.threshold)
