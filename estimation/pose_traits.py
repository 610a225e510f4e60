from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Tuple

import numpy as np
import gtsam

from estimation.errors import ConfigurationError
from utilities.utils import get_skew_matrix, get_perp_column


# ----------------------------------------------------------------------
# Rotation primitives
# ----------------------------------------------------------------------

def unrotate_rot3(R: gtsam.Rot3, v: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    q = R^T v, with the 3×3 Jacobian of q wrt R (right perturbation).

    R ← R * Exp(δ)  =>  q ← Exp(-δ) q ≈ q + [q]× δ
    """
    q = np.asarray(R.unrotate(v), float).reshape(3)
    return q, get_skew_matrix(q)


def unrotate_rot2(R: gtsam.Rot2, v: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    q = R^T v, with the 2×1 Jacobian of q wrt the angle of R.

    θ ← θ + δ  =>  q ← R(-δ) q ≈ q + δ [q_y, -q_x]^T
    """
    q = np.asarray(R.unrotate(v), float).reshape(2)
    return q, get_perp_column(q)


def _square(M, n: int, name: str, homogeneous_ok: bool = False) -> np.ndarray:
    """
    M as an n×n array. With homogeneous_ok, an (n+1)×(n+1) homogeneous
    matrix is also accepted and its rotation block returned.
    """
    M = np.asarray(M, float)
    if M.shape == (n, n):
        return M
    if homogeneous_ok and M.shape == (n + 1, n + 1):
        return M[:n, :n]
    raise ConfigurationError(f"{name} needs a {n}x{n} matrix, got shape {M.shape}")


def _pose2_from_matrix(M: np.ndarray) -> gtsam.Pose2:
    M = _square(M, 3, "Pose2")
    return gtsam.Pose2(M[0, 2], M[1, 2], np.arctan2(M[1, 0], M[0, 0]))


def _pose3_from_matrix(M: np.ndarray) -> gtsam.Pose3:
    return gtsam.Pose3(_square(M, 4, "Pose3"))


def _rot2_from_matrix(M: np.ndarray) -> gtsam.Rot2:
    M = _square(M, 2, "Rot2", homogeneous_ok=True)
    return gtsam.Rot2(np.arctan2(M[1, 0], M[0, 0]))


def _rot3_from_matrix(M: np.ndarray) -> gtsam.Rot3:
    return gtsam.Rot3(_square(M, 3, "Rot3", homogeneous_ok=True))


# ----------------------------------------------------------------------
# Capability records
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PoseTraits:
    """What a magnetometer factor needs to know about a pose type.

    Attributes:
        name             : GTSAM class name, used when persisting factors
        dimension        : size of the pose tangent space (PoseDim)
        rot_dim          : size of the rotation tangent space (RotDim)
        meas_dim         : length of a magnetometer reading (MeasDim)
        rot_start        : first column of the rotation block in the
                           pose Jacobian
        rotation         : pose -> rotation
        at               : (values, key) -> pose
        unrotate         : (R, v) -> (R^T v, MeasDim×RotDim Jacobian)
        compose_jacobian : bRs -> d(nRb * bRs)/d(nRb), RotDim×RotDim
        from_matrix      : matrix -> pose; rotations also take the
                           rotation block of a homogeneous matrix
    """
    pose_type: type
    name: str
    dimension: int
    rot_dim: int
    meas_dim: int
    rot_start: int
    rotation: Callable[[Any], Any]
    at: Callable[[gtsam.Values, int], Any]
    unrotate: Callable[[Any, np.ndarray], Tuple[np.ndarray, np.ndarray]]
    compose_jacobian: Callable[[Any], np.ndarray]
    from_matrix: Callable[[np.ndarray], Any]

    @property
    def rotation_interval(self) -> Tuple[int, int]:
        """(start column, length) of the rotation block."""
        return self.rot_start, self.rot_dim

    def to_matrix(self, pose) -> np.ndarray:
        return np.asarray(pose.matrix(), float)


_TRAITS: Dict[type, PoseTraits] = {}


def register(traits: PoseTraits) -> PoseTraits:
    _TRAITS[traits.pose_type] = traits
    return traits


# Pose2 tangent is [x, y, θ]; Pose3 tangent is [ω, v].
register(PoseTraits(
    pose_type=gtsam.Pose2, name="Pose2",
    dimension=3, rot_dim=1, meas_dim=2, rot_start=2,
    rotation=lambda pose: pose.rotation(),
    at=lambda values, key: values.atPose2(key),
    unrotate=unrotate_rot2,
    compose_jacobian=lambda R_mount: np.eye(1),
    from_matrix=_pose2_from_matrix,
))

register(PoseTraits(
    pose_type=gtsam.Pose3, name="Pose3",
    dimension=6, rot_dim=3, meas_dim=3, rot_start=0,
    rotation=lambda pose: pose.rotation(),
    at=lambda values, key: values.atPose3(key),
    unrotate=unrotate_rot3,
    compose_jacobian=lambda R_mount: R_mount.matrix().T,
    from_matrix=_pose3_from_matrix,
))

register(PoseTraits(
    pose_type=gtsam.Rot2, name="Rot2",
    dimension=1, rot_dim=1, meas_dim=2, rot_start=0,
    rotation=lambda rot: rot,
    at=lambda values, key: values.atRot2(key),
    unrotate=unrotate_rot2,
    compose_jacobian=lambda R_mount: np.eye(1),
    from_matrix=_rot2_from_matrix,
))

register(PoseTraits(
    pose_type=gtsam.Rot3, name="Rot3",
    dimension=3, rot_dim=3, meas_dim=3, rot_start=0,
    rotation=lambda rot: rot,
    at=lambda values, key: values.atRot3(key),
    unrotate=unrotate_rot3,
    compose_jacobian=lambda R_mount: R_mount.matrix().T,
    from_matrix=_rot3_from_matrix,
))


def traits_for(pose_type) -> PoseTraits:
    """Look up traits by GTSAM type or by its class name."""
    if isinstance(pose_type, str):
        for traits in _TRAITS.values():
            if traits.name == pose_type:
                return traits
    elif pose_type in _TRAITS:
        return _TRAITS[pose_type]
    raise ConfigurationError(f"Unsupported pose type: {pose_type!r}")
