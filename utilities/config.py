from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import gtsam

from estimation.errors import ConfigurationError
from estimation.mag_pose_factor import MagPoseFactor
from estimation.pose_traits import traits_for
from utilities.utils import load_yaml
from logging_config import get_logger

logger = get_logger(__name__)

ROBUST_KERNELS = {
    "Huber": gtsam.noiseModel.mEstimator.Huber,
    "Cauchy": gtsam.noiseModel.mEstimator.Cauchy,
    "Tukey": gtsam.noiseModel.mEstimator.Tukey,
}


@dataclass
class MagnetometerConfig:
    """Known magnetometer constants, read from the `sensors.mag` section.

    Attributes:
        mag_std       : white-noise std per axis [mag output units]
        scale         : field magnitude, e.g. 50000 nT
        direction     : local field direction in the nav frame (any norm)
        bias          : additive bias after scaling
        body_P_sensor : homogeneous matrix of the sensor in the body frame
        robust_kernel : None, "Huber", "Cauchy" or "Tukey"
        robust_param  : tuning parameter of the kernel
    """
    mag_std: float
    scale: float
    direction: np.ndarray
    bias: Optional[np.ndarray] = None
    body_P_sensor: Optional[np.ndarray] = None
    robust_kernel: Optional[str] = None
    robust_param: float = 1.345
    spikes: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, cfg: dict) -> "MagnetometerConfig":
        try:
            mag_cfg = cfg["sensors"]["mag"]
            mag_std = float(mag_cfg["mag_std"])
            scale = float(mag_cfg["scale"])
            direction = np.asarray(mag_cfg["direction"], float).reshape(-1)
        except KeyError as e:
            raise ConfigurationError(f"Magnetometer config is missing {e}") from e

        bias = mag_cfg.get("bias")
        mount = mag_cfg.get("body_P_sensor")
        robust_cfg = mag_cfg.get("robust") or {}

        config = cls(
            mag_std=mag_std,
            scale=scale,
            direction=direction,
            bias=None if bias is None else np.asarray(bias, float).reshape(-1),
            body_P_sensor=None if mount is None else np.asarray(mount, float),
            robust_kernel=robust_cfg.get("kernel"),
            robust_param=float(robust_cfg.get("param", 1.345)),
            spikes=mag_cfg.get("spikes", {}),
        )
        logger.debug(f"MagnetometerConfig loaded: mag_std={mag_std:.2e}, scale={scale:.4g}, "
                     f"direction={direction}, robust={config.robust_kernel}")
        return config

    @classmethod
    def from_yaml(cls, path: str) -> "MagnetometerConfig":
        return cls.from_dict(load_yaml(path))

    def bias_for(self, meas_dim: int) -> np.ndarray:
        if self.bias is None:
            return np.zeros(meas_dim)
        return self.bias

    def mount_for(self, pose_type):
        if self.body_P_sensor is None:
            return None
        return traits_for(pose_type).from_matrix(self.body_P_sensor)

    def noise_model(self, meas_dim: int):
        """
        Isotropic Gaussian noise, wrapped in a robust M-estimator if one
        is configured.
        """
        base_noise = gtsam.noiseModel.Isotropic.Sigma(meas_dim, self.mag_std)
        if self.robust_kernel is None:
            return base_noise

        if self.robust_kernel not in ROBUST_KERNELS:
            raise ConfigurationError(
                f"Unknown robust kernel '{self.robust_kernel}', "
                f"expected one of {sorted(ROBUST_KERNELS)}"
            )
        mestimator = ROBUST_KERNELS[self.robust_kernel].Create(self.robust_param)
        return gtsam.noiseModel.Robust.Create(mestimator, base_noise)


def make_factor(
    pose_key: int,
    measured: np.ndarray,
    config: MagnetometerConfig,
    pose_type=gtsam.Pose3,
) -> MagPoseFactor:
    """Build a MagPoseFactor from a magnetometer config."""
    traits = traits_for(pose_type)
    return MagPoseFactor(
        pose_key,
        measured,
        config.scale,
        config.direction,
        config.bias_for(traits.meas_dim),
        config.noise_model(traits.meas_dim),
        body_P_sensor=config.mount_for(pose_type),
        pose_type=pose_type,
    )
