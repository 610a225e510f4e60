from typing import Optional

import numpy as np
import gtsam

from estimation.errors import ConfigurationError
from estimation.pose_traits import traits_for
from utilities.config import MagnetometerConfig
from logging_config import get_logger

logger = get_logger(__name__)


class SensorMagnetometer:
    """Simulated magnetometer on a Pose2/Pose3/Rot2/Rot3 body.

    Noise model:
        z = scale * sRn * direction + bias + n + spike

    where sRn = (nRb * bRs)^T and n ~ N(0, mag_std² I).
    """

    def __init__(
        self,
        config: MagnetometerConfig,
        pose_type=gtsam.Pose3,
        rng: Optional[np.random.Generator] = None,
    ):
        self.traits = traits_for(pose_type)
        meas_dim = self.traits.meas_dim

        direction = np.asarray(config.direction, float).reshape(-1)
        bias = np.asarray(config.bias_for(meas_dim), float).reshape(-1)
        for name, v in (("direction", direction), ("bias", bias)):
            if v.size != meas_dim:
                raise ConfigurationError(
                    f"{name} has length {v.size}, {self.traits.name} needs {meas_dim}"
                )

        norm = np.linalg.norm(direction)
        if norm < 1e-12:
            raise ConfigurationError("direction must be a non-zero vector")

        self.nM: np.ndarray = config.scale * direction / norm
        self.bias: np.ndarray = bias
        self.body_P_sensor = config.mount_for(pose_type)
        self.mag_std: float = config.mag_std

        # Spike config
        spikes_cfg = config.spikes or {}
        self.spikes_enabled: bool = spikes_cfg.get("enabled", False)
        self.spike_magnitude: float = spikes_cfg.get("magnitude", 0.0)
        self.spike_probability: float = spikes_cfg.get("probability", 0.0)

        self.rng = rng if rng is not None else np.random.default_rng()

        # Measurement noise covariance R = sigma^2 * I
        self.R = np.eye(meas_dim) * self.mag_std**2
        logger.debug(f"Magnetometer measurement noise covariance R set to {self.mag_std**2:.2e} * I")

    # ---- internal helpers -------------------------------------------------

    def _maybe_spike(self) -> np.ndarray:
        """Generate a spike vector or zero."""
        meas_dim = self.traits.meas_dim
        if (
            not self.spikes_enabled
            or self.spike_probability <= 0.0
            or self.spike_magnitude <= 0.0
        ):
            return np.zeros(meas_dim)

        if self.rng.random() >= self.spike_probability:
            return np.zeros(meas_dim)

        # Random spike direction with magnitude ~ spike_magnitude
        direction = self.rng.normal(size=meas_dim)
        norm = np.linalg.norm(direction)
        if norm < 1e-12:
            return np.zeros(meas_dim)
        return self.spike_magnitude * direction / norm

    # ---- sensor model -----------------------------------------------------

    def predict(self, nPb) -> np.ndarray:
        """Noise-free reading for a body pose nPb."""
        nRs = self.traits.rotation(nPb)
        if self.body_P_sensor is not None:
            nRs = nRs.compose(self.traits.rotation(self.body_P_sensor))
        z, _ = self.traits.unrotate(nRs, self.nM)
        return z + self.bias

    def sample(self, nPb) -> np.ndarray:
        """Sample a magnetometer measurement from the true pose.

        Returns:
            Magnetometer measurement in sensor frame, shape (MeasDim,).
        """
        noise = self.rng.normal(0.0, self.mag_std, size=self.traits.meas_dim)
        return self.predict(nPb) + noise + self._maybe_spike()
