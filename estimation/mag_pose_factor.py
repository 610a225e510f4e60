from __future__ import annotations

import json
from typing import List, Optional, Tuple

import numpy as np
import gtsam

from estimation.errors import ConfigurationError
from estimation.pose_traits import PoseTraits, traits_for
from utilities.utils import as_readonly_vector
from logging_config import get_logger

logger = get_logger(__name__)


def _noise_sigmas(noise_model) -> Optional[np.ndarray]:
    """Sigmas of a diagonal-family noise model, None for anything else."""
    if isinstance(noise_model, gtsam.noiseModel.Diagonal):
        return np.asarray(noise_model.sigmas(), float).reshape(-1)
    return None


class _MagModel:
    """
    The measurement model with its constants, handed to CustomFactor as the
    error function. It holds no reference back to the factor.
    """

    def __init__(self, traits: PoseTraits, key: int, measured, local_field, bias, body_P_sensor):
        self.traits = traits
        self.key = key
        self.measured = measured
        self.local_field = local_field
        self.bias = bias
        self.body_P_sensor = body_P_sensor

    def error(self, nPb, H: Optional[List] = None) -> np.ndarray:
        traits = self.traits

        # Rotation of the sensor frame in the nav frame.
        nRb = traits.rotation(nPb)
        if self.body_P_sensor is None:
            nRs = nRb
        else:
            bRs = traits.rotation(self.body_P_sensor)
            nRs = nRb.compose(bRs)

        hx, H_rot = traits.unrotate(nRs, self.local_field)
        hx = hx + self.bias

        if H is not None:
            if self.body_P_sensor is not None:
                H_rot = H_rot @ traits.compose_jacobian(bRs)

            J = np.zeros((traits.meas_dim, traits.dimension))
            rot0, rot_len = traits.rotation_interval
            J[:, rot0:rot0 + rot_len] = H_rot
            H[0] = J

        return hx - self.measured

    def __call__(self, this: gtsam.CustomFactor, values: gtsam.Values, jacobians=None) -> np.ndarray:
        return self.error(self.traits.at(values, self.key), jacobians)


class MagPoseFactor(gtsam.CustomFactor):
    """
    Magnetometer factor on a single Pose2, Pose3, Rot2 or Rot3 variable.

    Measurement model (scale, direction and bias are known):
        bM = scale * bRn * direction + bias

    Error e ∈ R^MeasDim:
        nRs = nRb * bRs          (bRs from body_P_sensor, if given)
        h   = nRs^T * nM + bias,     nM = scale * direction / |direction|
        e   = h - measured

    Only the rotation columns of the Jacobian are non-zero; a
    magnetometer carries no information about translation.
    """

    def __init__(
        self,
        pose_key: int,
        measured: np.ndarray,
        scale: float,
        direction: np.ndarray,
        bias: np.ndarray,
        noise_model,
        body_P_sensor=None,
        pose_type=gtsam.Pose3,
    ):
        traits = traits_for(pose_type)

        measured = as_readonly_vector(measured)
        direction = np.asarray(direction, float).reshape(-1)
        bias = as_readonly_vector(bias)

        for name, v in (("measured", measured), ("direction", direction), ("bias", bias)):
            if v.size != traits.meas_dim:
                raise ConfigurationError(
                    f"{name} has length {v.size}, {traits.name} needs {traits.meas_dim}"
                )

        scale = float(scale)
        if not np.isfinite(scale) or scale <= 0.0:
            raise ConfigurationError(f"scale must be positive, got {scale}")

        norm = np.linalg.norm(direction)
        if norm < 1e-12:
            raise ConfigurationError("direction must be a non-zero vector")

        local_field = as_readonly_vector(scale * direction / norm)

        self._init_from_state(traits, pose_key, measured, local_field, bias,
                              noise_model, body_P_sensor)

        logger.debug(f"MagPoseFactor on {traits.name} key {pose_key}: "
                     f"|nM|={scale:.4g}, mount={'yes' if body_P_sensor is not None else 'no'}")

    def _init_from_state(
        self,
        traits: PoseTraits,
        pose_key: int,
        measured: np.ndarray,
        local_field: np.ndarray,
        bias: np.ndarray,
        noise_model,
        body_P_sensor,
    ):
        """Shared by __init__ and from_dict; local_field is stored as given."""
        if body_P_sensor is not None and not isinstance(body_P_sensor, traits.pose_type):
            raise ConfigurationError(
                f"body_P_sensor must be a {traits.name}, got {type(body_P_sensor).__name__}"
            )

        sigmas = _noise_sigmas(noise_model)
        if sigmas is not None and sigmas.size != traits.meas_dim:
            raise ConfigurationError(
                f"noise model has dimension {sigmas.size}, expected {traits.meas_dim}"
            )

        # CustomFactor keeps only the model alive, never the factor itself.
        model = _MagModel(traits, int(pose_key), measured, local_field, bias, body_P_sensor)
        super().__init__(noise_model, [pose_key], model)

        self._model = model
        self._traits = traits
        self._key = int(pose_key)
        self._noise_model = noise_model
        self._measured = measured
        self._local_field = local_field
        self._bias = bias
        self._body_P_sensor = body_P_sensor

    # ------------- accessors -------------

    @property
    def key(self) -> int:
        return self._key

    @property
    def pose_type(self) -> type:
        return self._traits.pose_type

    @property
    def measured(self) -> np.ndarray:
        return self._measured

    @property
    def local_field(self) -> np.ndarray:
        """nM = scale * normalized direction, in the navigation frame."""
        return self._local_field

    @property
    def bias(self) -> np.ndarray:
        return self._bias

    @property
    def body_P_sensor(self):
        return self._body_P_sensor

    @property
    def noise(self):
        return self._noise_model

    # ------------- error -------------

    def evaluate_error(self, nPb, H: Optional[List] = None) -> np.ndarray:
        """
        Return h(nPb) - measured. If H is a list, H[0] is set to the
        MeasDim × PoseDim Jacobian.
        """
        return self._model.error(nPb, H)

    def evaluate(self, nPb, want_jacobian: bool = False) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Error and, if requested, its Jacobian wrt nPb."""
        if not want_jacobian:
            return self.evaluate_error(nPb), None
        H = [None]
        e = self.evaluate_error(nPb, H)
        return e, H[0]

    def error_vector(self, values: gtsam.Values) -> np.ndarray:
        return self.evaluate_error(self._traits.at(values, self._key))

    # ------------- testable -------------

    def clone(self) -> "MagPoseFactor":
        """Independent copy with the same key and constants."""
        return MagPoseFactor.from_state(self.to_dict(), self._noise_model)

    def equals(self, other, tol: float = 1e-9) -> bool:
        """
        Same key, pose type and noise sigmas, and measured, nM, bias and
        sensor mount equal within tol.
        """
        if not isinstance(other, MagPoseFactor):
            return False
        if self._key != other._key or self._traits is not other._traits:
            return False
        if not self._same_noise(other, tol):
            return False

        for a, b in ((self._measured, other._measured),
                     (self._local_field, other._local_field),
                     (self._bias, other._bias)):
            if not np.allclose(a, b, rtol=0.0, atol=tol):
                return False

        if self._body_P_sensor is None or other._body_P_sensor is None:
            return self._body_P_sensor is None and other._body_P_sensor is None
        return self._body_P_sensor.equals(other._body_P_sensor, tol)

    def _same_noise(self, other: "MagPoseFactor", tol: float) -> bool:
        mine = _noise_sigmas(self._noise_model)
        theirs = _noise_sigmas(other._noise_model)
        if mine is None or theirs is None:
            return self._noise_model is other._noise_model
        return mine.shape == theirs.shape and np.allclose(mine, theirs, rtol=0.0, atol=tol)

    def __str__(self) -> str:
        lines = [
            f"MagPoseFactor<{self._traits.name}> on {gtsam.DefaultKeyFormatter(self._key)}",
            f"  measured: {np.array2string(self._measured)}",
            f"  nM:       {np.array2string(self._local_field)}",
            f"  bias:     {np.array2string(self._bias)}",
        ]
        if self._body_P_sensor is not None:
            mount = np.array2string(self._traits.to_matrix(self._body_P_sensor), prefix="  body_P_sensor: ")
            lines.append(f"  body_P_sensor: {mount}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"MagPoseFactor({self._traits.name}, key={self._key})"

    def print(self, s: str = "") -> None:
        print(f"{s}{self}")

    # ------------- persistence -------------

    def to_dict(self) -> dict:
        """
        Persisted state, in order: base factor (pose type, key, noise
        sigmas), measured, nM, bias, body_P_sensor.

        Noise models outside the diagonal family have no sigmas to store;
        for those "sigmas" is None and from_dict needs the model passed in.
        """
        sigmas = _noise_sigmas(self._noise_model)
        mount = None
        if self._body_P_sensor is not None:
            mount = self._traits.to_matrix(self._body_P_sensor).tolist()
        return {
            "pose_type": self._traits.name,
            "key": self._key,
            "sigmas": None if sigmas is None else sigmas.tolist(),
            "measured": self._measured.tolist(),
            "local_field": self._local_field.tolist(),
            "bias": self._bias.tolist(),
            "body_P_sensor": mount,
        }

    @classmethod
    def from_dict(cls, state: dict, noise_model=None) -> "MagPoseFactor":
        """Rebuild a factor from to_dict() output."""
        missing = [k for k in ("pose_type", "key", "sigmas", "measured",
                               "local_field", "bias", "body_P_sensor") if k not in state]
        if missing:
            raise ConfigurationError(f"Serialized MagPoseFactor is missing {missing}")

        if noise_model is None:
            if state["sigmas"] is None:
                raise ConfigurationError(
                    "Serialized MagPoseFactor has no sigmas; pass noise_model explicitly"
                )
            noise_model = gtsam.noiseModel.Diagonal.Sigmas(np.asarray(state["sigmas"], float))

        return cls.from_state(state, noise_model)

    @classmethod
    def from_state(cls, state: dict, noise_model) -> "MagPoseFactor":
        traits = traits_for(state["pose_type"])

        measured = as_readonly_vector(state["measured"])
        local_field = as_readonly_vector(state["local_field"])
        bias = as_readonly_vector(state["bias"])
        for name, v in (("measured", measured), ("local_field", local_field), ("bias", bias)):
            if v.size != traits.meas_dim:
                raise ConfigurationError(
                    f"{name} has length {v.size}, {traits.name} needs {traits.meas_dim}"
                )

        mount = state["body_P_sensor"]
        body_P_sensor = None if mount is None else traits.from_matrix(np.asarray(mount, float))

        factor = cls.__new__(cls)
        factor._init_from_state(traits, int(state["key"]), measured, local_field, bias,
                                noise_model, body_P_sensor)
        return factor

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str, noise_model=None) -> "MagPoseFactor":
        return cls.from_dict(json.loads(text), noise_model)
