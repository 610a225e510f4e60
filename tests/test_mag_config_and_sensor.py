#!/usr/bin/env python3
"""
Test magnetometer configuration loading and the simulated sensor.
"""

import sys
from pathlib import Path

import numpy as np
import gtsam
import pytest

from estimation.errors import ConfigurationError
from estimation.mag_pose_factor import MagPoseFactor
from utilities.config import MagnetometerConfig, make_factor
from utilities.sensors import SensorMagnetometer

CONFIG_DIR = Path(__file__).resolve().parents[1] / "configs"


def test_load_3d_config():
    config = MagnetometerConfig.from_yaml(str(CONFIG_DIR / "config_mag_3d.yaml"))

    assert config.mag_std == pytest.approx(50.0)
    assert config.scale == pytest.approx(50000.0)
    np.testing.assert_allclose(config.bias, [10.0, -20.0, 5.0])
    assert config.body_P_sensor.shape == (4, 4)
    assert config.robust_kernel == "Huber"

    noise = config.noise_model(3)
    assert isinstance(noise, gtsam.noiseModel.Robust)


def test_load_2d_config_defaults():
    config = MagnetometerConfig.from_yaml(str(CONFIG_DIR / "config_mag_2d.yaml"))

    assert config.body_P_sensor is None
    assert config.robust_kernel is None
    assert config.mount_for(gtsam.Pose2) is None
    noise = config.noise_model(2)
    assert isinstance(noise, gtsam.noiseModel.Isotropic)
    np.testing.assert_allclose(noise.sigmas(), [0.01, 0.01])


def test_missing_keys_raise():
    with pytest.raises(ConfigurationError):
        MagnetometerConfig.from_dict({"sensors": {"mag": {"mag_std": 1.0}}})


def test_unknown_robust_kernel_raises():
    config = MagnetometerConfig(mag_std=1.0, scale=1.0, direction=np.ones(3),
                                robust_kernel="Welsch2000")
    with pytest.raises(ConfigurationError):
        config.noise_model(3)


def test_sensor_reading_gives_zero_error():
    """A noise-free simulated reading is explained exactly by the factor."""
    config = MagnetometerConfig.from_yaml(str(CONFIG_DIR / "config_mag_3d.yaml"))
    sensor = SensorMagnetometer(config, gtsam.Pose3)
    nPb = gtsam.Pose3(gtsam.Rot3.Ypr(0.9, -0.2, 0.05), gtsam.Point3(10.0, 5.0, -1.0))

    z = sensor.predict(nPb)
    factor = make_factor(gtsam.symbol("x", 0), z, config, gtsam.Pose3)

    assert factor.body_P_sensor is not None
    np.testing.assert_allclose(factor.evaluate_error(nPb), np.zeros(3), atol=1e-8)


def test_sensor_noise_statistics():
    config = MagnetometerConfig.from_yaml(str(CONFIG_DIR / "config_mag_2d.yaml"))
    sensor = SensorMagnetometer(config, gtsam.Pose2, rng=np.random.default_rng(42))
    nPb = gtsam.Pose2(0.0, 0.0, 0.3)

    N = 4000
    samples = np.array([sensor.sample(nPb) for _ in range(N)])

    np.testing.assert_allclose(samples.mean(axis=0), sensor.predict(nPb),
                               atol=5 * config.mag_std / np.sqrt(N))
    np.testing.assert_allclose(samples.std(axis=0), [config.mag_std] * 2, rtol=0.1)


def test_sensor_spikes():
    config = MagnetometerConfig(
        mag_std=1e-6, scale=1.0, direction=np.array([1.0, 0.0, 0.0]),
        spikes={"enabled": True, "magnitude": 10.0, "probability": 1.0},
    )
    sensor = SensorMagnetometer(config, gtsam.Rot3, rng=np.random.default_rng(0))
    z = sensor.sample(gtsam.Rot3())
    assert np.linalg.norm(z - sensor.predict(gtsam.Rot3())) == pytest.approx(10.0, abs=1e-4)


def test_robust_factor_round_trip_needs_model():
    config = MagnetometerConfig.from_yaml(str(CONFIG_DIR / "config_mag_3d.yaml"))
    factor = make_factor(gtsam.symbol("x", 3), np.array([1.0, 2.0, 3.0]), config)

    state = factor.to_dict()
    assert state["sigmas"] is None
    with pytest.raises(ConfigurationError):
        MagPoseFactor.from_dict(state)

    restored = MagPoseFactor.from_dict(state, noise_model=factor.noise)
    assert restored.equals(factor)
    assert factor.clone().equals(factor)


def test_rot3_factor_from_3d_config():
    """The 4x4 mount in the config reduces to its rotation block for Rot3."""
    config = MagnetometerConfig.from_yaml(str(CONFIG_DIR / "config_mag_3d.yaml"))
    factor = make_factor(gtsam.symbol("x", 0), np.zeros(3), config, gtsam.Rot3)

    assert isinstance(factor.body_P_sensor, gtsam.Rot3)
    assert factor.body_P_sensor.equals(gtsam.Rot3(), 1e-12)

    sensor = SensorMagnetometer(config, gtsam.Rot3)
    nRb = gtsam.Rot3.Ypr(0.4, 0.1, -0.3)
    z = sensor.predict(nRb)
    np.testing.assert_allclose(
        make_factor(gtsam.symbol("x", 0), z, config, gtsam.Rot3).evaluate_error(nRb),
        np.zeros(3), atol=1e-8,
    )


def test_sensor_rejects_config_of_wrong_dimension():
    config = MagnetometerConfig.from_yaml(str(CONFIG_DIR / "config_mag_2d.yaml"))
    with pytest.raises(ConfigurationError):
        SensorMagnetometer(config, gtsam.Pose3)

    config = MagnetometerConfig(mag_std=1.0, scale=1.0, direction=np.ones(3),
                                bias=np.zeros(2))
    with pytest.raises(ConfigurationError):
        SensorMagnetometer(config, gtsam.Pose3)


def test_sensor_rejects_zero_direction():
    config = MagnetometerConfig(mag_std=1.0, scale=1.0, direction=np.zeros(3))
    with pytest.raises(ConfigurationError):
        SensorMagnetometer(config, gtsam.Pose3)


def main():
    return pytest.main([__file__, "-v"])


if __name__ == "__main__":
    sys.exit(main())
