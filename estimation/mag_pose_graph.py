from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import gtsam

from estimation.errors import ConfigurationError
from estimation.mag_pose_factor import MagPoseFactor
from estimation.pose_traits import traits_for
from utilities.config import MagnetometerConfig, make_factor
from logging_config import get_logger

logger = get_logger(__name__)

PRIOR_FACTORS = {
    gtsam.Pose2: gtsam.PriorFactorPose2,
    gtsam.Pose3: gtsam.PriorFactorPose3,
    gtsam.Rot2: gtsam.PriorFactorRot2,
    gtsam.Rot3: gtsam.PriorFactorRot3,
}

BETWEEN_FACTORS = {
    gtsam.Pose2: gtsam.BetweenFactorPose2,
    gtsam.Pose3: gtsam.BetweenFactorPose3,
    gtsam.Rot2: gtsam.BetweenFactorRot2,
    gtsam.Rot3: gtsam.BetweenFactorRot3,
}


@dataclass
class PoseSample:
    """One node of the graph.

    Attributes:
        pose_guess : initial estimate of nPb
        z_mag      : magnetometer reading or None
        odometry   : relative motion from the previous node or None
    """
    pose_guess: object
    z_mag: Optional[np.ndarray] = None
    odometry: Optional[object] = None


class MagPoseGraph:
    """
    GTSAM factor graph of poses observed by a magnetometer.

    Nodes per sample i:
        X(i) : pose (Pose2, Pose3, Rot2 or Rot3)

    Factors:
        - prior on X(0)
        - between factor X(i-1) -> X(i) when odometry is given
        - magnetometer factor on X(i) when a reading is given
    """

    def __init__(
        self,
        mag_config: MagnetometerConfig,
        pose_type=gtsam.Pose3,
        prior_sigmas: Optional[Sequence[float]] = None,
        odometry_sigmas: Optional[Sequence[float]] = None,
        max_iters: int = 30,
        tol: float = 1e-6,
    ):
        self.traits = traits_for(pose_type)
        if pose_type not in PRIOR_FACTORS:
            raise ConfigurationError(f"No prior factor for {self.traits.name}")

        self.mag_config = mag_config
        self.pose_type = pose_type
        dim = self.traits.dimension

        self.prior_sigmas = self._sigmas(prior_sigmas, dim, 0.1, "prior_sigmas")
        self.odometry_sigmas = self._sigmas(odometry_sigmas, dim, 0.05, "odometry_sigmas")
        self.max_iters = max_iters
        self.tol = tol

    @staticmethod
    def _sigmas(sigmas, dim: int, default: float, name: str) -> np.ndarray:
        if sigmas is None:
            return np.full(dim, default)
        sigmas = np.asarray(sigmas, float).reshape(-1)
        if sigmas.size != dim:
            raise ConfigurationError(f"{name} has length {sigmas.size}, expected {dim}")
        return sigmas

    # ------------- key helpers -------------

    @staticmethod
    def X(i: int) -> int:
        return gtsam.symbol("x", i)

    # ------------- factor builders -------------

    def make_mag_factor(self, key: int, z_mag: np.ndarray) -> MagPoseFactor:
        return make_factor(key, z_mag, self.mag_config, self.pose_type)

    def make_prior_factor(self, key: int, pose):
        noise = gtsam.noiseModel.Diagonal.Sigmas(self.prior_sigmas)
        return PRIOR_FACTORS[self.pose_type](key, pose, noise)

    def make_between_factor(self, key_prev: int, key_curr: int, odometry):
        noise = gtsam.noiseModel.Diagonal.Sigmas(self.odometry_sigmas)
        return BETWEEN_FACTORS[self.pose_type](key_prev, key_curr, odometry, noise)

    # ------------- graph builder -------------

    def build_graph(self, samples: List[PoseSample], prior_pose=None) -> tuple:
        """
        Build the graph and initial values. The prior on X(0) is centred
        on prior_pose, or on the first guess if prior_pose is None.
        """
        graph = gtsam.NonlinearFactorGraph()
        values = gtsam.Values()

        if len(samples) == 0:
            return graph, values

        s0 = samples[0]
        graph.add(self.make_prior_factor(
            self.X(0), s0.pose_guess if prior_pose is None else prior_pose
        ))

        n_mag = 0
        for i, s in enumerate(samples):
            values.insert(self.X(i), s.pose_guess)

            if i > 0 and s.odometry is not None:
                graph.add(self.make_between_factor(self.X(i - 1), self.X(i), s.odometry))

            if s.z_mag is not None and not np.any(np.isnan(s.z_mag)):
                graph.add(self.make_mag_factor(self.X(i), s.z_mag))
                n_mag += 1

        logger.debug(f"Built graph: {len(samples)} poses, {n_mag} magnetometer factors, "
                     f"{graph.size()} factors total")
        return graph, values

    # ------------- optimization -------------

    def optimize(self, samples: List[PoseSample], prior_pose=None) -> List[object]:
        """Build and solve the factor graph; return the optimized poses."""
        graph, values = self.build_graph(samples, prior_pose)
        if graph.size() == 0:
            return []

        params = gtsam.LevenbergMarquardtParams()
        params.setMaxIterations(self.max_iters)
        params.setAbsoluteErrorTol(self.tol)

        optimizer = gtsam.LevenbergMarquardtOptimizer(graph, values, params)
        result = optimizer.optimize()

        logger.info(f"Optimized {len(samples)} poses: error {graph.error(values):.4g} -> "
                    f"{graph.error(result):.4g}")

        return [self.traits.at(result, self.X(i)) for i in range(len(samples))]
