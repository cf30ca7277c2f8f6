"""The tag graph engine: build, solve, query.

Single-threaded and synchronous. One ``TagGraph`` exclusively owns its store
and factor graph; callers must serialize all mutations and queries, and must
finish adding a frame's observations before calling ``optimize``.
"""
from typing import List, Optional, Sequence, Tuple
import logging
import time
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .config import GraphConfig
from .errors import KeyRangeExceededError
from .graph import GraphBuilder
from .keys import (VariableKey, decode_world_corner, key_for_body_pose,
                   key_for_camera_pose, key_for_tag_transform)
from .models import Camera, PointEstimate, PoseEstimate, RigidBody, Tag
from .optimizer import BatchOptimizer, OptimizationResult
from .residuals import world_point
from .uncertainty import UncertaintyEngine

logger = logging.getLogger("tagslam.tag_graph")


def _frame_of(entity, frame: int) -> int:
    return 0 if entity.is_static else frame


class TagGraph:
    def __init__(self, config: GraphConfig = None, kpi=None):
        self.config = config or GraphConfig()
        self.kpi = kpi
        self.builder = GraphBuilder(self.config)
        self.optimizer = BatchOptimizer(self.config, kpi=kpi)
        self.uncertainty = UncertaintyEngine()
        self.optimizer_error = 0.0
        self.optimizer_iterations = 0
        self.last_result: Optional[OptimizationResult] = None
        self._solved_revision: Optional[int] = None

    # ---- state ------------------------------------------------------------

    @property
    def store(self):
        return self.builder.store

    @property
    def graph(self):
        return self.builder.graph

    @property
    def counts(self):
        return self.builder.counts

    @property
    def num_factors(self) -> int:
        return int(self.graph.size())

    @property
    def num_variables(self) -> int:
        return len(self.store)

    @property
    def max_num_bodies(self) -> int:
        return self.builder.max_num_bodies

    def set_pixel_noise(self, num_pix: float) -> None:
        self.builder.set_pixel_noise(num_pix)

    # ---- construction -------------------------------------------------------

    def add_tags(self, body: RigidBody, tags: Sequence[Tag]) -> bool:
        return self.builder.add_tags(body, tags)

    def add_observation(self, camera: Camera, body: RigidBody, tags: Sequence[Tag], frame: int) -> bool:
        return self.builder.add_observation(camera, body, tags, frame)

    def add_distance_measurement(self, body1: RigidBody, body2: RigidBody,
                                 tag1: Tag, corner1: int, tag2: Tag, corner2: int,
                                 distance: float, noise: float) -> bool:
        return self.builder.add_distance_measurement(body1, body2, tag1, corner1,
                                                     tag2, corner2, distance, noise)

    def add_position_measurement(self, body: RigidBody, tag: Tag, corner: int,
                                 direction, length: float, noise: float) -> bool:
        return self.builder.add_position_measurement(body, tag, corner, direction, length, noise)

    # ---- solve ----------------------------------------------------------------

    def optimize(self) -> OptimizationResult:
        """Solve from the current store and commit the result in its place.

        Only variables referenced by some factor take part in the solve; the
        others keep their values. Earlier values are not retained.
        """
        referenced = self.graph.keyVector()
        initial = self.store.subset(referenced)
        result = self.optimizer.solve(self.graph, initial, self.counts["reprojection"])
        self.uncertainty.invalidate()
        self.store.commit(result.values)
        self.builder.revision += 1
        self._solved_revision = self.builder.revision
        self.optimizer_error = result.normalized_error
        self.optimizer_iterations = result.iterations
        self.last_result = result
        return result

    def compute_marginals(self) -> bool:
        """Prepare covariance queries at the solved values.

        Refuses (returns False) unless the store holds an unmodified solution.
        """
        if self._solved_revision is None or self._solved_revision != self.builder.revision:
            logger.warning("compute_marginals called without a fresh optimize(); ignoring")
            return False
        if self.graph.size() == 0:
            logger.warning("empty factor graph; no marginals to compute")
            return False
        start = time.perf_counter()
        values = self.store.subset(self.graph.keyVector())
        self.uncertainty.compute(self.graph, values, self.builder.revision)
        if self.kpi:
            self.kpi.marginals_computed(values.size(), time.perf_counter() - start)
        return True

    def marginal_covariance(self, key: VariableKey) -> Optional[np.ndarray]:
        """6x6 (pose) or 3x3 (point) covariance, or None if unavailable."""
        return self.uncertainty.marginal_covariance(key, self.builder.revision)

    # ---- queries --------------------------------------------------------------

    def _pose_estimate(self, key: Optional[VariableKey]) -> PoseEstimate:
        if key is None or not self.store.exists(key):
            return PoseEstimate.invalid()
        return PoseEstimate(pose=self.store.get(key),
                            error=self.optimizer_error,
                            iterations=self.optimizer_iterations,
                            covariance=self.marginal_covariance(key))

    @staticmethod
    def _safe(fn, *args) -> Optional[VariableKey]:
        # an index outside the key space can never have been observed
        try:
            return fn(*args)
        except KeyRangeExceededError:
            return None

    def get_body_pose(self, body: RigidBody, frame: int = 0) -> PoseEstimate:
        return self._pose_estimate(self._safe(key_for_body_pose, body.index, _frame_of(body, frame)))

    def get_camera_pose(self, camera: Camera, frame: int = 0) -> PoseEstimate:
        return self._pose_estimate(self._safe(key_for_camera_pose, camera.index, _frame_of(camera, frame)))

    def get_tag_rel_pose(self, tag_id: int) -> PoseEstimate:
        """T_b_o for the tag, relative to the body it is attached to."""
        return self._pose_estimate(self._safe(key_for_tag_transform, tag_id))

    def get_tag_world_pose(self, body: RigidBody, tag_id: int, frame: int = 0) -> PoseEstimate:
        """T_w_o = T_w_b * T_b_o.

        Covariance, when available, is an approximation: the covariance of
        T_b_o rotated into the world frame by R_w_b, cov = J cov(T_b_o) J^T
        with J = diag(R_w_b, R_w_b). The uncertainty of the body pose itself
        and its correlation with T_b_o are ignored.
        """
        T_b_o = self._safe(key_for_tag_transform, tag_id)
        T_w_b = self._safe(key_for_body_pose, body.index, _frame_of(body, frame))
        if T_b_o is None or T_w_b is None or not self.store.exists(T_b_o) or not self.store.exists(T_w_b):
            return PoseEstimate.invalid()
        body_pose = self.store.get(T_w_b)
        pose = body_pose.compose(self.store.get(T_b_o))
        cov = self.marginal_covariance(T_b_o)
        if cov is not None:
            R = body_pose.rotation().matrix()
            J = np.zeros((6, 6))
            J[:3, :3] = R
            J[3:, 3:] = R
            cov = J @ cov @ J.T
        return PoseEstimate(pose=pose, error=self.optimizer_error,
                            iterations=self.optimizer_iterations, covariance=cov)

    def _corner_world(self, body: RigidBody, tag: Tag, corner: int, frame: int) -> Optional[np.ndarray]:
        T_w_b = self._safe(key_for_body_pose, body.index, _frame_of(body, frame))
        T_b_o = self._safe(key_for_tag_transform, tag.id)
        if T_w_b is None or T_b_o is None or not self.store.exists(T_w_b) or not self.store.exists(T_b_o):
            return None
        X_w, _, _ = world_point(self.store.get(T_w_b), self.store.get(T_b_o), tag.object_corner(corner))
        return X_w

    def get_position(self, body: RigidBody, tag: Tag, corner: int, frame: int = 0) -> PointEstimate:
        """World position of one tag corner."""
        return PointEstimate(self._corner_world(body, tag, corner, frame))

    def get_difference(self, body1: RigidBody, body2: RigidBody,
                       tag1: Tag, corner1: int, tag2: Tag, corner2: int,
                       frame: int = 0) -> PointEstimate:
        """World-frame vector from corner2 of tag2 to corner1 of tag1."""
        X1 = self._corner_world(body1, tag1, corner1, frame)
        X2 = self._corner_world(body2, tag2, corner2, frame)
        if X1 is None or X2 is None:
            return PointEstimate()
        return PointEstimate(X1 - X2)

    # ---- diagnostics ------------------------------------------------------------

    def distance_table(self) -> Tuple[List[Tuple[int, int]], np.ndarray]:
        """Pairwise distances between all world-corner points in the store.

        Returns ``(labels, matrix)`` where labels are (tag id, corner).
        """
        keys = self.store.world_corner_keys()
        labels = []
        points = []
        for key in keys:
            _, tag_id, corner = decode_world_corner(key)
            labels.append((tag_id, corner))
            points.append(self.store.get(key))
        if not points:
            return labels, np.zeros((0, 0))
        P = np.asarray(points)
        D = np.linalg.norm(P[:, None, :] - P[None, :, :], axis=-1)
        return labels, D

    def format_distance_table(self) -> str:
        labels, D = self.distance_table()
        lines = []
        for i, (tag_id, corner) in enumerate(labels):
            row = "tag %3d corner %d:" % (tag_id, corner)
            row += "".join(" %7.4f" % d for d in D[i])
            lines.append(row)
        return "\n".join(lines)

    def print_distances(self) -> None:
        text = self.format_distance_table()
        if text:
            print(text)
