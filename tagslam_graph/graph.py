from typing import Sequence
import logging

try:
    import gtsam
except Exception:
    gtsam = None

from .config import GraphConfig
from .errors import (InvalidPoseEstimateError, MissingAnchorVariableError,
                     NonStaticConstraintError)
from .keys import (MAX_BODY_ID, VariableKey, key_for_body_pose, key_for_camera_pose,
                   key_for_tag_transform)
from .models import NUM_CORNERS, Camera, PoseEstimate, RigidBody, Tag
from .noise import gaussian_from_covariance, isotropic, pose_noise, robustify
from .residuals import DistanceResidual, PositionResidual, ReprojectionResidual
from .store import VariableStore

logger = logging.getLogger("tagslam.graph")


class GraphBuilder:
    """Owns the variable store and the factor graph, and appends factors to it.

    Variables are created the first time an entity/frame combination is seen.
    Factors are only ever appended. Soft factors (reprojection, distance,
    position) are added only when every key they reference is already in the
    store; otherwise the candidate is skipped and the call reports False.

    ``revision`` increases with every mutation so that derived state (marginals)
    can tell when it has gone stale.
    """

    def __init__(self, config: GraphConfig = None):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build graph")
        self.config = config or GraphConfig()
        self.graph = gtsam.NonlinearFactorGraph()
        self.store = VariableStore()
        self.counts = {"prior": 0, "reprojection": 0, "distance": 0, "position": 0, "skipped": 0}
        self.revision = 0
        self._pixel_noise = None
        self.set_pixel_noise(self.config.pixel_noise)

    # ---- configuration -------------------------------------------------

    def set_pixel_noise(self, num_pix: float) -> None:
        """Change the reprojection sigma for factors added from now on."""
        base = isotropic(2, num_pix)
        self._pixel_noise = robustify(base, self.config.robust_kind, self.config.robust_k)
        self.config.pixel_noise = float(num_pix)

    @property
    def pixel_noise(self) -> float:
        return self.config.pixel_noise

    @property
    def max_num_bodies(self) -> int:
        return MAX_BODY_ID

    # ---- low level -----------------------------------------------------

    def _insert(self, key: VariableKey, value) -> None:
        self.store.insert(key, value)
        self.revision += 1

    def _push(self, factor, kind: str) -> None:
        self.graph.add(factor)
        self.counts[kind] += 1
        self.revision += 1

    def _prior_noise(self, pe: PoseEstimate):
        cov = pe.covariance
        if cov is None:
            cov = pose_noise(self.config.default_rotation_sigma, self.config.default_translation_sigma)
        return gaussian_from_covariance(cov)

    def _add_prior(self, key: VariableKey, pe: PoseEstimate) -> None:
        self._push(gtsam.PriorFactorPose3(key.to_gtsam(), pe.pose, self._prior_noise(pe)), "prior")

    def _require_anchors(self, *keys: VariableKey) -> None:
        missing = [str(k) for k in keys if not self.store.exists(k)]
        if missing:
            raise MissingAnchorVariableError(f"missing anchors: {', '.join(missing)}")

    @staticmethod
    def _require_static(*bodies: RigidBody) -> None:
        for rb in bodies:
            if not rb.is_static:
                raise NonStaticConstraintError(f"body {rb.name or rb.index} is not static")

    # ---- tags ------------------------------------------------------------

    def add_tags(self, body: RigidBody, tags: Sequence[Tag]) -> bool:
        """Insert T_b_o for every tag, with a prior for tags whose pose is known.

        All keys are checked before anything is inserted: an out-of-range id
        raises KeyRangeExceededError, and a duplicate id rejects the whole
        call, leaving the store untouched. Tags without a valid pose estimate
        are skipped with a warning. Returns True if any tag was inserted.
        """
        entries = [(tag, key_for_tag_transform(tag.id)) for tag in tags]
        seen = set()
        for tag, key in entries:
            if self.store.exists(key) or key in seen:
                logger.warning("duplicate tag id inserted: %d (body %s)", tag.id, body.name or body.index)
                self.counts["skipped"] += 1
                return False
            seen.add(key)
        added = 0
        for tag, key in entries:
            if not tag.pose_estimate.is_valid():
                logger.warning("tag %d on body %s has no valid pose estimate; skipping",
                               tag.id, body.name or body.index)
                self.counts["skipped"] += 1
                continue
            self._insert(key, tag.pose_estimate.pose)
            if tag.has_known_pose:
                self._add_prior(key, tag.pose_estimate)
            added += 1
        logger.debug("added %d tags for body %s", added, body.name or body.index)
        return added > 0

    # ---- observations ------------------------------------------------------

    def add_observation(self, camera: Camera, body: RigidBody, tags: Sequence[Tag], frame: int) -> bool:
        """Add reprojection factors for all corners of ``tags`` seen by ``camera``.

        Returns True if at least one reprojection factor was added.
        """
        T_w_c = key_for_camera_pose(camera.index, 0 if camera.is_static else frame)
        T_w_b = key_for_body_pose(body.index, 0 if body.is_static else frame)
        if not tags:
            logger.warning("no tags for %s in frame %d", camera.name or camera.index, frame)
            return False
        try:
            if not camera.pose_estimate.is_valid():
                raise InvalidPoseEstimateError(f"no pose estimate for cam {camera.name or camera.index}")
            if not body.pose_estimate.is_valid():
                raise InvalidPoseEstimateError(f"no pose estimate for body {body.name or body.index}")
        except InvalidPoseEstimateError as e:
            logger.warning("%s in frame %d", e, frame)
            self.counts["skipped"] += 1
            return False

        if not self.store.exists(T_w_c):
            self._insert(T_w_c, camera.pose_estimate.pose)
        if not self.store.exists(T_w_b):
            self._insert(T_w_b, body.pose_estimate.pose)
            if body.is_static and body.has_pose_prior:
                logger.info("adding prior for body: %s", body.name or body.index)
                self._add_prior(T_w_b, body.pose_estimate)

        added = 0
        for tag in tags:
            try:
                if not tag.pose_estimate.is_valid():
                    raise InvalidPoseEstimateError(f"tag {tag.id} has invalid pose")
                if tag.image_corners is None:
                    raise InvalidPoseEstimateError(f"tag {tag.id} has no image corners")
                T_b_o = key_for_tag_transform(tag.id)
                self._require_anchors(T_b_o)
            except (InvalidPoseEstimateError, MissingAnchorVariableError) as e:
                logger.warning("skipping tag in frame %d: %s", frame, e)
                self.counts["skipped"] += 1
                continue
            for i in range(NUM_CORNERS):
                residual = ReprojectionResidual(T_w_c, T_w_b, T_b_o, camera,
                                                tag.object_corner(i), tag.image_corner(i))
                self._push(residual.as_factor(self._pixel_noise), "reprojection")
                added += 1
        return added > 0

    # ---- measurements on static bodies -------------------------------------

    def add_distance_measurement(self, body1: RigidBody, body2: RigidBody,
                                 tag1: Tag, corner1: int, tag2: Tag, corner2: int,
                                 distance: float, noise: float) -> bool:
        """Constrain the distance between two tag corners on static bodies."""
        try:
            self._require_static(body1, body2)
            T_w_b1 = key_for_body_pose(body1.index, 0)
            T_w_b2 = key_for_body_pose(body2.index, 0)
            T_b1_o = key_for_tag_transform(tag1.id)
            T_b2_o = key_for_tag_transform(tag2.id)
            self._require_anchors(T_w_b1, T_w_b2, T_b1_o, T_b2_o)
        except NonStaticConstraintError as e:
            logger.warning("non-rigid body has distance measurement: %s", e)
            self.counts["skipped"] += 1
            return False
        except MissingAnchorVariableError as e:
            logger.debug("deferring distance measurement %d to %d: %s", tag1.id, tag2.id, e)
            return False
        logger.info("adding distance measurement: tag %d corner %d to tag %d corner %d",
                    tag1.id, corner1, tag2.id, corner2)
        residual = DistanceResidual(T_w_b1, T_b1_o, tag1.object_corner(corner1),
                                    T_w_b2, T_b2_o, tag2.object_corner(corner2), distance)
        self._push(residual.as_factor(isotropic(1, noise)), "distance")
        return True

    def add_position_measurement(self, body: RigidBody, tag: Tag, corner: int,
                                 direction, length: float, noise: float) -> bool:
        """Constrain the world position of a tag corner along a unit direction."""
        try:
            self._require_static(body)
            T_w_b = key_for_body_pose(body.index, 0)
            T_b_o = key_for_tag_transform(tag.id)
            self._require_anchors(T_w_b, T_b_o)
        except NonStaticConstraintError as e:
            logger.warning("non-rigid body has position measurement: %s", e)
            self.counts["skipped"] += 1
            return False
        except MissingAnchorVariableError as e:
            logger.debug("deferring position measurement for tag %d: %s", tag.id, e)
            return False
        logger.info("adding position measurement: tag %d corner %d", tag.id, corner)
        residual = PositionResidual(T_w_b, T_b_o, tag.object_corner(corner), direction, length)
        self._push(residual.as_factor(isotropic(1, noise)), "position")
        return True
