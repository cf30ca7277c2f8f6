"""Drive a TagGraph through a loaded scene, one frame at a time."""
from dataclasses import replace
from typing import List, Optional
import logging

from .loader import Frame, Scene
from .models import PoseEstimate
from .tag_graph import TagGraph

logger = logging.getLogger("tagslam.pipeline")


def _with_pose(entity, pose):
    if pose is None:
        return entity
    return replace(entity, pose_estimate=PoseEstimate(pose=pose, covariance=entity.pose_estimate.covariance))


def register_tags(scene: Scene, tg: TagGraph) -> int:
    """Add the tag anchors of every body; tags lacking an initial pose are left out."""
    added = 0
    for rb in scene.bodies.values():
        if not rb.tags:
            continue
        before = tg.num_variables
        tg.add_tags(rb, rb.tags)
        added += tg.num_variables - before
    return added


def process_frame(scene: Scene, tg: TagGraph, frame: Frame) -> int:
    """Add one frame's observations; returns the number of accepted observations."""
    accepted = 0
    for obs in frame.observations:
        cam = scene.cameras.get(obs.camera)
        rb = scene.bodies.get(obs.body)
        if cam is None or rb is None:
            logger.warning("frame %d: unknown camera %s or body %s", frame.frame, obs.camera, obs.body)
            continue
        by_id = {t.id: t for t in rb.tags}
        tags = []
        for tag_id, corners in obs.corners.items():
            if tag_id not in by_id:
                logger.warning("frame %d: tag %d is not attached to body %s", frame.frame, tag_id, rb.name)
                continue
            tags.append(replace(by_id[tag_id], image_corners=corners))
        if tg.add_observation(_with_pose(cam, obs.camera_pose), _with_pose(rb, obs.body_pose),
                              tags, frame.frame):
            accepted += 1
    return accepted


def add_pending_measurements(scene: Scene, tg: TagGraph, pending_distance: List, pending_position: List) -> None:
    """Try deferred measurements; those whose anchors now exist are consumed."""
    still = []
    for dm in pending_distance:
        rb1, rb2 = scene.body_of_tag(dm.tag1), scene.body_of_tag(dm.tag2)
        if rb1 is None or rb2 is None:
            logger.warning("distance measurement references unknown tag %d or %d", dm.tag1, dm.tag2)
            continue
        ok = tg.add_distance_measurement(rb1, rb2, scene.tag(dm.tag1), dm.corner1,
                                         scene.tag(dm.tag2), dm.corner2, dm.distance, dm.noise)
        # measurements on dynamic bodies are rejected for good
        if not ok and rb1.is_static and rb2.is_static:
            still.append(dm)
    pending_distance[:] = still
    still = []
    for pm in pending_position:
        rb = scene.body_of_tag(pm.tag)
        if rb is None:
            logger.warning("position measurement references unknown tag %d", pm.tag)
            continue
        ok = tg.add_position_measurement(rb, scene.tag(pm.tag), pm.corner, pm.direction, pm.length, pm.noise)
        if not ok and rb.is_static:
            still.append(pm)
    pending_position[:] = still


def run_scene(scene: Scene, tg: TagGraph, optimize_every_frame: bool = True, kpi=None) -> Optional[float]:
    """Register tags, feed all frames, and optimize. Returns the last normalized error."""
    register_tags(scene, tg)
    pending_distance = list(scene.distance_measurements)
    pending_position = list(scene.position_measurements)
    error = None
    for frame in scene.frames:
        accepted = process_frame(scene, tg, frame)
        add_pending_measurements(scene, tg, pending_distance, pending_position)
        if kpi:
            kpi.frame_processed(frame.frame, observations=accepted, factors=tg.num_factors)
        if optimize_every_frame and tg.num_factors > 0:
            error = tg.optimize().normalized_error
    if not optimize_every_frame and tg.num_factors > 0:
        error = tg.optimize().normalized_error
    if pending_distance or pending_position:
        logger.warning("%d distance and %d position measurements never became anchored",
                       len(pending_distance), len(pending_position))
    return error
