"""JSON scene loader.

A scene file describes the rig and the per-frame tag observations::

    {
      "cameras": [{"index": 0, "name": "cam0", "static": true,
                   "pose": {"rotation": [w, x, y, z], "translation": [x, y, z]},
                   "model": "radtan" | "equidistant",
                   "intrinsics": [fx, fy, cx, cy], "distortion": [...]}],
      "bodies": [{"index": 0, "name": "lab", "static": true, "pose": {...},
                  "has_pose_prior": true, "sigma": {"rotation": 0.01, "translation": 0.005},
                  "tags": [{"id": 0, "size": 0.16, "pose": {...}, "known": true}]}],
      "frames": [{"frame": 0, "observations": [
                   {"camera": 0, "body": 0, "camera_pose": {...}, "body_pose": {...},
                    "tags": [{"id": 0, "corners": [[u, v], [u, v], [u, v], [u, v]]}]}]}],
      "distance_measurements": [{"tag1": 0, "corner1": 0, "tag2": 1, "corner2": 0,
                                 "distance": 1.0, "noise": 0.01}],
      "position_measurements": [{"tag": 0, "corner": 0, "direction": [1, 0, 0],
                                 "length": 0.5, "noise": 0.01}]
    }

Noise may be given as ``covariance`` (36 numbers, row-major 6x6) or as
``sigma``. ``camera_pose``/``body_pose`` on an observation override the
entity's initial pose for that frame.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import json
import logging
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .errors import TagGraphError
from .models import (Camera, DistanceMeasurement, PoseEstimate, PositionMeasurement,
                     Quaternion, RigidBody, Tag, Translation, pose_from)
from .noise import pose_noise

logger = logging.getLogger("tagslam.loader")


class SceneLoadError(TagGraphError):
    """Raised when a scene file cannot be read at all."""


@dataclass
class LoaderConfig:
    quaternion_order: str = "wxyz"


@dataclass
class Observation:
    camera: int
    body: int
    corners: Dict[int, np.ndarray]
    camera_pose: Optional["gtsam.Pose3"] = None
    body_pose: Optional["gtsam.Pose3"] = None


@dataclass
class Frame:
    frame: int
    observations: List[Observation] = field(default_factory=list)


@dataclass
class Scene:
    cameras: Dict[int, Camera] = field(default_factory=dict)
    bodies: Dict[int, RigidBody] = field(default_factory=dict)
    frames: List[Frame] = field(default_factory=list)
    distance_measurements: List[DistanceMeasurement] = field(default_factory=list)
    position_measurements: List[PositionMeasurement] = field(default_factory=list)

    def body_of_tag(self, tag_id: int) -> Optional[RigidBody]:
        for rb in self.bodies.values():
            if any(t.id == tag_id for t in rb.tags):
                return rb
        return None

    def tag(self, tag_id: int) -> Optional[Tag]:
        rb = self.body_of_tag(tag_id)
        if rb is None:
            return None
        return next(t for t in rb.tags if t.id == tag_id)


def _q_from_list(q: List[float], order: str) -> Quaternion:
    if order == "wxyz":
        if len(q) != 4: raise ValueError("Quaternion must be [w,x,y,z]")
        return Quaternion(q[0], q[1], q[2], q[3])
    elif order == "xyzw":
        if len(q) != 4: raise ValueError("Quaternion must be [x,y,z,w]")
        return Quaternion(q[3], q[0], q[1], q[2])
    else:
        raise ValueError(f"Unsupported quaternion order: {order}")


def _t_from_list(t: List[float]) -> Translation:
    if len(t) != 3: raise ValueError("Translation must be [x,y,z]")
    return Translation(t[0], t[1], t[2])


def _parse_pose(d: Optional[Dict[str, Any]], cfg: LoaderConfig):
    if not d:
        return None
    return pose_from(_q_from_list(d["rotation"], cfg.quaternion_order), _t_from_list(d["translation"]))


def _parse_covariance(d: Dict[str, Any]) -> Optional[np.ndarray]:
    if "covariance" in d:
        arr = np.asarray(d["covariance"], dtype=float)
        if arr.size != 36:
            raise ValueError(f"Expected 36 elements for a 6x6 covariance, got {arr.size}")
        return arr.reshape(6, 6)
    if "sigma" in d:
        s = d["sigma"]
        return pose_noise(float(s["rotation"]), float(s["translation"]))
    return None


def _pose_estimate(d: Dict[str, Any], cfg: LoaderConfig) -> PoseEstimate:
    return PoseEstimate(pose=_parse_pose(d.get("pose"), cfg), covariance=_parse_covariance(d))


def _parse_camera(d: Dict[str, Any], cfg: LoaderConfig) -> Camera:
    fx, fy, cx, cy = (float(v) for v in d["intrinsics"])
    dist = [float(v) for v in d.get("distortion", [])]
    model = d.get("model", "radtan")
    kwargs = {}
    if model == "radtan":
        k1, k2, p1, p2 = (dist + [0.0] * 4)[:4]
        kwargs["radtan"] = gtsam.Cal3DS2(fx, fy, 0.0, cx, cy, k1, k2, p1, p2)
    elif model == "equidistant":
        k1, k2, k3, k4 = (dist + [0.0] * 4)[:4]
        kwargs["equidistant"] = gtsam.Cal3Fisheye(fx, fy, 0.0, cx, cy, k1, k2, k3, k4)
    else:
        raise ValueError(f"Unsupported distortion model: {model}")
    return Camera(index=int(d["index"]), name=d.get("name", ""), is_static=bool(d.get("static", True)),
                  pose_estimate=_pose_estimate(d, cfg), **kwargs)


def _parse_tag(d: Dict[str, Any], cfg: LoaderConfig) -> Tag:
    return Tag(id=int(d["id"]), size=float(d["size"]), pose_estimate=_pose_estimate(d, cfg),
               has_known_pose=bool(d.get("known", False)))


def _parse_body(d: Dict[str, Any], cfg: LoaderConfig) -> RigidBody:
    tags = []
    for idx, td in enumerate(d.get("tags", []) or []):
        try:
            tags.append(_parse_tag(td, cfg))
        except Exception as e:
            logger.warning("Skipping malformed tag[%d] of body %s: %s", idx, d.get("name"), e)
    return RigidBody(index=int(d["index"]), name=d.get("name", ""), is_static=bool(d.get("static", True)),
                     pose_estimate=_pose_estimate(d, cfg),
                     has_pose_prior=bool(d.get("has_pose_prior", False)), tags=tags)


def _parse_observation(d: Dict[str, Any], cfg: LoaderConfig) -> Observation:
    corners = {}
    for td in d.get("tags", []) or []:
        corners[int(td["id"])] = np.asarray(td["corners"], dtype=float).reshape(4, 2)
    return Observation(camera=int(d["camera"]), body=int(d["body"]), corners=corners,
                       camera_pose=_parse_pose(d.get("camera_pose"), cfg),
                       body_pose=_parse_pose(d.get("body_pose"), cfg))


def parse_scene(data: Dict[str, Any], cfg: Optional[LoaderConfig] = None) -> Scene:
    cfg = cfg or LoaderConfig()
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot load scene")
    if not isinstance(data, dict):
        raise SceneLoadError(f"scene must be a JSON object, got {type(data).__name__}")
    scene = Scene()
    for idx, d in enumerate(data.get("cameras", []) or []):
        try:
            cam = _parse_camera(d, cfg)
            scene.cameras[cam.index] = cam
        except Exception as e:
            logger.warning("Skipping malformed camera[%d]: %s", idx, e)
    for idx, d in enumerate(data.get("bodies", []) or []):
        try:
            rb = _parse_body(d, cfg)
            scene.bodies[rb.index] = rb
        except Exception as e:
            logger.warning("Skipping malformed body[%d]: %s", idx, e)
    for idx, fd in enumerate(data.get("frames", []) or []):
        frame = Frame(frame=int(fd.get("frame", idx)))
        for oidx, od in enumerate(fd.get("observations", []) or []):
            try:
                frame.observations.append(_parse_observation(od, cfg))
            except Exception as e:
                logger.warning("Skipping malformed observation[%d] in frame %d: %s", oidx, frame.frame, e)
        scene.frames.append(frame)
    scene.frames.sort(key=lambda f: f.frame)
    for idx, d in enumerate(data.get("distance_measurements", []) or []):
        try:
            scene.distance_measurements.append(DistanceMeasurement(
                tag1=int(d["tag1"]), corner1=int(d["corner1"]),
                tag2=int(d["tag2"]), corner2=int(d["corner2"]),
                distance=float(d["distance"]), noise=float(d["noise"])))
        except Exception as e:
            logger.warning("Skipping malformed distance measurement[%d]: %s", idx, e)
    for idx, d in enumerate(data.get("position_measurements", []) or []):
        try:
            scene.position_measurements.append(PositionMeasurement(
                tag=int(d["tag"]), corner=int(d["corner"]),
                direction=[float(v) for v in d["direction"]],
                length=float(d["length"]), noise=float(d["noise"])))
        except Exception as e:
            logger.warning("Skipping malformed position measurement[%d]: %s", idx, e)
    logger.info("Loaded scene: %d cameras, %d bodies, %d frames",
                len(scene.cameras), len(scene.bodies), len(scene.frames))
    return scene


def load_scene(path: str, cfg: Optional[LoaderConfig] = None) -> Scene:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise SceneLoadError(f"cannot read scene {path}: {e}") from e
    return parse_scene(data, cfg)
