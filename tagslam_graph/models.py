from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

NUM_CORNERS = 4


@dataclass
class Quaternion:
    """Quaternion in [w, x, y, z] order.

    Scene files may store xyzw; convert at the loader.
    """
    w: float
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.w, self.x, self.y, self.z], dtype=float)


@dataclass
class Translation:
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)


def pose_from(rot: Quaternion, trans: Translation):
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build Pose3")
    R = gtsam.Rot3.Quaternion(rot.w, rot.x, rot.y, rot.z)
    t = gtsam.Point3(trans.x, trans.y, trans.z)
    return gtsam.Pose3(R, t)


@dataclass
class PoseEstimate:
    """A pose that may or may not be known.

    ``covariance`` is a 6x6 matrix in GTSAM tangent order (rotation first).
    On entities it is the prior noise; on query results it is the marginal
    covariance when marginals were available.
    """
    pose: Optional["gtsam.Pose3"] = None
    error: float = 0.0
    iterations: int = 0
    covariance: Optional[np.ndarray] = None

    def is_valid(self) -> bool:
        return self.pose is not None

    @classmethod
    def invalid(cls) -> "PoseEstimate":
        return cls()


@dataclass
class PointEstimate:
    point: Optional[np.ndarray] = None

    def is_valid(self) -> bool:
        return self.point is not None


def square_object_corners(size: float) -> np.ndarray:
    """Corners of a square tag in its own frame, counter-clockwise from (-s/2, -s/2)."""
    s = 0.5 * float(size)
    return np.array([[-s, -s, 0.0],
                     [ s, -s, 0.0],
                     [ s,  s, 0.0],
                     [-s,  s, 0.0]], dtype=float)


@dataclass
class Tag:
    """A fiducial tag rigidly attached to one body.

    ``pose_estimate`` holds T_b_o (tag to body). ``image_corners`` are the
    pixel coordinates observed in the current frame, in object-corner order.
    """
    id: int
    size: float
    pose_estimate: PoseEstimate = field(default_factory=PoseEstimate)
    has_known_pose: bool = False
    image_corners: Optional[np.ndarray] = None
    object_corners: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.object_corners is None:
            self.object_corners = square_object_corners(self.size)
        self.object_corners = np.asarray(self.object_corners, dtype=float).reshape(NUM_CORNERS, 3)
        if self.image_corners is not None:
            self.image_corners = np.asarray(self.image_corners, dtype=float).reshape(NUM_CORNERS, 2)

    def object_corner(self, i: int) -> np.ndarray:
        return self.object_corners[i]

    def image_corner(self, i: int) -> np.ndarray:
        if self.image_corners is None:
            raise ValueError(f"tag {self.id} has no image corners")
        return self.image_corners[i]


@dataclass
class RigidBody:
    index: int
    name: str = ""
    is_static: bool = True
    pose_estimate: PoseEstimate = field(default_factory=PoseEstimate)
    has_pose_prior: bool = False
    tags: List[Tag] = field(default_factory=list)


@dataclass
class Camera:
    """A camera with exactly one active distortion model.

    ``radtan`` is a ``gtsam.Cal3DS2`` (radial-tangential), ``equidistant`` a
    ``gtsam.Cal3Fisheye``. Both map normalized image points to pixels.
    """
    index: int
    name: str = ""
    is_static: bool = True
    pose_estimate: PoseEstimate = field(default_factory=PoseEstimate)
    radtan: Optional[object] = None
    equidistant: Optional[object] = None

    def __post_init__(self):
        if (self.radtan is None) == (self.equidistant is None):
            raise ValueError(f"camera {self.name or self.index} needs exactly one distortion model")

    @property
    def model(self):
        return self.radtan if self.radtan is not None else self.equidistant

    def uncalibrate(self, xp: np.ndarray) -> np.ndarray:
        return np.asarray(self.model.uncalibrate(np.asarray(xp, dtype=float)), dtype=float)

    def fx(self) -> float:
        return float(self.model.fx())


@dataclass
class DistanceMeasurement:
    """Measured distance between two tag corners on static bodies."""
    tag1: int
    corner1: int
    tag2: int
    corner2: int
    distance: float
    noise: float


@dataclass
class PositionMeasurement:
    """Measured length of a tag corner's world position along ``direction``."""
    tag: int
    corner: int
    direction: Sequence[float]
    length: float
    noise: float
