"""tagslam_graph: pose-graph backend for fiducial-tag SLAM.

This package provides:
- A validated key space mapping (category, entity, frame) onto GTSAM symbols
- An insert-once variable store
- A factor graph builder for reprojection, distance, position and prior factors
- A Levenberg-Marquardt batch optimizer and marginal covariances
- Query helpers returning validity-tagged pose/point estimates
- A JSON scene loader used by the CLI (see main.py)
"""
from .config import GraphConfig
from .errors import (DuplicateVariableError, InvalidPoseEstimateError, KeyRangeExceededError,
                     MissingAnchorVariableError, NonStaticConstraintError, TagGraphError)
from .models import (Camera, DistanceMeasurement, PointEstimate, PoseEstimate,
                     PositionMeasurement, RigidBody, Tag)
from .tag_graph import TagGraph

__all__ = [
    "GraphConfig", "TagGraph",
    "Camera", "RigidBody", "Tag", "PoseEstimate", "PointEstimate",
    "DistanceMeasurement", "PositionMeasurement",
    "TagGraphError", "DuplicateVariableError", "KeyRangeExceededError",
    "InvalidPoseEstimateError", "MissingAnchorVariableError", "NonStaticConstraintError",
]
__version__ = "0.1.0"
