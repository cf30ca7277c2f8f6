from dataclasses import replace
from types import SimpleNamespace

import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from tagslam_graph import Camera, GraphConfig, PoseEstimate, RigidBody, Tag, TagGraph
from tagslam_graph.noise import pose_noise

FX, FY, CX, CY = 500.0, 500.0, 320.0, 240.0
TAG_SIZE = 0.2


def make_camera(index=0, is_static=True, pose=None, model="radtan"):
    pose = gtsam.Pose3() if pose is None else pose
    if model == "radtan":
        kw = {"radtan": gtsam.Cal3DS2(FX, FY, 0.0, CX, CY, 0.0, 0.0, 0.0, 0.0)}
    else:
        kw = {"equidistant": gtsam.Cal3Fisheye(FX, FY, 0.0, CX, CY, 0.0, 0.0, 0.0, 0.0)}
    return Camera(index=index, name=f"cam{index}", is_static=is_static,
                  pose_estimate=PoseEstimate(pose=pose), **kw)


def make_body(index=0, is_static=True, pose=None, prior=True):
    pose = gtsam.Pose3(gtsam.Rot3(), gtsam.Point3(0.0, 0.0, 2.0)) if pose is None else pose
    return RigidBody(index=index, name=f"body{index}", is_static=is_static,
                     pose_estimate=PoseEstimate(pose=pose, covariance=pose_noise(1e-3, 1e-3)),
                     has_pose_prior=prior)


def make_tag(tag_id, offset=(0.0, 0.0, 0.0), known=True):
    T_b_o = gtsam.Pose3(gtsam.Rot3(), gtsam.Point3(*offset))
    return Tag(id=tag_id, size=TAG_SIZE,
               pose_estimate=PoseEstimate(pose=T_b_o, covariance=pose_noise(1e-3, 1e-3)),
               has_known_pose=known)


def project_corners(camera, T_w_c, T_w_b, tag):
    pixels = []
    for i in range(4):
        X_w = T_w_b.transformFrom(tag.pose_estimate.pose.transformFrom(tag.object_corner(i)))
        X_c = T_w_c.transformTo(X_w)
        pixels.append(camera.uncalibrate(np.array([X_c[0] / X_c[2], X_c[1] / X_c[2]])))
    return np.asarray(pixels)


def observe(camera, body, tag):
    """Copy of ``tag`` carrying exact pixel corners as seen by ``camera``."""
    corners = project_corners(camera, camera.pose_estimate.pose, body.pose_estimate.pose, tag)
    return replace(tag, image_corners=corners)


@pytest.fixture
def rig():
    camera = make_camera()
    body = make_body()
    tags = [make_tag(1), make_tag(2, offset=(0.3, 0.0, 0.0))]
    return SimpleNamespace(camera=camera, body=body, tags=tags,
                           observed=[observe(camera, body, t) for t in tags])


@pytest.fixture
def tg():
    return TagGraph(GraphConfig())


@pytest.fixture
def helpers():
    return SimpleNamespace(make_camera=make_camera, make_body=make_body, make_tag=make_tag,
                           observe=observe, project_corners=project_corners)
