import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from tagslam_graph.keys import key_for_body_pose, key_for_camera_pose, key_for_tag_transform
from tagslam_graph.residuals import (DistanceResidual, PositionResidual, ReprojectionResidual,
                                     distance, numerical_jacobian, projection_length, world_point)


def _pose(rx, ry, rz, x, y, z):
    return gtsam.Pose3(gtsam.Rot3.RzRyRx(rx, ry, rz), gtsam.Point3(x, y, z))


def test_distance_value_and_gradient():
    H1 = np.zeros((1, 3))
    H2 = np.zeros((1, 3))
    r = distance(np.zeros(3), np.array([3.0, 4.0, 0.0]), H1, H2)
    assert r == pytest.approx(5.0)
    np.testing.assert_allclose(H1, [[-0.6, -0.8, 0.0]])
    np.testing.assert_allclose(H2, [[0.6, 0.8, 0.0]])


def test_distance_of_coincident_points_has_zero_gradient():
    H1 = np.ones((1, 3))
    assert distance(np.ones(3), np.ones(3), H1) == 0.0
    np.testing.assert_allclose(H1, 0.0)


def test_projection_length_is_bilinear():
    p = np.array([1.0, 2.0, 3.0])
    n = np.array([0.0, 0.6, 0.8])
    Hp = np.zeros((1, 3))
    Hn = np.zeros((1, 3))
    assert projection_length(p, n, Hp, Hn) == pytest.approx(3.6)
    np.testing.assert_allclose(Hp, [n])
    np.testing.assert_allclose(Hn, [p])


def test_world_point_jacobians_match_numerical():
    T_w_b = _pose(0.1, -0.2, 0.3, 1.0, 2.0, 3.0)
    T_b_o = _pose(-0.3, 0.1, 0.2, 0.1, 0.0, -0.2)
    X_o = np.array([0.05, -0.05, 0.0])
    _, H_wb, H_bo = world_point(T_w_b, T_b_o, X_o, want_jacobians=True)
    num = numerical_jacobian(lambda p: world_point(p[0], p[1], X_o)[0], [T_w_b, T_b_o])
    np.testing.assert_allclose(H_wb, num[0], atol=1e-6)
    np.testing.assert_allclose(H_bo, num[1], atol=1e-6)


def test_distance_residual_jacobians_match_numerical():
    res = DistanceResidual(key_for_body_pose(0, 0), key_for_tag_transform(1), [0.1, 0.1, 0.0],
                           key_for_body_pose(1, 0), key_for_tag_transform(2), [-0.1, 0.1, 0.0], 1.0)
    poses = [_pose(0.1, 0.2, 0.3, 0.0, 0.0, 1.0), _pose(0.0, 0.1, 0.0, 0.2, 0.0, 0.0),
             _pose(-0.2, 0.0, 0.1, 1.0, 0.5, 1.0), _pose(0.3, 0.0, 0.0, 0.0, 0.1, 0.0)]
    r, H = res.evaluate(poses, want_jacobians=True)
    num = numerical_jacobian(lambda p: res.evaluate(p)[0], poses)
    assert r.shape == (1,)
    for analytic, numeric in zip(H, num):
        np.testing.assert_allclose(analytic, numeric, atol=1e-6)


def test_position_residual_jacobians_match_numerical():
    res = PositionResidual(key_for_body_pose(0, 0), key_for_tag_transform(1),
                           [0.1, -0.1, 0.0], [0.0, 0.0, 1.0], 2.0)
    poses = [_pose(0.1, 0.2, 0.3, 0.0, 0.0, 2.0), _pose(0.0, 0.1, 0.0, 0.2, 0.0, 0.0)]
    r, H = res.evaluate(poses, want_jacobians=True)
    num = numerical_jacobian(lambda p: res.evaluate(p)[0], poses)
    for analytic, numeric in zip(H, num):
        np.testing.assert_allclose(analytic, numeric, atol=1e-6)


def test_shared_keys_are_merged():
    body = key_for_body_pose(0, 0)
    res = DistanceResidual(body, key_for_tag_transform(1), [0.0, 0.0, 0.0],
                           body, key_for_tag_transform(2), [0.0, 0.0, 0.0], 0.3)
    assert res.keys == [body, key_for_tag_transform(1), key_for_tag_transform(2)]
    values = gtsam.Values()
    values.insert(body.to_gtsam(), _pose(0.1, 0.0, 0.0, 0.0, 0.0, 0.0))
    values.insert(key_for_tag_transform(1).to_gtsam(), _pose(0.0, 0.0, 0.0, 0.0, 0.0, 0.0))
    values.insert(key_for_tag_transform(2).to_gtsam(), _pose(0.0, 0.0, 0.0, 0.3, 0.0, 0.0))
    r, H = res.evaluate_values(values, want_jacobians=True)
    assert r[0] == pytest.approx(0.0, abs=1e-12)
    assert len(H) == 3
    # rigid motion of the shared body leaves the distance unchanged
    np.testing.assert_allclose(H[0], 0.0, atol=1e-9)


def test_reprojection_residual_zero_at_truth(rig):
    tag = rig.observed[0]
    res = ReprojectionResidual(key_for_camera_pose(0, 0), key_for_body_pose(0, 0),
                               key_for_tag_transform(tag.id), rig.camera,
                               tag.object_corner(2), tag.image_corner(2))
    poses = [rig.camera.pose_estimate.pose, rig.body.pose_estimate.pose, tag.pose_estimate.pose]
    r, H = res.evaluate(poses, want_jacobians=True)
    np.testing.assert_allclose(r, 0.0, atol=1e-9)
    assert [J.shape for J in H] == [(2, 6)] * 3


def test_reprojection_behind_camera_is_constant(rig):
    tag = rig.observed[0]
    res = ReprojectionResidual(key_for_camera_pose(0, 0), key_for_body_pose(0, 0),
                               key_for_tag_transform(tag.id), rig.camera,
                               tag.object_corner(0), tag.image_corner(0))
    behind = gtsam.Pose3(gtsam.Rot3(), gtsam.Point3(0.0, 0.0, -2.0))
    r, H = res.evaluate([rig.camera.pose_estimate.pose, behind, tag.pose_estimate.pose], True)
    np.testing.assert_allclose(r, [1000.0, 1000.0])
    for J in H:
        np.testing.assert_allclose(J, 0.0)


def test_reprojection_as_factor_error_is_zero_at_truth(rig):
    tag = rig.observed[1]
    T_w_c, T_w_b, T_b_o = key_for_camera_pose(0, 0), key_for_body_pose(0, 0), key_for_tag_transform(tag.id)
    res = ReprojectionResidual(T_w_c, T_w_b, T_b_o, rig.camera, tag.object_corner(1), tag.image_corner(1))
    factor = res.as_factor(gtsam.noiseModel.Isotropic.Sigma(2, 1.0))
    values = gtsam.Values()
    values.insert(T_w_c.to_gtsam(), rig.camera.pose_estimate.pose)
    values.insert(T_w_b.to_gtsam(), rig.body.pose_estimate.pose)
    values.insert(T_b_o.to_gtsam(), tag.pose_estimate.pose)
    assert factor.error(values) == pytest.approx(0.0, abs=1e-12)
