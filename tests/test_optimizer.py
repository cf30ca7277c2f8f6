import json

import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from tagslam_graph import GraphConfig, TagGraph
from tagslam_graph.keys import key_for_camera_pose, key_for_tag_transform
from tagslam_common.kpi_logging import KPILogger


def _perturbed(pose, rot=0.02, trans=0.03):
    return pose.retract(np.array([rot, -rot, rot, trans, -trans, trans]))


def _build(tg, rig, helpers, camera_pose=None):
    camera = rig.camera if camera_pose is None else helpers.make_camera(pose=camera_pose)
    tg.add_tags(rig.body, rig.tags)
    tg.add_observation(camera, rig.body, rig.observed, 0)
    return camera


def test_empty_graph_returns_immediately(tg):
    result = tg.optimize()
    assert result.iterations == 0
    assert result.normalized_error == 0.0
    assert tg.num_variables == 0


def test_exact_scene_keeps_poses(tg, rig, helpers):
    _build(tg, rig, helpers)
    result = tg.optimize()
    assert result.normalized_error == pytest.approx(0.0, abs=1e-8)
    cam = tg.get_camera_pose(rig.camera)
    assert cam.pose.equals(rig.camera.pose_estimate.pose, 1e-6)
    body = tg.get_body_pose(rig.body)
    assert body.pose.equals(rig.body.pose_estimate.pose, 1e-6)


def test_priors_only_converge_to_priors(tg, rig):
    tg.add_tags(rig.body, rig.tags)
    result = tg.optimize()
    assert result.iterations <= 2
    assert result.error == pytest.approx(0.0, abs=1e-10)
    # no reprojection factors: the raw error is reported
    assert result.normalized_error == result.error
    for tag in rig.tags:
        assert tg.get_tag_rel_pose(tag.id).pose.equals(tag.pose_estimate.pose, 1e-9)


def test_perturbed_camera_converges(tg, rig, helpers):
    camera = _build(tg, rig, helpers, camera_pose=_perturbed(rig.camera.pose_estimate.pose))
    before = tg.graph.error(tg.store.values)
    result = tg.optimize()
    assert result.error < before
    assert result.normalized_error < 1e-6
    assert tg.get_camera_pose(camera).pose.equals(rig.camera.pose_estimate.pose, 1e-4)
    assert tg.optimizer_error == result.normalized_error
    assert tg.optimizer_iterations == result.iterations > 0
    assert tg.last_result is result


def test_solve_is_deterministic(rig, helpers):
    poses = []
    for _ in range(2):
        tg = TagGraph(GraphConfig())
        camera = _build(tg, rig, helpers, camera_pose=_perturbed(rig.camera.pose_estimate.pose))
        tg.optimize()
        poses.append(tg.get_camera_pose(camera).pose)
    assert poses[0].equals(poses[1], 0.0)


def test_unreferenced_variables_keep_their_values(tg, rig, helpers):
    floating = helpers.make_tag(40, offset=(1.0, 2.0, 3.0), known=False)
    tg.add_tags(rig.body, rig.tags + [floating])
    tg.add_observation(helpers.make_camera(pose=_perturbed(rig.camera.pose_estimate.pose)),
                       rig.body, rig.observed, 0)
    tg.optimize()
    assert tg.store.get(key_for_tag_transform(40)).equals(floating.pose_estimate.pose, 0.0)
    assert tg.num_variables == 5


def test_later_solves_start_from_committed_values(tg, rig, helpers):
    _build(tg, rig, helpers, camera_pose=_perturbed(rig.camera.pose_estimate.pose))
    tg.optimize()
    solved = tg.store.get(key_for_camera_pose(0, 0))
    result = tg.optimize()
    assert result.normalized_error < 1e-6
    assert tg.store.get(key_for_camera_pose(0, 0)).equals(solved, 1e-6)


def test_kpi_events_are_written(tmp_path, rig, helpers):
    path = tmp_path / "kpi.jsonl"
    kpi = KPILogger(log_path=str(path), emit_to_logger=False, extra_fields={"run": "t"})
    tg = TagGraph(GraphConfig(), kpi=kpi)
    _build(tg, rig, helpers)
    tg.optimize()
    assert tg.compute_marginals()
    kpi.close()
    events = [json.loads(line) for line in path.read_text().splitlines()]
    assert [e["event"] for e in events] == ["optimization_start", "optimization_end", "marginals_computed"]
    assert events[0]["factor_count"] == tg.num_factors
    assert events[1]["iterations"] == tg.optimizer_iterations
    assert all(e["run"] == "t" for e in events)


def test_disabled_kpi_logger_writes_nothing(tmp_path):
    path = tmp_path / "kpi.jsonl"
    kpi = KPILogger(enabled=False, log_path=str(path), emit_to_logger=False)
    kpi.frame_processed(3, observations=1)
    kpi.close()
    assert path.read_text() == ""


def test_distance_and_position_move_an_unknown_tag(tg, rig, helpers):
    t1 = rig.tags[0]
    # truth is 0.3 m from tag 1, initial guess 0.5 m
    t2 = helpers.make_tag(2, offset=(0.5, 0.0, 0.0), known=False)
    tg.add_tags(rig.body, [t1, t2])
    tg.add_observation(rig.camera, rig.body, rig.observed[:1], 0)
    assert tg.add_distance_measurement(rig.body, rig.body, t1, 0, t2, 0, 0.3, 0.01)
    assert tg.add_position_measurement(rig.body, t2, 0, [0.0, 1.0, 0.0], -0.1, 0.01)
    assert tg.add_position_measurement(rig.body, t2, 0, [0.0, 0.0, 1.0], 2.0, 0.01)
    before = tg.get_difference(rig.body, rig.body, t1, 0, t2, 0)
    assert np.linalg.norm(before.point) == pytest.approx(0.5)
    result = tg.optimize()
    assert result.iterations > 0
    diff = tg.get_difference(rig.body, rig.body, t1, 0, t2, 0)
    assert np.linalg.norm(diff.point) == pytest.approx(0.3, abs=1e-4)
    np.testing.assert_allclose(tg.get_position(rig.body, t2, 0).point, [0.2, -0.1, 2.0], atol=1e-4)
