import argparse, os, json, logging
from typing import Dict, List

from tagslam_graph.config import GraphConfig
from tagslam_graph.keys import Category
from tagslam_graph.loader import LoaderConfig, SceneLoadError, load_scene
from tagslam_graph.pipeline import run_scene
from tagslam_graph.tag_graph import TagGraph
from tagslam_common.kpi_logging import KPILogger


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Pose-graph backend for fiducial tag SLAM scenes.")
    ap.add_argument("--scene", required=True, help="Path to scene .json")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--quat-order", choices=["wxyz", "xyzw"], default="wxyz", help="Quaternion order in file")
    ap.add_argument("--log", default="INFO", help="Logging level")
    ap.add_argument("--max-iters", type=int, default=100, help="Max Levenberg-Marquardt iterations per solve")
    ap.add_argument("--pixel-noise", type=float, default=1.0, help="Reprojection noise sigma [px]")
    ap.add_argument("--robust", choices=["none", "huber", "cauchy"], default="none",
                    help="Robust kernel on reprojection factors")
    ap.add_argument("--robust-k", type=float, default=None, help="Robust tuning parameter")
    ap.add_argument("--final-only", action="store_true", help="Optimize once after all frames instead of per frame")
    ap.add_argument("--marginals", action="store_true", help="Compute marginal covariances after the final solve")
    ap.add_argument("--print-distances", action="store_true", help="Print pairwise tag corner distances")
    ap.add_argument("--plot", action="store_true", help="Export PNG plots of solved positions")
    ap.add_argument("--kpi-log", action="store_true", help="Write KPI events to <export-path>/kpi_events.jsonl")
    return ap.parse_args(argv)


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def _rot3_to_quat_wxyz(R):
    q = R.quaternion()  # [w, x, y, z]
    return float(q[0]), float(q[1]), float(q[2]), float(q[3])


def pose_to_dict(pose, covariance=None) -> Dict:
    t = pose.translation()
    qw, qx, qy, qz = _rot3_to_quat_wxyz(pose.rotation())
    out = {"translation": [float(t[0]), float(t[1]), float(t[2])],
           "rotation": [qw, qx, qy, qz]}
    if covariance is not None:
        out["covariance"] = [float(v) for v in covariance.reshape(-1)]
    return out


def collect_poses(tg: TagGraph, scene) -> Dict[str, Dict]:
    """Solved camera and body poses by key label, plus tag world poses."""
    out = {"cameras": {}, "bodies": {}, "tags": {}}
    for key in tg.store.keys():
        if key.category is Category.CAMERA_POSE:
            cam = scene.cameras.get(key.index)
            name = cam.name if cam and cam.name else str(key.index)
            out["cameras"][f"{name}@{key.frame}"] = pose_to_dict(tg.store.get(key), tg.marginal_covariance(key))
        elif key.category is Category.BODY_POSE:
            rb = scene.bodies.get(key.index)
            name = rb.name if rb and rb.name else str(key.index)
            out["bodies"][f"{name}@{key.frame}"] = pose_to_dict(tg.store.get(key), tg.marginal_covariance(key))
    for rb in scene.bodies.values():
        if not rb.is_static:
            continue
        for tag in rb.tags:
            pe = tg.get_tag_world_pose(rb, tag.id)
            if pe.is_valid():
                out["tags"][str(tag.id)] = pose_to_dict(pe.pose, pe.covariance)
    return out


def export_stats_json(tg: TagGraph, out_path: str):
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump({"factors": tg.counts,
                   "variables": tg.num_variables,
                   "normalized_error": tg.optimizer_error,
                   "iterations": tg.optimizer_iterations}, f, indent=2)


def _positions(poses: Dict[str, Dict]) -> List[List[float]]:
    return [p["translation"] for p in poses.values()]


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log.upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ensure_dir(args.export_path)
    try:
        scene = load_scene(args.scene, LoaderConfig(quaternion_order=args.quat_order))
    except SceneLoadError as e:
        logging.error("%s", e)
        return 2

    cfg = GraphConfig(pixel_noise=args.pixel_noise, max_iterations=args.max_iters,
                      robust_kind=None if args.robust == "none" else args.robust,
                      robust_k=args.robust_k)
    kpi = None
    if args.kpi_log:
        kpi = KPILogger(log_path=os.path.join(args.export_path, "kpi_events.jsonl"), emit_to_logger=False)
    try:
        tg = TagGraph(cfg, kpi=kpi)
        error = run_scene(scene, tg, optimize_every_frame=not args.final_only, kpi=kpi)
        if args.marginals and error is not None:
            tg.compute_marginals()

        print("=== Tag graph summary ===")
        print(f"Variables: {tg.num_variables}")
        print(f"Factors: {tg.counts}")
        if error is not None:
            print(f"Normalized error: {error:.6g} after {tg.optimizer_iterations} iterations")
        if args.print_distances:
            tg.print_distances()

        poses = collect_poses(tg, scene)
        with open(os.path.join(args.export_path, "poses.json"), "w", encoding="utf-8") as f:
            json.dump(poses, f, indent=2)
        export_stats_json(tg, os.path.join(args.export_path, "stats.json"))
        if args.plot:
            from tagslam_common.viz import plot_positions_xy, plot_positions_3d
            groups = {name: _positions(poses[name]) for name in ("cameras", "bodies", "tags")}
            plot_positions_xy(groups, os.path.join(args.export_path, "positions_xy.png"))
            plot_positions_3d(groups, os.path.join(args.export_path, "positions_3d.png"))
    finally:
        if kpi:
            kpi.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
