import argparse
import logging
from typing import Generator, Iterable, Optional, Tuple

import cv2
import numpy as np

from hybrid_pose_tracker.common.camera import CameraParameters
from hybrid_pose_tracker.common.config import TrackerConfig, load_camera_parameters, load_tracker_config
from hybrid_pose_tracker.common.geometry import pose_error, pose_from_rvec_tvec, project, transform_points
from hybrid_pose_tracker.features.points import PlanarPointGroup, PointFeatureSet
from hybrid_pose_tracker.sources.klt_points import KltConfig, KltPointSource
from hybrid_pose_tracker.sources.source_frames import source_frames
from hybrid_pose_tracker.synthetic import TARGET_HALF, default_camera, ground_truth_pose, textured_sequence
from hybrid_pose_tracker.tracker import HybridPoseTracker, TrackResult


def planar_target(half: float, min_points: int = 4) -> PointFeatureSet:
    points = PointFeatureSet(min_points)
    group = points.add(PlanarPointGroup("target", np.zeros(3), np.array([0.0, 0.0, 1.0])))
    h = float(half)
    group.outline = np.array([[-h, -h, 0.0], [h, -h, 0.0], [h, h, 0.0], [-h, h, 0.0]])
    return points


def build_point_tracker(
    cam: CameraParameters, cfg: TrackerConfig, half: float, klt: Optional[KltConfig] = None
) -> HybridPoseTracker:
    points = planar_target(half, cfg.min_points_per_group)
    return HybridPoseTracker(cam, cfg, points=points, point_source=KltPointSource(klt))


def track_sequence(
    tracker: HybridPoseTracker, frames: Iterable[np.ndarray], cMo0: np.ndarray
) -> Generator[Tuple[int, np.ndarray, Optional[TrackResult]], None, None]:
    """Initialize on the first frame at ``cMo0``, then track every following frame.

    Yields ``(index, frame, result)``; the first frame has no result. A frame
    that cannot be tracked reinitializes the points at the last good pose.
    """
    for idx, frame in enumerate(frames):
        if idx == 0:
            tracker.set_pose(cMo0, frame)
            yield idx, frame, None
            continue
        res = tracker.track(frame)
        if not res.valid:
            tracker.set_pose(tracker.cMo, frame)
        yield idx, frame, res


def draw_pose(frame: np.ndarray, tracker: HybridPoseTracker, res: Optional[TrackResult]) -> np.ndarray:
    out = frame.copy() if frame.ndim == 3 else cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    cam = tracker.cam
    for g in tracker.points.groups:
        if g.outline is not None:
            pts = transform_points(tracker.cMo, g.outline)
            if np.all(pts[:, 2] > 1e-9):
                uv = np.round(cam.meter_to_pixel(project(pts))).astype(np.int32)
                color = (0, 255, 0) if res is None or res.valid else (0, 0, 255)
                cv2.polylines(out, [uv.reshape(-1, 1, 2)], True, color, 2, cv2.LINE_AA)
        for u, v in cam.meter_to_pixel(g.cur_xy):
            cv2.circle(out, (int(round(u)), int(round(v))), 2, (0, 200, 255), -1)
    if res is not None:
        label = "OK" if res.valid else res.reason
        cv2.putText(
            out,
            f"{label} iters={res.iterations} residue={res.residue:.2e} pts={tracker.points.point_count()}",
            (10, 24),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.58,
            (255, 255, 255),
            2,
            cv2.LINE_AA,
        )
    return out


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Track a textured planar target with KLT points.")
    p.add_argument("--source", type=str, default="", help="video file or image folder; empty renders a synthetic sequence")
    p.add_argument("--camera", type=str, default="", help="OpenCV YAML with px, py, u0, v0, width, height")
    p.add_argument("--config", type=str, default="", help="optional OpenCV YAML tracker config")
    p.add_argument("--half", type=float, default=TARGET_HALF, help="half side of the square target [m]")
    p.add_argument("--rvec", type=float, nargs=3, default=None, help="initial object-to-camera rotation vector")
    p.add_argument("--tvec", type=float, nargs=3, default=None, help="initial object-to-camera translation [m]")
    p.add_argument("--frames", type=int, default=30, help="length of the synthetic sequence")
    p.add_argument("--max_corners", type=int, default=300)
    p.add_argument("--show", action="store_true")
    p.add_argument("--save_video", type=str, default="")
    p.add_argument("--out_fps", type=float, default=20.0)
    p.add_argument("--window", type=str, default="KLT planar pose")
    p.add_argument("--verbose", action="store_true")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    cam = load_camera_parameters(args.camera) if args.camera else default_camera()
    cfg = load_tracker_config(args.config) if args.config else TrackerConfig()
    if args.rvec is not None and args.tvec is not None:
        cMo0 = pose_from_rvec_tvec(np.array(args.rvec), np.array(args.tvec))
    else:
        cMo0 = ground_truth_pose()

    truth = None
    if args.source:
        frames: Iterable[np.ndarray] = source_frames(args.source)
        print(f"[Info] tracking frames from: {args.source}")
    else:
        frames, truth = textured_sequence(cam, cMo0, args.frames)
        print(f"[Info] rendering {args.frames} synthetic frames")

    tracker = build_point_tracker(cam, cfg, args.half, KltConfig(max_corners=int(args.max_corners)))
    writer: Optional[cv2.VideoWriter] = None
    try:
        for idx, frame, res in track_sequence(tracker, frames, cMo0):
            if res is None:
                print(f"[Info] initialized with {tracker.points.point_count()} points")
            elif not res.valid:
                print(f"[Frame {idx}] invalid: {res.reason}")
            else:
                msg = f"[Frame {idx}] iters={res.iterations} residue={res.residue:.3e} pts={tracker.points.point_count()}"
                if truth is not None:
                    dt, dr = pose_error(res.cMo, truth[idx])
                    msg += f" error={dt * 1000.0:.3f} mm {dr:.3f} deg"
                print(msg)

            if not (args.show or args.save_video):
                continue
            out = draw_pose(frame, tracker, res)
            if args.save_video:
                if writer is None:
                    fourcc = cv2.VideoWriter_fourcc(*"mp4v")
                    writer = cv2.VideoWriter(args.save_video, fourcc, float(args.out_fps), cam.size)
                    print(f"[Info] writing video: {args.save_video}")
                writer.write(out)
            if args.show:
                cv2.imshow(args.window, out)
                key = cv2.waitKey(1) & 0xFF
                if key in (ord("q"), 27):
                    break
    finally:
        if writer is not None:
            writer.release()
        if args.show:
            cv2.destroyAllWindows()


if __name__ == "__main__":
    main()
