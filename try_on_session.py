"""Frame pipeline and render loop tying camera, detector, tracking and overlays together."""
import logging
import statistics
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

import cv2

from camera_async import AsyncVideoCapture
from face_landmarks import face_orientation, is_stable_detection, landmark_stats, now_ms
from face_tracker import DetectionResult, DetectorFailure, FaceMeshDetector
from overlay_catalog import CATALOG, get_config
from overlay_compositor import OverlayImageCache, compose, draw_landmarks, draw_status
from overlay_registry import CommandResult, OverlayRegistry
from overlay_transform import DimensionUnavailable, RenderContext
from tracking_state import TrackingSnapshot, TrackingState, TrackingStatus
from try_on_settings import (
    CAM_INDEX, CAP_FPS, H_CAP, H_MIRROR, JPEG_QUALITY, MAX_LATENCY_MS, MIN_FPS,
    PERF_REPORT_EVERY, SHOW_HUD, SHOW_LANDMARKS, SMOOTH_A, TARGET_FPS, W_CAP,
)

log = logging.getLogger(__name__)


@dataclass
class FrameResult:
    snapshot: TrackingSnapshot
    placements: Dict[str, object] = field(default_factory=dict)
    jpeg: Optional[bytes] = None


def ema(prev, new, a):
    return new if prev is None else (a * prev + (1.0 - a) * new)


def perf_warnings(fps, latency_ms, min_fps=MIN_FPS, max_latency_ms=MAX_LATENCY_MS):
    out = []
    if fps < min_fps:
        out.append(f"fps {fps:.1f} below {min_fps:g}")
    if latency_ms > max_latency_ms:
        out.append(f"frame time {latency_ms:.1f}ms above {max_latency_ms:g}ms")
    return out


class TryOnSession:
    """Owns one tracking state, one overlay registry and the loop feeding them.

    The loop thread is the only writer of tracking state and overlay
    positions; request threads go through the command methods.
    """

    def __init__(self, camera=None, detector=None, tracking=None, registry=None,
                 catalog=None, images=None, mirrored=H_MIRROR, smoothing=SMOOTH_A,
                 show_hud=SHOW_HUD, show_landmarks=SHOW_LANDMARKS,
                 jpeg_quality=JPEG_QUALITY, camera_factory=None, detector_factory=None):
        self.camera = camera
        self.detector = detector
        self.tracking = tracking or TrackingState()
        self.registry = registry or OverlayRegistry()
        self.catalog = catalog if catalog is not None else CATALOG
        self.images = images or OverlayImageCache()
        self.mirrored = mirrored
        self.smoothing = smoothing
        self.show_hud = show_hud
        self.show_landmarks = show_landmarks
        self.jpeg_quality = jpeg_quality
        self._camera_factory = camera_factory or (
            lambda: AsyncVideoCapture(src=CAM_INDEX, width=W_CAP, height=H_CAP, fps=CAP_FPS))
        self._detector_factory = detector_factory or FaceMeshDetector
        self._owns_camera = camera is None

        self._ctl_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None
        self._generation = 0

        self._frame_cond = threading.Condition()
        self.last_jpeg = None
        self.last_ts = 0.0
        self.frame_seq = 0
        self.fps = 0.0

    # ---- pipeline ----
    def process_detection(self, result: DetectionResult, ctx: RenderContext) -> FrameResult:
        """Tracking update, then placement, for one detector result."""
        self.tracking.update_face_detection(result.detection)
        if result.face_count > 1:
            self.tracking.set_face_count(result.face_count)
        # landmarks with no usable points must not revive a not-detected frame
        if result.landmarks is not None and result.detection.detected:
            self.tracking.update_facial_landmarks(result.landmarks)

        snap = self.tracking.snapshot()
        if snap.status is not TrackingStatus.DETECTED or snap.landmarks is None:
            self.registry.mark_unplaced()
            return FrameResult(snap)

        box = result.detection.bounding_box
        ctx = replace(ctx, bounding_box=box) if box is not None else ctx
        placements = self.registry.update_positions(snap.landmarks, ctx, self.smoothing)
        return FrameResult(snap, placements)

    def context_for(self, frame) -> RenderContext:
        H, W = frame.shape[:2]
        vw, vh = self.camera.frame_size() if self.camera is not None else (0, 0)
        return RenderContext(canvas_w=W, canvas_h=H, video_w=vw, video_h=vh, mirrored=self.mirrored)

    def process_frame(self, frame, timestamp=None, generation=None) -> Optional[FrameResult]:
        """Detect, track, place and render one BGR frame.

        Returns None when the frame was skipped (no display size, or the loop
        was stopped while the frame was in flight).
        """
        ts = now_ms() if timestamp is None else timestamp
        ctx = self.context_for(frame)
        if self.detector is None:
            self.detector = self._detector_factory()

        result = None
        try:
            result = self.detector.detect(frame, ts)
        except DetectorFailure as e:
            self.tracking.set_error(str(e))

        try:
            if result is not None:
                fr = self.process_detection(result, ctx)
            else:
                self.registry.mark_unplaced()
                fr = FrameResult(self.tracking.snapshot())
        except DimensionUnavailable:
            log.debug("display size unavailable, frame skipped")
            return None

        if generation is not None and generation != self._generation:
            return None

        display = cv2.flip(frame, 1) if self.mirrored else frame.copy()
        overlays = self.registry.render_list(placed_only=True)
        if fr.snapshot.status is TrackingStatus.DETECTED:
            compose(display, overlays, self.images)
        if self.show_landmarks and fr.snapshot.landmarks is not None:
            draw_landmarks(display, fr.snapshot.landmarks, mirrored=self.mirrored)
        if self.show_hud:
            draw_status(display, fr.snapshot, self.fps, len(overlays))

        ok, buf = cv2.imencode(".jpg", display, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if ok:
            fr.jpeg = buf.tobytes()
            self._publish(fr.jpeg)
        return fr

    def _publish(self, jpeg):
        with self._frame_cond:
            self.last_jpeg, self.last_ts = jpeg, time.time()
            self.frame_seq += 1
            self._frame_cond.notify_all()

    def wait_for_frame(self, after_seq, timeout=1.0):
        """Block until a frame newer than ``after_seq`` exists; returns (seq, jpeg) or None."""
        with self._frame_cond:
            if self.frame_seq <= after_seq:
                self._frame_cond.wait(timeout)
            if self.frame_seq <= after_seq or self.last_jpeg is None:
                return None
            return self.frame_seq, self.last_jpeg

    # ---- loop ----
    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self):
        with self._ctl_lock:
            if self.running:
                return False
            if self.camera is None:
                self.camera = self._camera_factory()
                self._owns_camera = True
            if self.detector is None:
                self.detector = self._detector_factory()
            self._stop.clear()
            self._generation += 1
            self._thread = threading.Thread(target=self._run, args=(self._generation,),
                                            name="try-on-loop", daemon=True)
            self._thread.start()
            log.info("render loop started (generation %d)", self._generation)
            return True

    def stop(self, timeout=2.0):
        with self._ctl_lock:
            if self._thread is None:
                return False
            self._stop.set()
            self._generation += 1
            thread, self._thread = self._thread, None
        if thread is not threading.current_thread():
            thread.join(timeout)
        if self._owns_camera and self.camera is not None:
            self.camera.release()
            self.camera = None
        with self._frame_cond:
            self._frame_cond.notify_all()
        log.info("render loop stopped")
        return True

    def close(self):
        self.stop()
        if self.detector is not None:
            self.detector.close()
            self.detector = None

    def _run(self, generation):
        fps_ema = None
        t_prev = time.perf_counter()
        perf_counter = 0
        perf_times = {"cap": [], "process": [], "total": []}

        while not self._stop.is_set() and generation == self._generation:
            t_frame_start = time.perf_counter()
            ok_cap, frame = self.camera.read()
            t_cap = (time.perf_counter() - t_frame_start) * 1000
            if not ok_cap:
                # no frame yet; try again next tick
                self._stop.wait(0.01)
                continue

            t1 = time.perf_counter()
            try:
                fr = self.process_frame(frame, generation=generation)
            except Exception:
                log.exception("frame processing failed")
                continue
            t_proc = (time.perf_counter() - t1) * 1000
            if fr is None:
                continue

            now = time.perf_counter()
            dt = now - t_prev
            t_prev = now
            if dt > 0:
                fps_ema = ema(fps_ema, 1.0 / dt, 0.9)
                self.fps = fps_ema
            t_total = (now - t_frame_start) * 1000
            self.tracking.record_performance(self.fps, t_total)

            perf_times["cap"].append(t_cap)
            perf_times["process"].append(t_proc)
            perf_times["total"].append(t_total)
            perf_counter += 1
            if PERF_REPORT_EVERY > 0 and perf_counter % PERF_REPORT_EVERY == 0:
                avg_total = statistics.mean(perf_times["total"])
                log.info("perf frame #%d: camera %.2fms, pipeline %.2fms, frame %.2fms, fps %.1f",
                         perf_counter, statistics.mean(perf_times["cap"]),
                         statistics.mean(perf_times["process"]), avg_total, self.fps)
                for warning in perf_warnings(self.fps, avg_total):
                    log.warning("performance degraded: %s", warning)
                for key in perf_times:
                    perf_times[key] = []

    # ---- commands ----
    def has_config(self, config_id):
        return get_config(config_id, self.catalog) is not None

    def add_overlay(self, config_id) -> CommandResult:
        cfg = get_config(config_id, self.catalog)
        if cfg is None:
            return CommandResult(False, config_id, f"unknown overlay id: {config_id}")
        return self.registry.add_overlay(cfg)

    def remove_overlay(self, overlay_id) -> CommandResult:
        return self.registry.remove_overlay(overlay_id)

    def toggle_overlay(self, overlay_id, enabled=None) -> CommandResult:
        return self.registry.toggle_overlay(overlay_id, enabled)

    def update_overlay_rendering(self, overlay_id, partial) -> CommandResult:
        return self.registry.update_overlay_rendering(overlay_id, partial)

    def clear_overlays(self) -> CommandResult:
        return self.registry.clear_overlays()

    def reset_tracking(self):
        self.tracking.reset()
        self.registry.mark_unplaced()
        self.registry.clear_error()

    def status(self):
        snap = self.tracking.snapshot()
        out = snap.to_dict()
        out["running"] = self.running
        out["fps"] = round(self.fps, 2)
        out["targetFps"] = TARGET_FPS
        out["mirrored"] = self.mirrored
        out["overlayError"] = self.registry.error
        out["warnings"] = perf_warnings(snap.fps, snap.latency_ms) if self.running else []
        if snap.landmarks is not None:
            yaw, pitch, roll = face_orientation(snap.landmarks)
            out["landmarks"] = landmark_stats(snap.landmarks)
            out["stable"] = is_stable_detection(snap.landmarks)
            out["orientation"] = {"yaw": round(yaw, 1), "pitch": round(pitch, 1), "roll": round(roll, 1)}
        return out
