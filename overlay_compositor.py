"""OpenCV drawing of overlays, landmarks and the status HUD onto BGR frames."""
import logging
import math
import threading

import cv2
import numpy as np

from face_landmarks import to_img_px
from overlay_transform import to_pixel_rect
from tracking_state import TrackingStatus

log = logging.getLogger(__name__)

STATUS_COLORS = {
    TrackingStatus.INITIALIZING: (200, 200, 200),
    TrackingStatus.NOT_DETECTED: (0, 165, 255),
    TrackingStatus.DETECTED: (0, 200, 0),
    TrackingStatus.MULTIPLE_FACES: (0, 220, 220),
    TrackingStatus.ERROR: (0, 0, 255),
}


def _read_rgba(path):
    img = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if img is None:
        raise FileNotFoundError(path)
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    elif img.shape[2] == 3:
        a = np.full(img.shape[:2], 255, np.uint8)
        img = np.dstack([img, a])
    return img


class OverlayImageCache:
    """Loads each overlay image once; a missing file is remembered as None."""

    def __init__(self, loader=_read_rgba):
        self._loader = loader
        self._images = {}
        self._lock = threading.Lock()

    def get(self, config):
        with self._lock:
            if config.id in self._images:
                return self._images[config.id]
        try:
            img = self._loader(config.image)
        except FileNotFoundError:
            log.warning("overlay image missing for %s: %s (drawing outline)", config.id, config.image)
            img = None
        with self._lock:
            self._images[config.id] = img
        return img

    def clear(self):
        with self._lock:
            self._images.clear()


def _blend(bg, fg, mode):
    if mode == "multiply":
        return bg * fg / 255.0
    if mode == "screen":
        return 255.0 - (255.0 - bg) * (255.0 - fg) / 255.0
    if mode == "lighten":
        return np.maximum(bg, fg)
    if mode == "darken":
        return np.minimum(bg, fg)
    if mode == "add":
        return np.minimum(bg + fg, 255.0)
    return fg


def overlay_matrix(img_shape, cx, cy, w, h, rotation_deg):
    """2x3 affine mapping the image center to (cx, cy), sized w x h, rotated."""
    ih, iw = img_shape[:2]
    sx = w / float(iw)
    sy = h / float(ih)
    theta = math.radians(rotation_deg)
    c, s = math.cos(theta), math.sin(theta)

    M2 = np.array([[c, -s], [s, c]], np.float32) @ np.array([[sx, 0], [0, sy]], np.float32)
    p_center_src = np.array([iw / 2.0, ih / 2.0], np.float32)
    t = np.array([cx, cy], np.float32) - (M2 @ p_center_src)

    M = np.zeros((2, 3), np.float32)
    M[:, :2] = M2
    M[:, 2] = t
    return M


def draw_overlay(frame, img_rgba, position, rendering, label=""):
    """Composite one overlay in place. Returns the frame."""
    if not rendering.visible or rendering.opacity <= 0:
        return frame
    H, W = frame.shape[:2]
    cx, cy, w, h = to_pixel_rect(position, W, H)
    if w < 1 or h < 1:
        return frame

    if img_rgba is None:
        return _draw_outline(frame, cx, cy, w, h, position.rotation, rendering.opacity, label)

    M = overlay_matrix(img_rgba.shape, cx, cy, w, h, position.rotation)
    warped = cv2.warpAffine(img_rgba, M, (W, H),
                            flags=cv2.INTER_LINEAR,
                            borderMode=cv2.BORDER_CONSTANT,
                            borderValue=(0, 0, 0, 0))
    alpha = warped[..., 3:4].astype(np.float32) / 255.0 * float(rendering.opacity)
    if not alpha.any():
        return frame
    bg = frame.astype(np.float32)
    fg = _blend(bg, warped[..., :3].astype(np.float32), rendering.blend_mode)
    out = bg * (1.0 - alpha) + fg * alpha
    frame[:] = np.clip(out, 0, 255).astype(np.uint8)
    return frame


def _draw_outline(frame, cx, cy, w, h, rotation, opacity, label):
    layer = frame.copy()
    box = cv2.boxPoints(((cx, cy), (w, h), rotation)).astype(np.int32)
    cv2.polylines(layer, [box], True, (255, 255, 255), 2, cv2.LINE_AA)
    if label:
        cv2.putText(layer, label, (int(cx - w / 2), int(cy - h / 2) - 6),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.45, (255, 255, 255), 1, cv2.LINE_AA)
    cv2.addWeighted(layer, float(opacity), frame, 1.0 - float(opacity), 0, dst=frame)
    return frame


def compose(frame, overlays, images: OverlayImageCache):
    """Draw active overlays in the order given (already z-sorted)."""
    for ao in overlays:
        draw_overlay(frame, images.get(ao.config), ao.position, ao.rendering, ao.config.name)
    return frame


def draw_landmarks(frame, landmarks, mirrored=False, color=(0, 255, 255), radius=1):
    if landmarks is None:
        return frame
    H, W = frame.shape[:2]
    for p in landmarks.points:
        x, y = to_img_px(p, W, H, mirrored)
        cv2.circle(frame, (int(x), int(y)), radius, color, -1, cv2.LINE_AA)
    return frame


def draw_status(frame, snapshot, fps=0.0, overlay_count=0):
    color = STATUS_COLORS.get(snapshot.status, (255, 255, 255))
    lines = [
        snapshot.message,
        f"conf {snapshot.confidence:.2f}  faces {snapshot.face_count}  overlays {overlay_count}",
        f"FPS {fps:.1f}",
    ]
    y = 22
    for text in lines:
        cv2.putText(frame, text, (10, y), cv2.FONT_HERSHEY_SIMPLEX, 0.55, (0, 0, 0), 3, cv2.LINE_AA)
        cv2.putText(frame, text, (10, y), cv2.FONT_HERSHEY_SIMPLEX, 0.55, color, 1, cv2.LINE_AA)
        y += 22
    return frame
