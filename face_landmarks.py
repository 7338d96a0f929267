"""Landmark and bounding-box processing for a single face mesh.

Everything here is pure: plain values in, plain values out. Coordinates are
normalized to [0, 1] with the origin at the top-left of the unmirrored frame.
"""
import math
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from try_on_settings import VISIBILITY_THRESHOLD

FACE_MESH_POINTS = 468

EYE_INDICES = (
    33, 7, 163, 144, 145, 153, 154, 155, 133, 173, 157, 158, 159, 160, 161, 246,
    362, 382, 381, 380, 374, 373, 390, 249, 263, 466, 388, 387, 386, 385, 384, 398,
)
NOSE_INDICES = (1, 2, 3, 4, 5, 6) + tuple(range(19, 33))
MOUTH_INDICES = (
    0, 267, 37, 39, 40, 185, 61, 146, 91, 181, 84, 17, 314, 405, 320, 307,
    375, 321, 308, 324, 318, 78, 95, 88, 178, 87, 14, 317, 402,
)
FACE_OUTLINE_INDICES = (
    10, 338, 297, 332, 284, 251, 389, 356, 454, 323, 361, 288, 397, 365, 379, 378,
    400, 377, 152, 148, 176, 149, 150, 136, 172, 58, 132, 93, 234, 127, 162, 21,
    54, 103, 67, 109,
)
FACE_BOX_INDICES = EYE_INDICES + NOSE_INDICES + MOUTH_INDICES + FACE_OUTLINE_INDICES

# confidence weights
W_VISIBILITY = 0.4
W_HIGH_VISIBILITY = 0.4
W_SPREAD = 0.2
HIGH_VISIBILITY = 0.7


def now_ms():
    return time.time() * 1000.0


@dataclass(frozen=True)
class LandmarkPoint:
    x: float
    y: float
    z: float = 0.0
    visibility: Optional[float] = None

    @property
    def vis(self) -> float:
        return 0.0 if self.visibility is None else float(self.visibility)


@dataclass(frozen=True)
class FacialLandmarks:
    points: Tuple[LandmarkPoint, ...]
    confidence: float
    timestamp: float

    def __len__(self):
        return len(self.points)

    def __getitem__(self, idx):
        return self.points[idx]

    def get(self, idx) -> Optional[LandmarkPoint]:
        if 0 <= idx < len(self.points):
            return self.points[idx]
        return None


@dataclass(frozen=True)
class BoundingBox:
    """Face box, center-based. ``usable`` is False when no landmark qualified."""
    x: float
    y: float
    width: float
    height: float
    usable: bool = True
    source: str = "subset"

    @classmethod
    def empty(cls):
        return cls(0.0, 0.0, 0.0, 0.0, usable=False, source="none")

    def to_dict(self):
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height,
                "usable": self.usable, "source": self.source}


@dataclass(frozen=True)
class FaceDetection:
    detected: bool
    confidence: float
    bounding_box: Optional[BoundingBox] = None
    timestamp: float = 0.0

    @classmethod
    def not_detected(cls, timestamp=None):
        return cls(False, 0.0, None, now_ms() if timestamp is None else timestamp)

    def to_dict(self):
        return {
            "detected": self.detected,
            "confidence": self.confidence,
            "boundingBox": self.bounding_box.to_dict() if self.bounding_box else None,
            "timestamp": self.timestamp,
        }


def _points(landmarks) -> Sequence[LandmarkPoint]:
    if isinstance(landmarks, FacialLandmarks):
        return landmarks.points
    return landmarks or ()


def calculate_landmark_confidence(points) -> float:
    """Aggregate confidence of a landmark set in [0, 1].

    0.4 * mean visibility + 0.4 * share of points above 0.7 visibility
    + 0.2 * spatial spread (x range + y range, capped at 1).
    """
    pts = _points(points)
    if not pts:
        return 0.0
    vis = np.array([p.vis for p in pts], np.float64)
    xs = np.array([p.x for p in pts], np.float64)
    ys = np.array([p.y for p in pts], np.float64)

    avg_vis = float(vis.mean())
    high_ratio = float((vis > HIGH_VISIBILITY).sum()) / len(pts)
    spread = min(float(xs.max() - xs.min()) + float(ys.max() - ys.min()), 1.0)

    conf = W_VISIBILITY * avg_vis + W_HIGH_VISIBILITY * high_ratio + W_SPREAD * spread
    if not math.isfinite(conf):
        return 0.0
    return min(max(conf, 0.0), 1.0)


def _box_from(points, threshold, source):
    min_x = min_y = math.inf
    max_x = max_y = -math.inf
    found = False
    for p in points:
        if p is None or p.vis <= threshold:
            continue
        if not (math.isfinite(p.x) and math.isfinite(p.y)):
            continue
        found = True
        min_x, max_x = min(min_x, p.x), max(max_x, p.x)
        min_y, max_y = min(min_y, p.y), max(max_y, p.y)
    if not found:
        return None
    return BoundingBox(
        x=(min_x + max_x) / 2.0,
        y=(min_y + max_y) / 2.0,
        width=max_x - min_x,
        height=max_y - min_y,
        usable=True,
        source=source,
    )


def compute_bounding_box(landmarks, threshold=VISIBILITY_THRESHOLD,
                         indices=FACE_BOX_INDICES) -> BoundingBox:
    """Face box from the curated eyes/nose/mouth/outline subset.

    Falls back to every landmark when no subset point is visible enough, and
    to ``BoundingBox.empty()`` when nothing is. ``source`` tells which case
    produced the box.
    """
    pts = _points(landmarks)
    n = len(pts)
    subset = (pts[i] for i in indices if 0 <= i < n)
    box = _box_from(subset, threshold, "subset")
    if box is None:
        box = _box_from(pts, threshold, "all")
    return box if box is not None else BoundingBox.empty()


def build_facial_landmarks(points, timestamp=None) -> FacialLandmarks:
    pts = tuple(points)
    return FacialLandmarks(
        points=pts,
        confidence=calculate_landmark_confidence(pts),
        timestamp=now_ms() if timestamp is None else timestamp,
    )


def detection_from_landmarks(landmarks: FacialLandmarks, confidence=None) -> FaceDetection:
    """Detection record for a mesh; the box comes from the landmarks themselves."""
    box = compute_bounding_box(landmarks)
    if not box.usable:
        return FaceDetection(False, 0.0, box, landmarks.timestamp)
    conf = landmarks.confidence if confidence is None else confidence
    return FaceDetection(True, min(max(float(conf), 0.0), 1.0), box, landmarks.timestamp)


def is_stable_detection(landmarks, min_visible_ratio=0.7, threshold=VISIBILITY_THRESHOLD):
    pts = _points(landmarks)
    if not pts:
        return False
    visible = sum(1 for p in pts if p.vis > threshold)
    return visible / len(pts) >= min_visible_ratio


def landmark_stats(landmarks, threshold=VISIBILITY_THRESHOLD):
    pts = _points(landmarks)
    if not pts:
        return {"total": 0, "visible": 0, "minVisibility": 0.0,
                "avgVisibility": 0.0, "maxVisibility": 0.0, "confidence": 0.0}
    vis = [p.vis for p in pts]
    return {
        "total": len(pts),
        "visible": sum(1 for v in vis if v > threshold),
        "minVisibility": min(vis),
        "avgVisibility": sum(vis) / len(vis),
        "maxVisibility": max(vis),
        "confidence": calculate_landmark_confidence(pts),
    }


def clamp(x, a, b):
    return a if x < a else (b if x > b else x)


def face_orientation(landmarks):
    """Rough (yaw, pitch, roll) in degrees from the eye corners and nose tip."""
    pts = _points(landmarks)
    if len(pts) < FACE_MESH_POINTS:
        return 0.0, 0.0, 0.0
    left_eye, right_eye, nose = pts[33], pts[263], pts[1]

    roll = math.degrees(math.atan2(right_eye.y - left_eye.y, right_eye.x - left_eye.x))

    expected_eye_dist = 0.15
    eye_dist = math.hypot(right_eye.x - left_eye.x, right_eye.y - left_eye.y)
    yaw = (eye_dist - expected_eye_dist) / expected_eye_dist * 30.0

    eye_cy = (left_eye.y + right_eye.y) / 2.0
    pitch = (nose.y - eye_cy) / 0.1 * 30.0

    return clamp(yaw, -45.0, 45.0), clamp(pitch, -30.0, 30.0), clamp(roll, -30.0, 30.0)


def mirror_x(x, width):
    return width - x


def to_img_px(point, W, H, mirrored=False):
    px = point.x * W
    if mirrored:
        px = mirror_x(px, W)
    return np.array([px, point.y * H], np.float32)


def mirror_bounding_box(box: BoundingBox) -> BoundingBox:
    if not box.usable:
        return box
    return BoundingBox(mirror_x(box.x, 1.0), box.y, box.width, box.height,
                       usable=True, source=box.source)
