import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from face_landmarks import FaceDetection, FacialLandmarks, now_ms

log = logging.getLogger(__name__)

# a detected face never reports zero confidence
MIN_DETECTED_CONFIDENCE = 0.01


class TrackingStatus(str, Enum):
    INITIALIZING = "initializing"
    NOT_DETECTED = "not_detected"
    DETECTED = "detected"
    MULTIPLE_FACES = "multiple_faces"
    ERROR = "error"


STATUS_MESSAGES = {
    TrackingStatus.INITIALIZING: "Initializing facial tracking...",
    TrackingStatus.NOT_DETECTED: "No face detected",
    TrackingStatus.DETECTED: "Face detected",
    TrackingStatus.MULTIPLE_FACES: "Multiple faces detected",
    TrackingStatus.ERROR: "Tracking error",
}


def _clamp01(v):
    v = float(v)
    if v != v:  # NaN
        return 0.0
    return 0.0 if v < 0.0 else (1.0 if v > 1.0 else v)


@dataclass(frozen=True)
class TrackingSnapshot:
    status: TrackingStatus
    confidence: float
    face_count: int
    is_tracking: bool
    error: Optional[str]
    landmarks: Optional[FacialLandmarks]
    detection: Optional[FaceDetection]
    fps: float
    latency_ms: float
    updated_at: float

    @property
    def message(self):
        if self.status is TrackingStatus.ERROR and self.error:
            return f"{STATUS_MESSAGES[self.status]}: {self.error}"
        return STATUS_MESSAGES[self.status]

    def to_dict(self):
        return {
            "status": self.status.value,
            "message": self.message,
            "confidence": round(self.confidence, 4),
            "faceCount": self.face_count,
            "isTracking": self.is_tracking,
            "error": self.error,
            "landmarkCount": len(self.landmarks) if self.landmarks else 0,
            "detection": self.detection.to_dict() if self.detection else None,
            "performance": {"fps": round(self.fps, 2), "latency": round(self.latency_ms, 2)},
            "updatedAt": self.updated_at,
        }


class TrackingState:
    """Turns per-frame detector output into one stable tracking status.

    Single writer (the render loop); readers take ``snapshot()``. Once in
    ERROR every update except ``reset()`` is ignored.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._status = TrackingStatus.INITIALIZING
        self._confidence = 0.0
        self._face_count = 0
        self._error = None
        self._landmarks = None
        self._detection = None
        self._fps = 0.0
        self._latency_ms = 0.0
        self._updated_at = now_ms()

    def _set_status(self, status):
        if status is not self._status:
            log.info("tracking status %s -> %s", self._status.value, status.value)
        self._status = status
        self._updated_at = now_ms()

    def _in_error(self, op):
        if self._status is TrackingStatus.ERROR:
            log.debug("ignoring %s while in error state", op)
            return True
        return False

    def set_face_count(self, n):
        n = max(int(n), 0)
        with self._lock:
            if self._in_error("set_face_count"):
                return
            self._face_count = n
            if n == 0:
                self._set_status(TrackingStatus.NOT_DETECTED)
                self._confidence = 0.0
                self._landmarks = None
                self._detection = None
            elif n == 1:
                self._confidence = max(self._confidence, MIN_DETECTED_CONFIDENCE)
                self._set_status(TrackingStatus.DETECTED)
            else:
                self._set_status(TrackingStatus.MULTIPLE_FACES)

    def update_face_detection(self, detection: FaceDetection):
        with self._lock:
            if self._in_error("update_face_detection"):
                return
            self._detection = detection
            if not detection.detected:
                self._set_status(TrackingStatus.NOT_DETECTED)
                self._confidence = _clamp01(detection.confidence)
                self._face_count = 0
                self._landmarks = None
                return
            self._confidence = max(_clamp01(detection.confidence), MIN_DETECTED_CONFIDENCE)
            self._face_count = 1
            self._set_status(TrackingStatus.DETECTED)

    def update_facial_landmarks(self, landmarks: FacialLandmarks):
        with self._lock:
            if self._in_error("update_facial_landmarks"):
                return
            self._landmarks = landmarks
            self._confidence = max(self._confidence, _clamp01(landmarks.confidence))
            self._updated_at = now_ms()

    def set_error(self, message):
        with self._lock:
            self._error = str(message) if message else "unknown error"
            self._set_status(TrackingStatus.ERROR)
        log.error("tracking error: %s", message)

    def reset(self):
        with self._lock:
            self._error = None
            self._confidence = 0.0
            self._face_count = 0
            self._landmarks = None
            self._detection = None
            self._set_status(TrackingStatus.NOT_DETECTED)

    def record_performance(self, fps, latency_ms):
        with self._lock:
            self._fps = float(fps)
            self._latency_ms = float(latency_ms)

    @property
    def status(self):
        with self._lock:
            return self._status

    def snapshot(self) -> TrackingSnapshot:
        with self._lock:
            in_error = self._status is TrackingStatus.ERROR
            n = self._face_count
            return TrackingSnapshot(
                status=self._status,
                confidence=self._confidence,
                face_count=n,
                is_tracking=n > 0,
                error=self._error,
                landmarks=None if in_error else self._landmarks,
                detection=None if in_error else self._detection,
                fps=self._fps,
                latency_ms=self._latency_ms,
                updated_at=self._updated_at,
            )
