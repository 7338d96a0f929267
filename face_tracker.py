import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import mediapipe as mp

from face_landmarks import (
    FACE_MESH_POINTS, FaceDetection, FacialLandmarks, LandmarkPoint,
    build_facial_landmarks, detection_from_landmarks, now_ms,
)
from try_on_settings import (
    MAX_NUM_FACES, MIN_DETECTION_CONFIDENCE, MIN_TRACKING_CONFIDENCE, REFINE_LANDMARKS,
)

log = logging.getLogger(__name__)


class DetectorFailure(Exception):
    """The face mesh raised or returned something unusable."""


@dataclass(frozen=True)
class DetectionResult:
    face_count: int
    landmarks: Optional[FacialLandmarks]
    detection: FaceDetection
    timestamp: float


def landmarks_from_mediapipe(face, timestamp=None) -> FacialLandmarks:
    """Convert one ``NormalizedLandmarkList`` into ``FacialLandmarks``.

    FaceMesh leaves visibility unset (0.0), which is read as fully visible.
    """
    try:
        raw = list(face.landmark)
    except (AttributeError, TypeError) as e:
        raise DetectorFailure(f"malformed face mesh output: {e}") from e
    if len(raw) < FACE_MESH_POINTS:
        raise DetectorFailure(f"expected {FACE_MESH_POINTS} landmarks, got {len(raw)}")
    pts = []
    for lm in raw:
        vis = getattr(lm, "visibility", None)
        pts.append(LandmarkPoint(float(lm.x), float(lm.y), float(getattr(lm, "z", 0.0)),
                                 float(vis) if vis else 1.0))
    return build_facial_landmarks(pts, timestamp)


class FaceMeshDetector:
    """MediaPipe FaceMesh wrapped to emit landmark/detection values."""

    def __init__(self, max_num_faces=MAX_NUM_FACES, refine_landmarks=REFINE_LANDMARKS,
                 min_detection_confidence=MIN_DETECTION_CONFIDENCE,
                 min_tracking_confidence=MIN_TRACKING_CONFIDENCE, face_mesh=None):
        if face_mesh is None:
            face_mesh = mp.solutions.face_mesh.FaceMesh(
                max_num_faces=max_num_faces,
                refine_landmarks=refine_landmarks,
                min_detection_confidence=min_detection_confidence,
                min_tracking_confidence=min_tracking_confidence,
            )
        self.fm = face_mesh
        self.frames = 0

    def detect(self, frame_bgr, timestamp=None) -> DetectionResult:
        ts = now_ms() if timestamp is None else timestamp
        if frame_bgr is None or getattr(frame_bgr, "ndim", 0) != 3:
            raise DetectorFailure("frame must be an HxWx3 image")
        try:
            res = self.fm.process(cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB))
        except Exception as e:
            raise DetectorFailure(f"face mesh failed: {e}") from e
        self.frames += 1

        faces = getattr(res, "multi_face_landmarks", None) or []
        if not faces:
            return DetectionResult(0, None, FaceDetection.not_detected(ts), ts)

        landmarks = landmarks_from_mediapipe(faces[0], ts)
        # the mesh does not score faces itself; a returned mesh counts as certain
        detection = detection_from_landmarks(landmarks, confidence=1.0)
        if len(faces) > 1:
            log.debug("%d faces in frame", len(faces))
        return DetectionResult(len(faces), landmarks, detection, ts)

    def close(self):
        close = getattr(self.fm, "close", None)
        if close is not None:
            close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
