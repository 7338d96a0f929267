"""Shared fixtures: synthetic face meshes and fake detector collaborators."""
from types import SimpleNamespace

import numpy as np
import pytest

from face_landmarks import LandmarkPoint, build_facial_landmarks

# Anchor landmarks placed on a plausible frontal face.
ANCHORS = {
    1: (0.50, 0.55),    # nose tip
    10: (0.50, 0.15),   # forehead top
    108: (0.42, 0.20),
    337: (0.58, 0.20),
    159: (0.42, 0.40),  # eye upper lids
    386: (0.58, 0.40),
    33: (0.40, 0.41),
    263: (0.60, 0.41),
    234: (0.30, 0.50),  # cheeks
    454: (0.70, 0.50),
    152: (0.50, 0.85),  # chin
}


def face_points(vis=1.0, overrides=None, n=468):
    """468 points spread over [0.3, 0.7] x [0.15, 0.85] with fixed anchors."""
    pts = []
    for i in range(n):
        x = 0.32 + 0.36 * ((i * 37) % 100) / 100.0
        y = 0.18 + 0.64 * ((i * 61) % 100) / 100.0
        if i in ANCHORS:
            x, y = ANCHORS[i]
        pts.append(LandmarkPoint(x, y, 0.0, vis))
    for idx, value in (overrides or {}).items():
        pts[idx] = value
    return pts


@pytest.fixture
def make_points():
    return face_points


@pytest.fixture
def make_landmarks():
    def _make(vis=1.0, overrides=None, timestamp=1000.0):
        return build_facial_landmarks(face_points(vis, overrides), timestamp)
    return _make


@pytest.fixture
def landmarks(make_landmarks):
    return make_landmarks()


@pytest.fixture
def frame():
    return np.full((480, 640, 3), 100, np.uint8)


def mp_face(points):
    """Object shaped like a mediapipe NormalizedLandmarkList."""
    return SimpleNamespace(landmark=[
        SimpleNamespace(x=p.x, y=p.y, z=p.z, visibility=0.0) for p in points
    ])


class FakeFaceMesh:
    """Stands in for mediapipe FaceMesh; returns the queued faces per call."""

    def __init__(self, faces_per_call=None, error=None):
        self.faces_per_call = list(faces_per_call or [])
        self.error = error
        self.calls = 0
        self.closed = False

    def process(self, rgb):
        self.calls += 1
        if self.error is not None:
            raise self.error
        faces = self.faces_per_call.pop(0) if self.faces_per_call else []
        return SimpleNamespace(multi_face_landmarks=faces or None)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_mesh():
    def _make(*faces_per_call, error=None):
        return FakeFaceMesh(faces_per_call, error)
    return _make


@pytest.fixture
def one_face():
    return [mp_face(face_points())]
