"""Tests for the FaceMesh detector adapter (no model needed)."""
from types import SimpleNamespace

import numpy as np
import pytest

from conftest import face_points, mp_face
from face_tracker import DetectorFailure, FaceMeshDetector, landmarks_from_mediapipe


class TestConversion:

    def test_unset_visibility_reads_as_visible(self):
        lm = landmarks_from_mediapipe(mp_face(face_points()), timestamp=7.0)
        assert len(lm) == 468
        assert all(p.visibility == 1.0 for p in lm.points)
        assert lm.timestamp == 7.0
        assert lm.confidence == pytest.approx(1.0)

    def test_explicit_visibility_kept(self):
        face = mp_face(face_points())
        face.landmark[5].visibility = 0.3
        assert landmarks_from_mediapipe(face)[5].visibility == 0.3

    def test_short_mesh_is_a_failure(self):
        with pytest.raises(DetectorFailure):
            landmarks_from_mediapipe(mp_face(face_points()[:100]))

    def test_malformed_output_is_a_failure(self):
        with pytest.raises(DetectorFailure):
            landmarks_from_mediapipe(SimpleNamespace())


class TestDetect:

    def test_one_face(self, fake_mesh, one_face, frame):
        det = FaceMeshDetector(face_mesh=fake_mesh(one_face))
        result = det.detect(frame, timestamp=10.0)
        assert result.face_count == 1
        assert result.detection.detected
        assert result.detection.confidence == 1.0
        assert result.detection.bounding_box.usable
        assert result.landmarks.timestamp == 10.0

    def test_no_face(self, fake_mesh, frame):
        det = FaceMeshDetector(face_mesh=fake_mesh([]))
        result = det.detect(frame, timestamp=10.0)
        assert result.face_count == 0
        assert result.landmarks is None
        assert not result.detection.detected
        assert result.detection.confidence == 0.0

    def test_multiple_faces(self, fake_mesh, one_face, frame):
        det = FaceMeshDetector(face_mesh=fake_mesh(one_face * 2))
        assert det.detect(frame).face_count == 2

    def test_mesh_exception_becomes_detector_failure(self, fake_mesh, frame):
        det = FaceMeshDetector(face_mesh=fake_mesh(error=RuntimeError("graph died")))
        with pytest.raises(DetectorFailure, match="graph died"):
            det.detect(frame)

    def test_bad_frame(self, fake_mesh):
        det = FaceMeshDetector(face_mesh=fake_mesh())
        with pytest.raises(DetectorFailure):
            det.detect(np.zeros((4, 4), np.uint8))

    def test_close(self, fake_mesh):
        mesh = fake_mesh()
        with FaceMeshDetector(face_mesh=mesh):
            pass
        assert mesh.closed
