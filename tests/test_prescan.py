"""Unit tests for the advisory face prescan and factory wiring."""

from __future__ import annotations

from unittest.mock import Mock

import cv2
import numpy as np
import pytest

from conftest import encode_image
from enrollment_engine.backends.factory import create_notifier, create_prescanner, create_service
from enrollment_engine.backends.haar import HaarCascadeDetector
from enrollment_engine.backends.notifier import HttpBackendNotifier, NullNotifier
from enrollment_engine.config import Config
from enrollment_engine.interfaces import BBox, Detection
from enrollment_engine.prescan import DetectorFacePrescanner
from enrollment_engine.services.enrollment import EnrollmentService


@pytest.fixture
def mock_detector():
    return Mock()


@pytest.fixture
def config(monkeypatch):
    monkeypatch.setenv("PRESCAN_BACKEND", "none")
    monkeypatch.setenv("BACKEND_ENABLED", "0")
    return Config.from_env()


def test_prescan_counts_faces_and_ratio(mock_detector):
    """Test ratio is largest face area over frame area."""
    mock_detector.detect.return_value = [
        Detection(bbox=BBox(0, 0, 50, 50), score=0.9),
        Detection(bbox=BBox(60, 60, 80, 80), score=0.8),
    ]
    prescanner = DetectorFacePrescanner(mock_detector)

    result = prescanner.prescan(encode_image(100, 100))

    assert result.count == 2
    assert result.ratio == pytest.approx(2500 / 10000)


def test_prescan_ignores_low_scores(mock_detector):
    mock_detector.detect.return_value = [Detection(bbox=BBox(0, 0, 50, 50), score=0.2)]

    result = DetectorFacePrescanner(mock_detector).prescan(encode_image(100, 100))

    assert result.count == 0
    assert result.ratio == 0.0


def test_prescan_rejects_undecodable_bytes(mock_detector):
    with pytest.raises(ValueError):
        DetectorFacePrescanner(mock_detector).prescan(b"\xff\xd8\xffgarbage")
    mock_detector.detect.assert_not_called()


def test_haar_detector_on_noise():
    """Test the bundled cascade loads and returns a list."""
    detector = HaarCascadeDetector()
    frame = cv2.imdecode(np.frombuffer(encode_image(120, 120), dtype=np.uint8), cv2.IMREAD_COLOR)
    detections = detector.detect(frame)

    assert isinstance(detections, list)
    assert all(d.score == 1.0 for d in detections)


def test_haar_detector_missing_cascade():
    with pytest.raises(RuntimeError):
        HaarCascadeDetector(cascade_path="/nonexistent/cascade.xml")


def test_create_prescanner_none(config):
    assert create_prescanner(config) is None


def test_create_prescanner_haar(config):
    prescanner = create_prescanner(config, backend="haar")

    assert isinstance(prescanner, DetectorFacePrescanner)
    assert isinstance(prescanner.detector, HaarCascadeDetector)


def test_create_prescanner_unknown(config):
    with pytest.raises(ValueError):
        create_prescanner(config, backend="mtcnn")


def test_create_notifier_disabled(config):
    assert isinstance(create_notifier(config), NullNotifier)


def test_create_notifier_enabled(monkeypatch):
    monkeypatch.setenv("BACKEND_ENABLED", "1")
    notifier = create_notifier(Config.from_env(), async_mode=False)

    assert isinstance(notifier, HttpBackendNotifier)


def test_create_service_uses_injected_device(config):
    device = Mock()

    service = create_service(config, device=device)

    assert isinstance(service, EnrollmentService)
    assert service.queue.default_timeout == config.queue_timeout
    assert service.orchestrator.validator.prescanner is None
