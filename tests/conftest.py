"""
Pytest Configuration for Proctor Vision Tests
"""
import os
import sys
import base64
import pytest
import cv2
import numpy as np
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from proctor_vision.proctor.detectors.gaze_estimator import GazeEstimator


FRAME_W = 640
FRAME_H = 480


def _eye_ring(center, half_width, half_height, start_angle):
    """16 points evenly spaced on an ellipse, including its four extremes"""
    angles = start_angle + np.arange(16) * (2 * np.pi / 16)
    return np.stack([
        center[0] + half_width * np.cos(angles),
        center[1] + half_height * np.sin(angles)
    ], axis=1)


def make_landmarks(refine=False, eye_shift=0.0, iris_offset=(0.0, 0.0)):
    """
    Synthetic face mesh for a frontal face in a 640x480 frame.
    
    eye_shift moves both eye corners sideways (turns the head);
    iris_offset moves both iris rings (only with refine=True).
    """
    count = 478 if refine else 468
    
    grid_x, grid_y = np.meshgrid(np.linspace(0.38, 0.62, 22), np.linspace(0.35, 0.75, 22))
    points = np.zeros((count, 3))
    points[:, 0] = grid_x.ravel()[:count]
    points[:, 1] = grid_y.ravel()[:count]
    
    left = _eye_ring((0.41, 0.45), 0.03, 0.012, 0.0)
    right = _eye_ring((0.59, 0.45), 0.03, 0.012, np.pi)
    points[GazeEstimator.LEFT_EYE_INDICES, :2] = left
    points[GazeEstimator.RIGHT_EYE_INDICES, :2] = right
    
    points[1, :2] = (0.5, 0.5)                      # nose tip
    points[152, :2] = (0.5, 0.5 + 110.0 / FRAME_H)   # chin
    points[33, :2] = (0.44 + eye_shift, 0.45)
    points[362, :2] = (0.56 + eye_shift, 0.45)
    points[61, :2] = (0.46, 0.6)
    points[291, :2] = (0.54, 0.6)
    points[234, :2] = (0.38, 0.5)
    points[454, :2] = (0.62, 0.5)
    
    if refine:
        cross = np.array([[0, 0], [0.004, 0], [0, 0.004], [-0.004, 0], [0, -0.004]])
        offset = np.array(iris_offset)
        points[GazeEstimator.LEFT_IRIS_INDICES, :2] = np.array([0.41, 0.45]) + offset + cross
        points[GazeEstimator.RIGHT_IRIS_INDICES, :2] = np.array([0.59, 0.45]) + offset + cross
    
    return points


def make_frame(value=128, width=FRAME_W, height=FRAME_H):
    """Uniform BGR frame"""
    return np.full((height, width, 3), value, dtype=np.uint8)


def encode_frame(frame):
    """Base64 JPEG as sent by the browser"""
    ok, buffer = cv2.imencode(".jpg", frame)
    assert ok
    return base64.b64encode(buffer.tobytes()).decode("ascii")


@pytest.fixture
def frontal_landmarks():
    """468-point frontal face"""
    return make_landmarks()


@pytest.fixture
def landmark_factory():
    return make_landmarks


@pytest.fixture
def frame_factory():
    return make_frame


@pytest.fixture
def encoded_frame():
    return encode_frame(make_frame())


@pytest.fixture(scope='session')
def app():
    """Create FastAPI app for testing"""
    from proctor_vision.main import app
    return app


@pytest.fixture(scope='function')
def client(app):
    """FastAPI test client"""
    return TestClient(app)
