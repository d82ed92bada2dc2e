"""
Tests for data types, sinks and metrics aggregation
"""

import pytest
import numpy as np


class TestLandmarkSet:
    """Tests for landmark validation"""
    
    def test_accepts_face_mesh_sizes(self):
        from proctor_vision.proctor.types import LandmarkSet
        
        assert not LandmarkSet.from_array(np.zeros((468, 3))).has_iris
        assert LandmarkSet.from_array(np.zeros((478, 3))).has_iris
    
    def test_two_column_input(self):
        from proctor_vision.proctor.types import LandmarkSet
        
        landmarks = LandmarkSet.from_array(np.zeros((468, 2)))
        
        assert landmarks.points.shape == (468, 3)
    
    @pytest.mark.parametrize("data", [
        np.zeros((467, 3)),
        np.zeros((468, 4)),
        np.zeros(468),
        [["a", "b", "c"]] * 468,
    ])
    def test_rejects_bad_input(self, data):
        from proctor_vision.proctor.types import LandmarkSet
        from proctor_vision.proctor.exceptions import InvalidLandmarksError
        
        with pytest.raises(InvalidLandmarksError):
            LandmarkSet.from_array(data)
    
    def test_rejects_non_finite(self):
        from proctor_vision.proctor.types import LandmarkSet
        from proctor_vision.proctor.exceptions import InvalidLandmarksError
        
        data = np.zeros((468, 3))
        data[10, 0] = np.nan
        
        with pytest.raises(InvalidLandmarksError):
            LandmarkSet.from_array(data)
    
    def test_invalid_landmarks_is_value_error(self):
        from proctor_vision.proctor.exceptions import InvalidLandmarksError
        
        assert issubclass(InvalidLandmarksError, ValueError)
    
    def test_points_read_only(self, frontal_landmarks):
        from proctor_vision.proctor.types import LandmarkSet
        
        landmarks = LandmarkSet.from_array(frontal_landmarks)
        
        with pytest.raises(ValueError):
            landmarks.points[0, 0] = 1.0
    
    def test_bounding_box(self, frontal_landmarks):
        from proctor_vision.proctor.types import LandmarkSet
        
        box = LandmarkSet.from_array(frontal_landmarks).bounding_box(640, 480)
        
        assert box.x == pytest.approx(0.38 * 640)
        assert box.width == pytest.approx(0.24 * 640)


class TestBoundingBox:
    def test_overlap_fraction(self):
        from proctor_vision.proctor.types import BoundingBox
        
        big = BoundingBox(0, 0, 100, 100)
        small = BoundingBox(50, 50, 20, 20)
        apart = BoundingBox(200, 200, 10, 10)
        
        assert big.overlap_fraction(small) == 1.0
        assert big.overlap_fraction(apart) == 0.0
        assert small.center == (60, 60)


class TestSignalBundle:
    def test_from_mapping(self):
        from proctor_vision.proctor.types import SignalBundle
        
        bundle = SignalBundle.from_mapping({
            "timestamp": 3,
            "face_detected": True,
            "head_pose": {"yaw": 10, "pitch": -5},
            "gaze": {"x": 0.1, "y": 0.0, "z": -0.99, "confidence": 0.8},
            "environment": {"overall_score": 0.9, "shadow_anomaly": False},
            "secondary_faces": 2,
            "unknown": "ignored"
        })
        
        assert bundle.timestamp == 3.0
        assert bundle.head_pose.yaw == 10.0
        assert bundle.head_pose.roll == 0.0
        assert bundle.gaze.confidence == 0.8
        assert bundle.environment.shadow_stability == 1.0
        assert bundle.secondary_faces == 2
        assert bundle.device_like_objects is None
        assert bundle.tab_hidden is None
    
    def test_malformed_fields_dropped(self):
        from proctor_vision.proctor.types import SignalBundle
        
        bundle = SignalBundle.from_mapping({
            "timestamp": float("inf"),
            "face_detected": "yes",
            "secondary_faces": -1,
            "device_like_objects": True
        })
        
        assert bundle == SignalBundle()


class TestFlagEvent:
    def test_to_dict(self):
        from proctor_vision.proctor.types import FlagEvent, FlagType, Severity
        
        event = FlagEvent(
            id="flag_1_0",
            timestamp=0.0,
            type=FlagType.DEVICE_LIKE,
            severity=Severity.HARD,
            confidence=0.87654,
            details={"count": 1}
        )
        data = event.to_dict()
        
        assert data["type"] == "DEVICE_LIKE"
        assert data["severity"] == "hard"
        assert data["confidence"] == 0.877
    
    def test_immutable(self):
        from dataclasses import FrozenInstanceError
        from proctor_vision.proctor.types import FlagEvent, FlagType, Severity
        
        event = FlagEvent("f", 0.0, FlagType.TAB_HIDDEN, Severity.HARD, 1.0)
        
        with pytest.raises(FrozenInstanceError):
            event.confidence = 0.5


class TestSinks:
    def test_bounded_sink(self):
        from proctor_vision.proctor.sinks import InMemorySink
        
        sink = InMemorySink(max_entries=3)
        for i in range(5):
            sink.write(i)
        
        assert sink.entries == [2, 3, 4]
        assert sink.drain() == [2, 3, 4]
        assert len(sink) == 0
    
    def test_callback_sink_swallows_errors(self):
        from proctor_vision.proctor.sinks import CallbackSink
        
        received = []
        CallbackSink(received.append).write("flag")
        assert received == ["flag"]
        
        def broken(entry):
            raise RuntimeError("downstream unavailable")
        
        CallbackSink(broken).write("flag")


class TestMetricsAggregator:
    def test_ratios_and_summary(self):
        from proctor_vision.proctor.metrics import MetricsAggregator
        from proctor_vision.proctor.types import FlagEvent, FlagType, Severity, SignalBundle
        
        metrics = MetricsAggregator(session_id="EXM_TEST")
        metrics.update(SignalBundle(timestamp=0.0, face_detected=False), [], 0.0)
        metrics.update(SignalBundle(timestamp=0.1, face_detected=True, eyes_on_screen=True), [], 0.0)
        metrics.update(
            SignalBundle(timestamp=0.2, tab_hidden=True),
            [FlagEvent("f", 0.2, FlagType.TAB_HIDDEN, Severity.HARD, 1.0)],
            25.0
        )
        metrics.add_skipped_frame()
        
        ratios = metrics.get_ratios()
        summary = metrics.get_summary()
        
        assert ratios["face_absence"] == pytest.approx(100 / 3)
        assert ratios["tab_hidden"] == pytest.approx(100 / 3)
        assert summary["flag_counts"] == {"TAB_HIDDEN": 1}
        assert summary["skipped_frames"] == 1
        assert summary["peak_risk_score"] == 25.0
        
        metrics.reset()
        assert metrics.frame_count == 0
    
    def test_fullscreen_and_reported_flags(self):
        from proctor_vision.proctor.metrics import MetricsAggregator
        from proctor_vision.proctor.types import FlagEvent, FlagType, Severity, SignalBundle
        
        metrics = MetricsAggregator(session_id="EXM_TEST")
        metrics.update(SignalBundle(timestamp=0.0, fullscreen_exited=True), [], 0.0)
        metrics.update(SignalBundle(timestamp=0.1, fullscreen_exited=False), [], 0.0)
        metrics.record_flags(
            [FlagEvent("f", 0.2, FlagType.INTEGRITY_VIOLATION, Severity.HARD, 1.0)],
            37.5
        )
        
        assert metrics.get_ratios()["fullscreen_exit"] == pytest.approx(50.0)
        assert metrics.frame_count == 2
        assert metrics.get_summary()["flag_counts"] == {"INTEGRITY_VIOLATION": 1}
        assert metrics.peak_risk_score == 37.5
