"""
Tests for GazeEstimator
"""

import pytest


CORNERS = [
    ((100.0, 100.0), (-0.3, -0.2)),
    ((1800.0, 100.0), (0.3, -0.2)),
    ((100.0, 1000.0), (-0.3, 0.2)),
    ((1800.0, 1000.0), (0.3, 0.2)),
]


class TestGazeEstimator:
    """Tests for gaze estimation and screen mapping"""
    
    def test_no_face(self):
        """Absent landmarks give no gaze and never count as on-screen"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator()
        point = estimator.estimate_gaze(None, 640, 480, timestamp=1.0)
        
        assert not point.detected
        assert point.confidence == 0.0
        assert estimator.is_gaze_on_screen(point) is False
    
    def test_frontal_gaze_hits_screen_center(self, frontal_landmarks):
        """Centered irises look straight ahead"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator(screen_width=1920, screen_height=1080)
        point = estimator.estimate_gaze(frontal_landmarks, 640, 480, timestamp=1.0)
        
        assert point.detected
        assert point.screen_x == pytest.approx(960, abs=1)
        assert point.screen_y == pytest.approx(540, abs=1)
        assert point.vector.z == pytest.approx(-1.0, abs=1e-6)
        assert not point.calibrated
        assert estimator.is_gaze_on_screen(point)
    
    def test_uncalibrated_confidence_penalty(self, frontal_landmarks):
        """Uncalibrated points carry 0.7 of the eye confidence"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator()
        point = estimator.estimate_gaze(frontal_landmarks, 640, 480)
        
        assert point.confidence == pytest.approx(point.vector.confidence * 0.7)
    
    def test_custom_uncalibrated_penalty(self, frontal_landmarks):
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator(uncalibrated_penalty=0.5, viewing_distance_mm=400.0)
        point = estimator.estimate_gaze(frontal_landmarks, 640, 480)
        
        assert point.confidence == pytest.approx(point.vector.confidence * 0.5)
        
        with pytest.raises(ValueError):
            GazeEstimator(viewing_distance_mm=0.0)
        with pytest.raises(ValueError):
            GazeEstimator(uncalibrated_penalty=1.5)
    
    def test_iris_offset_moves_gaze(self, landmark_factory):
        """Iris displacement to the right moves the point right"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator(smoothing=0.0)
        point = estimator.estimate_gaze(landmark_factory(refine=True, iris_offset=(0.003, 0.0)), 640, 480)
        
        assert point.vector.x > 0
        assert point.screen_x > 960
    
    def test_uncalibrated_point_clamped(self, landmark_factory):
        """Geometric mapping never leaves the screen"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator(smoothing=0.0)
        point = estimator.estimate_gaze(landmark_factory(refine=True, iris_offset=(0.02, 0.0)), 640, 480)
        
        assert 0 <= point.screen_x <= 1920
        assert 0 <= point.screen_y <= 1080
    
    def test_smoothing_full(self, frontal_landmarks, landmark_factory):
        """Smoothing 1 keeps the first point"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator(smoothing=1.0)
        first = estimator.estimate_gaze(frontal_landmarks, 640, 480, timestamp=0.0)
        moved = estimator.estimate_gaze(
            landmark_factory(refine=True, iris_offset=(0.003, 0.0)), 640, 480, timestamp=0.1
        )
        
        assert moved.screen_x == pytest.approx(first.screen_x)
        assert moved.screen_y == pytest.approx(first.screen_y)
    
    def test_smoothing_disabled(self, frontal_landmarks, landmark_factory):
        """Smoothing 0 follows the raw estimate"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        moved_landmarks = landmark_factory(refine=True, iris_offset=(0.003, 0.0))
        
        estimator = GazeEstimator(smoothing=0.0)
        estimator.estimate_gaze(frontal_landmarks, 640, 480, timestamp=0.0)
        smoothed = estimator.estimate_gaze(moved_landmarks, 640, 480, timestamp=0.1)
        
        raw = GazeEstimator(smoothing=0.0).estimate_gaze(moved_landmarks, 640, 480, timestamp=0.1)
        
        assert smoothed.screen_x == pytest.approx(raw.screen_x)
    
    def test_invalid_landmarks_raise(self):
        """Malformed landmarks raise instead of returning a result"""
        from proctor_vision.proctor.detectors import GazeEstimator
        from proctor_vision.proctor.exceptions import InvalidLandmarksError
        
        with pytest.raises(InvalidLandmarksError):
            GazeEstimator().estimate_gaze([[0.1, 0.2, 0.0]] * 12, 640, 480)
    
    def test_low_confidence_not_on_screen(self):
        """A gaze point below the confidence threshold is off-screen"""
        from proctor_vision.proctor.detectors import GazeEstimator
        from proctor_vision.proctor.types import GazePoint
        
        estimator = GazeEstimator(confidence_threshold=0.5)
        
        assert not estimator.is_gaze_on_screen(GazePoint(960, 540, 0.3, 0.0))
        assert estimator.is_gaze_on_screen(GazePoint(960, 540, 0.8, 0.0))
        assert not estimator.is_gaze_on_screen(GazePoint(2500, 540, 0.8, 0.0))
    
    def test_calibrated_mapping(self, frontal_landmarks):
        """After four calibration points the homography drives the mapping"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator(smoothing=0.0)
        results = [estimator.add_calibration_point(screen, gaze) for screen, gaze in CORNERS]
        
        assert results == [False, False, False, True]
        assert estimator.is_calibrated
        
        point = estimator.estimate_gaze(frontal_landmarks, 640, 480)
        
        assert point.calibrated
        assert point.screen_x == pytest.approx(950, abs=1)
        assert point.screen_y == pytest.approx(550, abs=1)
        assert point.confidence == pytest.approx(point.vector.confidence)
    
    def test_reset_calibration(self):
        """Resetting returns to the geometric mapping"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator()
        for screen, gaze in CORNERS:
            estimator.add_calibration_point(screen, gaze)
        estimator.reset_calibration()
        
        assert not estimator.is_calibrated
        assert estimator.calibration_point_count == 0
    
    def test_export_and_load_calibration(self):
        """A calibration survives export and load"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        source = GazeEstimator()
        for screen, gaze in CORNERS:
            source.add_calibration_point(screen, gaze)
        profile = source.export_calibration("student_1")
        
        target = GazeEstimator()
        assert target.load_calibration(profile)
        assert target.calibration.map((0.3, 0.2)) == pytest.approx((1800.0, 1000.0), abs=1e-3)
    
    def test_validate_gaze(self):
        """Validation measures the distance to a target"""
        from proctor_vision.proctor.detectors import GazeEstimator
        from proctor_vision.proctor.types import GazePoint, NotDetected
        
        estimator = GazeEstimator()
        
        near = estimator.validate_gaze(GazePoint(1000, 500, 0.9, 0.0), (960, 540))
        assert near.is_valid
        assert near.error_px == pytest.approx(56.57, abs=0.01)
        
        far = estimator.validate_gaze(GazePoint(100, 100, 0.9, 0.0), (960, 540))
        assert not far.is_valid
        
        missing = estimator.validate_gaze(NotDetected(timestamp=0.0), (960, 540))
        assert not missing.is_valid
        assert missing.accuracy == 0.0
    
    def test_update_screen_dimensions(self):
        """Screen dimensions must be positive"""
        from proctor_vision.proctor.detectors import GazeEstimator
        
        estimator = GazeEstimator()
        estimator.update_screen_dimensions(1280, 720)
        
        assert estimator.screen_center == (640, 360)
        with pytest.raises(ValueError):
            estimator.update_screen_dimensions(0, 720)
