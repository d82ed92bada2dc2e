"""
Tests for HeadPoseEstimator
"""

import pytest
import numpy as np


class TestHeadPoseEstimator:
    """Tests for head pose estimation from face mesh landmarks"""
    
    def test_frontal_face(self, frontal_landmarks):
        """Frontal face gives near-zero angles with high confidence"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        estimator = HeadPoseEstimator()
        pose = estimator.estimate_pose(frontal_landmarks, 640, 480, timestamp=1.0)
        
        assert pose.detected
        assert abs(pose.yaw) < 5
        assert abs(pose.pitch) < 5
        assert abs(pose.roll) < 5
        assert pose.confidence > 0.8
        assert pose.timestamp == 1.0
    
    def test_no_face(self):
        """Absent landmarks produce a not-detected result"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        estimator = HeadPoseEstimator()
        pose = estimator.estimate_pose(None, 640, 480, timestamp=2.0)
        
        assert not pose.detected
        assert pose.confidence == 0.0
        assert pose.timestamp == 2.0
    
    def test_wrong_landmark_count_raises(self):
        """A landmark set of the wrong size is rejected"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        from proctor_vision.proctor.exceptions import InvalidLandmarksError
        
        estimator = HeadPoseEstimator()
        
        with pytest.raises(InvalidLandmarksError):
            estimator.estimate_pose(np.zeros((100, 3)), 640, 480)
    
    def test_refined_landmarks_accepted(self, landmark_factory):
        """478-point sets (with iris) are accepted"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        estimator = HeadPoseEstimator()
        pose = estimator.estimate_pose(landmark_factory(refine=True), 640, 480)
        
        assert pose.detected
    
    def test_turned_head_yaw(self, landmark_factory):
        """Shifting the eye corners sideways turns the head"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        estimator = HeadPoseEstimator(smoothing=0.0)
        right = estimator.estimate_pose(landmark_factory(eye_shift=0.1), 640, 480)
        estimator.reset()
        left = estimator.estimate_pose(landmark_factory(eye_shift=-0.1), 640, 480)
        
        assert right.yaw > 5
        assert left.yaw < -5
        assert right.yaw == pytest.approx(-left.yaw)
    
    def test_smoothing_disabled(self, frontal_landmarks, landmark_factory):
        """With smoothing 0 the output equals the raw estimate"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        estimator = HeadPoseEstimator(smoothing=0.0)
        estimator.estimate_pose(frontal_landmarks, 640, 480, timestamp=0.0)
        smoothed = estimator.estimate_pose(landmark_factory(eye_shift=0.1), 640, 480, timestamp=0.1)
        
        raw = HeadPoseEstimator(smoothing=0.0).estimate_pose(
            landmark_factory(eye_shift=0.1), 640, 480, timestamp=0.1
        )
        assert smoothed.yaw == pytest.approx(raw.yaw)
    
    def test_smoothing_full(self, frontal_landmarks, landmark_factory):
        """With smoothing 1 the output stays at the first pose"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        estimator = HeadPoseEstimator(smoothing=1.0)
        first = estimator.estimate_pose(frontal_landmarks, 640, 480, timestamp=0.0)
        
        for i in range(5):
            pose = estimator.estimate_pose(landmark_factory(eye_shift=0.1), 640, 480, timestamp=0.1 * (i + 1))
        
        assert pose.yaw == pytest.approx(first.yaw)
        assert pose.pitch == pytest.approx(first.pitch)
    
    def test_invalid_smoothing(self):
        """Smoothing outside [0, 1] is rejected"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        with pytest.raises(ValueError):
            HeadPoseEstimator(smoothing=1.5)
    
    def test_confidence_decreases_past_threshold(self):
        """Confidence keeps falling as an angle moves past its threshold"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        estimator = HeadPoseEstimator()
        values = [estimator.compute_confidence(yaw, 0, 0, 60) for yaw in (20, 30, 40, 60, 90)]
        
        assert values[0] == 1.0
        assert all(a > b for a, b in zip(values, values[1:]))
        assert all(0.0 <= v <= 1.0 for v in values)
    
    def test_spread_penalty(self):
        """Implausibly small faces lose confidence"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        estimator = HeadPoseEstimator()
        
        assert estimator.compute_confidence(0, 0, 0, 5) == pytest.approx(0.6)
        assert estimator.compute_confidence(0, 0, 0, 60) == 1.0
    
    def test_custom_extreme_angles(self):
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        default = HeadPoseEstimator()
        relaxed = HeadPoseEstimator(extreme_angles={"yaw": 45.0}, spread_band=(2.0, 300.0))
        
        assert default.compute_confidence(35, 0, 0, 60) < 1.0
        assert relaxed.compute_confidence(35, 0, 0, 60) == 1.0
        assert relaxed.compute_confidence(0, 0, 0, 5) == 1.0
        assert relaxed.extreme_angles["pitch"] == default.extreme_angles["pitch"]
        
        with pytest.raises(ValueError):
            HeadPoseEstimator(extreme_angles={"roll": 0.0})
    
    def test_validate_pose(self):
        """Validation reports extreme angles and missing faces"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        from proctor_vision.proctor.types import HeadPose, NotDetected
        
        estimator = HeadPoseEstimator()
        
        good = estimator.validate_pose(HeadPose(yaw=5, pitch=3, roll=1, confidence=0.9, timestamp=0))
        assert good.is_valid
        assert good.issues == []
        
        extreme = estimator.validate_pose(HeadPose(yaw=95, pitch=3, roll=1, confidence=0.9, timestamp=0))
        assert not extreme.is_valid
        assert any("yaw" in issue for issue in extreme.issues)
        
        missing = estimator.validate_pose(NotDetected(timestamp=0))
        assert not missing.is_valid
        assert missing.issues == ["No face detected"]
    
    def test_stability_tracks_movement(self, frontal_landmarks, landmark_factory):
        """Pose stability drops when the head moves"""
        from proctor_vision.proctor.detectors import HeadPoseEstimator
        
        estimator = HeadPoseEstimator(smoothing=0.0)
        for i in range(4):
            estimator.estimate_pose(frontal_landmarks, 640, 480, timestamp=i * 0.1)
        assert estimator.stability == 1.0
        
        estimator.estimate_pose(landmark_factory(eye_shift=0.1), 640, 480, timestamp=0.5)
        assert estimator.stability < 1.0
