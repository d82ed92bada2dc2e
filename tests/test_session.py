"""
Tests for ProctorSession
"""

import asyncio
import pytest


@pytest.fixture
def session():
    from proctor_vision.proctor.session import ProctorSession
    
    return ProctorSession(assessment_id="assessment-1", student_id="student-1")


class TestProctorSession:
    """Tests for the per-frame pipeline"""
    
    def test_session_id(self, session):
        assert session.id.startswith("EXM_")
        assert session.is_active
        assert session.engine.is_running
    
    def test_attentive_frame(self, session, frame_factory, frontal_landmarks):
        """A frontal, attentive face raises no flags"""
        result = session.process_frame(frame_factory(), frontal_landmarks, timestamp=0.0)
        
        assert result["processed"]
        assert result["flags"] == []
        assert result["risk_score"] == 0.0
        assert result["detections"]["face_present"]
        assert result["detections"]["gaze"]["on_screen"] is True
        assert abs(result["detections"]["head_pose"]["yaw"]) < 5
        assert result["frame_count"] == 1
    
    def test_face_missing_flag(self, session, frame_factory):
        from proctor_vision.proctor.types import FlagType
        
        for i in range(13):
            session.process_frame(frame_factory(), None, timestamp=i * 0.1)
        
        flags = session.flag_sink.entries
        assert [f.type for f in flags] == [FlagType.FACE_MISSING]
        assert session.metrics.face_absent_count == 13
        assert len(session.log_sink) == 13
    
    def test_log_records(self, session, frame_factory, frontal_landmarks):
        session.process_frame(frame_factory(), frontal_landmarks, timestamp=0.0)
        record = session.log_sink.entries[0]
        
        assert record.face_present
        assert record.eyes_on is True
        assert record.flag_type is None
        assert record.head_pose is not None
        assert record.to_dict()["risk_score"] == 0.0
    
    def test_tab_hidden(self, session, frame_factory, frontal_landmarks):
        from proctor_vision.proctor.types import FlagType
        
        session.set_tab_hidden(True)
        result = session.process_frame(frame_factory(), frontal_landmarks, timestamp=0.0)
        
        assert [f["type"] for f in result["flags"]] == [FlagType.TAB_HIDDEN.value]
        assert result["risk_score"] == 37.5
        assert session.log_sink.entries[-1].flag_type == "TAB_HIDDEN"
    
    def test_invalid_landmarks(self, session, frame_factory):
        from proctor_vision.proctor.exceptions import InvalidLandmarksError
        
        with pytest.raises(InvalidLandmarksError):
            session.process_frame(frame_factory(), [[0.5, 0.5, 0.0]] * 10, timestamp=0.0)
    
    def test_unusable_frame_skipped(self, session, frame_factory):
        result = session.process_frame(frame_factory(128, 16, 16), None, timestamp=0.0)
        
        assert not result["processed"]
        assert "too_small" in result["quality_issues"]
        assert session.metrics.skipped_frame_count == 1
        assert session.metrics.frame_count == 0
    
    def test_async_processing(self, session, frame_factory, frontal_landmarks):
        """Landmarks from an async detector feed the same pipeline"""
        calls = []
        
        async def detect(frame):
            calls.append(frame.shape)
            await asyncio.sleep(0)
            return frontal_landmarks
        
        async def process_two():
            return await asyncio.gather(
                session.process_frame_async(frame_factory(), detect, timestamp=0.0),
                session.process_frame_async(frame_factory(), detect, timestamp=0.1)
            )
        
        results = asyncio.run(process_two())
        
        assert all(r["processed"] for r in results)
        assert len(calls) == 2
        assert session.metrics.frame_count == 2
    
    def test_calibration_point_needs_gaze(self, session, frame_factory, frontal_landmarks):
        result = session.add_calibration_point(960, 540)
        assert not result["accepted"]
        
        session.process_frame(frame_factory(), frontal_landmarks, timestamp=0.0)
        result = session.add_calibration_point(960, 540)
        
        assert result["accepted"]
        assert result["points"] == 1
        assert not result["calibrated"]
    
    def test_save_and_load_calibration(self, session):
        from proctor_vision.proctor.session import ProctorSession
        
        corners = [
            ((100, 100), (-0.3, -0.2)),
            ((1800, 100), (0.3, -0.2)),
            ((100, 1000), (-0.3, 0.2)),
            ((1800, 1000), (0.3, 0.2)),
        ]
        for (sx, sy), gaze in corners:
            result = session.add_calibration_point(sx, sy, gaze)
        assert result["calibrated"]
        
        profile = session.save_calibration()
        assert profile.id == f"student-1_{session.id}"
        
        other = ProctorSession("assessment-2", "student-1", profile_store=session.profile_store)
        assert other.load_calibration()
        assert other.gaze_estimator.is_calibrated
        assert not other.load_calibration("unknown")
    
    def test_status(self, session, frame_factory, frontal_landmarks):
        session.process_frame(frame_factory(), frontal_landmarks, timestamp=0.0)
        status = session.get_status()
        
        assert status["frames_processed"] == 1
        assert status["risk_score"] == 0.0
        assert not status["under_review"]
        assert not status["calibrated"]
    
    def test_finalize(self, session, frame_factory):
        session.set_tab_hidden(True)
        session.process_frame(frame_factory(), None, timestamp=0.0)
        
        result = session.finalize()
        
        assert not session.is_active
        assert not session.engine.is_running
        assert result["flag_counts"] == {"TAB_HIDDEN": 1}
        assert result["peak_risk_score"] == 37.5
        assert result["frames_processed"] == 1
        assert result["risk_level"] == "medium"
        assert session.finalize() is result
        assert "error" in session.process_frame(frame_factory(), None, timestamp=1.0)


class TestSessionConfiguration:
    """Settings are wired into the analyzers and the engine"""
    
    def test_custom_settings(self, frame_factory):
        from proctor_vision.config import Settings
        from proctor_vision.proctor.session import ProctorSession
        
        config = Settings(
            HARD_EVENT_PENALTY=10.0, HARD_SEVERITY_MULTIPLIER=1.0, SCREEN_WIDTH=1280, SCREEN_HEIGHT=720
        )
        session = ProctorSession("assessment-1", "student-1", config=config)
        session.set_tab_hidden(True)
        result = session.process_frame(frame_factory(), None, timestamp=0.0)
        
        assert result["risk_score"] == 10.0
        assert session.gaze_estimator.screen_center == (640, 360)
    
    def test_scoring_settings(self):
        from proctor_vision.config import Settings
        from proctor_vision.proctor.session import ProctorSession
        from proctor_vision.proctor.types import FlagType
        
        assert Settings().HEAD_POSE_PENALTY == 2.0
        
        config = Settings(
            HEAD_POSE_PENALTY=5.0,
            FACE_MISSING_PENALTY=6.0,
            SHADOW_ANOMALY_PENALTY=7.0,
            TAB_HIDDEN_SECONDS=1.0,
            EYES_OFF_HARD_SECONDS=20.0,
            EYES_OFF_PENALTY_PER_SECOND=0.5,
            CLEAN_BEHAVIOR_SECONDS=2.0,
            DOWN_GLANCE_COUNT=5
        )
        engine = ProctorSession("assessment-1", "student-1", config=config).engine
        
        assert engine.risk.penalties[FlagType.HEAD_POSE] == 5.0
        assert engine.risk.penalties[FlagType.FACE_MISSING] == 6.0
        assert engine.risk.penalties[FlagType.SHADOW_ANOMALY] == 7.0
        assert engine.risk.accrual_rates[FlagType.EYES_OFF] == 0.5
        assert engine.risk.clean_window == 2.0
        assert engine.rules[FlagType.TAB_HIDDEN].hard_duration == 1.0
        assert engine.rules[FlagType.EYES_OFF].hard_duration == 20.0
        assert engine.limits["down_glance_count"] == 5
    
    def test_analyzer_settings(self):
        from proctor_vision.config import Settings
        from proctor_vision.proctor.session import ProctorSession
        
        config = Settings(
            HEAD_POSE_EXTREME_YAW=40.0,
            HEAD_POSE_SPREAD_MIN=10.0,
            GAZE_VIEWING_DISTANCE_MM=450.0,
            GAZE_UNCALIBRATED_PENALTY=0.5,
            OBJECT_MAX_AREA_FRACTION=0.4,
            DEVICE_ASPECT_MIN=0.3,
            DEVICE_MOTION_THRESHOLD=0.2,
            DEVICE_HIGHLIGHT_THRESHOLD=0.9,
            BACKLIGHTING_WARNING=0.6,
            LIGHTING_VARIANCE_WARNING=1500.0
        )
        session = ProctorSession("assessment-1", "student-1", config=config)
        
        assert session.head_pose.extreme_angles["yaw"] == 40.0
        assert session.head_pose.spread_band == (10.0, 200.0)
        assert session.gaze_estimator.viewing_distance_mm == 450.0
        assert session.gaze_estimator.uncalibrated_penalty == 0.5
        thresholds = session.object_detector.thresholds
        assert thresholds["max_area_fraction"] == 0.4
        assert thresholds["device_aspect_min"] == 0.3
        assert thresholds["motion"] == 0.2
        assert thresholds["highlight"] == 0.9
        assert session.environment.thresholds["backlighting_warning"] == 0.6
        assert session.environment.thresholds["variance_warning"] == 1500.0


class TestBrowserEvents:
    """Fullscreen changes and integrity reports from the frontend"""
    
    def test_fullscreen_exit(self, session, frame_factory, frontal_landmarks):
        session.set_fullscreen(False)
        result = session.process_frame(frame_factory(), frontal_landmarks, timestamp=0.0)
        
        assert [f["type"] for f in result["flags"]] == ["FULLSCREEN_EXIT"]
        assert session.metrics.fullscreen_exit_count == 1
        
        session.set_fullscreen(True)
        result = session.process_frame(frame_factory(), frontal_landmarks, timestamp=0.1)
        assert result["flags"] == []
        assert not session.fullscreen_exited
    
    def test_integrity_violation(self, session):
        flag = session.report_integrity_violation("dev-tools", {"source": "keyboard"}, timestamp=2.0)
        
        assert flag["type"] == "INTEGRITY_VIOLATION"
        assert flag["severity"] == "hard"
        assert flag["details"]["violation_type"] == "dev-tools"
        assert session.engine.get_risk_score() == 37.5
        assert session.flag_sink.entries[-1].type.value == "INTEGRITY_VIOLATION"
        assert session.metrics.flag_counts["INTEGRITY_VIOLATION"] == 1
    
    def test_integrity_violation_after_finalize(self, session):
        session.finalize()
        
        assert session.report_integrity_violation("copy-paste") is None
