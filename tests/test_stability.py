"""
Tests for StabilityTracker
"""

import pytest
import numpy as np


class TestStabilityTracker:
    """Tests for the shared rolling stability score"""
    
    def test_short_history_is_stable(self):
        """With fewer than two stored samples the score is 1.0"""
        from proctor_vision.proctor.utils import StabilityTracker
        
        tracker = StabilityTracker()
        
        assert tracker.observe(10.0) == 1.0
        assert tracker.observe(200.0) == 1.0
    
    def test_identical_samples(self):
        from proctor_vision.proctor.utils import StabilityTracker, StabilitySample
        
        tracker = StabilityTracker()
        histogram = np.ones(16)
        for _ in range(10):
            score = tracker.observe(StabilitySample(level=100.0, spread=50.0, histogram=histogram))
        
        assert score == 1.0
    
    def test_jump_reduces_score(self):
        """A level change scales down by level_scale"""
        from proctor_vision.proctor.utils import StabilityTracker
        
        tracker = StabilityTracker(level_scale=50.0)
        for _ in range(5):
            tracker.observe(100.0)
        
        assert tracker.score(125.0) == pytest.approx(0.5)
        assert tracker.score(300.0) == 0.0
    
    def test_score_computed_before_append(self):
        """observe() scores against history that excludes the new sample"""
        from proctor_vision.proctor.utils import StabilityTracker
        
        tracker = StabilityTracker(level_scale=50.0)
        tracker.observe(0.0)
        tracker.observe(0.0)
        
        assert tracker.observe(25.0) == pytest.approx(0.5)
        assert tracker.latest.stability == pytest.approx(0.5)
    
    def test_window_bounded(self):
        from proctor_vision.proctor.utils import StabilityTracker
        
        tracker = StabilityTracker(window_size=5)
        for i in range(20):
            tracker.observe(float(i))
        
        assert len(tracker) == 5
        assert [entry.sample.level for entry in tracker.history] == [15.0, 16.0, 17.0, 18.0, 19.0]
    
    def test_vector_levels(self):
        """Vector levels use Euclidean distance"""
        from proctor_vision.proctor.utils import StabilityTracker
        
        tracker = StabilityTracker(level_scale=10.0)
        tracker.observe(np.array([0.0, 0.0, 0.0]))
        tracker.observe(np.array([0.0, 0.0, 0.0]))
        
        assert tracker.score(np.array([3.0, 4.0, 0.0])) == pytest.approx(0.5)
    
    def test_missing_terms_renormalized(self):
        """Components absent from the sample are skipped"""
        from proctor_vision.proctor.utils import StabilityTracker, StabilitySample
        
        tracker = StabilityTracker(level_scale=50.0, spread_scale=100.0)
        for _ in range(3):
            tracker.observe(StabilitySample(level=10.0, spread=20.0))
        
        assert tracker.score(StabilitySample(level=10.0)) == 1.0
        assert tracker.score(StabilitySample(level=10.0, spread=70.0)) == pytest.approx(0.75)
    
    def test_reset(self):
        from proctor_vision.proctor.utils import StabilityTracker
        
        tracker = StabilityTracker()
        tracker.observe(1.0)
        tracker.reset()
        
        assert len(tracker) == 0
        assert tracker.latest is None
    
    def test_invalid_window(self):
        from proctor_vision.proctor.utils import StabilityTracker
        
        with pytest.raises(ValueError):
            StabilityTracker(window_size=1)
