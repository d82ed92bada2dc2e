"""
proctor-vision - real-time facial signal fusion and anomaly detection
"""

__version__ = "0.1.0"
