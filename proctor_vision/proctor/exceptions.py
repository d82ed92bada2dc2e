"""
Proctoring Exceptions

Only contract violations by upstream collaborators are raised. Absent faces,
insufficient calibration and numeric degeneracy are recovered where they occur.
"""


class InvalidLandmarksError(ValueError):
    """Landmark set is present but does not have the fixed point count or shape"""


class InvalidFrameError(ValueError):
    """Frame is missing, empty, or not an image array"""
