"""
Calibration error taxonomy.

- DetectionMiss: pattern not found in a frame (absorbed by the frame loop)
- InsufficientData: solve requested without any accepted view
- DegenerateFit: the fitted model failed the sanity check
- PersistenceFailure: calibration file could not be written or read
- ConfigurationError: contradictory or out-of-range options
"""


class CalibrationError(Exception):
    """Base class for every error raised by the calibration pipeline."""


class DetectionMiss(CalibrationError):
    """Pattern was not (fully) found in a frame."""

    def __init__(self, expected: int = 0):
        self.expected = expected
        super().__init__(f"Pattern not found (expected {expected} points)")


class InsufficientData(CalibrationError):
    """
    Solve attempted without enough accepted observations.

    Attributes:
        count: number of observations handed to the solver
        required: minimum number the solver needs
    """

    def __init__(self, count: int = 0, required: int = 1):
        self.count = count
        self.required = required
        super().__init__(
            f"Not enough observations to calibrate ({count} < {required})"
        )


class DegenerateFit(CalibrationError):
    """Solve finished but produced a non-finite or absurd camera model."""

    def __init__(self, camera_matrix=None, dist_coeffs=None,
                 reason: str = "camera model out of range"):
        self.camera_matrix = camera_matrix
        self.dist_coeffs = dist_coeffs
        self.reason = reason
        super().__init__(f"Calibration failed: {reason}")


class PersistenceFailure(CalibrationError):
    """Calibration file could not be written (or read back)."""

    def __init__(self, path, reason: str = ""):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cannot access calibration file {self.path}: {reason}")


class ConfigurationError(CalibrationError, ValueError):
    """Invalid option value, detected before any capture begins."""

    def __init__(self, option: str, value=None, reason: str = "invalid value"):
        self.option = option
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {option} ({value!r}): {reason}")
