from codemend.calibration.calibrator import CalibrationStats, ConfidenceCalibrator, reliability_label

__all__ = ["CalibrationStats", "ConfidenceCalibrator", "reliability_label"]
