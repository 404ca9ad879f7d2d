"""
Acceptance-probability calibration.

Import CalibrationService from tradecal.calibration.service; this package
module stays import-free so drift monitoring can depend on the calibration
primitives.
"""
