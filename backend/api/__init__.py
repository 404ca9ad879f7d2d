"""Admin HTTP surface for the calibration engine."""
