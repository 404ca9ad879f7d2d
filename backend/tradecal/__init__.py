"""Trade acceptance calibration and drift monitoring engine."""

__version__ = "1.0.0"
