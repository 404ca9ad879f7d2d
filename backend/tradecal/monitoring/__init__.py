"""Drift monitoring."""

from tradecal.monitoring.drift_monitor import DriftMonitor
from tradecal.monitoring.valuation_source import DRIFT_MARKET_CONFIGS, MarketConfig, PlayerValue, ValuationSource

__all__ = ["DRIFT_MARKET_CONFIGS", "DriftMonitor", "MarketConfig", "PlayerValue", "ValuationSource"]
