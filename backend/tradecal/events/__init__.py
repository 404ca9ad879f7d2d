"""Offer/outcome event log."""

from tradecal.events.logger import OfferEventInput, TradeEventLogger, compute_input_hash

__all__ = ["OfferEventInput", "TradeEventLogger", "compute_input_hash"]
