"""
Background jobs for the calibration engine.

Jobs:
- calibration: intercept -> feedback -> isotonic cycle for the active season
- weekly_recalibration: shadow promotion, shadow computation and segment intercepts
- drift_detection: calibration, rank-order, segment and input drift report
- backfill_trade_outcomes: implicit ACCEPTED outcomes for analyzed historical trades
- background_calibration: backfill -> full calibration -> drift, stages isolated
- scheduler: APScheduler wiring for the jobs above
"""
