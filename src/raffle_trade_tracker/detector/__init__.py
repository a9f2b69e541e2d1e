"""Detection layer - Incremental polling, failover and ticket math."""

from raffle_trade_tracker.detector.failover import FailoverController, FailoverState, SourceChoice
from raffle_trade_tracker.detector.poller import DetectorStats, TradeDetector
from raffle_trade_tracker.detector.tickets import MAX_SAFE_INTEGER, TicketRatio, compute_ticket_delta
from raffle_trade_tracker.detector.watermark import DetectorPhase, WatermarkState

__all__ = [
    "DetectorPhase",
    "DetectorStats",
    "FailoverController",
    "FailoverState",
    "MAX_SAFE_INTEGER",
    "SourceChoice",
    "TicketRatio",
    "TradeDetector",
    "WatermarkState",
    "compute_ticket_delta",
]
