"""
Fee routing and mixing engine.

Wallet pool -> fee ledger -> mixing scheduler -> cycle manager -> status
reporter, wired together by FeeRoutingEngine.
"""

from backend_feerouter.routing.cycle_manager import CycleReport
from backend_feerouter.routing.engine import FeeRoutingEngine, parse_amount
from backend_feerouter.routing.status import ConservationReport, Subscription

__all__ = [
    "ConservationReport",
    "CycleReport",
    "FeeRoutingEngine",
    "Subscription",
    "parse_amount",
]
