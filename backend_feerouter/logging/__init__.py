"""
Structured logging for Backend FeeRouter.

JSON logs with timestamp, event_type, transaction_id / wallet_id where relevant.
Use get_logger() in all modules for aggregation-friendly output.
"""

from backend_feerouter.logging.logger import bind_transaction, get_logger

__all__ = ["bind_transaction", "get_logger"]
