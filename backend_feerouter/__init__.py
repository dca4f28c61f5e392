"""
Backend FeeRouter: fee routing and mixing engine.

Takes platform fees collected from completed marketplace transactions and
moves them through a rotating pool of synthetic shell wallets, with randomized
delays and multiple hops, before a final dispersal. Runs as a long-lived
background service with persistence, a periodic wallet retirement cycle, and
a read/route HTTP API.
"""

__version__ = "0.1.0"
