"""
API server package: HTTP surface over the fee routing engine.

Exposes fee routing, status polling, vendor summaries, manual retirement
cycles and runtime config updates. Never blocks on mixing timers.
"""
