"""
Agent worker package: 24/7 background process for the fee routing engine.

Loads state, resumes in-flight fees, runs the retirement cycle and logs
heartbeats until shutdown.
"""

from backend_feerouter.agent_worker.runtime import RuntimeConfig, run_loop

__all__ = ["RuntimeConfig", "run_loop"]
