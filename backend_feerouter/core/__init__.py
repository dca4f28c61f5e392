"""
Core cross-cutting pieces shared by the pool, ledger, scheduler and API layers.
"""
