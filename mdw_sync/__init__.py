"""
Middleware chain mirror: backward backfill, live tailing, reorg repair
and plugin fan-out over a local relational store.
"""

__version__ = "0.1.0"
