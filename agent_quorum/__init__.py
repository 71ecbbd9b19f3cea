"""
Agent Quorum: multi-agent equities research orchestration.
"""

__version__ = "0.1.0"
