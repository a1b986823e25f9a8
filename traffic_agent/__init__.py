"""Proxy gateway traffic agent: poll connection counters, report deltas."""

from .version import AGENT_VERSION

__all__ = ["AGENT_VERSION"]
