"""Autonomous coding-agent orchestrator driven by an external task tracker."""

__version__ = "0.3.0"
