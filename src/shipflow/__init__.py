"""Predictive-branch merge orchestration and shell task execution."""

__version__ = "0.1.0"
