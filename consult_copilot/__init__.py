"""Consult Copilot - tool-calling orchestration core for consulting workflows."""

__version__ = "0.1.0"
