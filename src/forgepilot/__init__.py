"""
ForgePilot — AI coding agent with an approval-gated execution loop and a
dependency-aware, optionally atomic multi-file change composer.
"""

__version__ = "0.1.0"
