"""
PEScope Common Module
=====================

Configuration, structured logging, console presentation and shared result
models used by every PEScope component.
"""

from common.config import ImportsConfig, ScopeConfig

__all__ = ["ImportsConfig", "ScopeConfig"]
