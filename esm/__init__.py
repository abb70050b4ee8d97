"""
ESM Agent Package

External service monitor agent: configuration merging, logging setup, signal-driven
shutdown and the Redis-backed agent.
"""

from .agent import Agent
from .config import ConfigSource, EffectiveConfig, default_config, merge
from .signals import ShutdownSignal, SignalCoordinator

__version__ = "0.1.0"

__all__ = [
    "Agent",
    "ConfigSource",
    "EffectiveConfig",
    "ShutdownSignal",
    "SignalCoordinator",
    "default_config",
    "merge",
]
