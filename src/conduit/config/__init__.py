"""Configuration model and parser for conduit.yaml."""

from conduit.config.models import SessionConfig
from conduit.config.parser import ConfigError, load_config

__all__ = [
    "ConfigError",
    "SessionConfig",
    "load_config",
]
