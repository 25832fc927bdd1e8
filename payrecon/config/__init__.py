"""
Configuration package.

Environment-driven settings and their validation.
"""

from payrecon.config.config import Settings, env_bool
from payrecon.config.config_validator import ConfigValidator, ValidationResult, validate_and_log, validate_config

__all__ = [
    "Settings",
    "env_bool",
    "ConfigValidator",
    "ValidationResult",
    "validate_and_log",
    "validate_config",
]
