"""Configuration loading and validation."""

from .loader import load_config, validate_config
from .schema import (
    AnthropicConfig,
    AWSConfig,
    DeploymentConfig,
    FrameworkConfig,
    HealingConfig,
    LocalModelConfig,
    LoggingConfig,
    OpenAIConfig,
    ReasoningConfig,
    TestingConfig,
)

__all__ = [
    # Loader
    "load_config",
    "validate_config",
    # Root config
    "FrameworkConfig",
    # Sections
    "ReasoningConfig",
    "HealingConfig",
    "TestingConfig",
    "DeploymentConfig",
    "LoggingConfig",
    # Provider-specific configs
    "OpenAIConfig",
    "AnthropicConfig",
    "LocalModelConfig",
    "AWSConfig",
]
