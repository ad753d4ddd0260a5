"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path

import yaml

from ..utils.async_helpers import ConfigurationError
from .schema import AnthropicConfig, FrameworkConfig, OpenAIConfig

# Fallback variables for provider credentials when the config omits them
API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def substitute_env_vars(text: str) -> str:
    """
    Replace ${VAR_NAME} patterns with environment variable values.

    Args:
        text: Text containing ${VAR_NAME} patterns

    Returns:
        Text with environment variables substituted

    Raises:
        ValueError: If a referenced environment variable is not found
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ValueError(f"Environment variable {var_name} not found")
        return value

    return re.sub(r"\$\{([^}]+)\}", replacer, text)


def load_config(path: Path | None = None) -> FrameworkConfig:
    """
    Load configuration from YAML file with environment variable substitution.

    Without a path, settings come from FRAMEWORK_* environment variables and
    an optional .env file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated FrameworkConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If environment variables are missing or config is invalid
        ValidationError: If config doesn't match schema
        ConfigurationError: If the selected provider has no credentials
    """
    if path is None:
        config = FrameworkConfig()
    else:
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with path.open() as f:
            raw_yaml = f.read()

        yaml_with_env = substitute_env_vars(raw_yaml)
        config_dict = yaml.safe_load(yaml_with_env) or {}
        config = FrameworkConfig.model_validate(config_dict)

    apply_credential_fallbacks(config)
    validate_config(config)

    return config


def apply_credential_fallbacks(config: FrameworkConfig) -> None:
    """Fill the selected provider's API key from its conventional variable."""
    reasoning = config.reasoning
    env_var = API_KEY_ENV_VARS.get(reasoning.provider)
    if env_var is None:
        return

    value = os.environ.get(env_var)
    if reasoning.provider == "openai":
        if reasoning.openai is None:
            reasoning.openai = OpenAIConfig()
        if not reasoning.openai.api_key and value:
            reasoning.openai.api_key = value
    elif reasoning.provider == "anthropic":
        if reasoning.anthropic is None:
            reasoning.anthropic = AnthropicConfig()
        if not reasoning.anthropic.api_key and value:
            reasoning.anthropic.api_key = value


def provider_credentials_error(config: FrameworkConfig) -> str | None:
    """Return a description of what the selected provider is missing, if anything."""
    reasoning = config.reasoning
    block = getattr(reasoning, reasoning.provider)
    if block is None:
        return f"{reasoning.provider} provider selected but {reasoning.provider} config missing"
    if reasoning.provider in API_KEY_ENV_VARS:
        api_key = block.api_key
        if not api_key or api_key.startswith("${"):
            return (
                f"{reasoning.provider} API key not configured "
                f"(set reasoning.{reasoning.provider}.api_key or "
                f"{API_KEY_ENV_VARS[reasoning.provider]})"
            )
    return None


def validate_config(config: FrameworkConfig) -> None:
    """
    Perform additional cross-field validation.

    Args:
        config: Configuration to validate

    Raises:
        ConfigurationError: If provider-specific config or credentials are missing
    """
    problem = provider_credentials_error(config)
    if problem:
        raise ConfigurationError(problem)

    if config.deployment.provider == "aws" and not config.deployment.aws.bucket:
        raise ConfigurationError(
            "aws deployment provider selected but deployment.aws.bucket missing"
        )
