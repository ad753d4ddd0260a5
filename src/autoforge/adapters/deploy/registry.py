"""Name-keyed registry of deployment providers."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from autoforge.config.schema import DeploymentConfig
from autoforge.interfaces.deploy import DeployProvider
from autoforge.utils.async_helpers import ConfigurationError

ProviderFactory = Callable[[DeploymentConfig], DeployProvider]
F = TypeVar("F", bound=ProviderFactory)

_PROVIDERS: dict[str, ProviderFactory] = {}


def register_provider(name: str) -> Callable[[F], F]:
    """Class decorator registering a provider under ``name``."""

    def decorator(factory: F) -> F:
        _PROVIDERS[name] = factory
        return factory

    return decorator


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def create_deploy_provider(config: DeploymentConfig) -> DeployProvider:
    """Instantiate the provider selected by ``config.provider``.

    Raises:
        ConfigurationError: If no provider is registered under that name.
    """
    try:
        factory = _PROVIDERS[config.provider]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported deployment provider: {config.provider} "
            f"(available: {', '.join(available_providers())})"
        ) from None
    return factory(config)
