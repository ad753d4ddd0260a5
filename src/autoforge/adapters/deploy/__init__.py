"""Deployment provider implementations.

Importing this package registers every built-in provider.
"""

from .aws import S3StaticSiteProvider
from .docker import DockerComposeProvider
from .netlify import NetlifyProvider
from .registry import available_providers, create_deploy_provider, register_provider
from .vercel import VercelProvider

__all__ = [
    "DockerComposeProvider",
    "NetlifyProvider",
    "S3StaticSiteProvider",
    "VercelProvider",
    "available_providers",
    "create_deploy_provider",
    "register_provider",
]
