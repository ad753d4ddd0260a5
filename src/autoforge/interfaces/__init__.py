"""Protocol definitions for pluggable collaborators."""

from .deploy import DeployContext, DeployProvider
from .generation import AppGenerator, RequirementsTranslator, TestGenerator
from .reasoning import ReasoningProvider

__all__ = [
    "AppGenerator",
    "DeployContext",
    "DeployProvider",
    "ReasoningProvider",
    "RequirementsTranslator",
    "TestGenerator",
]
