"""Core business logic components.

This module exports the main orchestration classes:
- Framework: Facade wiring every subsystem together
- HealingOrchestrator: Detect, propose, apply, validate and roll back fixes
- TestOrchestrator: Runs the enabled test categories against an application
- DeploymentStateMachine: Drives a deployment to a terminal state
- BackupStore: Snapshots and restores application trees
"""

from autoforge.core.backup_store import BackupStore
from autoforge.core.deployment import DeploymentStateMachine
from autoforge.core.framework import Framework, create_framework
from autoforge.core.healing import HealingOrchestrator
from autoforge.core.testing import TestOrchestrator

__all__ = [
    "BackupStore",
    "DeploymentStateMachine",
    "Framework",
    "HealingOrchestrator",
    "TestOrchestrator",
    "create_framework",
]
