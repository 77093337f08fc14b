"""Orchestrator module for deployment planning and execution."""

from phased_deploy.orchestrator.models import (
    ResourceDescriptor,
    StageState,
    StageResult,
    RunState,
    RunReport,
    RemovalResult,
    VerificationStatus,
    VerificationCheck,
    VerificationReport,
)
from phased_deploy.orchestrator.dependency_graph import DependencyGraph, DependencyNode
from phased_deploy.orchestrator.planner import DeploymentPlanner, DeploymentPlan
from phased_deploy.orchestrator.executor import StageExecutor, StageOutcome
from phased_deploy.orchestrator.rollback import RollbackManager, rollback_error
from phased_deploy.orchestrator.teardown import TeardownController
from phased_deploy.orchestrator.verification import VerificationRunner
from phased_deploy.orchestrator.orchestrator import DeploymentOrchestrator

__all__ = [
    # Run model
    'ResourceDescriptor',
    'StageState',
    'StageResult',
    'RunState',
    'RunReport',
    'RemovalResult',
    'VerificationStatus',
    'VerificationCheck',
    'VerificationReport',

    # Dependency graph
    'DependencyGraph',
    'DependencyNode',

    # Planning
    'DeploymentPlanner',
    'DeploymentPlan',

    # Execution
    'StageExecutor',
    'StageOutcome',

    # Removal
    'RollbackManager',
    'rollback_error',
    'TeardownController',

    # Verification
    'VerificationRunner',

    # Main orchestrator
    'DeploymentOrchestrator',
]
