"""
DevRunner Services

Service layer for the development run pipeline.
"""

from importlib import import_module
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from devrunner.services.base import Service, ServiceContext
    from devrunner.services.events import RunEventLog, get_retry_boundary_sequence
    from devrunner.services.worker_registry import WorkerRegistry, get_worker_registry
    from devrunner.services.workspace import WorkspaceService, WorkspaceFile
    from devrunner.services.agent_harness import AgentHarness
    from devrunner.services.quality import QualityGateRunner
    from devrunner.services.git_release import execute_git_cli_release, mask_secret_in_text
    from devrunner.services.gitops import GitOpsService, IterationReleaseRequest, IterationReleaseResult
    from devrunner.services.deploy import DeployService, DeployResult
    from devrunner.services.orchestrator import OrchestratorService
    from devrunner.services.run_control import RunControlService, RunDetails

__all__ = [
    # Base
    "Service",
    "ServiceContext",
    # Events
    "RunEventLog",
    "get_retry_boundary_sequence",
    # Worker registry
    "WorkerRegistry",
    "get_worker_registry",
    # Workspace
    "WorkspaceService",
    "WorkspaceFile",
    # Agents
    "AgentHarness",
    # Quality
    "QualityGateRunner",
    # Release
    "execute_git_cli_release",
    "mask_secret_in_text",
    "GitOpsService",
    "IterationReleaseRequest",
    "IterationReleaseResult",
    # Deploy
    "DeployService",
    "DeployResult",
    # Orchestration
    "OrchestratorService",
    "RunControlService",
    "RunDetails",
]

_EXPORTS = {
    "Service": "devrunner.services.base",
    "ServiceContext": "devrunner.services.base",
    "RunEventLog": "devrunner.services.events",
    "get_retry_boundary_sequence": "devrunner.services.events",
    "WorkerRegistry": "devrunner.services.worker_registry",
    "get_worker_registry": "devrunner.services.worker_registry",
    "WorkspaceService": "devrunner.services.workspace",
    "WorkspaceFile": "devrunner.services.workspace",
    "AgentHarness": "devrunner.services.agent_harness",
    "QualityGateRunner": "devrunner.services.quality",
    "execute_git_cli_release": "devrunner.services.git_release",
    "mask_secret_in_text": "devrunner.services.git_release",
    "GitOpsService": "devrunner.services.gitops",
    "IterationReleaseRequest": "devrunner.services.gitops",
    "IterationReleaseResult": "devrunner.services.gitops",
    "DeployService": "devrunner.services.deploy",
    "DeployResult": "devrunner.services.deploy",
    "OrchestratorService": "devrunner.services.orchestrator",
    "RunControlService": "devrunner.services.run_control",
    "RunDetails": "devrunner.services.run_control",
}


def __getattr__(name: str):
    module_path = _EXPORTS.get(name)
    if not module_path:
        raise AttributeError(f"module {__name__} has no attribute {name}")
    return getattr(import_module(module_path), name)
