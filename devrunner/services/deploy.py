"""
DevRunner Deploy Service

Triggers the production deploy once every iteration has landed: link the
hosting site to the repository, then poll the latest deploy until it is
ready, failed or the timeout is reached.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from devrunner.clients.netlify import DeployState, NetlifyClient
from devrunner.crypto import decrypt_secret, load_secrets_key
from devrunner.errors import ConfigError, DeployApiError
from devrunner.services.base import Service, ServiceContext

DeployEventSink = Callable[[str, Dict[str, Any]], None]
NetlifyClientFactory = Callable[[str], NetlifyClient]


@dataclass
class DeployResult:
    success: bool
    skipped: bool = False
    production_url: Optional[str] = None
    deploy_id: Optional[str] = None
    error: Optional[str] = None


class DeployService(Service):
    """
    Deploy trigger for a project.

    Events are reported through on_event(message, payload); the caller
    decides how to persist them (the orchestrator turns them into
    DEPLOY_STATUS run events). sleep and clock are injectable for tests.
    """

    def __init__(
        self,
        context: ServiceContext,
        db,
        *,
        netlify_factory: Optional[NetlifyClientFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(context)
        self.db = db
        self._netlify_factory = netlify_factory or self._default_netlify_client
        self._sleep = sleep
        self._clock = clock

    def _default_netlify_client(self, token: str) -> NetlifyClient:
        return NetlifyClient(
            token,
            base_url=self.config.netlify_api_url,
            timeout=self.config.http_timeout_seconds,
        )

    def execute_deploy(self, project_id: str, on_event: DeployEventSink) -> DeployResult:
        try:
            project = self.db.get_project(project_id)
        except KeyError:
            return DeployResult(success=False, error="Project not found")

        if not project.netlify_site_id:
            on_event("Deploy hosting not configured, deploy skipped", {"status": "SKIPPED"})
            return DeployResult(success=True, skipped=True, production_url=project.production_url)

        stored = (project.secrets or {}).get("netlify_token")
        if not stored:
            return DeployResult(success=False, error="Deploy hosting token not found")
        try:
            token = decrypt_secret(stored, load_secrets_key(self.config.secrets_key))
        except ConfigError as exc:
            self.logger.warning("deploy_token_unreadable", extra=self.log_extra(project_id=project_id, error=str(exc)))
            return DeployResult(success=False, error="Deploy hosting token could not be decrypted")
        if not project.github_repo_owner or not project.github_repo_name:
            return DeployResult(success=False, error="GitHub repository not configured")

        repo_path = f"{project.github_repo_owner}/{project.github_repo_name}"
        client = self._netlify_factory(token)
        try:
            return self._deploy(project, client, repo_path, on_event)
        finally:
            client.close()

    def _deploy(self, project, client: NetlifyClient, repo_path: str, on_event: DeployEventSink) -> DeployResult:
        site_id = project.netlify_site_id
        on_event(f"Linking deploy site to repository {repo_path}", {"status": "LINKING", "repoPath": repo_path})
        try:
            client.link_site_to_repository(
                site_id,
                repo_path=repo_path,
                branch="main",
                build_cmd="npm run build",
                publish_dir=".next",
            )
        except DeployApiError as exc:
            message = str(exc) or "Unknown error linking repository"
            on_event(f"Link failed: {message}", {"status": "FAILED", "error": message})
            return DeployResult(success=False, error=message)

        on_event("Build started, waiting for completion", {"status": "BUILDING"})

        timeout = self.config.deploy_timeout_seconds
        interval = self.config.deploy_poll_interval_seconds
        started = self._clock()
        while self._clock() - started < timeout:
            self._sleep(interval)
            try:
                deploy = client.get_latest_deploy(site_id)
            except DeployApiError as exc:
                message = str(exc) or "Error reading deploy status"
                on_event(message, {"status": "FAILED", "error": message})
                return DeployResult(success=False, error=message)

            if deploy is None:
                continue

            if deploy.state == DeployState.READY:
                url = deploy.ssl_url or project.production_url
                on_event("Deploy completed", {"status": "READY", "deployId": deploy.id, "url": url})
                self.logger.info(
                    "deploy_ready",
                    extra=self.log_extra(project_id=project.id, deploy_id=deploy.id, url=url),
                )
                return DeployResult(success=True, production_url=url, deploy_id=deploy.id)

            if deploy.state == DeployState.ERROR:
                message = deploy.error_message or "Build failed on deploy hosting"
                on_event(
                    f"Deploy failed: {message}",
                    {"status": "FAILED", "deployId": deploy.id, "error": message},
                )
                return DeployResult(success=False, deploy_id=deploy.id, error=message)

            on_event(f"Deploy in progress ({deploy.state})", {"status": deploy.state, "deployId": deploy.id})

        message = f"Deploy exceeded the timeout of {int(timeout)}s"
        on_event(message, {"status": "TIMEOUT"})
        self.logger.warning("deploy_timeout", extra=self.log_extra(project_id=project.id, timeout=timeout))
        return DeployResult(success=False, error=message)
