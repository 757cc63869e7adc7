"""
DevRunner GitOps Service

Upper release layer. Resolves the project's repository, publishes the
iteration branch through the git CLI layer and lands it on the default
branch with a squash-merged pull request.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from devrunner.clients.github import GitHubClient
from devrunner.config import RELEASE_MODE_GIT_CLI
from devrunner.crypto import decrypt_secret, load_secrets_key
from devrunner.errors import ConfigError, GitHubApiError, GitOpsError
from devrunner.services.base import Service, ServiceContext
from devrunner.services.git_release import (
    GitCommandRunner,
    GitReleaseRequest,
    ReleaseCheckpoint,
    execute_git_cli_release,
)
from devrunner.services.workspace import WorkspaceFile

DEFAULT_BASE_BRANCH = "main"

GitHubClientFactory = Callable[[str], GitHubClient]


@dataclass
class IterationReleaseRequest:
    project_id: str
    iteration_index: int
    iteration_name: str
    branch_name: str
    gherkin_path: str
    gherkin_content: str
    artifacts: List[WorkspaceFile] = field(default_factory=list)
    on_checkpoint: Optional[Callable[[ReleaseCheckpoint], None]] = None


@dataclass
class IterationReleaseResult:
    branch_name: str
    base_branch: str
    commit_sha: str
    pull_request_number: int
    pull_request_url: str
    merged: bool
    merge_commit_sha: Optional[str]
    checkpoints: List[ReleaseCheckpoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branchName": self.branch_name,
            "baseBranch": self.base_branch,
            "commitSha": self.commit_sha,
            "pullRequestNumber": self.pull_request_number,
            "pullRequestUrl": self.pull_request_url,
            "merged": self.merged,
            "mergeCommitSha": self.merge_commit_sha,
            "checkpoints": [c.to_dict() for c in self.checkpoints],
        }


def release_title(iteration_index: int, iteration_name: str) -> str:
    return f"feat(iter-{iteration_index}): {iteration_name}"


def build_release_artifacts(
    gherkin_path: str,
    gherkin_content: str,
    artifacts: List[WorkspaceFile],
) -> List[WorkspaceFile]:
    """Gherkin file first, then every other artifact not on the same path and not blank."""
    return [
        WorkspaceFile(path=gherkin_path, content=gherkin_content),
        *(a for a in artifacts if a.path != gherkin_path and a.path.strip()),
    ]


class GitOpsService(Service):
    """
    Release one iteration to the project's GitHub repository.

    Example:
        gitops = GitOpsService(context, db)
        result = gitops.execute_iteration_git_release(IterationReleaseRequest(...))
    """

    def __init__(
        self,
        context: ServiceContext,
        db,
        *,
        github_factory: Optional[GitHubClientFactory] = None,
        git_runner: Optional[GitCommandRunner] = None,
    ) -> None:
        super().__init__(context)
        self.db = db
        self._github_factory = github_factory or self._default_github_client
        self._git_runner = git_runner

    def _default_github_client(self, token: str) -> GitHubClient:
        return GitHubClient(
            token,
            base_url=self.config.github_api_url,
            timeout=self.config.http_timeout_seconds,
        )

    def _check_release_mode(self) -> None:
        mode = (self.config.release_mode or RELEASE_MODE_GIT_CLI).strip().lower()
        if mode != RELEASE_MODE_GIT_CLI:
            raise GitOpsError("UNSUPPORTED_RELEASE_MODE", mode)

    def execute_iteration_git_release(self, request: IterationReleaseRequest) -> IterationReleaseResult:
        project = self.db.get_project(request.project_id)
        owner, repo_name = project.github_repo_owner, project.github_repo_name
        if not owner or not repo_name:
            raise GitOpsError("GITHUB_NOT_CONNECTED")
        stored = (project.secrets or {}).get("github_token")
        if not stored:
            raise GitOpsError("GITHUB_TOKEN_MISSING")
        try:
            token = decrypt_secret(stored, load_secrets_key(self.config.secrets_key))
        except ConfigError as exc:
            raise GitOpsError("GITHUB_TOKEN_UNREADABLE", str(exc)) from exc
        self._check_release_mode()

        client = self._github_factory(token)
        try:
            repository = client.get_repository(owner, repo_name)
            base_branch = repository.default_branch or DEFAULT_BASE_BRANCH
            if not repository.clone_url:
                raise GitOpsError("GITHUB_REPOSITORY_CLONE_URL_MISSING")
            html_url = repository.html_url or f"https://github.com/{owner}/{repo_name}"
            title = release_title(request.iteration_index, request.iteration_name)

            git_result = execute_git_cli_release(
                GitReleaseRequest(
                    repository_clone_url=repository.clone_url,
                    repository_html_url=html_url,
                    base_branch=base_branch,
                    branch_name=request.branch_name,
                    commit_message=title,
                    access_token=token,
                    artifacts=build_release_artifacts(
                        request.gherkin_path, request.gherkin_content, request.artifacts
                    ),
                    workspace_root=str(self.config.sandbox_root) if self.config.sandbox_root else None,
                ),
                runner=self._git_runner,
                on_checkpoint=request.on_checkpoint,
                timeout=self.config.git_timeout_seconds,
            )

            head = f"{owner}:{request.branch_name}"
            pull_request = client.find_open_pull_request(owner, repo_name, head=head, base=base_branch)
            if pull_request is None:
                try:
                    pull_request = client.create_pull_request(
                        owner,
                        repo_name,
                        title=title,
                        head=request.branch_name,
                        base=base_branch,
                        body=(
                            f"Iteration {request.iteration_index} ({request.iteration_name}) "
                            "automated by the development pipeline."
                        ),
                    )
                except GitHubApiError as exc:
                    # Another worker opened it between the lookup and the create.
                    if "already exists" not in str(exc).lower():
                        raise
                    pull_request = client.find_open_pull_request(owner, repo_name, head=head, base=base_branch)
                    if pull_request is None:
                        raise

            merge = client.merge_pull_request(owner, repo_name, pull_request.number, merge_method="squash")
        finally:
            client.close()

        self.logger.info(
            "iteration_released",
            extra=self.log_extra(
                project_id=request.project_id,
                branch=request.branch_name,
                pull_request=pull_request.number,
                merged=merge.merged,
            ),
        )
        return IterationReleaseResult(
            branch_name=request.branch_name,
            base_branch=base_branch,
            commit_sha=git_result.commit_sha,
            pull_request_number=pull_request.number,
            pull_request_url=pull_request.html_url or "",
            merged=merge.merged,
            merge_commit_sha=merge.sha,
            checkpoints=git_result.checkpoints,
        )
