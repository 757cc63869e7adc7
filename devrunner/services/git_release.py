"""
DevRunner Git Release

Lower release layer: clone the repository into a scratch directory, check
out the iteration branch, write the artifacts, commit and push, using the
git CLI. Every step reports a checkpoint. Credentials reach git only through
an askpass script and are masked out of every error.
"""

import os
import re
import shutil
import stat
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from devrunner.errors import GitCommandError, ReleaseError
from devrunner.logging import get_logger
from devrunner.services.workspace import WorkspaceFile, sanitize_workspace_path

logger = get_logger(__name__)

RELEASE_PHASE = "release"
DETAILS_LIMIT = 4000
DEFAULT_GIT_TIMEOUT = 300

_TOKEN_CREDENTIALS = re.compile(r"x-access-token:[^@\s]+@", re.IGNORECASE)
_URL_CREDENTIALS = re.compile(r"(https?://)([^:@/\s]+):([^@/\s]+)@", re.IGNORECASE)

ASKPASS_SCRIPT = "\n".join([
    "#!/bin/sh",
    'case "$1" in',
    '  *Username*) echo "x-access-token" ;;',
    '  *) echo "$GIT_PASSWORD" ;;',
    "esac",
])


def mask_secret_in_text(text: str, secrets: Iterable[Optional[str]] = ()) -> str:
    """Remove tokens and URL passwords from text before it is stored or logged."""
    masked = _TOKEN_CREDENTIALS.sub("x-access-token:***@", text)
    masked = _URL_CREDENTIALS.sub(r"\1\2:***@", masked)
    for secret in secrets:
        if not secret or not secret.strip():
            continue
        masked = masked.replace(secret, "***")
    return masked


@dataclass
class GitCommandResult:
    stdout: str
    stderr: str = ""


GitCommandRunner = Callable[[List[str], str, Dict[str, str]], GitCommandResult]


def run_git_command(args: List[str], cwd: str, env: Dict[str, str], *, timeout: int = DEFAULT_GIT_TIMEOUT) -> GitCommandResult:
    """
    Run `git <args>` and return trimmed output.

    Raises GitCommandError with the combined output on a non-zero exit.
    """
    cmd = ["git", *args]
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise GitCommandError(f"Command timed out after {timeout}s: {' '.join(cmd)}") from exc
    stdout = (result.stdout or "").strip()
    stderr = (result.stderr or "").strip()
    if result.returncode != 0:
        message = "\n".join(
            line for line in (f"Command failed: {' '.join(cmd)}", stdout, stderr) if line
        )
        raise GitCommandError(message, metadata={"returncode": result.returncode})
    return GitCommandResult(stdout=stdout, stderr=stderr)


@dataclass
class ReleaseCheckpoint:
    step: str
    summary: str
    duration_ms: int
    phase: str = RELEASE_PHASE

    def to_dict(self) -> Dict[str, object]:
        return {
            "phase": self.phase,
            "step": self.step,
            "summary": self.summary,
            "durationMs": self.duration_ms,
        }


@dataclass
class GitReleaseRequest:
    repository_clone_url: str
    repository_html_url: str
    base_branch: str
    branch_name: str
    commit_message: str
    access_token: str
    artifacts: List[WorkspaceFile] = field(default_factory=list)
    workspace_root: Optional[str] = None
    keep_workspace: bool = False


@dataclass
class GitReleaseResult:
    branch_name: str
    commit_sha: str
    checkpoints: List[ReleaseCheckpoint] = field(default_factory=list)


class _ReleaseSession:
    """One release attempt: shared env, runner and checkpoint list."""

    def __init__(
        self,
        request: GitReleaseRequest,
        runner: GitCommandRunner,
        env: Dict[str, str],
        on_checkpoint: Optional[Callable[[ReleaseCheckpoint], None]],
    ) -> None:
        self.request = request
        self.runner = runner
        self.env = env
        self.on_checkpoint = on_checkpoint
        self.checkpoints: List[ReleaseCheckpoint] = []

    def git(self, step: str, cwd: str, args: List[str], failure_summary: str) -> GitCommandResult:
        try:
            return self.runner(args, cwd, self.env)
        except Exception as exc:
            safe = mask_secret_in_text(str(exc), [self.request.access_token])
            raise ReleaseError(step, failure_summary, safe[-DETAILS_LIMIT:]) from None

    def checkpoint(self, step: str, summary: str, started: float) -> None:
        checkpoint = ReleaseCheckpoint(
            step=step,
            summary=summary,
            duration_ms=max(0, int((time.monotonic() - started) * 1000)),
        )
        self.checkpoints.append(checkpoint)
        logger.info(
            "release_checkpoint",
            extra={"step": step, "summary": summary, "duration_ms": checkpoint.duration_ms},
        )
        if self.on_checkpoint is not None:
            self.on_checkpoint(checkpoint)


def execute_git_cli_release(
    request: GitReleaseRequest,
    *,
    runner: Optional[GitCommandRunner] = None,
    on_checkpoint: Optional[Callable[[ReleaseCheckpoint], None]] = None,
    timeout: int = DEFAULT_GIT_TIMEOUT,
) -> GitReleaseResult:
    """
    Publish the artifacts to request.branch_name.

    Steps run in order: clone, checkout, write, commit, push. A failing git
    command raises ReleaseError naming the step; the scratch directory is
    removed either way unless keep_workspace is set.
    """
    base = Path(request.workspace_root or tempfile.gettempdir()).resolve()
    base.mkdir(parents=True, exist_ok=True)
    temp_dir = Path(tempfile.mkdtemp(prefix="devrunner-release-", dir=str(base)))
    clone_dir = temp_dir / "repo"
    askpass = temp_dir / "git-askpass.sh"

    if runner is None:
        def runner(args: List[str], cwd: str, env: Dict[str, str]) -> GitCommandResult:
            return run_git_command(args, cwd, env, timeout=timeout)

    try:
        askpass.write_text(ASKPASS_SCRIPT, encoding="utf-8")
        askpass.chmod(stat.S_IRWXU)

        env = {
            **os.environ,
            "GIT_TERMINAL_PROMPT": "0",
            "GIT_ASKPASS": str(askpass),
            "GIT_PASSWORD": request.access_token,
            "GCM_INTERACTIVE": "never",
        }
        session = _ReleaseSession(request, runner, env, on_checkpoint)
        repo = str(clone_dir)

        started = time.monotonic()
        session.git(
            "clone",
            str(temp_dir),
            ["clone", "--depth", "1", "--branch", request.base_branch, request.repository_clone_url, repo],
            "clone_failed",
        )
        session.checkpoint("clone", f"base={request.base_branch}", started)

        started = time.monotonic()
        remote = session.git(
            "checkout", repo, ["ls-remote", "--heads", "origin", request.branch_name], "ls_remote_failed"
        )
        branch_exists = bool(remote.stdout.strip())
        if branch_exists:
            session.git("checkout", repo, ["fetch", "origin", request.branch_name], "fetch_branch_failed")
            session.git(
                "checkout", repo, ["checkout", "-B", request.branch_name, "FETCH_HEAD"], "checkout_branch_failed"
            )
        else:
            session.git("checkout", repo, ["checkout", "-B", request.branch_name], "checkout_branch_failed")
        session.checkpoint(
            "checkout",
            f"reused={request.branch_name}" if branch_exists else f"created={request.branch_name}",
            started,
        )

        started = time.monotonic()
        for artifact in request.artifacts:
            target = clone_dir / sanitize_workspace_path(artifact.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(artifact.content, encoding="utf-8")
        session.checkpoint("write", f"files={len(request.artifacts)}", started)

        started = time.monotonic()
        session.git("commit", repo, ["add", "--all"], "git_add_failed")
        status = session.git("commit", repo, ["status", "--porcelain"], "git_status_failed")
        commit_summary = "no_changes"
        if status.stdout.strip():
            session.git(
                "commit", repo, ["commit", "-m", request.commit_message, "--no-gpg-sign"], "git_commit_failed"
            )
            commit_summary = "created"
        session.checkpoint("commit", commit_summary, started)

        started = time.monotonic()
        session.git("push", repo, ["push", "origin", request.branch_name], "git_push_failed")
        session.checkpoint("push", f"origin/{request.branch_name}", started)

        head = session.git("push", repo, ["rev-parse", "HEAD"], "git_rev_parse_failed")
        return GitReleaseResult(
            branch_name=request.branch_name,
            commit_sha=head.stdout.strip(),
            checkpoints=session.checkpoints,
        )
    finally:
        if not request.keep_workspace:
            shutil.rmtree(temp_dir, ignore_errors=True)
