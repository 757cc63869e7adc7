"""
DevRunner GitHub Client

Thin REST client for the handful of GitHub calls the release pipeline makes:
repository lookup, pull request find/create and squash merge.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from devrunner.errors import GitHubApiError
from devrunner.logging import get_logger

logger = get_logger(__name__)

GITHUB_ACCEPT = "application/vnd.github+json"
GITHUB_API_VERSION = "2022-11-28"


@dataclass
class Repository:
    owner: str
    name: str
    default_branch: Optional[str] = None
    clone_url: Optional[str] = None
    html_url: Optional[str] = None


@dataclass
class PullRequest:
    number: int
    html_url: str = ""
    state: Optional[str] = None


@dataclass
class MergeResult:
    merged: bool
    sha: Optional[str] = None
    message: Optional[str] = None


def _error_message(resp: httpx.Response) -> str:
    """API message plus any errors[].message, the way GitHub reports validation failures."""
    try:
        data = resp.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        return f"GitHub API error: {resp.status_code} {resp.reason_phrase}".strip()
    parts = [str(data.get("message") or resp.reason_phrase or "request failed")]
    for item in data.get("errors") or []:
        if isinstance(item, dict) and item.get("message"):
            parts.append(str(item["message"]))
    return f"GitHub API error: {resp.status_code} " + " - ".join(parts)


class GitHubClient:
    """
    GitHub REST client authenticated with a bearer token.

    Example:
        client = GitHubClient(token, base_url=config.github_api_url)
        repo = client.get_repository("octo", "app")
        pr = client.find_open_pull_request("octo", "app", head="octo:iter/1", base=repo.default_branch)
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": GITHUB_ACCEPT,
                    "X-GitHub-Api-Version": GITHUB_API_VERSION,
                },
            )
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = self._get_client().request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise GitHubApiError(f"GitHub request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise GitHubApiError(_error_message(resp), status_code=resp.status_code)
        if not resp.content:
            return None
        return resp.json()

    def get_repository(self, owner: str, repo: str) -> Repository:
        data = self._request("GET", f"/repos/{owner}/{repo}") or {}
        return Repository(
            owner=owner,
            name=repo,
            default_branch=data.get("default_branch") or None,
            clone_url=data.get("clone_url") or None,
            html_url=data.get("html_url") or None,
        )

    def find_open_pull_request(self, owner: str, repo: str, *, head: str, base: str) -> Optional[PullRequest]:
        """First open PR for head ("owner:branch") into base, or None."""
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"state": "open", "head": head, "base": base, "per_page": 1},
        )
        if not isinstance(data, list) or not data:
            return None
        first = data[0]
        return PullRequest(number=int(first["number"]), html_url=first.get("html_url") or "", state=first.get("state"))

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        head: str,
        base: str,
        body: Optional[str] = None,
    ) -> PullRequest:
        payload: Dict[str, Any] = {"title": title, "head": head, "base": base}
        if body is not None:
            payload["body"] = body
        data = self._request("POST", f"/repos/{owner}/{repo}/pulls", json=payload) or {}
        logger.info("pull_request_created", extra={"repo": f"{owner}/{repo}", "number": data.get("number")})
        return PullRequest(number=int(data["number"]), html_url=data.get("html_url") or "", state=data.get("state"))

    def merge_pull_request(self, owner: str, repo: str, number: int, *, merge_method: str = "squash") -> MergeResult:
        data = self._request(
            "PUT",
            f"/repos/{owner}/{repo}/pulls/{number}/merge",
            json={"merge_method": merge_method},
        ) or {}
        sha = data.get("sha")
        return MergeResult(
            merged=bool(data.get("merged")),
            sha=sha if isinstance(sha, str) else None,
            message=data.get("message"),
        )
