"""
DevRunner Netlify Client

Links a site to its repository (which triggers a build) and reads the most
recent deploy.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from devrunner.errors import DeployApiError
from devrunner.logging import get_logger

logger = get_logger(__name__)


class DeployState:
    """Deploy states the pipeline distinguishes."""
    READY = "ready"
    ERROR = "error"
    BUILDING = "building"

    TERMINAL = (READY, ERROR)


@dataclass
class DeployInfo:
    id: str
    state: str
    ssl_url: Optional[str] = None
    error_message: Optional[str] = None


def normalize_deploy_state(state: Any) -> str:
    """Collapse the hosting's many in-progress states into "building"."""
    if state in DeployState.TERMINAL:
        return state
    return DeployState.BUILDING


class NetlifyClient:
    """Netlify API client authenticated with a bearer token."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.netlify.com/api/v1",
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
                    "Content-Type": "application/json",
                },
            )
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = self._get_client().request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise DeployApiError(f"Netlify request failed: {exc}") from exc
        if resp.status_code >= 400:
            try:
                data = resp.json()
            except ValueError:
                data = {}
            detail = ""
            if isinstance(data, dict):
                detail = str(data.get("message") or data.get("error") or "")
            raise DeployApiError(
                f"Netlify API error: {resp.status_code} {detail or resp.reason_phrase}".strip(),
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        return resp.json()

    def link_site_to_repository(
        self,
        site_id: str,
        *,
        repo_path: str,
        branch: str = "main",
        build_cmd: str = "npm run build",
        publish_dir: str = ".next",
    ) -> Dict[str, Any]:
        payload = {
            "repo": {
                "provider": "github",
                "repo": repo_path,
                "branch": branch,
                "cmd": build_cmd,
                "dir": publish_dir,
            }
        }
        data = self._request("PATCH", f"/sites/{site_id}", json=payload) or {}
        logger.info("netlify_site_linked", extra={"site_id": site_id, "repo": repo_path})
        return data

    def get_latest_deploy(self, site_id: str) -> Optional[DeployInfo]:
        data = self._request("GET", f"/sites/{site_id}/deploys", params={"per_page": 1})
        if not isinstance(data, list) or not data:
            return None
        latest = data[0]
        return DeployInfo(
            id=str(latest.get("id") or ""),
            state=normalize_deploy_state(latest.get("state")),
            ssl_url=latest.get("ssl_url") or None,
            error_message=latest.get("error_message") or None,
        )
