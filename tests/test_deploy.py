"""
Tests for the hosting API clients and the deploy service.

Clients run against httpx.MockTransport; the deploy service gets a fake
Netlify client and a fake clock.
"""

import json

import httpx
import pytest

from devrunner.clients.github import GitHubClient
from devrunner.clients.netlify import DeployInfo, DeployState, NetlifyClient, normalize_deploy_state
from devrunner.errors import DeployApiError, GitHubApiError
from devrunner.services.deploy import DeployService

from conftest import sealed


# =============================================================================
# GitHub client
# =============================================================================

class TestGitHubClient:
    def test_repository_and_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["path"] = request.url.path
            return httpx.Response(
                200,
                json={
                    "default_branch": "trunk",
                    "clone_url": "https://github.com/octo/app.git",
                    "html_url": "https://github.com/octo/app",
                },
            )

        with GitHubClient("tok", transport=httpx.MockTransport(handler)) as client:
            repo = client.get_repository("octo", "app")

        assert seen == {"auth": "Bearer tok", "path": "/repos/octo/app"}
        assert repo.default_branch == "trunk"
        assert repo.clone_url.endswith(".git")

    def test_find_open_pull_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["head"] == "octo:iter/x"
            assert request.url.params["state"] == "open"
            return httpx.Response(200, json=[{"number": 4, "html_url": "u", "state": "open"}])

        client = GitHubClient("tok", transport=httpx.MockTransport(handler))
        pr = client.find_open_pull_request("octo", "app", head="octo:iter/x", base="main")
        assert (pr.number, pr.html_url) == (4, "u")

    def test_no_open_pull_request(self):
        client = GitHubClient("tok", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[])))
        assert client.find_open_pull_request("o", "r", head="o:b", base="main") is None

    def test_validation_errors_are_joined(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                422,
                json={"message": "Validation Failed", "errors": [{"message": "A pull request already exists"}]},
            )

        client = GitHubClient("tok", transport=httpx.MockTransport(handler))
        with pytest.raises(GitHubApiError) as exc_info:
            client.create_pull_request("o", "r", title="t", head="b", base="main")
        assert str(exc_info.value) == "GitHub API error: 422 Validation Failed - A pull request already exists"
        assert exc_info.value.status_code == 422

    def test_squash_merge(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PUT"
            assert json.loads(request.content) == {"merge_method": "squash"}
            return httpx.Response(200, json={"merged": True, "sha": "abc", "message": "merged"})

        client = GitHubClient("tok", transport=httpx.MockTransport(handler))
        result = client.merge_pull_request("o", "r", 9)
        assert (result.merged, result.sha) == (True, "abc")


# =============================================================================
# Netlify client
# =============================================================================

class TestNetlifyClient:
    @pytest.mark.parametrize(
        "raw,expected",
        [("ready", "ready"), ("error", "error"), ("enqueued", "building"), ("uploading", "building"), (None, "building")],
    )
    def test_state_normalization(self, raw, expected):
        assert normalize_deploy_state(raw) == expected

    def test_link_payload(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert request.method == "PATCH"
            assert body["repo"] == {
                "provider": "github",
                "repo": "octo/app",
                "branch": "main",
                "cmd": "npm run build",
                "dir": ".next",
            }
            return httpx.Response(200, json={"id": "site"})

        client = NetlifyClient("tok", transport=httpx.MockTransport(handler))
        assert client.link_site_to_repository("site", repo_path="octo/app") == {"id": "site"}

    def test_latest_deploy(self):
        payload = [{"id": "d1", "state": "processing", "ssl_url": "https://x.netlify.app"}]
        client = NetlifyClient("tok", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=payload)))
        assert client.get_latest_deploy("site") == DeployInfo(
            id="d1", state=DeployState.BUILDING, ssl_url="https://x.netlify.app"
        )

    def test_error_message(self):
        client = NetlifyClient(
            "tok", transport=httpx.MockTransport(lambda r: httpx.Response(401, json={"message": "Access Denied"}))
        )
        with pytest.raises(DeployApiError) as exc_info:
            client.get_latest_deploy("site")
        assert str(exc_info.value) == "Netlify API error: 401 Access Denied"


# =============================================================================
# Deploy service
# =============================================================================

class FakeNetlify:
    def __init__(self, deploys=(), link_error=None):
        self.deploys = list(deploys)
        self.link_error = link_error
        self.linked = []
        self.closed = False

    def link_site_to_repository(self, site_id, **kwargs):
        if self.link_error:
            raise DeployApiError(self.link_error)
        self.linked.append((site_id, kwargs["repo_path"]))
        return {}

    def get_latest_deploy(self, site_id):
        if not self.deploys:
            return DeployInfo(id="d", state=DeployState.BUILDING)
        return self.deploys.pop(0)

    def close(self):
        self.closed = True


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += 1.0


@pytest.fixture
def deploy_project(db, connected_project):
    secrets = dict(connected_project.secrets)
    secrets["netlify_token"] = sealed("nfp_token")
    return db.update_project(
        connected_project.id,
        netlify_site_id="site-1",
        production_url="https://fallback.example",
        secrets=secrets,
    )


def run_deploy(context, db, project_id, client):
    clock = FakeClock()
    service = DeployService(context, db, netlify_factory=lambda token: client, sleep=clock.sleep, clock=clock)
    events = []
    result = service.execute_deploy(project_id, lambda message, payload: events.append((message, payload)))
    return result, events


class TestDeployService:
    def test_no_site_is_skipped_success(self, context, db, project):
        result, events = run_deploy(context, db, project.id, FakeNetlify())
        assert result.success and result.skipped
        assert events == [("Deploy hosting not configured, deploy skipped", {"status": "SKIPPED"})]

    def test_missing_project(self, context, db):
        result, _ = run_deploy(context, db, "nope", FakeNetlify())
        assert not result.success
        assert result.error == "Project not found"

    def test_token_missing(self, context, db, connected_project):
        db.update_project(connected_project.id, netlify_site_id="site-1")
        result, _ = run_deploy(context, db, connected_project.id, FakeNetlify())
        assert result.error == "Deploy hosting token not found"

    def test_client_gets_the_decrypted_token(self, context, db, deploy_project):
        seen = []
        client = FakeNetlify([DeployInfo(id="d1", state=DeployState.READY)])

        def factory(token):
            seen.append(token)
            return client

        service = DeployService(context, db, netlify_factory=factory, sleep=lambda seconds: None)
        result = service.execute_deploy(deploy_project.id, lambda message, payload: None)

        assert result.success
        assert seen == ["nfp_token"]

    def test_plaintext_token_is_rejected(self, context, db, deploy_project):
        db.update_project(deploy_project.id, secrets={**deploy_project.secrets, "netlify_token": "nfp_token"})
        client = FakeNetlify()
        result, _ = run_deploy(context, db, deploy_project.id, client)

        assert not result.success
        assert result.error == "Deploy hosting token could not be decrypted"
        assert client.linked == []

    def test_ready_after_building(self, context, db, deploy_project):
        client = FakeNetlify([
            DeployInfo(id="d1", state=DeployState.BUILDING),
            DeployInfo(id="d1", state=DeployState.READY, ssl_url="https://app.netlify.app"),
        ])
        result, events = run_deploy(context, db, deploy_project.id, client)

        assert result.success
        assert result.production_url == "https://app.netlify.app"
        assert result.deploy_id == "d1"
        assert client.linked == [("site-1", "octo/task-board")]
        assert client.closed
        assert [p["status"] for _, p in events] == ["LINKING", "BUILDING", "building", "READY"]

    def test_ready_without_url_falls_back(self, context, db, deploy_project):
        client = FakeNetlify([DeployInfo(id="d2", state=DeployState.READY)])
        result, _ = run_deploy(context, db, deploy_project.id, client)
        assert result.production_url == "https://fallback.example"

    def test_error_state(self, context, db, deploy_project):
        client = FakeNetlify([DeployInfo(id="d3", state=DeployState.ERROR, error_message="Build script returned 1")])
        result, events = run_deploy(context, db, deploy_project.id, client)
        assert not result.success
        assert result.error == "Build script returned 1"
        assert events[-1][0] == "Deploy failed: Build script returned 1"

    def test_link_failure(self, context, db, deploy_project):
        result, events = run_deploy(context, db, deploy_project.id, FakeNetlify(link_error="Netlify API error: 404 Not Found"))
        assert not result.success
        assert events[-1] == (
            "Link failed: Netlify API error: 404 Not Found",
            {"status": "FAILED", "error": "Netlify API error: 404 Not Found"},
        )

    def test_timeout(self, context, db, deploy_project):
        client = FakeNetlify()
        result, events = run_deploy(context, db, deploy_project.id, client)
        assert not result.success
        assert result.error == "Deploy exceeded the timeout of 5s"
        assert events[-1] == ("Deploy exceeded the timeout of 5s", {"status": "TIMEOUT"})
        assert client.closed
