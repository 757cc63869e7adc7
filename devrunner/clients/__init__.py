"""
DevRunner Hosting Clients

httpx wrappers for the git hosting (GitHub) and deploy hosting (Netlify) APIs.
"""

from devrunner.clients.github import GitHubClient, PullRequest, Repository
from devrunner.clients.netlify import DeployInfo, NetlifyClient

__all__ = [
    "DeployInfo",
    "GitHubClient",
    "NetlifyClient",
    "PullRequest",
    "Repository",
]
