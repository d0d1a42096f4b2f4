"""GitHub REST client for repository metadata, branch heads and trees"""

import logging
from datetime import datetime

import httpx
from opentelemetry import trace

from src.config import config
from src.models.resources import RepositoryDetails, TreeEntry
from src.models.upstream import (
    BranchHead,
    RepositoryUnavailable,
    UpstreamRepository,
    UpstreamTree,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

GITHUB_API_VERSION = "2022-11-28"


class GitHubFetchError(Exception):
    """Raised when a GitHub call fails for a reason worth retrying"""

    pass


def _parse_datetime(value: str | None) -> datetime | None:
    """Convert GitHub's ISO datetime string to Python datetime"""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _is_rate_limited(response: httpx.Response) -> bool:
    # Primary limits: 403/429 with no remaining calls. Secondary limits: 403
    # with retry-after, or a "rate limit" message, while quota remains.
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if response.headers.get("x-ratelimit-remaining") == "0" or "retry-after" in response.headers:
        return True
    return "rate limit" in response.text.lower()


class GitHubClient:
    """Thin request/response client; no caching of its own"""

    def __init__(
        self,
        token: str | None = None,
        api_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize GitHub client

        Args:
            token: GitHub token (defaults to GITHUB_TOKEN from config)
            api_url: API base URL (defaults to config)
            client: Optional pre-built httpx client, mainly for tests
        """
        self.token = token or config.github_token
        self.api_url = (api_url or config.github_api_url).rstrip("/")

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if self.token:
            # Use 'token' prefix for classic GitHub tokens (ghp_*)
            # Use 'Bearer' prefix for fine-grained tokens (github_pat_*)
            prefix = "Bearer" if self.token.startswith("github_pat_") else "token"
            headers["Authorization"] = f"{prefix} {self.token}"

        self.client = client or httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(config.http_timeout_seconds),
            follow_redirects=True,
        )
        if client is not None:
            self.client.headers.update(headers)

    async def _get(self, span: trace.Span, path: str, **params) -> httpx.Response:
        try:
            response = await self.client.get(f"{self.api_url}{path}", params=params or None)
        except httpx.RequestError as e:
            span.record_exception(e)
            raise GitHubFetchError(f"GitHub request failed: {e}") from e

        if _is_rate_limited(response):
            span.set_attribute("error.type", "rate_limited")
            raise GitHubFetchError(f"GitHub rate limit exhausted for {path}")
        if response.status_code == 401:
            span.set_attribute("error.type", "unauthorized")
            raise GitHubFetchError(f"GitHub rejected the credentials for {path}")
        if response.status_code >= 500:
            span.set_attribute("error.type", "server_error")
            raise GitHubFetchError(f"GitHub returned {response.status_code} for {path}")
        return response

    async def get_repository(
        self, owner: str, repo: str
    ) -> UpstreamRepository | RepositoryUnavailable:
        """
        Fetch repository metadata

        Returns:
            UpstreamRepository, or RepositoryUnavailable for 404 (not found) and
            403 (private or otherwise inaccessible)

        Raises:
            GitHubFetchError: On network errors, bad credentials, rate limiting or
                server errors
        """
        with tracer.start_as_current_span("github.get_repository") as span:
            span.set_attributes({"github.owner": owner, "github.repo": repo})
            response = await self._get(span, f"/repos/{owner}/{repo}")

            if response.status_code == 404:
                span.set_attribute("error.type", "not_found")
                return RepositoryUnavailable(reason="not_found")
            if response.status_code == 403:
                span.set_attribute("error.type", "private_inaccessible")
                return RepositoryUnavailable(reason="inaccessible")
            if response.status_code != 200:
                raise GitHubFetchError(
                    f"Unexpected status {response.status_code} fetching {owner}/{repo}"
                )

            data = response.json()
            span.set_attribute("repository.stars", data.get("stargazers_count", 0))
            license_info = data.get("license") or {}
            return UpstreamRepository(
                full_name=data["full_name"],
                details=RepositoryDetails(
                    description=data.get("description") or "",
                    default_branch=data["default_branch"],
                    html_url=data["html_url"],
                    language=data.get("language") or "",
                    stargazers_count=data.get("stargazers_count", 0),
                    forks_count=data.get("forks_count", 0),
                    watchers_count=data.get("watchers_count", 0),
                    open_issues_count=data.get("open_issues_count", 0),
                    subscribers_count=data.get("subscribers_count") or 0,
                    fork=data.get("fork", False),
                    private=data.get("private", False),
                    license_name=license_info.get("name"),
                ),
            )

    async def get_branch_head(self, owner: str, repo: str, branch: str) -> BranchHead | None:
        """
        Fetch the HEAD commit of a branch

        Returns:
            BranchHead, or None if the branch does not exist
        """
        with tracer.start_as_current_span("github.get_branch_head") as span:
            span.set_attributes(
                {"github.owner": owner, "github.repo": repo, "github.branch": branch}
            )
            response = await self._get(span, f"/repos/{owner}/{repo}/branches/{branch}")

            if response.status_code == 404:
                span.set_attribute("error.type", "branch_not_found")
                return None
            if response.status_code != 200:
                raise GitHubFetchError(
                    f"Unexpected status {response.status_code} fetching branch {branch} "
                    f"of {owner}/{repo}"
                )

            commit_data = response.json()["commit"]
            commit = commit_data["commit"]
            author = commit.get("author") or {}
            head = BranchHead(
                sha=commit_data["sha"],
                tree_sha=commit["tree"]["sha"],
                message=commit.get("message", ""),
                author_name=author.get("name") or "Unknown",
                author_date=_parse_datetime(author.get("date")),
                html_url=commit_data["html_url"],
            )
            span.set_attribute("commit.sha", head.sha[:7])
            span.set_attribute("tree.sha", head.tree_sha[:7])
            return head

    async def get_tree(self, owner: str, repo: str, tree_sha: str) -> UpstreamTree | None:
        """
        Fetch the recursive tree listing for a tree SHA

        Returns:
            UpstreamTree, or None if the tree is missing or inaccessible
        """
        with tracer.start_as_current_span("github.get_tree") as span:
            span.set_attributes(
                {"github.owner": owner, "github.repo": repo, "tree.sha": tree_sha[:7]}
            )
            response = await self._get(
                span, f"/repos/{owner}/{repo}/git/trees/{tree_sha}", recursive="1"
            )

            if response.status_code in (403, 404):
                span.set_attribute("error.type", "tree_not_found")
                return None
            if response.status_code != 200:
                raise GitHubFetchError(
                    f"Unexpected status {response.status_code} fetching tree {tree_sha}"
                )

            data = response.json()
            entries = [
                TreeEntry(path=entry["path"], type=entry["type"], size=entry.get("size"))
                for entry in data.get("tree", [])
            ]
            span.set_attribute("tree.entries_count", len(entries))
            if data.get("truncated"):
                logger.warning(f"Tree {tree_sha} of {owner}/{repo} was truncated by GitHub")
            return UpstreamTree(
                sha=data.get("sha", tree_sha),
                entries=entries,
                truncated=bool(data.get("truncated", False)),
            )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()
