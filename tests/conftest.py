"""Shared fixtures: a controllable clock, a temporary store and mocked upstream clients"""

from unittest.mock import AsyncMock

import pytest

from src.models.resources import InvocationStatus, RepositoryDetails, TreeEntry
from src.models.upstream import (
    BranchHead,
    InvocationStatusReport,
    UpstreamRepository,
    UpstreamTree,
)
from src.services.github_client import GitHubClient
from src.services.index_client import IndexClient
from src.services.refresh_coordinator import RefreshCoordinator
from src.services.resource_store import ResourceStore

OWNER = "octocat"
NAME = "hello-world"
REPO_NAME = f"{OWNER}/{NAME}"
HEAD_SHA = "a" * 40
TREE_SHA = "b" * 40


class FakeClock:
    """Epoch clock that only moves when told to"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


def make_repository(private: bool = False, default_branch: str = "main") -> UpstreamRepository:
    return UpstreamRepository(
        full_name=REPO_NAME,
        details=RepositoryDetails(
            description="My first repository",
            default_branch=default_branch,
            html_url=f"https://github.com/{REPO_NAME}",
            language="Python",
            stargazers_count=42,
            forks_count=7,
            watchers_count=42,
            open_issues_count=3,
            subscribers_count=5,
            private=private,
            license_name="MIT License",
        ),
    )


def make_head(sha: str = HEAD_SHA, tree_sha: str = TREE_SHA) -> BranchHead:
    return BranchHead(
        sha=sha,
        tree_sha=tree_sha,
        message=f"Commit {sha[:7]}",
        author_name="The Octocat",
        html_url=f"https://github.com/{REPO_NAME}/commit/{sha}",
    )


def make_tree(sha: str = TREE_SHA) -> UpstreamTree:
    return UpstreamTree(
        sha=sha,
        entries=[
            TreeEntry(path="README.md", type="blob", size=13),
            TreeEntry(path="src", type="tree"),
        ],
    )


def make_report(
    status: InvocationStatus = InvocationStatus.PENDING, invocation_id: str = "inv-1"
) -> InvocationStatusReport:
    return InvocationStatusReport(invocation_id=invocation_id, status=status)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    """Uninitialized store backed by a temporary file; tests await initialize()"""
    store = ResourceStore(str(tmp_path / "resources.db"), lease_seconds=60, clock=clock)
    yield store
    store.close()


@pytest.fixture
def github():
    """GitHub client mock describing one available repository on main"""
    client = AsyncMock(spec=GitHubClient)
    client.get_repository.return_value = make_repository()
    client.get_branch_head.return_value = make_head()
    client.get_tree.return_value = make_tree()
    return client


@pytest.fixture
def index():
    """Indexing client mock that accepts every registration"""
    client = AsyncMock(spec=IndexClient)
    client.create_source.return_value = "src-1"
    client.create_invocation.return_value = "inv-1"
    client.get_invocation_status.return_value = make_report()
    return client


@pytest.fixture
def coordinator(store, github, index):
    return RefreshCoordinator(store, github, index)
