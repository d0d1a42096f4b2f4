"""Data models for the repository sync cache"""

from src.models.refresh_config import RefreshResult
from src.models.resources import (
    Availability,
    Commit,
    CurrentState,
    IndexInvocation,
    IndexSource,
    InvocationStatus,
    Repository,
    RepositoryDetails,
    RepositoryState,
    Tree,
    TreeEntry,
)
from src.models.status import CommitInfo, IndexedSnapshot, RepoInfo, RepoStatusOutput, SyncStatus
from src.models.upstream import (
    BranchHead,
    InvocationStatusReport,
    RepositoryUnavailable,
    UpstreamRepository,
    UpstreamTree,
)
from src.models.watchlist import RefreshConfig, WatchedRepository, WatchlistConfig

__all__ = [
    "Availability",
    "BranchHead",
    "Commit",
    "CommitInfo",
    "CurrentState",
    "IndexInvocation",
    "IndexSource",
    "IndexedSnapshot",
    "InvocationStatus",
    "InvocationStatusReport",
    "RefreshConfig",
    "RefreshResult",
    "RepoInfo",
    "RepoStatusOutput",
    "Repository",
    "RepositoryDetails",
    "RepositoryState",
    "RepositoryUnavailable",
    "SyncStatus",
    "Tree",
    "TreeEntry",
    "UpstreamRepository",
    "UpstreamTree",
    "WatchedRepository",
    "WatchlistConfig",
]
