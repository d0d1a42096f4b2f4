"""Readiness view exposed to the chat and UI layers"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from src.models.resources import TreeEntry


class SyncStatus(str, Enum):
    """How the indexed snapshot relates to the branch HEAD"""

    PROCESSING = "processing"
    UP_TO_DATE = "up_to_date"
    OUT_OF_DATE = "out_of_date"


class RepoInfo(BaseModel):
    """Repository metadata snapshot"""

    full_name: str
    description: str
    html_url: str
    language: str
    stargazers_count: int
    forks_count: int
    watchers_count: int
    open_issues_count: int
    license_name: str | None = None


class CommitInfo(BaseModel):
    """Commit summary"""

    sha: str
    message: str
    author_name: str | None = None
    author_date: datetime | None = None
    html_url: str


class RepoStatusOutput(BaseModel):
    """Aggregated readiness of a repository"""

    exists: bool | None = Field(
        description="True if available, False if not found, None while the first check is in flight"
    )
    sync_status: SyncStatus | None = Field(default=None)
    is_private: bool = Field(default=False)
    repo_info: RepoInfo | None = Field(default=None)
    latest_commit: CommitInfo | None = Field(default=None)
    latest_processed_commit: CommitInfo | None = Field(default=None)
    tree: list[TreeEntry] | None = Field(default=None, description="Flat tree of the latest commit")
    last_checked: datetime | None = Field(
        default=None, description="When repository availability was last confirmed"
    )


class IndexedSnapshot(BaseModel):
    """Immutable indexed snapshot the search and read tools are scoped to"""

    repo_name: str
    collection_name: str
    ref: str = Field(description="Commit SHA the collection was built from")
    commit: CommitInfo | None = None
    tree: list[TreeEntry] | None = None
