"""Stored resource models for the five cached resource kinds"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Availability(str, Enum):
    """Tri-state freshness of an upstream fact"""

    UNFETCHED = "unfetched"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class InvocationStatus(str, Enum):
    """Lifecycle of an index invocation"""

    PENDING = "pending"
    PROCESSING = "processing"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {InvocationStatus.COMPLETED, InvocationStatus.FAILED, InvocationStatus.CANCELLED}
)


class RepositoryDetails(BaseModel):
    """Metadata snapshot kept only while the repository is available"""

    description: str = Field(default="", description="Repository description")
    default_branch: str = Field(description="Branch whose HEAD is tracked")
    html_url: str = Field(description="Browser URL of the repository")
    language: str = Field(default="", description="Primary language")
    stargazers_count: int = Field(default=0, ge=0)
    forks_count: int = Field(default=0, ge=0)
    watchers_count: int = Field(default=0, ge=0)
    open_issues_count: int = Field(default=0, ge=0)
    subscribers_count: int = Field(default=0, ge=0)
    fork: bool = Field(default=False)
    private: bool = Field(default=False)
    license_name: str | None = Field(default=None)
    created_at: datetime | None = Field(default=None, description="When this snapshot was stored")


class Repository(BaseModel):
    """A repository row, keyed by its full name (owner/name)"""

    name: str = Field(description="Full name, owner/name")
    availability: Availability = Field(default=Availability.UNFETCHED)
    fetched_at: datetime | None = Field(default=None, description="Last upstream confirmation")
    details: RepositoryDetails | None = Field(default=None)

    @property
    def is_available(self) -> bool:
        return self.availability == Availability.AVAILABLE


class RepositoryState(BaseModel):
    """Join point between the upstream HEAD and what has been indexed"""

    repo_name: str
    latest_commit_sha: str | None = Field(default=None)
    latest_processed_commit_sha: str | None = Field(
        default=None, description="Latest commit with a completed invocation"
    )
    fetched_at: datetime | None = Field(default=None)


class Commit(BaseModel):
    """Content-addressed commit, immutable once stored"""

    sha: str
    repo_name: str
    tree_sha: str
    message: str
    author_name: str | None = None
    author_date: datetime | None = None
    html_url: str
    fetched_at: datetime | None = None


class TreeEntry(BaseModel):
    """One path in a flattened repository tree"""

    path: str
    type: str = Field(description="blob, tree or commit (submodule)")
    size: int | None = Field(default=None, ge=0)


class Tree(BaseModel):
    """Content-addressed file tree; entries stay None until fetched"""

    tree_sha: str
    repo_name: str
    entries: list[TreeEntry] | None = None
    truncated: bool = False
    fetched_at: datetime | None = None


class IndexSource(BaseModel):
    """Registration of a repository with the indexing service"""

    id: int
    repo_name: str
    source_id: str | None = Field(default=None, description="Externally assigned identifier")
    created_at: datetime


class IndexInvocation(BaseModel):
    """One indexing run of a source at a specific commit"""

    id: int
    source_id: str
    ref: str = Field(description="Commit SHA being indexed")
    target_collection_name: str
    invocation_id: str | None = Field(default=None, description="Externally assigned identifier")
    status: InvocationStatus = Field(default=InvocationStatus.PENDING)
    created_at: datetime
    fetched_at: datetime | None = None


class CurrentState(BaseModel):
    """Everything known about one repository, read in a single query"""

    repository: Repository | None = None
    state: RepositoryState | None = None
    latest_commit: Commit | None = None
    latest_processed_commit: Commit | None = None
    tree: Tree | None = None
    source: IndexSource | None = None
    invocation: IndexInvocation | None = None
