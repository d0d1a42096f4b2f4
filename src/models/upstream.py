"""Normalized results returned by the GitHub and indexing clients"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from src.models.resources import InvocationStatus, RepositoryDetails, TreeEntry


class UpstreamRepository(BaseModel):
    """Repository metadata as reported by GitHub"""

    full_name: str
    details: RepositoryDetails


class RepositoryUnavailable(BaseModel):
    """GitHub confirmed the repository is missing or cannot be read"""

    reason: Literal["not_found", "inaccessible"]


class BranchHead(BaseModel):
    """HEAD commit of a branch"""

    sha: str
    tree_sha: str
    message: str
    author_name: str | None = None
    author_date: datetime | None = None
    html_url: str


class UpstreamTree(BaseModel):
    """Recursive tree listing"""

    sha: str
    entries: list[TreeEntry] = Field(default_factory=list)
    truncated: bool = False


class InvocationStatusReport(BaseModel):
    """Invocation status normalized from the indexing service's tagged union"""

    invocation_id: str
    status: InvocationStatus
    detail: str | None = Field(
        default=None, description="Failure message or completion time, when the service sent one"
    )
    collection_name: str | None = None
