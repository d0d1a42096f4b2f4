"""Models for the repository watchlist (repos.yaml)"""

from pydantic import BaseModel, Field, field_validator


class WatchedRepository(BaseModel):
    """A repository kept warm by the background refresh"""

    owner: str = Field(description="GitHub repository owner (username or org)")
    name: str = Field(description="GitHub repository name")
    enabled: bool = Field(default=True, description="Whether this repository is refreshed")

    @field_validator("owner", "name")
    @classmethod
    def validate_segment(cls, v: str) -> str:
        if not v or "/" in v:
            raise ValueError(f"Invalid repository path segment: {v!r}")
        return v

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class RefreshConfig(BaseModel):
    """Configuration for the scheduled warm refresh"""

    enabled: bool = Field(default=False, description="Whether background refresh runs")
    interval_minutes: int = Field(
        default=15, ge=1, le=24 * 60, description="Minutes between refresh cycles"
    )
    max_concurrent_jobs: int = Field(default=1, ge=1, le=4, description="Max overlapping cycles")


class WatchlistConfig(BaseModel):
    """Complete watchlist configuration"""

    repositories: list[WatchedRepository] = Field(default_factory=list)
    refresh: RefreshConfig = Field(default_factory=RefreshConfig)

    def get_enabled_repositories(self) -> list[WatchedRepository]:
        """Get all enabled repositories"""
        return [repo for repo in self.repositories if repo.enabled]
