"""Aggregated repository readiness

``get_status`` answers from the store immediately. Only the very first check
of a repository blocks on GitHub; everything else that is stale or missing is
refreshed by one background task per call, and the next call sees the result.
"""

import asyncio
import logging

from src.config import config
from src.models.resources import Availability, Commit, CurrentState
from src.models.status import CommitInfo, IndexedSnapshot, RepoInfo, RepoStatusOutput, SyncStatus
from src.services.background import BackgroundTasks
from src.services.index_client import IndexingServiceError
from src.services.refresh_coordinator import RefreshCoordinator, is_stale

logger = logging.getLogger(__name__)


class IncompleteSyncError(Exception):
    """Raised when a repository has no completed index yet"""

    pass


class BackgroundRefreshError(Exception):
    """Raised by a background refresh when one or more of its steps failed"""

    pass


def sync_status_of(current: CurrentState) -> SyncStatus:
    state = current.state
    if state is None or state.latest_processed_commit_sha is None:
        return SyncStatus.PROCESSING
    if state.latest_processed_commit_sha == state.latest_commit_sha:
        return SyncStatus.UP_TO_DATE
    return SyncStatus.OUT_OF_DATE


def _commit_info(commit: Commit | None) -> CommitInfo | None:
    if commit is None:
        return None
    return CommitInfo(
        sha=commit.sha,
        message=commit.message,
        author_name=commit.author_name,
        author_date=commit.author_date,
        html_url=commit.html_url,
    )


class RepositoryStatusService:
    """Reads cached state and schedules refreshes of whatever is stale"""

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        background: BackgroundTasks | None = None,
    ):
        self.coordinator = coordinator
        self.store = coordinator.store
        self.background = background or BackgroundTasks()

    async def get_status(self, owner: str, name: str) -> RepoStatusOutput:
        """
        Get the readiness of a repository

        Raises:
            GitHubFetchError: If the first-ever check of the repository failed
        """
        repo_name = f"{owner}/{name}"
        current = await self.store.read_current_state(repo_name)

        if current.repository is None or current.repository.availability == Availability.UNFETCHED:
            logger.info(f"First check of {repo_name}, fetching from GitHub")
            await self.coordinator.refresh_repository(owner, name)
            current = await self.store.read_current_state(repo_name)
            if (
                current.repository is None
                or current.repository.availability == Availability.UNFETCHED
            ):
                # Another caller holds the first fetch
                return RepoStatusOutput(exists=None)

        repository = current.repository
        if not repository.is_available:
            return RepoStatusOutput(exists=False, last_checked=repository.fetched_at)

        now = self.store.now()
        if self._needs_refresh(current, now):
            self.background.spawn(
                self._refresh_in_background(
                    owner, name, refresh_repository=is_stale(
                        repository.fetched_at, config.repo_ttl_seconds, now
                    )
                ),
                name=f"refresh:{repo_name}",
            )

        invocation = current.invocation
        if (
            invocation is not None
            and invocation.invocation_id
            and not invocation.status.is_terminal
            and is_stale(invocation.fetched_at, config.invocation_status_ttl_seconds, now)
        ):
            try:
                await self.coordinator.refresh_invocation_status(invocation)
            except IndexingServiceError as e:
                logger.warning(f"Could not poll invocation {invocation.invocation_id}: {e}")
            current = await self.store.read_current_state(repo_name)

        return self._format(current)

    def _needs_refresh(self, current: CurrentState, now: float) -> bool:
        if is_stale(current.repository.fetched_at, config.repo_ttl_seconds, now):
            return True
        if current.state is None or is_stale(
            current.state.fetched_at, config.commit_ttl_seconds, now
        ):
            return True
        if current.source is None or not current.source.source_id:
            return True
        if current.latest_commit is None:
            return False
        tree = current.tree
        if tree is None or (
            tree.entries is None and is_stale(tree.fetched_at, config.tree_ttl_seconds, now)
        ):
            return True
        return current.invocation is None or not current.invocation.invocation_id

    async def _refresh_in_background(
        self, owner: str, name: str, refresh_repository: bool
    ) -> None:
        """
        Refresh whatever is stale for one repository

        Raises:
            BackgroundRefreshError: If any step failed; independent steps still ran
        """
        repo_name = f"{owner}/{name}"
        if refresh_repository:
            repository = await self.coordinator.refresh_repository(owner, name)
        else:
            repository = await self.store.get_repository(repo_name)
        if repository is None or not repository.is_available:
            return

        commit, source = await asyncio.gather(
            self.coordinator.refresh_commit(owner, name, repository.details.default_branch),
            self.coordinator.register_source(owner, name),
            return_exceptions=True,
        )
        errors = [result for result in (commit, source) if isinstance(result, Exception)]

        if not isinstance(commit, BaseException) and commit is not None:
            steps = [self.coordinator.refresh_tree(owner, name, commit.tree_sha)]
            if not isinstance(source, BaseException) and source is not None and source.source_id:
                steps.append(self.coordinator.register_invocation(owner, name, commit.sha))
            results = await asyncio.gather(*steps, return_exceptions=True)
            errors.extend(result for result in results if isinstance(result, Exception))

        if errors:
            raise BackgroundRefreshError(
                f"Background refresh of {repo_name} failed: "
                + "; ".join(str(error) for error in errors)
            ) from errors[0]

    def _format(self, current: CurrentState) -> RepoStatusOutput:
        repository = current.repository
        details = repository.details
        repo_info = None
        if details is not None:
            repo_info = RepoInfo(
                full_name=repository.name,
                description=details.description,
                html_url=details.html_url,
                language=details.language,
                stargazers_count=details.stargazers_count,
                forks_count=details.forks_count,
                watchers_count=details.watchers_count,
                open_issues_count=details.open_issues_count,
                license_name=details.license_name,
            )

        return RepoStatusOutput(
            exists=True,
            sync_status=sync_status_of(current),
            is_private=details.private if details else False,
            repo_info=repo_info,
            latest_commit=_commit_info(current.latest_commit),
            latest_processed_commit=_commit_info(current.latest_processed_commit),
            tree=current.tree.entries if current.tree else None,
            last_checked=repository.fetched_at,
        )

    async def get_indexed_snapshot(self, owner: str, name: str) -> IndexedSnapshot:
        """
        Get the most recent completed index of a repository

        Raises:
            IncompleteSyncError: If no invocation has completed yet
        """
        repo_name = f"{owner}/{name}"
        snapshot = await self.store.read_completed_snapshot(repo_name)
        if snapshot is None:
            raise IncompleteSyncError(f"{repo_name} has not finished indexing yet")

        invocation, commit, tree = snapshot
        return IndexedSnapshot(
            repo_name=repo_name,
            collection_name=invocation.target_collection_name,
            ref=invocation.ref,
            commit=_commit_info(commit),
            tree=tree.entries if tree else None,
        )

    async def wait_for_background(self) -> list[BaseException]:
        """Wait for refreshes spawned by earlier calls and return their failures"""
        return await self.background.drain()
