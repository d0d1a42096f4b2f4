"""Orchestrates background warm refresh of watched repositories"""

import asyncio
import logging
from datetime import datetime

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.config import config
from src.models.refresh_config import RefreshResult
from src.models.watchlist import WatchedRepository, WatchlistConfig
from src.services.github_client import GitHubClient
from src.services.index_client import IndexClient
from src.services.refresh_coordinator import RefreshCoordinator, split_repo_name
from src.services.resource_store import ResourceStore, StoreIntegrityError
from src.services.status_service import RepositoryStatusService
from src.utils.watchlist_loader import load_watchlist

logger = logging.getLogger(__name__)


class RefreshException(Exception):
    """Raised when a refresh cycle cannot run at all"""

    pass


class RefreshOrchestrator:
    """Keeps watched repositories and in-flight invocations fresh on a schedule"""

    def __init__(
        self,
        watchlist: WatchlistConfig | None = None,
        db_path: str | None = None,
    ):
        """
        Initialize refresh orchestrator

        Args:
            watchlist: Repositories to keep warm (loaded from config.watchlist_path if None)
            db_path: Database path (defaults to config.db_path)
        """
        self.watchlist = watchlist
        self.db_path = db_path or config.db_path
        self.scheduler: BackgroundScheduler | None = None

    def configure_scheduler_sync(
        self,
        scheduler: BackgroundScheduler,
        interval_minutes: int,
        max_concurrent_jobs: int = 1,
    ) -> None:
        """
        Configure scheduler with intervals (synchronous version for BackgroundScheduler)

        Args:
            scheduler: Initialized BackgroundScheduler instance
            interval_minutes: Refresh interval in minutes
            max_concurrent_jobs: Maximum concurrent refresh jobs
        """
        self.scheduler = scheduler

        trigger = IntervalTrigger(
            minutes=interval_minutes,
            start_date=datetime.now(),
        )

        self.scheduler.add_job(
            self.refresh_once,
            trigger=trigger,
            id="repo_refresh",
            name="Watched Repository Refresh",
            max_instances=max_concurrent_jobs,
            replace_existing=True,
        )

        logger.info(f"Scheduled refresh every {interval_minutes} minutes")

    def stop_scheduler_sync(self) -> None:
        """Gracefully stop scheduler (synchronous version)"""
        if self.scheduler:
            try:
                self.scheduler.remove_job("repo_refresh")
                logger.info("Stopped refresh scheduler")
            except JobLookupError:
                logger.warning("Refresh job not found during shutdown")

    def refresh_once(self) -> RefreshResult:
        """
        Execute single refresh cycle

        Process:
        1. Check every enabled watched repository through the status aggregator,
           which schedules refreshes of whatever is stale or missing
        2. Wait for the refreshes scheduled in step 1 and collect their failures
        3. Poll every registered, non-terminal invocation with a stale status,
           so completed indexing advances the processed commit without a caller

        Note: This is synchronous because BackgroundScheduler runs in threads.
        We use asyncio.run() to bridge to the async services.

        Returns:
            RefreshResult: Result of refresh operation; per-repository failures
            are collected in ``error`` and mark the result unsuccessful

        Raises:
            RefreshException: If the watchlist or the store is unusable
        """
        start_time = datetime.now()

        watchlist = self.watchlist
        if watchlist is None:
            try:
                watchlist = load_watchlist(config.watchlist_path)
            except (FileNotFoundError, ValueError) as e:
                raise RefreshException(f"Cannot load watchlist: {e}") from e

        repositories = watchlist.get_enabled_repositories()
        logger.info(f"Starting refresh of {len(repositories)} watched repositories")

        repositories_checked, invocations_polled, failures = asyncio.run(
            self._refresh_cycle(repositories)
        )

        end_time = datetime.now()
        duration_seconds = (end_time - start_time).total_seconds()

        if failures:
            logger.warning(
                f"Refresh finished with {len(failures)} failures in {duration_seconds:.2f}s"
            )
        else:
            logger.info(f"Refresh completed successfully in {duration_seconds:.2f}s")

        return RefreshResult(
            success=not failures,
            start_time=start_time,
            end_time=end_time,
            duration_seconds=duration_seconds,
            repositories_checked=repositories_checked,
            invocations_polled=invocations_polled,
            error="; ".join(failures) if failures else None,
        )

    async def _refresh_cycle(
        self, repositories: list[WatchedRepository]
    ) -> tuple[int, int, list[str]]:
        store = ResourceStore(self.db_path)
        await store.initialize()
        try:
            store.check_integrity()
        except StoreIntegrityError as e:
            store.close()
            raise RefreshException(f"Resource store is unusable: {e}") from e

        # Clients are bound to this cycle's event loop
        github = GitHubClient()
        index = IndexClient()
        coordinator = RefreshCoordinator(store, github, index)
        status_service = RepositoryStatusService(coordinator)

        failures: list[str] = []
        repositories_checked = 0
        invocations_polled = 0
        try:
            for repository in repositories:
                try:
                    status = await status_service.get_status(repository.owner, repository.name)
                    repositories_checked += 1
                    logger.info(
                        f"  {repository.full_name}: exists={status.exists} "
                        f"sync_status={status.sync_status.value if status.sync_status else None}"
                    )
                except Exception as e:
                    logger.error(f"Failed to refresh {repository.full_name}: {e}", exc_info=True)
                    failures.append(f"{repository.full_name}: {e}")

            for error in await status_service.wait_for_background():
                failures.append(str(error))

            stale = await store.list_stale_invocations(config.invocation_status_ttl_seconds)
            for invocation in stale:
                try:
                    await coordinator.refresh_invocation_status(
                        invocation, ttl=config.invocation_status_ttl_seconds
                    )
                    invocations_polled += 1
                except Exception as e:
                    logger.error(
                        f"Failed to poll invocation {invocation.invocation_id}: {e}",
                        exc_info=True,
                    )
                    failures.append(f"invocation {invocation.invocation_id}: {e}")
        finally:
            await github.close()
            await index.close()
            store.close()

        return repositories_checked, invocations_polled, failures


def refresh_repository_now(repo_name: str, db_path: str | None = None) -> RefreshResult:
    """Run one refresh cycle for a single repository given as owner/name"""
    owner, name = split_repo_name(repo_name)
    orchestrator = RefreshOrchestrator(
        watchlist=WatchlistConfig(repositories=[WatchedRepository(owner=owner, name=name)]),
        db_path=db_path,
    )
    return orchestrator.refresh_once()
