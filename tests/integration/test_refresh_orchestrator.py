"""Integration tests for RefreshOrchestrator"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from src.models.resources import InvocationStatus
from src.models.upstream import InvocationStatusReport
from src.models.watchlist import WatchedRepository, WatchlistConfig
from src.services.github_client import GitHubFetchError
from src.services.index_client import IndexingServiceError
from src.services.refresh_orchestrator import (
    RefreshException,
    RefreshOrchestrator,
    refresh_repository_now,
)
from src.services.resource_store import ResourceStore


class TestRefreshOrchestrator:
    """Test the warm refresh cycle against a real store and mocked upstreams"""

    @pytest.fixture
    def db_path(self, tmp_path):
        return str(tmp_path / "refresh.db")

    @pytest.fixture
    def watchlist(self):
        return WatchlistConfig(
            repositories=[
                WatchedRepository(owner="octocat", name="hello-world"),
                WatchedRepository(owner="octocat", name="disabled", enabled=False),
            ]
        )

    @pytest.fixture
    def upstreams(self, github, index):
        """Route the orchestrator's client construction to the mocks"""
        with patch("src.services.refresh_orchestrator.GitHubClient", return_value=github):
            with patch("src.services.refresh_orchestrator.IndexClient", return_value=index):
                yield github, index

    def test_successful_refresh_cycle(self, db_path, watchlist, upstreams):
        github, index = upstreams

        result = RefreshOrchestrator(watchlist=watchlist, db_path=db_path).refresh_once()

        assert result.success is True
        assert result.error is None
        assert result.repositories_checked == 1
        github.get_repository.assert_awaited_once_with("octocat", "hello-world")
        index.create_source.assert_awaited_once_with("octocat", "hello-world")
        index.create_invocation.assert_awaited_once()
        github.close.assert_awaited_once()
        index.close.assert_awaited_once()

    def test_sweep_completes_invocations(self, db_path, watchlist, upstreams):
        github, index = upstreams
        index.get_invocation_status.return_value = InvocationStatusReport(
            invocation_id="inv-1", status=InvocationStatus.COMPLETED
        )

        with patch("src.services.refresh_orchestrator.config") as mock_config:
            # Every registered invocation counts as stale
            mock_config.invocation_status_ttl_seconds = -1
            result = RefreshOrchestrator(watchlist=watchlist, db_path=db_path).refresh_once()

        assert result.success is True
        assert result.invocations_polled == 1
        index.get_invocation_status.assert_awaited_once_with("inv-1")

        snapshot = self._completed_snapshot(db_path)
        assert snapshot is not None
        assert snapshot[0].invocation_id == "inv-1"

    def _completed_snapshot(self, db_path):
        store = ResourceStore(db_path)
        try:
            return asyncio.run(store.read_completed_snapshot("octocat/hello-world"))
        finally:
            store.close()

    def test_repository_failure_is_reported(self, db_path, watchlist, upstreams):
        github, index = upstreams
        github.get_repository.side_effect = GitHubFetchError("rate limited")

        result = RefreshOrchestrator(watchlist=watchlist, db_path=db_path).refresh_once()

        assert result.success is False
        assert result.repositories_checked == 0
        assert "octocat/hello-world" in result.error
        assert "rate limited" in result.error
        index.create_source.assert_not_awaited()

    def test_background_registration_failure_is_reported(self, db_path, watchlist, upstreams):
        github, index = upstreams
        index.create_source.side_effect = IndexingServiceError("401 bad api key")

        result = RefreshOrchestrator(watchlist=watchlist, db_path=db_path).refresh_once()

        assert result.success is False
        assert result.repositories_checked == 1
        assert "octocat/hello-world" in result.error
        index.create_source.assert_awaited_once()
        index.create_invocation.assert_not_awaited()
        # The commit and tree still refreshed
        github.get_tree.assert_awaited_once()

    def test_refresh_timing_metrics(self, db_path, watchlist, upstreams):
        result = RefreshOrchestrator(watchlist=watchlist, db_path=db_path).refresh_once()

        assert result.duration_seconds >= 0
        assert result.end_time >= result.start_time

    def test_missing_watchlist_raises(self, db_path, tmp_path):
        with patch("src.services.refresh_orchestrator.config") as mock_config:
            mock_config.watchlist_path = str(tmp_path / "missing.yaml")
            orchestrator = RefreshOrchestrator(db_path=db_path)

            with pytest.raises(RefreshException, match="Cannot load watchlist"):
                orchestrator.refresh_once()

    def test_single_repository_refresh(self, db_path, upstreams):
        github, _ = upstreams

        result = refresh_repository_now("octocat/hello-world", db_path=db_path)

        assert result.success is True
        github.get_repository.assert_awaited_once_with("octocat", "hello-world")

    def test_single_repository_rejects_bad_name(self, db_path):
        with pytest.raises(ValueError):
            refresh_repository_now("not-a-repo", db_path=db_path)

    def test_configure_scheduler(self):
        scheduler = MagicMock()
        orchestrator = RefreshOrchestrator(watchlist=WatchlistConfig())

        orchestrator.configure_scheduler_sync(scheduler, interval_minutes=15)

        scheduler.add_job.assert_called_once()
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == "repo_refresh"
        assert kwargs["max_instances"] == 1
        assert kwargs["trigger"].interval.total_seconds() == 15 * 60

        orchestrator.stop_scheduler_sync()
        scheduler.remove_job.assert_called_once_with("repo_refresh")
