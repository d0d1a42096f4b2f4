"""Integration tests for the repository status aggregator"""

import asyncio

import pytest
from conftest import (
    HEAD_SHA,
    NAME,
    OWNER,
    make_head,
    make_report,
    make_repository,
    make_tree,
)

from src.config import config
from src.models.resources import InvocationStatus
from src.models.status import SyncStatus
from src.models.upstream import RepositoryUnavailable
from src.services.github_client import GitHubFetchError
from src.services.index_client import IndexingServiceError
from src.services.status_service import (
    BackgroundRefreshError,
    IncompleteSyncError,
    RepositoryStatusService,
)

NEW_SHA = "c" * 40
NEW_TREE_SHA = "d" * 40


@pytest.fixture
def service(coordinator):
    return RepositoryStatusService(coordinator)


def _upstream_calls(github, index) -> dict[str, int]:
    return {
        "get_repository": github.get_repository.await_count,
        "get_branch_head": github.get_branch_head.await_count,
        "get_tree": github.get_tree.await_count,
        "create_source": index.create_source.await_count,
        "create_invocation": index.create_invocation.await_count,
        "get_invocation_status": index.get_invocation_status.await_count,
    }


async def _reach_up_to_date(service, store, index, clock):
    await store.initialize()
    await service.get_status(OWNER, NAME)
    await service.wait_for_background()

    clock.advance(3)
    index.get_invocation_status.return_value = make_report(InvocationStatus.COMPLETED)
    return await service.get_status(OWNER, NAME)


class TestColdStart:
    """First-ever check of a repository"""

    @pytest.mark.asyncio
    async def test_cold_start_issues_every_fetch_once(self, service, store, github, index):
        await store.initialize()

        status = await service.get_status(OWNER, NAME)

        assert status.exists is True
        assert status.sync_status == SyncStatus.PROCESSING
        assert status.repo_info.full_name == "octocat/hello-world"
        assert status.repo_info.stargazers_count == 42
        assert status.last_checked is not None

        await service.wait_for_background()

        assert _upstream_calls(github, index) == {
            "get_repository": 1,
            "get_branch_head": 1,
            "get_tree": 1,
            "create_source": 1,
            "create_invocation": 1,
            "get_invocation_status": 0,
        }
        github.get_branch_head.assert_awaited_once_with(OWNER, NAME, "main")
        index.create_invocation.assert_awaited_once()
        assert index.create_invocation.await_args.args[:2] == ("src-1", HEAD_SHA)

    @pytest.mark.asyncio
    async def test_second_call_sees_background_results(self, service, store):
        await store.initialize()
        await service.get_status(OWNER, NAME)
        await service.wait_for_background()

        status = await service.get_status(OWNER, NAME)

        assert status.sync_status == SyncStatus.PROCESSING
        assert status.latest_commit.sha == HEAD_SHA
        assert status.latest_processed_commit is None
        assert [entry.path for entry in status.tree] == ["README.md", "src"]

    @pytest.mark.asyncio
    async def test_simultaneous_cold_starts(self, service, store, github, index):
        await store.initialize()

        async def slow_repository(*args, **kwargs):
            await asyncio.sleep(0.05)
            return make_repository()

        github.get_repository.side_effect = slow_repository

        first, second = await asyncio.gather(
            service.get_status(OWNER, NAME), service.get_status(OWNER, NAME)
        )
        await service.wait_for_background()

        assert first.exists is True
        # The caller that lost the first fetch reports "still checking"
        assert second.exists is None
        assert second.sync_status is None
        assert _upstream_calls(github, index) == {
            "get_repository": 1,
            "get_branch_head": 1,
            "get_tree": 1,
            "create_source": 1,
            "create_invocation": 1,
            "get_invocation_status": 0,
        }

    @pytest.mark.asyncio
    async def test_first_fetch_failure_propagates(self, service, store, github):
        await store.initialize()
        github.get_repository.side_effect = GitHubFetchError("timeout")

        with pytest.raises(GitHubFetchError):
            await service.get_status(OWNER, NAME)

        assert len(service.background) == 0

    @pytest.mark.asyncio
    async def test_missing_repository(self, service, store, github, index):
        await store.initialize()
        github.get_repository.return_value = RepositoryUnavailable(reason="not_found")

        status = await service.get_status(OWNER, NAME)
        await service.wait_for_background()

        assert status.exists is False
        assert status.repo_info is None
        assert status.last_checked is not None
        github.get_branch_head.assert_not_awaited()
        index.create_source.assert_not_awaited()

        # The negative result is cached until it expires
        await service.get_status(OWNER, NAME)
        assert github.get_repository.await_count == 1

    @pytest.mark.asyncio
    async def test_private_repository_flag(self, service, store, github):
        await store.initialize()
        github.get_repository.return_value = make_repository(private=True)

        status = await service.get_status(OWNER, NAME)

        assert status.is_private is True


class TestSteadyState:
    """Checks of a repository that is already known"""

    @pytest.mark.asyncio
    async def test_completion_is_observed_on_poll(self, service, store, index, clock):
        status = await _reach_up_to_date(service, store, index, clock)

        index.get_invocation_status.assert_awaited_once()
        assert status.sync_status == SyncStatus.UP_TO_DATE
        assert status.latest_processed_commit.sha == HEAD_SHA

    @pytest.mark.asyncio
    async def test_up_to_date_makes_no_upstream_calls(
        self, service, store, github, index, clock
    ):
        await _reach_up_to_date(service, store, index, clock)
        await service.wait_for_background()
        before = _upstream_calls(github, index)

        clock.advance(60)
        status = await service.get_status(OWNER, NAME)

        assert status.sync_status == SyncStatus.UP_TO_DATE
        assert len(service.background) == 0
        assert _upstream_calls(github, index) == before

    @pytest.mark.asyncio
    async def test_newer_commit_goes_out_of_date(self, service, store, github, index, clock):
        await _reach_up_to_date(service, store, index, clock)
        await service.wait_for_background()
        before = _upstream_calls(github, index)

        clock.advance(config.commit_ttl_seconds + 1)
        github.get_branch_head.return_value = make_head(sha=NEW_SHA, tree_sha=NEW_TREE_SHA)
        github.get_tree.return_value = make_tree(sha=NEW_TREE_SHA)

        # Answered from the store while the refresh runs in the background
        stale_view = await service.get_status(OWNER, NAME)
        assert stale_view.sync_status == SyncStatus.UP_TO_DATE
        await service.wait_for_background()

        status = await service.get_status(OWNER, NAME)
        await service.wait_for_background()

        assert status.sync_status == SyncStatus.OUT_OF_DATE
        assert status.latest_commit.sha == NEW_SHA
        assert status.latest_processed_commit.sha == HEAD_SHA

        after = _upstream_calls(github, index)
        assert after["create_invocation"] == before["create_invocation"] + 1
        assert after["get_branch_head"] == before["get_branch_head"] + 1
        assert after["get_tree"] == before["get_tree"] + 1
        assert after["get_repository"] == before["get_repository"]
        assert after["create_source"] == before["create_source"]
        assert index.create_invocation.await_args.args[:2] == ("src-1", NEW_SHA)

    @pytest.mark.asyncio
    async def test_background_failure_is_swallowed(self, service, store, github, index):
        await store.initialize()
        github.get_branch_head.side_effect = GitHubFetchError("server error")

        status = await service.get_status(OWNER, NAME)
        failures = await service.wait_for_background()

        assert status.exists is True
        assert len(failures) == 1
        assert isinstance(failures[0], BackgroundRefreshError)
        assert "octocat/hello-world" in str(failures[0])
        assert "server error" in str(failures[0])
        # Independent work still ran; dependent work was skipped
        index.create_source.assert_awaited_once()
        github.get_tree.assert_not_awaited()
        index.create_invocation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_poll_failure_returns_cached_state(self, service, store, index, clock):
        await store.initialize()
        await service.get_status(OWNER, NAME)
        await service.wait_for_background()

        clock.advance(3)
        index.get_invocation_status.side_effect = IndexingServiceError("down")
        status = await service.get_status(OWNER, NAME)

        assert status.sync_status == SyncStatus.PROCESSING


class TestIndexedSnapshot:
    """Test lookup of the completed snapshot"""

    @pytest.mark.asyncio
    async def test_incomplete_sync_raises(self, service, store):
        await store.initialize()
        await service.get_status(OWNER, NAME)
        await service.wait_for_background()

        with pytest.raises(IncompleteSyncError):
            await service.get_indexed_snapshot(OWNER, NAME)

    @pytest.mark.asyncio
    async def test_unknown_repository_raises(self, service, store):
        await store.initialize()

        with pytest.raises(IncompleteSyncError):
            await service.get_indexed_snapshot(OWNER, NAME)

    @pytest.mark.asyncio
    async def test_snapshot_after_completion(self, service, store, index, clock):
        await _reach_up_to_date(service, store, index, clock)

        snapshot = await service.get_indexed_snapshot(OWNER, NAME)

        collection_name = index.create_invocation.await_args.args[2]
        assert snapshot.repo_name == "octocat/hello-world"
        assert snapshot.ref == HEAD_SHA
        assert snapshot.collection_name == collection_name
        assert snapshot.commit.sha == HEAD_SHA
        assert len(snapshot.tree) == 2
