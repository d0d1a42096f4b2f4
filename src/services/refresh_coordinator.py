"""Single-flight refresh of cached upstream resources

Every resource kind goes through the same sequence:

1. insert a placeholder row for the key, ignoring conflicts
2. try to claim the row's lease; the claim only succeeds when the row is
   eligible (never fetched, forced, or older than its TTL) and unleased
3. the winner calls the upstream service and writes the result back under
   its lease; a failure releases the lease and leaves the timestamp alone
4. everybody else reads whatever is stored right now, stale or not

Registration of index sources and invocations is the same sequence with
"external id is still NULL" as the eligibility rule and a create call as the
fetch.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar
from uuid import uuid4

from src.config import config
from src.models.resources import Commit, IndexInvocation, IndexSource, Repository, Tree
from src.services.github_client import GitHubClient
from src.services.index_client import IndexClient, IndexingServiceError
from src.services.resource_store import ResourceStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RegistrationError(Exception):
    """Raised when creating a source or invocation with the indexing service fails"""

    pass


def is_stale(fetched_at: datetime | None, ttl: float, now: float) -> bool:
    """True when a value was never fetched or is older than ``ttl`` seconds"""
    if fetched_at is None:
        return True
    return now - fetched_at.timestamp() > ttl


def split_repo_name(repo_name: str) -> tuple[str, str]:
    owner, _, name = repo_name.partition("/")
    if not owner or not name or "/" in name:
        raise ValueError(f"Repository name must look like owner/name, got: {repo_name!r}")
    return owner, name


class RefreshCoordinator:
    """Refreshes each resource kind with at most one upstream call in flight per key"""

    def __init__(
        self,
        store: ResourceStore,
        github: GitHubClient,
        index: IndexClient,
    ):
        self.store = store
        self.github = github
        self.index = index

    async def _coordinate(
        self,
        description: str,
        claim: Callable[[], Awaitable[str | None]],
        fetch_and_store: Callable[[str], Awaitable[bool]],
        release: Callable[[str], Awaitable[None]],
        read_current: Callable[[], Awaitable[T]],
    ) -> T:
        token = await claim()
        if token is None:
            logger.debug(f"Skipping refresh of {description}: fresh or claimed elsewhere")
            return await read_current()

        try:
            stored = await fetch_and_store(token)
        except (Exception, asyncio.CancelledError):
            await release(token)
            raise

        if stored:
            logger.debug(f"Refreshed {description}")
        return await read_current()

    # ------------------------------------------------------------------
    # GitHub-backed resources
    # ------------------------------------------------------------------

    async def refresh_repository(
        self, owner: str, name: str, ttl: float | None = None, force: bool = False
    ) -> Repository | None:
        """
        Refresh repository metadata

        Returns:
            The stored repository row; its availability is UNFETCHED only if
            another worker is performing the first fetch right now

        Raises:
            GitHubFetchError: If this caller won the claim and the fetch failed
        """
        repo_name = f"{owner}/{name}"
        ttl = config.repo_ttl_seconds if ttl is None else ttl
        await self.store.ensure_repository(repo_name)

        async def fetch_and_store(token: str) -> bool:
            logger.info(f"Fetching repository {repo_name} from GitHub")
            fetched = await self.github.get_repository(owner, name)
            return await self.store.complete_repository(repo_name, token, fetched)

        return await self._coordinate(
            f"repository {repo_name}",
            claim=lambda: self.store.claim_repository(repo_name, ttl, force),
            fetch_and_store=fetch_and_store,
            release=lambda token: self.store.release_repository(repo_name, token),
            read_current=lambda: self.store.get_repository(repo_name),
        )

    async def refresh_commit(
        self,
        owner: str,
        name: str,
        branch: str,
        ttl: float | None = None,
        force: bool = False,
    ) -> Commit | None:
        """Refresh the HEAD commit of ``branch``; returns the latest stored commit"""
        repo_name = f"{owner}/{name}"
        ttl = config.commit_ttl_seconds if ttl is None else ttl
        await self.store.ensure_repository_state(repo_name)

        async def fetch_and_store(token: str) -> bool:
            logger.info(f"Fetching HEAD of {repo_name}@{branch} from GitHub")
            head = await self.github.get_branch_head(owner, name, branch)
            if head is None:
                logger.warning(f"Branch {branch} of {repo_name} not found")
            return await self.store.complete_repository_state(repo_name, token, head)

        return await self._coordinate(
            f"HEAD of {repo_name}",
            claim=lambda: self.store.claim_repository_state(repo_name, ttl, force),
            fetch_and_store=fetch_and_store,
            release=lambda token: self.store.release_repository_state(repo_name, token),
            read_current=lambda: self.store.get_latest_commit(repo_name),
        )

    async def refresh_tree(
        self,
        owner: str,
        name: str,
        tree_sha: str,
        ttl: float | None = None,
        force: bool = False,
    ) -> Tree | None:
        """Fetch a tree once; trees that were not found are retried after ``ttl``"""
        repo_name = f"{owner}/{name}"
        ttl = config.tree_ttl_seconds if ttl is None else ttl
        await self.store.ensure_tree(tree_sha, repo_name)

        async def fetch_and_store(token: str) -> bool:
            logger.info(f"Fetching tree {tree_sha[:7]} of {repo_name} from GitHub")
            fetched = await self.github.get_tree(owner, name, tree_sha)
            return await self.store.complete_tree(tree_sha, token, fetched)

        return await self._coordinate(
            f"tree {tree_sha[:7]}",
            claim=lambda: self.store.claim_tree(tree_sha, ttl, force),
            fetch_and_store=fetch_and_store,
            release=lambda token: self.store.release_tree(tree_sha, token),
            read_current=lambda: self.store.get_tree(tree_sha),
        )

    # ------------------------------------------------------------------
    # Index registrations
    # ------------------------------------------------------------------

    async def register_source(self, owner: str, name: str) -> IndexSource | None:
        """
        Register the repository with the indexing service exactly once

        Returns:
            The source row; its ``source_id`` is None while another worker's
            registration is in flight

        Raises:
            RegistrationError: If this caller won the claim and the create call failed
        """
        repo_name = f"{owner}/{name}"

        existing = await self.store.get_source(repo_name)
        if existing is not None and existing.source_id:
            return existing

        await self.store.ensure_source(repo_name)

        async def create(token: str) -> bool:
            logger.info(f"Registering {repo_name} with the indexing service")
            try:
                source_id = await self.index.create_source(owner, name)
            except IndexingServiceError as e:
                raise RegistrationError(f"Failed to register source for {repo_name}: {e}") from e
            return await self.store.complete_source(repo_name, token, source_id)

        return await self._coordinate(
            f"index source of {repo_name}",
            claim=lambda: self.store.claim_source(repo_name),
            fetch_and_store=create,
            release=lambda token: self.store.release_source(repo_name, token),
            read_current=lambda: self.store.get_source(repo_name),
        )

    async def register_invocation(
        self, owner: str, name: str, ref: str
    ) -> IndexInvocation | None:
        """
        Start indexing ``ref`` exactly once per source

        Returns:
            The invocation row, or None if the repository has no registered source yet

        Raises:
            RegistrationError: If this caller won the claim and the create call failed
        """
        repo_name = f"{owner}/{name}"

        source = await self.store.get_source(repo_name)
        if source is None or not source.source_id:
            logger.debug(f"Not registering invocation for {repo_name}: no index source yet")
            return None
        source_id = source.source_id

        existing = await self.store.get_invocation(source_id, ref)
        if existing is not None and existing.invocation_id:
            return existing

        await self.store.ensure_invocation(source_id, ref, collection_name=str(uuid4()))

        async def create(token: str) -> bool:
            # The placeholder that won the insert decides the collection name
            placeholder = await self.store.get_invocation(source_id, ref)
            logger.info(f"Starting index invocation for {repo_name} at {ref[:7]}")
            try:
                invocation_id = await self.index.create_invocation(
                    source_id, ref, placeholder.target_collection_name
                )
            except IndexingServiceError as e:
                raise RegistrationError(
                    f"Failed to start invocation for {repo_name} at {ref}: {e}"
                ) from e
            return await self.store.complete_invocation_registration(
                placeholder.id, token, invocation_id
            )

        async def release(token: str) -> None:
            placeholder = await self.store.get_invocation(source_id, ref)
            await self.store.release_invocation(placeholder.id, token)

        return await self._coordinate(
            f"invocation of {repo_name} at {ref[:7]}",
            claim=lambda: self.store.claim_invocation_registration(source_id, ref),
            fetch_and_store=create,
            release=release,
            read_current=lambda: self.store.get_invocation(source_id, ref),
        )

    async def refresh_invocation_status(
        self,
        invocation: IndexInvocation,
        ttl: float | None = None,
        force: bool = False,
    ) -> IndexInvocation | None:
        """
        Poll the status of a registered invocation

        Terminal invocations are returned as-is without any upstream call. A
        ``completed`` result also advances the repository's processed commit.
        """
        if not invocation.invocation_id or invocation.status.is_terminal:
            return invocation

        ttl = config.invocation_status_ttl_seconds if ttl is None else ttl
        invocation_id = invocation.invocation_id

        async def fetch_and_store(token: str) -> bool:
            report = await self.index.get_invocation_status(invocation_id)
            if report.status != invocation.status:
                logger.info(
                    f"Invocation {invocation_id} moved from {invocation.status.value} "
                    f"to {report.status.value}"
                    + (f" ({report.detail})" if report.detail else "")
                )
            return await self.store.complete_invocation_status(invocation.id, token, report)

        return await self._coordinate(
            f"status of invocation {invocation_id}",
            claim=lambda: self.store.claim_invocation_status(invocation.id, ttl, force),
            fetch_and_store=fetch_and_store,
            release=lambda token: self.store.release_invocation(invocation.id, token),
            read_current=lambda: self.store.get_invocation_by_id(invocation.id),
        )
