"""MCP server implementation using fastmcp"""

import asyncio
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from fastmcp import FastMCP
from fastmcp.exceptions import McpError
from mcp.types import ErrorData
from starlette.responses import JSONResponse

from src.config import config
from src.models.status import IndexedSnapshot, RepoStatusOutput
from src.models.watchlist import WatchedRepository
from src.services.github_client import GitHubClient, GitHubFetchError
from src.services.index_client import IndexClient
from src.services.refresh_coordinator import RefreshCoordinator
from src.services.refresh_orchestrator import RefreshOrchestrator
from src.services.resource_store import ResourceStore
from src.services.status_service import IncompleteSyncError, RepositoryStatusService
from src.services.telemetry import get_telemetry_service
from src.utils.watchlist_loader import load_watchlist

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize fastmcp server
mcp = FastMCP(name="repochat-sync", version="1.0.0")

# Initialize services (will be set up on first request)
_store: ResourceStore | None = None
_status_service: RepositoryStatusService | None = None
_services_lock = asyncio.Lock()

# Background refresh orchestrator
_refresh_orchestrator: RefreshOrchestrator | None = None
_scheduler: BackgroundScheduler | None = None


async def _get_status_service() -> RepositoryStatusService:
    """Get or initialize the status service and everything behind it"""
    global _store, _status_service

    async with _services_lock:
        if not _status_service:
            store = ResourceStore(config.db_path)
            await store.initialize()

            if not await store.health_check():
                raise McpError(
                    ErrorData(code=-32603, message="Resource store failed its health check")
                )

            coordinator = RefreshCoordinator(store, GitHubClient(), IndexClient())
            _store = store
            _status_service = RepositoryStatusService(coordinator)

    return _status_service


def _validate_repository(owner: str, name: str) -> str:
    """Validate owner/name and return the full repository name"""
    try:
        return WatchedRepository(owner=owner, name=name).full_name
    except ValueError as e:
        raise McpError(
            ErrorData(
                code=-32602,
                message=f"owner and name must be non-empty and contain no '/', got: {owner}/{name}",
            )
        ) from e


@mcp.tool()
async def get_repository_status(owner: str, name: str) -> RepoStatusOutput:
    """Check whether a GitHub repository exists and how fresh its code index is

    Returns immediately from cache; stale data is refreshed in the background, so
    call again later to see progress. Only the first check of a repository waits
    on GitHub.

    Args:
        owner: Repository owner (user or organization)
        name: Repository name

    Returns:
        RepoStatusOutput: exists (None while the first check is running), sync_status
        (processing, up_to_date or out_of_date), repository info, latest and latest
        indexed commits, and the file tree of the latest commit
    """
    telemetry = get_telemetry_service()
    error: Exception | None = None
    response = None
    repo_name = None

    try:
        try:
            repo_name = _validate_repository(owner, name)
        except McpError as e:
            error = e
            raise

        status_service = await _get_status_service()

        try:
            result = await status_service.get_status(owner, name)
            response = result.model_dump(mode="json")
            return result
        except GitHubFetchError as e:
            error = e
            raise McpError(
                ErrorData(code=-32603, message=f"Could not reach GitHub for {repo_name}: {e}")
            ) from e
        except Exception as e:
            error = e
            raise McpError(ErrorData(code=-32603, message=f"Status check failed: {str(e)}")) from e

    finally:
        # Log telemetry regardless of success/failure
        telemetry.log_tool_call(
            tool_name="get_repository_status",
            repo_name=repo_name,
            parameters={"owner": owner, "name": name},
            response=response,
            error=error,
        )


@mcp.tool()
async def get_indexed_snapshot(owner: str, name: str) -> IndexedSnapshot:
    """Get the most recently completed code index of a repository

    Search and file reads should be scoped to the returned collection and ref.

    Args:
        owner: Repository owner (user or organization)
        name: Repository name

    Returns:
        IndexedSnapshot: collection name, commit SHA and file tree of the indexed snapshot
    """
    telemetry = get_telemetry_service()
    error: Exception | None = None
    response = None
    repo_name = None

    try:
        try:
            repo_name = _validate_repository(owner, name)
        except McpError as e:
            error = e
            raise

        status_service = await _get_status_service()

        try:
            snapshot = await status_service.get_indexed_snapshot(owner, name)
        except IncompleteSyncError as e:
            error = e
            raise McpError(ErrorData(code=-32002, message=str(e))) from e
        except Exception as e:
            error = e
            raise McpError(
                ErrorData(code=-32603, message=f"Snapshot lookup failed: {str(e)}")
            ) from e

        response = snapshot.model_dump(mode="json")
        return snapshot

    finally:
        # Log telemetry regardless of success/failure
        telemetry.log_tool_call(
            tool_name="get_indexed_snapshot",
            repo_name=repo_name,
            parameters={"owner": owner, "name": name},
            response=response,
            error=error,
        )


# Health check endpoint
# Both routes (/ and /health) point to the same function
@mcp.custom_route("/", methods=["GET"])
@mcp.custom_route("/health", methods=["GET"])
def health_check(request):
    return JSONResponse({"status": "ok"})


def _startup_sync() -> None:
    """Initialize background refresh on server startup"""
    global _refresh_orchestrator, _scheduler

    # Load watchlist to check if refresh is enabled
    try:
        watchlist = load_watchlist(config.watchlist_path)
        refresh_config = watchlist.refresh

        if refresh_config.enabled:
            logger.info("Initializing background refresh orchestrator")
            _scheduler = BackgroundScheduler()

            _refresh_orchestrator = RefreshOrchestrator(watchlist=watchlist)
            _refresh_orchestrator.configure_scheduler_sync(
                scheduler=_scheduler,
                interval_minutes=refresh_config.interval_minutes,
                max_concurrent_jobs=refresh_config.max_concurrent_jobs,
            )

            _scheduler.start()
            logger.info("Background refresh orchestrator started successfully")
        else:
            logger.info("Background refresh is disabled")
    except Exception as e:
        logger.error(f"Failed to start background refresh orchestrator: {e}")
        # Don't fail server startup if refresh fails to initialize


def _shutdown_sync() -> None:
    """Gracefully shutdown on server shutdown"""
    global _scheduler, _refresh_orchestrator

    if _refresh_orchestrator:
        try:
            _refresh_orchestrator.stop_scheduler_sync()
        except Exception as e:
            logger.error(f"Error shutting down refresh orchestrator: {e}")

    if _scheduler:
        try:
            logger.info("Shutting down background refresh scheduler")
            _scheduler.shutdown(wait=False)
            logger.info("Background refresh scheduler stopped")
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}")

    if _store:
        _store.close()


def main() -> None:
    """Entry point for the MCP server"""
    # Initialize background refresh service synchronously
    _startup_sync()

    try:
        # CORS is handled automatically by FastMCP via streamable-http transport
        mcp.run(transport="streamable-http", host=config.mcp_host, port=config.mcp_port)
    finally:
        # Cleanup on shutdown
        _shutdown_sync()


if __name__ == "__main__":
    main()
