"""Client for the code-indexing sync service"""

import logging
from typing import Any

import httpx
from opentelemetry import trace

from src.config import config
from src.models.resources import InvocationStatus
from src.models.upstream import InvocationStatusReport

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class IndexingServiceError(Exception):
    """Raised when a call to the indexing service fails"""

    pass


def normalize_status(raw: Any) -> tuple[InvocationStatus, str | None]:
    """
    Normalize the service's status union into a status and optional detail

    The service sends either a bare string (``"pending"``, ``"processing"``,
    ``"cancelled"``) or an object tagged ``complete`` / ``failed``.
    """
    if isinstance(raw, str):
        try:
            return InvocationStatus(raw), None
        except ValueError:
            if raw == "complete":
                return InvocationStatus.COMPLETED, None
            logger.warning(f"Unknown invocation status {raw!r}, treating as pending")
            return InvocationStatus.PENDING, None

    if isinstance(raw, dict):
        if "complete" in raw:
            finished_at = (raw["complete"] or {}).get("finished_at")
            return InvocationStatus.COMPLETED, finished_at
        if "failed" in raw:
            error = (raw["failed"] or {}).get("error")
            return InvocationStatus.FAILED, error
        if "cancelled" in raw:
            return InvocationStatus.CANCELLED, None

    logger.warning(f"Unrecognized invocation status payload {raw!r}, treating as pending")
    return InvocationStatus.PENDING, None


class IndexClient:
    """Registers sources and invocations with the indexing service"""

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or config.index_api_key
        self.api_url = (api_url or config.index_api_url).rstrip("/")

        headers = {"accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["x-chroma-token"] = self.api_key

        self.client = client or httpx.AsyncClient(
            headers=headers, timeout=httpx.Timeout(config.http_timeout_seconds)
        )
        if client is not None:
            self.client.headers.update(headers)

    async def _request(
        self, span: trace.Span, method: str, path: str, payload: dict | None = None
    ) -> dict:
        try:
            response = await self.client.request(method, f"{self.api_url}{path}", json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            span.record_exception(e)
            raise IndexingServiceError(
                f"{method} {path} failed with {e.response.status_code}: {e.response.text}"
            ) from e
        except (httpx.RequestError, ValueError) as e:
            span.record_exception(e)
            raise IndexingServiceError(f"{method} {path} failed: {e}") from e

    async def create_source(self, owner: str, repo: str) -> str:
        """Register a GitHub repository as a source; returns the source id"""
        with tracer.start_as_current_span("index.create_source") as span:
            span.set_attributes({"github.owner": owner, "github.repo": repo})
            data = await self._request(
                span,
                "POST",
                "/sources",
                {
                    "github": {
                        "include_globs": config.index_include_globs,
                        "repository": f"{owner}/{repo}",
                    },
                    "database_name": config.index_database_name,
                    "embedding": {
                        "dense": {"model": config.index_embedding_model, "task": None},
                        "sparse": None,
                    },
                    "embedding_model": None,
                },
            )
            source_id = data["source_id"]
            span.set_attribute("source.id", source_id)
            logger.info(f"Created index source {source_id} for {owner}/{repo}")
            return source_id

    async def create_invocation(self, source_id: str, ref: str, collection_name: str) -> str:
        """Start indexing ``ref`` into ``collection_name``; returns the invocation id"""
        with tracer.start_as_current_span("index.create_invocation") as span:
            span.set_attributes({"source.id": source_id, "commit.sha": ref[:7]})
            data = await self._request(
                span,
                "POST",
                f"/sources/{source_id}/invocations",
                {"ref_identifier": {"sha": ref}, "target_collection_name": collection_name},
            )
            invocation_id = data["invocation_id"]
            span.set_attribute("invocation.id", invocation_id)
            logger.info(f"Created invocation {invocation_id} for source {source_id} at {ref[:7]}")
            return invocation_id

    async def get_invocation_status(self, invocation_id: str) -> InvocationStatusReport:
        """Fetch and normalize the status of an invocation"""
        with tracer.start_as_current_span("index.get_invocation_status") as span:
            span.set_attribute("invocation.id", invocation_id)
            data = await self._request(span, "GET", f"/invocations/{invocation_id}")
            status, detail = normalize_status(data.get("status"))
            span.set_attribute("invocation.status", status.value)
            metadata = data.get("metadata") or {}
            return InvocationStatusReport(
                invocation_id=data.get("id", invocation_id),
                status=status,
                detail=detail,
                collection_name=metadata.get("collection_name"),
            )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()
