"""Remote store over a REST document service, via httpx.

Endpoints, relative to the configured base URL:

    GET    /owners/{owner}/projects          list, newest updatedAt first
    PATCH  /owners/{owner}/projects/{id}     merge-upsert the full project
    DELETE /owners/{owner}/projects/{id}     404 counts as success
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from omenka.model import Project
from omenka.storage.remote import SERVER_TIMESTAMP_FIELD, RemoteStoreError, documents_to_projects

logger = logging.getLogger(__name__)


class HttpRemoteStore:
    """RemoteStore implementation backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("HttpRemoteStore requires a base URL")
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._headers = headers
        self.base_url = base_url.rstrip("/")

    def _collection_url(self, owner_id: str) -> str:
        return f"{self.base_url}/owners/{quote(owner_id, safe='')}/projects"

    def _document_url(self, owner_id: str, project_id: str) -> str:
        return f"{self._collection_url(owner_id)}/{quote(project_id, safe='')}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{method} {url} failed: {e}") from e
        return response

    @staticmethod
    def _check(response: httpx.Response) -> None:
        if response.is_success:
            return
        raise RemoteStoreError(
            f"{response.request.method} {response.request.url} -> "
            f"HTTP {response.status_code}: {response.text}"
        )

    async def list(self, owner_id: str) -> list[Project]:
        url = self._collection_url(owner_id)
        response = await self._request(
            "GET", url, params={"orderBy": SERVER_TIMESTAMP_FIELD, "direction": "desc"}
        )
        self._check(response)
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteStoreError(f"GET {url} returned invalid JSON") from e

        if isinstance(data, dict):
            data = data.get("documents", [])
        if not isinstance(data, list):
            raise RemoteStoreError(f"GET {url} returned {type(data).__name__}, expected a list")

        # Newest first even if the server ignored the ordering params
        docs = [d for d in data if isinstance(d, dict)]
        if all(SERVER_TIMESTAMP_FIELD in d for d in docs):
            docs.sort(key=lambda d: d[SERVER_TIMESTAMP_FIELD], reverse=True)
        return documents_to_projects(docs)

    async def upsert(self, owner_id: str, project: Project) -> None:
        response = await self._request(
            "PATCH", self._document_url(owner_id, project.id), json=project.to_dict()
        )
        self._check(response)
        logger.debug("Upserted project %s for %s", project.id, owner_id)

    async def remove(self, owner_id: str, project_id: str) -> None:
        response = await self._request("DELETE", self._document_url(owner_id, project_id))
        if response.status_code == 404:
            return
        self._check(response)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
