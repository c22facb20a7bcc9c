"""Document indexing: embedding plus idempotent upsert into the documents table."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, Sequence

import httpx
from sqlalchemy import delete, select

from connectors.base import ExtractedDocument
from models import Document, SessionLocal
from workers.persistence import SessionFactory

logger = logging.getLogger(__name__)

EmbeddingFunction = Callable[[str], Awaitable[Sequence[float]]]
EMBED_INPUT_CHARS = 8000


class HttpEmbeddingClient:
    """Embedding function backed by an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        url: str,
        model: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = url
        self.model = model
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def __call__(self, text: str) -> list[float]:
        payload: dict[str, object] = {"input": text[:EMBED_INPUT_CHARS]}
        if self.model:
            payload["model"] = self.model
        response = await self._client.post(self.url, json=payload, headers=self._headers)
        response.raise_for_status()
        data = response.json()
        return [float(value) for value in data["data"][0]["embedding"]]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_embedding_client() -> HttpEmbeddingClient | None:
    url = os.getenv("EMBEDDING_URL")
    if not url:
        logger.info("EMBEDDING_URL not set; documents will be stored without embeddings")
        return None
    return HttpEmbeddingClient(
        url,
        model=os.getenv("EMBEDDING_MODEL"),
        api_key=os.getenv("EMBEDDING_API_KEY"),
    )


class DocumentIndexer:
    def __init__(
        self,
        embed: EmbeddingFunction | None = None,
        session_factory: SessionFactory = SessionLocal,
    ) -> None:
        self._embed = embed
        self._session_factory = session_factory

    async def aclose(self) -> None:
        close = getattr(self._embed, "aclose", None)
        if close is not None:
            await close()

    async def known_external_ids(self, source_id: str) -> set[str]:
        return await asyncio.to_thread(self._known_external_ids, source_id)

    def _known_external_ids(self, source_id: str) -> set[str]:
        with self._session_factory() as session:
            rows = session.execute(
                select(Document.external_id).where(Document.source_id == source_id)
            ).scalars()
            return set(rows)

    async def upsert(self, source_id: str, document: ExtractedDocument) -> bool:
        """Store ``document``; returns True when it was inserted rather than updated."""
        embedding = None
        if self._embed is not None:
            embedding = list(await self._embed(f"{document.title}\n\n{document.content}"))
        return await asyncio.to_thread(self._upsert, source_id, document, embedding)

    def _upsert(
        self, source_id: str, document: ExtractedDocument, embedding: list[float] | None
    ) -> bool:
        with self._session_factory() as session:
            row = session.execute(
                select(Document).where(
                    Document.source_id == source_id,
                    Document.external_id == document.external_id,
                )
            ).scalar_one_or_none()
            created = row is None
            if row is None:
                row = Document(source_id=source_id, external_id=document.external_id)
                session.add(row)
            row.title = document.title
            row.content = document.content
            row.url = document.url
            row.content_type = document.content_type
            row.attributes = dict(document.attributes)
            row.last_modified = document.last_modified
            if embedding is not None:
                row.embedding = embedding
            session.commit()
            return created

    async def delete(self, source_id: str, external_id: str) -> bool:
        return await asyncio.to_thread(self._delete, source_id, external_id)

    def _delete(self, source_id: str, external_id: str) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                delete(Document).where(
                    Document.source_id == source_id,
                    Document.external_id == external_id,
                )
            )
            session.commit()
            return bool(result.rowcount)
