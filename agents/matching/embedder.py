"""
Need Embedding Generator
Fills in a missing need embedding before a matching run starts.
"""
import hashlib
from typing import Optional

import openai
import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import settings
from backend.core.exceptions import EmbeddingUnavailable
from backend.models import Need

from .models import NeedData

logger = structlog.get_logger().bind(agent="need_embedder")


class NeedEmbedder:
    """
    Generates need embeddings with OpenAI text-embedding-3-small.

    Only used when an approved need reaches matching without an embedding.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: Optional[openai.AsyncOpenAI] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self._client = client
        self.model = model or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions

    @property
    def client(self) -> openai.AsyncOpenAI:
        """Lazy-loaded OpenAI client."""
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.llm_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def generate(self, text: str) -> list[float]:
        """
        Embed a text.

        Raises:
            EmbeddingUnavailable: On API errors or a wrong-sized vector.
        """
        try:
            response = await self.client.embeddings.create(model=self.model, input=text)
        except openai.OpenAIError as e:
            logger.error("embedding_api_error", error=str(e))
            raise EmbeddingUnavailable(str(e)) from e

        embedding = list(response.data[0].embedding)
        if len(embedding) != self.dimensions:
            raise EmbeddingUnavailable(
                f"expected {self.dimensions} dimensions, got {len(embedding)}"
            )
        return embedding

    async def ensure_embedding(self, need: NeedData) -> NeedData:
        """
        Return the need with an embedding, generating and storing one if missing.

        Raises:
            EmbeddingUnavailable: If generation or storage fails.
        """
        if need.embedding is not None:
            return need

        text = need.to_embedding_text()
        embedding = await self.generate(text)

        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(Need)
                    .where(Need.id == need.need_id, Need.embedding.is_(None))
                    .values(embedding=embedding)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise EmbeddingUnavailable(f"could not store embedding: {e}") from e

        logger.info(
            "need_embedding_generated",
            need_id=str(need.need_id),
            text_hash=hashlib.sha256(text.encode()).hexdigest()[:12],
        )

        return need.model_copy(update={"embedding": embedding})
