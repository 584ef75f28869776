"""
Relevance Gate
Decides whether a ranked candidate should be notified, with a short
justification that is shown to the member alongside the push.
"""
import json
from typing import Optional, Protocol
from uuid import UUID

import anthropic
import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import Settings, settings
from backend.core.exceptions import GateUnavailable
from backend.models import Member

from .models import ConfidenceLevel, MatchCandidate, NeedData, RelevanceAssessment

logger = structlog.get_logger().bind(agent="relevance")


class RelevanceGate(Protocol):
    async def assess(self, need: NeedData, candidate: MatchCandidate) -> RelevanceAssessment:
        """Judge one candidate; raises GateUnavailable when it cannot."""
        ...


def _percent(similarity: float) -> int:
    return round(similarity * 100)


class SimilarityRelevanceGate:
    """
    Threshold gate on embedding similarity.

    Bands:
        similarity < low_threshold           -> low, rejected
        similarity >= high_threshold         -> high, accepted
        otherwise                            -> medium, accepted iff > threshold
    """

    def __init__(
        self,
        threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        high_threshold: Optional[float] = None,
    ):
        self.threshold = threshold if threshold is not None else settings.relevance_threshold
        self.low_threshold = (
            low_threshold if low_threshold is not None else settings.relevance_low_threshold
        )
        self.high_threshold = (
            high_threshold if high_threshold is not None else settings.relevance_high_threshold
        )

    def band(self, similarity: float) -> ConfidenceLevel:
        if similarity < self.low_threshold:
            return ConfidenceLevel.LOW
        if similarity >= self.high_threshold:
            return ConfidenceLevel.HIGH
        return ConfidenceLevel.MEDIUM

    def judge(self, similarity: float) -> RelevanceAssessment:
        confidence = self.band(similarity)

        if confidence == ConfidenceLevel.LOW:
            return RelevanceAssessment(
                is_relevant=False,
                justification="Low similarity score",
                confidence=confidence,
            )

        if confidence == ConfidenceLevel.HIGH:
            return RelevanceAssessment(
                is_relevant=True,
                justification=(
                    "Strong match based on your interests and skills "
                    f"({_percent(similarity)}% similar)"
                ),
                confidence=confidence,
            )

        if similarity > self.threshold:
            return RelevanceAssessment(
                is_relevant=True,
                justification=(
                    f"Your profile matches this opportunity ({_percent(similarity)}% similar)"
                ),
                confidence=confidence,
            )

        return RelevanceAssessment(
            is_relevant=False,
            justification="Not a strong match",
            confidence=confidence,
        )

    async def assess(self, need: NeedData, candidate: MatchCandidate) -> RelevanceAssessment:
        return self.judge(candidate.similarity)


class LLMRelevanceGate:
    """
    Similarity bands with a Claude check for the ambiguous middle.

    Low and high bands are decided without a model call. Medium-band
    candidates get one call that sees the need and the member's
    free-text interests, never the member's location or token.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: Optional[anthropic.AsyncAnthropic] = None,
        similarity_gate: Optional[SimilarityRelevanceGate] = None,
        model: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self._client = client
        self.similarity_gate = similarity_gate or SimilarityRelevanceGate()
        self.model = model or settings.llm_model

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        """Lazy-loaded Anthropic client."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                timeout=settings.llm_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def _load_interests(self, member_id: UUID) -> str:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Member.searchable_text).where(Member.id == member_id)
                )
                return result.scalar_one_or_none() or ""
        except SQLAlchemyError as e:
            raise GateUnavailable(f"member profile unavailable: {e}") from e

    def _build_prompt(self, need: NeedData, interests: str, similarity: float) -> str:
        return f"""You are screening volunteer opportunities for a community aid platform.

OPPORTUNITY:
{need.to_embedding_text()}

VOLUNTEER INTERESTS AND SKILLS:
{interests or "(not provided)"}

Embedding similarity: {similarity:.3f}

Decide whether this volunteer would plausibly want to hear about this opportunity.
Write the justification to the volunteer in one short sentence, without
mentioning scores.

Return ONLY a JSON object:
{{"is_relevant": <true|false>, "justification": "<one sentence>"}}"""

    @staticmethod
    def _parse(text: str) -> tuple[bool, str]:
        body = text.strip()
        if body.startswith("```"):
            body = body.strip("`")
            if body.startswith("json"):
                body = body[4:]
        data = json.loads(body)
        is_relevant = data["is_relevant"]
        justification = data["justification"]
        if not isinstance(is_relevant, bool) or not isinstance(justification, str):
            raise ValueError("unexpected field types")
        return is_relevant, justification.strip()

    async def assess(self, need: NeedData, candidate: MatchCandidate) -> RelevanceAssessment:
        """
        Raises:
            GateUnavailable: On API errors or an unparsable model reply.
        """
        verdict = self.similarity_gate.judge(candidate.similarity)
        if verdict.confidence != ConfidenceLevel.MEDIUM:
            return verdict

        interests = await self._load_interests(candidate.member_id)
        prompt = self._build_prompt(need, interests, candidate.similarity)

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=settings.llm_max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
            is_relevant, justification = self._parse(response.content[0].text)
        except anthropic.APIError as e:
            logger.warning(
                "llm_api_error",
                need_id=str(need.need_id),
                member_id=str(candidate.member_id),
                error=str(e),
            )
            raise GateUnavailable(str(e)) from e
        except (json.JSONDecodeError, KeyError, IndexError, AttributeError, ValueError) as e:
            logger.warning(
                "llm_response_parse_error",
                need_id=str(need.need_id),
                member_id=str(candidate.member_id),
                error=str(e),
            )
            raise GateUnavailable(f"unparsable model response: {e}") from e

        return RelevanceAssessment(
            is_relevant=is_relevant,
            justification=justification or verdict.justification,
            confidence=ConfidenceLevel.MEDIUM,
        )


def build_relevance_gate(
    config: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> RelevanceGate:
    """Pick the configured gate; the LLM gate needs an Anthropic key."""
    similarity_gate = SimilarityRelevanceGate(
        threshold=config.relevance_threshold,
        low_threshold=config.relevance_low_threshold,
        high_threshold=config.relevance_high_threshold,
    )

    if config.relevance_gate == "llm":
        if config.anthropic_api_key:
            return LLMRelevanceGate(session_factory, similarity_gate=similarity_gate)
        logger.warning("llm_gate_without_api_key", fallback="similarity")

    return similarity_gate
