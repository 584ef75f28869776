"""
Candidate Retriever
Finds eligible members near a need and ranks them by embedding similarity.

Storage does the hard eligibility filter (plus a coarse bounding box);
the exact distance cutoff, ranking and cap are pure functions below.
"""
from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np
import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agents.geo.resolver import bounding_box, calculate_distance_km
from backend.core.config import settings
from backend.core.exceptions import RetrievalUnavailable
from backend.models import Member

from .models import EligibleMember, MatchCandidate, NeedData

logger = structlog.get_logger().bind(agent="retriever")


# =============================================================================
# Pure stages
# =============================================================================


def filter_by_distance(
    latitude: float,
    longitude: float,
    members: Sequence[EligibleMember],
    radius_km: float,
) -> list[tuple[EligibleMember, float]]:
    """
    Keep members within radius_km of the given point.

    Members without a location are dropped. A member exactly on the
    radius is kept.
    """
    kept = []
    for member in members:
        if member.latitude is None or member.longitude is None:
            continue
        distance = calculate_distance_km(latitude, longitude, member.latitude, member.longitude)
        if distance > radius_km:
            continue
        kept.append((member, distance))
    return kept


def cosine_similarities(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> list[float]:
    """1 - cosine distance of each vector to the query. Zero vectors score 0."""
    if not vectors:
        return []

    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(vectors, dtype=np.float64)

    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)

    return [float(s) for s in sims]


def rank_by_similarity(
    need_embedding: Sequence[float],
    members: Sequence[tuple[EligibleMember, Optional[float]]],
    top_k: int,
) -> list[MatchCandidate]:
    """
    Rank (member, distance) pairs by similarity, highest first.

    Ties are broken by member id ascending so the order is deterministic.
    Distance is carried along but never affects the order.
    """
    if not members or top_k <= 0:
        return []

    similarities = cosine_similarities(need_embedding, [m.embedding for m, _ in members])

    candidates = [
        MatchCandidate(
            member_id=member.member_id,
            push_token=member.push_token,
            similarity=similarity,
            distance_km=distance,
        )
        for (member, distance), similarity in zip(members, similarities)
    ]
    candidates.sort(key=lambda c: (-c.similarity, str(c.member_id)))

    return candidates[:top_k]


# =============================================================================
# Member store
# =============================================================================


class SqlMemberStore:
    """Eligible-member queries against the members table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def fetch_eligible(
        self,
        need: NeedData,
        weekly_cap: int,
        radius_km: float,
        now: Optional[datetime] = None,
    ) -> list[EligibleMember]:
        """
        Members that may be notified this week.

        With a need location, only members inside the bounding box of the
        radius are returned. Without one, members are limited to the
        need's region, or not limited at all when the need has no region
        either.

        Raises:
            RetrievalUnavailable: If the query fails.
        """
        now = now or datetime.now(timezone.utc)

        stmt = select(
            Member.id,
            Member.push_token,
            Member.embedding,
            Member.latitude,
            Member.longitude,
            Member.region,
        ).where(
            Member.active.is_(True),
            Member.embedding.is_not(None),
            Member.notification_count_this_week < weekly_cap,
            or_(Member.paused_until.is_(None), Member.paused_until <= now),
        )

        if need.has_location:
            min_lat, max_lat, min_lng, max_lng = bounding_box(
                need.latitude, need.longitude, radius_km
            )
            stmt = stmt.where(
                Member.latitude.is_not(None),
                Member.longitude.is_not(None),
                Member.latitude.between(min_lat, max_lat),
                Member.longitude.between(min_lng, max_lng),
            )
        elif need.region:
            stmt = stmt.where(Member.region == need.region)

        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except (SQLAlchemyError, OSError) as e:
            logger.error("member_store_query_failed", need_id=str(need.need_id), error=str(e))
            raise RetrievalUnavailable(str(e)) from e

        return [
            EligibleMember(
                member_id=row.id,
                push_token=row.push_token,
                embedding=[float(v) for v in row.embedding],
                latitude=row.latitude,
                longitude=row.longitude,
                region=row.region,
            )
            for row in rows
        ]


# =============================================================================
# Retriever
# =============================================================================


class CandidateRetriever:
    """
    Distance-filtered, similarity-ranked candidate retrieval.

    Distance is a hard filter only; ranking is purely by similarity.
    """

    def __init__(
        self,
        store: SqlMemberStore,
        radius_km: Optional[float] = None,
        weekly_cap: Optional[int] = None,
        top_k: Optional[int] = None,
    ):
        self.store = store
        self.radius_km = radius_km if radius_km is not None else settings.match_radius_km
        self.weekly_cap = weekly_cap if weekly_cap is not None else settings.weekly_notification_cap
        self.top_k = top_k if top_k is not None else settings.candidate_top_k

    async def find_candidates(self, need: NeedData) -> list[MatchCandidate]:
        """
        Ranked candidates for a need, at most top_k.

        Raises:
            RetrievalUnavailable: If the member store cannot be queried.
        """
        if need.embedding is None:
            return []

        eligible = await self.store.fetch_eligible(need, self.weekly_cap, self.radius_km)

        if need.has_location:
            pairs: list[tuple[EligibleMember, Optional[float]]] = list(
                filter_by_distance(need.latitude, need.longitude, eligible, self.radius_km)
            )
            mode = "radius"
        else:
            pairs = [(member, None) for member in eligible]
            mode = "statewide"

        candidates = rank_by_similarity(need.embedding, pairs, self.top_k)

        logger.info(
            "candidates_retrieved",
            need_id=str(need.need_id),
            mode=mode,
            eligible=len(eligible),
            within_radius=len(pairs),
            candidates=len(candidates),
        )

        return candidates
