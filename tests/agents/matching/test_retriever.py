"""
Tests for candidate retrieval: distance cutoff, ranking and eligibility.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from agents.matching.models import EligibleMember, NeedData
from agents.matching.retriever import (
    CandidateRetriever,
    SqlMemberStore,
    cosine_similarities,
    filter_by_distance,
    rank_by_similarity,
)
from backend.core.exceptions import RetrievalUnavailable
from tests.fixtures.factories import (
    DULUTH,
    MINNEAPOLIS,
    ST_PAUL,
    create_member,
    create_need,
    need_vector,
    vector_with_similarity,
)


def eligible(similarity: float, location=MINNEAPOLIS, member_id=None) -> EligibleMember:
    return EligibleMember(
        member_id=member_id or uuid.uuid4(),
        push_token="ExponentPushToken[test]",
        embedding=vector_with_similarity(similarity),
        latitude=location[0] if location else None,
        longitude=location[1] if location else None,
        region="MN",
    )


def need_data(location=MINNEAPOLIS, region="MN", embedding=None) -> NeedData:
    return NeedData(
        need_id=uuid.uuid4(),
        organization_name="Northside Food Shelf",
        title="Sort donated groceries",
        latitude=location[0] if location else None,
        longitude=location[1] if location else None,
        region=region,
        embedding=embedding if embedding is not None else need_vector(),
    )


class TestFilterByDistance:
    """Tests for the exact haversine cutoff."""

    def test_keeps_members_inside_radius(self):
        near = eligible(0.9, ST_PAUL)
        far = eligible(0.9, DULUTH)

        kept = filter_by_distance(*MINNEAPOLIS, [near, far], radius_km=30.0)

        assert [m.member_id for m, _ in kept] == [near.member_id]
        assert 12 < kept[0][1] < 17

    def test_member_exactly_on_radius_is_kept(self):
        member = eligible(0.9, ST_PAUL)
        _, distance = filter_by_distance(*MINNEAPOLIS, [member], radius_km=100.0)[0]

        kept = filter_by_distance(*MINNEAPOLIS, [member], radius_km=distance)

        assert len(kept) == 1

    def test_members_without_location_are_dropped(self):
        kept = filter_by_distance(*MINNEAPOLIS, [eligible(0.9, None)], radius_km=30.0)
        assert kept == []


class TestRanking:
    """Tests for similarity ranking."""

    def test_cosine_similarity_is_exact(self):
        sims = cosine_similarities(need_vector(), [vector_with_similarity(0.7)])
        assert sims[0] == pytest.approx(0.7)

    def test_zero_vector_scores_zero(self):
        sims = cosine_similarities(need_vector(), [[0.0] * len(need_vector())])
        assert sims == [0.0]

    def test_orders_by_similarity_descending(self):
        members = [(eligible(s), None) for s in (0.5, 0.9, 0.7)]

        ranked = rank_by_similarity(need_vector(), members, top_k=20)

        assert [round(c.similarity, 2) for c in ranked] == [0.9, 0.7, 0.5]

    def test_distance_does_not_affect_order(self):
        close = (eligible(0.6), 1.0)
        far = (eligible(0.8), 29.0)

        ranked = rank_by_similarity(need_vector(), [close, far], top_k=20)

        assert ranked[0].member_id == far[0].member_id
        assert ranked[0].distance_km == 29.0

    def test_ties_broken_by_member_id(self):
        low_id = uuid.UUID("00000000-0000-0000-0000-000000000001")
        high_id = uuid.UUID("ffffffff-0000-0000-0000-000000000000")
        members = [(eligible(0.8, member_id=high_id), None), (eligible(0.8, member_id=low_id), None)]

        ranked = rank_by_similarity(need_vector(), members, top_k=20)

        assert [c.member_id for c in ranked] == [low_id, high_id]

    def test_truncates_to_top_k(self):
        members = [(eligible(0.5 + i / 100), None) for i in range(30)]

        ranked = rank_by_similarity(need_vector(), members, top_k=20)

        assert len(ranked) == 20
        assert ranked[0].similarity == pytest.approx(0.79)


class TestSqlMemberStore:
    """Tests for the storage eligibility filter."""

    @pytest.mark.asyncio
    async def test_excludes_ineligible_members(self, session_factory):
        ok = await create_member(session_factory)
        await create_member(session_factory, active=False)
        await create_member(session_factory, embedding=None)
        await create_member(session_factory, notification_count_this_week=3)
        await create_member(
            session_factory,
            paused_until=datetime.now(timezone.utc) + timedelta(days=2),
        )

        store = SqlMemberStore(session_factory)
        members = await store.fetch_eligible(need_data(), weekly_cap=3, radius_km=30.0)

        assert [m.member_id for m in members] == [ok.id]
        assert len(members[0].embedding) == len(need_vector())

    @pytest.mark.asyncio
    async def test_expired_pause_is_eligible(self, session_factory):
        member = await create_member(
            session_factory,
            paused_until=datetime.now(timezone.utc) - timedelta(days=1),
        )

        store = SqlMemberStore(session_factory)
        members = await store.fetch_eligible(need_data(), weekly_cap=3, radius_km=30.0)

        assert [m.member_id for m in members] == [member.id]

    @pytest.mark.asyncio
    async def test_bounding_box_prefilter(self, session_factory):
        near = await create_member(session_factory, location=ST_PAUL)
        await create_member(session_factory, location=DULUTH)
        await create_member(session_factory, location=None)

        store = SqlMemberStore(session_factory)
        members = await store.fetch_eligible(need_data(), weekly_cap=3, radius_km=30.0)

        assert [m.member_id for m in members] == [near.id]

    @pytest.mark.asyncio
    async def test_statewide_fallback_uses_region(self, session_factory):
        in_state = await create_member(session_factory, location=DULUTH, region="MN")
        no_location = await create_member(session_factory, location=None, region="MN")
        await create_member(session_factory, location=None, region="WI")

        store = SqlMemberStore(session_factory)
        members = await store.fetch_eligible(
            need_data(location=None), weekly_cap=3, radius_km=30.0
        )

        assert {m.member_id for m in members} == {in_state.id, no_location.id}

    @pytest.mark.asyncio
    async def test_query_failure_raises_retrieval_unavailable(self):
        def broken_factory():
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        store = SqlMemberStore(broken_factory)

        with pytest.raises(RetrievalUnavailable):
            await store.fetch_eligible(need_data(), weekly_cap=3, radius_km=30.0)


class TestCandidateRetriever:
    """Tests for CandidateRetriever.find_candidates."""

    @pytest.mark.asyncio
    async def test_radius_mode(self, session_factory):
        near_low = await create_member(session_factory, similarity=0.65, location=ST_PAUL)
        near_high = await create_member(session_factory, similarity=0.95, location=MINNEAPOLIS)
        await create_member(session_factory, similarity=0.99, location=DULUTH)

        need = NeedData.from_record(await create_need(session_factory))
        retriever = CandidateRetriever(SqlMemberStore(session_factory), radius_km=30.0, weekly_cap=3, top_k=20)

        candidates = await retriever.find_candidates(need)

        assert [c.member_id for c in candidates] == [near_high.id, near_low.id]
        assert all(c.distance_km is not None and c.distance_km <= 30.0 for c in candidates)

    @pytest.mark.asyncio
    async def test_statewide_mode_has_no_distance(self, session_factory):
        member = await create_member(session_factory, similarity=0.9, location=DULUTH)

        need = NeedData.from_record(await create_need(session_factory, location=None))
        retriever = CandidateRetriever(SqlMemberStore(session_factory))

        candidates = await retriever.find_candidates(need)

        assert [c.member_id for c in candidates] == [member.id]
        assert candidates[0].distance_km is None

    @pytest.mark.asyncio
    async def test_need_without_embedding_returns_nothing(self, session_factory):
        await create_member(session_factory)

        need = NeedData.from_record(await create_need(session_factory, with_embedding=False))
        retriever = CandidateRetriever(SqlMemberStore(session_factory))

        assert await retriever.find_candidates(need) == []
