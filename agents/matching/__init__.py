"""
Matching Agent Module
Candidate retrieval, relevance gating and weekly throttling for volunteer matching.
"""
from .embedder import NeedEmbedder
from .models import (
    ConfidenceLevel,
    EligibleMember,
    MatchCandidate,
    NeedData,
    RelevanceAssessment,
    ReservationOutcome,
)
from .relevance import (
    LLMRelevanceGate,
    RelevanceGate,
    SimilarityRelevanceGate,
    build_relevance_gate,
)
from .retriever import (
    CandidateRetriever,
    SqlMemberStore,
    filter_by_distance,
    rank_by_similarity,
)
from .throttle import ThrottleGuard

__all__ = [
    # Retriever
    "CandidateRetriever",
    "SqlMemberStore",
    "filter_by_distance",
    "rank_by_similarity",
    # Relevance
    "LLMRelevanceGate",
    "RelevanceGate",
    "SimilarityRelevanceGate",
    "build_relevance_gate",
    # Throttle
    "ThrottleGuard",
    # Embedder
    "NeedEmbedder",
    # Models
    "ConfidenceLevel",
    "EligibleMember",
    "MatchCandidate",
    "NeedData",
    "RelevanceAssessment",
    "ReservationOutcome",
]
