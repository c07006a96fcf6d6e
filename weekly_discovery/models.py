from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Union

from .config import Topic


PAYWALL_STATUSES = ("not_paywalled", "likely_paywalled", "unknown")
CONTROVERSY_LEVELS = ("none", "low", "med", "high")


@dataclass(frozen=True)
class SearchResult:
    url: str
    title: str
    snippet: str
    domain: str
    topic: Topic
    published_date: str | None = None
    score: float | None = None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "domain": self.domain,
            "publishedDate": self.published_date,
            "score": self.score,
            "topic": self.topic.value,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> SearchResult:
        topic = Topic.from_label(payload.get("topic") or "")
        if topic is None:
            raise ValueError(f"search result without a known topic: {payload.get('url')}")
        return cls(
            url=payload["url"],
            title=payload.get("title") or "",
            snippet=payload.get("snippet") or "",
            domain=payload.get("domain") or "",
            topic=topic,
            published_date=payload.get("publishedDate"),
            score=payload.get("score"),
        )


@dataclass
class ExtractedArticle:
    url: str
    title: str
    snippet: str
    domain: str
    extracted_text: str
    word_count: int
    hash: str
    published_date: str | None = None
    published_date_invalid: bool = False
    discovered_at: str | None = None
    author: str | None = None
    topic: Topic | None = None
    paywall_status: str = "unknown"
    paywall_reason: str | None = None

    def text_blob(self) -> str:
        return f"{self.title} {self.snippet} {self.extracted_text}"

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "domain": self.domain,
            "publishedDate": self.published_date,
            "publishedDateInvalid": self.published_date_invalid,
            "discoveredAt": self.discovered_at,
            "extractedText": self.extracted_text,
            "wordCount": self.word_count,
            "author": self.author,
            "hash": self.hash,
            "topic": self.topic.value if self.topic else None,
            "paywallStatus": self.paywall_status,
            "paywallReason": self.paywall_reason,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> ExtractedArticle:
        return cls(
            url=payload["url"],
            title=payload.get("title") or "",
            snippet=payload.get("snippet") or "",
            domain=payload.get("domain") or "",
            extracted_text=payload.get("extractedText") or "",
            word_count=int(payload.get("wordCount") or 0),
            hash=payload.get("hash") or "",
            published_date=payload.get("publishedDate"),
            published_date_invalid=bool(payload.get("publishedDateInvalid")),
            discovered_at=payload.get("discoveredAt"),
            author=payload.get("author"),
            topic=Topic.from_label(payload.get("topic") or ""),
            paywall_status=payload.get("paywallStatus") or "unknown",
            paywall_reason=payload.get("paywallReason"),
        )


@dataclass(frozen=True)
class RankedItem:
    url: str
    rank: int
    why: str = ""
    primary_tag: str = ""
    insight_type: str = ""
    controversy_risk: str = "none"
    confidence: float = 0.0

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "rank": self.rank,
            "why": self.why,
            "primaryTag": self.primary_tag,
            "insightType": self.insight_type,
            "controversyRisk": self.controversy_risk,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class LlmRanked:
    items: list[RankedItem]
    source: str = "llm"


@dataclass(frozen=True)
class FallbackRanked:
    items: list[RankedItem]
    reason: str
    source: str = "fallback"


Ranking = Union[LlmRanked, FallbackRanked]


@dataclass
class SelectedArticle:
    url: str
    title: str
    snippet: str
    domain: str
    rank: int
    why: str
    confidence: float
    category: Topic
    published_date: str | None = None
    published_date_invalid: bool = False
    discovered_at: str | None = None
    paywall_status: str = "unknown"
    paywall_reason: str | None = None
    matched_companies: list[str] | None = None
    company_boost_score: int | None = None

    def to_dict(self) -> dict:
        payload = {
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "domain": self.domain,
            "publishedDate": self.published_date,
            "publishedDateInvalid": self.published_date_invalid,
            "discoveredAt": self.discovered_at,
            "rank": self.rank,
            "why": self.why,
            "confidence": self.confidence,
            "category": self.category.value,
            "paywallStatus": self.paywall_status,
            "paywallReason": self.paywall_reason,
        }
        if self.matched_companies is not None:
            payload["matchedCompanies"] = self.matched_companies
            payload["companyBoostScore"] = self.company_boost_score
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> SelectedArticle:
        category = Topic.from_label(payload.get("category") or "")
        if category is None:
            raise ValueError(f"selected article without a known category: {payload.get('url')}")
        return cls(
            url=payload["url"],
            title=payload.get("title") or "",
            snippet=payload.get("snippet") or "",
            domain=payload.get("domain") or "",
            rank=int(payload["rank"]),
            why=payload.get("why") or "",
            confidence=float(payload.get("confidence") or 0.0),
            category=category,
            published_date=payload.get("publishedDate"),
            published_date_invalid=bool(payload.get("publishedDateInvalid")),
            discovered_at=payload.get("discoveredAt"),
            paywall_status=payload.get("paywallStatus") or "unknown",
            paywall_reason=payload.get("paywallReason"),
            matched_companies=payload.get("matchedCompanies"),
            company_boost_score=payload.get("companyBoostScore"),
        )


@dataclass
class ExclusionCounts:
    domainCap: int = 0
    duplicate: int = 0
    hardControversy: int = 0
    sponsored: int = 0

    def total(self) -> int:
        return self.domainCap + self.duplicate + self.hardControversy + self.sponsored


@dataclass
class PaywallStats:
    selected_paywalled: int = 0
    selected_not_paywalled: int = 0
    selected_unknown: int = 0
    paywalled_percentage: int = 0
    evicted: int = 0
    backfilled: int = 0


@dataclass
class FallbackFlags:
    domainCapRelaxed: bool = False
    llmRankingFailed: bool = False


@dataclass
class SelectionReport:
    candidate_count: int = 0
    sponsored_prefiltered: int = 0
    ranked_top_k_count: int = 0
    selected_count: int = 0
    ranking_source: str = "none"
    ranking_error: str | None = None
    exclusion_counts: ExclusionCounts = field(default_factory=ExclusionCounts)
    fallback_used: FallbackFlags = field(default_factory=FallbackFlags)
    paywall_stats: PaywallStats = field(default_factory=PaywallStats)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict) -> SelectionReport:
        return cls(
            candidate_count=int(payload.get("candidate_count") or 0),
            sponsored_prefiltered=int(payload.get("sponsored_prefiltered") or 0),
            ranked_top_k_count=int(payload.get("ranked_top_k_count") or 0),
            selected_count=int(payload.get("selected_count") or 0),
            ranking_source=payload.get("ranking_source") or "none",
            ranking_error=payload.get("ranking_error"),
            exclusion_counts=ExclusionCounts(**(payload.get("exclusion_counts") or {})),
            fallback_used=FallbackFlags(**(payload.get("fallback_used") or {})),
            paywall_stats=PaywallStats(**(payload.get("paywall_stats") or {})),
        )


@dataclass
class Article:
    id: str
    title: str
    url: str
    source: str
    published_at: str
    ingested_at: str
    snippet: str | None = None
    discoveredAt: str | None = None
    publishedDateInvalid: bool = False
    sourceType: str = "discovery"

    def to_dict(self) -> dict:
        return asdict(self)
