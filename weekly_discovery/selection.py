from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .cache import StageCache, stage_key
from .config import (
    COMPANY_SNIPPET_BOOST,
    COMPANY_TEXT_BOOST,
    COMPANY_TITLE_BOOST,
    DOMAIN_CAP,
    HARD_CONTROVERSY_MARKERS,
    JEWELLERY_COMPANY_TIERS,
    MAX_COMPANY_BOOST,
    MAX_LLM_CANDIDATES,
    NEAR_DUPLICATE_THRESHOLD,
    POLICY_ALLOWLIST,
    RELAXED_DOMAIN_CAP,
    SPONSORED_INDICATORS,
    TOP_K,
    TOPIC_KEYWORDS,
    TOPICS,
    Settings,
    Topic,
    per_topic,
)
from .errors import RankingContractError
from .llm import build_openai_client, complete_json
from .models import (
    CONTROVERSY_LEVELS,
    ExclusionCounts,
    ExtractedArticle,
    FallbackFlags,
    FallbackRanked,
    LlmRanked,
    PaywallStats,
    RankedItem,
    Ranking,
    SelectedArticle,
    SelectionReport,
)
from .utils import normalize_title, utc_now_iso, write_json_atomic


log = logging.getLogger(__name__)

SELECTED_FILE = "selected-top20.json"
REPORT_FILE = "report.json"
RANKING_LOG_DIR = "ranking-log"
RANKING_TEMPERATURE = 0.3
EXCERPT_MIN_CHARS = 400
EXCERPT_MAX_CHARS = 600
FALLBACK_WHY = "Selected by fallback (word count)"
FALLBACK_CONFIDENCE = 0.5
PAYWALLED = "likely_paywalled"

RANKING_SYSTEM_PROMPT = (
    "You are an article ranking assistant. Your task is to RANK articles by relevance and quality, "
    "not to filter them out.\n"
    "Always return exactly the requested number of ranked items unless fewer candidates exist.\n"
    "Do not be overly conservative; prefer ranking lower rather than excluding articles.\n"
    "Return valid JSON only."
)


@dataclass(frozen=True)
class CompanyMatch:
    companies: list[str] = field(default_factory=list)
    tiers: list[str] = field(default_factory=list)
    boost: int = 0


def _term_pattern(term: str, inflected: bool = False) -> re.Pattern:
    # Inflected terms also match plural and verb forms ("wars", "elections", "attacked").
    suffix = r"(?:s|es|ed|ing)?" if inflected else ""
    return re.compile(r"\b" + re.escape(term.lower()) + suffix + r"\b")


_SPONSORED_RE = [_term_pattern(term, inflected=True) for term in SPONSORED_INDICATORS]
_ALLOWLIST_RE = [_term_pattern(term, inflected=True) for term in POLICY_ALLOWLIST]
_CONTROVERSY_RE = {
    name: [_term_pattern(term, inflected=True) for term in terms]
    for name, terms in HARD_CONTROVERSY_MARKERS.items()
}
_COMPANY_RE = {
    name: _term_pattern(name) for names in JEWELLERY_COMPANY_TIERS.values() for name in names
}


def _matches_any(text: str, patterns: list[re.Pattern]) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def is_sponsored(article: ExtractedArticle) -> bool:
    return _matches_any(article.text_blob().lower(), _SPONSORED_RE)


def detect_hard_controversy(article: ExtractedArticle) -> str | None:
    """
    Return the controversy class the article falls into, or None.

    Policy and regulation coverage is allowed even when it shares vocabulary
    with the excluded classes ("trade war", tariffs and elections, ...).
    """
    text = article.text_blob().lower()
    matched = [name for name, patterns in _CONTROVERSY_RE.items() if _matches_any(text, patterns)]
    if not matched:
        return None
    if _matches_any(text, _ALLOWLIST_RE):
        return None
    return matched[0]


def is_near_duplicate(first: str, second: str) -> bool:
    norm_a = normalize_title(first)
    norm_b = normalize_title(second)
    if not norm_a or not norm_b:
        return False
    if norm_a == norm_b:
        return True
    words_a = set(norm_a.split())
    words_b = set(norm_b.split())
    shared = len(words_a & words_b) / max(len(words_a), len(words_b))
    return shared > NEAR_DUPLICATE_THRESHOLD


def _company_tier(name: str) -> str | None:
    for tier, names in JEWELLERY_COMPANY_TIERS.items():
        if name in names:
            return tier
    return None


def detect_jewellery_companies(article: ExtractedArticle) -> CompanyMatch:
    title = article.title.lower()
    text = article.extracted_text.lower()
    snippet = (article.snippet or "").lower()
    companies: list[str] = []
    tiers: list[str] = []
    boost = 0
    for name, pattern in _COMPANY_RE.items():
        if pattern.search(title):
            boost += COMPANY_TITLE_BOOST
        elif pattern.search(text):
            boost += COMPANY_TEXT_BOOST
        elif pattern.search(snippet):
            boost += COMPANY_SNIPPET_BOOST
        else:
            continue
        companies.append(name)
        tier = _company_tier(name)
        if tier and tier not in tiers:
            tiers.append(tier)
    return CompanyMatch(companies=companies, tiers=tiers, boost=min(boost, MAX_COMPANY_BOOST))


def classify_topic(article: ExtractedArticle) -> Topic:
    if article.topic is not None:
        return article.topic
    text = article.text_blob().lower()
    for topic, keywords in TOPIC_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            return topic
    return Topic.ECOMMERCE_RETAIL_TECH


def _excerpt(text: str) -> str:
    excerpt = text[:EXCERPT_MAX_CHARS]
    if len(excerpt) < EXCERPT_MIN_CHARS:
        return text[:EXCERPT_MIN_CHARS]
    return excerpt


def _candidate_payload(
    candidates: list[ExtractedArticle],
    company_data: dict[str, CompanyMatch] | None,
) -> list[dict]:
    payload = []
    for idx, article in enumerate(candidates, start=1):
        item = {
            "index": idx,
            "url": article.url,
            "title": article.title,
            "domain": article.domain,
            "date": article.published_date or "unknown",
            "snippet": article.snippet,
            "excerpt": _excerpt(article.extracted_text),
            "paywallStatus": article.paywall_status,
            "paywallReason": article.paywall_reason,
        }
        match = (company_data or {}).get(article.url)
        if match is not None:
            item["matchedCompanies"] = match.companies
            item["companyBoostScore"] = match.boost
        payload.append(item)
    return payload


def _ranking_prompt(topic: Topic, target_k: int, with_companies: bool) -> str:
    criteria = [
        f"- Relevance to {topic.value}",
        "- Recency (prefer articles from the last 7 days)",
        "- Quality and depth of content",
        "- Business/industry significance",
        "- Insight value (new information, trends, strategic implications)",
        "- Source quality: if relevance is similar, prefer high-quality consultancy sources "
        "(McKinsey, Bain, BCG) as they typically provide strategic insights",
        "- Paywall status: prefer articles that are NOT paywalled. If two articles are similarly "
        'relevant, choose the non-paywalled one; "likely_paywalled" items have limited full-text access.',
    ]
    if with_companies:
        criteria.append(
            '- Company coverage: articles mentioning major jewellery companies ("matchedCompanies") may be '
            "more material for industry readers. Prefer them when relevance is similar, but do NOT "
            "prioritize product launch fluff or store openings with no strategic signal."
        )
    return (
        f"Rank the top {target_k} most relevant articles for a weekly digest about {topic.value}.\n\n"
        f"Topic focus: {topic.definition}\n\n"
        "This is a RANKING task, not a strict filtering task. Rank articles by:\n"
        + "\n".join(criteria)
        + f"\n\nIMPORTANT: Return exactly {target_k} ranked items unless fewer than {target_k} candidates exist.\n\n"
        "For each article, assess controversy risk:\n"
        '- "none": No controversial content\n'
        '- "low": Minor political/business controversy, acceptable\n'
        '- "med": Moderate controversy but relevant to business/industry\n'
        '- "high": Hard controversial topics (war/armed conflict, culture war, election horse-race politics)\n\n'
        "ALLOW articles about tariffs/trade policy, privacy/AI regulation, compliance laws that directly "
        "impact retail/ecommerce/AI.\n\n"
        "Return a JSON object:\n"
        '{"ranked": [{"url": "article url", "rank": 1, "why": "5-15 word explanation of relevance", '
        '"primaryTag": "e.g., AI, E-commerce, Retail, Strategy", '
        '"insightType": "e.g., Product Launch, Market Trend, Strategic Move, Industry Analysis", '
        '"controversyRisk": "none" | "low" | "med" | "high", "confidence": 0.85}]}\n\n'
        f"Return exactly {target_k} items in the ranked array, ordered by rank (1 = best)."
    )


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, confidence))


def parse_ranking(payload: dict, candidates: list[ExtractedArticle], target_k: int) -> list[RankedItem]:
    """
    Validate the model's ranked array against the candidate batch.

    The array must exist and reference at least one candidate URL. Unknown and
    repeated URLs are dropped, the rest are re-sorted by rank and truncated to
    target_k. A short array is accepted as it is.
    """
    raw_items = payload.get("ranked")
    if not isinstance(raw_items, list) or not raw_items:
        raise RankingContractError("Invalid ranking output: missing ranked array")

    known = {article.url for article in candidates}
    seen: set[str] = set()
    positioned: list[tuple[float, int, RankedItem]] = []
    dropped = 0
    for position, raw in enumerate(raw_items):
        url = raw.get("url") if isinstance(raw, dict) else None
        if url not in known or url in seen:
            dropped += 1
            continue
        seen.add(url)
        try:
            rank = float(raw.get("rank"))
        except (TypeError, ValueError):
            rank = float(position + 1)
        risk = str(raw.get("controversyRisk") or "none").lower()
        item = RankedItem(
            url=url,
            rank=0,
            why=str(raw.get("why") or ""),
            primary_tag=str(raw.get("primaryTag") or ""),
            insight_type=str(raw.get("insightType") or ""),
            controversy_risk=risk if risk in CONTROVERSY_LEVELS else "none",
            confidence=_coerce_confidence(raw.get("confidence")),
        )
        positioned.append((rank, position, item))

    if not positioned:
        raise RankingContractError(
            "Ranking output references no candidate URLs", {"returned": len(raw_items)}
        )
    if dropped:
        log.warning("Dropped %d ranked item(s) with unknown or repeated URLs.", dropped)

    positioned.sort(key=lambda entry: (entry[0], entry[1]))
    items = [
        replace(item, rank=idx)
        for idx, (_, _, item) in enumerate(positioned[:target_k], start=1)
    ]
    if len(items) < target_k:
        log.warning("LLM returned %d ranked items, expected %d; continuing with fewer.", len(items), target_k)
    return items


def rank_candidates(
    client: Any,
    model: str,
    candidates: list[ExtractedArticle],
    topic: Topic,
    company_data: dict[str, CompanyMatch] | None = None,
    target_k: int = TOP_K,
) -> tuple[LlmRanked, dict]:
    """Phase A: ask the model to rank the batch. Returns the ranking and the raw response."""
    expected = min(target_k, len(candidates))
    user_prompt = _ranking_prompt(topic, expected, company_data is not None)
    candidate_json = json.dumps(_candidate_payload(candidates, company_data), indent=2)
    payload = complete_json(
        client,
        model,
        RANKING_SYSTEM_PROMPT,
        f"{user_prompt}\n\nCandidates:\n{candidate_json}",
        temperature=RANKING_TEMPERATURE,
    )
    return LlmRanked(items=parse_ranking(payload, candidates, expected)), payload


def fallback_ranking(candidates: list[ExtractedArticle], target_k: int = TOP_K, reason: str = "") -> FallbackRanked:
    pool = [article for article in candidates if not is_sponsored(article) and not detect_hard_controversy(article)]
    pool.sort(key=lambda article: (-article.word_count, article.url))
    items = [
        RankedItem(url=article.url, rank=idx, why=FALLBACK_WHY, confidence=FALLBACK_CONFIDENCE)
        for idx, article in enumerate(pool[:target_k], start=1)
    ]
    return FallbackRanked(items=items, reason=reason)


def _to_selected(
    article: ExtractedArticle,
    item: RankedItem,
    topic: Topic,
    company_data: dict[str, CompanyMatch] | None,
) -> SelectedArticle:
    match = (company_data or {}).get(article.url)
    return SelectedArticle(
        url=article.url,
        title=article.title,
        snippet=article.snippet,
        domain=article.domain,
        rank=item.rank,
        why=item.why,
        confidence=item.confidence,
        category=topic,
        published_date=article.published_date,
        published_date_invalid=article.published_date_invalid,
        discovered_at=article.discovered_at,
        paywall_status=article.paywall_status,
        paywall_reason=article.paywall_reason,
        matched_companies=match.companies if match else None,
        company_boost_score=match.boost if match else None,
    )


class _Selection:
    def __init__(self, topic: Topic, company_data: dict[str, CompanyMatch] | None):
        self.topic = topic
        self.company_data = company_data
        self.items: list[SelectedArticle] = []
        self.domain_counts: dict[str, int] = defaultdict(int)
        self.cap = DOMAIN_CAP

    def urls(self) -> set[str]:
        return {item.url for item in self.items}

    def rejection(self, article: ExtractedArticle) -> str | None:
        if detect_hard_controversy(article):
            return "hardControversy"
        if is_sponsored(article):
            return "sponsored"
        if any(is_near_duplicate(article.title, item.title) for item in self.items):
            return "duplicate"
        if self.domain_counts[article.domain] >= self.cap:
            return "domainCap"
        return None

    def admit(self, article: ExtractedArticle, item: RankedItem) -> None:
        self.items.append(_to_selected(article, item, self.topic, self.company_data))
        self.domain_counts[article.domain] += 1

    def evict(self, selected: SelectedArticle) -> None:
        self.items.remove(selected)
        self.domain_counts[selected.domain] -= 1


def _paywall_stats(selected: list[SelectedArticle], evicted: int, backfilled: int) -> PaywallStats:
    paywalled = sum(1 for item in selected if item.paywall_status == PAYWALLED)
    not_paywalled = sum(1 for item in selected if item.paywall_status == "not_paywalled")
    return PaywallStats(
        selected_paywalled=paywalled,
        selected_not_paywalled=not_paywalled,
        selected_unknown=len(selected) - paywalled - not_paywalled,
        paywalled_percentage=round(paywalled / len(selected) * 100) if selected else 0,
        evicted=evicted,
        backfilled=backfilled,
    )


def select_from_ranked(
    ranking: Ranking,
    candidates: list[ExtractedArticle],
    topic: Topic,
    select_top: int,
    max_paywalled: int = 1,
    company_data: dict[str, CompanyMatch] | None = None,
) -> tuple[list[SelectedArticle], SelectionReport]:
    """
    Phase B: walk the ranked list and admit items that pass every check.

    Checks run in order (controversy, sponsored, near-duplicate, domain cap) and
    the first failure is counted. When the first pass at the strict domain cap
    comes up short, one relaxed pass re-walks the list. The paywall cap then
    evicts the lowest-ranked paywalled items and backfills from the ranked list
    under the same checks. Final ranks are dense from 1.
    """
    by_url = {article.url: article for article in candidates}
    ranked = [(item, by_url[item.url]) for item in ranking.items if item.url in by_url]
    report = SelectionReport(
        candidate_count=len(candidates),
        ranked_top_k_count=len(ranking.items),
        ranking_source=ranking.source,
        ranking_error=ranking.reason if isinstance(ranking, FallbackRanked) else None,
        exclusion_counts=ExclusionCounts(),
        fallback_used=FallbackFlags(llmRankingFailed=isinstance(ranking, FallbackRanked)),
    )
    selection = _Selection(topic, company_data)

    for item, article in ranked:
        if len(selection.items) >= select_top:
            break
        reason = selection.rejection(article)
        if reason:
            setattr(report.exclusion_counts, reason, getattr(report.exclusion_counts, reason) + 1)
            continue
        selection.admit(article, item)

    if len(selection.items) < select_top:
        selection.cap = RELAXED_DOMAIN_CAP
        report.fallback_used.domainCapRelaxed = True
        log.info("Relaxing domain cap to %d for %s to reach target count.", selection.cap, topic.value)
        for item, article in ranked:
            if len(selection.items) >= select_top:
                break
            if article.url in selection.urls() or selection.rejection(article):
                continue
            selection.admit(article, item)

    evicted: list[SelectedArticle] = []
    backfilled = 0
    paywalled = [item for item in selection.items if item.paywall_status == PAYWALLED]
    if len(paywalled) > max_paywalled:
        paywalled.sort(key=lambda item: item.rank, reverse=True)
        evicted = paywalled[: len(paywalled) - max_paywalled]
        target = len(selection.items)
        for item in evicted:
            selection.evict(item)
        evicted_urls = {item.url for item in evicted}
        for item, article in ranked:
            if len(selection.items) >= target:
                break
            if article.url in evicted_urls or article.url in selection.urls():
                continue
            if article.paywall_status == PAYWALLED or selection.rejection(article):
                continue
            selection.admit(article, item)
            backfilled += 1
        log.info(
            "Applied paywall cap for %s: removed %d paywalled article(s), added %d replacement(s).",
            topic.value,
            len(evicted),
            backfilled,
        )

    selected = sorted(selection.items, key=lambda item: item.rank)
    for idx, item in enumerate(selected, start=1):
        item.rank = idx

    report.selected_count = len(selected)
    report.paywall_stats = _paywall_stats(selected, len(evicted), backfilled)
    return selected, report


def _write_ranking_log(
    audit_dir: Path | None,
    topic: Topic,
    model: str,
    batch: list[ExtractedArticle],
    ranking: Ranking,
    response: dict | None,
) -> None:
    if audit_dir is None:
        return
    write_json_atomic(
        audit_dir / f"{topic.value}.json",
        {
            "topic": topic.value,
            "model": model,
            "generatedAt": utc_now_iso(),
            "source": ranking.source,
            "error": ranking.reason if isinstance(ranking, FallbackRanked) else None,
            "candidates": [article.url for article in batch],
            "response": response,
            "ranked": [item.to_dict() for item in ranking.items],
        },
    )


def select_for_topic(
    candidates: list[ExtractedArticle],
    topic: Topic,
    select_top: int,
    client: Any,
    model: str,
    max_paywalled: int = 1,
    audit_dir: Path | None = None,
) -> tuple[list[SelectedArticle], SelectionReport]:
    if not candidates:
        return [], SelectionReport()

    pool = [article for article in candidates if not is_sponsored(article)]
    prefiltered = len(candidates) - len(pool)
    if not pool:
        log.warning("No non-sponsored articles for %s.", topic.value)
        return [], SelectionReport(candidate_count=len(candidates), sponsored_prefiltered=prefiltered)

    batch = pool[:MAX_LLM_CANDIDATES]
    company_data = None
    if topic == Topic.JEWELLERY_INDUSTRY:
        company_data = {article.url: detect_jewellery_companies(article) for article in batch}

    log.info("Ranking up to %d articles for %s from %d candidates...", TOP_K, topic.value, len(batch))
    response = None
    try:
        ranking, response = rank_candidates(client, model, batch, topic, company_data)
        log.info("LLM returned %d ranked items for %s.", len(ranking.items), topic.value)
    except Exception as exc:  # noqa: BLE001
        log.warning("LLM ranking failed for %s, using word-count fallback: %s", topic.value, exc)
        ranking = fallback_ranking(batch, TOP_K, reason=str(exc))
    _write_ranking_log(audit_dir, topic, model, batch, ranking, response)

    selected, report = select_from_ranked(ranking, candidates, topic, select_top, max_paywalled, company_data)
    report.sponsored_prefiltered = prefiltered

    counts = report.exclusion_counts
    log.info(
        "Selected %d articles for %s (domainCap=%d, duplicate=%d, hardControversy=%d, sponsored=%d).",
        len(selected),
        topic.value,
        counts.domainCap,
        counts.duplicate,
        counts.hardControversy,
        counts.sponsored,
    )
    if company_data is not None and selected:
        covered = [item for item in selected if item.matched_companies]
        log.info("%s: %d/%d selected articles mention tier-1 companies.", topic.label, len(covered), len(selected))
    return selected, report


def aggregate_reports(reports: dict[Topic, SelectionReport]) -> SelectionReport:
    total = SelectionReport()
    errors = []
    for topic, report in reports.items():
        total.candidate_count += report.candidate_count
        total.sponsored_prefiltered += report.sponsored_prefiltered
        total.ranked_top_k_count += report.ranked_top_k_count
        total.selected_count += report.selected_count
        for name in ("domainCap", "duplicate", "hardControversy", "sponsored"):
            setattr(
                total.exclusion_counts,
                name,
                getattr(total.exclusion_counts, name) + getattr(report.exclusion_counts, name),
            )
        total.fallback_used.domainCapRelaxed |= report.fallback_used.domainCapRelaxed
        total.fallback_used.llmRankingFailed |= report.fallback_used.llmRankingFailed
        total.paywall_stats.selected_paywalled += report.paywall_stats.selected_paywalled
        total.paywall_stats.selected_not_paywalled += report.paywall_stats.selected_not_paywalled
        total.paywall_stats.selected_unknown += report.paywall_stats.selected_unknown
        total.paywall_stats.evicted += report.paywall_stats.evicted
        total.paywall_stats.backfilled += report.paywall_stats.backfilled
        if report.ranking_error:
            errors.append(f"{topic.value}: {report.ranking_error}")
    if total.fallback_used.llmRankingFailed:
        total.ranking_source = "fallback"
    elif any(report.ranking_source == "llm" for report in reports.values()):
        total.ranking_source = "llm"
    total.ranking_error = "; ".join(errors) or None
    if total.selected_count:
        total.paywall_stats.paywalled_percentage = round(
            total.paywall_stats.selected_paywalled / total.selected_count * 100
        )
    return total


def group_by_topic(candidates: list[ExtractedArticle]) -> dict[Topic, list[ExtractedArticle]]:
    grouped = per_topic(list)
    for article in candidates:
        grouped[classify_topic(article)].append(article)
    return grouped


def _valid_selected(data: Any) -> bool:
    if not isinstance(data, list):
        return False
    for item in data:
        SelectedArticle.from_dict(item)
    return True


def _valid_report(data: Any) -> bool:
    if not isinstance(data, dict) or "aggregated" not in data or "by_topic" not in data:
        return False
    SelectionReport.from_dict(data["aggregated"])
    return all(topic.value in data["by_topic"] for topic in TOPICS)


def select_top_articles(
    candidates: list[ExtractedArticle],
    cache: StageCache,
    settings: Settings,
    client: Any = None,
) -> tuple[list[SelectedArticle], dict[Topic, SelectionReport], SelectionReport]:
    key = stage_key(
        [(article.url, article.topic.value if article.topic else None) for article in candidates],
        settings.select_top,
        settings.selection_model,
        settings.max_paywalled_per_category,
    )
    cached_selected = cache.load(SELECTED_FILE, key, validate=_valid_selected)
    cached_report = cache.load(REPORT_FILE, key, validate=_valid_report)
    if cached_selected is not None and cached_report is not None:
        log.info("Using cached selection from %s", cache.path(SELECTED_FILE))
        by_topic = {
            topic: SelectionReport.from_dict(cached_report["by_topic"][topic.value]) for topic in TOPICS
        }
        return (
            [SelectedArticle.from_dict(item) for item in cached_selected],
            by_topic,
            SelectionReport.from_dict(cached_report["aggregated"]),
        )

    grouped = group_by_topic(candidates)
    llm = client
    if llm is None and candidates:
        llm = build_openai_client()

    selected: list[SelectedArticle] = []
    reports: dict[Topic, SelectionReport] = {}
    for topic in TOPICS:
        topic_selected, reports[topic] = select_for_topic(
            grouped[topic],
            topic,
            settings.select_top,
            llm,
            settings.selection_model,
            max_paywalled=settings.max_paywalled_per_category,
            audit_dir=cache.path(RANKING_LOG_DIR),
        )
        selected.extend(topic_selected)
    aggregated = aggregate_reports(reports)

    cache.store(SELECTED_FILE, key, [item.to_dict() for item in selected])
    cache.store(
        REPORT_FILE,
        key,
        {
            "aggregated": aggregated.to_dict(),
            "by_topic": {topic.value: reports[topic].to_dict() for topic in TOPICS},
        },
    )
    return selected, reports, aggregated
