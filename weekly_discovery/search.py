##########################################################################################
#
# Script name: search.py
#
# Description: Web search over the weekly query set, deduplicated and cached per week.
#
##########################################################################################

import logging
import math
import re
import time
from dataclasses import asdict, dataclass
from typing import Any, Protocol

import requests

from .cache import StageCache, stage_key
from .config import SEARCH_MAX_RESULTS_PER_QUERY, SEARCH_TIMEOUT, SNIPPET_CHARS, TOPICS, Topic, per_topic
from .models import SearchResult
from .utils import extract_domain, normalize_whitespace


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

TAVILY_SEARCH_URL = 'https://api.tavily.com/search'
TAVILY_EXTRACT_URL = 'https://api.tavily.com/extract'
SERP_RESULTS_FILE = 'serp-results.json'
SITE_OPERATOR_RE = re.compile(r'(?<!\S)site:(\S+)', re.IGNORECASE)


class SearchBackend(Protocol):
    def search(self, query: str, max_results: int, include_domains: list[str] | None = None) -> list[dict]:
        ...


@dataclass
class TopicSearchStats:
    queries_run: int = 0
    query_failures: int = 0
    discovery_found: int = 0
    kept: int = 0


class TavilySearchBackend:
    def __init__(self, api_key: str, timeout: tuple[float, float] = SEARCH_TIMEOUT, session=None):
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def search(self, query: str, max_results: int, include_domains: list[str] | None = None) -> list[dict]:
        response = self.session.post(
            TAVILY_SEARCH_URL,
            json={
                'api_key': self.api_key,
                'query': query,
                'search_depth': 'basic',
                'include_answer': False,
                'include_raw_content': False,
                'include_domains': include_domains or [],
                'exclude_domains': [],
                'max_results': max_results,
                'include_images': False,
            },
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            raise RuntimeError(f'Tavily API error: {response.status_code} {response.text[:240]}')
        payload = response.json() or {}
        results = payload.get('results') or []
        if not isinstance(results, list):
            raise RuntimeError('Tavily response did not contain a results list')
        return results

    def extract(self, url: str, timeout: float | None = None) -> dict | None:
        response = self.session.post(
            TAVILY_EXTRACT_URL,
            json={
                'api_key': self.api_key,
                'urls': [url],
                'extract_depth': 'advanced',
                'include_images': False,
            },
            timeout=(SEARCH_TIMEOUT[0], timeout or SEARCH_TIMEOUT[1]),
        )
        if response.status_code >= 400:
            log.debug('Tavily extract failed for %s (%s).', url, response.status_code)
            return None
        payload = response.json() or {}
        rows = payload if isinstance(payload, list) else payload.get('results') or []
        if not rows or not isinstance(rows[0], dict):
            return None
        first = rows[0]
        content = first.get('content') or first.get('raw_content') or ''
        if not isinstance(content, str) or not content.strip():
            return None
        return {'content': content, 'title': first.get('title') or ''}


# ****************************************************************************************
# Functions
# ****************************************************************************************


def split_site_operator(query: str) -> tuple[str, list[str]]:
    '''
    Pull `site:` operators out of a query. The host part becomes a domain
    restriction for the backend; the remaining words are the query text.
    '''
    domains: list[str] = []
    for target in SITE_OPERATOR_RE.findall(query or ''):
        host = target.split('/', 1)[0].lower()
        if host.startswith('www.'):
            host = host[4:]
        if host and host not in domains:
            domains.append(host)
    text = normalize_whitespace(SITE_OPERATOR_RE.sub(' ', query or ''))
    return text, domains


def _to_search_result(row: dict, topic: Topic) -> SearchResult | None:
    url = (row.get('url') or '').strip()
    if not url.lower().startswith(('http://', 'https://')):
        return None
    domain = extract_domain(url)
    if not domain:
        return None
    score = row.get('score')
    return SearchResult(
        url=url,
        title=normalize_whitespace(row.get('title') or ''),
        snippet=normalize_whitespace(row.get('content') or '')[:SNIPPET_CHARS],
        domain=domain,
        topic=topic,
        published_date=row.get('published_date') or row.get('publishedDate'),
        score=float(score) if isinstance(score, (int, float)) else None,
    )


def _interleave_cap(by_topic: dict[Topic, list[SearchResult]], max_candidates: int) -> list[SearchResult]:
    quota = per_topic(int)
    remaining = max_candidates
    progressed = True
    while remaining > 0 and progressed:
        progressed = False
        for topic in TOPICS:
            if remaining == 0:
                break
            if quota[topic] < len(by_topic[topic]):
                quota[topic] += 1
                remaining -= 1
                progressed = True
    capped: list[SearchResult] = []
    for topic in TOPICS:
        capped.extend(by_topic[topic][: quota[topic]])
    return capped


def _valid_serp_cache(data: Any) -> bool:
    if not isinstance(data, list):
        return False
    for item in data:
        SearchResult.from_dict(item)
    return True


def run_search(
    queries: dict[Topic, list[str]],
    max_candidates: int,
    backend: SearchBackend,
    delay: float = 0.5,
) -> tuple[list[SearchResult], dict[Topic, TopicSearchStats]]:
    stats = per_topic(TopicSearchStats)
    by_topic: dict[Topic, list[SearchResult]] = per_topic(list)
    seen_urls: set[str] = set()
    first_call = True

    for topic in TOPICS:
        topic_queries = queries.get(topic) or []
        if not topic_queries:
            continue
        per_query = max(1, min(SEARCH_MAX_RESULTS_PER_QUERY, math.ceil(max_candidates / len(topic_queries))))
        log.info('Searching %d queries for %s...', len(topic_queries), topic.label)
        for query in topic_queries:
            if not first_call and delay > 0:
                time.sleep(delay)
            first_call = False
            text, include_domains = split_site_operator(query)
            stats[topic].queries_run += 1
            try:
                rows = backend.search(text, per_query, include_domains=include_domains)
            except Exception as exc:  # noqa: BLE001
                stats[topic].query_failures += 1
                log.warning('Search failed for "%s": %s', query, exc)
                continue
            for row in rows:
                if not isinstance(row, dict):
                    continue
                result = _to_search_result(row, topic)
                if result is None or result.url in seen_urls:
                    continue
                seen_urls.add(result.url)
                by_topic[topic].append(result)
                stats[topic].discovery_found += 1

    results = _interleave_cap(by_topic, max_candidates)
    for result in results:
        stats[result.topic].kept += 1
    return results, stats


def search(
    queries: dict[Topic, list[str]],
    max_candidates: int,
    cache: StageCache,
    backend: SearchBackend | None = None,
    delay: float = 0.5,
) -> tuple[list[SearchResult], dict[Topic, TopicSearchStats]]:
    key = stage_key({topic.value: queries.get(topic) or [] for topic in TOPICS}, max_candidates)
    cached = cache.load(SERP_RESULTS_FILE, key, validate=_valid_serp_cache)
    if cached is not None:
        log.info('Using cached search results from %s', cache.path(SERP_RESULTS_FILE))
        results = [SearchResult.from_dict(item) for item in cached]
        stats = per_topic(TopicSearchStats)
        for result in results:
            stats[result.topic].discovery_found += 1
            stats[result.topic].kept += 1
        return results, stats

    if backend is None:
        raise ValueError('search backend is required when no valid cache exists')
    results, stats = run_search(queries, max_candidates, backend, delay=delay)
    cache.store(SERP_RESULTS_FILE, key, [result.to_dict() for result in results])
    for topic in TOPICS:
        log.info('%s search stats: %s', topic.label, asdict(stats[topic]))
    return results, stats
