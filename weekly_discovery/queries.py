##########################################################################################
#
# Script name: queries.py
#
# Description: Assembles the weekly search-query set: base, delta, consultancy and platform tiers.
#
##########################################################################################

import json
import logging
import os
from pathlib import Path
from typing import Any

from .cache import StageCache, stage_key
from .config import (
    BASE_QUERIES_PER_TOPIC,
    CONSULTANCY_DOMAINS,
    DELTA_QUERIES_PER_TOPIC,
    PLATFORM_DOMAINS,
    TOPICS,
    Settings,
    Topic,
    per_topic,
)
from .errors import ConfigurationError
from .llm import build_openai_client, complete_json
from .utils import content_hash, domain_matches, previous_week_label, read_json


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

QUERIES_FILE = 'queries.json'
DELTA_TEMPERATURE = 0.7
DELTA_SYSTEM_PROMPT = (
    'You are a precise web search query generator. Always return valid JSON with exactly 3 queries.'
)

CONSULTANCY_PATTERNS = {
    Topic.AI_AND_STRATEGY: {
        'mckinsey': 'site:mckinsey.com artificial intelligence strategy',
        'bain': 'site:bain.com/insights artificial intelligence',
        'bcg': 'site:bcg.com artificial intelligence insights',
    },
    Topic.ECOMMERCE_RETAIL_TECH: {
        'mckinsey': 'site:mckinsey.com retail consumer insights',
        'bain': 'site:bain.com/insights retail technology',
        'bcg': 'site:bcg.com retail consumer products insights',
    },
    Topic.LUXURY_AND_CONSUMER: {
        'mckinsey': 'site:mckinsey.com luxury consumer trends',
        'bain': 'site:bain.com/insights luxury consumer',
        'bcg': 'site:bcg.com luxury consumer insights',
    },
    Topic.JEWELLERY_INDUSTRY: {
        'mckinsey': 'site:mckinsey.com luxury retail insights',
        'bain': 'site:bain.com/insights luxury retail',
        'bcg': 'site:bcg.com luxury retail insights',
    },
}

PLATFORM_PATTERNS = {
    Topic.AI_AND_STRATEGY: {
        'google': 'site:ai.googleblog.com artificial intelligence',
        'amazon': 'site:amazon.com AI technology',
        'shopify': 'site:shopify.com AI commerce',
        'walmart': 'site:corporate.walmart.com artificial intelligence',
    },
    Topic.ECOMMERCE_RETAIL_TECH: {
        'google': 'site:blog.google ecommerce retail',
        'amazon': 'site:amazon.com retail technology',
        'shopify': 'site:shopify.com ecommerce platform',
        'walmart': 'site:corporate.walmart.com retail tech',
    },
    Topic.LUXURY_AND_CONSUMER: {
        'google': 'site:blog.google luxury consumer',
        'amazon': 'site:amazon.com luxury retail',
        'shopify': 'site:shopify.com luxury commerce',
        'walmart': 'site:corporate.walmart.com consumer trends',
    },
    Topic.JEWELLERY_INDUSTRY: {
        'google': 'site:blog.google luxury retail',
        'amazon': 'site:amazon.com jewelry retail',
        'shopify': 'site:shopify.com jewelry commerce',
        'walmart': 'site:corporate.walmart.com luxury retail',
    },
}


# ****************************************************************************************
# Functions
# ****************************************************************************************


def load_base_queries(path: str) -> tuple[dict[Topic, list[str]], str]:
    if not os.path.exists(path):
        raise ConfigurationError(f'Base query file not found: {path}')
    try:
        with open(path, 'r', encoding='utf-8') as handle:
            payload = json.load(handle)
    except ValueError as exc:
        raise ConfigurationError(f'Failed to load base queries from {path}: {exc}') from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f'Base query file {path} must be an object keyed by topic label')

    queries: dict[Topic, list[str]] = {}
    for topic in TOPICS:
        entries = payload.get(topic.label)
        if not isinstance(entries, list):
            raise ConfigurationError(f'Base queries for {topic.label} are missing')
        cleaned = [entry.strip() for entry in entries if isinstance(entry, str) and entry.strip()]
        if len(cleaned) != BASE_QUERIES_PER_TOPIC or len(entries) != BASE_QUERIES_PER_TOPIC:
            raise ConfigurationError(
                f'Base queries for {topic.label} must have exactly {BASE_QUERIES_PER_TOPIC} queries, '
                f'found {len(cleaned)}'
            )
        queries[topic] = cleaned
    return queries, content_hash(payload)


def load_last_week_context(data_dir: str, week_label: str) -> dict[str, list[str]]:
    '''
    Key themes and top headlines from the previous week's digest, if one exists.
    Any problem reading it yields an empty context.
    '''
    empty = {'keyThemes': [], 'topHeadlines': []}
    try:
        prev_label = previous_week_label(week_label)
    except ValueError:
        return empty
    digest = read_json(Path(data_dir) / 'digests' / f'{prev_label}.json')
    if not isinstance(digest, dict):
        log.debug('No digest found for %s; delta queries get no prior context.', prev_label)
        return empty

    headlines: list[str] = []
    topics_payload = digest.get('topics') or {}
    for topic in TOPICS:
        block = topics_payload.get(topic.value) if isinstance(topics_payload, dict) else None
        top = block.get('top') if isinstance(block, dict) else None
        if not isinstance(top, list):
            continue
        for article in top[:3]:
            title = article.get('title') if isinstance(article, dict) else None
            if title and len(headlines) < 10:
                headlines.append(title)

    themes = digest.get('keyThemes') or []
    if not isinstance(themes, list):
        themes = []
    return {'keyThemes': [str(theme) for theme in themes], 'topHeadlines': headlines}


def _delta_prompt(topic: Topic, base_queries: list[str], context: dict[str, list[str]]) -> str:
    themes = context.get('keyThemes') or []
    headlines = context.get('topHeadlines') or []
    themes_context = (
        f"Last week's key themes: {', '.join(themes)}" if themes else 'No previous week themes available.'
    )
    if headlines:
        numbered = '\n'.join(f'{idx}. {headline}' for idx, headline in enumerate(headlines, start=1))
        headlines_context = f"Last week's top headlines:\n{numbered}"
    else:
        headlines_context = 'No previous week headlines available.'
    base_list = '\n'.join(f'{idx}. {query}' for idx, query in enumerate(base_queries, start=1))
    return (
        f'You are a web search query generator for a weekly digest about {topic.label}.\n\n'
        f'Category: {topic.label}\n'
        f'Category definition: {topic.definition}\n\n'
        f'{themes_context}\n\n'
        f'{headlines_context}\n\n'
        'Base queries (already used, do NOT repeat these semantically):\n'
        f'{base_list}\n\n'
        f'Generate exactly {DELTA_QUERIES_PER_TOPIC} NEW web search queries that:\n'
        '1. Focus on NEW developments this week (not covered by base queries)\n'
        '2. Are phrased evergreen (no dates like "October 2023", "2024", etc.)\n'
        '3. Avoid war/armed conflict, culture war, election horse-race politics\n'
        '4. Are specific and actionable (company names, product names, or specific trends)\n'
        '5. Target recent news and developments (last 7 days)\n'
        '6. Do NOT semantically duplicate any base query above\n\n'
        'Return a JSON object:\n'
        f'{{"category": "{topic.label}", "deltaQueries": ["query1", "query2", "query3"]}}'
    )


def generate_delta_queries_for_topic(
    client: Any,
    model: str,
    topic: Topic,
    base_queries: list[str],
    context: dict[str, list[str]],
) -> list[str]:
    parsed = complete_json(
        client,
        model=model,
        system_prompt=DELTA_SYSTEM_PROMPT,
        user_prompt=_delta_prompt(topic, base_queries, context),
        temperature=DELTA_TEMPERATURE,
    )
    delta = parsed.get('deltaQueries')
    if not isinstance(delta, list) or len(delta) != DELTA_QUERIES_PER_TOPIC:
        count = len(delta) if isinstance(delta, list) else 0
        raise ValueError(
            f'deltaQueries must be an array with exactly {DELTA_QUERIES_PER_TOPIC} queries, got {count}'
        )
    if any(not isinstance(query, str) or not query.strip() for query in delta):
        raise ValueError('all deltaQueries must be non-empty strings')
    existing = {query.lower() for query in base_queries}
    return [query.strip() for query in delta if query.strip().lower() not in existing]


def generate_delta_queries(
    client: Any,
    model: str,
    base_queries: dict[Topic, list[str]],
    context: dict[str, list[str]],
) -> tuple[dict[Topic, list[str]], list[Topic]]:
    delta = per_topic(list)
    failed: list[Topic] = []
    for topic in TOPICS:
        log.info('Generating %d delta queries for %s...', DELTA_QUERIES_PER_TOPIC, topic.label)
        try:
            delta[topic] = generate_delta_queries_for_topic(client, model, topic, base_queries[topic], context)
        except Exception as exc:  # noqa: BLE001
            log.warning('Delta query generation failed for %s: %s', topic.label, exc)
            failed.append(topic)
    return delta, failed


def is_consultancy_domain(domain: str) -> bool:
    return domain_matches(domain, CONSULTANCY_DOMAINS)


def is_platform_domain(domain: str) -> bool:
    return domain_matches(domain, PLATFORM_DOMAINS)


def consultancy_queries(topic: Topic) -> list[str]:
    patterns = CONSULTANCY_PATTERNS[topic]
    if topic is Topic.AI_AND_STRATEGY:
        return [patterns['mckinsey'], patterns['bain']]
    return [patterns['mckinsey'], patterns['bcg']]


def platform_queries(topic: Topic) -> list[str]:
    patterns = PLATFORM_PATTERNS[topic]
    if topic is Topic.AI_AND_STRATEGY:
        return [patterns['google'], patterns['amazon']]
    return [patterns['shopify'], patterns['walmart']]


def _valid_queries_payload(data: Any) -> bool:
    if not isinstance(data, dict) or not data.get('deltaComplete'):
        return False
    final = data.get('finalQueries') or {}
    return all(len(final.get(topic.value) or []) >= BASE_QUERIES_PER_TOPIC for topic in TOPICS)


def build_search_queries(
    week_label: str,
    cache: StageCache,
    settings: Settings,
    client: Any = None,
    regen_delta: bool = False,
    no_delta: bool = False,
) -> dict[Topic, list[str]]:
    base_queries, base_hash = load_base_queries(settings.base_queries_path)
    key = stage_key(base_hash, no_delta, settings.include_consultancies, settings.include_platforms)

    def compute() -> dict:
        if no_delta:
            log.info('Delta queries disabled; using base and domain tiers only.')
            delta, failed = per_topic(list), []
        else:
            llm = client if client is not None else build_openai_client()
            context = load_last_week_context(settings.data_dir, week_label)
            delta, failed = generate_delta_queries(llm, settings.query_delta_model, base_queries, context)

        consultancy = {
            topic: consultancy_queries(topic) if settings.include_consultancies else [] for topic in TOPICS
        }
        platform = {topic: platform_queries(topic) if settings.include_platforms else [] for topic in TOPICS}
        final = {}
        for topic in TOPICS:
            combined = base_queries[topic] + delta[topic] + consultancy[topic] + platform[topic]
            final[topic.value] = combined
            log.info(
                '%s: base=%d, delta=%d, consultancy=%d, platform=%d, total=%d',
                topic.label,
                len(base_queries[topic]),
                len(delta[topic]),
                len(consultancy[topic]),
                len(platform[topic]),
                len(combined),
            )
        return {
            'weekLabel': week_label,
            'baseQueriesHash': base_hash,
            'baseQueries': {topic.label: base_queries[topic] for topic in TOPICS},
            'deltaQueries': {topic.label: delta[topic] for topic in TOPICS},
            'consultancyQueries': {topic.label: consultancy[topic] for topic in TOPICS},
            'platformQueries': {topic.label: platform[topic] for topic in TOPICS},
            'finalQueries': final,
            'deltaComplete': not failed,
        }

    data = cache.get_or_compute(
        QUERIES_FILE,
        key,
        compute,
        validate=_valid_queries_payload,
        force=regen_delta,
    )
    if not data.get('deltaComplete'):
        log.warning('Delta queries incomplete; %s will be regenerated on the next run.', QUERIES_FILE)
    return {topic: list(data['finalQueries'][topic.value]) for topic in TOPICS}
