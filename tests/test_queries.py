##########################################################################################
#
# Script name: test_queries.py
#
# Description: Tests base query loading, delta generation, and weekly query assembly.
#
##########################################################################################

import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from weekly_discovery.cache import StageCache
from weekly_discovery.config import TOPICS, Settings, Topic
from weekly_discovery.errors import ConfigurationError
from weekly_discovery.queries import (
    QUERIES_FILE,
    build_search_queries,
    consultancy_queries,
    is_consultancy_domain,
    is_platform_domain,
    load_base_queries,
    load_last_week_context,
    platform_queries,
)


def _write_base(path: Path, count: int = 12) -> Path:
    payload = {topic.label: [f'{topic.label} base {idx}' for idx in range(count)] for topic in TOPICS}
    path.write_text(json.dumps(payload), encoding='utf-8')
    return path


def _fake_client(fail_for: str | None = None):
    calls = []

    def create(**kwargs):
        prompt = kwargs['messages'][1]['content']
        calls.append(prompt)
        if fail_for and f'Category: {fail_for}\n' in prompt:
            raise RuntimeError('model timeout')
        label = prompt.split('Category: ', 1)[1].split('\n', 1)[0]
        content = json.dumps(
            {'category': label, 'deltaQueries': [f'{label} fresh angle', f'{label} new launch', f'{label} base 0']}
        )
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create))), calls


def test_load_base_queries_requires_twelve_per_topic(tmp_path: Path) -> None:
    queries, digest = load_base_queries(str(_write_base(tmp_path / 'base.json')))
    assert all(len(queries[topic]) == 12 for topic in TOPICS)
    assert digest

    with pytest.raises(ConfigurationError):
        load_base_queries(str(_write_base(tmp_path / 'short.json', count=11)))
    with pytest.raises(ConfigurationError):
        load_base_queries(str(tmp_path / 'missing.json'))


def test_load_base_queries_rejects_unknown_layout(tmp_path: Path) -> None:
    path = tmp_path / 'base.json'
    path.write_text(json.dumps(['not', 'a', 'mapping']), encoding='utf-8')
    with pytest.raises(ConfigurationError):
        load_base_queries(str(path))


def test_consultancy_and_platform_tiers() -> None:
    assert len(consultancy_queries(Topic.AI_AND_STRATEGY)) == 2
    assert any('bain.com' in query for query in consultancy_queries(Topic.AI_AND_STRATEGY))
    assert any('bcg.com' in query for query in consultancy_queries(Topic.JEWELLERY_INDUSTRY))
    assert any('shopify.com' in query for query in platform_queries(Topic.LUXURY_AND_CONSUMER))
    assert is_consultancy_domain('www.mckinsey.com')
    assert is_platform_domain('corporate.walmart.com')
    assert not is_platform_domain('walmart.example')


def test_build_search_queries_adds_delta_and_domain_tiers(tmp_path: Path) -> None:
    settings = Settings(data_dir=str(tmp_path), base_queries_path=str(_write_base(tmp_path / 'base.json')))
    cache = StageCache(tmp_path / 'discovery', '2026-W10')
    client, calls = _fake_client()

    queries = build_search_queries('2026-W10', cache, settings, client=client)

    ai = queries[Topic.AI_AND_STRATEGY]
    assert len(ai) == 12 + 2 + 2 + 2
    assert 'AI & Strategy fresh angle' in ai
    assert ai.count('AI & Strategy base 0') == 1
    assert len(calls) == len(TOPICS)

    stored = json.loads((tmp_path / 'discovery' / QUERIES_FILE).read_text(encoding='utf-8'))
    assert stored['data']['deltaComplete'] is True

    again = build_search_queries('2026-W10', cache, settings, client=client)
    assert again == queries
    assert len(calls) == len(TOPICS)


def test_regen_delta_forces_new_queries(tmp_path: Path) -> None:
    settings = Settings(data_dir=str(tmp_path), base_queries_path=str(_write_base(tmp_path / 'base.json')))
    cache = StageCache(tmp_path / 'discovery', '2026-W10')
    client, calls = _fake_client()

    build_search_queries('2026-W10', cache, settings, client=client)
    build_search_queries('2026-W10', cache, settings, client=client, regen_delta=True)

    assert len(calls) == 2 * len(TOPICS)


def test_delta_failure_is_soft_and_retried_next_run(tmp_path: Path) -> None:
    settings = Settings(data_dir=str(tmp_path), base_queries_path=str(_write_base(tmp_path / 'base.json')))
    cache = StageCache(tmp_path / 'discovery', '2026-W10')
    client, calls = _fake_client(fail_for='Jewellery Industry')

    queries = build_search_queries('2026-W10', cache, settings, client=client)

    assert len(queries[Topic.JEWELLERY_INDUSTRY]) == 12 + 2 + 2
    assert len(queries[Topic.AI_AND_STRATEGY]) == 12 + 2 + 2 + 2

    build_search_queries('2026-W10', cache, settings, client=client)
    assert len(calls) == 2 * len(TOPICS)


def test_no_delta_skips_the_model(tmp_path: Path) -> None:
    settings = Settings(
        data_dir=str(tmp_path),
        base_queries_path=str(_write_base(tmp_path / 'base.json')),
        include_platforms=False,
    )
    cache = StageCache(tmp_path / 'discovery', '2026-W10')

    queries = build_search_queries('2026-W10', cache, settings, no_delta=True)

    assert all(len(queries[topic]) == 12 + 2 for topic in TOPICS)


def test_load_last_week_context_reads_previous_digest(tmp_path: Path) -> None:
    digests = tmp_path / 'digests'
    digests.mkdir()
    digest = {
        'keyThemes': ['agentic commerce', 'lab-grown diamonds'],
        'topics': {
            topic.value: {'top': [{'title': f'{topic.value} headline {idx}'} for idx in range(5)]}
            for topic in TOPICS
        },
    }
    (digests / '2026-W09.json').write_text(json.dumps(digest), encoding='utf-8')

    context = load_last_week_context(str(tmp_path), '2026-W10')

    assert context['keyThemes'] == ['agentic commerce', 'lab-grown diamonds']
    assert len(context['topHeadlines']) == 10
    assert context['topHeadlines'][0] == 'AI_and_Strategy headline 0'
    assert load_last_week_context(str(tmp_path), '2026-W20') == {'keyThemes': [], 'topHeadlines': []}
