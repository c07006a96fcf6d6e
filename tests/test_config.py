##########################################################################################
#
# Script name: test_config.py
#
# Description: Tests settings layering, the topic enum, and week/date helpers.
#
##########################################################################################

from datetime import datetime, timezone
from pathlib import Path

import pytest

from weekly_discovery.config import Topic, load_settings, require_env
from weekly_discovery.errors import ConfigurationError, StageTimeout
from weekly_discovery.utils import (
    Deadline,
    extract_domain,
    parse_published,
    parse_week_label,
    previous_week_label,
)


def test_settings_layering(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / 'discovery.yaml'
    path.write_text('select_top: 15\nmax_candidates: 80\nselection_model: gpt-4o-mini\n', encoding='utf-8')
    monkeypatch.setenv('SELECTION_MODEL', 'gpt-4.1')
    monkeypatch.setenv('MAX_PAYWALLED_PER_CATEGORY', '2')

    settings = load_settings(str(path), max_candidates=60, data_dir=None)

    assert settings.select_top == 15
    assert settings.max_candidates == 60
    assert settings.selection_model == 'gpt-4.1'
    assert settings.max_paywalled_per_category == 2
    assert settings.data_dir == 'data'
    assert settings.discovery_dir('2026-W10') == Path('data') / 'weeks' / '2026-W10' / 'discovery'


def test_settings_rejects_unknown_keys(tmp_path: Path) -> None:
    path = tmp_path / 'discovery.yaml'
    path.write_text('select_top: 15\nsearch_provider: bing\n', encoding='utf-8')
    with pytest.raises(ConfigurationError):
        load_settings(str(path))


def test_settings_rejects_bad_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv('MAX_PAYWALLED_PER_CATEGORY', 'one')
    with pytest.raises(ConfigurationError):
        load_settings(None)


def test_require_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv('TAVILY_API_KEY', raising=False)
    with pytest.raises(ConfigurationError, match='TAVILY_API_KEY'):
        require_env('TAVILY_API_KEY')
    monkeypatch.setenv('TAVILY_API_KEY', ' tvly-abc ')
    assert require_env('TAVILY_API_KEY') == 'tvly-abc'


def test_topic_lookup_accepts_value_label_and_legacy_names() -> None:
    assert Topic.from_label('Jewellery_Industry') is Topic.JEWELLERY_INDUSTRY
    assert Topic.from_label('AI & Strategy') is Topic.AI_AND_STRATEGY
    assert Topic.from_label('Fashion & Luxury') is Topic.LUXURY_AND_CONSUMER
    assert Topic.from_label('Sports') is None


def test_week_labels() -> None:
    assert parse_week_label('2026-W01') == (2026, 1)
    assert previous_week_label('2026-W01') == '2025-W52'
    with pytest.raises(ValueError):
        parse_week_label('2026-13')
    with pytest.raises(ValueError):
        parse_week_label('2025-W54')


def test_extract_domain() -> None:
    assert extract_domain('https://www.retaildive.com/news/x') == 'retaildive.com'
    assert extract_domain('https://news.bbc.co.uk/story') == 'bbc.co.uk'
    assert extract_domain('https://corporate.walmart.com/news') == 'walmart.com'


def test_parse_published_flags_future_and_garbage() -> None:
    now = datetime(2026, 3, 5, tzinfo=timezone.utc)
    assert parse_published('2026-03-02T08:00:00Z', now=now) == ('2026-03-02T08:00:00+00:00', False)
    assert parse_published('2026-04-01', now=now)[1] is True
    assert parse_published('not a date', now=now)[1] is True
    assert parse_published(None, now=now) == (None, False)


def test_deadline_bounds_nested_timeouts() -> None:
    deadline = Deadline(60, label='fetch')
    assert deadline.bound(5) == 5
    assert Deadline(60).bound(120) <= 60
    with pytest.raises(StageTimeout):
        Deadline(0).check()
