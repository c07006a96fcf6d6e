##########################################################################################
#
# Script name: test_cache.py
#
# Description: Tests stage cache envelopes with their atomic writes, and the progress ledger.
#
##########################################################################################

import json
import os
from pathlib import Path

import pytest

from weekly_discovery import utils
from weekly_discovery.cache import ProgressLedger, StageCache, stage_key


def test_get_or_compute_reuses_matching_key(tmp_path: Path) -> None:
    cache = StageCache(tmp_path, '2026-W10')
    calls = []

    def compute() -> list[int]:
        calls.append(1)
        return [1, 2, 3]

    key = stage_key('inputs', 3)
    assert cache.get_or_compute('stage.json', key, compute) == [1, 2, 3]
    assert cache.get_or_compute('stage.json', key, compute) == [1, 2, 3]
    assert len(calls) == 1

    envelope = json.loads((tmp_path / 'stage.json').read_text(encoding='utf-8'))
    assert envelope['cacheKey'] == key
    assert envelope['weekLabel'] == '2026-W10'
    assert envelope['stage'] == 'stage.json'


def test_changed_inputs_or_force_recompute(tmp_path: Path) -> None:
    cache = StageCache(tmp_path)
    calls = []

    def compute() -> dict:
        calls.append(1)
        return {'count': len(calls)}

    cache.get_or_compute('stage.json', stage_key('a'), compute)
    assert cache.get_or_compute('stage.json', stage_key('b'), compute) == {'count': 2}
    assert cache.get_or_compute('stage.json', stage_key('b'), compute, force=True) == {'count': 3}


def test_invalid_or_corrupt_cache_is_recomputed(tmp_path: Path) -> None:
    cache = StageCache(tmp_path)
    key = stage_key('a')
    (tmp_path / 'stage.json').write_text('{"cacheKey": "' + key + '", "data": [', encoding='utf-8')

    assert cache.get_or_compute('stage.json', key, lambda: ['fresh']) == ['fresh']

    def strict(data) -> bool:
        return data[0] == 'never'

    assert cache.load('stage.json', key, validate=strict) is None
    assert cache.load('stage.json', key, validate=lambda data: data['missing']) is None


def test_stage_key_is_order_sensitive_and_stable() -> None:
    assert stage_key({'b': 1, 'a': 2}) == stage_key({'a': 2, 'b': 1})
    assert stage_key(['a', 'b']) != stage_key(['b', 'a'])


def test_progress_ledger_survives_restart_and_torn_line(tmp_path: Path) -> None:
    path = tmp_path / 'progress.jsonl'
    ledger = ProgressLedger(path)
    ledger.mark('one', 'extracted')
    ledger.mark('two', 'skipped')
    ledger.mark('one', 'extracted')
    with path.open('a', encoding='utf-8') as handle:
        handle.write('{"key": "thr')

    reloaded = ProgressLedger(path)

    assert 'one' in reloaded
    assert 'two' in reloaded
    assert len(reloaded) == 2
    assert len(path.read_text(encoding='utf-8').splitlines()) == 3

    reloaded.complete()
    assert not path.exists()
    assert len(reloaded) == 0


def test_interrupted_store_keeps_previous_envelope(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cache = StageCache(tmp_path, '2026-W10')
    key = stage_key('inputs')
    cache.store('stage.json', key, ['first'])
    before = (tmp_path / 'stage.json').read_text(encoding='utf-8')

    def crash(payload, handle, **kwargs) -> None:
        handle.write('{"stage": "stage.json", "cacheKey": "' + key + '", "data": [')
        raise OSError('disk full')

    monkeypatch.setattr(utils.json, 'dump', crash)
    with pytest.raises(OSError):
        cache.store('stage.json', key, ['second'])
    monkeypatch.undo()

    assert (tmp_path / 'stage.json').read_text(encoding='utf-8') == before
    assert [name for name in os.listdir(tmp_path) if name.endswith('.tmp')] == []
    assert cache.load('stage.json', key) == ['first']


def test_failed_rename_leaves_no_partial_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / 'selected.json'
    utils.write_json_atomic(target, {'count': 1})

    def refuse(src, dst) -> None:
        raise PermissionError('target locked')

    monkeypatch.setattr(utils.os, 'replace', refuse)
    with pytest.raises(PermissionError):
        utils.write_json_atomic(target, {'count': 2})
    monkeypatch.undo()

    assert json.loads(target.read_text(encoding='utf-8')) == {'count': 1}
    assert sorted(os.listdir(tmp_path)) == ['selected.json']
