"""
Stage cache and progress ledger.

Every pipeline stage stores its output in one JSON file per week. The file is
an envelope holding the key derived from the stage inputs, so a rerun can tell
a still-valid result from one computed for different inputs.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable

from .utils import content_hash, read_json, utc_now_iso, write_json_atomic


log = logging.getLogger(__name__)


def stage_key(*parts: Any) -> str:
    return content_hash(list(parts))


class StageCache:
    def __init__(self, stage_dir: str | Path, week_label: str = ""):
        self.stage_dir = Path(stage_dir)
        self.week_label = week_label

    def path(self, name: str) -> Path:
        return self.stage_dir / name

    def load(self, name: str, key: str, validate: Callable[[Any], bool] | None = None) -> Any | None:
        envelope = read_json(self.path(name))
        if not isinstance(envelope, dict) or "data" not in envelope:
            return None
        if envelope.get("cacheKey") != key:
            log.info("Cache %s was built from different inputs; recomputing.", name)
            return None
        data = envelope["data"]
        if validate is not None:
            try:
                valid = validate(data)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Cache %s failed validation (%s); recomputing.", name, exc)
                return None
            if not valid:
                log.warning("Cache %s failed validation; recomputing.", name)
                return None
        return data

    def store(self, name: str, key: str, data: Any) -> None:
        write_json_atomic(
            self.path(name),
            {
                "stage": name,
                "cacheKey": key,
                "weekLabel": self.week_label,
                "generatedAt": utc_now_iso(),
                "data": data,
            },
        )

    def get_or_compute(
        self,
        name: str,
        key: str,
        compute: Callable[[], Any],
        validate: Callable[[Any], bool] | None = None,
        force: bool = False,
    ) -> Any:
        if not force:
            cached = self.load(name, key, validate)
            if cached is not None:
                log.info("Using cached %s from %s", name, self.path(name))
                return cached
        data = compute()
        self.store(name, key, data)
        return data


class ProgressLedger:
    """
    Write-ahead checkpoint of processed keys for a long batch.

    One JSON line per key, flushed as it is recorded. A crash can at worst
    leave a torn last line, which is ignored on reload.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._done: set[str] = set()
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    log.warning("Ignoring torn ledger line in %s", self.path)
                    continue
                key = entry.get("key") if isinstance(entry, dict) else None
                if key:
                    self._done.add(key)
        if self._done:
            log.info("Resuming from ledger %s with %d processed item(s).", self.path, len(self._done))

    def __contains__(self, key: str) -> bool:
        return key in self._done

    def __len__(self) -> int:
        return len(self._done)

    def mark(self, key: str, status: str = "done") -> None:
        if key in self._done:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps({"key": key, "status": status, "at": utc_now_iso()}) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        self._done.add(key)

    def complete(self) -> None:
        if self.path.exists():
            self.path.unlink()
        self._done.clear()
