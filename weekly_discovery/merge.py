from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import MERGE_SIMILARITY_THRESHOLD
from .models import Article, SelectedArticle
from .utils import read_json, title_similarity, url_hash, utc_now_iso, write_json_atomic


log = logging.getLogger(__name__)

GLOBAL_ARTICLES_FILE = "articles.json"
DISCOVERY_ARTICLES_FILE = "discoveryArticles.json"


@dataclass
class MergeResult:
    added: int = 0
    updated: int = 0
    skipped_existing: int = 0
    skipped_similar: int = 0


def _load_list(path: Path) -> list[dict]:
    payload = read_json(path, default=[])
    if not isinstance(payload, list):
        log.warning("Ignoring %s: expected a JSON array.", path)
        return []
    return [item for item in payload if isinstance(item, dict) and item.get("url")]


def discovery_articles_path(data_dir: str | Path, week_label: str) -> Path:
    return Path(data_dir) / "weeks" / week_label / DISCOVERY_ARTICLES_FILE


def _similar_title(title: str, existing_titles: list[str]) -> float:
    best = 0.0
    for existing in existing_titles:
        score = title_similarity(title, existing)
        if score > best:
            best = score
            if best > MERGE_SIMILARITY_THRESHOLD:
                break
    return best


def merge_discovery_articles(
    selected: list[SelectedArticle],
    week_label: str,
    data_dir: str | Path = "data",
) -> MergeResult:
    """
    Append this week's selection to the week-scoped discovery store.

    Articles already in the global corpus (same URL, or a title more than 80%
    similar) are skipped. Articles already in this week's store are left in
    place; only a missing snippet is filled in. Existing records are never
    removed, so running the merge again with the same inputs adds nothing.
    """
    result = MergeResult()
    global_articles = _load_list(Path(data_dir) / GLOBAL_ARTICLES_FILE)
    global_urls = {item["url"] for item in global_articles}
    global_titles = [item.get("title") or "" for item in global_articles]

    store_path = discovery_articles_path(data_dir, week_label)
    stored = _load_list(store_path)
    stored_by_url = {item["url"]: item for item in stored}
    now = utc_now_iso()

    for article in selected:
        if article.url in global_urls:
            result.skipped_existing += 1
            log.info('Skipping: already exists in %s: "%s"', GLOBAL_ARTICLES_FILE, article.title)
            continue
        similarity = _similar_title(article.title, global_titles)
        if similarity > MERGE_SIMILARITY_THRESHOLD:
            result.skipped_similar += 1
            log.info('Skipping duplicate: "%s" (similarity: %.2f)', article.title, similarity)
            continue

        existing = stored_by_url.get(article.url)
        if existing is not None:
            if not existing.get("snippet") and article.snippet:
                existing["snippet"] = article.snippet
                result.updated += 1
            continue

        record = Article(
            id=url_hash(article.url),
            title=article.title,
            url=article.url,
            source=article.domain,
            published_at=article.published_date or now,
            ingested_at=now,
            snippet=article.snippet,
            discoveredAt=article.discovered_at or now,
            publishedDateInvalid=article.published_date_invalid,
        ).to_dict()
        stored.append(record)
        stored_by_url[article.url] = record
        result.added += 1

    if result.added or result.updated or not store_path.exists():
        write_json_atomic(store_path, stored)
    log.info(
        "Merged discovery articles for %s: %d added, %d updated, %d already known, %d similar.",
        week_label,
        result.added,
        result.updated,
        result.skipped_existing,
        result.skipped_similar,
    )
    return result
