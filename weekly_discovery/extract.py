##########################################################################################
#
# Script name: extract.py
#
# Description: Fetches candidate pages, extracts readable text, and applies content-quality gates.
#
##########################################################################################

import logging
import re
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import requests
from bs4 import BeautifulSoup, UnicodeDammit

from .cache import ProgressLedger, StageCache, stage_key
from .config import (
    ARTICLE_TIMEOUT,
    BOILERPLATE_PATTERNS,
    CONTENT_SELECTORS,
    FETCH_CONNECT_TIMEOUT,
    FETCH_READ_TIMEOUT,
    MAX_EXTRACTED_CHARS,
    MAX_HTML_BYTES,
    MIN_ASCII_RATIO,
    MIN_CONTENT_CHARS,
    MIN_WORD_COUNT,
    PAYWALL_MARKERS,
    PAYWALLED_DOMAINS,
    SNIPPET_CHARS,
)
from .errors import StageTimeout
from .models import ExtractedArticle, SearchResult
from .queries import is_consultancy_domain, is_platform_domain
from .utils import (
    Deadline,
    count_words,
    domain_matches,
    normalize_whitespace,
    parse_published,
    read_json,
    safe_sentence,
    url_hash,
    utc_now_iso,
    write_json_atomic,
    write_text_atomic,
)


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

CANDIDATES_FILE = 'candidates.json'
LEDGER_FILE = 'progress.jsonl'
BROWSER_HEADERS = {
    'User-Agent': (
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
        '(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36'
    ),
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
}
AUTHOR_SELECTORS = ['meta[name="author"]', '[rel="author"]', '[itemprop="author"]', '.author']
DATE_SELECTORS = [
    'meta[property="article:published_time"]',
    'time[datetime]',
    '[itemprop="datePublished"]',
    'meta[name="publish-date"]',
]
STRIP_TAGS = ['script', 'style', 'noscript', 'iframe', 'embed', 'object']


@dataclass
class ExtractStats:
    processed: int = 0
    extracted: int = 0
    cached: int = 0
    resumed: int = 0
    fetch_failed: int = 0
    non_english: int = 0
    too_short: int = 0
    boilerplate: int = 0
    timed_out: int = 0
    errors: int = 0


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _decode_html(content: bytes, response) -> str:
    # requests reports ISO-8859-1 for text/html without a declared charset, so only
    # a header charset is trusted; otherwise the page's meta charset, then UTF-8.
    declared = []
    content_type = (response.headers.get('content-type') or '').lower()
    if 'charset' in content_type and response.encoding:
        declared.append(response.encoding)
    dammit = UnicodeDammit(content, declared, is_html=True, user_encodings=['utf-8'])
    if dammit.unicode_markup is None:
        return content.decode('utf-8', errors='replace')
    return dammit.unicode_markup


def fetch_html(url: str, fetch_dir: Path, deadline: Deadline, session=None) -> str | None:
    html_path = fetch_dir / f'{url_hash(url)}.html'
    if html_path.exists():
        return html_path.read_text(encoding='utf-8', errors='replace')

    client = session or requests
    try:
        response = client.get(
            url,
            headers=BROWSER_HEADERS,
            timeout=(deadline.bound(FETCH_CONNECT_TIMEOUT), deadline.bound(FETCH_READ_TIMEOUT)),
            allow_redirects=True,
            stream=True,
        )
    except requests.RequestException as exc:
        log.warning('Error fetching %s: %s', url, exc)
        return None

    try:
        if response.status_code >= 400:
            log.warning('Failed to fetch %s: HTTP %s', url, response.status_code)
            return None
        content = b''
        for chunk in response.iter_content(chunk_size=64 * 1024):
            deadline.check()
            if not chunk:
                continue
            content += chunk
            if len(content) > MAX_HTML_BYTES:
                log.warning('Skipping %s: page larger than %d bytes', url, MAX_HTML_BYTES)
                return None
    except requests.RequestException as exc:
        log.warning('Error reading %s: %s', url, exc)
        return None
    finally:
        response.close()

    html = _decode_html(content, response)
    if not html.strip():
        return None
    write_text_atomic(html_path, html)
    return html


def _first_value(soup: BeautifulSoup, selectors: list[str], attrs: tuple[str, ...]) -> str | None:
    for selector in selectors:
        element = soup.select_one(selector)
        if element is None:
            continue
        for attr in attrs:
            value = element.get(attr)
            if value:
                return normalize_whitespace(str(value))
        text = normalize_whitespace(element.get_text(' '))
        if text:
            return text
    return None


def extract_text(html: str) -> dict[str, str | None]:
    soup = BeautifulSoup(html or '', 'html.parser')
    for tag in soup(STRIP_TAGS):
        tag.decompose()

    content = ''
    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        content = normalize_whitespace(element.get_text(' '))
        if len(content) > MIN_CONTENT_CHARS:
            break
    if len(content) < MIN_CONTENT_CHARS and soup.body is not None:
        content = normalize_whitespace(soup.body.get_text(' '))

    title = ''
    if soup.title and soup.title.string:
        title = normalize_whitespace(soup.title.string)
    if not title:
        heading = soup.find('h1')
        title = normalize_whitespace(heading.get_text(' ')) if heading else ''

    return {
        'text': content,
        'title': title,
        'author': _first_value(soup, AUTHOR_SELECTORS, ('content',)),
        'date': _first_value(soup, DATE_SELECTORS, ('datetime', 'content')),
    }


def is_english(text: str) -> bool:
    if not text:
        return False
    ascii_chars = sum(1 for char in text if ord(char) < 128)
    return ascii_chars / len(text) > MIN_ASCII_RATIO


def boilerplate_reason(text: str) -> str | None:
    # Only the leading window: footers mention privacy policies on every page.
    window = text[: max(500, len(text) // 5)].lower()
    for pattern in BOILERPLATE_PATTERNS:
        if re.search(pattern, window):
            return pattern
    return None


def quality_gate(text: str, word_count: int) -> str | None:
    if not is_english(text):
        return 'non_english'
    if word_count < MIN_WORD_COUNT:
        return 'too_short'
    if boilerplate_reason(text):
        return 'boilerplate'
    return None


def classify_paywall(domain: str, text: str) -> tuple[str, str | None]:
    if domain_matches(domain, sorted(PAYWALLED_DOMAINS)):
        return 'likely_paywalled', f'known paywalled domain {domain}'
    lowered = (text or '').lower()
    for marker in PAYWALL_MARKERS:
        if marker in lowered:
            return 'likely_paywalled', f'paywall marker "{marker}"'
    return 'not_paywalled', None


def _load_artifact(path: Path, result: SearchResult) -> ExtractedArticle | None:
    payload = read_json(path)
    if not isinstance(payload, dict) or not payload.get('url'):
        return None
    article = ExtractedArticle.from_dict(payload)
    if not article.snippet and result.snippet:
        article.snippet = result.snippet
        write_json_atomic(path, article.to_dict())
    if article.topic is None:
        article.topic = result.topic
    return article


def _extract_via_backend(backend: Any, url: str, deadline: Deadline) -> dict | None:
    extractor = getattr(backend, 'extract', None)
    if extractor is None:
        return None
    try:
        extracted = extractor(url, timeout=deadline.bound(FETCH_READ_TIMEOUT))
    except requests.RequestException as exc:
        log.debug('Backend extraction failed for %s: %s', url, exc)
        return None
    if not extracted or count_words(extracted.get('content') or '') < MIN_WORD_COUNT:
        return None
    return {
        'text': normalize_whitespace(extracted['content']),
        'title': normalize_whitespace(extracted.get('title') or ''),
        'author': None,
        'date': None,
    }


def extract_article(
    result: SearchResult,
    fetch_dir: Path,
    extracted_dir: Path,
    stats: ExtractStats,
    session=None,
    backend: Any = None,
    timeout: float = ARTICLE_TIMEOUT,
) -> ExtractedArticle | None:
    '''
    Produce at most one ExtractedArticle for a search hit.

    Gate failures return None. Timeouts raise StageTimeout for the caller to
    count; everything else network-related is logged here and returns None.
    '''
    hash_value = url_hash(result.url)
    artifact_path = extracted_dir / f'{hash_value}.json'
    cached = _load_artifact(artifact_path, result)
    if cached is not None:
        stats.cached += 1
        return cached

    deadline = Deadline(timeout, label=f'extraction of {result.url}')
    page = None
    if is_consultancy_domain(result.domain) or is_platform_domain(result.domain):
        page = _extract_via_backend(backend, result.url, deadline)
    if page is None:
        html = fetch_html(result.url, fetch_dir, deadline, session=session)
        if html is None:
            stats.fetch_failed += 1
            return None
        started = time.monotonic()
        page = extract_text(html)
        log.debug('Extracted %s in %.2fs', result.url, time.monotonic() - started)
        deadline.check()

    text = page['text'] or ''
    word_count = count_words(text)
    failure = quality_gate(text, word_count)
    if failure == 'non_english':
        stats.non_english += 1
        log.warning('Non-English content: %s', result.url)
        return None
    if failure == 'too_short':
        stats.too_short += 1
        log.warning('Not an article (%d words): %s', word_count, result.url)
        return None
    if failure == 'boilerplate':
        stats.boilerplate += 1
        log.warning('Boilerplate page skipped: %s', result.url)
        return None

    extracted_title = page['title'] or ''
    published_date, invalid = parse_published(page['date'] or result.published_date)
    paywall_status, paywall_reason = classify_paywall(result.domain, text)
    article = ExtractedArticle(
        url=result.url,
        title=extracted_title if len(extracted_title) > 10 else result.title,
        snippet=result.snippet or safe_sentence(text, SNIPPET_CHARS),
        domain=result.domain,
        extracted_text=text[:MAX_EXTRACTED_CHARS],
        word_count=word_count,
        hash=hash_value,
        published_date=published_date,
        published_date_invalid=invalid,
        discovered_at=utc_now_iso(),
        author=page['author'],
        topic=result.topic,
        paywall_status=paywall_status,
        paywall_reason=paywall_reason,
    )
    write_json_atomic(artifact_path, article.to_dict())
    return article


def _valid_candidates(data: Any) -> bool:
    if not isinstance(data, list):
        return False
    for item in data:
        ExtractedArticle.from_dict(item)
    return True


def fetch_and_extract(
    results: list[SearchResult],
    cache: StageCache,
    session=None,
    backend: Any = None,
    delay: float = 1.0,
    timeout: float = ARTICLE_TIMEOUT,
) -> tuple[list[ExtractedArticle], ExtractStats]:
    stats = ExtractStats()
    key = stage_key([(result.url, result.topic.value) for result in results])
    cached = cache.load(CANDIDATES_FILE, key, validate=_valid_candidates)
    if cached is not None:
        log.info('Using cached candidates from %s', cache.path(CANDIDATES_FILE))
        stats.cached = len(cached)
        return [ExtractedArticle.from_dict(item) for item in cached], stats

    fetch_dir = cache.stage_dir / 'fetch'
    extracted_dir = cache.stage_dir / 'extracted'
    ledger = ProgressLedger(cache.stage_dir / LEDGER_FILE)
    articles: list[ExtractedArticle] = []
    needs_delay = False

    for idx, result in enumerate(results, start=1):
        hash_value = url_hash(result.url)
        if hash_value in ledger:
            stats.resumed += 1
            resumed = _load_artifact(extracted_dir / f'{hash_value}.json', result)
            if resumed is not None:
                articles.append(resumed)
            continue

        if needs_delay and delay > 0:
            time.sleep(delay)
        log.info('Processing %d/%d: %s', idx, len(results), result.title[:50])
        stats.processed += 1
        status = 'skipped'
        cached_before = stats.cached
        try:
            article = extract_article(
                result, fetch_dir, extracted_dir, stats, session=session, backend=backend, timeout=timeout
            )
            if article is not None:
                articles.append(article)
                stats.extracted += 1
                status = 'extracted'
        except StageTimeout as exc:
            stats.timed_out += 1
            status = 'timeout'
            log.warning('Timed out: %s', exc)
        except Exception as exc:  # noqa: BLE001
            stats.errors += 1
            status = 'error'
            log.exception('Extraction failed for %s: %s', result.url, exc)
        ledger.mark(hash_value, status)
        # Cached artifacts did not touch the network.
        needs_delay = stats.cached == cached_before

    cache.store(CANDIDATES_FILE, key, [article.to_dict() for article in articles])
    ledger.complete()
    log.info('Extraction stats: %s', asdict(stats))
    return articles, stats
