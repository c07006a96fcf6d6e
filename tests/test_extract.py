##########################################################################################
#
# Script name: test_extract.py
#
# Description: Tests page fetching, text extraction, quality gates, and resumable batches.
#
##########################################################################################

import json
from pathlib import Path

from weekly_discovery.cache import ProgressLedger, StageCache
from weekly_discovery.config import Topic
from weekly_discovery.extract import (
    CANDIDATES_FILE,
    LEDGER_FILE,
    classify_paywall,
    extract_text,
    fetch_and_extract,
    fetch_html,
    quality_gate,
)
from weekly_discovery.models import SearchResult
from weekly_discovery.utils import Deadline, count_words, url_hash

PARAGRAPH = 'Retail executives are rethinking how stores use data to plan inventory and staffing. '
ARTICLE_TEXT = PARAGRAPH * 20

GOOD_HTML = f'''
<html>
  <head>
    <title>Retailers rethink store data planning</title>
    <meta name="author" content="Jane Doe">
    <meta property="article:published_time" content="2026-03-02T08:00:00Z">
    <script>var tracking = "ignore me";</script>
  </head>
  <body>
    <nav>Home | Retail | Technology</nav>
    <article><p>{ARTICLE_TEXT}</p></article>
    <footer>Read our privacy policy and terms of service.</footer>
  </body>
</html>
'''


class FakeResponse:
    def __init__(self, status_code: int, body: bytes, headers: dict | None = None, encoding: str = 'utf-8'):
        self.status_code = status_code
        self.headers = headers if headers is not None else {'content-type': 'text/html; charset=utf-8'}
        self.encoding = encoding
        self._body = body
        self.closed = False

    def iter_content(self, chunk_size: int = 1024):
        for start in range(0, len(self._body), chunk_size):
            yield self._body[start : start + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, pages: dict[str, tuple[int, str]]):
        self.pages = pages
        self.calls: list[str] = []

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.calls.append(url)
        status, body = self.pages.get(url, (404, ''))
        return FakeResponse(status, body.encode('utf-8'))


class FakeExtractBackend:
    def __init__(self, content: str):
        self.content = content
        self.calls: list[str] = []

    def extract(self, url: str, timeout: float | None = None) -> dict:
        self.calls.append(url)
        return {'content': self.content, 'title': 'Consultancy view on retail AI'}


def _result(url: str, snippet: str = 'Search snippet', topic: Topic = Topic.ECOMMERCE_RETAIL_TECH) -> SearchResult:
    domain = url.split('/')[2].replace('www.', '')
    return SearchResult(url=url, title='Search title for story', snippet=snippet, domain=domain, topic=topic)


def test_extract_text_prefers_article_container() -> None:
    page = extract_text(GOOD_HTML)

    assert page['text'].startswith('Retail executives')
    assert 'ignore me' not in page['text']
    assert 'privacy policy' not in page['text']
    assert page['title'] == 'Retailers rethink store data planning'
    assert page['author'] == 'Jane Doe'
    assert page['date'] == '2026-03-02T08:00:00Z'


def test_extract_text_falls_back_to_body() -> None:
    page = extract_text(f'<html><body><div><p>{ARTICLE_TEXT}</p></div></body></html>')

    assert count_words(page['text']) == count_words(ARTICLE_TEXT)
    assert page['title'] == ''


def test_quality_gate_rejects_bad_pages() -> None:
    assert quality_gate(ARTICLE_TEXT, count_words(ARTICLE_TEXT)) is None
    assert quality_gate('Too short to be an article.', 6) == 'too_short'
    cyrillic = 'Розничная торговля меняется быстро ' * 80
    assert quality_gate(cyrillic, count_words(cyrillic)) == 'non_english'
    denied = 'Access denied. ' + ARTICLE_TEXT
    assert quality_gate(denied, count_words(denied)) == 'boilerplate'
    footer = ARTICLE_TEXT * 3 + ' Read our privacy policy.'
    assert quality_gate(footer, count_words(footer)) is None


def test_classify_paywall() -> None:
    assert classify_paywall('wsj.com', ARTICLE_TEXT)[0] == 'likely_paywalled'
    status, reason = classify_paywall('example.com', ARTICLE_TEXT + ' Subscribe to continue reading.')
    assert status == 'likely_paywalled'
    assert 'subscribe to' in reason
    assert classify_paywall('example.com', ARTICLE_TEXT) == ('not_paywalled', None)


def test_fetch_html_caches_pages_and_enforces_size_cap(tmp_path: Path) -> None:
    url = 'https://news.example/story'
    session = FakeSession({url: (200, GOOD_HTML), 'https://big.example/page': (200, 'x' * 2_100_000)})

    html = fetch_html(url, tmp_path, Deadline(30), session=session)
    again = fetch_html(url, tmp_path, Deadline(30), session=session)

    assert html == again
    assert session.calls == [url]
    assert (tmp_path / f'{url_hash(url)}.html').exists()
    assert fetch_html('https://big.example/page', tmp_path, Deadline(30), session=session) is None


def test_fetch_html_decodes_utf8_page_without_declared_charset(tmp_path: Path) -> None:
    url = 'https://news.example/quotes'
    headline = 'Retailers’ “new” playbook for café chains'
    body = f'<html><body><h1>{headline}</h1></body></html>'

    class LatinDefaultSession:
        def get(self, url: str, **kwargs) -> FakeResponse:
            return FakeResponse(200, body.encode('utf-8'), headers={'content-type': 'text/html'}, encoding='ISO-8859-1')

    html = fetch_html(url, tmp_path, Deadline(30), session=LatinDefaultSession())

    assert headline in html
    assert 'â€' not in html


def test_fetch_and_extract_builds_candidates_and_clears_ledger(tmp_path: Path) -> None:
    good = 'https://news.example/story'
    missing = 'https://gone.example/story'
    session = FakeSession({good: (200, GOOD_HTML)})
    cache = StageCache(tmp_path, '2026-W10')

    articles, stats = fetch_and_extract([_result(good), _result(missing)], cache, session=session, delay=0)

    assert [article.url for article in articles] == [good]
    article = articles[0]
    assert article.title == 'Retailers rethink store data planning'
    assert article.snippet == 'Search snippet'
    assert article.author == 'Jane Doe'
    assert article.published_date == '2026-03-02T08:00:00+00:00'
    assert article.published_date_invalid is False
    assert article.paywall_status == 'not_paywalled'
    assert article.topic == Topic.ECOMMERCE_RETAIL_TECH
    assert article.hash == url_hash(good)
    assert article.word_count >= 200
    assert stats.extracted == 1
    assert stats.fetch_failed == 1
    assert not (tmp_path / LEDGER_FILE).exists()
    assert (tmp_path / 'extracted' / f'{url_hash(good)}.json').exists()

    session.calls.clear()
    cached, _ = fetch_and_extract([_result(good), _result(missing)], cache, session=session, delay=0)
    assert [article.url for article in cached] == [good]
    assert session.calls == []


def test_fetch_and_extract_resumes_from_ledger(tmp_path: Path) -> None:
    done = 'https://news.example/story'
    failed = 'https://gone.example/story'
    fresh = 'https://fresh.example/story'
    session = FakeSession({done: (200, GOOD_HTML), fresh: (200, GOOD_HTML)})
    cache = StageCache(tmp_path, '2026-W10')

    # Simulate a crash after the first two URLs were processed.
    fetch_and_extract([_result(done)], StageCache(tmp_path / 'first-run', '2026-W10'), session=session, delay=0)
    (tmp_path / 'extracted').mkdir()
    artifact = tmp_path / 'first-run' / 'extracted' / f'{url_hash(done)}.json'
    (tmp_path / 'extracted' / artifact.name).write_text(artifact.read_text(encoding='utf-8'), encoding='utf-8')
    ledger = ProgressLedger(tmp_path / LEDGER_FILE)
    ledger.mark(url_hash(done), 'extracted')
    ledger.mark(url_hash(failed), 'skipped')
    session.calls.clear()

    articles, stats = fetch_and_extract(
        [_result(done), _result(failed), _result(fresh)], cache, session=session, delay=0
    )

    assert [article.url for article in articles] == [done, fresh]
    assert session.calls == [fresh]
    assert stats.resumed == 2
    assert not (tmp_path / LEDGER_FILE).exists()


def test_fetch_and_extract_counts_timeouts(tmp_path: Path) -> None:
    url = 'https://slow.example/story'
    session = FakeSession({url: (200, GOOD_HTML)})

    articles, stats = fetch_and_extract(
        [_result(url)], StageCache(tmp_path, '2026-W10'), session=session, delay=0, timeout=0
    )

    assert articles == []
    assert stats.timed_out == 1


def test_cached_artifact_snippet_is_backfilled(tmp_path: Path) -> None:
    url = 'https://news.example/story'
    session = FakeSession({url: (200, GOOD_HTML)})
    fetch_and_extract([_result(url, snippet='')], StageCache(tmp_path / 'a', 'W'), session=session, delay=0)
    artifact_path = tmp_path / 'a' / 'extracted' / f'{url_hash(url)}.json'
    payload = json.loads(artifact_path.read_text(encoding='utf-8'))
    payload['snippet'] = ''
    artifact_path.write_text(json.dumps(payload), encoding='utf-8')
    (tmp_path / 'a' / CANDIDATES_FILE).unlink()

    articles, _ = fetch_and_extract(
        [_result(url, snippet='Fresh snippet')], StageCache(tmp_path / 'a', 'W'), session=session, delay=0
    )

    assert articles[0].snippet == 'Fresh snippet'
    assert json.loads(artifact_path.read_text(encoding='utf-8'))['snippet'] == 'Fresh snippet'


def test_consultancy_pages_use_backend_extraction(tmp_path: Path) -> None:
    url = 'https://www.mckinsey.com/industries/retail/our-insights/state-of-retail'
    session = FakeSession({})
    backend = FakeExtractBackend(ARTICLE_TEXT)

    articles, _ = fetch_and_extract(
        [_result(url)], StageCache(tmp_path, '2026-W10'), session=session, backend=backend, delay=0
    )

    assert backend.calls == [url]
    assert session.calls == []
    assert articles[0].title == 'Consultancy view on retail AI'
