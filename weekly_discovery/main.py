##########################################################################################
#
# Script name: main.py
#
# Description: CLI entrypoint for the weekly web discovery pipeline.
#
##########################################################################################

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from datetime import date

from dotenv import load_dotenv

from .cache import StageCache
from .config import TOPICS, WEEK_TIMEZONE, Settings, load_settings, require_env
from .errors import ConfigurationError
from .extract import fetch_and_extract
from .llm import build_openai_client
from .merge import MergeResult, discovery_articles_path, merge_discovery_articles
from .models import SelectionReport
from .queries import build_search_queries
from .search import TavilySearchBackend, search
from .selection import select_top_articles
from .utils import current_week_label, parse_week_label


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(os.path.basename(sys.argv[0]))
log.setLevel(logging.DEBUG)
log.propagate = False
formatter = logging.Formatter(
    '%(asctime)-15s [%(funcName)25s:%(lineno)-5s] %(levelname)-8s %(message)s'
)

# File handler for logging
fh = logging.FileHandler('weekly_discovery.log', mode='w')
fh.setLevel(logging.DEBUG)
fh.setFormatter(formatter)
if not any(isinstance(handler, logging.FileHandler) for handler in log.handlers):
    log.addHandler(fh)

root_log = logging.getLogger()
root_log.setLevel(logging.DEBUG)
if not any(isinstance(handler, logging.FileHandler) for handler in root_log.handlers):
    root_log.addHandler(fh)

# Request-level chatter from the HTTP clients is not useful in the run log.
for noisy in ('urllib3', 'httpx', 'openai'):
    logging.getLogger(noisy).setLevel(logging.WARNING)


@dataclass
class DiscoverySummary:
    week_label: str
    query_count: int
    search_results: int
    extracted: int
    selected: int
    report: SelectionReport
    merge: MergeResult


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _resolve_week(explicit_week: str | None) -> str:
    week_label = explicit_week or current_week_label(WEEK_TIMEZONE)
    try:
        parse_week_label(week_label)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    return week_label


def run_discovery(
    week_label: str,
    settings: Settings,
    regen_delta: bool = False,
    no_delta: bool = False,
) -> DiscoverySummary:
    backend = TavilySearchBackend(require_env('TAVILY_API_KEY'))
    client = build_openai_client()
    cache = StageCache(settings.discovery_dir(week_label), week_label)

    log.info('[Step 1] Generating search queries...')
    queries = build_search_queries(
        week_label, cache, settings, client=client, regen_delta=regen_delta, no_delta=no_delta
    )
    query_count = sum(len(queries[topic]) for topic in TOPICS)
    log.info('Generated %d queries across %d categories', query_count, len(TOPICS))

    log.info('[Step 2] Searching the web...')
    results, _ = search(queries, settings.max_candidates, cache, backend=backend, delay=settings.search_delay)
    log.info('Found %d candidate URLs', len(results))

    log.info('[Step 3] Fetching and extracting articles...')
    extracted, _ = fetch_and_extract(results, cache, session=backend.session, backend=backend, delay=settings.fetch_delay)
    log.info('Extracted %d articles', len(extracted))

    log.info('[Step 4] Selecting top articles...')
    selected, _, report = select_top_articles(extracted, cache, settings, client=client)
    log.info('Selected %d articles', len(selected))

    log.info('[Step 5] Saving discovery articles...')
    merged = merge_discovery_articles(selected, week_label, settings.data_dir)
    log.info(
        'Saved %d new discovery articles, %d updated (stored in %s)',
        merged.added,
        merged.updated,
        discovery_articles_path(settings.data_dir, week_label),
    )

    return DiscoverySummary(
        week_label=week_label,
        query_count=query_count,
        search_results=len(results),
        extracted=len(extracted),
        selected=len(selected),
        report=report,
        merge=merged,
    )


def print_summary(summary: DiscoverySummary) -> None:
    report = summary.report
    print(f'Discovery complete for {summary.week_label}')
    print(f'  Queries:          {summary.query_count}')
    print(f'  Search results:   {summary.search_results}')
    print(f'  Extracted:        {summary.extracted}')
    print(f'  Selected:         {summary.selected}')
    print(f'  Ranking source:   {report.ranking_source}')
    if report.fallback_used.domainCapRelaxed:
        print('  Domain cap relaxed to 3 for at least one topic')
    if report.ranking_error:
        print(f'  Ranking errors:   {report.ranking_error}')
    print(f'  Merge:            {summary.merge.added} added, {summary.merge.updated} updated')


# ****************************************************************************************
# Handle the arguments
# ****************************************************************************************


def handle_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Discover, rank, and store the weekly article selection.')
    parser.add_argument('--week', default=None, help='ISO week label YYYY-W## (default: current week).')
    parser.add_argument('--config', default='config/discovery.yaml', help='Path to settings YAML.')
    parser.add_argument('--data-dir', default=None, help='Root data directory.')
    parser.add_argument('--base-queries', default=None, help='Path to the base query JSON file.')
    parser.add_argument('--max-candidates', type=int, default=None, help='Cap on search results kept.')
    parser.add_argument('--select-top', type=int, default=None, help='Articles selected per topic.')
    parser.add_argument('--regen-delta', action='store_true', help='Regenerate delta queries.')
    parser.add_argument('--no-delta', action='store_true', help='Skip LLM delta queries.')
    parser.add_argument('--no-consultancies', action='store_true', help='Skip consultancy site queries.')
    parser.add_argument('--no-platforms', action='store_true', help='Skip platform site queries.')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output to stdout.')
    parser.add_argument('-q', '--quiet', action='store_true', help='Minimal stdout.')
    args = parser.parse_args()

    # Configure stdout logging based on arguments
    ch = logging.StreamHandler(sys.stdout)
    if args.verbose:
        ch.setLevel(logging.DEBUG)
    elif args.quiet:
        ch.setLevel(logging.ERROR)
    else:
        ch.setLevel(logging.INFO)
    ch.setFormatter(formatter)
    log.addHandler(ch)
    root_log.addHandler(ch)

    log.debug('Checking script requirements...')
    if not args.verbose and not args.quiet:
        log.debug('No output level specified. Defaulting to INFO.')

    log.info('++++++++++++++++++++++++++++++++++++++++++++++')
    log.info('+  %s', os.path.basename(sys.argv[0]))
    log.info('+  Python Version: %s', sys.version.split()[0])
    log.info('+  Today is: %s', date.today())
    log.info('++++++++++++++++++++++++++++++++++++++++++++++')
    return args


# ****************************************************************************************
# Main
# ****************************************************************************************


def main() -> None:
    load_dotenv('.env.local')
    load_dotenv()
    args = handle_args()
    try:
        week_label = _resolve_week(args.week)
        settings = load_settings(
            args.config,
            data_dir=args.data_dir,
            base_queries_path=args.base_queries,
            max_candidates=args.max_candidates,
            select_top=args.select_top,
            include_consultancies=False if args.no_consultancies else None,
            include_platforms=False if args.no_platforms else None,
        )
        log.info('Week: %s, max candidates: %d, select top: %d', week_label, settings.max_candidates, settings.select_top)
        summary = run_discovery(week_label, settings, regen_delta=args.regen_delta, no_delta=args.no_delta)
    except ConfigurationError as exc:
        log.error('Configuration error: %s', exc)
        sys.exit(1)
    print_summary(summary)


if __name__ == '__main__':
    main()
