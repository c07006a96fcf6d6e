##########################################################################################
#
# Script name: config.py
#
# Description: Topic taxonomy, policy word lists, and runtime settings for weekly discovery.
#
##########################################################################################

import os
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Callable, TypeVar

import yaml

from .errors import ConfigurationError


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

T = TypeVar('T')


class Topic(str, Enum):
    AI_AND_STRATEGY = 'AI_and_Strategy'
    ECOMMERCE_RETAIL_TECH = 'Ecommerce_Retail_Tech'
    LUXURY_AND_CONSUMER = 'Luxury_and_Consumer'
    JEWELLERY_INDUSTRY = 'Jewellery_Industry'

    @property
    def label(self) -> str:
        return TOPIC_LABELS[self]

    @property
    def definition(self) -> str:
        return TOPIC_DEFINITIONS[self]

    @classmethod
    def from_label(cls, value: str) -> 'Topic | None':
        if not value:
            return None
        for topic in cls:
            if value in (topic.value, topic.label):
                return topic
        return LEGACY_LABELS.get(value)


TOPICS = list(Topic)

TOPIC_LABELS = {
    Topic.AI_AND_STRATEGY: 'AI & Strategy',
    Topic.ECOMMERCE_RETAIL_TECH: 'Ecommerce & Retail Tech',
    Topic.LUXURY_AND_CONSUMER: 'Luxury & Consumer',
    Topic.JEWELLERY_INDUSTRY: 'Jewellery Industry',
}

# Older cache files were written with these display names.
LEGACY_LABELS = {
    'Artificial Intelligence News': Topic.AI_AND_STRATEGY,
    'Fashion & Luxury': Topic.LUXURY_AND_CONSUMER,
}

TOPIC_DEFINITIONS = {
    Topic.AI_AND_STRATEGY: (
        'AI strategy, machine learning applications, AI tools, LLMs, generative AI, '
        'AI automation, AI personalization, AI-driven business strategy'
    ),
    Topic.ECOMMERCE_RETAIL_TECH: (
        'E-commerce platforms, retail technology, online shopping, digital commerce, '
        'retail innovation, marketplace technology, retail operations'
    ),
    Topic.LUXURY_AND_CONSUMER: (
        'Luxury brands, consumer goods, high-end retail, luxury market trends, '
        'premium products, luxury consumer behavior'
    ),
    Topic.JEWELLERY_INDUSTRY: (
        'Jewelry industry, diamonds, gemstones, luxury jewelry brands, jewelry retail, '
        'jewelry market trends, fine jewelry'
    ),
}

# Used only when a candidate reaches selection without the topic it was searched under.
TOPIC_KEYWORDS = {
    Topic.JEWELLERY_INDUSTRY: ['jewel', 'diamond', 'gemstone', 'cartier', 'tiffany', 'pandora'],
    Topic.AI_AND_STRATEGY: ['ai ', 'artificial intelligence', 'machine learning', 'llm', 'gpt', 'generative'],
    Topic.LUXURY_AND_CONSUMER: ['luxury', 'premium', 'high-end', 'fashion house'],
}


def per_topic(factory: Callable[[], T]) -> dict[Topic, T]:
    return {topic: factory() for topic in TOPICS}


BASE_QUERIES_PER_TOPIC = 12
DELTA_QUERIES_PER_TOPIC = 3

CONSULTANCY_DOMAINS = ['mckinsey.com', 'bain.com', 'bcg.com']

PLATFORM_DOMAINS = [
    'blog.google',
    'googleblog.com',
    'ai.googleblog.com',
    'amazon.com',
    'corporate.walmart.com',
    'shopify.com',
    'paypal.com',
    'visa.com',
    'alibabagroup.com',
    'ebayinc.com',
    'flipkart.com',
    'instacart.com',
    'asosplc.com',
    'asos.com',
    'jdsportsfashionplc.com',
]

HARD_CONTROVERSY_MARKERS = {
    'war': [
        'war',
        'armed conflict',
        'violence',
        'military action',
        'combat',
        'battle',
        'invasion',
        'attack',
        'bombing',
        'drone strike',
    ],
    'culture_war': [
        'culture war',
        'identity politics',
        'woke',
        'cancel culture',
        'political correctness',
        'gender ideology',
        'critical race theory',
    ],
    'election': [
        'election',
        'campaign',
        'polling',
        'voter',
        'candidate',
        'primary',
        'debate',
        'ballot',
        'electoral',
    ],
}

POLICY_ALLOWLIST = [
    'tariff',
    'tariffs',
    'trade policy',
    'trade war',
    'trade agreement',
    'regulation',
    'regulatory',
    'compliance',
    'ai act',
    'gdpr',
    'privacy law',
    'data protection',
    'platform regulation',
    'antitrust',
    'competition law',
    'consumer protection',
    'retail regulation',
    'ecommerce regulation',
]

SPONSORED_INDICATORS = [
    'sponsored',
    'press release',
    'pr newswire',
    'business wire',
    'sponsored content',
    'advertisement',
    'promoted',
    'paid post',
]

JEWELLERY_COMPANY_TIERS = {
    'tier1_global_mass_premium': [
        'swarovski',
        'tiffany',
        'tiffany & co',
        'pandora',
        'signet',
        'kay jewelers',
        'zales',
        'jared',
        'chow tai fook',
        "claire's",
        'lovisa',
        'tous',
        'thomas sabo',
        'mejuri',
    ],
    'tier1_luxury_houses': [
        'cartier',
        'van cleef',
        'van cleef & arpels',
        'bvlgari',
        'bulgari',
        'harry winston',
        'graff',
    ],
    'tier1_groups': ['richemont', 'lvmh', 'kering'],
}

COMPANY_NAMES = [name for names in JEWELLERY_COMPANY_TIERS.values() for name in names]

PAYWALLED_DOMAINS = {
    'wsj.com',
    'ft.com',
    'bloomberg.com',
    'nytimes.com',
    'economist.com',
    'businessoffashion.com',
    'wwd.com',
    'theinformation.com',
    'barrons.com',
    'hbr.org',
}

PAYWALL_MARKERS = ['subscribe to', 'sign up to read', 'premium content', 'subscribers only']

BOILERPLATE_PATTERNS = [
    r'^404',
    r'not found',
    r'access denied',
    r'login required',
    r'cookie policy',
    r'privacy policy',
    r'terms of service',
]

CONTENT_SELECTORS = [
    'article',
    '[role="main"]',
    'main',
    '.article-body',
    '.post-content',
    '.entry-content',
    '.content',
    'body',
]

MIN_CONTENT_CHARS = 500
MIN_WORD_COUNT = 200
MIN_ASCII_RATIO = 0.8
MAX_EXTRACTED_CHARS = 5000
MAX_HTML_BYTES = 2_000_000
SNIPPET_CHARS = 300

FETCH_CONNECT_TIMEOUT = 5.0
FETCH_READ_TIMEOUT = 15.0
EXTRACTION_BUDGET = 5.0
ARTICLE_TIMEOUT = FETCH_CONNECT_TIMEOUT + FETCH_READ_TIMEOUT + EXTRACTION_BUDGET + 5.0

SEARCH_TIMEOUT = (5.0, 30.0)
SEARCH_MAX_RESULTS_PER_QUERY = 20
LLM_TIMEOUT = 90.0

TOP_K = 40
MAX_LLM_CANDIDATES = 100
DOMAIN_CAP = 2
RELAXED_DOMAIN_CAP = 3
NEAR_DUPLICATE_THRESHOLD = 0.8
MERGE_SIMILARITY_THRESHOLD = 0.8

COMPANY_TITLE_BOOST = int(os.getenv('COMPANY_TITLE_BOOST') or 6)
COMPANY_TEXT_BOOST = int(os.getenv('COMPANY_TEXT_BOOST') or 4)
COMPANY_SNIPPET_BOOST = int(os.getenv('COMPANY_SNIPPET_BOOST') or 2)
MAX_COMPANY_BOOST = int(os.getenv('MAX_COMPANY_BOOST') or 10)

WEEK_TIMEZONE = 'Europe/Copenhagen'


@dataclass(frozen=True)
class Settings:
    data_dir: str = 'data'
    base_queries_path: str = 'config/queries.base.json'
    max_candidates: int = 120
    select_top: int = 20
    search_delay: float = 0.5
    fetch_delay: float = 1.0
    selection_model: str = 'gpt-4o'
    query_delta_model: str = 'gpt-4o'
    max_paywalled_per_category: int = 1
    include_consultancies: bool = True
    include_platforms: bool = True

    @property
    def weeks_dir(self) -> Path:
        return Path(self.data_dir) / 'weeks'

    def discovery_dir(self, week_label: str) -> Path:
        return self.weeks_dir / week_label / 'discovery'


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _env_overrides() -> dict:
    overrides: dict = {}
    if os.getenv('SELECTION_MODEL'):
        overrides['selection_model'] = os.getenv('SELECTION_MODEL')
    if os.getenv('QUERY_DELTA_MODEL'):
        overrides['query_delta_model'] = os.getenv('QUERY_DELTA_MODEL')
    if os.getenv('MAX_PAYWALLED_PER_CATEGORY'):
        try:
            overrides['max_paywalled_per_category'] = int(os.getenv('MAX_PAYWALLED_PER_CATEGORY'))
        except ValueError as exc:
            raise ConfigurationError('MAX_PAYWALLED_PER_CATEGORY must be an integer') from exc
    if os.getenv('DISCOVERY_DATA_DIR'):
        overrides['data_dir'] = os.getenv('DISCOVERY_DATA_DIR')
    return overrides


def load_settings(path: str | None = None, **cli_overrides) -> Settings:
    '''
    Build settings from defaults, an optional YAML file, environment variables,
    and finally explicit overrides (CLI flags). Later sources win.
    '''
    values: dict = {}
    if path and os.path.exists(path):
        with open(path, 'r', encoding='utf-8') as handle:
            payload = yaml.safe_load(handle) or {}
        if not isinstance(payload, dict):
            raise ConfigurationError(f'Settings file {path} must contain a mapping')
        known = {field.name for field in fields(Settings)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ConfigurationError(f'Unknown settings in {path}: {", ".join(unknown)}')
        values.update(payload)
    values.update(_env_overrides())
    values.update({key: value for key, value in cli_overrides.items() if value is not None})
    settings = replace(Settings(), **values)
    if settings.select_top < 1:
        raise ConfigurationError('select_top must be at least 1')
    if settings.max_candidates < 1:
        raise ConfigurationError('max_candidates must be at least 1')
    return settings


def require_env(name: str) -> str:
    value = (os.getenv(name) or '').strip()
    if not value:
        raise ConfigurationError(f'{name} not found in environment variables')
    return value
