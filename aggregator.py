"""
Headline Aggregator core.

Crawls a fixed set of news homepages, follows their article links, extracts
page metadata and serves the merged result as one cached batch.

Features:
- Homepage link discovery restricted to each site's own domain
- Metadata extraction with ordered fallbacks (Open Graph → HTML → content)
- Keyword-based interest labelling
- Parallel fetching with concurrent.futures at site and link level
- Per-link and per-site failure isolation
- TTL cache with a single in-flight rebuild
- Structured logging with metrics
"""
import os
import json
import logging
import re
import sys
import hashlib
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Optional, Dict, List, Iterable, Union
from urllib.parse import urljoin, urlparse
from concurrent.futures import ThreadPoolExecutor
from collections import defaultdict
from functools import lru_cache

import requests
from requests.exceptions import Timeout, RequestException, SSLError, ConnectionError as ReqConnectionError
from bs4 import BeautifulSoup

# =============================================================================
# CONFIGURATION
# =============================================================================

VERSION = '1.0.0'

LOG_LEVEL = os.environ.get('NEWSAGG_LOG_LEVEL', 'INFO')
CACHE_TTL_SECONDS = int(os.environ.get('NEWSAGG_CACHE_TTL', '300'))
MAX_RESULTS = int(os.environ.get('NEWSAGG_MAX_RESULTS', '80'))
LINKS_PER_SITE = int(os.environ.get('NEWSAGG_LINKS_PER_SITE', '8'))
FETCH_TIMEOUT_SECONDS = float(os.environ.get('NEWSAGG_FETCH_TIMEOUT', '15'))

# Resolve sites path relative to module location
SITES_PATH = os.environ.get(
    'NEWSAGG_SITES_PATH',
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'sites.json')
)

USER_AGENT = 'news-aggregator/1.0 (+https://example.com)'

# =============================================================================
# LOGGING SETUP
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """JSON-structured logging formatter for observability."""

    EXTRA_FIELDS = ('site', 'url', 'duration_ms', 'article_count', 'error_type')

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


# Configure logging to STDERR with structured format
handler = logging.StreamHandler(sys.stderr)
handler.setFormatter(StructuredFormatter())
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    handlers=[handler]
)
logger = logging.getLogger('newsagg')

# =============================================================================
# METRICS COLLECTION
# =============================================================================

class Metrics:
    """Thread-safe metrics collector for observability."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._start_time = datetime.now(timezone.utc)

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def record_duration(self, name: str, duration_ms: float) -> None:
        with self._lock:
            self._histograms[name].append(duration_ms)
            # Keep only last 1000 samples
            if len(self._histograms[name]) > 1000:
                self._histograms[name] = self._histograms[name][-1000:]

    def get_stats(self) -> Dict:
        with self._lock:
            stats = {
                'uptime_seconds': (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                'counters': dict(self._counters),
                'histograms': {}
            }
            for name, values in self._histograms.items():
                if values:
                    sorted_vals = sorted(values)
                    stats['histograms'][name] = {
                        'count': len(values),
                        'min': sorted_vals[0],
                        'max': sorted_vals[-1],
                        'avg': sum(values) / len(values),
                        'p50': sorted_vals[len(sorted_vals) // 2],
                        'p95': sorted_vals[int(len(sorted_vals) * 0.95)] if len(sorted_vals) > 20 else sorted_vals[-1],
                    }
            return stats


metrics = Metrics()

# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class Site:
    name: str
    base: str


@dataclass
class ArticleMeta:
    title: Optional[str]
    summary: str = ''
    image: Optional[str] = None
    pub_date: Optional[str] = None
    link: str = ''


@dataclass
class ArticleRecord:
    id: str
    title: str
    link: str
    pub_date: str
    summary: str
    image: Optional[str]
    source_label: str
    interest: str
    pub_ts: Optional[int] = None

    def to_dict(self) -> Dict:
        """Serialize with the JSON field names the feed clients expect."""
        return {
            'id': self.id,
            'title': self.title,
            'link': self.link,
            'pubDate': self.pub_date,
            'summary': self.summary,
            'image': self.image,
            'sourceLabel': self.source_label,
            'interest': self.interest,
            'pubTs': self.pub_ts,
        }


@dataclass
class AggregationBatch:
    articles: List[ArticleRecord] = field(default_factory=list)
    created_at: float = 0.0
    ttl_seconds: int = CACHE_TTL_SECONDS

    def is_valid(self, now: float) -> bool:
        return now - self.created_at < self.ttl_seconds

    def to_list(self) -> List[Dict]:
        return [article.to_dict() for article in self.articles]

# =============================================================================
# SITE CONFIGURATION LOADER
# =============================================================================

DEFAULT_SITES = [
    Site(name='tbsnews.net', base='https://www.tbsnews.net'),
    Site(name='thedailystar.net', base='https://www.thedailystar.net'),
    Site(name='aljazeera.com', base='https://www.aljazeera.com'),
    Site(name='adweek.com', base='https://www.adweek.com'),
]


def load_sites(path: str = SITES_PATH) -> List[Site]:
    """Load the ordered site list from JSON, falling back to the built-in list."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning("Sites file not found: %s, using defaults", path)
        return list(DEFAULT_SITES)
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in sites file %s: %s", path, str(e))
        return list(DEFAULT_SITES)
    except PermissionError:
        logger.error("Permission denied reading sites file: %s", path)
        return list(DEFAULT_SITES)

    if not isinstance(data, list):
        logger.error("Sites file must be a JSON array")
        return list(DEFAULT_SITES)

    sites = []
    for entry in data:
        if not isinstance(entry, dict) or not entry.get('name') or not entry.get('base'):
            logger.warning("Skipping invalid site entry: %r", entry)
            continue
        sites.append(Site(name=str(entry['name']), base=str(entry['base'])))

    if not sites:
        logger.error("No valid sites in %s, using defaults", path)
        return list(DEFAULT_SITES)

    logger.info("Loaded %d sites from %s", len(sites), path)
    return sites


SITES = load_sites()

# =============================================================================
# DATE PARSING
# =============================================================================

DATE_FORMATS = [
    '%Y-%m-%dT%H:%M:%S%z',
    '%Y-%m-%dT%H:%M:%S.%f%z',
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%dT%H:%M%z',
    '%Y-%m-%d %H:%M:%S%z',
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d',
    '%d %b %Y %H:%M:%S %z',
    '%d %b %Y %H:%M:%S',
    '%d %b %Y',
    '%d %B %Y',
    '%B %d, %Y',
    '%b %d, %Y',
    '%B %d, %Y %I:%M %p',
    '%b %d, %Y %I:%M %p',
    '%a, %d %b %Y %H:%M:%S %z',  # RFC 2822
]


@lru_cache(maxsize=1000)
def parse_date(date_str: str) -> Optional[datetime]:
    """Parse a publish timestamp in any of the common formats news sites use."""
    if not date_str:
        return None

    date_str = re.sub(r'\s+', ' ', date_str).strip()
    date_str = date_str.replace('GMT', '+0000').replace('UTC', '+0000')

    for fmt in DATE_FORMATS:
        try:
            dt = datetime.strptime(date_str, fmt)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt

    # Try fromisoformat as fallback
    try:
        dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def compute_pub_ts(pub_date: Optional[str], now_ms: int) -> int:
    """Epoch milliseconds for pub_date, or now_ms when it can't be parsed."""
    parsed = parse_date(pub_date) if pub_date else None
    if parsed is None:
        return now_ms
    return int(parsed.timestamp() * 1000)

# =============================================================================
# HTTP FETCHING
# =============================================================================

# Session with connection pooling
_session = None
_session_lock = threading.Lock()


def get_session() -> requests.Session:
    """Get or create a requests session with connection pooling."""
    global _session

    with _session_lock:
        if _session is None:
            _session = requests.Session()
            _session.headers.update({
                'User-Agent': USER_AGENT,
                'Accept': 'text/html,application/xhtml+xml,*/*;q=0.8',
                'Accept-Language': 'en-US,en;q=0.9',
            })
            adapter = requests.adapters.HTTPAdapter(
                pool_connections=10,
                pool_maxsize=40,
                max_retries=0
            )
            _session.mount('http://', adapter)
            _session.mount('https://', adapter)
        return _session


def fetch_html(url: str, timeout: float = FETCH_TIMEOUT_SECONDS) -> Optional[bytes]:
    """
    Fetch a page body.

    Any transport error, timeout or non-success status is logged and turned
    into None; callers treat absence as the only failure signal.
    """
    start_time = time.time()
    error_type = None

    try:
        response = get_session().get(url, timeout=timeout, allow_redirects=True)
        response.raise_for_status()

        duration_ms = (time.time() - start_time) * 1000
        metrics.record_duration('fetch_duration_ms', duration_ms)
        metrics.increment('fetch_success')
        logger.debug("Fetched %s in %.1fms", url, duration_ms,
                     extra={'url': url, 'duration_ms': duration_ms})
        return response.content

    except Timeout:
        error_type = 'timeout'
        logger.warning("fetch_html failed: %s timed out after %.0fs", url, timeout,
                       extra={'url': url, 'error_type': error_type})
        metrics.increment('fetch_timeout')

    except SSLError as e:
        error_type = 'ssl_error'
        logger.warning("fetch_html failed: %s SSL error: %s", url, str(e),
                       extra={'url': url, 'error_type': error_type})
        metrics.increment('fetch_ssl_error')

    except ReqConnectionError as e:
        error_type = 'connection_error'
        logger.warning("fetch_html failed: %s connection error: %s", url, str(e),
                       extra={'url': url, 'error_type': error_type})
        metrics.increment('fetch_connection_error')

    except RequestException as e:
        error_type = 'request_error'
        logger.warning("fetch_html failed: %s %s", url, str(e),
                       extra={'url': url, 'error_type': error_type})
        metrics.increment('fetch_error')

    metrics.record_duration('fetch_failed_duration_ms', (time.time() - start_time) * 1000)
    metrics.increment('fetch_failed')
    return None

# =============================================================================
# URL NORMALIZATION
# =============================================================================

def normalize_url(href: Optional[str], base_url: str) -> Optional[str]:
    """Resolve an anchor reference against base_url into an absolute URL."""
    if not href:
        return None

    href = href.strip()
    if not href:
        return None

    try:
        if href.startswith('//'):
            href = 'https:' + href
        if href.startswith('http'):
            return href
        return urljoin(base_url, href)
    except ValueError:
        return None

# =============================================================================
# HTML PARSING HELPERS
# =============================================================================

def make_soup(html: Union[str, bytes]) -> BeautifulSoup:
    try:
        # Use lxml for speed if available, otherwise fallback
        return BeautifulSoup(html, 'lxml')
    except Exception:
        return BeautifulSoup(html, 'html.parser')


def clean_text(value: Optional[str]) -> str:
    """Collapse whitespace runs and trim."""
    if not value:
        return ''
    return re.sub(r'\s+', ' ', str(value)).strip()

# =============================================================================
# LINK DISCOVERY
# =============================================================================

EXCLUDED_HREF_MARKERS = ('mailto:', 'javascript:', '#')

ASSET_PATTERN = re.compile(r'\.(jpg|jpeg|png|gif|svg|pdf|zip|mp4)(\?.*)?$', re.I)


def discover_links(html: Union[str, bytes], base_url: str, domain: str, limit: int = LINKS_PER_SITE) -> List[str]:
    """
    Collect candidate article links from a homepage.

    Keeps document order, drops off-domain, non-navigable and asset links,
    removes exact duplicates and returns at most ``limit`` URLs.
    """
    soup = make_soup(html)
    seen = set()
    links = []

    for anchor in soup.find_all('a', href=True):
        href = normalize_url(str(anchor.get('href')), base_url)
        if not href:
            continue
        if any(marker in href for marker in EXCLUDED_HREF_MARKERS):
            continue

        try:
            hostname = urlparse(href).hostname
        except ValueError:
            continue
        if not hostname or domain not in hostname:
            continue

        if ASSET_PATTERN.search(href):
            continue

        if href not in seen:
            seen.add(href)
            links.append(href)

    return links[:limit]


def discover_links_for_site(base_url: str, domain: str, limit: int = LINKS_PER_SITE) -> List[str]:
    html = fetch_html(base_url)
    if not html:
        return []
    return discover_links(html, base_url, domain, limit)

# =============================================================================
# ARTICLE METADATA EXTRACTION
# =============================================================================

Extractor = Callable[[BeautifulSoup], Optional[str]]


def meta_content(attr: str, value: str) -> Extractor:
    """Read the content of <meta {attr}="{value}">."""
    def extract(soup: BeautifulSoup) -> Optional[str]:
        tag = soup.find('meta', attrs={attr: value})
        return tag.get('content') if tag else None
    return extract


def first_text(name: str) -> Extractor:
    """Read the visible text of the first <name> element."""
    def extract(soup: BeautifulSoup) -> Optional[str]:
        tag = soup.find(name)
        return tag.get_text() if tag else None
    return extract


def time_datetime(soup: BeautifulSoup) -> Optional[str]:
    tag = soup.find('time')
    return tag.get('datetime') if tag else None


def inline_image(soup: BeautifulSoup) -> Optional[str]:
    """First <img> that doesn't look like a sprite or logo."""
    for img in soup.find_all('img'):
        src = img.get('src') or img.get('data-src')
        if src and 'sprite' not in src and 'logo' not in src:
            return src
    return None


TITLE_FALLBACKS: List[Extractor] = [
    meta_content('property', 'og:title'),
    first_text('title'),
    first_text('h1'),
]

SUMMARY_FALLBACKS: List[Extractor] = [
    meta_content('property', 'og:description'),
    meta_content('name', 'description'),
    first_text('p'),
]

PUB_DATE_FALLBACKS: List[Extractor] = [
    meta_content('property', 'article:published_time'),
    time_datetime,
    first_text('time'),
]

IMAGE_FALLBACKS: List[Extractor] = [
    meta_content('property', 'og:image'),
    inline_image,
]


def first_present(soup: BeautifulSoup, fallbacks: Iterable[Extractor]) -> Optional[str]:
    """Run each extractor in order and return the first non-empty value."""
    for extract in fallbacks:
        value = clean_text(extract(soup))
        if value:
            return value
    return None


def parse_article_meta(html: Union[str, bytes], url: str) -> ArticleMeta:
    """Extract title, summary, image and publish time from an article page."""
    soup = make_soup(html)

    image = first_present(soup, IMAGE_FALLBACKS)

    return ArticleMeta(
        title=first_present(soup, TITLE_FALLBACKS),
        summary=first_present(soup, SUMMARY_FALLBACKS) or '',
        image=normalize_url(image, url) if image else None,
        pub_date=first_present(soup, PUB_DATE_FALLBACKS),
        link=url,
    )


def extract_article_meta(url: str) -> Optional[ArticleMeta]:
    html = fetch_html(url)
    if not html:
        return None
    return parse_article_meta(html, url)

# =============================================================================
# INTEREST CLASSIFICATION
# =============================================================================

# Checked in order; the first matching pattern decides the label.
INTEREST_RULES = [
    (re.compile(r'\bbangladesh\b|\bdhaka\b|\brajshahi\b'), 'Bangladesh'),
    (re.compile(r'\belection\b|\bminister\b|\bparliament\b|\bpolitic\b'), 'Politics'),
    (re.compile(r'\beconomy\b|\binflation\b|\bgdp\b|\bexport\b|\bimport\b|\bbank\b|remittance|tariff'), 'Economy'),
    (re.compile(r'\bbrand\b|\badvertis'), 'Business/Branding'),
    (re.compile(r'\bsport|asia cup|cricket|football|match'), 'Sports'),
    (re.compile(r'\btech|software|ai|app\b'), 'Technology'),
]


def detect_interest(text: Optional[str], source: str) -> str:
    """Map article text to a coarse topic label."""
    t = (text or '').lower()
    for pattern, label in INTEREST_RULES:
        if pattern.search(t):
            return label
    if 'aljazeera' in source:
        return 'International'
    return 'General'

# =============================================================================
# SITE AGGREGATION
# =============================================================================

def make_article_id(site_name: str, link: str) -> str:
    return f"{site_name}-{hashlib.md5(link.encode()).hexdigest()[:12]}"


def build_record(site: Site, link: str) -> Optional[ArticleRecord]:
    """Fetch one article link and turn it into a record, or None without a title."""
    meta = extract_article_meta(link)
    if not meta or not meta.title:
        return None

    summary = meta.summary or ''
    return ArticleRecord(
        id=make_article_id(site.name, link),
        title=meta.title,
        link=link,
        pub_date=meta.pub_date or datetime.now(timezone.utc).isoformat(),
        summary=summary,
        image=meta.image or None,
        source_label=site.name,
        interest=detect_interest(f"{meta.title} {summary}", site.name),
    )


def aggregate_site(site: Site, limit: int = LINKS_PER_SITE) -> List[ArticleRecord]:
    """
    Discover and extract articles for one site.

    Never raises: a failing link is skipped, a failing site yields [].
    """
    start_time = time.time()

    try:
        links = discover_links_for_site(site.base, site.name, limit)
        if not links:
            logger.info("No links discovered for %s", site.name, extra={'site': site.name})
            return []

        items = []
        with ThreadPoolExecutor(max_workers=len(links)) as executor:
            futures = [(executor.submit(build_record, site, link), link) for link in links]

            for future, link in futures:
                try:
                    record = future.result()
                except Exception as e:
                    logger.warning("Article extraction failed for %s: %s", link, str(e),
                                   extra={'site': site.name, 'url': link})
                    metrics.increment('article_failed')
                    continue
                if record:
                    items.append(record)

    except Exception as e:
        logger.warning("aggregate_site failed for %s: %s", site.name, str(e),
                       extra={'site': site.name, 'error_type': type(e).__name__})
        metrics.increment('site_failed')
        return []

    duration_ms = (time.time() - start_time) * 1000
    metrics.record_duration('site_duration_ms', duration_ms)
    metrics.increment('articles_extracted', len(items))
    logger.info("Aggregated %d/%d articles from %s in %.1fms",
                len(items), len(links), site.name, duration_ms,
                extra={'site': site.name, 'article_count': len(items), 'duration_ms': duration_ms})
    return items

# =============================================================================
# MERGING
# =============================================================================

def merge_records(records: Iterable[ArticleRecord], now_ms: int,
                  cap: int = MAX_RESULTS) -> List[ArticleRecord]:
    """Stamp pubTs on each record, sort newest first and keep the top ``cap``."""
    stamped = [
        replace(record, pub_ts=compute_pub_ts(record.pub_date, now_ms))
        for record in records
    ]
    stamped.sort(key=lambda r: r.pub_ts, reverse=True)
    return stamped[:cap]


def build_feed(sites: Optional[List[Site]] = None, now: Optional[float] = None,
               ttl_seconds: int = CACHE_TTL_SECONDS, cap: int = MAX_RESULTS) -> AggregationBatch:
    """Aggregate every site in parallel and merge the results into one batch."""
    if sites is None:
        sites = SITES

    start_time = time.time()
    collected: List[ArticleRecord] = []

    if sites:
        with ThreadPoolExecutor(max_workers=len(sites)) as executor:
            futures = [(executor.submit(aggregate_site, site), site) for site in sites]

            for future, site in futures:
                try:
                    collected.extend(future.result())
                except Exception as e:
                    logger.error("Site aggregation crashed for %s: %s", site.name, str(e),
                                 extra={'site': site.name, 'error_type': type(e).__name__})
                    metrics.increment('site_failed')

    created_at = time.time() if now is None else now
    articles = merge_records(collected, int(created_at * 1000), cap)

    duration_ms = (time.time() - start_time) * 1000
    metrics.record_duration('build_feed_duration_ms', duration_ms)
    metrics.increment('feed_builds')
    logger.info("Built feed with %d articles (%d collected) from %d sites in %.1fms",
                len(articles), len(collected), len(sites), duration_ms,
                extra={'article_count': len(articles), 'duration_ms': duration_ms})

    return AggregationBatch(articles=articles, created_at=created_at, ttl_seconds=ttl_seconds)

# =============================================================================
# CACHING
# =============================================================================

class FeedCache:
    """
    Holds the single current AggregationBatch.

    Reads are served from the batch until it expires. Rebuilds go through a
    lock so concurrent callers after expiry wait for one build instead of
    crawling every site again.
    """

    def __init__(self, ttl_seconds: int = CACHE_TTL_SECONDS,
                 builder: Optional[Callable[[], AggregationBatch]] = None,
                 clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._build_lock = threading.Lock()
        self._batch: Optional[AggregationBatch] = None
        self._ttl = ttl_seconds
        self._clock = clock
        self._builder = builder or self._default_builder

    def _default_builder(self) -> AggregationBatch:
        return build_feed(now=self._clock(), ttl_seconds=self._ttl)

    def get(self) -> Optional[AggregationBatch]:
        with self._lock:
            if self._batch is not None and self._batch.is_valid(self._clock()):
                return self._batch
            return None

    def get_or_build(self) -> AggregationBatch:
        batch = self.get()
        if batch is not None:
            metrics.increment('cache_hits')
            return batch

        with self._build_lock:
            # Another caller may have finished a rebuild while we waited
            batch = self.get()
            if batch is not None:
                metrics.increment('cache_hits')
                return batch

            metrics.increment('cache_misses')
            # Validity window starts when the batch is stored, not when the crawl began
            batch = replace(self._builder(), created_at=self._clock())
            with self._lock:
                self._batch = batch
            return batch

    def clear(self) -> None:
        with self._lock:
            self._batch = None

    def stats(self) -> Dict:
        with self._lock:
            batch = self._batch
            now = self._clock()
            return {
                'ttl_seconds': self._ttl,
                'size': len(batch.articles) if batch else 0,
                'valid': bool(batch and batch.is_valid(now)),
                'age_seconds': round(now - batch.created_at, 1) if batch else None,
            }

# =============================================================================
# HEALTH & METRICS
# =============================================================================

def get_health(feed_cache: Optional[FeedCache] = None) -> Dict:
    """Health check - returns server status and diagnostics."""
    return {
        "status": "healthy",
        "version": VERSION,
        "configuredSites": [site.name for site in SITES],
        "siteCount": len(SITES),
        "cache": feed_cache.stats() if feed_cache else None,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


def get_metrics(feed_cache: Optional[FeedCache] = None) -> Dict:
    """Get detailed metrics for observability."""
    return {
        "metrics": metrics.get_stats(),
        "cache": feed_cache.stats() if feed_cache else None,
        "config": {
            "maxResults": MAX_RESULTS,
            "cacheTtl": CACHE_TTL_SECONDS,
            "linksPerSite": LINKS_PER_SITE,
            "fetchTimeout": FETCH_TIMEOUT_SECONDS,
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
