"""
Official Updates Service
Aggregates announcements from government and relief organizations.

Sources:
- FEMA, American Red Cross, NYC Emergency Management (HTML pages, parsed with BeautifulSoup)
- GDACS (Global Disaster Alert and Coordination System) RSS feed, parsed with feedparser

Live scraping is opt-in (OFFICIAL_SCRAPING_ENABLED). When it is off or returns
nothing, a curated feed of official announcements is served instead.

Ordering contract: priority rank descending (critical > high > medium > low),
then published_at descending. Filters run after the sort and before pagination.
"""
import calendar
import logging
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Callable, Dict, List, Optional

import feedparser
import requests
from bs4 import BeautifulSoup

from services.cache_store import build_cache_key
from services.provider_chain import Err, Ok, Provider
from utils.text_patterns import (
    extract_actions,
    extract_deadlines,
    extract_location_mentions,
    extract_phone_numbers,
    extract_urls,
)

logger = logging.getLogger(__name__)

PRIORITY_RANK = {'critical': 3, 'high': 2, 'medium': 1, 'low': 0}

# GDACS alert level -> update priority
GDACS_ALERT_PRIORITY = {'red': 'critical', 'orange': 'high', 'green': 'medium'}

OFFICIAL_SOURCES = {
    'fema': {
        'name': 'FEMA',
        'url': 'https://www.fema.gov/disasters',
        'format': 'html',
        'selector': '.disaster-declaration',
        'type': 'government'
    },
    'red_cross': {
        'name': 'American Red Cross',
        'url': 'https://www.redcross.org/get-help/disaster-relief-and-recovery-services',
        'format': 'html',
        'selector': '.emergency-update',
        'type': 'relief_organization'
    },
    'nyc_em': {
        'name': 'NYC Emergency Management',
        'url': 'https://www.nyc.gov/site/em/index.page',
        'format': 'html',
        'selector': '.emergency-alert',
        'type': 'local_government'
    },
    'gdacs': {
        'name': 'GDACS',
        'url': 'https://www.gdacs.org/xml/rss.xml',
        'format': 'rss',
        'type': 'international'
    },
}


def priority_rank(priority: Optional[str]) -> int:
    return PRIORITY_RANK.get(str(priority or '').lower(), -1)


def _published_epoch(update: Dict) -> float:
    value = update.get('published_at')
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).timestamp()
    except (TypeError, ValueError):
        return 0.0


def sort_updates(updates: List[Dict]) -> List[Dict]:
    """
    Sort updates: priority rank descending, then newest first

    Example:
        >>> [u['priority'] for u in sort_updates([{'priority': 'low'}, {'priority': 'critical'}])]
        ['critical', 'low']
    """
    return sorted(updates, key=lambda u: (priority_rank(u.get('priority')), _published_epoch(u)), reverse=True)


def filter_by_priority(updates: List[Dict], min_priority: str = 'medium') -> List[Dict]:
    """Keep updates at or above min_priority (unknown minimum means 'medium')."""
    minimum = PRIORITY_RANK.get(str(min_priority or '').lower(), PRIORITY_RANK['medium'])
    return [u for u in updates if priority_rank(u.get('priority')) >= minimum]


def filter_by_type(updates: List[Dict], types: Optional[List[str]] = None) -> List[Dict]:
    """Keep updates whose source type is listed (no types means keep all)."""
    if not types:
        return updates
    return [u for u in updates if u.get('type') in types]


def paginate(items: List, offset: int = 0, limit: Optional[int] = None) -> List:
    offset = max(0, offset or 0)
    if limit is None:
        return items[offset:]
    return items[offset:offset + max(0, limit)]


class OfficialUpdatesService:
    """Fetch, rank and summarize official disaster announcements"""

    HEADERS = {
        'User-Agent': 'DisasterResponsePlatform/1.0 (Emergency Information Aggregator)',
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8'
    }

    def __init__(self, chain, settings, clock: Callable[[], datetime] = None):
        """
        Initialize official updates service

        Args:
            chain: ProviderChain (owns the cache store)
            settings: ProviderSettings snapshot
            clock: Returns the current aware datetime (defaults to UTC now)
        """
        self.chain = chain
        self.cache = chain.cache
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._providers = [
            Provider('live_scrape', self._live_updates, settings.official_scraping_enabled),
            Provider('curated_feed', self._curated_updates),
        ]

    @staticmethod
    def list_sources() -> List[Dict]:
        return [
            {'key': key, 'name': s['name'], 'url': s['url'], 'type': s['type'], 'format': s['format']}
            for key, s in OFFICIAL_SOURCES.items()
        ]

    # ===== Aggregation =====

    def fetch_updates(self, disaster_id: str, sources: Optional[List[str]] = None,
                      min_priority: Optional[str] = None, types: Optional[List[str]] = None,
                      offset: int = 0, limit: Optional[int] = None) -> Dict:
        """
        Fetch official updates for a disaster

        Args:
            disaster_id: Disaster the updates are requested for
            sources: Optional source keys or names (e.g., ['fema', 'red_cross'])
            min_priority: Optional minimum priority ('low'..'critical')
            types: Optional source types (e.g., ['government'])
            offset: Pagination offset, applied after filtering
            limit: Pagination size, applied after filtering

        Returns:
            Dict with disaster_id, sources_requested, updates, total_updates,
            critical_updates, last_updated, provider (never raises)
        """
        sources = [s.lower().replace(' ', '_') for s in (sources or []) if s]
        cache_key = build_cache_key('official_updates', disaster_id or 'all', '_'.join(sorted(sources)))

        outcome = self.chain.run(
            self._providers,
            fallback=lambda errors: None,
            cache_key=cache_key,
            ttl=self.settings.official_updates_ttl,
        )

        updates = outcome.value or []
        if sources:
            updates = [u for u in updates if self._matches_source(u, sources)]
        updates = sort_updates(updates)

        if min_priority:
            updates = filter_by_priority(updates, min_priority)
        updates = filter_by_type(updates, types)

        result = {
            'disaster_id': disaster_id,
            'sources_requested': sources,
            'updates': paginate(updates, offset, limit),
            'total_updates': len(updates),
            'critical_updates': sum(1 for u in updates if u.get('priority') == 'critical'),
            'offset': offset,
            'limit': limit,
            'last_updated': self.clock().isoformat(),
            'provider': 'mock' if outcome.degraded else outcome.provider,
            'cached': outcome.cached
        }
        if outcome.degraded:
            result['error'] = 'All update providers failed: ' + '; '.join(outcome.errors)

        logger.info(f"Fetched {result['total_updates']} official updates for disaster {disaster_id}")
        return result

    @staticmethod
    def _matches_source(update: Dict, sources: List[str]) -> bool:
        source_name = str(update.get('source', '')).lower().replace(' ', '_')
        return update.get('source_key') in sources or source_name in sources

    def _live_updates(self):
        updates = self.scrape_all_sources()
        if not updates:
            return Err('no updates scraped from any source')
        return Ok(updates)

    def _curated_updates(self):
        return Ok(self.curated_updates())

    def curated_updates(self) -> List[Dict]:
        """Curated official announcements, timestamped relative to now."""
        now = self.clock()

        def ago(minutes):
            return (now - timedelta(minutes=minutes)).isoformat()

        return [
            {
                'id': 'fema_001',
                'source': 'FEMA',
                'source_key': 'fema',
                'title': 'Major Disaster Declaration for New York Flooding',
                'content': 'A Major Disaster Declaration has been approved for New York State due to severe flooding. Federal assistance is now available to affected individuals and communities.',
                'url': 'https://www.fema.gov/disasters',
                'published_at': ago(120),
                'type': 'government',
                'priority': 'high',
                'tags': ['federal_aid', 'disaster_declaration', 'flooding']
            },
            {
                'id': 'redcross_001',
                'source': 'American Red Cross',
                'source_key': 'red_cross',
                'title': 'Emergency Shelters Open in NYC Area',
                'content': 'The Red Cross has opened multiple emergency shelters across New York City for those displaced by flooding. Locations include Madison Square Garden, Jacob Javits Center, and Brooklyn Armory.',
                'url': 'https://www.redcross.org/local/new-york/greater-new-york',
                'published_at': ago(90),
                'type': 'relief_organization',
                'priority': 'high',
                'tags': ['shelter', 'evacuation', 'emergency_services']
            },
            {
                'id': 'nyc_em_001',
                'source': 'NYC Emergency Management',
                'source_key': 'nyc_em',
                'title': 'Flash Flood Warning Extended Until 8 PM',
                'content': 'Flash flood warning for all five boroughs extended until 8:00 PM today. Residents are advised to avoid unnecessary travel and stay indoors. Call 311 or 212-639-9675 for non-emergency assistance.',
                'url': 'https://www.nyc.gov/site/em/index.page',
                'published_at': ago(30),
                'type': 'local_government',
                'priority': 'critical',
                'tags': ['flood_warning', 'travel_advisory', 'emergency_response']
            },
            {
                'id': 'fema_002',
                'source': 'FEMA',
                'source_key': 'fema',
                'title': 'Individual Assistance Program Activated',
                'content': "FEMA's Individual Assistance program is now available for New York residents affected by flooding, including temporary housing, home repairs, and other disaster-related expenses. Apply at https://www.disasterassistance.gov",
                'url': 'https://www.fema.gov/assistance/individual',
                'published_at': ago(45),
                'type': 'government',
                'priority': 'medium',
                'tags': ['individual_assistance', 'financial_aid', 'housing_assistance']
            },
            {
                'id': 'salvation_army_001',
                'source': 'Salvation Army',
                'source_key': 'salvation_army',
                'title': 'Mobile Emergency Response Units Deployed',
                'content': 'Mobile emergency response units are deployed throughout the affected areas, providing hot meals, hydration, and emotional support to first responders and residents.',
                'url': 'https://www.salvationarmyusa.org/usn/disaster-relief/',
                'published_at': ago(60),
                'type': 'relief_organization',
                'priority': 'medium',
                'tags': ['mobile_services', 'food_assistance', 'emotional_support']
            },
        ]

    # ===== Scraping =====

    def scrape_source(self, source_key: str) -> Dict:
        """
        Scrape a single official source

        Args:
            source_key: Key from OFFICIAL_SOURCES (e.g., 'fema', 'gdacs')

        Returns:
            Dict with source, url, updates, scraped_at and error on failure
        """
        source = OFFICIAL_SOURCES.get(source_key)
        if source is None:
            return {
                'source': source_key,
                'url': None,
                'updates': [],
                'error': f"Unknown source: {source_key}",
                'scraped_at': self.clock().isoformat()
            }

        result = self._scrape(source_key)
        response = {
            'source': source['name'],
            'url': source['url'],
            'updates': result.value if isinstance(result, Ok) else [],
            'scraped_at': self.clock().isoformat()
        }
        if isinstance(result, Err):
            response['error'] = result.reason
        return response

    def scrape_all_sources(self) -> List[Dict]:
        """
        Scrape every official source concurrently

        A failing source is logged and skipped; the others still contribute.
        """
        providers = [Provider(key, partial(self._scrape, key)) for key in OFFICIAL_SOURCES]
        results = self.chain.gather(providers)

        all_updates = []
        for key in OFFICIAL_SOURCES:
            result = results.get(key)
            if isinstance(result, Ok):
                all_updates.extend(result.value or [])
            elif result is not None:
                logger.error(f"Failed to scrape {OFFICIAL_SOURCES[key]['name']}: {result.reason}")

        logger.info(f"Scraped total of {len(all_updates)} updates from all sources")
        return all_updates

    def _scrape(self, source_key: str):
        source = OFFICIAL_SOURCES[source_key]
        cache_key = build_cache_key('scrape', source_key, source['url'])
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return Ok(cached)

        try:
            response = requests.get(source['url'], headers=self.HEADERS, timeout=self.settings.http_timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            return Err(f"request failed: {e}")

        if source['format'] == 'rss':
            updates = self.parse_rss(response.content, source_key)
        else:
            updates = self.parse_html(response.text, source_key)

        if self.cache is not None and updates:
            self.cache.set(cache_key, updates, self.settings.scrape_ttl)

        logger.info(f"Scraped {len(updates)} updates from {source['name']}")
        return Ok(updates)

    def parse_html(self, html: str, source_key: str) -> List[Dict]:
        """Extract updates from an HTML page using the source's CSS selector."""
        source = OFFICIAL_SOURCES[source_key]
        soup = BeautifulSoup(html, 'html.parser')
        scraped_at = self.clock()

        updates = []
        for index, element in enumerate(soup.select(source['selector'])):
            title_el = element.select_one('h1, h2, h3, .title')
            content_el = element.select_one('p, .content, .description')
            title = title_el.get_text(strip=True) if title_el else ''
            content = content_el.get_text(strip=True) if content_el else ''
            if not title or not content:
                continue

            link = element.select_one('a[href]')
            updates.append({
                'id': f"{source_key}_{int(scraped_at.timestamp())}_{index}",
                'source': source['name'],
                'source_key': source_key,
                'title': title,
                'content': content,
                'url': link['href'] if link else source['url'],
                'published_at': scraped_at.isoformat(),
                'type': source['type'],
                'priority': 'medium',
                'tags': []
            })
        return updates

    def parse_rss(self, content: bytes, source_key: str) -> List[Dict]:
        """Extract updates from an RSS feed (GDACS alert levels map to priority)."""
        source = OFFICIAL_SOURCES[source_key]
        feed = feedparser.parse(content)

        updates = []
        for index, entry in enumerate(feed.entries):
            title = entry.get('title', '').strip()
            if not title:
                continue

            published = entry.get('published_parsed') or entry.get('updated_parsed')
            if published:
                published_at = datetime.fromtimestamp(calendar.timegm(published), tz=timezone.utc)
            else:
                published_at = self.clock()

            alert_level = str(entry.get('gdacs_alertlevel', '')).lower()
            summary = BeautifulSoup(entry.get('summary', ''), 'html.parser').get_text(' ', strip=True)

            updates.append({
                'id': f"{source_key}_{entry.get('id', index)}".replace('/', '_'),
                'source': source['name'],
                'source_key': source_key,
                'title': title,
                'content': summary or title,
                'url': entry.get('link', source['url']),
                'published_at': published_at.isoformat(),
                'type': source['type'],
                'priority': GDACS_ALERT_PRIORITY.get(alert_level, 'medium'),
                'tags': [tag for tag in [entry.get('gdacs_eventtype', '').lower()] if tag]
            })
        return updates

    # ===== Analysis =====

    @staticmethod
    def extract_key_information(content: str) -> Dict:
        """
        Pull locations, phone numbers, links, deadlines and actions out of an update

        Example:
            >>> OfficialUpdatesService.extract_key_information('Call 212-639-9675 until 8 PM')['contacts']
            ['212-639-9675']
        """
        return {
            'locations': extract_location_mentions(content),
            'contacts': extract_phone_numbers(content),
            'resources': extract_urls(content),
            'deadlines': extract_deadlines(content),
            'actions': extract_actions(content)
        }

    def build_timeline(self, updates: List[Dict], hours: int = 24) -> List[Dict]:
        """
        Group updates into hourly buckets over the last `hours` hours

        Returns:
            Buckets newest first: {hour, count, critical_count, updates}
        """
        cutoff = self.clock().timestamp() - hours * 3600
        buckets = {}
        for update in updates:
            published = _published_epoch(update)
            if published < cutoff:
                continue
            hour = datetime.fromtimestamp(published, tz=timezone.utc).replace(minute=0, second=0, microsecond=0)
            bucket = buckets.setdefault(hour.isoformat(), {
                'hour': hour.isoformat(),
                'count': 0,
                'critical_count': 0,
                'updates': []
            })
            bucket['count'] += 1
            if update.get('priority') == 'critical':
                bucket['critical_count'] += 1
            bucket['updates'].append({
                'id': update.get('id'),
                'title': update.get('title'),
                'source': update.get('source'),
                'priority': update.get('priority'),
                'published_at': update.get('published_at')
            })

        return sorted(buckets.values(), key=lambda b: b['hour'], reverse=True)
