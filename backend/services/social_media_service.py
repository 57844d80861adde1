"""
Social Media Service
Collects disaster-related posts, classifies them and ranks them by priority.

Providers, in order:
- Twitter/X API v2 recent search (needs TWITTER_BEARER_TOKEN)
- Bluesky public search API (opt-in via BLUESKY_ENABLED)
- Sample feed of representative posts (always available)
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import requests

from services.cache_store import build_cache_key
from services.priority import calculate_priority
from services.provider_chain import Err, Ok, Provider
from utils.text_patterns import extract_location_mentions

logger = logging.getLogger(__name__)

DEFAULT_KEYWORDS = ['flood', 'emergency', 'help', 'disaster']
HIGH_PRIORITY_THRESHOLD = 8

TWITTER_SEARCH_URL = "https://api.twitter.com/2/tweets/search/recent"
BLUESKY_SEARCH_URL = "https://public.api.bsky.app/xrpc/app.bsky.feed.searchPosts"


def _timestamp_epoch(post: Dict) -> float:
    try:
        return datetime.fromisoformat(str(post.get('timestamp')).replace('Z', '+00:00')).timestamp()
    except (TypeError, ValueError):
        return 0.0


def filter_by_priority(posts: List[Dict], min_priority: int = 7) -> List[Dict]:
    return [post for post in posts if post.get('priority', 0) >= min_priority]


class SocialMediaService:
    """Aggregate, analyze and rank social media reports for a disaster"""

    def __init__(self, chain, settings, content_analysis, clock: Callable[[], datetime] = None):
        """
        Initialize social media service

        Args:
            chain: ProviderChain (owns the cache store)
            settings: ProviderSettings snapshot
            content_analysis: ContentAnalysisService used to classify each post
            clock: Returns the current aware datetime (defaults to UTC now)
        """
        self.chain = chain
        self.settings = settings
        self.content_analysis = content_analysis
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._providers = [
            Provider('twitter', self._twitter_posts, settings.twitter_enabled),
            Provider('bluesky', self._bluesky_posts, settings.bluesky_enabled),
            Provider('mock_twitter', self._sample_posts),
        ]

    def fetch_reports(self, disaster_id: str, keywords: Optional[List[str]] = None) -> Dict:
        """
        Fetch and rank social media posts for a disaster

        Args:
            disaster_id: Disaster the posts relate to
            keywords: Search keywords (defaults to flood/emergency/help/disaster)

        Returns:
            Dict with disaster_id, keywords, posts (sorted by priority then recency),
            total_posts, high_priority_posts, last_updated, provider (never raises)
        """
        keywords = [k.strip() for k in (keywords or DEFAULT_KEYWORDS) if k and k.strip()] or DEFAULT_KEYWORDS

        outcome = self.chain.run(
            self._providers,
            keywords,
            fallback=lambda errors: [],
            cache_key=build_cache_key('social_media', disaster_id or 'all', '_'.join(keywords)),
            ttl=self.settings.social_media_ttl,
        )

        posts = [self.analyze_post(post, disaster_id) for post in (outcome.value or [])]
        posts.sort(key=lambda p: (p['priority'], _timestamp_epoch(p)), reverse=True)

        result = {
            'disaster_id': disaster_id,
            'keywords': keywords,
            'posts': posts,
            'total_posts': len(posts),
            'high_priority_posts': sum(1 for p in posts if p['priority'] >= HIGH_PRIORITY_THRESHOLD),
            'last_updated': self.clock().isoformat(),
            'provider': 'mock' if outcome.degraded else outcome.provider,
            'cached': outcome.cached
        }
        if outcome.degraded:
            result['error'] = 'All social media providers failed: ' + '; '.join(outcome.errors)

        logger.info(f"Fetched {result['total_posts']} social media posts for disaster {disaster_id}")
        return result

    def analyze_post(self, post: Dict, disaster_id: Optional[str] = None) -> Dict:
        """Attach classification and priority to a raw post."""
        analysis = self.content_analysis.classify(post.get('content', ''))
        return {
            **post,
            'analysis': analysis,
            'priority': calculate_priority(post.get('content', ''), analysis, post.get('engagement')),
            'disaster_id': disaster_id
        }

    @staticmethod
    def location_summary(posts: List[Dict]) -> Dict:
        """Count location mentions across posts."""
        counts = {}
        for post in posts:
            mentions = extract_location_mentions(post.get('content', ''))
            if post.get('location'):
                mentions = [post['location']] + [m for m in mentions if m != post['location']]
            for mention in mentions:
                counts[mention] = counts.get(mention, 0) + 1

        ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
        return {
            'locations': [{'location': name, 'mentions': count} for name, count in ranked],
            'total_unique_locations': len(ranked)
        }

    # ===== Providers =====

    def _twitter_posts(self, keywords: List[str]):
        query = ' OR '.join(keywords) + ' -is:retweet'
        try:
            response = requests.get(
                TWITTER_SEARCH_URL,
                headers={'Authorization': f"Bearer {self.settings.twitter_bearer_token}"},
                params={
                    'query': query,
                    'max_results': 25,
                    'tweet.fields': 'created_at,author_id,public_metrics,geo',
                    'expansions': 'author_id',
                    'user.fields': 'username,name,location'
                },
                timeout=self.settings.http_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            return Err(f"request failed: {e}")

        users = {u['id']: u for u in data.get('includes', {}).get('users', []) if 'id' in u}
        posts = []
        for tweet in data.get('data', []):
            author = users.get(tweet.get('author_id'), {})
            metrics = tweet.get('public_metrics', {})
            posts.append({
                'id': f"twitter_{tweet.get('id')}",
                'user': author.get('name', 'unknown'),
                'username': f"@{author.get('username', 'unknown')}",
                'content': tweet.get('text', ''),
                'timestamp': tweet.get('created_at', self.clock().isoformat()),
                'location': author.get('location'),
                'media': [],
                'engagement': {
                    'likes': metrics.get('like_count', 0),
                    'retweets': metrics.get('retweet_count', 0),
                    'replies': metrics.get('reply_count', 0)
                },
                'source': 'twitter'
            })

        if not posts:
            return Err('no matching posts')
        return Ok(posts)

    def _bluesky_posts(self, keywords: List[str]):
        try:
            response = requests.get(
                BLUESKY_SEARCH_URL,
                params={'q': ' OR '.join(keywords), 'limit': 25, 'sort': 'latest'},
                timeout=self.settings.http_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            return Err(f"request failed: {e}")

        posts = []
        for item in data.get('posts', []):
            author = item.get('author', {})
            record = item.get('record', {})
            posts.append({
                'id': f"bluesky_{item.get('cid') or item.get('uri')}",
                'user': author.get('displayName') or author.get('handle', 'unknown'),
                'username': f"@{author.get('handle', 'unknown')}",
                'content': record.get('text', ''),
                'timestamp': record.get('createdAt') or item.get('indexedAt') or self.clock().isoformat(),
                'location': None,
                'media': [],
                'engagement': {
                    'likes': item.get('likeCount', 0),
                    'retweets': item.get('repostCount', 0),
                    'replies': item.get('replyCount', 0)
                },
                'source': 'bluesky'
            })

        if not posts:
            return Err('no matching posts')
        return Ok(posts)

    def _sample_posts(self, keywords: List[str]):
        lowered = [k.lower() for k in keywords]
        posts = [
            post for post in self.sample_posts()
            if any(keyword in post['content'].lower() for keyword in lowered)
        ]
        return Ok(posts)

    def sample_posts(self) -> List[Dict]:
        """Representative posts used when no live social provider is configured."""
        now = self.clock()

        def ago(minutes):
            return (now - timedelta(minutes=minutes)).isoformat()

        return [
            {
                'id': 'mock_1',
                'user': 'citizen1',
                'username': '@concerned_citizen',
                'content': '#floodrelief Need food and water in Lower East Side, NYC. Families stranded on 2nd floor.',
                'timestamp': ago(30),
                'location': 'Lower East Side, NYC',
                'media': ['https://example.com/flood1.jpg'],
                'engagement': {'likes': 15, 'retweets': 8, 'replies': 3},
                'source': 'mock_twitter'
            },
            {
                'id': 'mock_2',
                'user': 'volunteer_helper',
                'username': '@volunteer_nyc',
                'content': 'Offering shelter for displaced families in Manhattan. Have space for 6 people. DM me #disasterrelief',
                'timestamp': ago(45),
                'location': 'Manhattan, NYC',
                'media': [],
                'engagement': {'likes': 25, 'retweets': 12, 'replies': 7},
                'source': 'mock_twitter'
            },
            {
                'id': 'mock_3',
                'user': 'news_reporter',
                'username': '@breaking_news',
                'content': 'URGENT: Brooklyn Bridge closed due to flooding. Avoid the area. Emergency services on scene #NYCFlood',
                'timestamp': ago(20),
                'location': 'Brooklyn Bridge, NYC',
                'media': ['https://example.com/bridge_flood.jpg'],
                'engagement': {'likes': 87, 'retweets': 45, 'replies': 12},
                'source': 'mock_twitter'
            },
            {
                'id': 'mock_4',
                'user': 'local_resident',
                'username': '@queens_local',
                'content': 'Water levels rising fast in Queens. Need evacuation help for elderly neighbors. #SOS #FloodEmergency',
                'timestamp': ago(10),
                'location': 'Queens, NYC',
                'media': [],
                'engagement': {'likes': 42, 'retweets': 28, 'replies': 15},
                'source': 'mock_twitter'
            },
            {
                'id': 'mock_5',
                'user': 'red_cross_ny',
                'username': '@redcross_ny',
                'content': 'Emergency shelter open at Madison Square Garden. Food, water, and medical aid available. #DisasterRelief',
                'timestamp': ago(60),
                'location': 'Madison Square Garden, NYC',
                'media': ['https://example.com/shelter.jpg'],
                'engagement': {'likes': 156, 'retweets': 89, 'replies': 23},
                'source': 'mock_twitter'
            },
        ]
