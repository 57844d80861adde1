"""
Geocoding Service - Forward and reverse geocoding with provider fallback

Converts location names to coordinates (and back) using, in order:
- Google Maps Geocoding API (highest accuracy, needs GOOGLE_MAPS_API_KEY)
- Mapbox Geocoding API (needs MAPBOX_ACCESS_TOKEN)
- OpenStreetMap Nominatim (free, 1 request/second per Nominatim usage policy)

Confidence mapping (thresholds configurable via ProviderSettings):
- Google: location_type ROOFTOP -> high, RANGE_INTERPOLATED/GEOMETRIC_CENTER -> medium,
  APPROXIMATE -> low
- Mapbox: relevance >= 0.8 -> high, >= 0.5 -> medium, else low
- Nominatim: importance > 0.5 -> high, > 0.2 -> medium, else low

When every provider fails the service returns a degraded result with
provider 'mock', confidence 'low', resolved False and an 'error' field.
"""

import logging
import random
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote

import requests

from services.cache_store import build_cache_key, coordinate_cache_key
from services.provider_chain import Err, Ok, Provider
from utils.secure_logging import redact_pii
from utils.validators import CoordinateValidator

logger = logging.getLogger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
MAPBOX_GEOCODE_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places/{query}.json"
NOMINATIM_SEARCH_URL = "https://nominatim.openstreetmap.org/search"
NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"

GOOGLE_LOCATION_TYPE_CONFIDENCE = {
    'ROOFTOP': 'high',
    'RANGE_INTERPOLATED': 'medium',
    'GEOMETRIC_CENTER': 'medium',
    'APPROXIMATE': 'low',
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class GeocodingService:
    """
    Forward/reverse geocoding behind a provider fallback chain

    Usage:
        service = GeocodingService(chain, settings)
        result = service.geocode("Manhattan, NYC")
        # {latitude: 40.78, longitude: -73.97, confidence: 'high', provider: 'google_maps', ...}

        address = service.reverse_geocode(40.7128, -74.0060)
        # {formatted_address: 'New York, New York, United States', provider: 'openstreetmap', ...}
    """

    PROVIDER_NAMES = ['google', 'mapbox', 'osm']

    def __init__(self, chain, settings, rng: Optional[random.Random] = None):
        """
        Initialize geocoding service

        Args:
            chain: ProviderChain (owns the cache store)
            settings: ProviderSettings snapshot
            rng: Random source for the degraded-result jitter
        """
        self.chain = chain
        self.settings = settings
        self.rng = rng or random.Random()
        self.last_request_time = 0
        self._rate_lock = threading.Lock()

        self._forward_providers = {
            'google': Provider('google', self._google_geocode, settings.google_enabled),
            'mapbox': Provider('mapbox', self._mapbox_geocode, settings.mapbox_enabled),
            'osm': Provider('osm', self._osm_geocode, settings.osm_enabled),
        }
        self._reverse_providers = [
            Provider('google', self._google_reverse, settings.google_enabled),
            Provider('osm', self._osm_reverse, settings.osm_enabled),
        ]

    # ===== Public API =====

    def geocode(self, location_name: str, provider: Optional[str] = None) -> Dict:
        """
        Convert a location name to coordinates

        Args:
            location_name: Free-text location (e.g., "Manhattan, NYC")
            provider: Optional forced provider ('google', 'mapbox', 'osm')

        Returns:
            Dict with location_name, latitude, longitude, formatted_address,
            confidence, provider, timestamp (never raises)
        """
        location_name = (location_name or '').strip()
        if not location_name:
            return self._degraded_geocode(location_name, ['location name is empty'])

        if provider:
            selected = self._forward_providers.get(provider)
            if selected is None:
                return self._degraded_geocode(location_name, [f"unknown provider '{provider}'"])
            providers = [selected]
        else:
            providers = [self._forward_providers[name] for name in self.PROVIDER_NAMES]

        cache_key = build_cache_key('geocode', provider or 'auto', location_name.lower())
        outcome = self.chain.run(
            providers,
            location_name,
            fallback=lambda errors: self._degraded_geocode(location_name, errors),
            cache_key=cache_key,
            ttl=self.settings.geocode_ttl,
        )

        if outcome.degraded:
            logger.warning(redact_pii(f"Geocoding degraded for '{location_name}': {'; '.join(outcome.errors)}"))
        return outcome.value

    def reverse_geocode(self, latitude: float, longitude: float) -> Dict:
        """
        Convert coordinates to a human-readable address

        Args:
            latitude: Latitude coordinate (-90 to 90)
            longitude: Longitude coordinate (-180 to 180)

        Returns:
            Dict with latitude, longitude, formatted_address, city, state,
            country, provider, timestamp (never raises)
        """
        if not CoordinateValidator.validate_coordinates(latitude, longitude):
            logger.warning(redact_pii(f"Invalid coordinates: ({latitude}, {longitude})"))
            return self._degraded_reverse(latitude, longitude, ['invalid coordinates'])

        latitude = float(latitude)
        longitude = float(longitude)
        outcome = self.chain.run(
            self._reverse_providers,
            latitude,
            longitude,
            fallback=lambda errors: self._degraded_reverse(latitude, longitude, errors),
            cache_key=coordinate_cache_key('reverse_geocode', latitude, longitude),
            ttl=self.settings.reverse_geocode_ttl,
        )
        return outcome.value

    def geocode_batch(self, locations: List[str], provider: Optional[str] = None) -> List[Dict]:
        """
        Geocode several locations sequentially

        Returns:
            One entry per input: {location, result, success}
        """
        results = []
        for location in locations:
            result = self.geocode(location, provider)
            results.append({
                'location': location,
                'result': result,
                'success': result.get('provider') != 'mock'
            })
        return results

    def available_providers(self) -> Dict:
        """Describe configured providers for the providers endpoint."""
        s = self.settings
        providers = [
            {
                'name': 'google',
                'display_name': 'Google Maps',
                'available': s.google_enabled,
                'features': ['geocoding', 'reverse_geocoding', 'high_accuracy'],
                'rate_limit': 'Varies by plan',
                'accuracy': 'Very High',
            },
            {
                'name': 'mapbox',
                'display_name': 'Mapbox',
                'available': s.mapbox_enabled,
                'features': ['geocoding', 'good_accuracy'],
                'rate_limit': '100,000 requests/month (free tier)',
                'accuracy': 'High',
            },
            {
                'name': 'osm',
                'display_name': 'OpenStreetMap Nominatim',
                'available': s.osm_enabled,
                'features': ['geocoding', 'reverse_geocoding', 'free'],
                'rate_limit': '1 request/second',
                'accuracy': 'Medium',
            },
        ]
        primary = next((p['name'] for p in providers if p['available']), 'mock')
        return {
            'providers': providers,
            'primary_provider': primary,
            'fallback_enabled': True,
        }

    # ===== Confidence mapping =====

    @staticmethod
    def google_confidence(location_type: Optional[str]) -> str:
        return GOOGLE_LOCATION_TYPE_CONFIDENCE.get(location_type or '', 'low')

    def mapbox_confidence(self, relevance: Optional[float]) -> str:
        relevance = relevance or 0
        if relevance >= self.settings.mapbox_high_relevance:
            return 'high'
        if relevance >= self.settings.mapbox_medium_relevance:
            return 'medium'
        return 'low'

    def osm_confidence(self, importance: Optional[float]) -> str:
        importance = importance or 0
        if importance > self.settings.osm_high_importance:
            return 'high'
        if importance > self.settings.osm_medium_importance:
            return 'medium'
        return 'low'

    # ===== Forward providers =====

    def _google_geocode(self, location_name: str):
        try:
            response = requests.get(
                GOOGLE_GEOCODE_URL,
                params={'address': location_name, 'key': self.settings.google_maps_api_key},
                timeout=self.settings.http_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            return Err(f"request failed: {e}")

        if data.get('status') != 'OK' or not data.get('results'):
            return Err(f"status {data.get('status')}")

        top = data['results'][0]
        geometry = top.get('geometry', {})
        location = geometry.get('location', {})
        return Ok({
            'location_name': location_name,
            'latitude': location.get('lat'),
            'longitude': location.get('lng'),
            'formatted_address': top.get('formatted_address', location_name),
            'confidence': self.google_confidence(geometry.get('location_type')),
            'provider': 'google_maps',
            'timestamp': _now_iso()
        })

    def _mapbox_geocode(self, location_name: str):
        try:
            response = requests.get(
                MAPBOX_GEOCODE_URL.format(query=quote(location_name)),
                params={'access_token': self.settings.mapbox_access_token, 'limit': 1},
                timeout=self.settings.http_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            return Err(f"request failed: {e}")

        features = data.get('features') or []
        if not features:
            return Err('no results')

        feature = features[0]
        longitude, latitude = feature['center'][:2]
        return Ok({
            'location_name': location_name,
            'latitude': latitude,
            'longitude': longitude,
            'formatted_address': feature.get('place_name', location_name),
            'confidence': self.mapbox_confidence(feature.get('relevance')),
            'provider': 'mapbox',
            'timestamp': _now_iso()
        })

    def _osm_geocode(self, location_name: str):
        self._respect_nominatim_rate_limit()
        try:
            response = requests.get(
                NOMINATIM_SEARCH_URL,
                params={'q': location_name, 'format': 'json', 'limit': 1, 'addressdetails': 1},
                headers={'User-Agent': self.settings.nominatim_user_agent},
                timeout=self.settings.http_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            return Err(f"request failed: {e}")

        if not data:
            return Err('no results')

        top = data[0]
        try:
            latitude = float(top['lat'])
            longitude = float(top['lon'])
        except (KeyError, TypeError, ValueError):
            return Err('malformed coordinates in response')

        return Ok({
            'location_name': location_name,
            'latitude': latitude,
            'longitude': longitude,
            'formatted_address': top.get('display_name', location_name),
            'confidence': self.osm_confidence(top.get('importance')),
            'provider': 'openstreetmap',
            'timestamp': _now_iso()
        })

    # ===== Reverse providers =====

    def _google_reverse(self, latitude: float, longitude: float):
        try:
            response = requests.get(
                GOOGLE_GEOCODE_URL,
                params={'latlng': f"{latitude},{longitude}", 'key': self.settings.google_maps_api_key},
                timeout=self.settings.http_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            return Err(f"request failed: {e}")

        if data.get('status') != 'OK' or not data.get('results'):
            return Err(f"status {data.get('status')}")

        top = data['results'][0]
        components = {}
        for component in top.get('address_components', []):
            for component_type in component.get('types', []):
                components.setdefault(component_type, component.get('long_name'))

        return Ok({
            'latitude': latitude,
            'longitude': longitude,
            'formatted_address': top.get('formatted_address', 'Unknown Location'),
            'city': components.get('locality'),
            'state': components.get('administrative_area_level_1'),
            'country': components.get('country'),
            'provider': 'google_maps',
            'timestamp': _now_iso()
        })

    def _osm_reverse(self, latitude: float, longitude: float):
        self._respect_nominatim_rate_limit()
        try:
            response = requests.get(
                NOMINATIM_REVERSE_URL,
                params={'lat': latitude, 'lon': longitude, 'format': 'json', 'addressdetails': 1},
                headers={'User-Agent': self.settings.nominatim_user_agent},
                timeout=self.settings.http_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            return Err(f"request failed: {e}")

        if not data or 'error' in data:
            return Err(str((data or {}).get('error', 'no results')))

        parsed = self._parse_nominatim_address(data)
        return Ok({
            'latitude': latitude,
            'longitude': longitude,
            'formatted_address': data.get('display_name') or parsed['display_name'],
            'city': parsed['city'],
            'state': parsed['state'],
            'country': parsed['country'],
            'provider': 'openstreetmap',
            'timestamp': _now_iso()
        })

    def _parse_nominatim_address(self, data: Dict) -> Dict:
        """
        Extract city/state/country from a Nominatim response

        Args:
            data: Raw JSON response from Nominatim API

        Returns:
            Dict with city, state, country, display_name
        """
        address = data.get('address', {})

        # Try to get city (multiple possible fields)
        city = (
            address.get('city') or
            address.get('town') or
            address.get('village') or
            address.get('hamlet') or
            address.get('county') or
            address.get('municipality')
        )
        state = address.get('state')
        country = address.get('country')

        parts = [part for part in (city, state, country) if part]
        return {
            'city': city,
            'state': state,
            'country': country,
            'display_name': ", ".join(parts) if parts else "Unknown Location"
        }

    def _respect_nominatim_rate_limit(self):
        # Nominatim usage policy: at most 1 request per second
        with self._rate_lock:
            delay = self.settings.nominatim_rate_limit_delay
            time_since_last = time.time() - self.last_request_time
            if time_since_last < delay:
                time.sleep(delay - time_since_last)
            self.last_request_time = time.time()

    # ===== Degraded results =====

    def _degraded_geocode(self, location_name: str, errors: List[str]) -> Dict:
        jitter = self.settings.mock_jitter
        latitude = self.settings.mock_latitude
        longitude = self.settings.mock_longitude
        if jitter:
            latitude += self.rng.uniform(-jitter, jitter)
            longitude += self.rng.uniform(-jitter, jitter)

        return {
            'location_name': location_name,
            'latitude': latitude,
            'longitude': longitude,
            'formatted_address': location_name or 'Unknown Location',
            'confidence': 'low',
            'provider': 'mock',
            'resolved': False,
            'error': 'All geocoding providers failed: ' + '; '.join(errors),
            'timestamp': _now_iso()
        }

    @staticmethod
    def _degraded_reverse(latitude, longitude, errors: List[str]) -> Dict:
        return {
            'latitude': latitude,
            'longitude': longitude,
            'formatted_address': 'Unknown Location',
            'city': None,
            'state': None,
            'country': None,
            'provider': 'mock',
            'error': 'All reverse geocoding providers failed: ' + '; '.join(errors),
            'timestamp': _now_iso()
        }
