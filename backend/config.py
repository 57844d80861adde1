"""
Configuration file for the Disaster Response Coordination backend.

Provider availability is decided once, when the application is created,
and handed to the services as a ProviderSettings instance.
"""
import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = 'False') -> bool:
    return os.getenv(name, default).lower() == 'true'


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


@dataclass(frozen=True)
class ProviderSettings:
    """
    Snapshot of external provider configuration.

    Every provider carries an explicit enabled flag. Confidence thresholds,
    TTLs and timeouts are tunable defaults, not business rules.
    """
    # Credentials
    google_maps_api_key: Optional[str] = None
    mapbox_access_token: Optional[str] = None
    openai_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    twitter_bearer_token: Optional[str] = None

    # Availability
    google_enabled: bool = False
    mapbox_enabled: bool = False
    osm_enabled: bool = True
    openai_enabled: bool = False
    gemini_enabled: bool = False
    twitter_enabled: bool = False
    bluesky_enabled: bool = False
    official_scraping_enabled: bool = False

    # Models
    openai_model: str = 'gpt-4o-mini'
    gemini_model: str = 'gemini-2.0-flash'

    # Timeouts (seconds)
    http_timeout: float = 10.0
    attempt_timeout: float = 15.0

    # Cache TTLs (seconds)
    geocode_ttl: int = 86400
    reverse_geocode_ttl: int = 86400
    location_extraction_ttl: int = 3600
    image_verification_ttl: int = 3600
    content_analysis_ttl: int = 1800
    social_media_ttl: int = 300
    official_updates_ttl: int = 600
    scrape_ttl: int = 900

    # Confidence thresholds
    mapbox_high_relevance: float = 0.8
    mapbox_medium_relevance: float = 0.5
    osm_high_importance: float = 0.5
    osm_medium_importance: float = 0.2

    # Degraded geocoding result
    mock_latitude: float = 40.7128
    mock_longitude: float = -74.0060
    mock_jitter: float = 0.05

    # Nominatim usage policy
    nominatim_user_agent: str = 'DisasterResponsePlatform/1.0'
    nominatim_rate_limit_delay: float = 1.0


class Config:
    """Base configuration"""
    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = _env_flag('DEBUG', 'True')
    TESTING = False
    MAX_CONTENT_LENGTH = 10 * 1024 * 1024  # 10 MB (image uploads)
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Firebase
    FIREBASE_DATABASE_URL = os.getenv('FIREBASE_DATABASE_URL')

    # CORS
    CORS_ORIGINS = os.getenv('CORS_ORIGINS', 'http://localhost:3000').split(',')

    # Rate Limiting
    RATELIMIT_ENABLED = _env_flag('RATE_LIMIT_ENABLED', 'True')
    RATELIMIT_STORAGE_URI = os.getenv('REDIS_URL', 'memory://')

    # Authentication
    # Demo mode attaches a fixed admin user to requests without a token
    AUTH_DEMO_MODE = _env_flag('AUTH_DEMO_MODE', 'True')

    # Cache sweep
    CACHE_CLEANUP_INTERVAL_SECONDS = _env_int('CACHE_CLEANUP_INTERVAL_SECONDS', '3600')

    # External providers
    GOOGLE_MAPS_API_KEY = os.getenv('GOOGLE_MAPS_API_KEY')
    MAPBOX_ACCESS_TOKEN = os.getenv('MAPBOX_ACCESS_TOKEN')
    OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
    GEMINI_API_KEY = os.getenv('GEMINI_API_KEY')
    TWITTER_BEARER_TOKEN = os.getenv('TWITTER_BEARER_TOKEN')
    OSM_ENABLED = _env_flag('OSM_ENABLED', 'True')
    BLUESKY_ENABLED = _env_flag('BLUESKY_ENABLED', 'False')
    OFFICIAL_SCRAPING_ENABLED = _env_flag('OFFICIAL_SCRAPING_ENABLED', 'False')

    PROVIDER_HTTP_TIMEOUT = _env_float('PROVIDER_HTTP_TIMEOUT', '10')
    PROVIDER_ATTEMPT_TIMEOUT = _env_float('PROVIDER_ATTEMPT_TIMEOUT', '15')

    MAPBOX_HIGH_RELEVANCE = _env_float('MAPBOX_HIGH_RELEVANCE', '0.8')
    MAPBOX_MEDIUM_RELEVANCE = _env_float('MAPBOX_MEDIUM_RELEVANCE', '0.5')
    OSM_HIGH_IMPORTANCE = _env_float('OSM_HIGH_IMPORTANCE', '0.5')
    OSM_MEDIUM_IMPORTANCE = _env_float('OSM_MEDIUM_IMPORTANCE', '0.2')

    GEOCODING_MOCK_LATITUDE = _env_float('GEOCODING_MOCK_LATITUDE', '40.7128')
    GEOCODING_MOCK_LONGITUDE = _env_float('GEOCODING_MOCK_LONGITUDE', '-74.0060')
    GEOCODING_MOCK_JITTER = _env_float('GEOCODING_MOCK_JITTER', '0.05')
    NOMINATIM_RATE_LIMIT_DELAY = _env_float('NOMINATIM_RATE_LIMIT_DELAY', '1.0')

    @classmethod
    def provider_settings(cls) -> ProviderSettings:
        """Build the provider settings snapshot for this configuration."""
        return ProviderSettings(
            google_maps_api_key=cls.GOOGLE_MAPS_API_KEY,
            mapbox_access_token=cls.MAPBOX_ACCESS_TOKEN,
            openai_api_key=cls.OPENAI_API_KEY,
            gemini_api_key=cls.GEMINI_API_KEY,
            twitter_bearer_token=cls.TWITTER_BEARER_TOKEN,
            google_enabled=bool(cls.GOOGLE_MAPS_API_KEY),
            mapbox_enabled=bool(cls.MAPBOX_ACCESS_TOKEN),
            osm_enabled=cls.OSM_ENABLED,
            openai_enabled=bool(cls.OPENAI_API_KEY),
            gemini_enabled=bool(cls.GEMINI_API_KEY),
            twitter_enabled=bool(cls.TWITTER_BEARER_TOKEN),
            bluesky_enabled=cls.BLUESKY_ENABLED,
            official_scraping_enabled=cls.OFFICIAL_SCRAPING_ENABLED,
            http_timeout=cls.PROVIDER_HTTP_TIMEOUT,
            attempt_timeout=cls.PROVIDER_ATTEMPT_TIMEOUT,
            mapbox_high_relevance=cls.MAPBOX_HIGH_RELEVANCE,
            mapbox_medium_relevance=cls.MAPBOX_MEDIUM_RELEVANCE,
            osm_high_importance=cls.OSM_HIGH_IMPORTANCE,
            osm_medium_importance=cls.OSM_MEDIUM_IMPORTANCE,
            mock_latitude=cls.GEOCODING_MOCK_LATITUDE,
            mock_longitude=cls.GEOCODING_MOCK_LONGITUDE,
            mock_jitter=cls.GEOCODING_MOCK_JITTER,
            nominatim_rate_limit_delay=cls.NOMINATIM_RATE_LIMIT_DELAY,
        )


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    AUTH_DEMO_MODE = _env_flag('AUTH_DEMO_MODE', 'False')


class TestingConfig(Config):
    """Testing configuration (no network providers, no rate limits)"""
    TESTING = True
    DEBUG = False
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = 'memory://'
    AUTH_DEMO_MODE = True
    CACHE_CLEANUP_INTERVAL_SECONDS = 0
    GOOGLE_MAPS_API_KEY = None
    MAPBOX_ACCESS_TOKEN = None
    OPENAI_API_KEY = None
    GEMINI_API_KEY = None
    TWITTER_BEARER_TOKEN = None
    OSM_ENABLED = False
    BLUESKY_ENABLED = False
    OFFICIAL_SCRAPING_ENABLED = False
    NOMINATIM_RATE_LIMIT_DELAY = 0.0


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
