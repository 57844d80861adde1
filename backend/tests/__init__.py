"""
Test suite for the disaster response backend.

This package contains:
- conftest.py: in-memory Firebase database, controllable clock, app fixtures
- test_cache_store.py / test_provider_chain.py: TTL cache and provider fallback
- test_geocoding_service.py / test_content_analysis.py: provider chains with mocked HTTP and AI clients
- test_social_media.py / test_official_updates.py: aggregation, ranking, scraping
- test_api.py: end-to-end API tests through the Flask test client

Run tests:
    cd backend
    source venv/bin/activate
    python -m pytest tests/
"""
