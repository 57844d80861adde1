"""
API integration tests against the in-memory database

Every external provider is disabled in the testing config, so geocoding,
classification and image verification run their degraded paths.
"""
import json
from unittest.mock import Mock, patch

import pytest

from services.auth_service import DEMO_USER, AuthService


def services_of(app):
    return app.extensions['disaster_services']


def as_user(app, user_id, admin=False):
    """Switch the app to token auth and return headers for the given user"""
    verifier = Mock(return_value={'uid': user_id, 'email': f'{user_id}@example.com', 'admin': admin})
    services_of(app).auth = AuthService(demo_mode=False, verifier=verifier)
    return {'Authorization': 'Bearer test-token'}


def create_disaster(client, **overrides):
    body = {
        'title': 'Queens Flooding',
        'description': 'Severe flooding across Queens, NY neighborhoods',
        'tags': ['flood'],
        'severity': 'high',
        **overrides
    }
    response = client.post('/api/disasters', json=body)
    assert response.status_code == 201, response.get_json()
    return response.get_json()


class TestHealthAndErrors:
    """Basic endpoints and error handlers"""

    def test_health(self, client):
        """Health check reports the service as healthy"""
        response = client.get('/api/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    def test_security_headers(self, client):
        """Security headers are set on API responses"""
        response = client.get('/api/health')
        assert response.headers['X-Frame-Options'] == 'DENY'
        assert response.headers['X-Content-Type-Options'] == 'nosniff'

    def test_unknown_route_is_json_404(self, client):
        """Unknown paths answer with JSON"""
        response = client.get('/api/nothing-here')
        assert response.status_code == 404
        assert response.get_json()['error'] == 'Not found'

    def test_store_failure_is_500(self, client, fake_db):
        """Database failures surface as 5xx"""
        fake_db.failing = True
        response = client.get('/api/disasters')
        assert response.status_code == 500
        assert response.get_json()['error'] == 'Database error'


class TestDisasterEndpoints:
    """Disaster CRUD"""

    def test_create_extracts_location_from_description(self, client):
        """Location is extracted from the description and geocoding degrades cleanly"""
        disaster = create_disaster(client)

        assert disaster['location_name'] == 'Queens, NY'
        assert disaster['latitude'] is None
        assert disaster['location_provider'] == 'mock'
        assert disaster['owner_id'] == DEMO_USER['user_id']
        assert disaster['status'] == 'active'
        assert disaster['audit_trail'][0]['action'] == 'created'

    def test_create_with_explicit_coordinates(self, client):
        """Explicit coordinates are stored as given"""
        disaster = create_disaster(client, location_name='Astoria', latitude=40.7644, longitude=-73.9235)
        assert disaster['latitude'] == 40.7644
        assert disaster['location_name'] == 'Astoria'
        assert disaster['location_provider'] == 'user'

    def test_create_validation_error(self, client):
        """Missing description is a 400"""
        response = client.post('/api/disasters', json={'title': 'Queens Flooding'})
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Title and description are required'

    def test_create_requires_body(self, client):
        """Empty body is a 400"""
        response = client.post('/api/disasters', data='', content_type='application/json')
        assert response.status_code == 400

    def test_get_and_list(self, client):
        """Created disasters can be fetched and filtered by tag"""
        disaster = create_disaster(client)
        create_disaster(client, title='Bronx Fire', tags=['fire'], description='Warehouse fire in the Bronx area')

        assert client.get(f"/api/disasters/{disaster['id']}").get_json()['title'] == 'Queens Flooding'
        listing = client.get('/api/disasters?tag=flood').get_json()
        assert listing['total'] == 1
        assert listing['disasters'][0]['id'] == disaster['id']

    def test_list_by_location(self, client):
        """Proximity filter keeps disasters inside the radius"""
        create_disaster(client, latitude=40.7128, longitude=-74.0060, location_name='Lower Manhattan')
        create_disaster(client, latitude=42.3601, longitude=-71.0589, location_name='Boston')

        listing = client.get('/api/disasters?location=40.72,-74.00&radius=10').get_json()
        assert [d['location_name'] for d in listing['disasters']] == ['Lower Manhattan']

    def test_get_missing(self, client):
        """Unknown ids are 404"""
        assert client.get('/api/disasters/missing').status_code == 404

    def test_update_appends_audit_entry(self, client):
        """Owners can update; each update is audited"""
        disaster = create_disaster(client)
        response = client.put(f"/api/disasters/{disaster['id']}", json={'status': 'monitoring'})

        assert response.status_code == 200
        updated = response.get_json()
        assert updated['status'] == 'monitoring'
        assert [entry['action'] for entry in updated['audit_trail']] == ['created', 'updated']

    def test_update_by_non_owner_forbidden(self, app, client):
        """Only the owner or an admin may update"""
        disaster = create_disaster(client)
        headers = as_user(app, 'someone_else')

        response = client.put(f"/api/disasters/{disaster['id']}", json={'status': 'resolved'}, headers=headers)
        assert response.status_code == 403

    def test_requires_authentication_outside_demo_mode(self, app, client):
        """Writes need a user when demo mode is off"""
        services_of(app).auth = AuthService(demo_mode=False, verifier=Mock())
        response = client.post('/api/disasters', json={'title': 'Queens Flooding', 'description': 'x' * 20})
        assert response.status_code == 401

    def test_invalid_token(self, app, client):
        """A rejected token is a 401"""
        services_of(app).auth = AuthService(verifier=Mock(side_effect=RuntimeError('expired')))
        response = client.post('/api/disasters', json={}, headers={'Authorization': 'Bearer bad'})
        assert response.status_code == 401

    def test_delete_cascades(self, client):
        """Deleting a disaster removes its resources and reports"""
        disaster = create_disaster(client)
        client.post('/api/resources', json={'disaster_id': disaster['id'], 'name': 'Shelter A', 'type': 'shelter'})
        client.post('/api/reports', json={'disaster_id': disaster['id'], 'content': 'Basement flooded on 31st St'})

        response = client.delete(f"/api/disasters/{disaster['id']}")

        assert response.status_code == 200
        body = response.get_json()
        assert body['resources_deleted'] == 1
        assert body['reports_deleted'] == 1
        assert client.get('/api/resources').get_json()['total'] == 0
        assert client.get(f"/api/disasters/{disaster['id']}").status_code == 404

    def test_delete_is_one_write_without_indexes(self, client, fake_db):
        """The cascade needs no .indexOn rules and writes once at the root"""
        disaster = create_disaster(client)
        other = create_disaster(client, title='Bronx Flooding')
        client.post('/api/reports', json={'disaster_id': disaster['id'], 'content': 'Basement flooded on 31st St'})
        client.post('/api/reports', json={'disaster_id': other['id'], 'content': 'Water over the curb on Grand Concourse'})
        fake_db.indexes = {}
        fake_db.requests.clear()

        response = client.delete(f"/api/disasters/{disaster['id']}")

        assert response.status_code == 200
        writes = [(method, path) for method, path in fake_db.requests if method != 'get']
        assert writes == [('patch', '')]
        remaining = client.get('/api/reports').get_json()
        assert remaining['total'] == 1

    def test_malformed_id_is_not_found(self, client):
        """Ids Firebase cannot address answer 404 instead of 500"""
        assert client.get('/api/disasters/bad.id').status_code == 404
        assert client.delete('/api/disasters/bad$id').status_code == 404

    def test_disaster_stats(self, client):
        """Stats count resources by type and reports by status"""
        disaster = create_disaster(client)
        client.post('/api/resources', json={'disaster_id': disaster['id'], 'name': 'Clinic', 'type': 'medical'})
        client.post('/api/reports', json={'disaster_id': disaster['id'], 'content': 'Water is rising quickly here'})

        stats = client.get(f"/api/disasters/{disaster['id']}/stats").get_json()
        assert stats['resources'] == {'total': 1, 'by_type': {'medical': 1}}
        assert stats['reports']['by_status']['pending'] == 1

    def test_create_broadcasts_event(self, app, client):
        """Subscribers receive disaster_created"""
        q = services_of(app).notifier.subscribe()
        disaster = create_disaster(client)

        event_name, message = q.get_nowait()
        assert event_name == 'disaster_created'
        assert json.loads(message)['data']['id'] == disaster['id']


class TestResourceEndpoints:
    """Resource CRUD and proximity search"""

    def test_nearby_sorted_by_distance(self, client):
        """Only resources inside the radius, nearest first"""
        disaster = create_disaster(client)
        for name, lat, lon in [('Far', 40.80, -73.95), ('Near', 40.7130, -74.0062), ('Boston', 42.36, -71.06)]:
            client.post('/api/resources', json={
                'disaster_id': disaster['id'], 'name': name, 'type': 'shelter', 'latitude': lat, 'longitude': lon
            })

        body = client.get('/api/resources/nearby?lat=40.7128&lon=-74.0060&radius=15').get_json()

        assert [r['name'] for r in body['resources']] == ['Near', 'Far']
        assert body['resources'][0]['distance_km'] < body['resources'][1]['distance_km']

    def test_nearby_requires_coordinates(self, client):
        """lat and lon are required"""
        assert client.get('/api/resources/nearby?lat=40.7').status_code == 400

    def test_create_for_unknown_disaster(self, client):
        """Resources must belong to an existing disaster"""
        response = client.post('/api/resources', json={'disaster_id': 'missing', 'name': 'Shelter', 'type': 'shelter'})
        assert response.status_code == 404

    def test_update_and_delete(self, client):
        """Creator can update and delete a resource"""
        disaster = create_disaster(client)
        resource = client.post('/api/resources', json={
            'disaster_id': disaster['id'], 'name': 'Shelter A', 'type': 'shelter'
        }).get_json()

        updated = client.put(f"/api/resources/{resource['id']}", json={'status': 'limited'}).get_json()
        assert updated['status'] == 'limited'
        assert client.delete(f"/api/resources/{resource['id']}").status_code == 200
        assert client.get(f"/api/resources/{resource['id']}").status_code == 404


class TestReportEndpoints:
    """Citizen reports"""

    def test_create_report_is_scored_and_pending(self, client):
        """Reports are classified, prioritized and start pending"""
        disaster = create_disaster(client)
        response = client.post('/api/reports', json={
            'disaster_id': disaster['id'],
            'content': 'URGENT: family trapped, need rescue on Main St'
        })

        assert response.status_code == 201
        report = response.get_json()
        assert report['verification_status'] == 'pending'
        assert report['analysis']['urgency'] == 'critical'
        assert report['priority'] == 10

    def test_degraded_image_check_keeps_report_pending(self, client):
        """An unanalyzed image never auto-verifies a report"""
        disaster = create_disaster(client)
        report = client.post('/api/reports', json={
            'disaster_id': disaster['id'],
            'content': 'Photo of the flooded underpass',
            'image_url': 'https://example.com/underpass.jpg'
        }).get_json()

        assert report['verification_status'] == 'pending'
        assert report['image_verification']['authenticity'] == 'suspicious'

    @pytest.mark.parametrize('authenticity,expected', [('verified', 'verified'), ('rejected', 'rejected')])
    def test_image_verdict_sets_status(self, app, client, authenticity, expected):
        """Verified and rejected images decide the initial status"""
        disaster = create_disaster(client)
        with patch.object(services_of(app).content_analysis, 'verify_image',
                          return_value={'authenticity': authenticity, 'provider': 'openai'}):
            report = client.post('/api/reports', json={
                'disaster_id': disaster['id'],
                'content': 'Photo of the flooded underpass',
                'image_url': 'https://example.com/underpass.jpg'
            }).get_json()

        assert report['verification_status'] == expected

    def test_private_image_url_rejected(self, client):
        """SSRF-prone image URLs are rejected before any fetch"""
        disaster = create_disaster(client)
        response = client.post('/api/reports', json={
            'disaster_id': disaster['id'],
            'content': 'Photo of the flooded underpass',
            'image_url': 'https://192.168.0.10/photo.jpg'
        })
        assert response.status_code == 400

    def test_verify_requires_admin(self, app, client):
        """Non-admins cannot verify reports"""
        disaster = create_disaster(client)
        report = client.post('/api/reports', json={
            'disaster_id': disaster['id'], 'content': 'Basement flooded on 31st St'
        }).get_json()

        headers = as_user(app, 'regular_user')
        response = client.put(f"/api/reports/{report['id']}/verify", json={'verification_status': 'verified'},
                              headers=headers)
        assert response.status_code == 403

    def test_admin_verifies_report(self, app, client):
        """Admins can verify; the change is broadcast"""
        disaster = create_disaster(client)
        report = client.post('/api/reports', json={
            'disaster_id': disaster['id'], 'content': 'Basement flooded on 31st St'
        }).get_json()
        q = services_of(app).notifier.subscribe()

        response = client.put(f"/api/reports/{report['id']}/verify", json={'verification_status': 'verified'})

        assert response.status_code == 200
        assert response.get_json()['verification_status'] == 'verified'
        assert q.get_nowait()[0] == 'report_verified'

    def test_invalid_verification_status(self, client):
        """Unknown statuses are a 400"""
        response = client.put('/api/reports/anything/verify', json={'verification_status': 'maybe'})
        assert response.status_code == 400

    def test_report_stats(self, client):
        """Stats cover every verification status"""
        disaster = create_disaster(client)
        client.post('/api/reports', json={'disaster_id': disaster['id'], 'content': 'Basement flooded on 31st St'})

        stats = client.get(f"/api/reports/stats?disaster_id={disaster['id']}").get_json()
        assert stats['total'] == 1
        assert stats['by_status'] == {'pending': 1, 'verified': 0, 'rejected': 0}

    def test_delete_own_report(self, app, client):
        """Authors can delete their reports; others cannot"""
        disaster = create_disaster(client)
        report = client.post('/api/reports', json={
            'disaster_id': disaster['id'], 'content': 'Basement flooded on 31st St'
        }).get_json()

        headers = as_user(app, 'stranger')
        assert client.delete(f"/api/reports/{report['id']}", headers=headers).status_code == 403

        headers = as_user(app, DEMO_USER['user_id'])
        assert client.delete(f"/api/reports/{report['id']}", headers=headers).status_code == 200


class TestGeocodingEndpoints:
    """Geocoding endpoints"""

    def test_geocode_degraded(self, client):
        """With no providers the mock result is returned"""
        body = client.post('/api/geocoding/geocode', json={'location_name': 'Queens'}).get_json()
        assert body['provider'] == 'mock'
        assert body['confidence'] == 'low'

    def test_geocode_validation(self, client):
        """Missing names and unknown providers are 400s"""
        assert client.post('/api/geocoding/geocode', json={}).status_code == 400
        assert client.post('/api/geocoding/geocode', json={'location_name': 'Queens', 'provider': 'bing'}).status_code == 400

    def test_reverse_validation(self, client):
        """Coordinates must be in range"""
        assert client.post('/api/geocoding/reverse', json={'latitude': 100, 'longitude': 0}).status_code == 400

    def test_batch_limit(self, client):
        """At most 10 locations per batch"""
        response = client.post('/api/geocoding/batch', json={'locations': ['Queens'] * 11})
        assert response.status_code == 400

    def test_extract_and_geocode(self, client):
        """Extracted location is geocoded"""
        body = client.post('/api/geocoding/extract-and-geocode',
                           json={'text': 'Power lines down in Park Slope, NYC'}).get_json()
        assert body['extraction']['extracted_location'] == 'Park Slope, NYC'
        assert body['geocoding']['location_name'] == 'Park Slope, NYC'

    def test_providers(self, client):
        """Providers endpoint lists all three"""
        body = client.get('/api/geocoding/providers').get_json()
        assert [p['name'] for p in body['providers']] == ['google', 'mapbox', 'osm']


class TestAggregationEndpoints:
    """Social media, official updates and image verification"""

    def test_social_media(self, client):
        """Sample feed is ranked"""
        body = client.get('/api/social-media/d1').get_json()
        assert body['total_posts'] == 5
        priorities = [p['priority'] for p in body['posts']]
        assert priorities == sorted(priorities, reverse=True)

    def test_social_media_priority_filter(self, client):
        """Priority endpoint applies the minimum"""
        body = client.get('/api/social-media/d1/priority?min_priority=9').get_json()
        assert all(p['priority'] >= 9 for p in body['posts'])

    def test_social_media_analyze(self, client):
        """Single posts can be analyzed"""
        body = client.post('/api/social-media/d1/analyze', json={'content': 'SOS trapped in Red Hook, NY'}).get_json()
        assert body['analysis']['urgency'] == 'critical'
        assert 'Red Hook, NY' in body['location_mentions']

    def test_official_updates(self, client):
        """Filters and pagination are applied"""
        body = client.get('/api/official-updates/d1?min_priority=high&limit=2').get_json()
        assert body['total_updates'] == 3
        assert len(body['updates']) == 2
        assert body['updates'][0]['priority'] == 'critical'

    def test_critical_updates(self, client):
        """Critical endpoint returns only critical updates"""
        body = client.get('/api/official-updates/d1/critical').get_json()
        assert [u['priority'] for u in body['updates']] == ['critical']

    def test_official_update_analysis(self, client):
        """Key information is extracted from posted text"""
        body = client.post('/api/official-updates/d1/analyze',
                           json={'content': 'Evacuate now. Call 718-555-0100 before 6 PM.'}).get_json()
        assert body['key_information']['contacts'] == ['718-555-0100']

    def test_official_sources(self, client):
        """Configured sources are listed"""
        keys = [s['key'] for s in client.get('/api/official-updates/sources').get_json()['sources']]
        assert keys == ['fema', 'red_cross', 'nyc_em', 'gdacs']

    def test_verify_image_url(self, client):
        """Degraded image checks are suspicious"""
        body = client.post('/api/image-verification/verify-url',
                           json={'image_url': 'https://example.com/flood.jpg'}).get_json()
        assert body['authenticity'] == 'suspicious'

    def test_verify_image_url_rejects_private(self, client):
        """Private addresses are rejected"""
        response = client.post('/api/image-verification/verify-url', json={'image_url': 'https://127.0.0.1/a.jpg'})
        assert response.status_code == 400

    def test_batch_verify_limit(self, client):
        """At most 5 images per batch"""
        images = [{'image_url': 'https://example.com/a.jpg'}] * 6
        assert client.post('/api/image-verification/batch-verify', json={'images': images}).status_code == 400


class TestCacheEndpoints:
    """Cache maintenance"""

    def test_status_cleanup_and_clear(self, app, client):
        """Admin can inspect, sweep and clear the cache"""
        cache = services_of(app).cache
        cache.set('stale', 1, ttl_seconds=-1)
        cache.set('fresh', 2, ttl_seconds=3600)

        assert client.get('/api/cache/status').get_json() == {'entries': 2, 'expired': 1}
        assert client.post('/api/cache/cleanup').get_json()['removed'] == 1
        client.post('/api/cache/clear')
        assert client.get('/api/cache/status').get_json()['entries'] == 0


class TestMalformedBodies:
    """Well-formed JSON of the wrong shape is a 400, never a 500"""

    @pytest.mark.parametrize('path', [
        '/api/geocoding/geocode',
        '/api/geocoding/extract-and-geocode',
        '/api/official-updates/d1/analyze',
        '/api/image-verification/batch-verify',
        '/api/disasters',
    ])
    def test_non_object_body(self, client, path):
        """A JSON array body is rejected before any field access"""
        response = client.post(path, json=['not', 'an', 'object'])
        assert response.status_code == 400
        assert 'JSON object' in response.get_json()['message']

    def test_batch_verify_with_number_item(self, client):
        """Image entries must be objects or URL strings"""
        response = client.post('/api/image-verification/batch-verify', json={'images': [123]})
        assert response.status_code == 400

    def test_batch_verify_with_number_url(self, client):
        """A non-string image_url inside an object is reported per item"""
        body = client.post('/api/image-verification/batch-verify',
                           json={'images': [{'image_url': 123}]}).get_json()
        assert body['results'][0] == {'image_url': 123, 'success': False, 'error': 'Image URL must be a string'}

    def test_official_analysis_with_list_content(self, client):
        """Update content must be text"""
        response = client.post('/api/official-updates/d1/analyze', json={'content': ['FEMA', 'update']})
        assert response.status_code == 400
        assert 'content must be a string' in response.get_json()['message']

    def test_geocode_with_number_location(self, client):
        """Location names must be text"""
        response = client.post('/api/geocoding/geocode', json={'location_name': 42})
        assert response.status_code == 400

    def test_extract_with_object_text(self, client):
        """Free text must be text"""
        response = client.post('/api/geocoding/extract-and-geocode', json={'text': {'nested': 'Queens'}})
        assert response.status_code == 400

    def test_verify_url_with_list(self, client):
        """A list image_url is an invalid URL, not a crash"""
        response = client.post('/api/image-verification/verify-url', json={'image_url': ['https://example.com/a.jpg']})
        assert response.status_code == 400
        assert 'must be a string' in response.get_json()['error']
