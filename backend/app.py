from flask import Blueprint, Flask, Response, abort, current_app, g, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from openai import OpenAI
from google import genai
import os
import logging
import threading
from functools import wraps
from datetime import datetime, timezone
from dotenv import load_dotenv
from config import config
from firebase_setup import init_firebase
from services.auth_service import AuthService
from services.cache_store import CacheStore
from services.content_analysis_service import ContentAnalysisService
from services.geocoding_service import GeocodingService
from services.official_updates_service import OfficialUpdatesService, filter_by_priority as filter_updates_by_priority
from services.priority import calculate_priority
from services.provider_chain import ProviderChain
from services.realtime_notifier import RealtimeNotifier
from services.record_store import RecordStore, StoreError
from services.social_media_service import SocialMediaService, filter_by_priority as filter_posts_by_priority
from utils.distance import within_radius
from utils.secure_logging import hash_user_id, log_action, redact_coordinates, redact_pii
from utils.text_patterns import extract_location_mentions
from utils.url_validator import validate_image_upload, validate_image_url
from utils.validators import (
    CoordinateValidator,
    DisasterValidator,
    GeocodingValidator,
    ReportValidator,
    ResourceValidator,
    parse_csv_param,
    sanitize_text,
)

load_dotenv()

logger = logging.getLogger(__name__)

# Rate Limiting Configuration
# Storage comes from RATELIMIT_STORAGE_URI (Redis in production, memory in development)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per day", "200 per hour"]
)

api = Blueprint('api', __name__, url_prefix='/api')

MAX_PAGE_SIZE = 100
MAX_IMAGE_BATCH = 5


class ServiceRegistry:
    """Services shared by all requests, built once by create_app()"""

    def __init__(self, settings, db_client, auth_service=None, openai_client=None, gemini_client=None):
        self.settings = settings
        self.cache = CacheStore(db_client)
        self.chain = ProviderChain(self.cache, attempt_timeout=settings.attempt_timeout)
        self.records = RecordStore(db_client)
        self.auth = auth_service or AuthService()
        self.notifier = RealtimeNotifier()
        self.geocoding = GeocodingService(self.chain, settings)
        self.content_analysis = ContentAnalysisService(
            self.chain, settings, openai_client=openai_client, gemini_client=gemini_client
        )
        self.social_media = SocialMediaService(self.chain, settings, self.content_analysis)
        self.official_updates = OfficialUpdatesService(self.chain, settings)


def build_services(settings, db_client, demo_mode: bool = False) -> ServiceRegistry:
    """Create AI clients for enabled providers and wire every service."""
    openai_client = OpenAI(api_key=settings.openai_api_key) if settings.openai_enabled else None

    gemini_client = None
    if settings.gemini_enabled:
        try:
            gemini_client = genai.Client(api_key=settings.gemini_api_key)
            logger.info("Gemini client initialized successfully (fallback enabled)")
        except Exception as e:
            logger.warning(f"Failed to initialize Gemini client: {e}")

    return ServiceRegistry(
        settings,
        db_client,
        auth_service=AuthService(demo_mode=demo_mode),
        openai_client=openai_client,
        gemini_client=gemini_client,
    )


def _services() -> ServiceRegistry:
    return current_app.extensions['disaster_services']


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_body() -> dict:
    """Request JSON as a dict ({} when absent). A non-object body is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description='Request body must be a JSON object')
    return data


def _text_field(data: dict, *names) -> str:
    """First present string field, stripped. A non-string value is a 400."""
    for name in names:
        value = data.get(name)
        if value is None or value == '':
            continue
        if not isinstance(value, str):
            abort(400, description=f'{name} must be a string')
        return value.strip()
    return ''


def _pagination(default_limit: int = 50):
    """Read offset/limit query parameters, clamped to sane bounds."""
    limit = request.args.get('limit', default_limit, type=int)
    offset = request.args.get('offset', 0, type=int)
    return max(0, offset), max(1, min(limit, MAX_PAGE_SIZE))


def _resolve_location(location_name, latitude=None, longitude=None, text=None) -> dict:
    """
    Work out location fields for a record

    Explicit coordinates win (reverse geocoded for a name if needed). Otherwise
    the name, or one extracted from text, is geocoded. Degraded geocodes are
    reported but their placeholder coordinates are never stored.
    """
    services = _services()

    if latitude is not None and longitude is not None:
        latitude, longitude = float(latitude), float(longitude)
        if not location_name:
            reverse = services.geocoding.reverse_geocode(latitude, longitude)
            location_name = reverse['formatted_address']
        return {
            'location_name': location_name,
            'latitude': latitude,
            'longitude': longitude,
            'location_confidence': 'high',
            'location_provider': 'user'
        }

    if not location_name and text:
        extraction = services.content_analysis.extract_location(text)
        location_name = extraction['extracted_location']

    if not location_name or location_name == 'Unknown Location':
        return {
            'location_name': 'Unknown Location',
            'latitude': None,
            'longitude': None,
            'location_confidence': 'low',
            'location_provider': 'none'
        }

    geocode = services.geocoding.geocode(location_name)
    resolved = geocode.get('provider') != 'mock'
    return {
        'location_name': location_name,
        'latitude': geocode['latitude'] if resolved else None,
        'longitude': geocode['longitude'] if resolved else None,
        'location_confidence': geocode.get('confidence', 'low'),
        'location_provider': geocode.get('provider')
    }


# ===== MIDDLEWARE & DECORATORS =====

def require_user(f):
    """
    Decorator to require an authenticated user
    Verifies the Firebase ID token; demo mode attaches the demo user instead
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            user = _services().auth.resolve_user(request.headers.get('Authorization'))
        except ValueError as e:
            return jsonify({'error': f'Authentication failed: {str(e)}'}), 401

        if not user:
            return jsonify({'error': 'Authentication required'}), 401

        g.user = user
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Decorator to require an admin user (Firebase 'admin' custom claim)"""
    @wraps(f)
    @require_user
    def decorated_function(*args, **kwargs):
        if not g.user.get('is_admin'):
            logger.warning(f"User {hash_user_id(g.user.get('user_id'))} attempted to access admin endpoint")
            return jsonify({'error': 'Admin access required'}), 403
        return f(*args, **kwargs)

    return decorated_function


def set_security_headers(response):
    """Add security headers to all API responses."""
    if os.getenv('FLASK_ENV') == 'production':
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    return response


# ===== HEALTH & CACHE =====

@api.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    services = _services()
    return jsonify({
        'status': 'healthy',
        'service': 'disaster-response-api',
        'timestamp': _utc_now(),
        'geocoding_primary': services.geocoding.available_providers()['primary_provider'],
        'realtime_subscribers': services.notifier.subscriber_count
    })


@api.route('/cache/status', methods=['GET'])
def cache_status():
    """Cache entry counts"""
    return jsonify(_services().cache.stats())


@api.route('/cache/cleanup', methods=['POST'])
@require_admin
def cleanup_cache():
    """Remove expired cache entries now (admin-only)"""
    removed = _services().cache.cleanup()
    log_action('cache_cleanup', removed=removed, user_id=g.user['user_id'])
    return jsonify({'status': 'cleaned', 'removed': removed})


@api.route('/cache/clear', methods=['POST'])
@require_admin
def clear_cache():
    """Drop the whole cache (admin-only)"""
    _services().cache.clear()
    log_action('cache_cleared', user_id=g.user['user_id'])
    return jsonify({'status': 'cleared'})


# ===== REALTIME EVENTS =====

@api.route('/events', methods=['GET'])
def stream_events():
    """
    Server-Sent Events stream of domain events

    Events: disaster_created, disaster_updated, resources_updated,
    report_created, report_verified, report_deleted
    """
    notifier = _services().notifier
    q = notifier.subscribe()

    resp = Response(notifier.stream(q), mimetype='text/event-stream')
    resp.headers['Cache-Control'] = 'no-cache'
    resp.headers['X-Accel-Buffering'] = 'no'
    return resp


# ===== DISASTER ENDPOINTS =====

@api.route('/disasters', methods=['GET'])
def list_disasters():
    """
    List disasters, newest first

    Query Parameters:
        - tag, owner_id, status, severity (optional filters)
        - location=lat,lon and radius (km, default 10) for a proximity filter
        - limit (default 50, max 100), offset
    """
    offset, limit = _pagination()
    filters = {
        'tags': request.args.get('tag'),
        'owner_id': request.args.get('owner_id'),
        'status': request.args.get('status'),
        'severity': request.args.get('severity'),
    }

    location = request.args.get('location')
    if location:
        try:
            lat, lon = [float(part) for part in location.split(',')]
        except ValueError:
            return jsonify({'error': 'location must be "lat,lon"'}), 400
        if not CoordinateValidator.validate_coordinates(lat, lon):
            return jsonify({'error': 'Invalid coordinates'}), 400

        radius_km = request.args.get('radius', 10, type=float)
        everything = _services().records.list('disasters', filters)['items']
        matching = within_radius(everything, lat, lon, radius_km)
        page, total = matching[offset:offset + limit], len(matching)
    else:
        result = _services().records.list('disasters', filters, offset=offset, limit=limit)
        page, total = result['items'], result['total']

    log_action('disasters_fetched', count=len(page), filters={k: v for k, v in filters.items() if v})
    return jsonify({'disasters': page, 'total': total, 'offset': offset, 'limit': limit})


@api.route('/disasters/<disaster_id>', methods=['GET'])
def get_disaster(disaster_id):
    """Get a single disaster"""
    disaster = _services().records.get('disasters', disaster_id)
    if disaster is None:
        return jsonify({'error': 'Disaster not found'}), 404
    return jsonify(disaster)


@api.route('/disasters', methods=['POST'])
@limiter.limit("30 per hour")
@require_user
def create_disaster():
    """
    Create a disaster

    The location is taken from explicit coordinates, location_name, or
    extracted from the description, then geocoded.
    """
    data = _json_body()
    if not data:
        return jsonify({'error': 'Request body is required'}), 400

    is_valid, error_message = DisasterValidator.validate_disaster_data(data)
    if not is_valid:
        return jsonify({'error': error_message}), 400

    services = _services()
    title = sanitize_text(data['title'], DisasterValidator.TITLE_MAX_LENGTH)
    description = sanitize_text(data['description'])
    location = _resolve_location(
        sanitize_text(data.get('location_name'), 200),
        data.get('latitude'),
        data.get('longitude'),
        text=description
    )

    now = _utc_now()
    record = {
        'title': title,
        'description': description,
        **location,
        'tags': [sanitize_text(tag, 50) for tag in data.get('tags', [])],
        'severity': str(data.get('severity', 'medium')).lower(),
        'status': data.get('status', 'active'),
        'owner_id': g.user['user_id'],
        'created_at': now,
        'updated_at': now,
        'audit_trail': [{
            'action': 'created',
            'user_id': g.user['user_id'],
            'timestamp': now,
            'changes': {'title': title, 'location_name': location['location_name']}
        }]
    }

    disaster = services.records.insert('disasters', record)
    services.notifier.broadcast('disaster_created', disaster)
    log_action('disaster_created', disaster_id=disaster['id'], user_id=g.user['user_id'])

    return jsonify(disaster), 201


@api.route('/disasters/<disaster_id>', methods=['PUT'])
@require_user
def update_disaster(disaster_id):
    """Update a disaster (owner or admin)"""
    data = _json_body()
    if not data:
        return jsonify({'error': 'Request body is required'}), 400

    services = _services()
    disaster = services.records.get('disasters', disaster_id)
    if disaster is None:
        return jsonify({'error': 'Disaster not found'}), 404

    if not services.auth.can_modify(g.user, disaster):
        return jsonify({'error': 'Forbidden', 'message': 'You can only update your own disasters.'}), 403

    is_valid, error_message = DisasterValidator.validate_disaster_data(data, partial=True)
    if not is_valid:
        return jsonify({'error': error_message}), 400

    allowed_fields = ['title', 'description', 'tags', 'severity', 'status']
    changes = {k: data[k] for k in allowed_fields if k in data}
    if 'title' in changes:
        changes['title'] = sanitize_text(changes['title'], DisasterValidator.TITLE_MAX_LENGTH)
    if 'description' in changes:
        changes['description'] = sanitize_text(changes['description'])
    if 'tags' in changes:
        changes['tags'] = [sanitize_text(tag, 50) for tag in changes['tags']]

    location_changed = data.get('location_name') != disaster.get('location_name') and 'location_name' in data
    if location_changed or data.get('latitude') is not None:
        changes.update(_resolve_location(
            sanitize_text(data.get('location_name'), 200),
            data.get('latitude'),
            data.get('longitude')
        ))

    if not changes:
        return jsonify({'error': 'No valid fields to update'}), 400

    now = _utc_now()
    changes['updated_at'] = now
    changes['audit_trail'] = (disaster.get('audit_trail') or []) + [{
        'action': 'updated',
        'user_id': g.user['user_id'],
        'timestamp': now,
        'changes': {k: v for k, v in changes.items() if k not in ('audit_trail', 'updated_at')}
    }]

    updated = services.records.update('disasters', disaster_id, changes)
    services.notifier.broadcast('disaster_updated', {'action': 'updated', 'disaster': updated})
    log_action('disaster_updated', disaster_id=disaster_id, fields=sorted(changes.keys()))

    return jsonify(updated)


@api.route('/disasters/<disaster_id>', methods=['DELETE'])
@require_user
def delete_disaster(disaster_id):
    """Delete a disaster with its resources and reports (owner or admin)"""
    services = _services()
    disaster = services.records.get('disasters', disaster_id)
    if disaster is None:
        return jsonify({'error': 'Disaster not found'}), 404

    if not services.auth.can_modify(g.user, disaster):
        return jsonify({'error': 'Forbidden', 'message': 'You can only delete your own disasters.'}), 403

    deleted = services.records.cascade_delete(
        'disasters', disaster_id, {'resources': 'disaster_id', 'reports': 'disaster_id'})

    services.notifier.broadcast('disaster_updated', {'action': 'deleted', 'disaster_id': disaster_id})
    log_action('disaster_deleted', disaster_id=disaster_id, user_id=g.user['user_id'])

    return jsonify({
        'status': 'deleted',
        'id': disaster_id,
        'resources_deleted': deleted['resources'],
        'reports_deleted': deleted['reports']
    })


@api.route('/disasters/<disaster_id>/stats', methods=['GET'])
def disaster_stats(disaster_id):
    """Resource and report counts for one disaster"""
    services = _services()
    if services.records.get('disasters', disaster_id) is None:
        return jsonify({'error': 'Disaster not found'}), 404

    resources = services.records.list('resources', {'disaster_id': disaster_id})['items']
    reports = services.records.list('reports', {'disaster_id': disaster_id})['items']

    resources_by_type = {}
    for resource in resources:
        resources_by_type[resource.get('type')] = resources_by_type.get(resource.get('type'), 0) + 1

    reports_by_status = {status: 0 for status in ReportValidator.VERIFICATION_STATUSES}
    for report in reports:
        status = report.get('verification_status', 'pending')
        reports_by_status[status] = reports_by_status.get(status, 0) + 1

    return jsonify({
        'disaster_id': disaster_id,
        'resources': {'total': len(resources), 'by_type': resources_by_type},
        'reports': {
            'total': len(reports),
            'by_status': reports_by_status,
            'high_priority': sum(1 for r in reports if r.get('priority', 0) >= 8)
        },
        'generated_at': _utc_now()
    })


# ===== RESOURCE ENDPOINTS =====

@api.route('/resources', methods=['GET'])
def list_resources():
    """List resources (filters: disaster_id, type, status; limit/offset)"""
    offset, limit = _pagination()
    filters = {
        'disaster_id': request.args.get('disaster_id'),
        'type': request.args.get('type'),
        'status': request.args.get('status'),
    }
    result = _services().records.list('resources', filters, offset=offset, limit=limit)
    return jsonify({'resources': result['items'], 'total': result['total'], 'offset': offset, 'limit': limit})


@api.route('/resources/nearby', methods=['GET'])
def nearby_resources():
    """
    Resources within a radius of a point, nearest first

    Query Parameters:
        - lat, lon (required)
        - radius in km (default 10)
        - disaster_id, type (optional filters)
    """
    lat = request.args.get('lat', type=float)
    lon = request.args.get('lon', type=float)
    radius_km = request.args.get('radius', 10, type=float)

    is_valid, error_message = ResourceValidator.validate_nearby_query(lat, lon, radius_km)
    if not is_valid:
        return jsonify({'error': error_message}), 400

    filters = {'disaster_id': request.args.get('disaster_id'), 'type': request.args.get('type')}
    resources = _services().records.list('resources', filters)['items']
    nearby = within_radius(resources, lat, lon, radius_km)

    rough_lat, rough_lon = redact_coordinates(lat, lon)
    logger.info(f"Nearby resources near ({rough_lat}, {rough_lon}) within {radius_km}km: {len(nearby)}")

    return jsonify({
        'resources': nearby,
        'total': len(nearby),
        'center': {'latitude': lat, 'longitude': lon},
        'radius_km': radius_km
    })


@api.route('/resources/<resource_id>', methods=['GET'])
def get_resource(resource_id):
    """Get a single resource"""
    resource = _services().records.get('resources', resource_id)
    if resource is None:
        return jsonify({'error': 'Resource not found'}), 404
    return jsonify(resource)


@api.route('/resources', methods=['POST'])
@limiter.limit("60 per hour")
@require_user
def create_resource():
    """Create a resource for a disaster (geocoded from location_name when no coordinates)"""
    data = _json_body()
    if not data:
        return jsonify({'error': 'Request body is required'}), 400

    is_valid, error_message = ResourceValidator.validate_resource_data(data)
    if not is_valid:
        return jsonify({'error': error_message}), 400

    services = _services()
    if services.records.get('disasters', data['disaster_id']) is None:
        return jsonify({'error': 'Disaster not found'}), 404

    location = _resolve_location(
        sanitize_text(data.get('location_name'), 200),
        data.get('latitude'),
        data.get('longitude')
    )

    now = _utc_now()
    record = {
        'disaster_id': data['disaster_id'],
        'name': sanitize_text(data['name'], 200),
        'type': data['type'],
        'description': sanitize_text(data.get('description'), 2000),
        **location,
        'capacity': int(data['capacity']) if data.get('capacity') is not None else None,
        'status': data.get('status', 'available'),
        'contact': sanitize_text(data.get('contact'), 200),
        'created_by': g.user['user_id'],
        'created_at': now,
        'updated_at': now
    }

    resource = services.records.insert('resources', record)
    services.notifier.broadcast('resources_updated', {
        'action': 'created',
        'disaster_id': resource['disaster_id'],
        'resource': resource
    })
    log_action('resource_created', resource_id=resource['id'], disaster_id=resource['disaster_id'])

    return jsonify(resource), 201


@api.route('/resources/<resource_id>', methods=['PUT'])
@require_user
def update_resource(resource_id):
    """Update a resource (creator or admin)"""
    data = _json_body()
    if not data:
        return jsonify({'error': 'Request body is required'}), 400

    services = _services()
    resource = services.records.get('resources', resource_id)
    if resource is None:
        return jsonify({'error': 'Resource not found'}), 404

    if not services.auth.can_modify(g.user, resource, owner_field='created_by'):
        return jsonify({'error': 'Forbidden', 'message': 'You can only update your own resources.'}), 403

    is_valid, error_message = ResourceValidator.validate_resource_data(data, partial=True)
    if not is_valid:
        return jsonify({'error': error_message}), 400

    changes = {k: data[k] for k in ['type', 'status', 'capacity'] if k in data}
    for field, max_length in [('name', 200), ('description', 2000), ('contact', 200)]:
        if field in data:
            changes[field] = sanitize_text(data[field], max_length)

    if 'location_name' in data or data.get('latitude') is not None:
        changes.update(_resolve_location(
            sanitize_text(data.get('location_name'), 200),
            data.get('latitude'),
            data.get('longitude')
        ))

    if not changes:
        return jsonify({'error': 'No valid fields to update'}), 400

    changes['updated_at'] = _utc_now()
    updated = services.records.update('resources', resource_id, changes)
    services.notifier.broadcast('resources_updated', {
        'action': 'updated',
        'disaster_id': updated.get('disaster_id'),
        'resource': updated
    })
    return jsonify(updated)


@api.route('/resources/<resource_id>', methods=['DELETE'])
@require_user
def delete_resource(resource_id):
    """Delete a resource (creator or admin)"""
    services = _services()
    resource = services.records.get('resources', resource_id)
    if resource is None:
        return jsonify({'error': 'Resource not found'}), 404

    if not services.auth.can_modify(g.user, resource, owner_field='created_by'):
        return jsonify({'error': 'Forbidden', 'message': 'You can only delete your own resources.'}), 403

    services.records.delete('resources', resource_id)
    services.notifier.broadcast('resources_updated', {
        'action': 'deleted',
        'disaster_id': resource.get('disaster_id'),
        'resource_id': resource_id
    })
    log_action('resource_deleted', resource_id=resource_id, user_id=g.user['user_id'])
    return jsonify({'status': 'deleted', 'id': resource_id})


# ===== REPORT ENDPOINTS =====

@api.route('/reports', methods=['GET'])
def list_reports():
    """List reports, newest first (filters: disaster_id, verification_status, user_id)"""
    offset, limit = _pagination()
    filters = {
        'disaster_id': request.args.get('disaster_id'),
        'verification_status': request.args.get('verification_status'),
        'user_id': request.args.get('user_id'),
    }
    result = _services().records.list('reports', filters, offset=offset, limit=limit)
    return jsonify({'reports': result['items'], 'total': result['total'], 'offset': offset, 'limit': limit})


@api.route('/reports/stats', methods=['GET'])
def report_stats():
    """Report counts by verification status (optionally for one disaster)"""
    reports = _services().records.list('reports', {'disaster_id': request.args.get('disaster_id')})['items']

    by_status = {status: 0 for status in ReportValidator.VERIFICATION_STATUSES}
    for report in reports:
        status = report.get('verification_status', 'pending')
        by_status[status] = by_status.get(status, 0) + 1

    priorities = [r.get('priority') for r in reports if isinstance(r.get('priority'), (int, float))]
    return jsonify({
        'total': len(reports),
        'by_status': by_status,
        'with_images': sum(1 for r in reports if r.get('image_url')),
        'high_priority': sum(1 for p in priorities if p >= 8),
        'average_priority': round(sum(priorities) / len(priorities), 2) if priorities else None
    })


@api.route('/reports/<report_id>', methods=['GET'])
def get_report(report_id):
    """Get a single report"""
    report = _services().records.get('reports', report_id)
    if report is None:
        return jsonify({'error': 'Report not found'}), 404
    return jsonify(report)


@api.route('/reports', methods=['POST'])
@limiter.limit("20 per hour")  # Allow burst reporting during emergencies
@limiter.limit("100 per day")
@require_user
def create_report():
    """
    Create a citizen report

    The content is classified and scored; an attached image is verified and
    decides the initial verification_status (verified -> verified,
    suspicious -> pending, rejected -> rejected).
    """
    data = _json_body()
    if not data:
        return jsonify({'error': 'Request body is required'}), 400

    is_valid, error_message = ReportValidator.validate_report_data(data)
    if not is_valid:
        return jsonify({'error': error_message}), 400

    services = _services()
    if services.records.get('disasters', data['disaster_id']) is None:
        return jsonify({'error': 'Disaster not found'}), 404

    content = sanitize_text(data['content'], ReportValidator.CONTENT_MAX_LENGTH)
    analysis = services.content_analysis.classify(content)
    priority = calculate_priority(content, analysis)

    verification_status = 'pending'
    image_verification = None
    if data.get('image_url'):
        image_verification = services.content_analysis.verify_image(data['image_url'], content)
        authenticity = image_verification.get('authenticity')
        if authenticity == 'verified':
            verification_status = 'verified'
        elif authenticity == 'rejected':
            verification_status = 'rejected'

    record = {
        'disaster_id': data['disaster_id'],
        'user_id': g.user['user_id'],
        'content': content,
        'image_url': data.get('image_url'),
        'latitude': float(data['latitude']) if data.get('latitude') is not None else None,
        'longitude': float(data['longitude']) if data.get('longitude') is not None else None,
        'verification_status': verification_status,
        'image_verification': image_verification,
        'analysis': {
            'urgency': analysis.get('urgency'),
            'content_type': analysis.get('content_type'),
            'disaster_type': analysis.get('disaster_type'),
            'needs': analysis.get('needs', []),
            'provider': analysis.get('provider')
        },
        'priority': priority,
        'created_at': _utc_now()
    }

    report = services.records.insert('reports', record)
    services.notifier.broadcast('report_created', report)
    log_action('report_created', report_id=report['id'], disaster_id=report['disaster_id'],
               user_id=g.user['user_id'], priority=priority, verification_status=verification_status)

    return jsonify(report), 201


@api.route('/reports/<report_id>/verify', methods=['PUT'])
@require_admin
def verify_report(report_id):
    """Set a report's verification status (admin-only)"""
    data = _json_body()
    status = data.get('verification_status')

    is_valid, error_message = ReportValidator.validate_verification_status(status)
    if not is_valid:
        return jsonify({'error': error_message}), 400

    services = _services()
    if services.records.get('reports', report_id) is None:
        return jsonify({'error': 'Report not found'}), 404

    updated = services.records.update('reports', report_id, {
        'verification_status': status,
        'verification_notes': sanitize_text(data.get('notes'), 1000),
        'verified_by': g.user['user_id'],
        'verified_at': _utc_now()
    })
    services.notifier.broadcast('report_verified', updated)
    log_action('report_verified', report_id=report_id, status=status, user_id=g.user['user_id'])

    return jsonify(updated)


@api.route('/reports/<report_id>', methods=['DELETE'])
@require_user
def delete_report(report_id):
    """Delete a report (author or admin)"""
    services = _services()
    report = services.records.get('reports', report_id)
    if report is None:
        return jsonify({'error': 'Report not found'}), 404

    if not services.auth.can_modify(g.user, report, owner_field='user_id'):
        return jsonify({'error': 'Forbidden', 'message': 'You can only delete your own reports.'}), 403

    services.records.delete('reports', report_id)
    services.notifier.broadcast('report_deleted', {'id': report_id, 'disaster_id': report.get('disaster_id')})
    log_action('report_deleted', report_id=report_id, user_id=g.user['user_id'])

    return jsonify({'status': 'deleted', 'id': report_id})


# ===== GEOCODING ENDPOINTS =====

@api.route('/geocoding/geocode', methods=['POST'])
@limiter.limit("100 per hour")
def geocode_location():
    """Geocode a location name (optional provider: google, mapbox, osm)"""
    data = _json_body()
    location_name = _text_field(data, 'location_name', 'location')
    provider = data.get('provider')

    if not location_name:
        return jsonify({'error': 'location_name is required'}), 400

    is_valid, error_message = GeocodingValidator.validate_provider(provider)
    if not is_valid:
        return jsonify({'error': error_message}), 400

    return jsonify(_services().geocoding.geocode(location_name, provider))


@api.route('/geocoding/reverse', methods=['POST'])
@limiter.limit("100 per hour")
def reverse_geocode():
    """Convert coordinates to an address"""
    data = _json_body()
    latitude = data.get('latitude')
    longitude = data.get('longitude')

    if latitude is None or longitude is None:
        return jsonify({'error': 'latitude and longitude are required'}), 400
    if not CoordinateValidator.validate_coordinates(latitude, longitude):
        return jsonify({'error': 'Invalid coordinates'}), 400

    return jsonify(_services().geocoding.reverse_geocode(float(latitude), float(longitude)))


@api.route('/geocoding/batch', methods=['POST'])
@limiter.limit("20 per hour")
def batch_geocode():
    """Geocode up to 10 locations"""
    data = _json_body()
    locations = data.get('locations')
    provider = data.get('provider')

    is_valid, error_message = GeocodingValidator.validate_batch(locations)
    if not is_valid:
        return jsonify({'error': error_message}), 400
    is_valid, error_message = GeocodingValidator.validate_provider(provider)
    if not is_valid:
        return jsonify({'error': error_message}), 400

    results = _services().geocoding.geocode_batch(locations, provider)
    return jsonify({
        'results': results,
        'total': len(results),
        'successful': sum(1 for r in results if r['success'])
    })


@api.route('/geocoding/extract-and-geocode', methods=['POST'])
@limiter.limit("100 per hour")
def extract_and_geocode():
    """Extract a location from free text and geocode it"""
    data = _json_body()
    text = _text_field(data, 'text')
    if not text:
        return jsonify({'error': 'text is required'}), 400

    services = _services()
    extraction = services.content_analysis.extract_location(text)
    location_name = extraction['extracted_location']

    geocoding = None
    if location_name and location_name != 'Unknown Location':
        geocoding = services.geocoding.geocode(location_name)

    return jsonify({'extraction': extraction, 'geocoding': geocoding})


@api.route('/geocoding/providers', methods=['GET'])
def geocoding_providers():
    """List geocoding providers and their availability"""
    return jsonify(_services().geocoding.available_providers())


# ===== SOCIAL MEDIA ENDPOINTS =====

@api.route('/social-media/<disaster_id>', methods=['GET'])
@limiter.limit("120 per hour")
def get_social_media(disaster_id):
    """Ranked social media posts (keywords=a,b,c)"""
    keywords = parse_csv_param(request.args.get('keywords')) or None
    return jsonify(_services().social_media.fetch_reports(disaster_id, keywords))


@api.route('/social-media/<disaster_id>/priority', methods=['GET'])
@limiter.limit("120 per hour")
def get_priority_social_media(disaster_id):
    """Posts at or above min_priority (default 7)"""
    min_priority = request.args.get('min_priority', 7, type=int)
    keywords = parse_csv_param(request.args.get('keywords')) or None

    result = _services().social_media.fetch_reports(disaster_id, keywords)
    posts = filter_posts_by_priority(result['posts'], min_priority)
    return jsonify({
        'disaster_id': disaster_id,
        'min_priority': min_priority,
        'posts': posts,
        'total_posts': len(posts),
        'provider': result['provider']
    })


@api.route('/social-media/<disaster_id>/locations', methods=['GET'])
def get_social_media_locations(disaster_id):
    """Location mentions across social media posts"""
    services = _services()
    result = services.social_media.fetch_reports(disaster_id, parse_csv_param(request.args.get('keywords')) or None)
    return jsonify({
        'disaster_id': disaster_id,
        **services.social_media.location_summary(result['posts'])
    })


@api.route('/social-media/<disaster_id>/analyze', methods=['POST'])
@limiter.limit("60 per hour")
def analyze_social_media_post(disaster_id):
    """Classify and score a single post"""
    data = _json_body()
    content = sanitize_text(data.get('content'))
    if not content:
        return jsonify({'error': 'content is required'}), 400

    services = _services()
    analysis = services.content_analysis.classify(content)
    return jsonify({
        'disaster_id': disaster_id,
        'analysis': analysis,
        'priority': calculate_priority(content, analysis, data.get('engagement')),
        'location_mentions': extract_location_mentions(content)
    })


# ===== OFFICIAL UPDATES ENDPOINTS =====

@api.route('/official-updates/sources', methods=['GET'])
def official_sources():
    """Configured official sources"""
    return jsonify({'sources': OfficialUpdatesService.list_sources()})


@api.route('/official-updates/<disaster_id>', methods=['GET'])
@limiter.limit("120 per hour")
def get_official_updates(disaster_id):
    """
    Official updates, critical and newest first

    Query Parameters:
        - sources=fema,red_cross
        - min_priority=low|medium|high|critical
        - types=government,relief_organization
        - limit (default 20, max 100), offset
    """
    offset, limit = _pagination(default_limit=20)
    return jsonify(_services().official_updates.fetch_updates(
        disaster_id,
        sources=parse_csv_param(request.args.get('sources')),
        min_priority=request.args.get('min_priority'),
        types=parse_csv_param(request.args.get('types')),
        offset=offset,
        limit=limit
    ))


@api.route('/official-updates/<disaster_id>/critical', methods=['GET'])
def get_critical_updates(disaster_id):
    """Critical official updates only"""
    return jsonify(_services().official_updates.fetch_updates(disaster_id, min_priority='critical'))


@api.route('/official-updates/<disaster_id>/sources/<source_type>', methods=['GET'])
def get_updates_by_source_type(disaster_id, source_type):
    """Official updates from one source type (e.g., government)"""
    return jsonify(_services().official_updates.fetch_updates(disaster_id, types=[source_type]))


@api.route('/official-updates/<disaster_id>/timeline', methods=['GET'])
def get_updates_timeline(disaster_id):
    """Official updates grouped by hour (hours=24)"""
    hours = max(1, min(request.args.get('hours', 24, type=int), 168))
    service = _services().official_updates
    result = service.fetch_updates(disaster_id)
    return jsonify({
        'disaster_id': disaster_id,
        'hours': hours,
        'timeline': service.build_timeline(result['updates'], hours=hours),
        'total_updates': result['total_updates']
    })


@api.route('/official-updates/<disaster_id>/scrape', methods=['POST'])
@limiter.limit("10 per hour")
@require_user
def scrape_official_updates(disaster_id):
    """Scrape one source (body: {"source": "fema"}) or all sources now"""
    data = _json_body()
    service = _services().official_updates

    source = _text_field(data, 'source')
    if source:
        result = service.scrape_source(source)
        status = 404 if result.get('url') is None else 200
        return jsonify({'disaster_id': disaster_id, **result}), status

    updates = filter_updates_by_priority(service.scrape_all_sources(), _text_field(data, 'min_priority') or 'low')
    return jsonify({
        'disaster_id': disaster_id,
        'updates': updates,
        'total_updates': len(updates),
        'scraped_at': _utc_now()
    })


@api.route('/official-updates/<disaster_id>/analyze', methods=['POST'])
def analyze_official_update(disaster_id):
    """Extract locations, contacts, links, deadlines and actions from update text"""
    data = _json_body()
    content = _text_field(data, 'content')
    if not content:
        return jsonify({'error': 'content is required'}), 400

    return jsonify({
        'disaster_id': disaster_id,
        'key_information': OfficialUpdatesService.extract_key_information(content)
    })


# ===== IMAGE VERIFICATION ENDPOINTS =====

@api.route('/image-verification/verify', methods=['POST'])
@limiter.limit("30 per hour")
def verify_image():
    """
    Verify an image: multipart upload (field 'image') or image_url

    Optional 'context' describes what the image should show.
    """
    services = _services()
    upload = request.files.get('image')

    if upload is not None:
        image_bytes = upload.read()
        is_valid, error_message = validate_image_upload(upload.mimetype, len(image_bytes))
        if not is_valid:
            return jsonify({'error': error_message}), 400
        context = sanitize_text(request.form.get('context'), 1000)
        result = services.content_analysis.verify_image(image_bytes, context, mime_type=upload.mimetype)
        return jsonify({**result, 'filename': upload.filename})

    data = _json_body() or request.form.to_dict()
    image_url = data.get('image_url')
    if not image_url:
        return jsonify({'error': 'An image file or image_url is required'}), 400

    is_valid, error_message = validate_image_url(image_url)
    if not is_valid:
        return jsonify({'error': f'Invalid image URL: {error_message}'}), 400

    return jsonify(services.content_analysis.verify_image(image_url, sanitize_text(data.get('context'), 1000)))


@api.route('/image-verification/verify-url', methods=['POST'])
@limiter.limit("30 per hour")
def verify_image_url():
    """Verify an image by HTTPS URL"""
    data = _json_body()
    image_url = data.get('image_url')
    if not image_url:
        return jsonify({'error': 'image_url is required'}), 400

    is_valid, error_message = validate_image_url(image_url)
    if not is_valid:
        return jsonify({'error': f'Invalid image URL: {error_message}'}), 400

    return jsonify(_services().content_analysis.verify_image(image_url, sanitize_text(data.get('context'), 1000)))


@api.route('/image-verification/batch-verify', methods=['POST'])
@limiter.limit("10 per hour")
def batch_verify_images():
    """Verify up to 5 images: {"images": [{"image_url": ..., "context": ...}]}"""
    data = _json_body()
    images = data.get('images')

    if not isinstance(images, list) or not images:
        return jsonify({'error': 'images must be a non-empty array'}), 400
    if len(images) > MAX_IMAGE_BATCH:
        return jsonify({'error': f'Maximum {MAX_IMAGE_BATCH} images allowed per batch'}), 400
    if not all(isinstance(item, (dict, str)) for item in images):
        return jsonify({'error': 'each image must be an object or a URL string'}), 400

    service = _services().content_analysis
    results = []
    for item in images:
        image_url = item.get('image_url') if isinstance(item, dict) else item
        is_valid, error_message = validate_image_url(image_url) if image_url else (False, 'image_url is required')
        if not is_valid:
            results.append({'image_url': image_url, 'success': False, 'error': error_message})
            continue
        context = sanitize_text(item.get('context'), 1000) if isinstance(item, dict) else ''
        result = service.verify_image(image_url, context)
        results.append({'image_url': image_url, 'success': result.get('provider') != 'mock', 'result': result})

    return jsonify({
        'results': results,
        'total': len(results),
        'verified': sum(1 for r in results if r.get('result', {}).get('authenticity') == 'verified')
    })


# ===== ERROR HANDLERS =====

def register_error_handlers(app):
    @app.errorhandler(StoreError)
    def store_error(error):
        """Persistent store failures have no fallback"""
        logger.error(redact_pii(f"Store error: {error}"))
        return jsonify({'error': 'Database error', 'message': str(error)}), 500

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({'error': 'Bad request', 'message': str(error)}), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not found', 'path': request.path}), 404

    @app.errorhandler(413)
    def request_entity_too_large(error):
        """
        Handle requests that exceed MAX_CONTENT_LENGTH.

        Returns:
            413: Payload too large error
        """
        return jsonify({
            'error': 'Request payload too large',
            'max_size': '10 MB',
            'message': 'Please reduce the size of your request. Images should be compressed.'
        }), 413

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        return jsonify({'error': 'Rate limit exceeded', 'message': str(error.description)}), 429

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(redact_pii(f"Unhandled error: {error}"))
        return jsonify({'error': 'Internal server error'}), 500


# ===== BACKGROUND CACHE CLEANUP =====

def start_cache_cleanup(cache, interval_seconds: int) -> threading.Event:
    """
    Sweep expired cache entries every interval_seconds on a daemon thread

    Returns:
        Event that stops the loop when set
    """
    stop = threading.Event()

    def loop():
        while not stop.wait(interval_seconds):
            try:
                cache.cleanup()
            except Exception as e:
                logger.error(f"Scheduled cache cleanup failed: {e}")

    threading.Thread(target=loop, name='cache-cleanup', daemon=True).start()
    logger.info(f"Cache cleanup scheduled every {interval_seconds}s")
    return stop


# ===== APPLICATION FACTORY =====

def create_app(config_name: str = None, db_client=None, services: ServiceRegistry = None) -> Flask:
    """
    Build the Flask application

    Args:
        config_name: Key of config.config ('development', 'production', 'testing')
        db_client: Database client exposing reference(path); Firebase when omitted
        services: Prebuilt ServiceRegistry (tests)
    """
    config_name = config_name or os.getenv('FLASK_ENV', 'default')
    config_class = config.get(config_name, config['default'])

    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    CORS(app, origins=app.config['CORS_ORIGINS'], supports_credentials=True)
    limiter.init_app(app)

    if services is None:
        if db_client is None:
            db_client = init_firebase(app.config['FIREBASE_DATABASE_URL'])
        services = build_services(
            config_class.provider_settings(),
            db_client,
            demo_mode=app.config['AUTH_DEMO_MODE']
        )
    app.extensions['disaster_services'] = services

    app.register_blueprint(api)
    app.after_request(set_security_headers)
    register_error_handlers(app)

    interval = app.config['CACHE_CLEANUP_INTERVAL_SECONDS']
    if interval and not app.config['TESTING']:
        app.extensions['cache_cleanup_stop'] = start_cache_cleanup(services.cache, interval)

    return app


if __name__ == '__main__':
    # Use environment variable to control debug mode (defaults to False for production)
    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    create_app().run(debug=debug_mode, host='0.0.0.0', port=int(os.getenv('PORT', '5001')))
