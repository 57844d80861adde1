"""
Validation utilities for disasters, resources, reports and coordinates.

Every validate_* method returns (is_valid, error_message) so request
handlers can answer 400 without touching the orchestration layer.
"""
from typing import Dict, List, Tuple, Optional
from bleach import clean


def sanitize_text(value: Optional[str], max_length: Optional[int] = None) -> str:
    """
    Strip HTML from user-provided text.

    Examples:
        >>> sanitize_text('<b>Flooding</b> downtown')
        'Flooding downtown'
    """
    if not value:
        return ""
    text = clean(str(value), tags=[], strip=True).strip()
    return text[:max_length] if max_length else text


class CoordinateValidator:
    """Validator for geographic coordinates."""

    @staticmethod
    def validate_coordinates(lat: float, lon: float) -> bool:
        """
        Validate latitude and longitude ranges.

        Examples:
            >>> CoordinateValidator.validate_coordinates(37.7749, -122.4194)
            True
            >>> CoordinateValidator.validate_coordinates(91, 0)  # Invalid latitude
            False
        """
        try:
            latitude = float(lat)
            longitude = float(lon)
            return -90 <= latitude <= 90 and -180 <= longitude <= 180
        except (TypeError, ValueError):
            return False

    @staticmethod
    def validate_optional_pair(data: Dict) -> Tuple[bool, Optional[str]]:
        """
        Validate latitude/longitude when present; they must come together.

        Examples:
            >>> CoordinateValidator.validate_optional_pair({})
            (True, None)
            >>> CoordinateValidator.validate_optional_pair({'latitude': 40.7})
            (False, 'latitude and longitude must be provided together')
        """
        has_lat = data.get('latitude') is not None
        has_lon = data.get('longitude') is not None
        if not has_lat and not has_lon:
            return True, None
        if has_lat != has_lon:
            return False, 'latitude and longitude must be provided together'

        try:
            lat = float(data['latitude'])
            lon = float(data['longitude'])
        except (ValueError, TypeError):
            return False, 'latitude and longitude must be valid numbers'

        if not (-90 <= lat <= 90):
            return False, 'Latitude must be between -90 and 90'
        if not (-180 <= lon <= 180):
            return False, 'Longitude must be between -180 and 180'
        return True, None


class DisasterValidator:
    """Validator for disaster records."""

    VALID_SEVERITIES = ['low', 'medium', 'high', 'critical']
    VALID_STATUSES = ['active', 'monitoring', 'resolved']

    TITLE_MIN_LENGTH = 5
    TITLE_MAX_LENGTH = 200
    DESCRIPTION_MIN_LENGTH = 10

    @staticmethod
    def validate_severity(severity: str) -> bool:
        if not severity:
            return False
        return str(severity).lower() in DisasterValidator.VALID_SEVERITIES

    @staticmethod
    def validate_tags(tags) -> Tuple[bool, Optional[str]]:
        if tags is None:
            return True, None
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            return False, 'tags must be a list of strings'
        if len(tags) > 20:
            return False, 'At most 20 tags are allowed'
        return True, None

    @staticmethod
    def validate_disaster_data(data: Dict, partial: bool = False) -> Tuple[bool, Optional[str]]:
        """
        Validate disaster create/update payloads.

        Checks:
        - title (5-200 characters) and description (10+ characters)
        - optional severity, status, tags and coordinate pair

        Args:
            data: Request body
            partial: True for updates, where required fields may be omitted

        Returns:
            Tuple of (is_valid, error_message)

        Examples:
            >>> DisasterValidator.validate_disaster_data({'title': 'NYC Flood', 'description': 'Flooding in Manhattan'})
            (True, None)
            >>> DisasterValidator.validate_disaster_data({'title': 'NYC'})
            (False, 'Title and description are required')
        """
        if not partial and (not data.get('title') or not data.get('description')):
            return False, 'Title and description are required'

        if 'title' in data:
            title = str(data.get('title') or '')
            if not (DisasterValidator.TITLE_MIN_LENGTH <= len(title) <= DisasterValidator.TITLE_MAX_LENGTH):
                return False, 'Title must be between 5 and 200 characters'

        if 'description' in data:
            if len(str(data.get('description') or '')) < DisasterValidator.DESCRIPTION_MIN_LENGTH:
                return False, 'Description must be at least 10 characters'

        if 'severity' in data and not DisasterValidator.validate_severity(data['severity']):
            valid_severities_str = ', '.join(DisasterValidator.VALID_SEVERITIES)
            return False, f'Invalid severity. Must be one of: {valid_severities_str}'

        if 'status' in data and data['status'] not in DisasterValidator.VALID_STATUSES:
            return False, f'Invalid status. Must be one of: {", ".join(DisasterValidator.VALID_STATUSES)}'

        is_valid, error = DisasterValidator.validate_tags(data.get('tags'))
        if not is_valid:
            return False, error

        return CoordinateValidator.validate_optional_pair(data)


class ResourceValidator:
    """Validator for relief resources (shelters, medical, food...)."""

    VALID_TYPES = ['shelter', 'medical', 'food', 'transport', 'communication', 'equipment', 'personnel']
    VALID_STATUSES = ['available', 'limited', 'unavailable']

    @staticmethod
    def validate_resource_data(data: Dict, partial: bool = False) -> Tuple[bool, Optional[str]]:
        """
        Validate resource create/update payloads.

        Examples:
            >>> ResourceValidator.validate_resource_data({'disaster_id': 'd1', 'name': 'Shelter A', 'type': 'shelter'})
            (True, None)
            >>> ResourceValidator.validate_resource_data({'disaster_id': 'd1', 'name': 'X', 'type': 'boats'})[0]
            False
        """
        if not partial:
            required_fields = ['disaster_id', 'name', 'type']
            missing_fields = [field for field in required_fields if not data.get(field)]
            if missing_fields:
                return False, f'Missing required fields: {", ".join(missing_fields)}'

        if 'type' in data and data['type'] not in ResourceValidator.VALID_TYPES:
            return False, f'Invalid resource type. Must be one of: {", ".join(ResourceValidator.VALID_TYPES)}'

        if 'status' in data and data['status'] not in ResourceValidator.VALID_STATUSES:
            return False, f'Invalid status. Must be one of: {", ".join(ResourceValidator.VALID_STATUSES)}'

        if data.get('capacity') is not None:
            try:
                if int(data['capacity']) < 0:
                    return False, 'capacity must be non-negative'
            except (ValueError, TypeError):
                return False, 'capacity must be an integer'

        return CoordinateValidator.validate_optional_pair(data)

    @staticmethod
    def validate_nearby_query(lat, lon, radius_km) -> Tuple[bool, Optional[str]]:
        if lat is None or lon is None:
            return False, 'lat and lon query parameters are required'
        if not CoordinateValidator.validate_coordinates(lat, lon):
            return False, 'Invalid coordinates'
        if radius_km is not None and not (0 < radius_km <= 500):
            return False, 'radius must be between 0 and 500 km'
        return True, None


class ReportValidator:
    """Validator for citizen reports."""

    VERIFICATION_STATUSES = ['pending', 'verified', 'rejected']
    CONTENT_MIN_LENGTH = 10
    CONTENT_MAX_LENGTH = 5000

    @staticmethod
    def validate_report_data(data: Dict) -> Tuple[bool, Optional[str]]:
        """
        Validate a new citizen report.

        Examples:
            >>> ReportValidator.validate_report_data({'disaster_id': 'd1', 'content': 'Water rising on 5th Ave'})
            (True, None)
            >>> ReportValidator.validate_report_data({'disaster_id': 'd1', 'content': 'short'})
            (False, 'Content must be at least 10 characters')
        """
        missing_fields = [field for field in ['disaster_id', 'content'] if not data.get(field)]
        if missing_fields:
            return False, f'Missing required fields: {", ".join(missing_fields)}'

        content = str(data['content'])
        if len(content) < ReportValidator.CONTENT_MIN_LENGTH:
            return False, 'Content must be at least 10 characters'
        if len(content) > ReportValidator.CONTENT_MAX_LENGTH:
            return False, 'Content must be at most 5000 characters'

        if data.get('image_url'):
            from utils.url_validator import validate_image_url
            is_valid_url, url_error = validate_image_url(data['image_url'])
            if not is_valid_url:
                return False, f'Invalid image URL: {url_error}'

        return CoordinateValidator.validate_optional_pair(data)

    @staticmethod
    def validate_verification_status(status: str) -> Tuple[bool, Optional[str]]:
        if status not in ReportValidator.VERIFICATION_STATUSES:
            valid = ', '.join(ReportValidator.VERIFICATION_STATUSES)
            return False, f'Invalid verification status. Must be one of: {valid}'
        return True, None


class GeocodingValidator:
    """Validator for geocoding requests."""

    PROVIDERS = ['google', 'mapbox', 'osm']
    MAX_BATCH_SIZE = 10

    @staticmethod
    def validate_provider(provider: Optional[str]) -> Tuple[bool, Optional[str]]:
        if provider and provider not in GeocodingValidator.PROVIDERS:
            return False, f'Invalid provider. Must be one of: {", ".join(GeocodingValidator.PROVIDERS)}'
        return True, None

    @staticmethod
    def validate_batch(locations) -> Tuple[bool, Optional[str]]:
        if not isinstance(locations, list) or not locations:
            return False, 'locations must be a non-empty array'
        if len(locations) > GeocodingValidator.MAX_BATCH_SIZE:
            return False, f'Maximum {GeocodingValidator.MAX_BATCH_SIZE} locations allowed per batch'
        if not all(isinstance(loc, str) and loc.strip() for loc in locations):
            return False, 'Each location must be a non-empty string'
        return True, None


def parse_csv_param(value: Optional[str]) -> List[str]:
    """Split a comma-separated query parameter into trimmed values."""
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]
