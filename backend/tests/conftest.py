"""
Shared fixtures: an in-memory Realtime Database behind the real
firebase_admin.db.Reference, and a Flask app wired to it.

InMemoryRtdb answers the HTTP calls Reference and Query make (GET/PUT/PATCH/
DELETE/POST, ETags, orderBy/endAt/equalTo). Reference.set(None), empty
updates and None-returning transactions therefore fail exactly as they do
against a live database.
"""
import copy
import hashlib
import json
import os
import sys
import uuid

import pytest
from firebase_admin import db, exceptions

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import TestingConfig

# Mirrors the ".indexOn" rules the deployment defines
DEFAULT_INDEXES = {'api_cache': ['expires_at']}


def _segments(url):
    path = url.split('?', 1)[0]
    if path.endswith('.json'):
        path = path[:-len('.json')]
    return [part for part in path.split('/') if part]


def _etag(value):
    return hashlib.md5(json.dumps(value, sort_keys=True).encode('utf-8')).hexdigest()


def _prune(value):
    """Drop nulls and empty containers the way the database does on write"""
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items()}
        pruned = {k: v for k, v in pruned.items() if v is not None}
        return pruned or None
    if isinstance(value, list):
        pruned = [_prune(v) for v in value]
        return pruned if any(v is not None for v in pruned) else None
    return value


def _index_key(value):
    # Database ordering: null < false < true < numbers < strings < objects
    if value is None:
        return (0, 0)
    if value is False:
        return (1, 0)
    if value is True:
        return (2, 0)
    if isinstance(value, (int, float)):
        return (3, value)
    if isinstance(value, str):
        return (4, value)
    return (5, 0)


class StubResponse:
    """Just enough of requests.Response for the SDK's HTTP client helpers"""

    def __init__(self, payload=None, etag=None, status_code=200):
        self._payload = copy.deepcopy(payload)
        self.headers = {'ETag': etag} if etag else {}
        self.status_code = status_code

    def json(self):
        return copy.deepcopy(self._payload)


class InMemoryRtdb:
    """In-memory database exposing reference(path) like firebase_admin.db"""

    def __init__(self, indexes=None):
        self.data = None
        self.failing = False
        self.indexes = dict(DEFAULT_INDEXES if indexes is None else indexes)
        self.requests = []

    def reference(self, path='/'):
        return db.Reference(client=self, path=path)

    # HTTP client surface used by db.Reference and db.Query

    def request(self, method, url, json=None, params=None, headers=None, **kwargs):
        if self.failing:
            raise exceptions.UnavailableError('database unavailable')

        parts = _segments(url)
        headers = headers or {}
        self.requests.append((method, '/'.join(parts)))

        if method == 'get':
            value = self._read(parts)
            query = self._parse_params(params)
            if 'orderBy' in query:
                value = self._query(parts, value, query)
            return StubResponse(value, etag=_etag(value))

        if method == 'put':
            current = self._read(parts)
            if 'if-match' in headers and headers['if-match'] != _etag(current):
                raise exceptions.FailedPreconditionError(
                    'ETag mismatch', http_response=StubResponse(current, etag=_etag(current), status_code=412))
            self._write(parts, json)
            return StubResponse(json, etag=_etag(self._read(parts)))

        if method == 'patch':
            for key, value in json.items():
                self._write(parts + [p for p in key.split('/') if p], value)
            return StubResponse(json)

        if method == 'delete':
            self._write(parts, None)
            return StubResponse(None)

        if method == 'post':
            key = uuid.uuid4().hex
            self._write(parts + [key], json)
            return StubResponse({'name': key})

        raise exceptions.InvalidArgumentError(f'Unsupported method {method}')

    def headers(self, method, url, **kwargs):
        return self.request(method, url, **kwargs).headers

    def body(self, method, url, **kwargs):
        return self.request(method, url, **kwargs).json()

    def headers_and_body(self, method, url, **kwargs):
        resp = self.request(method, url, **kwargs)
        return resp.headers, resp.json()

    # Storage

    def _read(self, parts):
        node = self.data
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def _write(self, parts, value):
        value = _prune(copy.deepcopy(value))
        if not parts:
            self.data = value
            return

        if value is None:
            self._delete(parts)
            return

        if not isinstance(self.data, dict):
            self.data = {}
        node = self.data
        for part in parts[:-1]:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        node[parts[-1]] = value

    def _delete(self, parts):
        trail = []
        node = self.data
        for part in parts[:-1]:
            if not isinstance(node, dict) or part not in node:
                return
            trail.append((node, part))
            node = node[part]
        if isinstance(node, dict):
            node.pop(parts[-1], None)

        # Empty parents disappear
        for parent, key in reversed(trail):
            if parent[key] == {}:
                del parent[key]
        if self.data == {}:
            self.data = None

    @staticmethod
    def _parse_params(params):
        query = {}
        for pair in (params or '').split('&'):
            if '=' in pair:
                key, raw = pair.split('=', 1)
                query[key] = raw
        return query

    def _query(self, parts, value, query):
        field = json.loads(query['orderBy'])
        path = '/'.join(parts)
        if field not in self.indexes.get(path, []):
            raise exceptions.InvalidArgumentError(
                f'Index not defined, add ".indexOn": "{field}", for path "/{path}", to the rules')
        if not isinstance(value, dict):
            return value

        selected = {}
        for key, child in value.items():
            index = _index_key(child.get(field) if isinstance(child, dict) else None)
            if 'startAt' in query and index < _index_key(json.loads(query['startAt'])):
                continue
            if 'endAt' in query and index > _index_key(json.loads(query['endAt'])):
                continue
            if 'equalTo' in query and index != _index_key(json.loads(query['equalTo'])):
                continue
            selected[key] = child
        return selected


class FakeClock:
    """Manually advanced epoch-seconds clock"""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_db():
    """Fresh in-memory database"""
    return InMemoryRtdb()


@pytest.fixture
def clock():
    """Controllable clock starting at a fixed epoch"""
    return FakeClock()


@pytest.fixture
def settings():
    """Provider settings with every network provider disabled"""
    return TestingConfig.provider_settings()


@pytest.fixture
def app(fake_db):
    """Flask app in testing mode backed by the in-memory database"""
    from app import create_app

    application = create_app('testing', db_client=fake_db)
    yield application
    application.extensions['disaster_services'].chain.shutdown()


@pytest.fixture
def client(app):
    """Create a test client for the Flask app"""
    with app.test_client() as client:
        yield client
