"""
Pytest configuration and fixtures for the esports API tests.
"""
import json
import os
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Keep the module-level app in main.py off MongoDB
os.environ.setdefault('STORAGE_BACKEND', 'json')

from database import JsonFileStore
from main import create_app
from notifications import WebhookNotifier
from settings import Settings

ADMIN_PASSWORD = 'test-admin-password'
WEBHOOK_URL = 'https://discord.test/api/webhooks/1/abc'


@pytest.fixture
def settings():
    return Settings(storage_backend='json', admin_password=ADMIN_PASSWORD, discord_webhook_url=WEBHOOK_URL)


@pytest.fixture
def store():
    """In-memory JSON store."""
    return JsonFileStore()


@pytest.fixture
def webhook_calls():
    """Payloads received by the fake Discord webhook."""
    return []


@pytest.fixture
def notifier(webhook_calls):
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_calls.append(json.loads(request.content))
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotifier(WEBHOOK_URL, client=client)


@pytest.fixture
def app(settings, store, notifier):
    return create_app(settings, store=store, notifier=notifier)


@pytest.fixture
def client(app):
    """Test client with the app lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_password():
    return ADMIN_PASSWORD


@pytest.fixture
def admin_token(client, admin_password):
    response = client.post('/api/admin/login', json={'password': admin_password})
    assert response.status_code == 200
    return response.json()['token']


@pytest.fixture
def admin_headers(admin_token):
    return {'Authorization': f'Bearer {admin_token}'}


@pytest.fixture
def seed(client, admin_headers):
    """Replace a collection's contents through the admin API."""
    def _seed(collection, records):
        response = client.post('/api/admin/update',
                               json={'type': collection, 'data': records},
                               headers=admin_headers)
        assert response.status_code == 200, response.text
        return response.json()
    return _seed


@pytest.fixture
def registration_payload():
    return {
        'tournamentId': 't1',
        'tournamentTitle': 'VMNC Winter Cup',
        'userId': 'user-1',
        'userEmail': 'captain@example.com',
        'discordUsername': 'cap',
        'teamName': 'Alpha',
        'teamMembers': ['a', '', 'b'],
        'captainDiscord': 'cap#1',
        'contactEmail': 'team@example.com',
        'region': 'EU',
        'experience': 'Semi-pro',
    }
