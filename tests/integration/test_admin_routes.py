"""
Integration tests for admin login and the generic collection routes.
"""
import pytest

from registry import COLLECTIONS


class TestAdminLogin:
    """Tests for /api/admin/login and /api/admin/logout."""

    def test_login(self, client, admin_password):
        response = client.post('/api/admin/login', json={'password': admin_password})
        assert response.status_code == 200

        data = response.json()
        assert data['success'] is True
        assert len(data['token']) == 64

    def test_wrong_password(self, client):
        response = client.post('/api/admin/login', json={'password': 'guess'})
        assert response.status_code == 401
        assert response.json()['success'] is False

    def test_tokens_are_per_login(self, client, admin_password):
        first = client.post('/api/admin/login', json={'password': admin_password}).json()['token']
        second = client.post('/api/admin/login', json={'password': admin_password}).json()['token']
        assert first != second

    def test_logout_invalidates_token(self, client, admin_headers):
        assert client.get('/api/admin/data', headers=admin_headers).status_code == 200

        response = client.post('/api/admin/logout', headers=admin_headers)
        assert response.status_code == 200

        response = client.get('/api/admin/data', headers=admin_headers)
        assert response.status_code == 401

    def test_logout_requires_admin(self, client):
        assert client.post('/api/admin/logout').status_code == 401


class TestAdminGate:
    """Every admin route needs a valid bearer token."""

    def test_admin_data_without_header(self, client):
        response = client.get('/api/admin/data')
        assert response.status_code == 401
        assert response.json() == {'error': 'Unauthorized'}

    @pytest.mark.parametrize('headers', [
        {'Authorization': 'Bearer not-a-session'},
        {'Authorization': 'Basic abc'},
        {'Authorization': 'Bearer '},
    ])
    def test_admin_data_bad_header(self, client, headers):
        assert client.get('/api/admin/data', headers=headers).status_code == 401

    @pytest.mark.parametrize('method,path', [
        ('post', '/api/admin/update'),
        ('post', '/api/admin/players'),
        ('put', '/api/admin/players/1'),
        ('delete', '/api/admin/players/1'),
        ('put', '/api/tournament-registrations/1'),
        ('delete', '/api/verification-requests/1'),
    ])
    def test_mutations_require_admin(self, client, method, path):
        kwargs = {} if method == 'delete' else {'json': {}}
        response = getattr(client, method)(path, **kwargs)
        assert response.status_code == 401

    def test_admin_data_snapshot(self, client, admin_headers, seed):
        seed('players', [{'name': 'X'}])

        data = client.get('/api/admin/data', headers=admin_headers).json()
        assert set(data) == set(COLLECTIONS)
        assert data['players'][0]['name'] == 'X'


class TestFullReplace:
    """Tests for POST /api/admin/update."""

    def test_replace_drops_previous_records(self, client, seed):
        seed('players', [{'name': f'P{i}'} for i in range(5)])

        result = seed('players', [{'name': 'X'}])
        assert result['count'] == 1
        assert result['message'] == 'players updated successfully'

        players = client.get('/api/players').json()
        assert len(players) == 1
        assert players[0]['name'] == 'X'
        assert players[0]['id']

    def test_replace_roundtrip_is_idempotent(self, client, seed):
        seed('teams', [{'name': 'Alpha'}, {'name': 'Bravo', 'roster': ['a']}])
        current = client.get('/api/teams').json()

        seed('teams', current)
        assert client.get('/api/teams').json() == current
        seed('teams', current)
        assert client.get('/api/teams').json() == current

    def test_replace_with_empty_list(self, client, seed):
        seed('giveaways', [{'details': 'one'}])
        seed('giveaways', [])
        assert client.get('/api/giveaways').json() == []

    def test_replace_unknown_collection(self, client, admin_headers, store):
        response = client.post('/api/admin/update', json={'type': 'users', 'data': [{'a': 1}]},
                               headers=admin_headers)
        assert response.status_code == 400
        assert response.json() == {'error': 'Invalid collection: users'}
        assert 'users' not in store._data


class TestGenericAdminCrud:
    """Tests for /api/admin/{collection}[/{id}]."""

    def test_create(self, client, admin_headers):
        response = client.post('/api/admin/tournaments', json={'title': 'Cup', 'status': 'open'},
                               headers=admin_headers)
        assert response.status_code == 200
        record_id = response.json()['id']

        assert client.get('/api/tournaments').json() == [{'id': record_id, 'title': 'Cup', 'status': 'open'}]

    def test_create_normalizes_match_date(self, client, admin_headers):
        client.post('/api/admin/upcomingMatches', json={'date': '2099-01-01T00:00:00Z'},
                    headers=admin_headers)
        assert client.get('/api/upcoming-matches').json()[0]['date'] == '2099-01-01T00:00:00.000Z'

    def test_update(self, client, admin_headers, seed):
        seed('players', [{'id': 'p1', 'name': 'Old', 'kills': 3}])

        response = client.put('/api/admin/players/p1', json={'name': 'New'}, headers=admin_headers)
        assert response.status_code == 200
        assert client.get('/api/players').json() == [{'id': 'p1', 'name': 'New', 'kills': 3}]

    def test_update_cannot_change_id(self, client, admin_headers, seed):
        seed('players', [{'id': 'p1', 'name': 'Old'}])

        client.put('/api/admin/players/p1', json={'id': 'p2', '_id': 'p3'}, headers=admin_headers)
        assert client.get('/api/players').json()[0]['id'] == 'p1'

    def test_update_missing(self, client, admin_headers):
        response = client.put('/api/admin/players/nope', json={'name': 'x'}, headers=admin_headers)
        assert response.status_code == 404

    def test_delete(self, client, admin_headers, seed):
        seed('players', [{'id': 'p1'}, {'id': 'p2'}])

        assert client.delete('/api/admin/players/p1', headers=admin_headers).status_code == 200
        assert [p['id'] for p in client.get('/api/players').json()] == ['p2']

    def test_delete_missing_leaves_collection(self, client, admin_headers, seed):
        seed('players', [{'id': 'p1'}])

        assert client.delete('/api/admin/players/nope', headers=admin_headers).status_code == 404
        assert len(client.get('/api/players').json()) == 1

    @pytest.mark.parametrize('method,path', [
        ('post', '/api/admin/secrets'),
        ('put', '/api/admin/secrets/1'),
        ('delete', '/api/admin/secrets/1'),
    ])
    def test_unknown_collection_rejected(self, client, admin_headers, store, method, path):
        kwargs = {'headers': admin_headers}
        if method != 'delete':
            kwargs['json'] = {'x': 1}
        response = getattr(client, method)(path, **kwargs)

        assert response.status_code == 400
        assert response.json() == {'error': 'Invalid collection: secrets'}
        assert 'secrets' not in store._data
