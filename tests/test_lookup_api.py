"""
Unit Tests for Academic Unit, Contact and System Endpoints
"""
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import OperationFailure

import database
import main
from main import app

ENGINEERING = {
    'name': 'School of Engineering',
    'shortName': 'SOE',
    'description': 'Engineering programs',
}


def create_unit(client: TestClient, headers: dict, **overrides) -> dict:
    response = client.post('/api/academic-units', json={**ENGINEERING, **overrides}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestAcademicUnits:
    """Test /api/academic-units"""

    def test_create(self, client: TestClient, admin_auth_headers):
        data = create_unit(client, admin_auth_headers)

        assert data['name'] == 'School of Engineering'
        assert data['shortName'] == 'SOE'
        assert 'id' in data

    def test_create_requires_admin(self, client: TestClient, auth_headers):
        response = client.post('/api/academic-units', json=ENGINEERING, headers=auth_headers)

        assert response.status_code == 403
        assert response.json()['detail'] == 'Not authorized as an admin'

    def test_create_duplicate_name(self, client: TestClient, admin_auth_headers):
        create_unit(client, admin_auth_headers)

        response = client.post('/api/academic-units', json=ENGINEERING, headers=admin_auth_headers)

        assert response.status_code == 400
        assert response.json()['code'] == 'DUPLICATE_KEY'

    def test_list_sorted_by_name(self, client: TestClient, admin_auth_headers, auth_headers):
        create_unit(client, admin_auth_headers, name='School of Law', shortName='SOL')
        create_unit(client, admin_auth_headers)

        response = client.get('/api/academic-units', headers=auth_headers)

        assert response.status_code == 200
        assert [u['name'] for u in response.json()] == ['School of Engineering', 'School of Law']

    def test_list_requires_auth(self, client: TestClient):
        assert client.get('/api/academic-units').status_code == 401

    def test_update(self, client: TestClient, admin_auth_headers, auth_headers):
        unit = create_unit(client, admin_auth_headers)

        response = client.put(f"/api/academic-units/{unit['id']}",
                              json={'description': 'All engineering programs'},
                              headers=admin_auth_headers)

        assert response.status_code == 200
        assert response.json()['description'] == 'All engineering programs'
        assert response.json()['name'] == 'School of Engineering'

        fetched = client.get(f"/api/academic-units/{unit['id']}", headers=auth_headers)
        assert fetched.json()['description'] == 'All engineering programs'

    def test_rename_to_existing_name(self, client: TestClient, admin_auth_headers):
        create_unit(client, admin_auth_headers, name='School of Law', shortName='SOL')
        unit = create_unit(client, admin_auth_headers)

        response = client.put(f"/api/academic-units/{unit['id']}", json={'name': 'School of Law'},
                              headers=admin_auth_headers)

        assert response.status_code == 400

    def test_delete(self, client: TestClient, admin_auth_headers):
        unit = create_unit(client, admin_auth_headers)

        response = client.delete(f"/api/academic-units/{unit['id']}", headers=admin_auth_headers)

        assert response.status_code == 200
        missing = client.get(f"/api/academic-units/{unit['id']}", headers=admin_auth_headers)
        assert missing.status_code == 404
        assert missing.json()['code'] == 'ACADEMIC_UNIT_NOT_FOUND'


class TestContact:
    """Test /api/contact"""

    message = {
        'name': 'Visitor',
        'email': 'visitor@example.com',
        'subject': 'Reunion',
        'message': 'When is the next reunion?',
    }

    def test_submit_is_public(self, client: TestClient, mongo_db):
        response = client.post('/api/contact', json=self.message)

        assert response.status_code == 201
        assert response.json() == {'success': True, 'message': 'Contact message received successfully'}
        assert mongo_db['contacts'].count_documents({}) == 1

    def test_submit_missing_field(self, client: TestClient):
        payload = dict(self.message)
        del payload['subject']

        response = client.post('/api/contact', json=payload)

        assert response.status_code == 422

    def test_admin_reads_messages(self, client: TestClient, admin_auth_headers):
        client.post('/api/contact', json=self.message)
        client.post('/api/contact', json={**self.message, 'subject': 'Transcripts'})

        response = client.get('/api/contact', headers=admin_auth_headers)

        assert response.status_code == 200
        assert {m['subject'] for m in response.json()} == {'Reunion', 'Transcripts'}

    def test_read_requires_admin(self, client: TestClient, auth_headers):
        response = client.get('/api/contact', headers=auth_headers)

        assert response.status_code == 403


class TestSystemEndpoints:

    def test_root(self, client: TestClient):
        response = client.get('/')

        assert response.status_code == 200
        assert 'running' in response.json()['message']

    def test_health_without_database(self, client: TestClient):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.json()['status'] == 'ok'
        assert response.json()['connection_status'] == 'Not Connected'

    def test_startup_fails_without_indexes(self, mongo_db, monkeypatch):
        def broken_indexes(db):
            raise OperationFailure('E11000 duplicate key error building index')

        monkeypatch.setattr(database, 'db', mongo_db)
        monkeypatch.setattr(main, 'ensure_indexes', broken_indexes)

        with pytest.raises(OperationFailure):
            with TestClient(app):
                pass

    def test_request_id_header(self, client: TestClient):
        response = client.get('/api/auth/health', headers={'X-Request-ID': 'abc123'})

        assert response.status_code == 200
        assert response.headers['X-Request-ID'] == 'abc123'
