"""
Alumni Records API - Test Configuration and Fixtures
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Generator

import mongomock
import pytest
from faker import Faker
from fastapi.testclient import TestClient

# Set testing environment before the app modules read their settings
os.environ.pop('DATABASE_URL', None)
os.environ['JWT_SECRET_KEY'] = 'test-jwt-secret-key-for-testing'
os.environ['BCRYPT_ROUNDS'] = '4'
os.environ['STORAGE_BACKEND'] = 'local'
os.environ['UPLOAD_DIR'] = tempfile.mkdtemp(prefix='alumni-uploads-')
os.environ['LOG_LEVEL'] = 'WARNING'

from main import app
from alumni_store import AlumniStore
from database import ensure_indexes, get_db, USERS
from security import get_password_hash, create_access_token
from storage import FileStorage, get_storage

fake = Faker()


class StepClock:
    """Deterministic clock: every call is one second after the previous one"""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        self.current = self.current + timedelta(seconds=1)
        return self.current


@pytest.fixture
def mongo_db():
    """Fresh in-memory database with the production indexes"""
    client = mongomock.MongoClient()
    db = client['alumni_records_test']
    ensure_indexes(db)
    yield db
    client.close()


@pytest.fixture
def store(mongo_db) -> AlumniStore:
    return AlumniStore(mongo_db, clock=StepClock())


@pytest.fixture
def file_storage(tmp_path) -> FileStorage:
    return FileStorage(backend='local', upload_dir=str(tmp_path / 'uploads'),
                       public_base_url='http://testserver')


@pytest.fixture
def client(mongo_db, file_storage) -> Generator[TestClient, None, None]:
    """Create test client with database and storage overrides"""
    app.dependency_overrides[get_db] = lambda: mongo_db
    app.dependency_overrides[get_storage] = lambda: file_storage

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


def make_user(db, role: str = 'user', password: str = 'testpassword123') -> dict:
    doc = {
        'name': fake.name(),
        'email': fake.unique.email().lower(),
        'password': get_password_hash(password),
        'role': role,
        'createdAt': datetime.now(timezone.utc),
    }
    doc['_id'] = db[USERS].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def test_user(mongo_db) -> dict:
    return make_user(mongo_db)


@pytest.fixture
def admin_user(mongo_db) -> dict:
    return make_user(mongo_db, role='admin', password='adminpassword123')


@pytest.fixture
def auth_headers(test_user) -> dict:
    token = create_access_token(str(test_user['_id']), test_user['role'])
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def admin_auth_headers(admin_user) -> dict:
    token = create_access_token(str(admin_user['_id']), admin_user['role'])
    return {'Authorization': f'Bearer {token}'}
