"""
PAT Inspection Logger - Test Configuration and Fixtures
"""
import io
import os
import tempfile

import pytest
from PIL import Image

# Set testing environment before the config module is imported
os.environ.setdefault('PATLOG_DATA_DIR', tempfile.mkdtemp(prefix='patlog-test-'))
os.environ['SECRET_KEY'] = 'test-secret-key-for-testing-only'
os.environ['ALGORITHM'] = 'HS256'

from fastapi.testclient import TestClient

import database
from patlog import config, services
from web_server import app

PASSWORD = 'secret123'


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Fresh database and blob directory for every test"""
    monkeypatch.setattr(config, 'DB_PATH', str(tmp_path / 'test.db'))
    monkeypatch.setattr(config, 'STORAGE_DIR', str(tmp_path / 'storage'))
    monkeypatch.setattr(config, 'BASE_URL', 'http://pat.test')
    monkeypatch.setattr(config, 'STORAGE_CLEANUP_ENABLED', False)
    database.migrate_database()
    return tmp_path


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_user():
    """The first account, which is the admin"""
    return services.signup('admin@example.com', PASSWORD, PASSWORD)


@pytest.fixture
def user(admin_user):
    return services.signup('inspector@example.com', PASSWORD, PASSWORD)


@pytest.fixture
def other_user(user):
    return services.signup('someone.else@example.com', PASSWORD, PASSWORD)


@pytest.fixture
def log_in(client):
    """Logs the test client in through the login form"""
    def _log_in(email, password=PASSWORD):
        response = client.post('/login', data={'email': email, 'password': password}, follow_redirects=False)
        assert response.status_code == 303
        return response
    return _log_in


@pytest.fixture
def user_client(client, user, log_in):
    log_in(user.email)
    return client


@pytest.fixture
def admin_client(client, admin_user, log_in):
    log_in(admin_user.email)
    return client


@pytest.fixture
def inspection_form():
    """Factory for a valid inspection form; keyword arguments override fields"""
    def _make(**overrides):
        form = {
            'inspection_date': '2024-03-01',
            'reinspection_date': '2025-03-01',
            'inspector': 'J. Smith',
            'serial': 'PAT-0001',
            'description': 'Electric kettle',
            'location': 'Staff kitchen',
            'equipment_class': '1',
            'visual_pass': '1',
            'fuse_rating': '13',
            'earth_ohms': '0.1',
            'insulation_mohms': '200',
            'leakage': '0.25',
            'passed': '1',
        }
        form.update(overrides)
        return form
    return _make


@pytest.fixture
def make_inspection(inspection_form):
    def _make(owner, image=None, **overrides):
        return services.create_inspection(owner, inspection_form(**overrides), image)
    return _make


@pytest.fixture
def image_bytes():
    """Factory for encoded test images"""
    def _make(fmt='JPEG', size=(320, 240), mode='RGB', color=(200, 30, 30)):
        if mode in ('RGBA', 'LA'):
            color = color + (128,) if mode == 'RGBA' else (128, 128)
        img = Image.new(mode, size, color)
        buffer = io.BytesIO()
        img.save(buffer, format=fmt)
        return buffer.getvalue()
    return _make


@pytest.fixture
def jpeg_upload(image_bytes):
    return services.ImageUpload(data=image_bytes(), content_type='image/jpeg', filename='photo.jpeg')
