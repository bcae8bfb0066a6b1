# test/conftest.py

import os

import mongomock
import pytest

os.environ.setdefault("TRANSPARENCY_SECRET_KEY", "test-secret-key")
os.environ["MONGO_URI"] = "mongodb://localhost:27017"
os.environ["MONGO_DB_NAME"] = "FinancialTransparencyTest"
os.environ["AI_API_KEY"] = ""
os.environ["FLASK_TESTING"] = "true"

with mongomock.patch(servers=(("localhost", 27017),)):
    import app as app_module


# --------------------------------------------------------
# DATABASE RESET
# --------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_db():
    for name in app_module.db.list_collection_names():
        app_module.db[name].delete_many({})
    yield


@pytest.fixture
def mock_db():
    """Standalone in-memory database for the service module tests."""
    return mongomock.MongoClient().db


# --------------------------------------------------------
# CLIENTS
# --------------------------------------------------------
@pytest.fixture
def make_client():
    app_module.app.testing = True

    def _make():
        return app_module.app.test_client()

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


def register(test_client, kind, name, email, password="secret123"):
    res = test_client.post(f"/api/v1/auth/{kind}/register", json={
        "name": name,
        "email": email,
        "password": password,
    })
    assert res.status_code == 201, res.get_json()
    return res.get_json()


@pytest.fixture
def institution_client(make_client):
    c = make_client()
    c.account = register(c, "institution", "Springfield College", "finance@springfield.edu")
    return c


@pytest.fixture
def department_client(make_client):
    c = make_client()
    c.account = register(c, "department", "Science", "science@springfield.edu")
    return c


@pytest.fixture
def user_client(make_client):
    c = make_client()
    c.account = register(c, "user", "Jane Public", "jane@example.com")
    return c
