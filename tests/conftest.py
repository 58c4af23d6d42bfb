import json
import os

os.environ.pop("DATABASE_URL", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app
from repositories import Repositories
from storage import LocalImageStore, get_image_store

NYC = {"lat": 40.7128, "lng": -74.0060}


@pytest.fixture
def mock_db():
    database = mongomock.MongoClient()["lostfound_test"]
    Repositories(database).ensure_indexes()
    return database


@pytest.fixture
def repos(mock_db):
    return Repositories(mock_db)


@pytest.fixture
def store(tmp_path):
    return LocalImageStore(str(tmp_path / "uploads"), "/uploads")


@pytest.fixture
def client(mock_db, store):
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_image_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(repos):
    def _make(name="Alice"):
        user = repos.users.create(f"{name.lower()}@example.com", "hash", "salt", name)
        return str(user["_id"])
    return _make


@pytest.fixture
def make_item(repos):
    def _make(owner, type="lost", category="Electronics", lat=NYC["lat"], lng=NYC["lng"], title="Phone"):
        return repos.items.create({
            "title": title,
            "description": "Black smartphone with a cracked case",
            "type": type,
            "category": category,
            "location": {"city": "New York", "coordinates": {"lat": lat, "lng": lng}},
            "tags": [],
            "images": [],
        }, posted_by=owner)
    return _make


@pytest.fixture
def register(client):
    def _register(name="Alice", location=None):
        body = {"email": f"{name.lower()}@example.com", "password": "secret123", "name": name}
        if location:
            body["location"] = location
        r = client.post("/api/auth/register", json=body)
        assert r.status_code == 201, r.text
        data = r.json()
        return {
            "id": data["user"]["id"],
            "token": data["token"],
            "headers": {"Authorization": f"Bearer {data['token']}"},
        }
    return _register


@pytest.fixture
def post_item(client):
    def _post(user, coordinates=None, files=None, **fields):
        data = {
            "title": "Black phone",
            "description": "Lost near the station",
            "type": "lost",
            "category": "Electronics",
            "location": json.dumps({"address": "1 Main St", "city": "New York", "coordinates": coordinates or NYC}),
            "date": "2026-10-01T10:00:00",
        }
        data.update(fields)
        r = client.post("/api/items", data=data, files=files, headers=user["headers"])
        assert r.status_code == 201, r.text
        return r.json()
    return _post
