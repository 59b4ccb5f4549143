import sys
from datetime import timedelta
from pathlib import Path

import fakeredis
import mongomock
import pytest
from bson import ObjectId

# Ensure the service modules are importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SERVICE_PATH = PROJECT_ROOT / "api" / "api_movies"
if str(SERVICE_PATH) not in sys.path:
    sys.path.insert(0, str(SERVICE_PATH))

from common_functions import utc_now  # noqa: E402


@pytest.fixture
def mongo_db():
    """
    In-memory database so pipelines and update operators run for real.
    """
    return mongomock.MongoClient()["api_movies_test"]


@pytest.fixture
def movies_collection(mongo_db):
    return mongo_db["movies"]


@pytest.fixture
def users_collection(mongo_db):
    return mongo_db["users"]


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis()


@pytest.fixture
def make_review():
    def _make_review(user, rating, days_ago=0.0, comment="Worth watching"):
        return {
            "user": user,
            "rating": rating,
            "comment": comment,
            "date": utc_now() - timedelta(days=days_ago),
        }

    return _make_review


@pytest.fixture
def insert_movie(movies_collection):
    def _insert_movie(title, genres=None, director=None, reviews=None, **extra):
        document = {
            "_id": ObjectId(),
            "title": title,
            "year": extra.pop("year", 2000),
            "genres": list(genres or []),
            "director": director,
            "cast": extra.pop("cast", []),
            "platforms": extra.pop("platforms", []),
            "reviews": list(reviews or []),
        }
        document.update(extra)
        movies_collection.insert_one(document)
        return document

    return _insert_movie


@pytest.fixture
def insert_user(users_collection):
    def _insert_user(username, liked=None, watchlist=None, user_id=None):
        document = {
            "_id": user_id or ObjectId(),
            "username": username,
            "email": f"{username}@example.com",
            "password": "hashed",
            "liked_movies": [str(value) for value in liked or []],
            "watchlist": [str(value) for value in watchlist or []],
        }
        users_collection.insert_one(document)
        return document

    return _insert_user


@pytest.fixture
def api_client(monkeypatch, movies_collection, users_collection, redis_client):
    """
    Flask test client wired to the in-memory stores.
    """
    import movies

    monkeypatch.setattr(movies, "movies_collection", movies_collection)
    monkeypatch.setattr(movies, "users_collection", users_collection)
    monkeypatch.setattr(movies, "r", redis_client)
    movies.app.config["TESTING"] = True
    return movies.app.test_client()
