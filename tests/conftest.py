"""
Shared pytest fixtures.
"""
import os
import sys
from typing import Dict, Generator, Optional

import httpx
import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from jose import jwt
from pymongo.database import Database

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from database import create_document, ensure_indexes, get_db, reset_collections, utcnow
from main import ALGORITHM, TOKEN_SECRET, app, hash_password
from pintxopote_api import PintxopoteApi
from schemas import Order, Pintxopote, Pub, PubAddress, Score, User

FIREBASE_STORAGE_URL = "https://firebasestorage.googleapis.com/v0/b/pintxopote-skylab.appspot.com/o"


@pytest.fixture
def test_db() -> Generator[Database, None, None]:
    """In-memory MongoDB, emptied after every test"""
    client = mongomock.MongoClient()
    database = client["pintxopote_test"]
    ensure_indexes(database)
    try:
        yield database
    finally:
        reset_collections(database)
        client.close()


@pytest.fixture
def override_get_db(test_db):
    app.dependency_overrides[get_db] = lambda: test_db
    yield test_db
    del app.dependency_overrides[get_db]


@pytest.fixture
def client(override_get_db) -> TestClient:
    return TestClient(app)


@pytest.fixture
def api(override_get_db) -> PintxopoteApi:
    """Client talking to the app in-process"""
    return PintxopoteApi(url="http://testserver", transport=httpx.ASGITransport(app=app))


@pytest.fixture
def user_data() -> Dict[str, str]:
    return {
        "name": "John",
        "surname": "Doe",
        "email": "jd@mail.com",
        "password": "123",
    }


@pytest.fixture
def user_address_data() -> Dict[str, str]:
    return {
        "street": "Calle Bilbao",
        "city": "Bilbo",
        "postalCode": "48005",
        "country": "España",
    }


def sign_token(user_id: str) -> str:
    return jwt.encode({"id": user_id}, TOKEN_SECRET, algorithm=ALGORITHM)


def insert_user(db: Database, name="John", surname="Doe", email="jd@mail.com", password="123", role=None, address=None) -> str:
    user = User(
        name=name,
        surname=surname,
        email=email,
        password=hash_password(password),
        role=role or ["user"],
        address=address,
    )
    return create_document(db, user)


def insert_pub(db: Database, name: str, city: str, street: str = "Somera", deals=(), desc: Optional[str] = None, _id: Optional[ObjectId] = None) -> str:
    pub = Pub(
        name=name,
        image=f"{FIREBASE_STORAGE_URL}/pubs%2F{name.replace(' ', '')}.jpg?alt=media",
        address=PubAddress(street=street, city=city, lat="43.2300749", long="-2.8432032"),
        pintxopotes=list(deals),
        desc=desc,
    )
    return create_document(db, pub, _id=_id)


def insert_pintxopote(db: Database, name: str, pub_id: str, date=None, likes: int = 0, dislikes: int = 0) -> str:
    deal = Pintxopote(
        name=name,
        date=date or utcnow(),
        image=f"{FIREBASE_STORAGE_URL}/pintxos%2F{name.replace(' ', '')}.jpg?alt=media",
        pub=pub_id,
        score=Score(likes=likes, dislikes=dislikes),
    )
    return create_document(db, deal)


def insert_order(db: Database, user_id: str, pintxopote_id: str, quantity: int, validated: bool = False) -> str:
    order = Order(user=user_id, pintxopote=pintxopote_id, quantity=quantity, validated=validated, date=utcnow())
    return create_document(db, order)
