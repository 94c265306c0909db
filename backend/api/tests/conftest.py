import copy
import logging
import re

import httpx
import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from backend.api import app as app_module
from backend.api.services import event_service, registration_service
from backend.mongo import db
from backend.worker import consumer_registration

logging.basicConfig(level=logging.INFO)


def _matches_value(value, expected):
    if not isinstance(expected, dict):
        return value == expected
    if "$in" in expected and value not in expected["$in"]:
        return False
    if "$ne" in expected and value == expected["$ne"]:
        return False
    if "$regex" in expected:
        flags = re.IGNORECASE if "i" in expected.get("$options", "") else 0
        if not isinstance(value, str) or not re.search(expected["$regex"], value, flags):
            return False
    return True


def _matches(doc, query):
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in expected):
                return False
        elif not _matches_value(doc.get(key), expected):
            return False
    return True


def _sort_key(value):
    # None fica antes de qualquer valor, como no MongoDB
    return (value is not None, value)


class _Result:
    def __init__(self, inserted_id=None, modified_count=0, deleted_count=0):
        self.inserted_id = inserted_id
        self.modified_count = modified_count
        self.deleted_count = deleted_count


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, order in reversed(keys):
            self._docs = sorted(self._docs, key=lambda d: _sort_key(d.get(field)), reverse=order == -1)
        return self

    def skip(self, count):
        self._skip = count
        return self

    def limit(self, count):
        self._limit = count
        return self

    def __aiter__(self):
        docs = self._docs[self._skip:]
        self._iter = iter(docs[: self._limit] if self._limit else docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Coleção em memória com o subconjunto da API do motor usado pelos serviços."""

    def __init__(self):
        self.docs = []
        self.indexes = {}

    async def create_index(self, keys, name=None, unique=False, partialFilterExpression=None):
        name = name or "_".join(f"{field}_{order}" for field, order in keys)
        self.indexes[name] = {"keys": keys, "unique": unique, "partialFilterExpression": partialFilterExpression}
        return name

    def _check_unique(self, candidate):
        for name, index in self.indexes.items():
            if not index["unique"]:
                continue
            partial = index["partialFilterExpression"] or {}
            if not _matches(candidate, partial):
                continue
            fields = [field for field, _ in index["keys"]]
            for doc in self.docs:
                if doc["_id"] == candidate["_id"] or not _matches(doc, partial):
                    continue
                if all(doc.get(f) == candidate.get(f) for f in fields):
                    raise DuplicateKeyError(f"E11000 duplicate key error index: {name}", code=11000)

    async def insert_one(self, doc):
        stored = copy.deepcopy(doc)
        stored["_id"] = ObjectId()
        self._check_unique(stored)
        self.docs.append(stored)
        return _Result(inserted_id=stored["_id"])

    async def find_one(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None):
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, query or {})])

    async def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))

    async def update_one(self, query, update):
        for doc in self.docs:
            if _matches(doc, query):
                self._check_unique({**doc, **update.get("$set", {})})
                doc.update(update.get("$set", {}))
                return _Result(modified_count=1)
        return _Result()

    async def update_many(self, query, update):
        count = 0
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(update.get("$set", {}))
                count += 1
        return _Result(modified_count=count)

    async def delete_one(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                self.docs.remove(doc)
                return _Result(deleted_count=1)
        return _Result()

    async def delete_many(self, query):
        kept = [d for d in self.docs if not _matches(d, query)]
        deleted = len(self.docs) - len(kept)
        self.docs = kept
        return _Result(deleted_count=deleted)


class FakeRedis:
    def __init__(self, fail=False):
        self.lists = {}
        self.fail = fail
        self.closed = False

    async def rpush(self, key, value):
        if self.fail:
            raise ConnectionError("redis indisponível")
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def close(self):
        self.closed = True


@pytest.fixture
def collections(monkeypatch):
    colls = {}

    def get_collection(name):
        return colls.setdefault(name, FakeCollection())

    for module in (db, event_service, registration_service, consumer_registration):
        monkeypatch.setattr(module, "get_collection", get_collection)
    return get_collection


@pytest.fixture
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(registration_service.redis, "from_url", lambda url: fake)
    return fake


@pytest.fixture
def api_client(collections, fake_redis):
    transport = httpx.ASGITransport(app=app_module.app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")

