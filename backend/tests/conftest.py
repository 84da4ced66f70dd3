"""
Shared fixtures for backend unit tests.

FakeDatabase is an in-memory stand-in for a Motor database that supports the
subset of the query/update language the ledger and billing code use. Every
operation yields to the event loop once before running, then applies itself
without further awaits, so concurrent callers interleave between operations
but each operation is atomic (as in MongoDB).
"""

import os
import sys
import copy
import uuid
import asyncio
from datetime import datetime, timezone, timedelta
from pathlib import Path
from types import SimpleNamespace

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "miniaturia_test")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

sys.path.insert(0, str(Path(__file__).parent.parent))

import jwt
import pytest
from pymongo import ReturnDocument


# ==================== IN-MEMORY MONGO ====================

def _matches_condition(value, condition) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$gte" and not (value is not None and value >= operand):
                return False
            if op == "$lte" and not (value is not None and value <= operand):
                return False
            if op == "$ne":
                if isinstance(value, list):
                    if operand in value:
                        return False
                elif value == operand:
                    return False
            if op == "$in" and value not in operand:
                return False
        return True

    if isinstance(value, list) and not isinstance(condition, list):
        return condition in value
    return value == condition


def _matches(doc: dict, query: dict) -> bool:
    return all(_matches_condition(doc.get(key), cond) for key, cond in query.items())


def _project(doc: dict, projection) -> dict:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc

    include = {k for k, v in projection.items() if v and k != "_id"}
    if include:
        result = {k: v for k, v in doc.items() if k in include}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        return result

    return {k: v for k, v in doc.items() if projection.get(k, 1)}


def _apply_update(doc: dict, update: dict, inserting: bool = False):
    if inserting:
        for key, value in update.get("$setOnInsert", {}).items():
            doc[key] = copy.deepcopy(value)
    for key, value in update.get("$set", {}).items():
        doc[key] = copy.deepcopy(value)
    for key, value in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + value
    for key, spec in update.get("$push", {}).items():
        items = doc.setdefault(key, [])
        if isinstance(spec, dict) and "$each" in spec:
            items.extend(spec["$each"])
            if "$slice" in spec:
                limit = spec["$slice"]
                doc[key] = items[limit:] if limit < 0 else items[:limit]
        else:
            items.append(spec)


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: d.get(key) or "", reverse=direction == -1)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        return self._docs[:length] if length else list(self._docs)


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs = []

    def _find_doc(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                return doc
        return None

    async def find_one(self, query, projection=None, session=None):
        await asyncio.sleep(0)
        doc = self._find_doc(query)
        return _project(doc, projection) if doc is not None else None

    async def insert_one(self, document, session=None):
        await asyncio.sleep(0)
        document.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(copy.deepcopy(document))
        return SimpleNamespace(inserted_id=document["_id"])

    def _upsert(self, query, update):
        doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
        doc["_id"] = uuid.uuid4().hex
        _apply_update(doc, update, inserting=True)
        self.docs.append(doc)
        return doc

    async def update_one(self, query, update, upsert=False, session=None):
        await asyncio.sleep(0)
        doc = self._find_doc(query)
        if doc is None:
            if upsert:
                created = self._upsert(query, update)
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=created["_id"])
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

        before = copy.deepcopy(doc)
        _apply_update(doc, update)
        return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)

    async def find_one_and_update(
        self,
        query,
        update,
        projection=None,
        return_document=ReturnDocument.BEFORE,
        upsert=False,
        session=None
    ):
        await asyncio.sleep(0)
        doc = self._find_doc(query)
        if doc is None:
            if not upsert:
                return None
            created = self._upsert(query, update)
            return _project(created, projection) if return_document == ReturnDocument.AFTER else None

        before = copy.deepcopy(doc)
        _apply_update(doc, update)
        return _project(doc if return_document == ReturnDocument.AFTER else before, projection)

    def find(self, query=None, projection=None):
        docs = [_project(d, projection) for d in self.docs if _matches(d, query or {})]
        return FakeCursor(docs)

    async def estimated_document_count(self):
        return len(self.docs)


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


# ==================== FIXTURES ====================

@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def ledger(fake_db):
    from credit_wallet.ledger import CreditLedger
    return CreditLedger(fake_db)


def seed_account(db: FakeDatabase, user_id: str, credits: int = 0, **fields) -> dict:
    """Insert an account document directly, bypassing the ledger."""
    now = datetime.now(timezone.utc).isoformat()
    doc = {
        "_id": uuid.uuid4().hex,
        "user_id": user_id,
        "email": f"{user_id}@example.com",
        "plan": "free",
        "plan_period": None,
        "credits": credits,
        "stripe_customer_id": None,
        "stripe_subscription_id": None,
        "plan_event_at": 0,
        "recent_refs": [],
        "created_at": now,
        "updated_at": now,
    }
    doc.update(fields)
    db.accounts.docs.append(doc)
    return doc


def _make_token(user_id: str, email: str = None, secret: str = None, audience: str = "authenticated", expires_in: int = 3600) -> str:
    payload = {
        "sub": user_id,
        "email": email or f"{user_id}@example.com",
        "aud": audience,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, secret or os.environ["SUPABASE_JWT_SECRET"], algorithm="HS256")


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {_make_token('user_1')}"}


@pytest.fixture
def make_token():
    return _make_token


@pytest.fixture
def seed(fake_db):
    def _seed(user_id: str, credits: int = 0, **fields) -> dict:
        return seed_account(fake_db, user_id, credits, **fields)
    return _seed
