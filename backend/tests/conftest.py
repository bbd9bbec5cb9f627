# backend/tests/conftest.py

"""
Shared fixtures and in-memory Motor doubles.

MockCollection implements the subset of the Motor collection API the services
use: equality filters (None also matches a missing field), $in, $nin, $ne,
$exists, $set / $setOnInsert / $inc updates with upsert, projections and
cursor sort/to_list.
"""

import copy
import os
import sys
import uuid
from pathlib import Path
from types import SimpleNamespace

import pytest

# settings.py requires these at import time
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "storefront_test")

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from midtrans_gateway import compute_signature  # noqa: E402

SERVER_KEY = "SB-Mid-server-TEST"


def _matches(doc, query):
    for key, condition in query.items():
        value = doc.get(key)
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            for op, arg in condition.items():
                if op == "$in" and value not in arg:
                    return False
                if op == "$nin" and value in arg:
                    return False
                if op == "$ne" and value == arg:
                    return False
                if op == "$exists" and (key in doc) != bool(arg):
                    return False
                if op not in ("$in", "$nin", "$ne", "$exists"):
                    raise NotImplementedError(op)
        elif value != condition:
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        result = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        return result
    for key, flag in projection.items():
        if not flag:
            doc.pop(key, None)
    return doc


class MockCursor:
    def __init__(self, docs):
        self.docs = docs

    def sort(self, key, direction=1):
        self.docs = sorted(self.docs, key=lambda d: d.get(key) or "", reverse=direction == -1)
        return self

    async def to_list(self, length=None):
        return self.docs if length is None else self.docs[:length]


class MockCollection:
    """Mock MongoDB collection"""
    def __init__(self, docs=None):
        self.docs = [copy.deepcopy(d) for d in (docs or [])]
        self.indexes = []

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return MockCursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])

    async def count_documents(self, query):
        return len([d for d in self.docs if _matches(d, query)])

    async def insert_one(self, doc):
        doc.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def insert_many(self, docs):
        ids = []
        for doc in docs:
            ids.append((await self.insert_one(doc)).inserted_id)
        return SimpleNamespace(inserted_ids=ids)

    def _apply(self, doc, update, inserting=False):
        for key, value in update.get("$set", {}).items():
            doc[key] = copy.deepcopy(value)
        for key, value in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + value
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                doc[key] = copy.deepcopy(value)

    def _upsert(self, query, update):
        doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
        doc["_id"] = uuid.uuid4().hex
        self._apply(doc, update, inserting=True)
        self.docs.append(doc)
        return doc

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)
        if upsert:
            doc = self._upsert(query, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update):
        matched = [d for d in self.docs if _matches(d, query)]
        for doc in matched:
            self._apply(doc, update)
        return SimpleNamespace(matched_count=len(matched), modified_count=len(matched))

    async def find_one_and_update(self, query, update, upsert=False, return_document=False):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update)
                return copy.deepcopy(doc if return_document else before)
        if upsert:
            doc = self._upsert(query, update)
            return copy.deepcopy(doc) if return_document else None
        return None

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return str(keys)


class MockDB:
    """Mock MongoDB database; collections are created on first access"""
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self._collections.setdefault(name, MockCollection())

    def __getitem__(self, name):
        return getattr(self, name)


def sign(order_id, status_code, gross_amount, server_key=SERVER_KEY):
    return compute_signature(order_id, status_code, gross_amount, server_key)


def webhook_payload(order_id="ORD-1", transaction_status="settlement", status_code="200",
                    gross_amount="150000.00", server_key=SERVER_KEY, **extra):
    payload = {
        "order_id": order_id,
        "transaction_status": transaction_status,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "signature_key": sign(order_id, status_code, gross_amount, server_key),
    }
    payload.update(extra)
    return payload


@pytest.fixture
def mock_db():
    """Mock MongoDB database"""
    return MockDB()


@pytest.fixture
def semen_product():
    return {
        "id": "prod-semen-gresik",
        "name": "Semen Gresik 50kg",
        "slug": "semen-gresik-50kg",
        "category": "Semen",
        "unit": "sak",
        "price": 65000,
        "stock": 40,
        "available_units": ["sak", "kg", "zak", "ton"],
        "images": ["https://cdn.example.com/semen.jpg"],
        "attributes": {},
        "is_active": True,
    }


@pytest.fixture
def besi_product():
    return {
        "id": "prod-besi-10",
        "name": "Besi Beton 10mm",
        "slug": "besi-beton-10mm",
        "category": "Besi",
        "unit": "batang",
        "price": 85000,
        "stock": 100,
        "available_units": [],
        "images": [],
        "attributes": {"weight_kg": 7.4, "length_meter": 12},
        "is_active": True,
    }


@pytest.fixture
def customer():
    return {"id": "user-1", "name": "Budi", "email": "budi@example.com", "role": "user", "is_active": True}


@pytest.fixture
def pending_order():
    return {
        "id": "6f1c1f86-0000-4000-8000-000000000001",
        "order_id": "ORD-1",
        "user_id": "user-1",
        "items": [{
            "product_id": "prod-semen-gresik",
            "name": "Semen Gresik 50kg",
            "slug": "semen-gresik-50kg",
            "image": "",
            "category": "Semen",
            "unit": "sak",
            "price": 65000,
            "quantity": 2,
            "line_total": 130000,
        }],
        "subtotal": 130000,
        "shipping_cost": 20000,
        "total": 150000,
        "payment_status": "pending",
        "order_status": "awaiting_payment",
        "paid_at": None,
        "created_at": "2025-11-08T08:00:00+00:00",
    }
