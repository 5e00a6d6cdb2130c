import copy
import itertools
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

# clients.couchbase.config validates these at import time
os.environ.setdefault("COUCHBASE_USERNAME", "test")
os.environ.setdefault("COUCHBASE_PASSWORD", "test")
os.environ.setdefault("COUCHBASE_HOST", "localhost")
os.environ.setdefault("COUCHBASE_BUCKET", "test")
os.environ.setdefault("COUCHBASE_PROTOCOL", "couchbase")

import pytest
import pytest_asyncio

from clients.couchbase import CASMismatchException, DocumentExistsException, DocumentNotFoundException
from clients.couchbase import base_model
from clients.couchbase.query import Condition
from conf import PaymentConf, SweeperConf
from models.entities.couchbase.listings import ListingData
from models.entities.couchbase.users import User, UserData
from models.operations.auctions import auction_create_with_listing
from models.operations.errors import ProviderUnavailable
from settlement.coordinator import SettlementCoordinator
from settlement.notifications import NotificationDispatcher, Notifier
from settlement.payments import PaymentSessionManager
from settlement.providers import PaymentProvider, ProviderIntent, ProviderStatus, WebhookRejected
from settlement.sweeper import ExpirySweeper

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory keyspace
# ---------------------------------------------------------------------------

class _Result:
    def __init__(self, cas: int, content: Optional[dict] = None):
        self.cas = cas
        self.content_as = {dict: copy.deepcopy(content)}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _matches(doc: dict, cond: Condition) -> bool:
    value = doc.get(cond.field)
    if cond.op == "IS NULL":
        return value is None
    if cond.op == "IS NOT NULL":
        return value is not None
    if cond.op == "IN":
        return value in cond.value
    if value is None:
        return False

    expected = cond.value
    if isinstance(expected, datetime):
        value = _parse_datetime(value)
    ops = {
        "=": lambda a, b: a == b,
        "!=": lambda a, b: a != b,
        "<": lambda a, b: a < b,
        "<=": lambda a, b: a <= b,
        ">": lambda a, b: a > b,
        ">=": lambda a, b: a >= b,
    }
    return ops[cond.op](value, expected)


class FakeStore:
    """Documents per collection plus a global CAS counter."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = {}
        self.cas: Dict[tuple, int] = {}
        self._counter = itertools.count(1)
        # keys whose next insert fails, to simulate a lost write
        self.fail_inserts: set = set()
        # (collection, key) pairs the query index has not caught up with yet;
        # key lookups still see them, as do consistent queries
        self.unindexed: set = set()

    def docs(self, name: str) -> Dict[str, dict]:
        return self.collections.setdefault(name, {})

    def next_cas(self) -> int:
        return next(self._counter)


class FakeCollection:
    def __init__(self, store: FakeStore, name: str):
        self.store = store
        self.name = name

    async def get(self, key: str):
        docs = self.store.docs(self.name)
        if key not in docs:
            raise DocumentNotFoundException(message=f"{key} not found")
        return _Result(self.store.cas[(self.name, key)], docs[key])

    async def replace(self, key: str, doc: dict, cas: Optional[int] = None):
        docs = self.store.docs(self.name)
        if key not in docs:
            raise DocumentNotFoundException(message=f"{key} not found")
        if cas is not None and cas != self.store.cas[(self.name, key)]:
            raise CASMismatchException(message=f"CAS mismatch on {key}")
        docs[key] = json.loads(json.dumps(doc))
        new_cas = self.store.next_cas()
        self.store.cas[(self.name, key)] = new_cas
        return _Result(new_cas)


class FakeKeyspace:
    def __init__(self, store: FakeStore, name: str):
        self.store = store
        self.collection_name = name

    async def get_collection(self):
        return FakeCollection(self.store, self.collection_name)

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs):
        docs = self.store.docs(self.collection_name)
        if key in self.store.fail_inserts:
            self.store.fail_inserts.discard(key)
            raise DocumentExistsException(message=f"{key} insert failed")
        if key in docs:
            raise DocumentExistsException(message=f"{key} exists")
        docs[key] = json.loads(json.dumps(value))
        cas = self.store.next_cas()
        self.store.cas[(self.collection_name, key)] = cas
        return _Result(cas)

    async def remove(self, key: str, **kwargs) -> int:
        docs = self.store.docs(self.collection_name)
        if key not in docs:
            raise DocumentNotFoundException(message=f"{key} not found")
        del docs[key]
        return self.store.cas.pop((self.collection_name, key))

    def _filter(self, conditions, consistent: bool = False) -> List[tuple]:
        docs = self.store.docs(self.collection_name)
        return [
            (k, d)
            for k, d in docs.items()
            if (consistent or (self.collection_name, k) not in self.store.unindexed)
            and all(_matches(d, c) for c in conditions)
        ]

    async def select(self, conditions, order_by=None, limit=None, offset=0, consistent=False) -> list:
        rows = self._filter(conditions, consistent)
        for field, direction in reversed(order_by or []):
            rows.sort(key=lambda kd: kd[1].get(field), reverse=direction.upper() == "DESC")
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [{"id": k, self.collection_name: copy.deepcopy(d)} for k, d in rows]

    async def count(self, conditions, consistent=False) -> int:
        return len(self._filter(conditions, consistent))


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()
    monkeypatch.setattr(base_model, "get_keyspace", lambda name: FakeKeyspace(fake, name))
    return fake


# ---------------------------------------------------------------------------
# Provider and notifier doubles
# ---------------------------------------------------------------------------

class FakeProvider(PaymentProvider):
    name = "fake"

    def __init__(self):
        self.intents: Dict[str, str] = {}
        self.opened: List[dict] = []
        self.unavailable = False
        self._ids = itertools.count(1)

    @property
    def configured(self) -> bool:
        return True

    async def open_intent(self, payment_id: str, amount: float, currency: str, description: str) -> ProviderIntent:
        if self.unavailable:
            raise ProviderUnavailable("provider down")
        intent_id = f"pi_{next(self._ids)}"
        self.intents[intent_id] = "pending"
        self.opened.append({"payment_id": payment_id, "amount": amount, "description": description})
        return ProviderIntent(intent_id=intent_id, redirect_url=f"https://pay.example/{intent_id}")

    async def get_intent(self, intent_id: str) -> ProviderStatus:
        if self.unavailable:
            raise ProviderUnavailable("provider down")
        return ProviderStatus(status=self.intents.get(intent_id, "pending"))

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        if headers.get("x-test-signature") != "valid":
            raise WebhookRejected("Invalid signature")
        event = json.loads(raw_body)
        if event.get("type") != "payment_intent.status.updated":
            return None
        return event["data"]["id"]


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: List[tuple] = []

    async def notify(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None:
        self.sent.append((kind, recipient, payload))

    def kinds(self, recipient: Optional[str] = None) -> List[str]:
        return [k for k, r, _ in self.sent if recipient is None or r == recipient]


def webhook_body(intent_id: str, event_type: str = "payment_intent.status.updated") -> bytes:
    return json.dumps({"type": event_type, "data": {"id": intent_id}}).encode()


VALID_SIGNATURE = {"x-test-signature": "valid"}


# ---------------------------------------------------------------------------
# Settlement wiring
# ---------------------------------------------------------------------------

@pytest.fixture
def payment_conf() -> PaymentConf:
    return PaymentConf(
        provider="ziina",
        currency="AED",
        frontend_url="https://shop.example",
        ziina_api_url="https://api.example/api",
    )


@pytest.fixture
def sweeper_conf() -> SweeperConf:
    return SweeperConf(enabled=False, interval_minutes=5, cron_api_key="cron-secret")


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def recorder() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(recorder) -> NotificationDispatcher:
    return NotificationDispatcher(recorder)


@pytest.fixture
def sessions(store, payment_conf, provider) -> PaymentSessionManager:
    return PaymentSessionManager(payment_conf, provider)


@pytest.fixture
def coordinator(payment_conf, sessions, dispatcher) -> SettlementCoordinator:
    return SettlementCoordinator(payment_conf, sessions, dispatcher)


@pytest.fixture
def sweeper(coordinator, sessions, sweeper_conf) -> ExpirySweeper:
    return ExpirySweeper(coordinator, sessions, sweeper_conf)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def make_user(store):
    async def _make(user_id: str, user_type: str = "buyer", **fields) -> User:
        existing = await User.get(user_id)
        if existing:
            return existing
        data = UserData(email=f"{user_id}@example.com", name=user_id.title(), user_type=user_type, **fields)
        return await User.create(data, key=user_id, user_id=user_id)

    return _make


def listing_draft(seller_id: str = "seller", title: str = "iPhone 15 Pro 256GB", **fields) -> ListingData:
    defaults = dict(
        price=0,
        city="Dubai",
        images=["https://img.example/1.jpg"],
        storage="256GB",
        condition="used",
    )
    return ListingData(seller_id=seller_id, title=title, **{**defaults, **fields})


@pytest_asyncio.fixture
async def make_auction(store, make_user):
    async def _make(
        seller_id: str = "seller",
        start_price: float = 100.0,
        ends_in: timedelta = timedelta(hours=1),
        listing_key: Optional[str] = None,
    ):
        await make_user(seller_id, user_type="seller")
        listing, auction = await auction_create_with_listing(
            seller_id, listing_draft(seller_id), start_price, NOW + ends_in, listing_key=listing_key
        )
        return auction

    return _make
