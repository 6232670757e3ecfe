import copy
import itertools
import os
from contextlib import contextmanager

import pytest
import stripe

os.environ["SECRET_KEY"] = "test-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_dummy"
os.environ["DATABASE_URL"] = "postgresql://localhost/unused"
os.environ.pop("BILLING_ALERT_EMAIL", None)

from billing_store import (  # noqa: E402
    CustomerRegistry,
    DeadLetterLog,
    MembershipLinker,
    PayerDirectory,
    SubscriptionLedger,
    TrainerDirectory,
)
from errors import PersistenceError, UpstreamBillingError  # noqa: E402
from reconcile import ReconciliationEngine, UnlinkEngine  # noqa: E402

_clock = itertools.count(1)


def _matches(row, filters):
    for column, value in filters.items():
        if value is None:
            if row.get(column) is not None:
                return False
        elif isinstance(value, (list, tuple, set, frozenset)):
            if row.get(column) not in value:
                return False
        elif row.get(column) != value:
            return False
    return True


class MemoryTable:
    """Same surface as db.Table, backed by a list of dicts."""

    def __init__(self, db, name):
        self.db = db
        self.name = name

    @property
    def rows(self):
        return self.db.tables.setdefault(self.name, [])

    def _check(self, op):
        if (self.name, op) in self.db.failures:
            raise PersistenceError(f"{self.name}: simulated {op} failure")

    def select(self, columns, *, limit=None, order_by=None, **filters):
        self._check("select")
        rows = [r for r in self.rows if _matches(r, filters)]
        if order_by:
            column, _, direction = order_by.partition(" ")
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)),
                      reverse=direction.strip().upper() == "DESC")
        if limit is not None:
            rows = rows[:limit]
        return [{c: copy.deepcopy(r.get(c)) for c in columns} for r in rows]

    def first(self, columns, **filters):
        rows = self.select(columns, limit=1, **filters)
        return rows[0] if rows else None

    def insert(self, row):
        self._check("insert")
        stored = {"created_at": next(_clock)}
        stored.update(copy.deepcopy(row))
        self.rows.append(stored)
        return 1

    def upsert(self, row, on_conflict):
        self._check("upsert")
        for existing in self.rows:
            if existing.get(on_conflict) == row[on_conflict]:
                existing.update(copy.deepcopy(row))
                return 1
        return self.insert(row)

    def update(self, values, **filters):
        self._check("update")
        matched = [r for r in self.rows if _matches(r, filters)]
        for r in matched:
            r.update(copy.deepcopy(values))
        return len(matched)

    def append_unique(self, column, value, **filters):
        self._check("append_unique")
        changed = 0
        for r in self.rows:
            if _matches(r, filters) and value not in (r.get(column) or []):
                r[column] = list(r.get(column) or []) + [value]
                changed += 1
        return changed

    def remove_value(self, column, value, **filters):
        self._check("remove_value")
        matched = [r for r in self.rows if _matches(r, filters)]
        for r in matched:
            r[column] = [v for v in (r.get(column) or []) if v != value]
        return len(matched)


class MemoryDatabase:
    def __init__(self):
        self.tables = {}
        self.failures = set()

    def table(self, name):
        return MemoryTable(self, name)

    def fail(self, table, op):
        self.failures.add((table, op))

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self.tables)
        try:
            yield self
        except Exception:
            self.tables = snapshot
            raise

    def rows(self, name):
        return self.tables.get(name, [])

    def row(self, name, **filters):
        found = [r for r in self.rows(name) if _matches(r, filters)]
        return found[0] if found else None


class FakeGateway:
    """Stands in for stripe_gateway.BillingGateway."""

    def __init__(self):
        self.subscriptions = {}
        self.sessions = {}
        self.customers = {}
        self.calls = []
        self.fail = set()

    def _guard(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise UpstreamBillingError(f"simulated {name} failure")

    def verify_webhook(self, payload, sig_header, secret):
        self.calls.append("verify_webhook")
        if sig_header != "valid-signature":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", sig_header)

    def retrieve_subscription(self, subscription_id):
        self._guard("retrieve_subscription")
        if subscription_id not in self.subscriptions:
            raise UpstreamBillingError(f"No such subscription: {subscription_id}")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def retrieve_checkout_session(self, session_id):
        self._guard("retrieve_checkout_session")
        if session_id not in self.sessions:
            raise UpstreamBillingError(f"No such checkout session: {session_id}")
        return copy.deepcopy(self.sessions[session_id])

    def retrieve_customer(self, customer_id):
        self._guard("retrieve_customer")
        return copy.deepcopy(self.customers.get(customer_id, {"id": customer_id}))

    def create_customer(self, *, email, name=None, metadata=None):
        self._guard("create_customer")
        customer_id = f"cus_new_{len(self.customers) + 1}"
        self.customers[customer_id] = {"id": customer_id, "email": email, "metadata": metadata or {}}
        return {"id": customer_id}

    def cancel_subscription(self, subscription_id, *, immediate, metadata=None):
        self._guard("cancel_subscription")
        sub = self.subscriptions.setdefault(subscription_id, {"id": subscription_id})
        if immediate:
            sub["status"] = "canceled"
        else:
            sub["cancel_at_period_end"] = True
            sub.setdefault("metadata", {}).update(metadata or {})
        self.calls.append(("cancel", subscription_id, immediate))
        return copy.deepcopy(sub)

    def create_checkout_session(self, **params):
        self._guard("create_checkout_session")
        self.last_checkout = params
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    def create_portal_session(self, *, customer_id, return_url):
        self._guard("create_portal_session")
        self.last_portal = {"customer_id": customer_id, "return_url": return_url}
        return {"url": f"https://billing.stripe.test/{customer_id}"}


def subscription_obj(sub_id, customer_id, status="active", price_id="price_plus", period_end=1893456000,
                     metadata=None):
    return {
        "id": sub_id,
        "customer": customer_id,
        "status": status,
        "current_period_end": period_end,
        "items": {"data": [{"price": {"id": price_id}}]},
        "metadata": metadata or {},
    }


@pytest.fixture
def db():
    memory = MemoryDatabase()
    memory.tables["profile"] = [
        {"creator_id": "U1", "email": "u1@example.com", "role": "user", "trainer": None},
        {"creator_id": "U2", "email": "u2@example.com", "role": "user", "trainer": None},
        {"creator_id": "OWNER1", "email": "coach1@example.com", "role": "user", "trainer": None},
        {"creator_id": "OWNER2", "email": "coach2@example.com", "role": "user", "trainer": None},
        {"creator_id": "ADMIN", "email": "admin@example.com", "role": "admin", "trainer": None},
    ]
    memory.tables["trainer"] = [
        {"trainer_id": "T1", "creator_id": "OWNER1", "subs": [], "connect_account_id": None},
        {"trainer_id": "T2", "creator_id": "OWNER2", "subs": [], "connect_account_id": "acct_t2"},
    ]
    memory.tables["tiers"] = [
        {"trainer": "T1", "key": "basic", "name": "Basic", "price": 1500, "active": True, "stripe_price_id": None},
        {"trainer": "T1", "key": "plus", "name": "Plus", "price": 3000, "active": True,
         "stripe_price_id": "price_plus"},
    ]
    return memory


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def stores(db):
    return {
        "customers": CustomerRegistry(db),
        "ledger": SubscriptionLedger(db),
        "members": MembershipLinker(db),
        "payers": PayerDirectory(db),
        "trainers": TrainerDirectory(db),
        "dead_letters": DeadLetterLog(db),
    }


@pytest.fixture
def unlinker(stores, gateway):
    return UnlinkEngine(stores["customers"], stores["ledger"], stores["members"], gateway)


@pytest.fixture
def engine(stores, gateway, unlinker):
    return ReconciliationEngine(
        stores["customers"], stores["ledger"], stores["members"], stores["payers"], gateway, unlinker,
    )


@pytest.fixture
def app_module(db, gateway, monkeypatch):
    import app as app_module

    @contextmanager
    def open_memory_database():
        yield db

    monkeypatch.setattr(app_module, "open_database", open_memory_database)
    monkeypatch.setattr(app_module, "get_gateway", lambda: gateway)
    app_module.app.config["TESTING"] = True
    return app_module


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()


@pytest.fixture
def login(client):
    def _login(user_id):
        with client.session_transaction() as sess:
            sess["user_id"] = user_id
    return _login


@pytest.fixture
def make_subscription():
    return subscription_obj


@pytest.fixture
def make_event():
    def _make(event_type, obj, event_id="evt_1"):
        return {"id": event_id, "type": event_type, "data": {"object": obj}}
    return _make


@pytest.fixture
def checkout_event(make_event):
    def _make(customer="cus_1", subscription="sub_1", trainer_id="T1", tier_key="plus", user_id="U1",
              email=None, event_id="evt_checkout_1"):
        obj = {
            "id": "cs_test_1",
            "customer": customer,
            "subscription": subscription,
            "metadata": {"trainer_id": trainer_id or "", "tier_key": tier_key or "", "user_id": user_id or ""},
            "customer_details": {"email": email} if email else {},
        }
        return make_event("checkout.session.completed", obj, event_id)
    return _make
