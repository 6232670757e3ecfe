"""
Accessors for the billing mirror tables.

Each store wraps a ``db.Database`` and owns one concern. Writes open their own
transaction so a caller can run them as independent, individually idempotent
steps.
"""
from datetime import datetime, timezone
from decimal import Decimal

from errors import NotFound, UpstreamBillingError

SUBSCRIPTION_STATUSES = frozenset({
    "active",
    "trialing",
    "past_due",
    "unpaid",
    "incomplete",
    "incomplete_expired",
    "canceled",
})

ACTIVE_STATUSES = frozenset({"active", "trialing", "past_due", "unpaid", "incomplete"})

# Never treated as active, whatever the caller asks for.
TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})


def synthetic_subscription_id(customer_id: str) -> str:
    """Ledger id for customer-only flows that have no external subscription."""
    return f"sub_{customer_id}"


class CustomerRegistry:
    def __init__(self, db):
        self.db = db
        self.table = db.table("stripe_customers")

    def upsert_customer(self, customer_id: str, trainer_id: str | None, payer_id: str | None) -> None:
        row = {"customer_id": customer_id, "trainer": trainer_id, "user_id": payer_id}
        # An unknown side never erases a known one.
        row = {k: v for k, v in row.items() if v is not None or k == "customer_id"}
        with self.db.transaction():
            self.table.upsert(row, on_conflict="customer_id")

    def find_customer(self, payer_id: str, trainer_id: str) -> str | None:
        row = self.table.first(["customer_id"], user_id=payer_id, trainer=trainer_id)
        return row["customer_id"] if row else None

    def find_any_customer_for_trainer(self, trainer_id: str) -> str | None:
        rows = self.table.select(["customer_id"], trainer=trainer_id, order_by="created_at DESC", limit=1)
        return rows[0]["customer_id"] if rows else None

    def find_any_customer_for_payer(self, payer_id: str) -> str | None:
        rows = self.table.select(["customer_id"], user_id=payer_id, order_by="created_at DESC", limit=1)
        return rows[0]["customer_id"] if rows else None

    def owner_of(self, customer_id: str) -> tuple[str | None, str | None]:
        """Return ``(trainer_id, payer_id)`` recorded for a customer, or Nones."""
        row = self.table.first(["trainer", "user_id"], customer_id=customer_id)
        if not row:
            return None, None
        return row.get("trainer") or None, row.get("user_id") or None


class SubscriptionLedger:
    def __init__(self, db):
        self.db = db
        self.table = db.table("stripe_subscriptions")

    def upsert_subscription(
        self,
        subscription_id: str,
        customer_id: str,
        trainer_id: str | None,
        status: str | None,
        price_id: str | None = None,
        tier_key: str | None = None,
        period_end: datetime | None = None,
    ) -> None:
        """Insert or patch a ledger row.

        Only fields that are not None are written on conflict, so a later
        partial snapshot never blanks what an earlier one recorded.
        """
        if status is not None and status not in SUBSCRIPTION_STATUSES:
            raise UpstreamBillingError(f"Unknown subscription status {status!r}")
        row = {
            "id": subscription_id,
            "customer_id": customer_id,
            "trainer": trainer_id,
            "status": status,
            "price_id": price_id,
            "tier_key": tier_key,
            "current_period_end": period_end,
        }
        row = {k: v for k, v in row.items() if v is not None or k == "id"}
        row["updated_at"] = datetime.now(timezone.utc)
        with self.db.transaction():
            self.table.upsert(row, on_conflict="id")

    def find_active_subscription(self, customer_id: str, trainer_id: str, statuses=ACTIVE_STATUSES) -> dict | None:
        wanted = sorted(set(statuses) - TERMINAL_STATUSES)
        if not wanted:
            return None
        return self.table.first(
            ["id", "customer_id", "trainer", "status", "price_id", "tier_key", "current_period_end"],
            customer_id=customer_id,
            trainer=trainer_id,
            status=wanted,
        )

    def mark_canceled(self, subscription_id: str, customer_id: str, trainer_id: str | None) -> None:
        self.upsert_subscription(subscription_id, customer_id, trainer_id, "canceled")


class MembershipLinker:
    """Sole writer of ``trainer.subs`` and ``profile.trainer``.

    Both sides change inside one transaction, and the subs array is toggled
    with single-statement array updates rather than read-then-write.
    """

    def __init__(self, db):
        self.db = db
        self.trainers = db.table("trainer")
        self.profiles = db.table("profile")

    def link(self, trainer_id: str, payer_id: str) -> None:
        with self.db.transaction():
            if not self.trainers.first(["trainer_id"], trainer_id=trainer_id):
                raise NotFound("Trainer not found")
            previous = self.trainer_of(payer_id)
            if previous and previous != trainer_id:
                # A payer belongs to one trainer at a time.
                self.trainers.remove_value("subs", payer_id, trainer_id=previous)
            self.trainers.append_unique("subs", payer_id, trainer_id=trainer_id)
            if not self.profiles.update({"trainer": trainer_id}, creator_id=payer_id):
                self.profiles.insert({"creator_id": payer_id, "trainer": trainer_id})

    def unlink(self, trainer_id: str, payer_id: str) -> None:
        with self.db.transaction():
            self.trainers.remove_value("subs", payer_id, trainer_id=trainer_id)
            # Only clear the back-reference if it still points at this trainer.
            self.profiles.update({"trainer": None}, creator_id=payer_id, trainer=trainer_id)

    def members(self, trainer_id: str) -> list[str]:
        row = self.trainers.first(["subs"], trainer_id=trainer_id)
        return list(row.get("subs") or []) if row else []

    def trainer_of(self, payer_id: str) -> str | None:
        row = self.profiles.first(["trainer"], creator_id=payer_id)
        return row.get("trainer") if row else None


class PayerDirectory:
    def __init__(self, db):
        self.profiles = db.table("profile")

    def find_by_email(self, email: str | None) -> str | None:
        email = (email or "").strip().lower()
        if not email:
            return None
        row = self.profiles.first(["creator_id"], email=email)
        return row["creator_id"] if row else None

    def email_of(self, payer_id: str) -> str | None:
        row = self.profiles.first(["email"], creator_id=payer_id)
        return (row or {}).get("email") or None

    def is_admin(self, user_id: str | None) -> bool:
        if not user_id:
            return False
        row = self.profiles.first(["role"], creator_id=user_id)
        return bool(row) and row.get("role") == "admin"


class TrainerDirectory:
    def __init__(self, db):
        self.trainers = db.table("trainer")
        self.tier_table = db.table("tiers")

    def owner_of(self, trainer_id: str) -> str | None:
        row = self.trainers.first(["creator_id"], trainer_id=trainer_id)
        return row.get("creator_id") if row else None

    def trainer_for_owner(self, user_id: str | None) -> str | None:
        if not user_id:
            return None
        row = self.trainers.first(["trainer_id"], creator_id=user_id)
        return row["trainer_id"] if row else None

    def connect_account(self, trainer_id: str) -> str | None:
        row = self.trainers.first(["connect_account_id"], trainer_id=trainer_id)
        return (row or {}).get("connect_account_id") or None

    def tiers(self, trainer_id: str) -> list[dict]:
        rows = self.tier_table.select(
            ["key", "name", "price", "active", "stripe_price_id"],
            trainer=trainer_id,
            order_by="price ASC",
        )
        tiers = []
        for row in rows:
            price = row.get("price")
            if isinstance(price, Decimal):
                price = float(price)
            if isinstance(price, (int, float)):
                # Prices of 100 or more are stored in cents.
                price = price / 100 if price >= 100 else price
            else:
                price = 0
            tiers.append({
                "key": row.get("key") or "default",
                "name": row.get("name") or "Tier",
                "price": price,
                "active": True if row.get("active") is None else bool(row.get("active")),
                "stripe_price_id": row.get("stripe_price_id") or None,
            })
        return tiers


class DeadLetterLog:
    def __init__(self, db):
        self.db = db
        self.table = db.table("billing_dead_letters")

    def record(self, event_id: str | None, event_type: str | None, step: str, error: str) -> None:
        with self.db.transaction():
            self.table.insert({
                "event_id": event_id,
                "event_type": event_type,
                "step": step,
                "error": error[:2000],
            })
