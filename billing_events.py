"""
Webhook bodies parsed into tagged variants.

Only the three kinds the reconciliation core acts on are modelled; every other
event type parses to ``None`` and is acknowledged without action.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from errors import MalformedEvent

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str | None
    customer_id: str
    subscription_id: str | None
    trainer_id: str | None
    tier_key: str | None
    payer_id: str | None
    email: str | None

    kind = CHECKOUT_COMPLETED


@dataclass(frozen=True)
class SubscriptionChanged:
    event_id: str | None
    kind: str
    subscription_id: str
    customer_id: str
    status: str | None
    price_id: str | None
    period_end: datetime | None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str | None
    subscription_id: str
    customer_id: str

    kind = SUBSCRIPTION_DELETED


@dataclass(frozen=True)
class SubscriptionSnapshot:
    status: str | None
    price_id: str | None
    period_end: datetime | None
    metadata: dict


def _text(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        # Expanded objects carry their id.
        value = value.get("id")
    value = str(value or "").strip()
    return value or None


def _require(obj: dict, key: str, event_type: str) -> str:
    value = _text(obj.get(key))
    if not value:
        raise MalformedEvent(f"{event_type} is missing {key!r}")
    return value


def epoch_to_datetime(value) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def subscription_snapshot(obj: dict | None) -> SubscriptionSnapshot:
    """Pull status, first price, period end and metadata off a subscription.

    Newer API versions report ``current_period_end`` on the subscription item
    instead of the subscription itself; both places are checked.
    """
    obj = obj or {}
    items = (obj.get("items") or {}).get("data") or []
    first = items[0] if items else {}
    price = first.get("price") or {}
    period_end = obj.get("current_period_end") or first.get("current_period_end")
    return SubscriptionSnapshot(
        status=_text(obj.get("status")),
        price_id=_text(price.get("id")) if isinstance(price, dict) else _text(price),
        period_end=epoch_to_datetime(period_end),
        metadata=dict(obj.get("metadata") or {}),
    )


def parse_event(body: dict):
    """Return the typed variant for ``body``, or None for unhandled kinds."""
    if not isinstance(body, dict):
        raise MalformedEvent("Event body is not an object")
    event_type = body.get("type")
    event_id = _text(body.get("id"))
    obj = ((body.get("data") or {}).get("object")) or {}
    if not isinstance(obj, dict):
        raise MalformedEvent(f"{event_type} has no data object")

    if event_type == CHECKOUT_COMPLETED:
        metadata = obj.get("metadata") or {}
        details = obj.get("customer_details") or {}
        return CheckoutCompleted(
            event_id=event_id,
            customer_id=_require(obj, "customer", event_type),
            subscription_id=_text(obj.get("subscription")),
            trainer_id=_text(metadata.get("trainer_id")),
            tier_key=_text(metadata.get("tier_key")),
            payer_id=_text(metadata.get("user_id")),
            email=_text(details.get("email")),
        )

    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        snapshot = subscription_snapshot(obj)
        return SubscriptionChanged(
            event_id=event_id,
            kind=event_type,
            subscription_id=_require(obj, "id", event_type),
            customer_id=_require(obj, "customer", event_type),
            status=snapshot.status,
            price_id=snapshot.price_id,
            period_end=snapshot.period_end,
            metadata=snapshot.metadata,
        )

    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            event_id=event_id,
            subscription_id=_require(obj, "id", event_type),
            customer_id=_require(obj, "customer", event_type),
        )

    logger.info("Ignoring billing event %s (%s)", event_id, event_type)
    return None
