"""
Billing-state reconciliation.

Three entry points feed the same pipeline: the checkout-completed webhook, the
subscription created/updated webhook, and the finalize call a client makes
after returning from checkout. All of them resolve a payer, record the
customer, mirror the live subscription into the ledger, then either link the
payer to the trainer or hand off to ``UnlinkEngine`` when the subscription is
over. Every write is keyed on a stable external id, so replays and
out-of-order deliveries converge on the same state.
"""
import logging
from dataclasses import dataclass, field

from billing_events import (
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    subscription_snapshot,
)
from billing_store import ACTIVE_STATUSES, TERMINAL_STATUSES, synthetic_subscription_id
from errors import (
    BadRequest,
    BillingError,
    CheckoutIncomplete,
    PayerMismatch,
    TrainerMismatch,
    UnresolvedPayer,
)

logger = logging.getLogger(__name__)

# Set on a subscription's metadata when the membership is ended (by the trainer,
# an admin or the member) but the subscription runs until the end of the paid
# period.
KICKED_METADATA_KEY = "membership_removed"

# Checkout sessions that may be finalized.
PAID_SESSION_STATES = frozenset({"paid", "no_payment_required"})


def first_match(resolvers) -> tuple[str | None, str | None]:
    """Try ``(name, callable)`` resolvers in order; the first non-empty value wins."""
    for name, resolver in resolvers:
        value = resolver()
        if value:
            return name, value
    return None, None


def resolve_payer(resolvers, *, required: bool = True) -> str | None:
    resolvers = list(resolvers)
    source, payer_id = first_match(resolvers)
    if payer_id:
        logger.debug("Payer resolved via %s", source)
        return payer_id
    if required:
        raise UnresolvedPayer(tried=[name for name, _ in resolvers])
    return None


class StepRunner:
    """Runs named reconciliation steps.

    Strict runners let the first ``BillingError`` propagate. Isolated runners
    (the webhook path) log it, remember it, hand it to ``on_failure`` and
    return None so sibling steps still run.
    """

    def __init__(self, *, isolate: bool = False, event_id=None, event_type=None, on_failure=None):
        self.isolate = isolate
        self.event_id = event_id
        self.event_type = event_type
        self.on_failure = on_failure
        self.failures: list[tuple[str, BillingError]] = []

    def run(self, step: str, fn, *args, **kwargs):
        if not self.isolate:
            return fn(*args, **kwargs)
        try:
            return fn(*args, **kwargs)
        except BillingError as e:
            logger.exception("Billing step %r failed for event %s (%s)", step, self.event_id, self.event_type)
            self.failures.append((step, e))
            if self.on_failure is not None:
                self.on_failure(self, step, e)
            return None


@dataclass
class ReconcileResult:
    customer_id: str
    subscription_id: str | None
    trainer_id: str | None
    payer_id: str | None
    status: str | None
    action: str
    failures: list = field(default_factory=list)


class UnlinkEngine:
    """Tears down a membership and marks the ledger canceled."""

    def __init__(self, customers, ledger, members, gateway=None):
        self.customers = customers
        self.ledger = ledger
        self.members = members
        self.gateway = gateway

    def unlink(self, customer_id: str, subscription_id: str | None = None, *,
               trainer_id: str | None = None, payer_id: str | None = None,
               runner: StepRunner | None = None) -> ReconcileResult:
        runner = runner or StepRunner()
        if not (trainer_id and payer_id):
            owner = runner.run("resolve_owner", self.customers.owner_of, customer_id) or (None, None)
            trainer_id = trainer_id or owner[0]
            payer_id = payer_id or owner[1]

        if subscription_id:
            runner.run("mark_canceled", self.ledger.mark_canceled, subscription_id, customer_id, trainer_id)

        if trainer_id and payer_id:
            runner.run("unlink", self.members.unlink, trainer_id, payer_id)
            action = "unlinked"
        else:
            logger.warning("No trainer/payer recorded for customer %s; nothing to unlink", customer_id)
            action = "skipped"
        return ReconcileResult(customer_id, subscription_id, trainer_id, payer_id, "canceled", action,
                               list(runner.failures))

    def subscription_deleted(self, event: SubscriptionDeleted, runner: StepRunner | None = None) -> ReconcileResult:
        return self.unlink(event.customer_id, event.subscription_id, runner=runner)

    def kick(self, trainer_id: str, payer_id: str, *, immediate: bool = False) -> ReconcileResult:
        """Cancel at the billing platform first, then mirror locally."""
        customer_id = self.customers.find_customer(payer_id, trainer_id)
        active = self.ledger.find_active_subscription(customer_id, trainer_id, ACTIVE_STATUSES) if customer_id else None
        subscription_id = active["id"] if active else None

        if subscription_id and subscription_id != synthetic_subscription_id(customer_id):
            self.gateway.cancel_subscription(
                subscription_id,
                immediate=immediate,
                metadata={KICKED_METADATA_KEY: "true"},
            )

        if customer_id:
            return self.unlink(customer_id, subscription_id, trainer_id=trainer_id, payer_id=payer_id)

        # Linked without ever paying (e.g. added by hand): only the membership goes.
        self.members.unlink(trainer_id, payer_id)
        return ReconcileResult("", None, trainer_id, payer_id, None, "unlinked")


class ReconciliationEngine:
    def __init__(self, customers, ledger, members, payers, gateway, unlinker: UnlinkEngine):
        self.customers = customers
        self.ledger = ledger
        self.members = members
        self.payers = payers
        self.gateway = gateway
        self.unlinker = unlinker

    def _email_resolver(self, customer_id: str, email: str | None, runner: StepRunner):
        def resolve():
            address = email
            if not address:
                customer = runner.run("fetch_customer", self.gateway.retrieve_customer, customer_id) or {}
                address = customer.get("email")
            return self.payers.find_by_email(address)
        return resolve

    def reconcile(self, *, customer_id: str, trainer_id: str | None, subscription_id: str | None = None,
                  payer_resolvers=(), payer_required: bool = True, tier_key: str | None = None,
                  snapshot=None, runner: StepRunner | None = None) -> ReconcileResult:
        """Drive registry, ledger and membership to the state the platform reports.

        ``snapshot`` is used as-is when the caller already holds a live copy of
        the subscription; otherwise the subscription is re-read so that a stale
        or reordered event can never regress the mirrored status.
        """
        runner = runner or StepRunner()

        payer_id = runner.run("resolve_payer", resolve_payer, payer_resolvers, required=payer_required)

        runner.run("upsert_customer", self.customers.upsert_customer, customer_id, trainer_id, payer_id)

        if subscription_id and snapshot is None:
            live = runner.run("fetch_subscription", self.gateway.retrieve_subscription, subscription_id)
            if live is not None:
                snapshot = subscription_snapshot(live)

        if subscription_id:
            status = snapshot.status if snapshot else None
        else:
            # Customer-only flows have nothing upstream to mirror.
            subscription_id = synthetic_subscription_id(customer_id)
            status = "active"

        runner.run(
            "upsert_subscription",
            self.ledger.upsert_subscription,
            subscription_id,
            customer_id,
            trainer_id,
            status,
            snapshot.price_id if snapshot else None,
            tier_key,
            snapshot.period_end if snapshot else None,
        )

        kicked = snapshot is not None and snapshot.metadata.get(KICKED_METADATA_KEY) == "true"
        if status in TERMINAL_STATUSES or kicked:
            result = self.unlinker.unlink(customer_id, subscription_id, trainer_id=trainer_id,
                                          payer_id=payer_id, runner=runner)
            result.status = status
            return result

        if status is None:
            # Live state unknown: leave membership alone until the next event.
            action = "deferred"
        elif trainer_id and payer_id:
            runner.run("link", self.members.link, trainer_id, payer_id)
            action = "linked"
        else:
            logger.warning("Cannot link customer %s: trainer=%s payer=%s", customer_id, trainer_id, payer_id)
            action = "skipped"
        return ReconcileResult(customer_id, subscription_id, trainer_id, payer_id, status, action,
                               list(runner.failures))

    def checkout_completed(self, event: CheckoutCompleted, runner: StepRunner | None = None) -> ReconcileResult:
        runner = runner or StepRunner()
        trainer_id = event.trainer_id
        if not trainer_id:
            owner = runner.run("resolve_owner", self.customers.owner_of, event.customer_id) or (None, None)
            trainer_id = owner[0]
        return self.reconcile(
            customer_id=event.customer_id,
            trainer_id=trainer_id,
            subscription_id=event.subscription_id,
            payer_resolvers=[
                ("metadata", lambda: event.payer_id),
                ("email", self._email_resolver(event.customer_id, event.email, runner)),
            ],
            tier_key=event.tier_key,
            runner=runner,
        )

    def subscription_changed(self, event: SubscriptionChanged, runner: StepRunner | None = None) -> ReconcileResult:
        runner = runner or StepRunner()
        owner = runner.run("resolve_owner", self.customers.owner_of, event.customer_id) or (None, None)
        trainer_id = owner[0] or event.metadata.get("trainer_id") or None
        return self.reconcile(
            customer_id=event.customer_id,
            trainer_id=trainer_id,
            subscription_id=event.subscription_id,
            payer_resolvers=[
                ("registry", lambda: owner[1]),
                ("metadata", lambda: event.metadata.get("user_id") or None),
                ("email", self._email_resolver(event.customer_id, None, runner)),
            ],
            payer_required=False,
            tier_key=event.metadata.get("tier_key") or None,
            runner=runner,
        )

    def finalize(self, session_id: str, trainer_id: str, caller_id: str) -> ReconcileResult:
        """Confirm a checkout from the client after redirect-back.

        Ownership and payment checks run before any write, so a rejected
        call leaves no trace.
        """
        session_id = (session_id or "").strip()
        trainer_id = (trainer_id or "").strip()
        if not session_id or not trainer_id:
            raise BadRequest("Missing session_id or trainer_id")

        session = self.gateway.retrieve_checkout_session(session_id)
        metadata = session.get("metadata") or {}
        session_trainer = (metadata.get("trainer_id") or trainer_id).strip()
        tier_key = (metadata.get("tier_key") or "").strip() or None
        recorded_payer = (metadata.get("user_id") or "").strip() or None

        if session_trainer != trainer_id:
            raise TrainerMismatch()
        if recorded_payer and recorded_payer != caller_id:
            raise PayerMismatch()
        if session.get("status") != "complete" or session.get("payment_status") not in PAID_SESSION_STATES:
            raise CheckoutIncomplete(status=session.get("status"), payment_status=session.get("payment_status"))

        customer = session.get("customer")
        customer_id = customer.get("id") if isinstance(customer, dict) else customer
        if not customer_id:
            raise BadRequest("Missing Stripe customer")

        subscription = session.get("subscription")
        snapshot = None
        if isinstance(subscription, dict):
            subscription_id = subscription.get("id")
            snapshot = subscription_snapshot(subscription)
        else:
            subscription_id = subscription or None

        return self.reconcile(
            customer_id=customer_id,
            trainer_id=session_trainer,
            subscription_id=subscription_id,
            payer_resolvers=[
                ("metadata", lambda: recorded_payer),
                ("caller", lambda: caller_id),
            ],
            tier_key=tier_key,
            snapshot=snapshot,
        )


def dispatch(event, reconciler: ReconciliationEngine, unlinker: UnlinkEngine, runner: StepRunner):
    """Route one parsed webhook variant to its handler."""
    if isinstance(event, CheckoutCompleted):
        return reconciler.checkout_completed(event, runner)
    if isinstance(event, SubscriptionChanged):
        return reconciler.subscription_changed(event, runner)
    if isinstance(event, SubscriptionDeleted):
        return unlinker.subscription_deleted(event, runner)
    return None
