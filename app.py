import os, json, logging, psycopg2, stripe
from contextlib import contextmanager
from flask import Flask, request, jsonify, redirect, current_app
from dotenv import load_dotenv

from helpers import (
    get_connection,
    require_env,
    login_required,
    current_user_id,
    clean_str,
    truthy,
    request_origin,
    with_query,
)
from db import Database
from errors import BillingError, BadRequest, Forbidden, NotFound, MalformedEvent
from billing_events import parse_event
from billing_store import (
    ACTIVE_STATUSES,
    CustomerRegistry,
    SubscriptionLedger,
    MembershipLinker,
    PayerDirectory,
    TrainerDirectory,
    DeadLetterLog,
)
from reconcile import ReconciliationEngine, UnlinkEngine, StepRunner, dispatch, first_match
from stripe_gateway import BillingGateway
from mail import send_reconciliation_alert

# Set up basic logging configuration
logging.basicConfig(level=logging.INFO)

load_dotenv()

app = Flask(__name__)

secret = os.getenv("SECRET_KEY")
if not secret:
    raise RuntimeError("SECRET_KEY is not set!")
app.secret_key = secret

ENV = os.getenv("FLASK_ENV", "development")

# Endpoints whose server-side failures are shown to members as a generic message.
GENERIC_FAILURES = {
    "finalize_subscription": "Unable to complete subscription",
    "kick_member": "Kick failed",
}


def webhook_secret():
    if os.getenv("STRIPE_WEBHOOK_SECRET"):
        return os.getenv("STRIPE_WEBHOOK_SECRET")
    if ENV == "production":
        return os.getenv("STRIPE_WEBHOOK_SECRET_LIVE")
    return os.getenv("STRIPE_WEBHOOK_SECRET_TEST")


def get_gateway():
    return BillingGateway(require_env("STRIPE_SECRET_KEY")["STRIPE_SECRET_KEY"])


@contextmanager
def open_database():
    conn = get_connection()
    try:
        yield Database(conn)
    finally:
        conn.close()


def build_engines(db, gateway):
    customers = CustomerRegistry(db)
    ledger = SubscriptionLedger(db)
    members = MembershipLinker(db)
    unlinker = UnlinkEngine(customers, ledger, members, gateway)
    reconciler = ReconciliationEngine(customers, ledger, members, PayerDirectory(db), gateway, unlinker)
    return reconciler, unlinker


def dead_letter_handler(db):
    """Record each failed webhook step and alert an operator if one is configured."""
    dead_letters = DeadLetterLog(db)
    alert_to = os.getenv("BILLING_ALERT_EMAIL")

    def record(runner, step, error):
        try:
            dead_letters.record(runner.event_id, runner.event_type, step, str(error))
        except BillingError:
            current_app.logger.exception("Failed recording dead letter for %s", runner.event_id)
        if alert_to:
            try:
                send_reconciliation_alert(
                    to_email=alert_to,
                    event_id=runner.event_id,
                    event_type=runner.event_type,
                    step=step,
                    error=str(error),
                )
            except Exception:
                current_app.logger.exception("Failed sending billing alert")
    return record


@app.errorhandler(BillingError)
def handle_billing_error(error):
    if error.status_code >= 500:
        current_app.logger.error("Billing request failed: %s", error.message, exc_info=error)
        generic = GENERIC_FAILURES.get(request.endpoint)
        if generic:
            return jsonify({"error": generic}), error.status_code
    return jsonify(error.to_dict()), error.status_code


@app.route("/stripe/webhook", methods=["POST"])
def stripe_webhook():
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")
    wh_secret = webhook_secret()

    # Unconfigured deployments acknowledge so Stripe stops retrying.
    if not os.getenv("STRIPE_SECRET_KEY") or not sig_header or not wh_secret:
        return jsonify({"ok": True}), 200

    gateway = get_gateway()
    try:
        gateway.verify_webhook(payload, sig_header, wh_secret)
        body = json.loads(payload)
    except ValueError:
        return jsonify({"error": "Invalid payload"}), 400
    except stripe.SignatureVerificationError:
        return jsonify({"error": "Invalid signature"}), 400

    try:
        event = parse_event(body)
    except MalformedEvent:
        current_app.logger.exception("Malformed billing event %s", body.get("id") if isinstance(body, dict) else None)
        return jsonify({"ok": True}), 200

    if event is None:
        return jsonify({"ok": True}), 200

    current_app.logger.info("Webhook received: %s (%s)", event.kind, event.event_id)
    try:
        with open_database() as db:
            reconciler, unlinker = build_engines(db, gateway)
            runner = StepRunner(
                isolate=True,
                event_id=event.event_id,
                event_type=event.kind,
                on_failure=dead_letter_handler(db),
            )
            result = dispatch(event, reconciler, unlinker, runner)
    except (BillingError, psycopg2.Error):
        # Acknowledge anyway; the next delivery or finalize call repairs state.
        current_app.logger.exception("Webhook %s could not be reconciled", event.event_id)
        return jsonify({"ok": True}), 200

    if result is not None:
        current_app.logger.info(
            "Webhook %s: %s trainer=%s payer=%s status=%s",
            event.event_id, result.action, result.trainer_id, result.payer_id, result.status,
        )
    return jsonify({"ok": True}), 200


@app.route("/subscriptions/complete", methods=["POST"], endpoint="finalize_subscription")
@login_required
def finalize_subscription():
    body = request.get_json(silent=True) or {}
    session_id = clean_str(body.get("session_id"))
    trainer_id = clean_str(body.get("trainer_id"))
    if not session_id or not trainer_id:
        raise BadRequest("Missing session_id or trainer_id")

    gateway = get_gateway()
    with open_database() as db:
        reconciler, _ = build_engines(db, gateway)
        result = reconciler.finalize(session_id, trainer_id, current_user_id())

    return jsonify({"ok": True, "trainer_id": result.trainer_id, "status": result.status})


@app.route("/subscriptions/kick", methods=["POST"], endpoint="kick_member")
@login_required
def kick_member():
    body = request.get_json(silent=True) or {}
    trainer_id = clean_str(body.get("trainer_id"))
    payer_id = clean_str(body.get("payer_id") or body.get("user_id"))
    immediate = truthy(body.get("immediate"))
    if not trainer_id or not payer_id:
        raise BadRequest("Missing ids")

    caller_id = current_user_id()
    gateway = get_gateway()
    with open_database() as db:
        # Trainers remove members, members leave, admins do either.
        if caller_id != payer_id and caller_id != TrainerDirectory(db).owner_of(trainer_id) \
                and not PayerDirectory(db).is_admin(caller_id):
            raise Forbidden("You do not have access to that member")
        _, unlinker = build_engines(db, gateway)
        result = unlinker.kick(trainer_id, payer_id, immediate=immediate)

    current_app.logger.info("Member %s removed from trainer %s (immediate=%s)", payer_id, trainer_id, immediate)
    return jsonify({"ok": True, "subscription_id": result.subscription_id})


@app.route("/public/subscription-status")
def subscription_status():
    trainer_id = clean_str(request.args.get("trainer_id"))
    payer_id = clean_str(request.args.get("user_id"))
    if not trainer_id or not payer_id:
        return jsonify({"active": False})

    try:
        with open_database() as db:
            customer_id = CustomerRegistry(db).find_customer(payer_id, trainer_id)
            if not customer_id:
                return jsonify({"active": False})
            active = SubscriptionLedger(db).find_active_subscription(customer_id, trainer_id, ACTIVE_STATUSES)
    except (BillingError, psycopg2.Error):
        current_app.logger.exception("Subscription status lookup failed")
        return jsonify({"active": False})
    return jsonify({"active": active is not None})


def choose_tier(tiers: list[dict], tier_key: str | None) -> dict | None:
    active = [t for t in tiers if t.get("active")]
    if tier_key:
        chosen = next((t for t in active if t.get("key") == tier_key), None)
    else:
        chosen = active[0] if active else None
    if chosen:
        return chosen

    fallback_cents = os.getenv("STRIPE_FALLBACK_PRICE_CENTS")
    try:
        cents = int(fallback_cents) if fallback_cents else 0
    except ValueError:
        cents = 0
    if cents > 0:
        return {"key": "env", "name": "Subscription", "price": cents / 100, "active": True, "stripe_price_id": None}
    return None


def line_items_for(tier: dict, product_id: str | None) -> list[dict]:
    if tier.get("stripe_price_id"):
        return [{"price": tier["stripe_price_id"], "quantity": 1}]
    if not tier.get("price") or tier["price"] <= 0:
        raise BadRequest("No price available for tier")
    price_data = {
        "currency": "usd",
        "unit_amount": int(round(tier["price"] * 100)),
        "recurring": {"interval": "month"},
    }
    if product_id:
        price_data["product"] = product_id
    else:
        price_data["product_data"] = {"name": tier.get("name") or "Subscription"}
    return [{"price_data": price_data, "quantity": 1}]


@app.route("/checkout")
def checkout():
    args = request.args
    tier_key = clean_str(args.get("tier"))
    trainer_id = clean_str(args.get("trainer_id"))
    return_url = clean_str(args.get("return_url"))
    product_id = clean_str(args.get("product_id")) or clean_str(os.getenv("STRIPE_PRODUCT_ID"))
    connect_account_id = clean_str(args.get("connect_account_id"))
    payer_id = clean_str(args.get("user_id")) or current_user_id()

    gateway = get_gateway()
    tiers = []
    customer_id = None
    with open_database() as db:
        customers = CustomerRegistry(db)
        if trainer_id:
            trainers = TrainerDirectory(db)
            tiers = trainers.tiers(trainer_id)
            connect_account_id = connect_account_id or trainers.connect_account(trainer_id)
            if payer_id:
                customer_id = customers.find_customer(payer_id, trainer_id)
                if not customer_id:
                    email = PayerDirectory(db).email_of(payer_id)
                    if email:
                        customer = gateway.create_customer(
                            email=email,
                            metadata={"user_id": payer_id, "trainer_id": trainer_id},
                        )
                        customer_id = customer["id"]
                        customers.upsert_customer(customer_id, trainer_id, payer_id)
        elif payer_id:
            customer_id = customers.find_any_customer_for_payer(payer_id)

    chosen = choose_tier(tiers, tier_key)
    if not chosen:
        raise BadRequest("No active tier configured")

    origin = request_origin(request.headers)
    success_url = with_query(
        return_url or f"{origin}/users",
        origin,
        {"status": "success", "trainer_id": trainer_id, "tier": tier_key},
        session_placeholder=True,
    )
    cancel_url = with_query(f"{origin}/payments", origin,
                            {"status": "cancel", "trainer_id": trainer_id, "tier": tier_key})

    meta = {
        "trainer_id": trainer_id or "",
        "tier_key": chosen["key"],
        "user_id": payer_id or "",
        "connect_account_id": connect_account_id or "",
    }
    params = {
        "mode": "subscription",
        "allow_promotion_codes": True,
        "metadata": meta,
        "subscription_data": {"metadata": meta},
        "success_url": success_url,
        "cancel_url": cancel_url,
        "line_items": line_items_for(chosen, product_id),
    }
    if connect_account_id:
        params["subscription_data"]["transfer_data"] = {"destination": connect_account_id}
    if customer_id:
        params["customer"] = customer_id

    checkout_session = gateway.create_checkout_session(**params)
    return redirect(checkout_session["url"], code=303)


@app.route("/stripe/portal")
@login_required
def customer_portal():
    caller_id = current_user_id()
    trainer_id = clean_str(request.args.get("trainer_id"))
    gateway = get_gateway()

    with open_database() as db:
        customers = CustomerRegistry(db)
        trainers = TrainerDirectory(db)
        owned_trainer = trainers.trainer_for_owner(caller_id)
        candidates = [
            ("own_for_trainer", lambda: customers.find_customer(caller_id, trainer_id) if trainer_id else None),
            ("own_any", lambda: customers.find_any_customer_for_payer(caller_id)),
            # Trainers can inspect the portal through their latest customer.
            ("trainer_latest", lambda: customers.find_any_customer_for_trainer(owned_trainer) if owned_trainer else None),
        ]
        source, customer_id = first_match(candidates)
        if customer_id:
            current_app.logger.info("Portal customer for %s resolved via %s", caller_id, source)

    if not customer_id:
        raise NotFound("No customer found")

    origin = request_origin(request.headers)
    portal = gateway.create_portal_session(customer_id=customer_id, return_url=f"{origin}/payments")
    return redirect(portal["url"], code=302)


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5500, debug=ENV != "production")
