import logging

import stripe

from errors import MissingConfiguration, UpstreamBillingError

logger = logging.getLogger(__name__)


def _as_dict(obj):
    """Plain-dict view of a stripe object (or pass-through for dicts)."""
    if obj is None or isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if to_dict is None:
        raise UpstreamBillingError(f"Unexpected billing object {type(obj).__name__}")
    return to_dict()


class BillingGateway:
    """Outbound calls to Stripe. Every Stripe failure surfaces as UpstreamBillingError."""

    def __init__(self, api_key: str | None):
        if not api_key:
            raise MissingConfiguration("Stripe not configured (missing: STRIPE_SECRET_KEY)")
        stripe.api_key = api_key

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return _as_dict(fn(*args, **kwargs))
        except stripe.StripeError as e:
            logger.warning("Stripe %s failed: %s", what, e)
            raise UpstreamBillingError(getattr(e, "user_message", None) or str(e) or f"Unable to {what}") from e

    def verify_webhook(self, payload: str, sig_header: str, secret: str) -> None:
        # Raises stripe.SignatureVerificationError; the route maps it to 400.
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, stripe.Webhook.DEFAULT_TOLERANCE)

    def retrieve_checkout_session(self, session_id: str) -> dict:
        return self._call(
            "load checkout session",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["subscription", "customer"],
        )

    def retrieve_subscription(self, subscription_id: str) -> dict:
        return self._call("load subscription", stripe.Subscription.retrieve, subscription_id)

    def retrieve_customer(self, customer_id: str) -> dict:
        return self._call("load customer", stripe.Customer.retrieve, customer_id)

    def create_customer(self, *, email: str | None, name: str | None = None, metadata: dict | None = None) -> dict:
        return self._call("create customer", stripe.Customer.create, email=email, name=name, metadata=metadata or {})

    def cancel_subscription(self, subscription_id: str, *, immediate: bool, metadata: dict | None = None) -> dict:
        """Cancel now, or let the subscription run out at the end of its period."""
        if immediate:
            return self._call("cancel subscription", stripe.Subscription.cancel, subscription_id)
        return self._call(
            "schedule cancellation",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
            metadata=metadata or {},
        )

    def create_checkout_session(self, **params) -> dict:
        return self._call("create checkout session", stripe.checkout.Session.create, **params)

    def create_portal_session(self, *, customer_id: str, return_url: str) -> dict:
        return self._call(
            "create portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
