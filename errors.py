class BillingError(Exception):
    """Base class for billing reconciliation failures surfaced to callers."""

    status_code = 500
    default_message = "Billing error"

    def __init__(self, message: str | None = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class MissingConfiguration(BillingError):
    status_code = 500
    default_message = "Server billing is not configured"


class BadRequest(BillingError):
    status_code = 400
    default_message = "Bad request"


class NotFound(BillingError):
    status_code = 404
    default_message = "Not found"


class Forbidden(BillingError):
    status_code = 403
    default_message = "Forbidden"


class UnresolvedPayer(BillingError):
    status_code = 400
    default_message = "Unable to determine the subscribing user"


class TrainerMismatch(BillingError):
    status_code = 403
    default_message = "Trainer mismatch"


class PayerMismatch(BillingError):
    status_code = 403
    default_message = "Session does not belong to the signed-in user"


class CheckoutIncomplete(BadRequest):
    default_message = "Checkout session is not complete"


class UpstreamBillingError(BillingError):
    status_code = 502
    default_message = "Billing provider request failed"


class MalformedEvent(UpstreamBillingError):
    status_code = 400
    default_message = "Malformed billing event"


class PersistenceError(BillingError):
    status_code = 500
    default_message = "Failed to store billing state"
