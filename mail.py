# mail.py
import os
from html import escape
from typing import Optional
from postmarker.core import PostmarkClient


FROM = os.getenv("POSTMARK_FROM_EMAIL", "no-reply@coachlink.app")
STREAM = os.getenv("POSTMARK_MESSAGE_STREAM", "outbound")
SERVER_TOKEN = os.getenv("POSTMARK_SERVER_TOKEN")

_postmark = None


def get_postmark() -> PostmarkClient:
    global _postmark
    if _postmark is None:
        _postmark = PostmarkClient(server_token=SERVER_TOKEN)
    return _postmark


def send_email(*, to: str, subject: str, html: str, text: Optional[str] = None, **pm_kwargs):
    """Low-level sender via Postmark"""
    return get_postmark().emails.send(
        From=FROM,
        To=to,
        Subject=subject,
        HtmlBody=html,
        TextBody=text or None,
        MessageStream=STREAM,
        **pm_kwargs
    )


def send_reconciliation_alert(*, to_email: str, event_id: Optional[str], event_type: Optional[str], step: str, error: str):
    """Tell an operator that a webhook step failed and was acknowledged anyway."""
    subject = f"Billing reconciliation failed: {step}"
    text = (
        "A billing webhook was acknowledged but one reconciliation step failed.\n\n"
        f"Event: {event_id or 'unknown'} ({event_type or 'unknown'})\n"
        f"Step: {step}\n"
        f"Error: {error}\n\n"
        "State will be repaired by the next event for this subscription, "
        "or by a finalize call from the member."
    )
    html = (
        "<p>A billing webhook was acknowledged but one reconciliation step failed.</p>"
        f"<p><strong>Event:</strong> {escape(event_id or 'unknown')} ({escape(event_type or 'unknown')})<br>"
        f"<strong>Step:</strong> {escape(step)}<br>"
        f"<strong>Error:</strong> {escape(error)}</p>"
    )
    return send_email(
        to=to_email,
        subject=subject,
        html=html,
        text=text,
        Tag="billing-alert",
    )
