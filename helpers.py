from functools import wraps
from flask import session, jsonify
import os, psycopg2
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode
from dotenv import load_dotenv

from errors import MissingConfiguration

load_dotenv()

CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


def get_connection():
    dsn = os.getenv("DATABASE_URL")
    if not dsn:
        raise MissingConfiguration("Database not configured (missing: DATABASE_URL)")
    return psycopg2.connect(dsn)


def require_env(*names: str) -> dict:
    """Return the named settings, or raise MissingConfiguration listing the absent ones."""
    values = {name: os.getenv(name) for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise MissingConfiguration(f"Server billing is not configured (missing: {', '.join(missing)})")
    return values


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated_function


def current_user_id() -> str | None:
    user_id = session.get('user_id')
    return str(user_id) if user_id else None


def clean_str(v) -> str | None:
    v = str(v if v is not None else '').strip()
    return v or None


def truthy(v) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or '').strip().lower() in {'1', 'true', 'yes', 'on'}


def request_origin(headers) -> str:
    """Scheme and host the browser used, honouring reverse-proxy headers."""
    host = headers.get('X-Forwarded-Host') or headers.get('Host')
    proto = headers.get('X-Forwarded-Proto') or 'https'
    return f"{proto}://{host}"


def with_query(url: str, origin: str, params: dict, *, session_placeholder: bool = False) -> str:
    """Resolve ``url`` against ``origin`` and merge ``params`` into its query.

    With ``session_placeholder`` the checkout session id template is appended
    last (unencoded, ahead of any fragment) so Stripe can substitute it.
    """
    if url.startswith('/') or '://' not in url:
        url = origin.rstrip('/') + '/' + url.lstrip('/')
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update({k: v for k, v in params.items() if v})
    encoded = urlencode(query)
    if session_placeholder:
        glue = '&' if encoded else ''
        encoded = f"{encoded}{glue}session_id={CHECKOUT_SESSION_PLACEHOLDER}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, encoded, parts.fragment))
