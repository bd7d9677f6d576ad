"""
Stable constants for the Kromio token and plan API.

Operational parameters that vary per environment (rate limits, retry
delays, Stripe keys) live in config.py.
"""

from kromio.errors import ErrorKind

# --- API metadata ---
API_TITLE = "Kromio Token API"
API_VERSION = "0.1.0"
SERVICE_NAME = "kromio-token-api"

# --- ServiceFailure kind -> HTTP status ---
ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.BACKEND_REJECTED: 402,
    ErrorKind.TRANSPORT: 503,
}

# --- Stripe webhook events that start a plan upgrade ---
CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"
