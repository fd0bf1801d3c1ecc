"""Shared Flask extension instances.

Kept in their own module so blueprints and models can import them without
importing app.py (which imports the blueprints back when registering them).
"""

import os

from flask import request
from flask_limiter import Limiter
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


def get_client_ip() -> str:
    """Return the best-effort client IP.

    After ProxyFix, request.access_route[0] should be the real client IP.
    Falls back to request.remote_addr for local development.
    """
    if request.access_route:
        return request.access_route[0]
    return request.remote_addr or "0.0.0.0"


# - In production, set RATE_LIMIT_STORAGE_URL to a Redis URL for multi-instance correctness.
# - Defaults to in-memory storage.
limiter = Limiter(
    get_client_ip,
    default_limits=["2000 per day", "300 per hour"],
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URL", "memory://"),
)
