"""Flask extensions: single instances shared by the app, routes and billing services."""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect

db = SQLAlchemy()
csrf = CSRFProtect()
# Webhook ingress is exempted per-route; provider retries must never be throttled.
limiter = Limiter(get_remote_address, storage_uri="memory://")
