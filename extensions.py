"""Flask extensions shared by the API blueprints and the webhook endpoint."""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect

db = SQLAlchemy()
csrf = CSRFProtect()
# Storage comes from RATELIMIT_STORAGE_URI, set in create_app()
limiter = Limiter(get_remote_address, headers_enabled=True)
