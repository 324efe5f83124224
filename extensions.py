"""
Flask extension instances shared by server.py, the blueprints and the tests.

The limiter is bound in create_app(); its storage backend and on/off switch
come from the RATELIMIT_* keys in app_config.
"""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

DEFAULT_RATE_LIMIT = "100 per minute"

# Endpoints that move points (charges, withdrawals).
MONEY_RATE_LIMIT = "10 per minute"

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[DEFAULT_RATE_LIMIT],
)
