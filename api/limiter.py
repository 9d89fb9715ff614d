"""
api/limiter.py -- The one slowapi Limiter for the whole app.

api/main.py registers it on app.state for SlowAPIMiddleware; route modules
decorate handlers with @limiter.limit(...). Counters live in this instance,
keyed by client address, so a second Limiter would count separately.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
