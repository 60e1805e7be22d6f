"""Rate limiting shared by every router (keyed on client address)."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from ridedispatch.config import settings

limiter = Limiter(key_func=get_remote_address)

RATE_LIMIT = settings.rate_limit
