from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings


# Shared by create_app (default limit) and routes with their own limit
limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
