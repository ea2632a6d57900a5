from slowapi import Limiter
from slowapi.util import get_remote_address
from peer_tutoring.config import get_settings

# Add rate limiting (shared by every router; disabled with RATE_LIMIT_ENABLED=false)
limiter = Limiter(key_func=get_remote_address, enabled=get_settings().rate_limit_enabled)
WRITE_LIMIT = get_settings().write_rate_limit
