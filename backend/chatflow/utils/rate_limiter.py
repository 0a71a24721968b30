# /chatflow/utils/rate_limiter.py

from slowapi import Limiter
from chatflow.utils.request_utils import get_remote_address
from chatflow.config.settings import settings

# Shared limiter instance; the app and the route modules both import it from
# here so neither has to import the other.

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    enabled=settings.environment != "test",
)
