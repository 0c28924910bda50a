import logging
import sys
from typing import Any, Dict, Optional

from ordersync.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("order_sync")


SENSITIVE_KEYS = ("api_token", "api_key", "authorization", "token", "password")


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    value = str(value)
    if len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "***"


def sanitize_credentials(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a shallow copy of ``data`` with credential-like values masked."""
    if not data:
        return {}

    sanitized = dict(data)
    for key in list(sanitized.keys()):
        if key.lower() in SENSITIVE_KEYS:
            sanitized[key] = mask_secret(sanitized[key])
    return sanitized
