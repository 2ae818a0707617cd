import logging
import sys
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("storesync")

SENSITIVE_KEYS = (
    "consumer_key",
    "consumer_secret",
    "webhook_secret",
    "secret",
    "password",
    "authorization",
    "token",
    "access_token",
)


def _mask(value: Any) -> str:
    value = str(value)
    if len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "***"


def sanitize_payload(data: Optional[Any]) -> Optional[Any]:
    """Return a copy of ``data`` with credential-bearing keys masked.

    Nested dicts and lists are walked so request snapshots coming back from the
    remote store (which sometimes echo auth headers) never reach the ledger or
    the log stream in clear text.
    """
    if data is None:
        return None
    if isinstance(data, list):
        return [sanitize_payload(item) for item in data]
    if not isinstance(data, dict):
        return data

    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(key, str) and key.lower() in SENSITIVE_KEYS and value not in (None, ""):
            sanitized[key] = _mask(value)
        elif isinstance(value, (dict, list)):
            sanitized[key] = sanitize_payload(value)
        else:
            sanitized[key] = value
    return sanitized
