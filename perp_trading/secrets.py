"""Aster API credentials: loading, validation and request signing.

Credentials come from, in order:
1. Environment variables: ASTER_API_KEY, ASTER_API_SECRET
2. JSON file: ASTER_CONFIG_PATH, or ~/.aster_config.json

Aster futures endpoints expect the key in the ``X-MBX-APIKEY`` header and an
HMAC-SHA256 ``signature`` over the url-encoded query, which must include a
millisecond ``timestamp`` and a ``recvWindow``.
"""
import hashlib
import hmac
import json
import os
import string
import time
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional
from urllib.parse import urlencode

from .logging_setup import logger

API_KEY_HEADER = "X-MBX-APIKEY"

# Both values travel as ASCII: the key in a header, the secret as HMAC key
_ALLOWED = frozenset(string.ascii_letters + string.digits + string.punctuation)


class AsterCredentials(NamedTuple):
    api_key: str
    api_secret: str

    def headers(self) -> Dict[str, str]:
        return {API_KEY_HEADER: self.api_key}

    def sign(self, params: Dict[str, Any], recv_window: int, timestamp_ms: Optional[int] = None) -> Dict[str, Any]:
        """Return a copy of ``params`` with timestamp, recvWindow and signature.

        The signature covers every other parameter in insertion order, so the
        returned dict must be sent as-is.
        """
        signed = dict(params)
        signed["timestamp"] = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
        signed["recvWindow"] = recv_window
        query = urlencode(signed)
        signed["signature"] = hmac.new(
            self.api_secret.encode("ascii"), query.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return signed

    def __repr__(self) -> str:
        return f"AsterCredentials(api_key={mask(self.api_key)!r}, api_secret='***')"


def mask(value: str) -> str:
    """Show only the last four characters of a key."""
    return f"***{value[-4:]}" if len(value) > 8 else "***"


def validate_credentials(api_key: str, api_secret: str) -> AsterCredentials:
    """Strip surrounding whitespace and check both values can be used for signing.

    Raises:
        ValueError: a value is empty or contains characters that cannot go
            into a request header or an ASCII HMAC key
    """
    creds = AsterCredentials(api_key=api_key.strip(), api_secret=api_secret.strip())
    for name, value in (("API key", creds.api_key), ("API secret", creds.api_secret)):
        if not value:
            raise ValueError(f"Aster {name} is empty")
        bad = sorted(set(value) - _ALLOWED)
        if bad:
            raise ValueError(f"Aster {name} contains unsupported characters: {bad!r}")
    return creds


def load_credentials(
    config_path: Optional[str] = None,
) -> AsterCredentials:
    """Load Aster credentials from env or config file.

    Args:
        config_path: Optional override path to config file. If not provided,
                     checks ASTER_CONFIG_PATH env var, then ~/.aster_config.json

    Returns:
        Validated AsterCredentials

    Raises:
        ValueError: credentials are missing, unreadable or malformed
    """
    api_key = os.getenv("ASTER_API_KEY")
    api_secret = os.getenv("ASTER_API_SECRET")
    source = "environment"

    if not (api_key and api_secret):
        if config_path is None:
            config_path = os.getenv("ASTER_CONFIG_PATH") or str(Path.home() / ".aster_config.json")
        config_file = Path(config_path)
        if config_file.exists():
            try:
                with config_file.open("r") as f:
                    cfg = json.load(f)
            except (OSError, ValueError) as e:
                raise ValueError(f"Failed to load config from {config_path}: {e}")
            api_key = api_key or cfg.get("api_key")
            api_secret = api_secret or cfg.get("api_secret")
            source = str(config_file)

    if not api_key or not api_secret:
        raise ValueError(
            "Missing Aster credentials. Provide via:\n"
            "  - Environment: ASTER_API_KEY, ASTER_API_SECRET\n"
            f"  - Config file: {config_path}\n"
            "  - ASTER_CONFIG_PATH env var to override config location"
        )

    creds = validate_credentials(api_key, api_secret)
    logger.debug(f"Aster credentials loaded | source={source} api_key={mask(creds.api_key)}")
    return creds


def save_config(
    config_path: str,
    api_key: str,
    api_secret: str,
) -> None:
    """Save credentials to a config file for later use.

    WARNING: Stores secrets in plaintext. The file is restricted to the owner
    where the platform supports it.
    """
    creds = validate_credentials(api_key, api_secret)
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump(creds._asdict(), f, indent=2)

    try:
        cfg_file.chmod(0o600)
    except OSError:
        logger.warning(f"Could not restrict permissions | path={config_path}")
