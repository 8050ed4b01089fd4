import random
import time
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .async_aster_adapter import AsterAPIError, AsterRateLimitError, parse_orders
from .exchange import UNKNOWN_ORDER_CODE, UnknownOrderError
from .logging_setup import logger
from .models import AccountSnapshot, Order
from .secrets import AsterCredentials


class AsterRestClient:
    """Synchronous Aster futures REST client for operator tooling.

    Features:
    - HMAC-SHA256 query signing with the ``X-MBX-APIKEY`` header.
    - Automatic retry with urllib3.Retry for 5xx errors.
    - Jittered exponential backoff for 429 (rate-limit) responses.

    The strategy engines use ``AsyncAsterAdapter``; this client backs the
    scripts that inspect or clean up an account.
    """

    def __init__(self, api_key: str, api_secret: str, *, base_url: str = "https://fapi.asterdex.com", timeout: int = 10, max_retries: int = 5, max_backoff_seconds: float = 60.0, recv_window: int = 5000):
        self.credentials = AsterCredentials(api_key, api_secret)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.recv_window = recv_window

        self.session = requests.Session()
        self.session.headers.update(self.credentials.headers())
        retries = Retry(total=max_retries, backoff_factor=0.5, status_forcelist=(500, 502, 503, 504), allowed_methods=frozenset(["GET", "DELETE"]))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    @classmethod
    def from_credentials(cls, credentials: AsterCredentials, **kwargs) -> "AsterRestClient":
        """Create a client from AsterCredentials (loaded via secrets module)."""
        return cls(api_key=credentials.api_key, api_secret=credentials.api_secret, **kwargs)

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.credentials.sign(params, self.recv_window)

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff.

        Returns delay in seconds.
        """
        delay = min(base * (2 ** attempt), max_backoff)
        # ±25% to avoid thundering herd
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, *, signed: bool = True, attempt: int = 0):
        query = self._sign(params or {}) if signed else (params or {})
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, params=query, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise AsterAPIError(f"Request failed: {e}")

        if resp.status_code in (418, 429):
            if attempt >= self.max_retries:
                raise AsterRateLimitError("Rate limited and max backoff attempts exceeded", status=resp.status_code)
            delay = self._jittered_backoff(attempt, base=1.0, max_backoff=self.max_backoff_seconds)
            logger.warning(f"Rate limited | path={path} attempt={attempt} delay={delay:.2f}s")
            time.sleep(delay)
            return self._request(method, path, params, signed=signed, attempt=attempt + 1)

        if not resp.ok:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            code = payload.get("code") if isinstance(payload, dict) else None
            if code == UNKNOWN_ORDER_CODE:
                raise UnknownOrderError(resp.text, code=code)
            raise AsterAPIError(f"{resp.status_code}: {resp.text}", code=code, status=resp.status_code)

        return resp.json() if resp.text else None

    def get_account(self) -> AccountSnapshot:
        return AccountSnapshot.model_validate(self._request("GET", "/fapi/v2/account"))

    def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        params = {"symbol": symbol} if symbol else {}
        return parse_orders(self._request("GET", "/fapi/v1/openOrders", params) or [])

    def cancel_all_orders(self, symbol: str) -> None:
        self._request("DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol})
        logger.info(f"Cancelled all orders | symbol={symbol}")

    def cancel_order(self, symbol: str, order_id: int) -> bool:
        """Cancel one order; returns False if it was already gone."""
        try:
            self._request("DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id})
            return True
        except UnknownOrderError:
            return False

    def get_server_time(self) -> int:
        return int(self._request("GET", "/fapi/v1/time", signed=False)["serverTime"])
