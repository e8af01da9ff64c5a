"""
Base class for business-directory adapters, with request budgeting and a
client-side throttle built on aiolimiter.
"""
import json
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from aiohttp import ClientSession, ClientTimeout
from aiolimiter import AsyncLimiter
from loguru import logger

from grubstars.config import HTTP_TIMEOUT_SECONDS, REQUESTS_PER_SECOND
from grubstars.errors import APIError, ConfigurationError
from grubstars.models import NormalizedRecord, Progress
from grubstars.store.quota import InMemoryQuotaLedger, QuotaLedger

_DEFAULT = object()


def make_progress(current: int, total: int) -> Progress:
    percent = round(current / total * 100, 1) if total else 100.0
    return Progress(current=current, total=total, percent=percent)


def strip_source_prefix(external_id: str, source: str) -> str:
    """Turn a stored external id ("yelp:abc123") back into the raw API id ("abc123")."""
    prefix = f"{source}:"
    return external_id[len(prefix):] if external_id.startswith(prefix) else external_id


class BaseAdapter:
    """
    Common plumbing for the directory adapters.

    Subclasses set SOURCE, DISPLAY_NAME, REQUEST_LIMIT and API_KEY_ENV and
    implement search_all_businesses() and get_business().
    Every outbound request goes through _get_json(), which reserves one
    request from the quota ledger first and raises RateLimitError once the
    monthly budget is spent.
    """
    SOURCE = "base"
    DISPLAY_NAME = "Base"
    API_KEY_ENV = ""
    REQUEST_LIMIT: Optional[int] = None

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        quota_ledger: Optional[QuotaLedger] = None,
        request_limit: Any = _DEFAULT,
        requests_per_second: float = REQUESTS_PER_SECOND,
    ):
        self.api_key = api_key
        self.base_url = (base_url or "").rstrip("/")
        self.quota_ledger = quota_ledger or InMemoryQuotaLedger()
        self._request_limit = self.REQUEST_LIMIT if request_limit is _DEFAULT else request_limit
        self.rate_limiter = AsyncLimiter(max_rate=requests_per_second, time_period=1.0)
        self.last_total = 0
        self._session: Optional[ClientSession] = None

    # Identity / configuration ---------------------------------------------

    def source_name(self) -> str:
        return self.SOURCE

    def configured(self) -> bool:
        return bool(self.api_key)

    def ensure_configured(self) -> None:
        if not self.configured():
            raise ConfigurationError(
                f"{self.DISPLAY_NAME} API key not configured. Set {self.API_KEY_ENV} environment variable."
            )

    # Request budget --------------------------------------------------------

    def request_limit(self) -> Optional[int]:
        return self._request_limit

    def request_count(self) -> int:
        return self.quota_ledger.get_count(self.source_name())

    def requests_available(self) -> bool:
        limit = self.request_limit()
        return limit is None or self.request_count() < limit

    def remaining_requests(self) -> Optional[int]:
        limit = self.request_limit()
        if limit is None:
            return None
        return max(limit - self.request_count(), 0)

    def track_request(self) -> None:
        """Reserve one request. Raises RateLimitError when the budget is spent."""
        self.quota_ledger.acquire(self.source_name(), self.request_limit())

    # Adapter protocol ------------------------------------------------------

    async def search_all_businesses(
        self,
        location: str,
        categories: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Tuple[NormalizedRecord, Progress]]:
        """
        Page through every business the source returns for a location.

        Yields each normalized record with its progress. When iteration ends,
        `last_total` holds the number of results the run expected.
        """
        raise NotImplementedError(f"{type(self).__name__}.search_all_businesses not implemented")
        yield  # pragma: no cover

    async def get_business(self, business_id: str) -> Optional[NormalizedRecord]:
        raise NotImplementedError(f"{type(self).__name__}.get_business not implemented")

    # HTTP ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _error_message(self, body: Any) -> str:
        return str(body)

    async def _get_session(self) -> ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=HTTP_TIMEOUT_SECONDS))
        return self._session

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        GET a JSON document from the source API.

        Args:
            path: Path relative to the adapter's base URL.
            params: Query parameters; None values are dropped.

        Returns:
            Parsed JSON object.

        Raises:
            RateLimitError: The monthly request budget is spent.
            APIError: Non-2xx response or a body that isn't a JSON object.
        """
        self.ensure_configured()
        query = {k: v for k, v in (params or {}).items() if v is not None}

        async with self.rate_limiter:
            self.track_request()
            session = await self._get_session()
            url = f"{self.base_url}/{path.lstrip('/')}"
            logger.debug(f"➡️ {self.DISPLAY_NAME} GET {path}")

            async with session.get(url, params=query, headers=self._headers()) as resp:
                text = await resp.text()
                try:
                    body = json.loads(text)
                except ValueError:
                    body = text

                if not 200 <= resp.status < 300:
                    raise APIError(
                        f"{self.DISPLAY_NAME} API error: {self._error_message(body)}",
                        status=resp.status,
                        body=body,
                    )
                if not isinstance(body, dict):
                    raise APIError(
                        f"{self.DISPLAY_NAME} API error: unexpected response body",
                        status=resp.status,
                        body=body,
                    )
                return body

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "BaseAdapter":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
