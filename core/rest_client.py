"""
Signed REST Client Base

Every exchange variant talks REST through a subclass of RestClient. The base
class owns what is common to all of them:

- aiohttp ClientSession lifecycle (async context manager or open()/close())
- Retry loop with linear backoff for transport failures on GET
- Error mapping: exchange body codes first, then HTTP status, then a generic
  ExchangeError, so callers only ever see the core.errors taxonomy

Subclasses provide:
    EXCHANGE            exchange name used in logs and errors
    ERROR_CODES         native code -> taxonomy class
    _sign_request()     authentication headers / query for a signed call
    _extract_error()    (code, message) from an error body, or None on success
    _unwrap()           strip the exchange's response envelope

Retry Policy:
    - NetworkError: retried for GET only; a timed-out POST may have executed
    - RateLimitExceeded and every other exchange error: raised immediately,
      the caller decides whether and when to try again
    - Delay: 1.0s * (attempt + 1)
"""

import aiohttp
import asyncio
import json
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

from core.errors import (
    ErrorCodeMap,
    ExchangeError,
    NetworkError,
    map_error,
    map_http_status,
)
from core.logging import get_logger, log_api_request, log_api_response
from core.schemas import ExchangeCredentials


class RestClient:
    """
    Async HTTP client base with signing hooks and retry logic.

    Attributes:
        base_url: REST host (live or sandbox)
        credentials: API key material (None for public-only use)
        session: aiohttp ClientSession, created by open()
        retries: Maximum attempts per request
    """

    EXCHANGE = "exchange"
    ERROR_CODES: ErrorCodeMap = {}

    def __init__(
        self,
        base_url: str,
        credentials: Optional[ExchangeCredentials] = None,
        timeout: float = 10,
        retries: int = 3,
        recv_window_ms: int = 10_000
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.timeout = timeout
        self.retries = max(1, retries)
        self.recv_window_ms = recv_window_ms
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = get_logger(f"exchanges.{self.EXCHANGE}.api_client")

    # ============================================
    # Session Management
    # ============================================

    async def open(self) -> "RestClient":
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self.logger.debug(f"{self.__class__.__name__} session created")
        return self

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            self.logger.debug(f"{self.__class__.__name__} session closed")
        self.session = None

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ============================================
    # Subclass Hooks
    # ============================================

    def _sign_request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        body: Optional[str]
    ) -> Tuple[Dict[str, Any], Dict[str, str]]:
        """
        Authenticate a request.

        Args:
            method: HTTP method (upper case)
            path: Request path
            params: Query parameters
            body: Serialized JSON body or None

        Returns:
            (params, headers) to send; params may gain timestamp/signature
        """
        raise NotImplementedError

    def _extract_error(self, payload: Any) -> Optional[Tuple[str, str]]:
        """Return (native_code, message) when payload describes an error."""
        return None

    def _unwrap(self, payload: Any) -> Any:
        return payload

    def _public_headers(self) -> Dict[str, str]:
        return {}

    # ============================================
    # Helpers
    # ============================================

    @staticmethod
    def _timestamp_ms() -> int:
        return int(time.time() * 1000)

    @staticmethod
    def _query_string(params: Dict[str, Any]) -> str:
        return urlencode([(k, v) for k, v in params.items() if v is not None])

    def _require_credentials(self) -> ExchangeCredentials:
        if self.credentials is None:
            raise ExchangeError("Credentials required for signed request", exchange=self.EXCHANGE)
        return self.credentials

    def _to_error(self, status: int, payload: Any, text: str) -> Optional[ExchangeError]:
        """
        Map a response to an error, or None for success.

        Body codes win over HTTP status because they are more specific
        (e.g. Binance answers 400 for both bad params and insufficient margin).
        """
        extracted = self._extract_error(payload) if payload is not None else None
        if extracted is not None:
            code, message = extracted
            err = map_error(self.ERROR_CODES, code, message, self.EXCHANGE)
            if type(err) is ExchangeError:
                return map_http_status(status, message, self.EXCHANGE) or err
            return err

        if status >= 400:
            message = text[:200] if text else f"HTTP {status}"
            return map_http_status(status, message, self.EXCHANGE) or ExchangeError(
                message, exchange=self.EXCHANGE, native_code=status
            )
        return None

    # ============================================
    # HTTP Request Handler with Retry Logic
    # ============================================

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = False
    ) -> Any:
        """
        Send a request and return the unwrapped response payload.

        Args:
            method: "GET", "POST", "PUT" or "DELETE"
            path: Endpoint path (e.g. "/fapi/v1/order")
            params: Query parameters
            body: JSON body (POST only)
            signed: Add authentication

        Returns:
            Unwrapped JSON payload

        Raises:
            NetworkError: Session missing, transport failure or timeout
            ExchangeError subclass: Exchange rejected the request
        """
        if not self.session or self.session.closed:
            raise NetworkError(
                f"{self.EXCHANGE} client session not initialized",
                exchange=self.EXCHANGE
            )

        method = method.upper()
        last_error: Optional[ExchangeError] = None

        for attempt in range(self.retries):
            query = {k: v for k, v in (params or {}).items() if v is not None}
            body_text = json.dumps(body, separators=(",", ":")) if body is not None else None

            if signed:
                query, headers = self._sign_request(method, path, query, body_text)
            else:
                headers = self._public_headers()

            if body_text is not None:
                headers = {**headers, "Content-Type": "application/json"}

            url = f"{self.base_url}{path}"
            qs = self._query_string(query)
            if qs:
                url = f"{url}?{qs}"

            log_api_request(self.EXCHANGE, method, path, params)
            started = time.monotonic()

            try:
                async with self.session.request(
                    method,
                    url,
                    data=body_text,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as resp:
                    text = await resp.text()
                    status = resp.status

                log_api_response(self.EXCHANGE, path, status, time.monotonic() - started)

                try:
                    payload = json.loads(text) if text else None
                except json.JSONDecodeError:
                    payload = None

                error = self._to_error(status, payload, text)
                if error is None:
                    return self._unwrap(payload)

            except asyncio.TimeoutError:
                error = NetworkError(f"Timeout on {method} {path}", exchange=self.EXCHANGE)

            except aiohttp.ClientError as e:
                error = NetworkError(f"Request failed on {method} {path}: {e}", exchange=self.EXCHANGE)

            last_error = error
            retryable = isinstance(error, NetworkError) and method == "GET"
            if not retryable or attempt == self.retries - 1:
                break

            delay = 1.0 * (attempt + 1)
            self.logger.warning(
                f"{error} on {method} {path}. "
                f"Retrying in {delay:.1f}s... (attempt {attempt + 1}/{self.retries})"
            )
            await asyncio.sleep(delay)

        self.logger.error(f"{method} {path} failed: {last_error}")
        raise last_error
