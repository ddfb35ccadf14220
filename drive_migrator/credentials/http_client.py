"""HTTP client used for the OAuth token exchange and the source access check.

Responses are returned in a standardized dictionary instead of raising, so
callers can map upstream failures onto their own error types. Response
bodies are never logged because token responses carry secrets.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


def process_response(response_text: str, status_code: int) -> Dict[str, Any]:
    """Standardize an HTTP response.

    Args:
        response_text: Raw response body
        status_code: HTTP status code

    Returns:
        Dictionary with standardized response format:
        {
            "success": bool,
            "data": Optional[Dict[str, Any]],  # Parsed JSON body, when available
            "error": Optional[str],            # Present on failure
        }
    """
    try:
        data = json.loads(response_text) if response_text else {}
    except json.JSONDecodeError:
        data = None

    if 200 <= status_code < 300:
        if not isinstance(data, dict):
            return {"success": False, "data": None, "error": "Failed to parse response as JSON"}
        return {"success": True, "data": data}

    return {"success": False, "data": data if isinstance(data, dict) else None, "error": _error_message(data, response_text, status_code)}


def _error_message(data: Any, response_text: str, status_code: int) -> str:
    if isinstance(data, dict):
        # OAuth errors: {"error": "invalid_grant", "error_description": "..."}
        if data.get("error_description"):
            return f"HTTP {status_code}: {data['error_description']}"
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return f"HTTP {status_code}: {error['message']}"
        if isinstance(error, str):
            return f"HTTP {status_code}: {error}"
    snippet = (response_text or "").strip()[:200]
    return f"HTTP {status_code}: {snippet}" if snippet else f"HTTP {status_code}"


class HttpClient:
    """Pooled aiohttp client with retry logic.

    Example:
        async with HttpClient(request_timeout=10) as client:
            response = await client.post(url, data=form)
            if response["success"]:
                payload = response["data"]
    """

    def __init__(
        self,
        total_connections: int = 20,
        per_host_connections: int = 10,
        request_timeout: float = 10,
        max_retries: int = 2,
        retry_backoff_factor: float = 0.5,
        retry_statuses: Optional[List[int]] = None,
    ):
        """Initialize the client.

        Args:
            total_connections: Total connection pool limit
            per_host_connections: Per-host connection limit
            request_timeout: Request timeout in seconds
            max_retries: Maximum number of retry attempts
            retry_backoff_factor: Exponential backoff factor for retries
            retry_statuses: HTTP status codes that should trigger retries
        """
        self.total_connections = total_connections
        self.per_host_connections = per_host_connections
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.retry_backoff_factor = retry_backoff_factor
        self.retry_statuses = retry_statuses or [429, 500, 502, 503, 504]

        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpClient":
        await self._initialize_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self._cleanup_session()

    async def _initialize_session(self) -> None:
        if self._session is not None:
            return

        connector = aiohttp.TCPConnector(
            limit=self.total_connections,
            limit_per_host=self.per_host_connections,
            enable_cleanup_closed=True,
        )
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=float(self.request_timeout)),
            raise_for_status=False,
        )

    async def _cleanup_session(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """Make an HTTP request with retry logic and standardized error handling.

        Args:
            method: HTTP method
            url: Request URL
            **kwargs: Passed to ``aiohttp.ClientSession.request`` (headers, data, ...)

        Returns:
            Standardized response dictionary (see ``process_response``) with
            an added ``status_code``; 0 when no response was received
        """
        if not self._session:
            raise RuntimeError("HttpClient session not initialized. Use 'async with' context manager.")

        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            try:
                if attempt > 0:
                    delay = self.retry_backoff_factor * (2 ** (attempt - 1))
                    logger.debug(f"Retrying request after {delay:.2f}s delay (attempt {attempt + 1}/{self.max_retries + 1})")
                    await asyncio.sleep(delay)

                async with self._session.request(method=method.upper(), url=url, **kwargs) as response:
                    response_text = await response.text()
                    status_code = response.status

                    logger.debug(f"{method.upper()} {url} -> {status_code}")

                    if attempt < self.max_retries and status_code in self.retry_statuses:
                        logger.warning(f"Request failed with status {status_code}, will retry")
                        continue

                    result = process_response(response_text, status_code)
                    result["status_code"] = status_code
                    return result

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e
                logger.warning(f"HTTP client error on attempt {attempt + 1}: {e!r}")

                # Only connection level failures and timeouts are retried
                if not isinstance(e, (aiohttp.ClientConnectionError, asyncio.TimeoutError)):
                    break

        error_msg = f"Request failed after {self.max_retries + 1} attempts"
        if last_exception:
            error_msg += f": {last_exception!r}"

        return {"success": False, "data": None, "error": error_msg, "status_code": 0}

    async def get(self, url: str, **kwargs) -> Dict[str, Any]:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> Dict[str, Any]:
        return await self.request("POST", url, **kwargs)
