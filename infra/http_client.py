"""
signal-trader Infrastructure: JSON HTTP client

Shared request path for the brokerage, market-data and alternate-price
adapters.

Retries (via infra.retry) on:
- 429 (rate limit)
- 5xx (server errors)
- Network errors (timeout, connection)

Does NOT retry on other 4xx; those propagate as requests.HTTPError so each
adapter can map them (missing position, order rejection, ...).
"""

import logging
from typing import Any, Dict, Optional

import requests

from core.exceptions import TransientCallError
from infra.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class JsonHttpClient:
    """Thin requests wrapper with a base URL, default headers and retry policy."""

    def __init__(self, base_url: str, headers: Optional[Dict[str, str]] = None,
                 timeout: float = 20.0, retry_policy: Optional[RetryPolicy] = None):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Accept": "application/json", **(headers or {})}
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()

    def _send(self, method: str, path: str, body: Optional[dict] = None,
              query: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                headers=self.headers,
                params=query,
                json=body,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            text = e.response.text if e.response is not None else str(e)
            if status_code == 429:
                logger.warning(f"Rate limited (429) on {method} {path}")
                raise TransientCallError(path, status_code, "rate limited") from e
            if status_code is not None and status_code >= 500:
                logger.warning(f"Server error ({status_code}) on {method} {path}")
                raise TransientCallError(path, status_code, text) from e
            if status_code == 404:
                logger.debug(f"404 on {method} {path}: {text}")
            else:
                logger.error(f"Client error {status_code} on {method} {path}: {text}")
            raise
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Network error on {method} {path}: {e}")
            raise TransientCallError(path, None, str(e)) from e

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def request(self, method: str, path: str, body: Optional[dict] = None,
                query: Optional[Dict[str, Any]] = None) -> Any:
        """Issue a request under the retry policy and return the decoded JSON body."""
        return call_with_retry(
            self._send, method, path, body, query,
            policy=self.retry_policy,
            description=f"{method} {path}",
        )

    def get(self, path: str, query: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("GET", path, query=query)

    def post(self, path: str, body: dict) -> Any:
        return self.request("POST", path, body=body)

    def delete(self, path: str) -> Any:
        return self.request("DELETE", path)
