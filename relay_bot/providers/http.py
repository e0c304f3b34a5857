"""JSON-over-HTTP transport shared by the REST providers."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests
from requests.structures import CaseInsensitiveDict

from relay_bot.providers.base import NotFoundError, RetryableSCMError, SCMError
from relay_bot.shared.retry import retry_with_backoff

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {500, 502, 503, 504}


class JSONTransport:
    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        platform: str,
        session: requests.Session | None = None,
        timeout_s: float = 15,
        max_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers)
        self.platform = platform
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.max_attempts = max(1, int(max_attempts))
        self.sleep = sleep

    def request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        payload, _headers = self.request_with_headers(method, path, json=json, params=params)
        return payload

    def request_with_headers(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, CaseInsensitiveDict]:
        response = self._send(method, path, json=json, params=params)
        headers = CaseInsensitiveDict(response.headers or {})
        if not response.content:
            return {}, headers
        return response.json(), headers

    def request_text(self, path: str, accept: str | None = None) -> str:
        extra = {"Accept": accept} if accept else None
        response = self._send("GET", path, extra_headers=extra)
        return response.text

    def _send(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> requests.Response:
        headers = dict(self.headers)
        if extra_headers:
            headers.update(extra_headers)

        def attempt() -> requests.Response:
            try:
                response = self.session.request(
                    method=method,
                    url=f"{self.base_url}{path}",
                    headers=headers,
                    json=json,
                    params=params,
                    timeout=self.timeout_s,
                )
            except requests.RequestException as exc:
                raise RetryableSCMError(
                    f"{self.platform} {method} {path} failed: {exc}",
                    reason_code=f"{self.platform}_network",
                ) from exc
            self._raise_for_status(method, path, response)
            return response

        return retry_with_backoff(
            attempt,
            retry_on=(RetryableSCMError,),
            max_attempts=self.max_attempts,
            sleep=self.sleep,
        )

    def _raise_for_status(self, method: str, path: str, response: requests.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        where = f"{self.platform} {method} {path}"
        if _looks_like_rate_limit(response):
            raise RetryableSCMError(
                f"{where} was rate limited",
                reason_code=f"{self.platform}_rate_limited",
                status_code=status,
                retry_after_s=_parse_retry_after((response.headers or {}).get("Retry-After")),
            )
        if status in RETRYABLE_STATUSES:
            raise RetryableSCMError(
                f"{where} returned {status}",
                reason_code=f"{self.platform}_{status}",
                status_code=status,
            )
        if status == 404:
            raise NotFoundError(f"{where} returned 404")
        raise SCMError(
            f"{where} returned {status}: {_error_message(response)}",
            reason_code=f"{self.platform}_{status}",
            status_code=status,
        )


def _looks_like_rate_limit(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    return "rate limit" in _error_message(response).lower()


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return ""
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or "")
    return ""


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed >= 0 else None
