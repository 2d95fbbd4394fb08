from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type
from urllib.parse import urlparse

import requests

from homerun.api.errors import (
    InvalidTargetError,
    RequestError,
    RequestTimeoutError,
    ServerStatusError,
    TransportError,
    UnclassifiedError,
)
from homerun.api.models import EmptyResponse, WireModel

_LOGGER = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0
RESOURCE_TIMEOUT = 300.0


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_backoff: float = 1.0
    multiplier: float = 2.0
    max_backoff: float = 5.0
    surface_after: float = 5.0
    # Background writes set this off; their failures are logged by the caller.
    surface: bool = True

    def delay(self, attempt: int) -> float:
        return min(self.initial_backoff * self.multiplier ** attempt, self.max_backoff)

    def cumulative_wait(self, attempt: int) -> float:
        return sum(self.delay(i) for i in range(attempt + 1))

    def should_surface(self, attempt: int) -> bool:
        # Quiet while retries remain; loud once the last one has failed slowly.
        if not self.surface:
            return False
        return attempt >= self.max_retries and self.cumulative_wait(attempt) >= self.surface_after


DEFAULT_POLICY = RetryPolicy()
QUIET_POLICY = RetryPolicy(surface=False)
NO_RETRY = RetryPolicy(max_retries=0, surface=False)


@dataclass(frozen=True)
class EndpointCall:
    path: str
    method: str = "GET"
    body: Optional[WireModel] = None
    response_type: Optional[Type[WireModel]] = EmptyResponse
    params: Optional[Dict[str, Any]] = None
    streaming: bool = False


@dataclass(frozen=True)
class RetryAttempt:
    index: int
    delay: float
    error: RequestError


class RequestEngine:
    """Issues HTTP calls against the configured server with bounded retries.

    Each :meth:`execute` owns its own attempt counter, so one engine can be
    shared by any number of concurrent callers.
    """

    USER_AGENT = "homerun/0.1"

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        policy: RetryPolicy = DEFAULT_POLICY,
        timeout: float = REQUEST_TIMEOUT,
        resource_timeout: float = RESOURCE_TIMEOUT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url
        self.session = session if session is not None else requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": self.USER_AGENT,
            }
        )
        self.policy = policy
        self.timeout = timeout
        self.resource_timeout = resource_timeout
        self._sleep = sleep

        self.error: Optional[RequestError] = None
        self.show_error_alert = False
        self._error_listeners: List[Callable[[RequestError], None]] = []

    @property
    def base_url(self) -> str:
        return self._base_url

    def update_base_url(self, url: str) -> None:
        self._base_url = url

    def add_error_listener(self, callback: Callable[[RequestError], None]) -> Callable[[], None]:
        self._error_listeners.append(callback)

        def _unsub() -> None:
            if callback in self._error_listeners:
                self._error_listeners.remove(callback)

        return _unsub

    def clear_error(self) -> None:
        self.error = None
        self.show_error_alert = False

    def _surface(self, error: RequestError) -> None:
        self.error = error
        self.show_error_alert = True
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                _LOGGER.exception("Error listener failed")

    async def execute(self, call: EndpointCall, policy: Optional[RetryPolicy] = None) -> Any:
        policy = policy or self.policy
        attempt = 0
        while True:
            try:
                return await self._attempt(call)
            except RequestError as err:
                if not err.retryable or attempt >= policy.max_retries:
                    if policy.should_surface(attempt):
                        self._surface(err)
                    _LOGGER.debug("%s %s failed after %d attempt(s): %s", call.method, call.path, attempt + 1, err)
                    raise
                retry = RetryAttempt(index=attempt, delay=policy.delay(attempt), error=err)
                _LOGGER.info(
                    "%s %s failed (%s); retry %d/%d in %.1fs",
                    call.method,
                    call.path,
                    err,
                    retry.index + 1,
                    policy.max_retries,
                    retry.delay,
                )
                await self._sleep(retry.delay)
                attempt += 1

    def build_url(self, path: str) -> str:
        url = f"{self._base_url}{path}"
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidTargetError(f"Invalid server URL: {url}")
        return url

    async def _attempt(self, call: EndpointCall) -> Any:
        url = self.build_url(call.path)
        # requests blocks; run it off the event loop and resume here.
        r = await asyncio.to_thread(self._send, url, call)
        if not 200 <= r.status_code <= 299:
            raise ServerStatusError(r.status_code)
        return self._decode(call, r)

    def _send(self, url: str, call: EndpointCall) -> requests.Response:
        timeout: Any = self.timeout
        if call.streaming:
            timeout = (self.timeout, self.resource_timeout)
        kwargs: Dict[str, Any] = {"timeout": timeout}
        if call.params:
            kwargs["params"] = call.params
        if call.body is not None:
            kwargs["json"] = call.body.to_wire()
        try:
            return self.session.request(call.method, url, **kwargs)
        except requests.Timeout as exc:
            raise RequestTimeoutError(cause=exc) from exc
        except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema) as exc:
            raise InvalidTargetError(str(exc), cause=exc) from exc
        except requests.ConnectionError as exc:
            raise TransportError(str(exc), cause=exc) from exc
        except requests.RequestException as exc:
            raise UnclassifiedError(str(exc), cause=exc) from exc

    def _decode(self, call: EndpointCall, r: requests.Response) -> Any:
        if call.response_type is None:
            return None
        text = r.text or ""
        if call.response_type is EmptyResponse and not text.strip():
            return EmptyResponse()
        return call.response_type.from_json(text)
