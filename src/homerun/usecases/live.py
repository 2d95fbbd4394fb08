from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Coroutine, List, Optional, Set
from urllib.parse import urljoin, urlparse

from homerun.api.client import HomeRunClient
from homerun.api.errors import RequestError, ServerStatusError
from homerun.api.models import Channel
from homerun.config import get_settings
from homerun.player import MediaPlayer, PlayerStatus

_LOGGER = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 25.0
# The tuner needs a moment after the first frames before it accepts heartbeats.
SETTLE_DELAY = 5.0


class LiveState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class LiveSnapshot:
    state: LiveState
    channel: Channel
    client_id: str
    stream_url: Optional[str]
    is_loading: bool
    error_message: Optional[str]


def resolve_stream_url(base_url: str, playlist_url: Optional[str]) -> str:
    """Resolve a server-relative playlist path against the server's base URL."""
    base = urlparse(base_url or "")
    if base.scheme not in ("http", "https") or not base.netloc:
        raise ValueError("Invalid server URL")
    if not playlist_url:
        raise ValueError("Invalid stream URL")
    resolved = urljoin(base_url, playlist_url)
    parsed = urlparse(resolved)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Invalid stream URL")
    return resolved


class LiveSession:
    """Holds one tuner reservation for the lifetime of a live view.

    :meth:`start` asks the server for the channel, hands the playlist to the
    player, and once frames are flowing keeps the reservation alive with
    heartbeats. :meth:`close` releases it. Both are safe to call more than
    once.
    """

    def __init__(
        self,
        client: HomeRunClient,
        player: MediaPlayer,
        channel: Channel,
        *,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        settle_delay: float = SETTLE_DELAY,
    ) -> None:
        self._client = client
        self._player = player
        self._channel = channel
        self._base_url = base_url
        self._client_id = client_id or str(uuid.uuid4())
        self._heartbeat_interval = heartbeat_interval
        self._settle_delay = settle_delay

        self._state = LiveState.IDLE
        self._started = False
        self._closed = False
        self._stream_url: Optional[str] = None
        self._error_message: Optional[str] = None
        self._unsub_status: Optional[Callable[[], None]] = None
        self._settle_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[Callable[[LiveSnapshot], None]] = []

    @property
    def state(self) -> LiveState:
        return self._state

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def stream_url(self) -> Optional[str]:
        return self._stream_url

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    def snapshot(self) -> LiveSnapshot:
        return LiveSnapshot(
            state=self._state,
            channel=self._channel,
            client_id=self._client_id,
            stream_url=self._stream_url,
            is_loading=self._state is LiveState.STARTING,
            error_message=self._error_message,
        )

    def add_listener(self, callback: Callable[[LiveSnapshot], None]) -> Callable[[], None]:
        self._listeners.append(callback)
        try:
            callback(self.snapshot())
        except Exception:
            _LOGGER.exception("Live listener failed")

        def _unsub() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsub

    def _set_state(self, state: LiveState) -> None:
        self._state = state
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                _LOGGER.exception("Live listener failed")

    def _fail(self, message: str) -> None:
        _LOGGER.warning("Live channel %s: %s", self._channel.guide_number, message)
        self._error_message = message
        self._cancel_timers()
        self._set_state(LiveState.FAILED)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_timers(self) -> None:
        for task in (self._settle_task, self._heartbeat_task):
            if task is not None:
                task.cancel()
        self._settle_task = None
        self._heartbeat_task = None

    async def start(self) -> None:
        if self._started or self._closed:
            return
        self._started = True
        base_url = self._base_url
        if base_url is None:
            base_url = get_settings().server_url or self._client.base_url
        self._set_state(LiveState.STARTING)
        _LOGGER.info("Starting channel %s for client %s", self._channel.guide_number, self._client_id)

        try:
            response = await self._client.start_watching(self._channel.guide_number, self._client_id)
        except RequestError as exc:
            if not self._closed:
                self._fail(f"Failed to start stream: {exc.user_message}")
            return

        if self._closed:
            # Closed while the tuner was being reserved; release what we just got.
            await self._release()
            return
        if response.error:
            self._fail(response.error)
            return
        if not response.success:
            self._fail(response.message or "Failed to start stream")
            return

        try:
            url = resolve_stream_url(base_url, response.playlist_url)
        except ValueError as exc:
            self._fail(str(exc))
            return

        self._stream_url = url
        self._unsub_status = self._player.add_status_listener(self._on_status)
        _LOGGER.info("Loading live stream %s (tuner %s)", url, response.tuner_id)
        self._player.load(url)

    def _on_status(self, status: PlayerStatus, error: Optional[str]) -> None:
        if self._closed:
            return
        if status is PlayerStatus.READY and self._state is LiveState.STARTING:
            self._player.play()
            self._set_state(LiveState.STREAMING)
            if self._settle_task is None:
                self._settle_task = self._spawn(self._settle_then_heartbeat())
        elif status is PlayerStatus.FAILED and self._state is not LiveState.FAILED:
            self._fail(f"Failed to load stream: {error}" if error else "Failed to load live stream")

    async def _settle_then_heartbeat(self) -> None:
        await asyncio.sleep(self._settle_delay)
        if self._closed or self._state is not LiveState.STREAMING:
            return
        if self._heartbeat_task is None:
            self._heartbeat_task = self._spawn(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if self._closed:
                return
            await self.send_heartbeat()

    async def send_heartbeat(self) -> bool:
        try:
            await self._client.send_heartbeat(self._client_id)
        except ServerStatusError as exc:
            if exc.not_found:
                _LOGGER.debug("Heartbeat for %s: no session on server", self._client_id)
            else:
                _LOGGER.warning("Heartbeat for %s failed: %s", self._client_id, exc)
            return False
        except RequestError as exc:
            _LOGGER.warning("Heartbeat for %s failed: %s", self._client_id, exc)
            return False
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._player.pause()
        self._cancel_timers()
        if self._unsub_status is not None:
            self._unsub_status()
            self._unsub_status = None
        self._set_state(LiveState.CLOSED)
        self._listeners.clear()
        if self._started:
            await self._release()

    async def _release(self) -> None:
        try:
            await self._client.stop_watching(self._client_id)
        except ServerStatusError as exc:
            if exc.not_found:
                _LOGGER.debug("Stop for %s: session already gone", self._client_id)
            else:
                _LOGGER.debug("Ignoring failed stop for %s: %s", self._client_id, exc)
        except RequestError as exc:
            _LOGGER.debug("Ignoring failed stop for %s: %s", self._client_id, exc)
