from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Coroutine, List, Optional, Sequence, Set
from urllib.parse import urlparse

from homerun.api.client import HomeRunClient
from homerun.api.engine import NO_RETRY, QUIET_POLICY
from homerun.api.errors import RequestError
from homerun.api.models import Episode
from homerun.player import MediaPlayer, PlayerStatus

_LOGGER = logging.getLogger(__name__)

POSITION_SAMPLE_INTERVAL = 0.5
PROGRESS_SAVE_INTERVAL = 30.0
MIN_PROGRESS_ADVANCE = 5.0
# Positions this close to the end are "finishing", not a resume point.
ENDING_WINDOW = 30.0
SKIP_FORWARD_SECONDS = 30.0
SKIP_BACKWARD_SECONDS = 15.0


class PlaybackState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class PlaybackSnapshot:
    state: PlaybackState
    episode: Episode
    index: int
    progress: float
    current_time: str
    duration: str
    is_playing: bool
    ended: bool
    error_message: Optional[str]
    has_next: bool
    has_previous: bool


def format_clock(seconds: float) -> str:
    if not math.isfinite(seconds):
        return "0:00"
    total = max(0, int(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def progress_fraction(position: float, duration: float) -> float:
    if not math.isfinite(duration) or duration <= 0 or not math.isfinite(position):
        return 0.0
    return min(1.0, max(0.0, position / duration))


def should_save_progress(
    position: float,
    watermark: float,
    duration: float,
    *,
    min_advance: float = MIN_PROGRESS_ADVANCE,
    ending_window: float = ENDING_WINDOW,
) -> bool:
    if not math.isfinite(position):
        return False
    if position - watermark < min_advance:
        return False
    if math.isfinite(duration) and duration > 0 and position >= duration - ending_window:
        return False
    return True


class PlaybackSession:
    """Plays one episode of a list at a time and keeps the server's resume point current.

    The presentation layer calls :meth:`start` once, may call
    :meth:`play_next` / :meth:`play_previous`, and calls :meth:`close` when
    leaving. State is published through :meth:`add_listener`.

    Each attachment to the player (one per episode shown) gets a token.
    Detaching bumps the token, so any callback or timer from an earlier
    attachment finds itself stale and does nothing.
    """

    def __init__(
        self,
        client: HomeRunClient,
        player: MediaPlayer,
        episodes: Sequence[Episode],
        index: int = 0,
        *,
        sample_interval: float = POSITION_SAMPLE_INTERVAL,
        save_interval: float = PROGRESS_SAVE_INTERVAL,
        min_advance: float = MIN_PROGRESS_ADVANCE,
        ending_window: float = ENDING_WINDOW,
    ) -> None:
        if not episodes:
            raise ValueError("episode list is empty")
        if not 0 <= index < len(episodes):
            raise IndexError(f"episode index {index} out of range")
        self._client = client
        self._player = player
        self._episodes = tuple(episodes)
        self._index = index
        self._sample_interval = sample_interval
        self._save_interval = save_interval
        self._min_advance = min_advance
        self._ending_window = ending_window

        self._state = PlaybackState.IDLE
        self._started = False
        self._closed = False
        self._token = 0
        self._unsubs: List[Callable[[], None]] = []
        self._save_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._watermark = 0.0
        self._position = 0.0
        self._duration = math.nan
        self._is_playing = False
        self._ended = False
        self._error_message: Optional[str] = None
        self._listeners: List[Callable[[PlaybackSnapshot], None]] = []

    @classmethod
    def for_episode(
        cls,
        client: HomeRunClient,
        player: MediaPlayer,
        episode: Episode,
        episodes: Sequence[Episode],
        **kwargs,
    ) -> "PlaybackSession":
        for i, candidate in enumerate(episodes):
            if candidate.id == episode.id:
                return cls(client, player, episodes, i, **kwargs)
        raise ValueError(f"episode {episode.id} is not in the list")

    # Published state

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def current_episode(self) -> Episode:
        return self._episodes[self._index]

    @property
    def index(self) -> int:
        return self._index

    @property
    def episodes(self) -> Sequence[Episode]:
        return self._episodes

    @property
    def has_next(self) -> bool:
        return self._index < len(self._episodes) - 1

    @property
    def has_previous(self) -> bool:
        return self._index > 0

    @property
    def watermark(self) -> float:
        return self._watermark

    @property
    def progress(self) -> float:
        return progress_fraction(self._position, self._duration)

    @property
    def is_playing(self) -> bool:
        return self._is_playing

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> PlaybackSnapshot:
        return PlaybackSnapshot(
            state=self._state,
            episode=self.current_episode,
            index=self._index,
            progress=self.progress,
            current_time=format_clock(self._position),
            duration=format_clock(self._duration),
            is_playing=self._is_playing,
            ended=self._ended,
            error_message=self._error_message,
            has_next=self.has_next,
            has_previous=self.has_previous,
        )

    def add_listener(self, callback: Callable[[PlaybackSnapshot], None]) -> Callable[[], None]:
        """Subscribe to state changes; the current state is delivered immediately."""
        self._listeners.append(callback)
        try:
            callback(self.snapshot())
        except Exception:
            _LOGGER.exception("Playback listener failed")

        def _unsub() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsub

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                _LOGGER.exception("Playback listener failed")

    def _set_state(self, state: PlaybackState) -> None:
        self._state = state
        self._notify()

    # Lifecycle

    async def start(self) -> None:
        if self._started or self._closed:
            return
        self._started = True
        self._attach()

    async def play_next(self) -> None:
        if self.has_next:
            await self._navigate(self._index + 1)

    async def play_previous(self) -> None:
        if self.has_previous:
            await self._navigate(self._index - 1)

    async def close(self) -> None:
        if self._closed:
            return
        episode = self.current_episode
        position = self._player.position
        final_save = (
            self._state is PlaybackState.READY
            and not self._ended
            and should_save_progress(
                position,
                self._watermark,
                self._effective_duration(),
                min_advance=self._min_advance,
                ending_window=self._ending_window,
            )
        )
        self._closed = True
        self._player.pause()
        self._is_playing = False
        self._detach()
        self._set_state(PlaybackState.CLOSED)
        self._listeners.clear()
        if final_save:
            await self._save_quietly(episode, position)
        # Let an in-flight "watched" write finish before the caller tears down the loop.
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # Controls

    def toggle_play_pause(self) -> None:
        if self._closed or self._state is not PlaybackState.READY:
            return
        if self._is_playing:
            self._player.pause()
        else:
            self._player.play()
        self._is_playing = not self._is_playing
        self._notify()

    def skip_forward(self, seconds: float = SKIP_FORWARD_SECONDS) -> None:
        if self._closed or self._state is not PlaybackState.READY:
            return
        target = self._player.position + seconds
        duration = self._effective_duration()
        if math.isfinite(duration) and duration > 0:
            target = min(target, duration)
        self._player.seek(target)

    def skip_backward(self, seconds: float = SKIP_BACKWARD_SECONDS) -> None:
        if self._closed or self._state is not PlaybackState.READY:
            return
        self._player.seek(max(0.0, self._player.position - seconds))

    # Progress persistence

    async def save_progress(self) -> bool:
        """Write the current position as an in-progress resume point, if it is worth writing."""
        episode = self.current_episode
        position = self._player.position
        if not should_save_progress(
            position,
            self._watermark,
            self._effective_duration(),
            min_advance=self._min_advance,
            ending_window=self._ending_window,
        ):
            return False
        token = self._token
        try:
            await self._client.update_episode_progress(episode.id, int(position), watched=False, policy=QUIET_POLICY)
        except RequestError as exc:
            _LOGGER.warning("Saving progress for episode %s failed: %s", episode.id, exc)
            return False
        if token == self._token:
            self._watermark = max(self._watermark, position)
        return True

    async def _save_quietly(self, episode: Episode, position: float) -> None:
        try:
            await self._client.update_episode_progress(episode.id, int(position), watched=False, policy=NO_RETRY)
        except RequestError as exc:
            _LOGGER.debug("Ignoring failed progress save for episode %s: %s", episode.id, exc)

    def _effective_duration(self) -> float:
        duration = self._player.duration
        if math.isfinite(duration) and duration > 0:
            return duration
        if self.current_episode.duration_seconds > 0:
            return float(self.current_episode.duration_seconds)
        return math.nan

    # Attachment

    def _attach(self) -> None:
        self._token += 1
        token = self._token
        episode = self.current_episode
        resume = float(episode.resume_position or 0)
        self._watermark = resume
        self._position = resume
        self._duration = float(episode.duration_seconds) if episode.duration_seconds > 0 else math.nan
        self._is_playing = False
        self._ended = False
        self._error_message = None
        self._set_state(PlaybackState.LOADING)

        parsed = urlparse(episode.play_url)
        if not parsed.scheme or not parsed.netloc:
            self._error_message = f"Invalid video URL: {episode.play_url}"
            self._set_state(PlaybackState.FAILED)
            return

        _LOGGER.info("Loading episode %s (%s) from %s", episode.id, episode.episode_title, episode.play_url)
        player = self._player
        self._unsubs = [
            player.add_status_listener(lambda status, error: self._on_status(token, status, error)),
            player.add_end_listener(lambda: self._on_ended(token)),
            player.add_position_observer(
                self._sample_interval, lambda position, duration: self._on_position(token, position, duration)
            ),
        ]
        player.load(episode.play_url)

    def _detach(self) -> None:
        self._token += 1
        unsubs, self._unsubs = self._unsubs, []
        for unsub in unsubs:
            unsub()
        if self._save_task is not None:
            self._save_task.cancel()
            self._save_task = None

    def _is_current(self, token: int) -> bool:
        return not self._closed and token == self._token

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _navigate(self, index: int) -> None:
        if self._closed:
            return
        if not self._started:
            self._index = index
            self._notify()
            return
        outgoing = self.current_episode
        position = self._player.position
        save_outgoing = (
            self._state is PlaybackState.READY
            and not self._ended
            and should_save_progress(
                position,
                self._watermark,
                self._effective_duration(),
                min_advance=self._min_advance,
                ending_window=self._ending_window,
            )
        )
        self._detach()
        self._index = index
        self._attach()
        if save_outgoing:
            await self._save_quietly(outgoing, position)

    # Player callbacks

    def _on_status(self, token: int, status: PlayerStatus, error: Optional[str]) -> None:
        if not self._is_current(token):
            return
        if status is PlayerStatus.READY and self._state is PlaybackState.LOADING:
            resume = self.current_episode.resume_position or 0
            if resume > 0:
                self._player.seek(resume)
            self._player.play()
            self._is_playing = True
            self._set_state(PlaybackState.READY)
            if self._save_task is None:
                self._save_task = self._spawn(self._save_loop(token))
        elif status is PlayerStatus.FAILED and self._state is not PlaybackState.FAILED:
            _LOGGER.warning("Episode %s failed to play: %s", self.current_episode.id, error)
            if self._save_task is not None:
                self._save_task.cancel()
                self._save_task = None
            self._is_playing = False
            self._error_message = f"Failed to load video: {error or 'Unknown error'}"
            self._set_state(PlaybackState.FAILED)

    def _on_position(self, token: int, position: float, duration: float) -> None:
        if not self._is_current(token):
            return
        self._position = position
        self._duration = duration
        self._notify()

    def _on_ended(self, token: int) -> None:
        if not self._is_current(token) or self._ended:
            return
        self._ended = True
        self._is_playing = False
        if self._save_task is not None:
            self._save_task.cancel()
            self._save_task = None
        self._notify()
        self._spawn(self._finish_episode(token))

    async def _save_loop(self, token: int) -> None:
        while True:
            await asyncio.sleep(self._save_interval)
            if not self._is_current(token):
                return
            await self.save_progress()

    async def _finish_episode(self, token: int) -> None:
        episode = self.current_episode
        duration = episode.duration_seconds
        if duration <= 0:
            player_duration = self._player.duration
            duration = int(player_duration) if math.isfinite(player_duration) else 0
        try:
            await self._client.update_episode_progress(episode.id, duration, watched=True, policy=QUIET_POLICY)
        except RequestError as exc:
            _LOGGER.warning("Marking episode %s watched failed: %s", episode.id, exc)
        else:
            if token == self._token:
                self._watermark = max(self._watermark, float(duration))
        if not self._is_current(token):
            return
        if self.has_next:
            self._detach()
            self._index += 1
            self._attach()
        else:
            _LOGGER.info("Reached the end of the episode list")
