import asyncio
import json
import math
from typing import Any, Dict, List, Optional

import pytest

from homerun.api.errors import RequestError
from homerun.api.models import Channel, Episode, WatchResponse
from homerun.config import reset_settings
from homerun.player import MediaPlayer, PlayerStatus


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None) -> None:
        self.status_code = status_code
        if text is None:
            text = "" if payload is None else json.dumps(payload)
        self.text = text


class FakeSession:
    """Stands in for requests.Session: replays queued responses or raises queued exceptions."""

    def __init__(self, *outcomes: Any) -> None:
        self.headers: Dict[str, str] = {}
        self.outcomes = list(outcomes)
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *outcomes: Any) -> None:
        self.outcomes.extend(outcomes)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakePlayer(MediaPlayer):
    def __init__(self) -> None:
        super().__init__()
        self.calls: List[tuple] = []
        self.current_position = 0.0
        self.current_duration = math.nan

    @property
    def position(self) -> float:
        return self.current_position

    @property
    def duration(self) -> float:
        return self.current_duration

    def load(self, url: str) -> None:
        self.calls.append(("load", url))
        self.current_position = 0.0
        self._set_status(PlayerStatus.LOADING)

    def seek(self, seconds: float) -> None:
        self.calls.append(("seek", seconds))
        self.current_position = seconds

    def play(self) -> None:
        self.calls.append(("play",))

    def pause(self) -> None:
        self.calls.append(("pause",))

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def become_ready(self, duration: float = math.nan) -> None:
        self.current_duration = duration
        self._set_status(PlayerStatus.READY)

    def fail(self, reason: Optional[str]) -> None:
        self._set_status(PlayerStatus.FAILED, reason)

    def reach_end(self) -> None:
        self._notify_ended()


class FakeClient:
    """Records what the session controllers ask of the server."""

    def __init__(self, base_url: str = "http://dvr.local:3000") -> None:
        self.base_url = base_url
        self.progress: List[tuple] = []
        self.progress_policies: List[Any] = []
        self.progress_error: Optional[RequestError] = None
        self.watch_response = WatchResponse(
            success=True, tuner_id="tuner0", playlist_url="/api/live/stream/abc/index.m3u8", channel_number="5.1"
        )
        self.watch_error: Optional[RequestError] = None
        self.watch_calls: List[tuple] = []
        # When set, start_watching waits on it before answering.
        self.watch_gate: Optional[asyncio.Event] = None
        self.heartbeats: List[str] = []
        self.heartbeat_error: Optional[RequestError] = None
        self.stops: List[str] = []
        self.stop_error: Optional[RequestError] = None

    async def update_episode_progress(
        self, episode_id: int, position: int, watched: bool, *, policy: Any = None
    ) -> None:
        self.progress.append((episode_id, position, watched))
        self.progress_policies.append(policy)
        if self.progress_error is not None:
            raise self.progress_error

    async def start_watching(self, channel_number: str, client_id: str) -> WatchResponse:
        self.watch_calls.append((channel_number, client_id))
        if self.watch_gate is not None:
            await self.watch_gate.wait()
        if self.watch_error is not None:
            raise self.watch_error
        return self.watch_response

    async def send_heartbeat(self, client_id: str) -> None:
        self.heartbeats.append(client_id)
        if self.heartbeat_error is not None:
            raise self.heartbeat_error

    async def stop_watching(self, client_id: str) -> None:
        self.stops.append(client_id)
        if self.stop_error is not None:
            raise self.stop_error


def _make_episode(episode_id: int = 1, **overrides: Any) -> Episode:
    fields: Dict[str, Any] = dict(
        id=episode_id,
        program_id=f"EP{episode_id:04d}",
        title="Nature Hour",
        episode_title=f"Part {episode_id}",
        episode_number=f"S01E{episode_id:02d}",
        season_number=1,
        episode_num=episode_id,
        synopsis="",
        category="series",
        channel_name="PBS",
        channel_number="5.1",
        start_time="2026-10-01T20:00:00Z",
        end_time="2026-10-01T21:00:00Z",
        duration_seconds=3600,
        original_airdate="2026-10-01",
        record_start_time=0,
        record_end_time=0,
        first_airing=1,
        filename=f"ep{episode_id}.mpg",
        play_url=f"http://dvr.local:3000/recordings/{episode_id}.m3u8",
        cmd_url="",
        watched=0,
        record_success=1,
        created_at="2026-10-01T21:00:00Z",
        updated_at="2026-10-01T21:00:00Z",
        series_id="SER1",
        series_title="Nature Hour",
        duration_minutes=60,
        resume_minutes=0,
    )
    fields.update(overrides)
    return Episode(**fields)


def _make_channel(number: str = "5.1", name: str = "PBS") -> Channel:
    return Channel(guide_number=number, guide_name=name)


@pytest.fixture(autouse=True)
def _clean_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def make_episode():
    return _make_episode


@pytest.fixture
def make_channel():
    return _make_channel


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def fake_response():
    return FakeResponse
