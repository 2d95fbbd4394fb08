import asyncio
import math

import pytest
import requests

from homerun.api.client import HomeRunClient
from homerun.api.engine import NO_RETRY, QUIET_POLICY, RequestEngine
from homerun.api.errors import TransportError
from homerun.usecases.playback import (
    PlaybackSession,
    PlaybackState,
    format_clock,
    progress_fraction,
    should_save_progress,
)

SLOW = 3600.0


def make_session(client, player, episodes, index=0):
    return PlaybackSession(client, player, episodes, index, sample_interval=SLOW, save_interval=SLOW)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestPersistRule:
    def test_small_advance_is_skipped(self):
        assert not should_save_progress(104, 100, 3600)

    def test_enough_advance_is_written(self):
        assert should_save_progress(106, 100, 3600)

    def test_near_end_is_skipped(self):
        assert not should_save_progress(1175, 100, 1200)

    def test_unknown_duration_does_not_block(self):
        assert should_save_progress(200, 100, math.nan)


def test_clock_strings():
    assert format_clock(65) == "1:05"
    assert format_clock(3725) == "1:02:05"
    assert format_clock(math.nan) == "0:00"


def test_progress_fraction():
    assert progress_fraction(30, 120) == 0.25
    assert progress_fraction(30, math.nan) == 0.0
    assert progress_fraction(30, 0) == 0.0


@pytest.mark.asyncio
async def test_resume_seeks_before_play(client, player, make_episode):
    session = make_session(client, player, [make_episode(1, resume_position=120)])

    await session.start()
    player.become_ready(duration=3600)

    assert player.calls == [
        ("load", "http://dvr.local:3000/recordings/1.m3u8"),
        ("seek", 120),
        ("play",),
    ]
    assert session.state is PlaybackState.READY
    assert session.watermark == 120
    await session.close()


@pytest.mark.asyncio
async def test_no_seek_without_resume_point(client, player, make_episode):
    session = make_session(client, player, [make_episode(1, resume_position=0)])

    await session.start()
    player.become_ready(duration=3600)

    assert "seek" not in player.names()
    assert player.names()[-1] == "play"
    await session.close()


@pytest.mark.asyncio
async def test_start_is_idempotent(client, player, make_episode):
    session = make_session(client, player, [make_episode(1)])

    await session.start()
    await session.start()

    assert player.names().count("load") == 1
    await session.close()


@pytest.mark.asyncio
async def test_progress_tick_respects_watermark(client, player, make_episode):
    session = make_session(client, player, [make_episode(1, resume_position=100)])
    await session.start()
    player.become_ready(duration=3600)

    player.current_position = 104
    assert await session.save_progress() is False
    assert client.progress == []

    player.current_position = 106
    assert await session.save_progress() is True
    assert client.progress == [(1, 106, False)]
    assert session.watermark == 106
    await session.close()


@pytest.mark.asyncio
async def test_progress_tick_skips_end_window(client, player, make_episode):
    episode = make_episode(1, duration_seconds=1200, resume_position=100)
    session = make_session(client, player, [episode])
    await session.start()
    player.become_ready(duration=1200)

    player.current_position = 1175
    assert await session.save_progress() is False
    assert client.progress == []
    await session.close()


@pytest.mark.asyncio
async def test_failed_save_keeps_watermark(client, player, make_episode):
    client.progress_error = TransportError("down")
    session = make_session(client, player, [make_episode(1)])
    await session.start()
    player.become_ready(duration=3600)

    player.current_position = 300
    assert await session.save_progress() is False
    assert session.watermark == 0
    await session.close()


@pytest.mark.asyncio
async def test_end_marks_watched_and_advances(client, player, make_episode):
    episodes = [make_episode(1), make_episode(2)]
    session = make_session(client, player, episodes)
    await session.start()
    player.become_ready(duration=3600)

    player.reach_end()
    player.reach_end()
    await settle()

    assert client.progress == [(1, 3600, True)]
    assert session.index == 1
    assert session.state is PlaybackState.LOADING
    assert player.calls[-1] == ("load", "http://dvr.local:3000/recordings/2.m3u8")
    await session.close()


@pytest.mark.asyncio
async def test_end_of_last_episode_stays_ready(client, player, make_episode):
    session = make_session(client, player, [make_episode(1), make_episode(2)], index=1)
    await session.start()
    player.become_ready(duration=3600)

    player.reach_end()
    await settle()

    assert client.progress == [(2, 3600, True)]
    assert session.index == 1
    assert session.state is PlaybackState.READY
    assert session.ended
    assert player.names().count("load") == 1
    await session.close()


@pytest.mark.asyncio
async def test_watched_failure_still_advances(client, player, make_episode):
    client.progress_error = TransportError("down")
    session = make_session(client, player, [make_episode(1), make_episode(2)])
    await session.start()
    player.become_ready(duration=3600)

    player.reach_end()
    await settle()

    assert session.index == 1
    await session.close()


@pytest.mark.asyncio
async def test_load_failure_message(client, player, make_episode):
    session = make_session(client, player, [make_episode(1)])
    await session.start()

    player.fail("codec not supported")

    assert session.state is PlaybackState.FAILED
    assert session.error_message == "Failed to load video: codec not supported"
    await session.close()


@pytest.mark.asyncio
async def test_invalid_play_url(client, player, make_episode):
    session = make_session(client, player, [make_episode(1, play_url="not a url")])

    await session.start()

    assert session.state is PlaybackState.FAILED
    assert session.error_message == "Invalid video URL: not a url"
    assert "load" not in player.names()
    await session.close()


@pytest.mark.asyncio
async def test_navigation_saves_outgoing_episode(client, player, make_episode):
    session = make_session(client, player, [make_episode(1), make_episode(2)])
    await session.start()
    player.become_ready(duration=3600)
    player.current_position = 500

    await session.play_next()

    assert client.progress == [(1, 500, False)]
    assert session.index == 1
    assert session.has_previous
    assert not session.has_next

    await session.play_next()
    assert session.index == 1

    await session.play_previous()
    assert session.index == 0
    await session.close()


@pytest.mark.asyncio
async def test_stale_callbacks_are_ignored(client, player, make_episode):
    session = make_session(client, player, [make_episode(1), make_episode(2)])
    await session.start()
    player.become_ready(duration=3600)
    await session.play_next()
    assert player.observer_count == 1

    # The first episode's subscriptions are gone; a ready now belongs to episode 2.
    player.become_ready(duration=1800)
    assert session.state is PlaybackState.READY
    assert session.index == 1
    await session.close()


@pytest.mark.asyncio
async def test_close_twice_tears_down_once(client, player, make_episode):
    session = make_session(client, player, [make_episode(1)])
    await session.start()
    player.become_ready(duration=3600)
    player.current_position = 400

    await session.close()
    await session.close()

    assert player.names().count("pause") == 1
    assert client.progress == [(1, 400, False)]
    assert player.observer_count == 0
    assert session.state is PlaybackState.CLOSED


@pytest.mark.asyncio
async def test_close_without_start(client, player, make_episode):
    session = make_session(client, player, [make_episode(1)])

    await session.close()

    assert client.progress == []
    assert session.state is PlaybackState.CLOSED


@pytest.mark.asyncio
async def test_callbacks_after_close_are_ignored(client, player, make_episode):
    session = make_session(client, player, [make_episode(1)])
    await session.start()
    await session.close()

    player.become_ready(duration=3600)
    player.reach_end()
    await settle()

    assert session.state is PlaybackState.CLOSED
    assert "play" not in player.names()
    assert client.progress == []


@pytest.mark.asyncio
async def test_listener_gets_current_state_first(client, player, make_episode):
    session = make_session(client, player, [make_episode(1)])
    seen = []
    unsub = session.add_listener(lambda snap: seen.append(snap.state))

    await session.start()
    player.become_ready(duration=3600)
    unsub()
    await session.close()

    assert seen == [PlaybackState.IDLE, PlaybackState.LOADING, PlaybackState.READY]


@pytest.mark.asyncio
async def test_controls(client, player, make_episode):
    session = make_session(client, player, [make_episode(1)])
    await session.start()
    player.become_ready(duration=3600)
    player.current_position = 10

    session.skip_backward()
    assert player.calls[-1] == ("seek", 0.0)
    session.skip_forward()
    assert player.calls[-1] == ("seek", 30.0)
    session.toggle_play_pause()
    assert player.calls[-1] == ("pause",)
    assert not session.is_playing
    session.toggle_play_pause()
    assert player.calls[-1] == ("play",)
    await session.close()


@pytest.mark.asyncio
async def test_position_samples_update_progress(client, player, make_episode):
    session = PlaybackSession(client, player, [make_episode(1)], sample_interval=0.01, save_interval=SLOW)
    await session.start()
    player.become_ready(duration=200)
    player.current_position = 50

    await asyncio.sleep(0.05)

    assert session.progress == 0.25
    assert session.snapshot().current_time == "0:50"
    await session.close()


def test_empty_episode_list_rejected(client, player):
    with pytest.raises(ValueError):
        PlaybackSession(client, player, [])


@pytest.mark.asyncio
async def test_save_timer_writes_progress(client, player, make_episode):
    session = PlaybackSession(client, player, [make_episode(1)], sample_interval=0.01, save_interval=0.05)
    await session.start()
    player.become_ready(duration=3600)
    player.current_position = 50

    await asyncio.sleep(0.2)

    # Later ticks see no advance past the watermark.
    assert client.progress == [(1, 50, False)]
    assert client.progress_policies == [QUIET_POLICY]
    assert session.watermark == 50
    await session.close()


@pytest.mark.asyncio
async def test_background_saves_never_raise_the_alert(player, make_episode, fake_session):
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    http = fake_session(requests.ConnectionError("down"))
    engine = RequestEngine("http://dvr.local:3000", session=http, sleep=fake_sleep)
    surfaced = []
    engine.add_error_listener(surfaced.append)
    session = make_session(HomeRunClient(engine), player, [make_episode(1)])
    await session.start()
    player.become_ready(duration=3600)

    player.current_position = 500
    assert await session.save_progress() is False
    assert len(http.calls) == 4
    assert waits == [1.0, 2.0, 4.0]

    player.current_position = 900
    await session.close()

    # The close-time save is a single attempt.
    assert len(http.calls) == 5
    assert http.calls[-1]["json"] == {"position": 900, "watched": 0}
    assert waits == [1.0, 2.0, 4.0]
    assert surfaced == []
    assert engine.show_error_alert is False


@pytest.mark.asyncio
async def test_close_and_navigation_saves_are_single_attempt(client, player, make_episode):
    session = make_session(client, player, [make_episode(1), make_episode(2)])
    await session.start()
    player.become_ready(duration=3600)
    player.current_position = 500
    await session.play_next()
    player.become_ready(duration=3600)
    player.current_position = 700
    await session.close()

    assert client.progress == [(1, 500, False), (2, 700, False)]
    assert client.progress_policies == [NO_RETRY, NO_RETRY]


@pytest.mark.asyncio
async def test_watched_write_uses_quiet_policy(client, player, make_episode):
    session = make_session(client, player, [make_episode(1)])
    await session.start()
    player.become_ready(duration=3600)

    player.reach_end()
    await settle()

    assert client.progress == [(1, 3600, True)]
    assert client.progress_policies == [QUIET_POLICY]
    await session.close()


def test_for_episode_starts_at_selected(client, player, make_episode):
    episodes = [make_episode(1), make_episode(2), make_episode(3)]

    session = PlaybackSession.for_episode(client, player, make_episode(2), episodes)

    assert session.index == 1
    assert session.current_episode.id == 2


def test_for_episode_rejects_unknown_episode(client, player, make_episode):
    with pytest.raises(ValueError, match="episode 9"):
        PlaybackSession.for_episode(client, player, make_episode(9), [make_episode(1)])
