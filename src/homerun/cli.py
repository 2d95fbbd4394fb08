import argparse
import asyncio
import logging
from dataclasses import replace

from rich.console import Console
from rich.table import Table

import homerun
from homerun.api.client import HomeRunClient
from homerun.api.errors import HomeRunError
from homerun.api.models import group_guide_by_series, recorded_series_ids
from homerun.config import get_settings, normalize_server_url, set_settings, settings_from_env
from homerun.guide import GuideCache
from homerun.log import setup_logging
from homerun.player import player_for_preference
from homerun.usecases.live import LiveSession, LiveState
from homerun.usecases.playback import PlaybackSession, PlaybackState
from homerun.usecases.setup import connect_server

_LOGGER = logging.getLogger(__name__)

console = Console()


def _client() -> HomeRunClient:
    settings = get_settings()
    if not settings.has_server:
        raise HomeRunError("No server configured; pass --server or set HOMERUN_SERVER_URL")
    return HomeRunClient.for_server(
        settings.server_url,
        guide_cache=GuideCache.on_disk(max_age_hours=settings.guide_cache_hours),
    )


async def _health(args: argparse.Namespace) -> int:
    health = await connect_server(get_settings().server_url)
    console.print(f"[green]{health.status}[/green] {get_settings().server_url}")
    console.print(f"uptime: {health.uptime_seconds:.0f}s  discovering: {health.is_discovering}")
    if health.last_discovery:
        console.print(f"last discovery: {health.last_discovery}")
    return 0


async def _shows(args: argparse.Namespace) -> int:
    shows = await _client().fetch_shows()
    table = Table(title="Recorded shows")
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("Category")
    table.add_column("Episodes", justify="right")
    table.add_column("Hours", justify="right")
    for show in sorted(shows, key=lambda s: s.title.lower()):
        table.add_row(str(show.id), show.title, show.category, str(show.episode_count), str(show.duration_hours))
    console.print(table)
    return 0


async def _episodes(args: argparse.Namespace) -> int:
    response = await _client().fetch_episodes(args.show_id)
    table = Table(title=response.show.title)
    table.add_column("ID", justify="right")
    table.add_column("Episode")
    table.add_column("Title")
    table.add_column("Aired")
    table.add_column("Length", justify="right")
    table.add_column("Progress", justify="right")
    for ep in response.episodes:
        if ep.is_watched:
            progress = "watched"
        elif ep.resume_position:
            progress = f"{ep.progress_percentage:.0%}"
        else:
            progress = ""
        table.add_row(
            str(ep.id),
            ep.episode_number,
            ep.episode_title or ep.title,
            ep.formatted_air_date(),
            ep.formatted_duration,
            progress,
        )
    console.print(table)
    return 0


async def _channels(args: argparse.Namespace) -> int:
    client = _client()
    channels = await client.fetch_live_channels()
    now_playing = {}
    try:
        current = await client.fetch_current_programs()
        now_playing = {p.guide_number: p for p in current.programs}
    except HomeRunError as exc:
        _LOGGER.debug("No current programs: %s", exc)

    table = Table(title="Live channels")
    table.add_column("Ch", justify="right")
    table.add_column("Name")
    table.add_column("Now")
    table.add_column("Time")
    for ch in channels.channels:
        program = now_playing.get(ch.guide_number)
        table.add_row(
            ch.guide_number,
            ch.guide_name,
            program.title if program else "",
            program.formatted_time if program else "",
        )
    console.print(table)
    return 0


async def _guide(args: argparse.Namespace) -> int:
    client = _client()
    guide = await client.fetch_guide(force_refresh=args.refresh)
    recorded = set()
    try:
        rules = await client.fetch_recording_rules()
        recorded = recorded_series_ids(rules.rules)
    except HomeRunError as exc:
        _LOGGER.debug("No recording rules: %s", exc)

    table = Table(title="Upcoming")
    table.add_column("Series")
    table.add_column("Title")
    table.add_column("Next airing")
    table.add_column("Ch", justify="right")
    table.add_column("Upcoming", justify="right")
    table.add_column("Rec")
    for series in group_guide_by_series(guide):
        first = series.programs[0]
        table.add_row(
            series.id,
            series.title,
            first.formatted_start_time,
            first.channel_id or "",
            str(series.upcoming_count),
            "●" if series.id in recorded else "",
        )
    console.print(table)
    return 0


async def _rules(args: argparse.Namespace) -> int:
    response = await _client().fetch_recording_rules()
    table = Table(title="Recording rules")
    table.add_column("Rule")
    table.add_column("Series")
    table.add_column("Title")
    table.add_column("Channel")
    for rule in response.rules:
        table.add_row(rule.id, rule.series_id, rule.title or "", rule.channel_only or "any")
    console.print(table)
    return 0


async def _record(args: argparse.Namespace) -> int:
    response = await _client().create_recording_rule(
        args.series_id,
        channel_only=args.channel,
        recent_only=1 if args.recent_only else None,
        start_padding=args.start_padding,
        end_padding=args.end_padding,
    )
    if not response.success:
        console.print("[red]Server refused the recording rule[/red]")
        return 1
    rule = response.recording_rule
    console.print(f"Recording {args.series_id}" + (f" (rule {rule.id})" if rule else ""))
    return 0


async def _unrecord(args: argparse.Namespace) -> int:
    await _client().delete_recording_rule(args.rule_id)
    console.print(f"Deleted rule {args.rule_id}")
    return 0


async def _play(args: argparse.Namespace) -> int:
    client = _client()
    response = await client.fetch_episodes(args.show_id)
    episodes = response.episodes
    if not episodes:
        console.print("No episodes recorded for this show")
        return 1

    selected = episodes[0]
    if args.episode is not None:
        selected = next((ep for ep in episodes if ep.id == args.episode), None)
        if selected is None:
            console.print(f"[red]Episode {args.episode} not found[/red]")
            return 1

    done = asyncio.Event()
    last = {}

    def _on_change(snap) -> None:
        key = (snap.state, snap.index, snap.ended)
        if last.get("key") != key:
            last["key"] = key
            if snap.state is PlaybackState.LOADING:
                console.print(f"Loading {snap.episode.title}: {snap.episode.episode_title}")
            elif snap.state is PlaybackState.FAILED:
                console.print(f"[red]{snap.error_message}[/red]")
        if snap.state is PlaybackState.FAILED or (snap.ended and not snap.has_next):
            done.set()

    async with player_for_preference(get_settings().player_preference, debug=args.debug) as player:
        session = PlaybackSession.for_episode(client, player, selected, episodes)
        session.add_listener(_on_change)
        try:
            await session.start()
            await done.wait()
        finally:
            await session.close()
    return 0 if session.error_message is None else 1


async def _live(args: argparse.Namespace) -> int:
    client = _client()
    response = await client.fetch_live_channels()
    channel = next((ch for ch in response.channels if ch.guide_number == args.channel), None)
    if channel is None:
        console.print(f"[red]Channel {args.channel} not found[/red]")
        return 1

    done = asyncio.Event()

    def _on_change(snap) -> None:
        if snap.state is LiveState.STARTING:
            console.print(f"Tuning {channel.guide_number} {channel.guide_name}...")
        elif snap.state is LiveState.STREAMING:
            console.print("Streaming (close the player window to stop)")
        elif snap.state is LiveState.FAILED:
            console.print(f"[red]{snap.error_message}[/red]")
            done.set()

    async with player_for_preference(get_settings().player_preference, debug=args.debug) as player:
        session = LiveSession(client, player, channel)
        session.add_listener(_on_change)
        try:
            await session.start()
            await done.wait()
        finally:
            await session.close()
    return 0


_COMMANDS = {
    "health": _health,
    "shows": _shows,
    "episodes": _episodes,
    "channels": _channels,
    "guide": _guide,
    "rules": _rules,
    "record": _record,
    "unrecord": _unrecord,
    "play": _play,
    "live": _live,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="homerun")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--server", help="server URL, e.g. 192.168.1.20:3000")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("health", help="check the server and remember it")
    sub.add_parser("shows", help="list recorded shows")
    p = sub.add_parser("episodes", help="list a show's episodes")
    p.add_argument("show_id", type=int)
    sub.add_parser("channels", help="list live channels and what is on")
    p = sub.add_parser("guide", help="upcoming programs by series")
    p.add_argument("--refresh", action="store_true", help="ignore the cached guide")
    sub.add_parser("rules", help="list recording rules")
    p = sub.add_parser("record", help="add a recording rule for a series")
    p.add_argument("series_id")
    p.add_argument("--channel")
    p.add_argument("--recent-only", action="store_true")
    p.add_argument("--start-padding", type=int)
    p.add_argument("--end-padding", type=int)
    p = sub.add_parser("unrecord", help="delete a recording rule")
    p.add_argument("rule_id")
    p = sub.add_parser("play", help="play a show's episodes in order")
    p.add_argument("show_id", type=int)
    p.add_argument("--episode", type=int)
    p = sub.add_parser("live", help="watch a live channel")
    p.add_argument("channel")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"homerun {homerun.__version__} ({homerun.__file__})")
        return 0
    if not args.command:
        parser.print_help()
        return 2

    setup_logging("DEBUG" if args.debug else "INFO", console=args.debug)
    settings = settings_from_env()
    if args.server:
        settings = replace(settings, server_url=normalize_server_url(args.server))
    set_settings(settings)

    try:
        return asyncio.run(_COMMANDS[args.command](args))
    except HomeRunError as exc:
        message = getattr(exc, "user_message", str(exc))
        console.print(f"[red]{message}[/red]")
        _LOGGER.debug("Command %s failed", args.command, exc_info=True)
        return 1
    except KeyboardInterrupt:
        return 130
