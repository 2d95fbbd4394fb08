from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from platformdirs import user_cache_dir

from homerun.api.errors import HomeRunError

_LOGGER = logging.getLogger(__name__)

StatusListener = Callable[["PlayerStatus", Optional[str]], None]
EndListener = Callable[[], None]
PositionObserver = Callable[[float, float], None]


class PlayerUnavailableError(HomeRunError):
    pass


class PlayerStatus(Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class MediaPlayer:
    """The playback primitive a session controller drives.

    Subclasses implement :meth:`load`, :meth:`seek`, :meth:`play`,
    :meth:`pause` and report through :meth:`_set_status` and
    :meth:`_notify_ended`. Listener bookkeeping and the periodic position
    observers live here. All callbacks are delivered on the event loop.
    """

    def __init__(self) -> None:
        self._status = PlayerStatus.IDLE
        self._error: Optional[str] = None
        self._status_listeners: List[StatusListener] = []
        self._end_listeners: List[EndListener] = []
        self._observers: Dict[int, asyncio.Task] = {}
        self._next_observer = 0

    @property
    def status(self) -> PlayerStatus:
        return self._status

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def position(self) -> float:
        return 0.0

    @property
    def duration(self) -> float:
        return math.nan

    def load(self, url: str) -> None:
        raise NotImplementedError

    def seek(self, seconds: float) -> None:
        raise NotImplementedError

    def play(self) -> None:
        raise NotImplementedError

    def pause(self) -> None:
        raise NotImplementedError

    def add_status_listener(self, callback: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(callback)

        def _unsub() -> None:
            if callback in self._status_listeners:
                self._status_listeners.remove(callback)

        return _unsub

    def add_end_listener(self, callback: EndListener) -> Callable[[], None]:
        self._end_listeners.append(callback)

        def _unsub() -> None:
            if callback in self._end_listeners:
                self._end_listeners.remove(callback)

        return _unsub

    def add_position_observer(self, interval: float, callback: PositionObserver) -> Callable[[], None]:
        """Call ``callback(position, duration)`` every ``interval`` seconds while ready."""
        key = self._next_observer
        self._next_observer += 1
        self._observers[key] = asyncio.get_running_loop().create_task(self._observe(interval, callback))

        def _unsub() -> None:
            task = self._observers.pop(key, None)
            if task is not None:
                task.cancel()

        return _unsub

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def _observe(self, interval: float, callback: PositionObserver) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._status is not PlayerStatus.READY:
                continue
            try:
                callback(self.position, self.duration)
            except Exception:
                _LOGGER.exception("Position observer failed")

    def _set_status(self, status: PlayerStatus, error: Optional[str] = None) -> None:
        if status is self._status and error == self._error:
            return
        self._status = status
        self._error = error
        for listener in list(self._status_listeners):
            try:
                listener(status, error)
            except Exception:
                _LOGGER.exception("Status listener failed")

    def _notify_ended(self) -> None:
        for listener in list(self._end_listeners):
            try:
                listener()
            except Exception:
                _LOGGER.exception("End-of-media listener failed")


@dataclass
class PlayerCommand:
    argv: List[str]
    socket_path: str


def find_mpv() -> Optional[str]:
    return shutil.which("mpv")


def build_player_command(
    socket_path: str,
    *,
    mpv_path: str = "mpv",
    video: bool = True,
    debug: bool = False,
) -> PlayerCommand:
    """Return an mpv invocation that idles, paused, until told what to load."""
    argv = [
        mpv_path,
        "--idle=yes",
        "--pause=yes",
        "--keep-open=no",
        "--no-terminal",
        f"--input-ipc-server={socket_path}",
    ]
    if video:
        argv.append("--force-window=yes")
    else:
        argv.append("--no-video")

    if debug:
        # Per-launch log file for troubleshooting.
        try:
            log_dir = user_cache_dir("homerun")
            os.makedirs(log_dir, exist_ok=True)
            ts = time.strftime("%Y%m%d-%H%M%S", time.localtime())
            log_path = os.path.join(log_dir, f"player-{ts}.log")
        except OSError:
            log_path = f"player-{int(time.time())}.log"
        argv += ["--msg-level=all=info", f"--log-file={log_path}"]
    else:
        argv.append("--msg-level=all=fatal")
    return PlayerCommand(argv=argv, socket_path=socket_path)


class MpvPlayer(MediaPlayer):
    """:class:`MediaPlayer` backed by an mpv process driven over JSON IPC."""

    SOCKET_TIMEOUT = 5.0

    def __init__(
        self,
        *,
        mpv_path: Optional[str] = None,
        socket_path: Optional[str] = None,
        video: bool = True,
        debug: bool = False,
    ) -> None:
        super().__init__()
        self._mpv_path = mpv_path
        self._socket_path = socket_path or os.path.join(
            tempfile.gettempdir(), f"homerun-mpv-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        )
        self._video = video
        self._debug = debug
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._position = 0.0
        self._duration = math.nan

    @property
    def position(self) -> float:
        return self._position

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def __aenter__(self) -> "MpvPlayer":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def open(self) -> None:
        mpv = self._mpv_path or find_mpv()
        if not mpv:
            raise PlayerUnavailableError("No supported player found (install mpv)")
        if os.path.exists(self._socket_path):
            os.unlink(self._socket_path)

        cmd = build_player_command(self._socket_path, mpv_path=mpv, video=self._video, debug=self._debug)
        _LOGGER.info("Starting player: %s", " ".join(cmd.argv))
        self._process = await asyncio.create_subprocess_exec(
            *cmd.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

        deadline = time.monotonic() + self.SOCKET_TIMEOUT
        while not os.path.exists(self._socket_path):
            if self._process.returncode is not None:
                raise PlayerUnavailableError(f"Player exited immediately (code {self._process.returncode})")
            if time.monotonic() > deadline:
                await self.aclose()
                raise PlayerUnavailableError(f"Player socket not created after {self.SOCKET_TIMEOUT}s")
            await asyncio.sleep(0.1)

        self._reader, self._writer = await asyncio.open_unix_connection(self._socket_path)
        self._read_task = asyncio.get_running_loop().create_task(self._read_loop())
        self._command("observe_property", 1, "time-pos")
        self._command("observe_property", 2, "duration")

    async def aclose(self) -> None:
        if self._read_task is not None:
            self._read_task.cancel()
            self._read_task = None
        if self._writer is not None:
            self._writer.close()
            self._writer = None
            self._reader = None
        if self._process is not None and self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                self._process.kill()
        self._process = None
        try:
            if os.path.exists(self._socket_path):
                os.unlink(self._socket_path)
        except OSError:
            pass

    def load(self, url: str) -> None:
        self._position = 0.0
        self._duration = math.nan
        self._set_status(PlayerStatus.LOADING)
        self._command("set_property", "pause", True)
        self._command("loadfile", url, "replace")

    def seek(self, seconds: float) -> None:
        self._command("seek", float(seconds), "absolute")

    def play(self) -> None:
        self._command("set_property", "pause", False)

    def pause(self) -> None:
        self._command("set_property", "pause", True)

    def _command(self, *args: Any) -> None:
        if self._writer is None:
            _LOGGER.debug("Player not connected; dropping %s", args[0] if args else "command")
            return
        self._writer.write((json.dumps({"command": list(args)}) + "\n").encode("utf-8"))

    async def _read_loop(self) -> None:
        assert self._reader is not None
        while True:
            line = await self._reader.readline()
            if not line:
                break
            try:
                message = json.loads(line.decode("utf-8"))
            except ValueError:
                continue
            self.handle_message(message)
        if self._status in (PlayerStatus.LOADING, PlayerStatus.READY):
            self._set_status(PlayerStatus.FAILED, "Player exited")

    def handle_message(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        if event == "property-change":
            name = message.get("name")
            data = message.get("data")
            if not isinstance(data, (int, float)):
                return
            if name == "time-pos":
                self._position = float(data)
            elif name == "duration":
                self._duration = float(data)
        elif event == "file-loaded":
            self._set_status(PlayerStatus.READY)
        elif event == "end-file":
            reason = message.get("reason")
            if reason == "eof":
                self._notify_ended()
            elif reason == "error":
                self._set_status(PlayerStatus.FAILED, str(message.get("file_error") or "playback error"))


def player_for_preference(preference: str = "auto", *, debug: bool = False) -> MpvPlayer:
    """Build the player named by the ``player_preference`` setting."""
    choice = (preference or "auto").strip().lower()
    if choice not in ("auto", "mpv"):
        raise PlayerUnavailableError(f"Unsupported player '{preference}' (supported: auto, mpv)")
    return MpvPlayer(debug=debug)
