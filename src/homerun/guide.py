import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from platformdirs import user_cache_dir

from homerun.api.errors import DecodeError
from homerun.api.models import GuideResponse

_LOGGER = logging.getLogger(__name__)

_GUIDE_CACHE_SCHEMA_VERSION = 1


def guide_cache_path() -> Path:
    cache_dir = Path(user_cache_dir("homerun"))
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir / "guide.json"


class GuideCache:
    """Keeps the last program guide per server, in memory and optionally on disk.

    Entries older than ``max_age_hours`` or written by an older schema are
    ignored. Pass ``path=None`` for a memory-only cache.
    """

    def __init__(self, *, path: Optional[Path] = None, max_age_hours: float = 6) -> None:
        self.path = path
        self.max_age_hours = max_age_hours
        self._memory: Optional[Dict[str, Any]] = None

    @classmethod
    def on_disk(cls, *, max_age_hours: float = 6) -> "GuideCache":
        return cls(path=guide_cache_path(), max_age_hours=max_age_hours)

    def _fresh(self, entry: Optional[Dict[str, Any]], server_url: str) -> bool:
        if not entry:
            return False
        try:
            if int(entry.get("schema_version") or 0) < _GUIDE_CACHE_SCHEMA_VERSION:
                return False
            if entry.get("server_url") != server_url:
                return False
            fetched = datetime.fromtimestamp(float(entry["timestamp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError):
            return False
        return datetime.now(timezone.utc) - fetched <= timedelta(hours=self.max_age_hours)

    def _read_disk(self) -> Optional[Dict[str, Any]]:
        if self.path is None or not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            _LOGGER.debug("Ignoring unreadable guide cache at %s", self.path)
            return None
        return raw if isinstance(raw, dict) else None

    def load(self, server_url: str) -> Optional[GuideResponse]:
        entry = self._memory if self._fresh(self._memory, server_url) else self._read_disk()
        if not self._fresh(entry, server_url):
            return None
        try:
            guide = GuideResponse.from_wire(entry["guide"])
        except DecodeError as exc:
            _LOGGER.debug("Discarding cached guide: %s", exc)
            return None
        self._memory = entry
        return guide

    def save(self, server_url: str, guide: GuideResponse) -> None:
        entry: Dict[str, Any] = {
            "schema_version": _GUIDE_CACHE_SCHEMA_VERSION,
            "server_url": server_url,
            "timestamp": datetime.now(timezone.utc).timestamp(),
            "guide": guide.to_wire(),
        }
        self._memory = entry
        if self.path is None:
            return
        try:
            self.path.write_text(json.dumps(entry) + "\n", encoding="utf-8")
        except OSError as exc:
            _LOGGER.warning("Could not write guide cache %s: %s", self.path, exc)

    def clear(self) -> None:
        self._memory = None
        if self.path is None:
            return
        try:
            if self.path.exists():
                self.path.unlink()
        except OSError:
            pass


def clear_guide_cache() -> None:
    GuideCache.on_disk().clear()
