import os
from dataclasses import dataclass, replace


@dataclass(frozen=True)
class Settings:
    server_url: str = ""
    player_preference: str = "mpv"

    # How long a fetched program guide is reused before the server is asked again.
    guide_cache_hours: int = 6

    @property
    def has_server(self) -> bool:
        return bool(self.server_url)


_settings = Settings()


def get_settings() -> Settings:
    return _settings


def set_settings(settings: Settings) -> Settings:
    global _settings
    _settings = settings
    return _settings


def set_server_url(url: str) -> Settings:
    return set_settings(replace(_settings, server_url=normalize_server_url(url)))


def reset_settings() -> None:
    set_settings(Settings())


def normalize_server_url(url: str) -> str:
    """Clean up a user-typed server address: default to http:// and drop a trailing slash."""
    clean = (url or "").strip()
    if not clean:
        return ""
    if not clean.startswith("http://") and not clean.startswith("https://"):
        clean = "http://" + clean
    if clean.endswith("/"):
        clean = clean[:-1]
    return clean


def settings_from_env(base: Settings | None = None) -> Settings:
    settings = base or Settings()
    server = os.environ.get("HOMERUN_SERVER_URL")
    if server:
        settings = replace(settings, server_url=normalize_server_url(server))
    player = os.environ.get("HOMERUN_PLAYER")
    if player:
        settings = replace(settings, player_preference=player.strip().lower())
    return settings
