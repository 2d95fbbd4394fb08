from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from homerun.api.errors import DecodeError


class WireModel(BaseModel):
    """Base for every JSON object exchanged with the server.

    Fields carry their on-the-wire name as an alias; Python code constructs
    models by field name. ``to_wire`` omits unset optional fields.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def from_wire(cls, raw: Any):
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise DecodeError(f"{cls.__name__}: {exc}", cause=exc) from exc

    @classmethod
    def from_json(cls, text: str):
        try:
            return cls.model_validate_json(text)
        except ValidationError as exc:
            raise DecodeError(f"{cls.__name__}: {exc}", cause=exc) from exc

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EmptyResponse(WireModel):
    pass


def _parse_iso(value: str) -> Optional[datetime]:
    s = (value or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def _medium_date(d: date) -> str:
    return f"{d:%b} {d.day}, {d.year}"


def _clock(dt: datetime) -> str:
    return f"{dt.hour % 12 or 12}:{dt.minute:02d}"


# Health


class HealthResponse(WireModel):
    status: str
    timestamp: str
    uptime_seconds: float = Field(alias="uptime")
    is_discovering: bool = Field(alias="isDiscovering")
    last_discovery: Optional[str] = Field(default=None, alias="lastDiscovery")

    @property
    def is_healthy(self) -> bool:
        return self.status.lower() == "ok"


# Shows and episodes


class Show(WireModel):
    id: int
    series_id: str
    title: str
    category: str
    episode_count: int
    total_duration: int
    created_at: str
    updated_at: str
    device_name: str
    device_ip: str
    duration_hours: int
    image_url: Optional[str] = None
    first_recorded: Optional[str] = None
    last_recorded: Optional[str] = None


class ShowsResponse(WireModel):
    shows: List[Show]
    count: int


class ShowInfo(WireModel):
    id: int
    series_id: str
    title: str


class Episode(WireModel):
    id: int
    program_id: str
    title: str
    episode_title: str
    episode_number: str
    season_number: int
    episode_num: int
    synopsis: str
    category: str
    channel_name: str
    channel_number: str
    start_time: str
    end_time: str
    duration_seconds: int = Field(alias="duration")
    original_airdate: str
    record_start_time: int
    record_end_time: int
    first_airing: int
    filename: str
    play_url: str
    cmd_url: str
    watched: int
    record_success: int
    created_at: str
    updated_at: str
    series_id: str
    series_title: str
    duration_minutes: int
    resume_minutes: int
    channel_image_url: Optional[str] = None
    file_size: Optional[int] = None
    resume_position: Optional[int] = None
    image_url: Optional[str] = None

    @property
    def is_watched(self) -> bool:
        return self.watched > 0

    @property
    def progress_percentage(self) -> float:
        if self.resume_position is None or self.duration_seconds <= 0:
            return 0.0
        return self.resume_position / self.duration_seconds

    @property
    def formatted_duration(self) -> str:
        minutes = self.duration_minutes
        if minutes >= 60:
            return f"{minutes // 60}h {minutes % 60}m"
        return f"{minutes}m"

    def formatted_air_date(self, *, now: Optional[datetime] = None) -> str:
        """Air date relative to today: Today, Yesterday, N days ago, else a medium date."""
        parsed = _parse_iso(self.original_airdate)
        if parsed is None:
            return self.original_airdate
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone()
        aired = parsed.date()
        today = (now or datetime.now()).date()
        days = (today - aired).days
        if days == 0:
            return "Today"
        if days == 1:
            return "Yesterday"
        if 1 < days < 7:
            return f"{days} days ago"
        return _medium_date(aired)


class EpisodesResponse(WireModel):
    episodes: List[Episode]
    count: int
    show: ShowInfo


class ProgressUpdate(WireModel):
    position: int
    watched: int


# Live TV


class Channel(WireModel):
    guide_number: str
    guide_name: str
    affiliate: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def id(self) -> str:
        return self.guide_number


class ChannelsResponse(WireModel):
    channels: List[Channel]
    count: int
    timestamp: str


class CurrentProgram(WireModel):
    guide_number: str
    guide_name: str
    series_id: str
    title: str
    start_time: int
    end_time: int
    affiliate: Optional[str] = None
    episode_number: Optional[str] = None
    episode_title: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def formatted_time(self) -> str:
        start = datetime.fromtimestamp(self.start_time)
        end = datetime.fromtimestamp(self.end_time)
        return f"{_clock(start)}-{_clock(end)} {end:%p}"


class CurrentProgramsResponse(WireModel):
    programs: List[CurrentProgram]
    count: int
    timestamp: str


class WatchRequest(WireModel):
    channel_number: str = Field(alias="channelNumber")
    client_id: str = Field(alias="clientId")


class ClientRequest(WireModel):
    client_id: str = Field(alias="clientId")


class WatchResponse(WireModel):
    # A refused watch may omit tuner and playlist fields.
    success: bool
    tuner_id: Optional[str] = Field(default=None, alias="tunerId")
    playlist_url: Optional[str] = Field(default=None, alias="playlistUrl")
    channel_number: Optional[str] = Field(default=None, alias="channelNumber")
    error: Optional[str] = None
    message: Optional[str] = None


class LiveTVResponse(WireModel):
    success: bool
    message: Optional[str] = None


# Guide


class GuideProgram(WireModel):
    series_id: str = Field(alias="SeriesID")
    title: str = Field(alias="Title")
    start_time: int = Field(alias="StartTime")
    end_time: int = Field(alias="EndTime")
    episode_number: Optional[str] = Field(default=None, alias="EpisodeNumber")
    episode_title: Optional[str] = Field(default=None, alias="EpisodeTitle")
    synopsis: Optional[str] = Field(default=None, alias="Synopsis")
    image_url: Optional[str] = Field(default=None, alias="ImageURL")
    filter: Optional[List[str]] = Field(default=None, alias="Filter")
    # Set by group_guide_by_series; never on the wire.
    channel_id: Optional[str] = Field(default=None, exclude=True)

    @property
    def program_id(self) -> str:
        return (
            f"{self.series_id}{self.start_time}{self.end_time}"
            f"{self.channel_id or ''}{self.episode_title or ''}{self.episode_number or ''}"
        )

    @property
    def duration_minutes(self) -> int:
        return (self.end_time - self.start_time) // 60

    @property
    def formatted_start_time(self) -> str:
        start = datetime.fromtimestamp(self.start_time)
        return f"{start:%b} {start.day}, {_clock(start)} {start:%p}"


class GuideChannel(WireModel):
    guide_number: str = Field(alias="GuideNumber")
    guide_name: str = Field(alias="GuideName")
    programs: List[GuideProgram] = Field(alias="Guide")


class GuideResponse(WireModel):
    channels: List[GuideChannel] = Field(alias="guide")


@dataclass(frozen=True)
class GuideSeries:
    id: str
    title: str
    image_url: Optional[str]
    programs: List[GuideProgram]

    @property
    def upcoming_count(self) -> int:
        return len(self.programs)


def group_guide_by_series(guide: GuideResponse) -> List[GuideSeries]:
    """Group every program in the guide by series, tagging each with its channel."""
    grouped: Dict[str, GuideSeries] = {}
    for channel in guide.channels:
        for program in channel.programs:
            tagged = program.model_copy(update={"channel_id": channel.guide_number})
            existing = grouped.get(program.series_id)
            if existing is None:
                grouped[program.series_id] = GuideSeries(
                    id=program.series_id,
                    title=program.title,
                    image_url=program.image_url,
                    programs=[tagged],
                )
            else:
                existing.programs.append(tagged)
    out = sorted(grouped.values(), key=lambda s: s.title)
    for series in out:
        series.programs.sort(key=lambda p: p.start_time)
    return out


# Recording rules


class RecordingRule(WireModel):
    id: str = Field(alias="RecordingRuleID")
    series_id: str = Field(alias="SeriesID")
    title: Optional[str] = Field(default=None, alias="Title")
    channel_only: Optional[str] = Field(default=None, alias="ChannelOnly")
    team_only: Optional[int] = Field(default=None, alias="TeamOnly")
    recent_only: Optional[int] = Field(default=None, alias="RecentOnly")
    start_padding: Optional[int] = Field(default=None, alias="StartPadding")
    end_padding: Optional[int] = Field(default=None, alias="EndPadding")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_rule_id(cls, value: Any) -> str:
        # The server sends either a number or a string here.
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise ValueError(f"expected string or integer id, got {type(value).__name__}")
        return str(value)


class RecordingRulesResponse(WireModel):
    rules: List[RecordingRule]


class CreateRecordingRuleRequest(WireModel):
    series_id: str = Field(alias="SeriesID")
    channel_only: Optional[str] = Field(default=None, alias="ChannelOnly")
    team_only: Optional[int] = Field(default=None, alias="TeamOnly")
    recent_only: Optional[int] = Field(default=None, alias="RecentOnly")
    start_padding: Optional[int] = Field(default=None, alias="StartPadding")
    end_padding: Optional[int] = Field(default=None, alias="EndPadding")


class RecordingRuleResponse(WireModel):
    success: bool
    recording_rule: Optional[RecordingRule] = Field(default=None, alias="recordingRule")


def recorded_series_ids(rules: Iterable[RecordingRule]) -> Set[str]:
    return {rule.series_id for rule in rules}
