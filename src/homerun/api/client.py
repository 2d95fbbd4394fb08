from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import quote

from homerun.api.engine import NO_RETRY, EndpointCall, RequestEngine, RetryPolicy
from homerun.api.models import (
    ChannelsResponse,
    ClientRequest,
    CreateRecordingRuleRequest,
    CurrentProgramsResponse,
    EpisodesResponse,
    GuideResponse,
    HealthResponse,
    LiveTVResponse,
    ProgressUpdate,
    RecordingRuleResponse,
    RecordingRulesResponse,
    Show,
    ShowsResponse,
    WatchRequest,
    WatchResponse,
)
from homerun.guide import GuideCache

_LOGGER = logging.getLogger(__name__)


class HomeRunClient:
    """Typed endpoints of the recorder server.

    Every method either returns the decoded response or raises the engine's
    :class:`~homerun.api.errors.RequestError`.
    """

    def __init__(self, engine: RequestEngine, *, guide_cache: Optional[GuideCache] = None) -> None:
        self.engine = engine
        self.guide_cache = guide_cache

    @classmethod
    def for_server(cls, base_url: str, *, guide_cache: Optional[GuideCache] = None) -> "HomeRunClient":
        return cls(RequestEngine(base_url), guide_cache=guide_cache)

    @property
    def base_url(self) -> str:
        return self.engine.base_url

    def update_base_url(self, url: str) -> None:
        self.engine.update_base_url(url)

    # Health

    async def check_health(self) -> HealthResponse:
        return await self.engine.execute(EndpointCall("/health", response_type=HealthResponse))

    # Shows

    async def fetch_shows(self) -> List[Show]:
        response: ShowsResponse = await self.engine.execute(
            EndpointCall("/api/shows", response_type=ShowsResponse)
        )
        return response.shows

    async def fetch_episodes(self, show_id: int) -> EpisodesResponse:
        return await self.engine.execute(
            EndpointCall(f"/api/shows/{show_id}/episodes", response_type=EpisodesResponse)
        )

    async def update_episode_progress(
        self,
        episode_id: int,
        position: int,
        watched: bool,
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        body = ProgressUpdate(position=int(position), watched=1 if watched else 0)
        await self.engine.execute(
            EndpointCall(f"/api/episodes/{episode_id}/progress", method="PUT", body=body),
            policy,
        )

    # Live TV

    async def fetch_live_channels(self) -> ChannelsResponse:
        return await self.engine.execute(EndpointCall("/api/live/channels", response_type=ChannelsResponse))

    async def fetch_current_programs(self) -> CurrentProgramsResponse:
        return await self.engine.execute(
            EndpointCall("/api/guide/now", response_type=CurrentProgramsResponse)
        )

    async def start_watching(self, channel_number: str, client_id: str) -> WatchResponse:
        # The server answers once the tuner stream is up, which can be slow.
        return await self.engine.execute(
            EndpointCall(
                "/api/live/watch",
                method="POST",
                body=WatchRequest(channel_number=channel_number, client_id=client_id),
                response_type=WatchResponse,
                streaming=True,
            )
        )

    async def send_heartbeat(self, client_id: str) -> LiveTVResponse:
        # A missed heartbeat waits for the next tick instead of retrying.
        return await self.engine.execute(
            EndpointCall(
                "/api/live/heartbeat",
                method="POST",
                body=ClientRequest(client_id=client_id),
                response_type=LiveTVResponse,
            ),
            NO_RETRY,
        )

    async def stop_watching(self, client_id: str) -> LiveTVResponse:
        return await self.engine.execute(
            EndpointCall(
                "/api/live/stop",
                method="POST",
                body=ClientRequest(client_id=client_id),
                response_type=LiveTVResponse,
            ),
            NO_RETRY,
        )

    # Guide

    async def fetch_guide(self, *, force_refresh: bool = False) -> GuideResponse:
        cache = self.guide_cache
        if cache is not None and not force_refresh:
            cached = cache.load(self.base_url)
            if cached is not None:
                _LOGGER.debug("Using cached guide for %s", self.base_url)
                return cached
        guide: GuideResponse = await self.engine.execute(
            EndpointCall(
                "/api/guide",
                response_type=GuideResponse,
                params={"refresh": "true"} if force_refresh else None,
            )
        )
        if cache is not None:
            cache.save(self.base_url, guide)
        return guide

    # Recording rules

    async def fetch_recording_rules(self) -> RecordingRulesResponse:
        return await self.engine.execute(
            EndpointCall("/api/recording-rules", response_type=RecordingRulesResponse)
        )

    async def create_recording_rule(
        self,
        series_id: str,
        *,
        channel_only: Optional[str] = None,
        team_only: Optional[int] = None,
        recent_only: Optional[int] = None,
        start_padding: Optional[int] = None,
        end_padding: Optional[int] = None,
    ) -> RecordingRuleResponse:
        body = CreateRecordingRuleRequest(
            series_id=series_id,
            channel_only=channel_only,
            team_only=team_only,
            recent_only=recent_only,
            start_padding=start_padding,
            end_padding=end_padding,
        )
        return await self.engine.execute(
            EndpointCall("/api/recording-rules", method="POST", body=body, response_type=RecordingRuleResponse)
        )

    async def delete_recording_rule(self, rule_id: str) -> None:
        await self.engine.execute(EndpointCall(f"/api/recording-rules/{quote(str(rule_id), safe='')}", method="DELETE"))
