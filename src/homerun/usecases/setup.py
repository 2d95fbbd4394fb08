from __future__ import annotations

import logging
from typing import Optional

from homerun.api.client import HomeRunClient
from homerun.api.errors import RequestError, ServerSetupError
from homerun.api.models import HealthResponse
from homerun.config import normalize_server_url, set_server_url

_LOGGER = logging.getLogger(__name__)


async def connect_server(url: str, *, client: Optional[HomeRunClient] = None) -> HealthResponse:
    """Check that ``url`` points at a healthy server and make it the configured one."""
    clean = normalize_server_url(url)
    if not clean:
        raise ServerSetupError("Enter a server URL")

    if client is None:
        client = HomeRunClient.for_server(clean)
    else:
        client.update_base_url(clean)

    try:
        health = await client.check_health()
    except RequestError as exc:
        raise ServerSetupError(f"Unable to connect: {exc.user_message}") from exc

    if not health.is_healthy:
        raise ServerSetupError(f"Server is not healthy: {health.status}")

    set_server_url(clean)
    _LOGGER.info("Connected to %s (uptime %ss)", clean, health.uptime_seconds)
    return health
