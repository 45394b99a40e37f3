"""Discord event telemetry decorator."""
from __future__ import annotations

import functools
import time
from typing import Any, Callable

from .telemetry import get_telemetry


def _locate(event: Any) -> tuple[str, str]:
    guild_id = getattr(event, "guild_id", None)
    if guild_id is None:
        guild = getattr(event, "guild", None)
        guild_id = getattr(guild, "id", None)
    channel_id = getattr(event, "channel_id", None)
    if channel_id is None:
        channel = getattr(event, "channel", None)
        channel_id = getattr(channel, "id", None)
    return (
        str(guild_id) if guild_id is not None else "dm",
        str(channel_id) if channel_id is not None else "dm",
    )


def track_event(func: Callable) -> Callable:
    """Decorator to track Discord event handling and failures."""

    @functools.wraps(func)
    async def wrapper(event: Any, *args, **kwargs) -> Any:
        telemetry = get_telemetry()
        event_name = func.__name__
        guild_id, channel_id = _locate(event)
        start_time = time.time()
        success = False

        try:
            result = await func(event, *args, **kwargs)
            success = True
            return result

        except Exception as e:
            telemetry.track_error(
                type(e).__name__,
                event=event_name,
                error_details=str(e)
            )
            raise

        finally:
            duration_ms = (time.time() - start_time) * 1000
            telemetry.track_event(
                event_name,
                guild_id,
                success=success,
                duration_ms=duration_ms,
                channel_id=channel_id
            )

    return wrapper


__all__ = ["track_event"]
