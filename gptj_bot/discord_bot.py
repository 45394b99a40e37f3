"""Discord bot entry point for the GPT-J relay."""
from __future__ import annotations

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

import discord
from discord.ext import commands, tasks
from dotenv import load_dotenv

from .config import Settings, get_settings
from .inference_client import InferenceConfig, PipelineClient
from .job_queue import SequentialJobQueue
from .models import Job
from .telemetry import TelemetryCollector, get_telemetry
from .telemetry_decorator import track_event

logger = logging.getLogger(__name__)


class DiscordReplySink:
    """Replies to the message that triggered a job."""

    def __init__(self, message: discord.Message) -> None:
        self._message = message

    async def send(self, text: str) -> None:
        await self._message.reply(text)


def is_invocation(message: discord.Message, settings: Settings) -> bool:
    """True for messages from humans that start with the invocation marker."""

    if message.author.bot:
        return False
    return (message.content or "").startswith(settings.invoke_token)


def make_job(message: discord.Message, *, is_elaboration: bool) -> Job:
    return Job(
        source_id=str(message.id),
        payload=message.content or "",
        is_elaboration=is_elaboration,
        reply_sink=DiscordReplySink(message),
    )


async def _fetch_message(
    bot: commands.Bot, channel_id: int, message_id: int
) -> Optional[discord.Message]:
    """Resolve a reacted message, which may not be in the client cache."""

    channel = bot.get_channel(channel_id)
    try:
        if channel is None:
            channel = await bot.fetch_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            logger.warning("Channel %s cannot hold messages; ignoring reaction", channel_id)
            return None
        return await channel.fetch_message(message_id)
    except discord.HTTPException:
        logger.exception("Error fetching message %s in channel %s", message_id, channel_id)
        return None


def report_telemetry(
    telemetry: TelemetryCollector, hours: int = 24, keep_days: int = 30
) -> dict:
    """Log a summary of recent activity and prune metrics older than ``keep_days``."""

    report = telemetry.generate_report(hours)
    inference = report["inference"]
    queue_depth = report["queue_depth"]
    jobs = {outcome: int(stats["jobs"]) for outcome, stats in report["jobs"].items()}
    logger.info(
        "Telemetry (%dh): jobs %s, inference calls %d (%.0f%% failed, avg %.0fms), "
        "max backlog %d, errors %s",
        hours,
        jobs,
        inference["calls"],
        inference["failure_rate"] * 100,
        inference["avg_latency_ms"],
        queue_depth["max_backlog"],
        report["errors"],
    )
    telemetry.cleanup_old_data(keep_days)
    return report


def build_bot(
    settings: Optional[Settings] = None,
    queue: Optional[SequentialJobQueue] = None,
    intents: Optional[discord.Intents] = None,
) -> commands.Bot:
    settings = settings or get_settings()
    telemetry = get_telemetry()
    if intents is None:
        intents = discord.Intents.default()
        intents.message_content = True
    bot = commands.Bot(command_prefix=commands.when_mentioned, intents=intents)

    if queue is None:
        client = PipelineClient(
            InferenceConfig.from_env(settings.inference_parameters),
            telemetry=telemetry,
        )
        atexit.register(client.close)
        queue = SequentialJobQueue(client, settings, telemetry=telemetry)
    setattr(bot, "job_queue", queue)

    async def _submit(message: discord.Message, *, is_elaboration: bool) -> None:
        try:
            queue.enqueue(make_job(message, is_elaboration=is_elaboration))
        except Exception as exc:
            logger.exception("Failed to enqueue message %s", message.id)
            try:
                await message.reply(f"[ERROR] {exc}")
            except discord.HTTPException:
                logger.exception("Failed to report enqueue error for message %s", message.id)

    @tasks.loop(hours=1)
    async def telemetry_report_loop() -> None:
        try:
            report_telemetry(telemetry)
        except Exception:
            logger.exception("Failed to generate telemetry report")

    setattr(bot, "telemetry_report_loop", telemetry_report_loop)

    @bot.event
    async def on_ready() -> None:
        logger.info("Logged in as %s", bot.user)
        if not telemetry_report_loop.is_running():
            telemetry_report_loop.start()

    @bot.event
    @track_event
    async def on_message(message: discord.Message) -> None:
        if not is_invocation(message, settings):
            return
        await _submit(message, is_elaboration=False)

    @bot.event
    @track_event
    async def on_raw_reaction_add(payload: discord.RawReactionActionEvent) -> None:
        if payload.emoji.name != settings.reaction_emoji:
            return
        if bot.user is not None and payload.user_id == bot.user.id:
            return
        message = await _fetch_message(bot, payload.channel_id, payload.message_id)
        if message is None:
            return
        await _submit(message, is_elaboration=True)

    return bot


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    token = os.environ.get("DISCORD_TOKEN") or os.environ.get("BOT_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN environment variable must be set")
    settings_path = os.environ.get("GPTJ_BOT_SETTINGS")
    settings = get_settings(Path(settings_path) if settings_path else None)
    atexit.register(get_telemetry().flush)
    bot = build_bot(settings)
    bot.run(token)


__all__ = [
    "DiscordReplySink",
    "build_bot",
    "is_invocation",
    "main",
    "make_job",
    "report_telemetry",
]
