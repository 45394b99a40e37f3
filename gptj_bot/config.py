"""Configuration loading utilities for the GPT-J relay bot."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"

DEFAULT_INFERENCE_PARAMETERS: Dict[str, Any] = {
    "response_length": 200,
    "include_input": True,
    "temperature": 0.85,
    "top_k": 50,
    "top_p": 0.85,
}


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    invoke_token: str
    reaction_emoji: str
    invoke_reply: str
    elaborate_reply: str
    already_used_reply: str
    busy_reply: str
    error_reply: str
    max_chunk_length: int
    inference_parameters: Dict[str, Any]
    job_timeout_seconds: Optional[float]
    tracker_capacity: int
    tracker_max_age_seconds: Optional[float]

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        markers = data.get("markers") or {}
        replies = data.get("replies") or {}
        delivery = data.get("delivery") or {}
        queue_cfg = data.get("queue") or {}
        tracker_cfg = data.get("tracker") or {}
        inference = dict(DEFAULT_INFERENCE_PARAMETERS)
        inference.update(data.get("inference") or {})
        max_age_hours = _optional_float(tracker_cfg.get("max_age_hours"))
        max_chunk_length = int(delivery.get("max_chunk_length", 2000))
        if max_chunk_length <= 0:
            raise ValueError("delivery.max_chunk_length must be positive")
        return Settings(
            invoke_token=str(markers.get("invoke_token", "[gptj]")),
            reaction_emoji=str(markers.get("reaction_emoji", "🤖")),
            invoke_reply=replies.get("invoke", "*closes robot-eyes to enter a deep think...*"),
            elaborate_reply=replies.get("elaborate", "*let me elaborate...*"),
            already_used_reply=replies.get("already_used", "*I've already responded to this!*"),
            busy_reply=replies.get("busy", "*I'm a little busy, I'll consider this soon!*"),
            error_reply=replies.get("error", "*my robot-brain short-circuited, please try again later*"),
            max_chunk_length=max_chunk_length,
            inference_parameters=inference,
            job_timeout_seconds=_optional_float(queue_cfg.get("job_timeout_seconds")),
            tracker_capacity=int(tracker_cfg.get("capacity", 10000)),
            tracker_max_age_seconds=max_age_hours * 3600 if max_age_hours is not None else None,
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings(path: Path | None = None) -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader(path).load()


__all__ = ["DEFAULT_INFERENCE_PARAMETERS", "Settings", "SettingsLoader", "get_settings"]
