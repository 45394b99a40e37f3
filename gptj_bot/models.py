"""Core data models for the GPT-J relay bot."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol


NO_RESULT = "[no result]"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class ReplySink(Protocol):
    """Capability to send text back to the origin of a job."""

    async def send(self, text: str) -> None:
        ...


@dataclass(frozen=True)
class Job:
    """One request for an inference result, tied to its originating message."""

    source_id: str
    payload: str
    is_elaboration: bool
    reply_sink: ReplySink

    def inference_input(self, invoke_token: str) -> str:
        """Text handed to the invoker.

        Elaborations use the message as-is; direct invocations drop the
        leading marker.
        """

        text = self.payload.strip()
        if not self.is_elaboration and text.startswith(invoke_token):
            text = text[len(invoke_token):].strip()
        return text


__all__ = ["Job", "NO_RESULT", "ReplySink", "RunStatus"]
