"""GPT-J inference over the pipeline.ai runs API."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config import DEFAULT_INFERENCE_PARAMETERS
from .models import NO_RESULT
from .telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.pipeline.ai/v2/runs"


class InferenceError(RuntimeError):
    """Raised when the pipeline cannot be reached or rejects the request."""


@dataclass
class InferenceConfig:
    """Configuration for the pipeline client."""
    api_url: str = DEFAULT_API_URL
    pipeline_id: Optional[str] = None
    api_token: Optional[str] = None
    timeout: float = 60.0
    mock_mode: bool = False
    parameters: Dict[str, Any] = field(
        default_factory=lambda: dict(DEFAULT_INFERENCE_PARAMETERS)
    )

    @classmethod
    def from_env(cls, parameters: Optional[Dict[str, Any]] = None) -> "InferenceConfig":
        """Load configuration from environment variables."""
        timeout_env = os.getenv("PIPELINE_TIMEOUT", "60")
        try:
            timeout = float(timeout_env)
        except ValueError:
            logger.warning("Invalid PIPELINE_TIMEOUT value: %s", timeout_env)
            timeout = 60.0

        return cls(
            api_url=os.getenv("PIPELINE_API_URL", DEFAULT_API_URL),
            pipeline_id=os.getenv("PIPELINE_ID"),
            api_token=os.getenv("API_TOKEN"),
            timeout=timeout,
            mock_mode=os.getenv("INFERENCE_MODE", "").lower() == "mock",
            parameters=dict(parameters or DEFAULT_INFERENCE_PARAMETERS),
        )


def extract_result(document: Any) -> str:
    """Pull the generated text out of a runs API response document."""

    if not isinstance(document, dict):
        return NO_RESULT
    preview = document.get("result_preview")
    if not isinstance(preview, list) or not preview:
        return NO_RESULT
    first = preview[0]
    if not isinstance(first, list) or not first:
        return NO_RESULT
    text = first[0]
    if not isinstance(text, str) or not text:
        return NO_RESULT
    return text


class PipelineClient:
    """Runs GPT-J completions on a hosted pipeline."""

    def __init__(
        self,
        config: Optional[InferenceConfig] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ):
        self.config = config or InferenceConfig.from_env()
        self.telemetry = telemetry
        # A timed-out call keeps its worker until the HTTP timeout expires.
        self._executor = ThreadPoolExecutor(max_workers=4)

        if self.config.mock_mode:
            logger.info("Inference client initialised in mock mode")
        elif not self.config.pipeline_id or not self.config.api_token:
            logger.warning("PIPELINE_ID or API_TOKEN not set; inference calls will be rejected upstream")
        else:
            logger.info("Inference client initialised for %s", self.config.api_url)

    def build_payload(self, text: str) -> Dict[str, Any]:
        return {
            "pipeline_id": self.config.pipeline_id,
            "data": [text, dict(self.config.parameters)],
        }

    async def invoke(self, text: str) -> str:
        """Return generated text for ``text``.

        Empty or unrecognised responses come back as ``NO_RESULT``; transport
        failures raise ``InferenceError``.
        """

        if self.config.mock_mode:
            return self._mock_generation(text)

        payload = self.build_payload(text)
        start = time.time()
        try:
            document = await asyncio.get_running_loop().run_in_executor(
                self._executor, self._post, payload
            )
        except InferenceError as exc:
            self._track((time.time() - start) * 1000, success=False, error=str(exc))
            raise
        self._track((time.time() - start) * 1000, success=True)
        return extract_result(document)

    def _post(self, payload: Dict[str, Any]) -> Any:
        data = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        request = urllib.request.Request(
            self.config.api_url, data=data, headers=headers, method="POST"
        )
        try:
            with urllib.request.urlopen(request, timeout=self.config.timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise InferenceError(f"Pipeline returned HTTP {exc.code}") from exc
        except OSError as exc:
            raise InferenceError(f"Pipeline request failed: {exc}") from exc

        try:
            return json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Pipeline returned invalid JSON: %s", body[:200])
            return None

    def _track(self, duration_ms: float, *, success: bool, error: Optional[str] = None) -> None:
        if self.telemetry is None:
            return
        self.telemetry.track_inference(success, duration_ms, error=error)

    def _mock_generation(self, text: str) -> str:
        """Return deterministic text in mock mode."""
        return f"[MOCK] {text}" if text else NO_RESULT

    def close(self):
        """Clean up resources."""
        self._executor.shutdown(wait=True)


__all__ = [
    "DEFAULT_API_URL",
    "InferenceConfig",
    "InferenceError",
    "PipelineClient",
    "extract_result",
]
