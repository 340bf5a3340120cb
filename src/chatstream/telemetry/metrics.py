"""Per-stream telemetry: chunk counts, token usage, cost and latency."""

import time
from typing import Any, Dict, Optional

from chatstream.chat.models import TokenUsage
from chatstream.config.settings import settings
from chatstream.utils.logger import logger


class TelemetryMetrics:
    """
    Telemetry for one streamed response.

    Latencies use a monotonic clock and are reported in whole milliseconds;
    an unfinished measurement reports 0.
    """

    def __init__(self, model_name: Optional[str] = None):
        """
        Args:
            model_name: Model used for the response, for cost estimation
        """
        self.model_name = model_name
        self.start_time: Optional[float] = None
        self.first_chunk_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.chunk_count = 0
        self.usage = TokenUsage()

    @property
    def prompt_tokens(self) -> int:
        return self.usage.prompt

    @property
    def completion_tokens(self) -> int:
        return self.usage.completion

    @property
    def total_tokens(self) -> int:
        return self.usage.total

    def start_timer(self) -> None:
        self.start_time = time.perf_counter()

    def stop_timer(self) -> None:
        """Stop the latency timer. Later calls keep the first reading."""
        if self.end_time is None:
            self.end_time = time.perf_counter()

    @staticmethod
    def _elapsed_ms(start: Optional[float], end: Optional[float]) -> int:
        if start is None or end is None:
            return 0
        return int((end - start) * 1000)

    def get_latency_ms(self) -> int:
        return self._elapsed_ms(self.start_time, self.end_time)

    def get_first_chunk_latency_ms(self) -> int:
        """Time from the first read to the first applied chunk."""
        return self._elapsed_ms(self.start_time, self.first_chunk_time)

    def record_chunk(self) -> None:
        if self.first_chunk_time is None:
            self.first_chunk_time = time.perf_counter()
        self.chunk_count += 1

    def set_token_usage(self, prompt_tokens: int, completion_tokens: int, total_tokens: int) -> None:
        """
        Record the token usage reported by the stream.

        Args:
            prompt_tokens: Prompt/input tokens
            completion_tokens: Completion/output tokens
            total_tokens: Total tokens
        """
        self.usage = TokenUsage(prompt=prompt_tokens, completion=completion_tokens, total=total_tokens)
        logger.debug(f"Token usage: {self.usage}")

    def get_cost(self) -> float:
        return settings.calculate_cost(self.prompt_tokens, self.completion_tokens, self.model_name)

    def format_stats(self) -> str:
        """
        One-line summary for console output.

        Returns:
            "[stats] chunks=N prompt=X completion=Y cost=$Z.ZZZZZZ latency=W ms"
        """
        return (
            f"[stats] chunks={self.chunk_count} prompt={self.prompt_tokens} "
            f"completion={self.completion_tokens} cost=${self.get_cost():.6f} "
            f"latency={self.get_latency_ms()} ms"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_count": self.chunk_count,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": self.get_cost(),
            "latency_ms": self.get_latency_ms(),
            "first_chunk_ms": self.get_first_chunk_latency_ms(),
        }
