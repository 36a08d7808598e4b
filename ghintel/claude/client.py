"""Claude (Anthropic Messages API) client implementation."""
import os
from dataclasses import dataclass
from typing import Optional

import anthropic
from dotenv import load_dotenv

from common.logging import LoggingManager
from ghintel.errors import UpstreamError, UpstreamRateLimited, retry_on_failure

logger = LoggingManager.get_logger('ghintel.claude_client')


@dataclass(frozen=True)
class Completion:
    text: str
    input_tokens: int
    output_tokens: int
    model: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def _retry_after_ms(response) -> Optional[int]:
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return int(float(value) * 1000)
    except ValueError:
        return None


class ClaudeClient:
    """Thin wrapper around `anthropic.Anthropic` returning text and token usage."""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 60.0, load_env: bool = True):
        """Initialize the Claude client.

        Args:
            api_key: Anthropic API key. If not provided, will try to load from ANTHROPIC_API_KEY env var.
            timeout: Request timeout in seconds.
            load_env: Whether to load environment variables from .env file (default: True).
        """
        if load_env:
            load_dotenv()
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            logger.error("Anthropic API key not found in environment variables")
            raise ValueError("Anthropic API key is required. Set ANTHROPIC_API_KEY environment variable or pass api_key directly.")
        self.timeout = timeout
        # SDK retries are disabled; retry_on_failure owns the retry policy.
        self.client = anthropic.Anthropic(api_key=self.api_key, timeout=timeout, max_retries=0)

    @retry_on_failure()
    def complete(self, prompt: str, model: str, max_tokens: int, temperature: float = 0.3,
                 time_budget: Optional[float] = None) -> Completion:
        """Send a single user prompt and return the concatenated text blocks.

        `time_budget` caps the request timeout below the client default; the
        retry decorator shrinks it for the second attempt.

        Raises:
            UpstreamRateLimited: On HTTP 429.
            UpstreamError: On any other non-2xx response or a transport failure.
        """
        timeout = self.timeout if time_budget is None else min(self.timeout, time_budget)
        logger.debug(f"Requesting completion from {model} (max_tokens={max_tokens}, prompt={len(prompt)} chars)")
        try:
            response = self.client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
            )
        except anthropic.RateLimitError as e:
            raise UpstreamRateLimited("claude", e.status_code, e.body,
                                      retry_after_ms=_retry_after_ms(e.response)) from e
        except anthropic.APIStatusError as e:
            raise UpstreamError("claude", e.status_code, e.body) from e
        except anthropic.APIConnectionError as e:
            raise UpstreamError("claude", None, str(e)) from e

        text = "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
        completion = Completion(
            text=text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=model,
        )
        logger.debug(f"{model} used {completion.input_tokens} input / {completion.output_tokens} output tokens")
        return completion
