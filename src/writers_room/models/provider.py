"""
LiteLLM-backed text generator used by every Actor of a production.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import litellm
from litellm import acompletion

from writers_room.core.config import ModelConfig, get_env
from writers_room.core.errors import WritersRoomError
from writers_room.models.generator import GenerationError, Prompt, TextGenerator

if TYPE_CHECKING:
    from writers_room.observability.event_logger import EventLogger

logger = logging.getLogger(__name__)


class ModelError(WritersRoomError):
    """Raised when the model stays unreachable after all retries."""

    pass


class ModelProvider(TextGenerator):
    """
    Sends Actor prompts to a chat model through LiteLLM.

    Transient failures are retried with exponential backoff (1s, 2s, 4s...)
    up to ``max_retries`` attempts. Token usage is tallied for the whole
    provider and per scene.
    """

    def __init__(
        self,
        config: ModelConfig,
        event_logger: Optional["EventLogger"] = None,
        run_id: str = "",
    ):
        self.config = config
        self.api_key = get_env(config.api_key_env) if config.api_key_env else None
        self._event_logger = event_logger
        self._run_id = run_id
        self._scene_id = ""

        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.total_cost = 0.0
        self.tokens_by_scene: Dict[str, int] = {}

    async def generate(self, prompt: Prompt) -> str:
        """
        Return the model's reply text for a prompt.

        Raises:
            ModelError: If every attempt failed.
            GenerationError: If the reply carries no text.
        """
        response = await self.complete(prompt.to_messages())
        return self._extract_text(response)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        **kwargs
    ) -> Any:
        """Run one chat completion and return LiteLLM's raw response."""
        params = self._request_params(messages, max_tokens, temperature, **kwargs)
        attempts = self.config.max_retries
        delay = 1

        for attempt in range(1, attempts + 1):
            started = time.time()
            try:
                response = await acompletion(**params)
            except Exception as e:
                # LiteLLM surfaces rate limits, timeouts and refused
                # connections as assorted exception types
                if attempt == attempts:
                    logger.error(f"{self.config.litellm_model} unreachable after {attempts} attempts")
                    raise ModelError(f"Model call failed: {e}") from e
                logger.warning(
                    f"{self.config.litellm_model} attempt {attempt}/{attempts} failed: {e}. "
                    f"Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= 2
                continue

            self._record_usage(response)
            self._log_llm_call(response, (time.time() - started) * 1000)
            return response

    def _request_params(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int],
        temperature: Optional[float],
        **kwargs
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": self.config.litellm_model,
            "messages": messages,
            "max_tokens": max_tokens or self.config.max_tokens,
            "temperature": self.config.temperature if temperature is None else temperature,
            "timeout": self.config.timeout_seconds,
        }
        if self.api_key:
            params["api_key"] = self.api_key
        if self.config.api_base:
            params["api_base"] = self.config.api_base
        params.update(kwargs)
        return params

    @staticmethod
    def _extract_text(response: Any) -> str:
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            raise GenerationError(f"Malformed completion response: {e}") from e
        if not content:
            raise GenerationError("Completion response contained no text")
        return content

    def _record_usage(self, response: Any) -> None:
        usage = getattr(response, "usage", None)
        if usage is None:
            logger.warning("Completion response carried no usage information")
            return

        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        spent = usage.prompt_tokens + usage.completion_tokens
        self.tokens_by_scene[self._scene_id] = self.tokens_by_scene.get(self._scene_id, 0) + spent

        try:
            cost = litellm.completion_cost(completion_response=response)
        except Exception as e:
            # Local models have no pricing entry
            logger.debug(f"No cost available for {self.config.litellm_model}: {e}")
            return
        if cost:
            self.total_cost += float(cost)

    def get_total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def get_usage(self) -> Dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.get_total_tokens(),
            "total_cost_usd": self.total_cost,
            "tokens_by_scene": dict(self.tokens_by_scene),
        }

    def reset_usage(self) -> None:
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.total_cost = 0.0
        self.tokens_by_scene = {}

    def set_context(self, scene_id: str, run_id: Optional[str] = None) -> None:
        """Attribute subsequent calls to a scene (and optionally a run)."""
        self._scene_id = scene_id
        if run_id is not None:
            self._run_id = run_id

    def _log_llm_call(self, response: Any, duration_ms: float) -> None:
        if self._event_logger is None:
            return

        from writers_room.observability.event_logger import Event, EventType

        payload: Dict[str, Any] = {
            "model": self.config.litellm_model,
            "duration_ms": round(duration_ms, 1),
        }
        usage = getattr(response, "usage", None)
        if usage is not None:
            payload.update(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            )
        self._event_logger.log(Event(
            type=EventType.LLM_CALL,
            scene_id=self._scene_id,
            run_id=self._run_id,
            payload=payload,
        ))
