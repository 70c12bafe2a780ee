import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from core.errors import AIInvocationError, AITimeout

logger = logging.getLogger(__name__)

JSON_SYSTEM_PROMPT = "You are a careful assistant. Reply with a single JSON object and nothing else."


class AIFunction(ABC):
    """
    Black-box AI capability: input JSON in, output JSON out.
    """

    @abstractmethod
    async def invoke(self, task_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run one task.

        Raises:
            AIInvocationError: the model call failed or returned garbage.
            AITimeout: the model did not answer in time.
        """
        raise NotImplementedError


@dataclass
class LLMResponse:
    content: str
    latency_ms: int
    model: str


def native_base_url(base_url: str) -> str:
    # ChatOllama talks to Ollama's native API, not the OpenAI-compatible /v1 one
    base_url = base_url.rstrip("/")
    if base_url.endswith("/v1"):
        base_url = base_url[:-3]
    return base_url


def _is_connection_error(error: Exception) -> bool:
    if isinstance(error, (httpx.ConnectError, ConnectionError)):
        return True
    return "connect" in str(error).lower()


class OllamaClient:
    """
    Ollama chat model in JSON mode. Connection failures are retried here;
    every other failure surfaces at once so the AI task orchestrator owns
    retries and backoff.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        temperature: float = 0.1,
        max_retries: int = 2,
        retry_delay: float = 2.0,
        timeout: float = 300.0,
        num_ctx: int = 4096,
    ):
        self.base_url = native_base_url(base_url)
        self.model = model
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout

        self.llm = ChatOllama(
            base_url=self.base_url,
            model=model,
            temperature=temperature,
            num_ctx=num_ctx,
            format="json",
        )

    async def _invoke_with_retry(self, messages: List[BaseMessage]) -> Any:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.wait_for(self.llm.ainvoke(messages), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise AITimeout(f"{self.model} did not answer within {self.timeout}s")
            except Exception as e:
                if not _is_connection_error(e):
                    raise AIInvocationError(f"{self.model}: {e}") from e
                last_error = e
                logger.warning(
                    f"Attempt {attempt}/{self.max_retries}: cannot reach Ollama at {self.base_url} - {e}"
                )

            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay * attempt)

        raise AIInvocationError(f"Ollama unreachable at {self.base_url}: {last_error}")

    async def evaluate(self, prompt: str, system: str = JSON_SYSTEM_PROMPT) -> LLMResponse:
        start = time.perf_counter()
        response = await self._invoke_with_retry([SystemMessage(content=system), HumanMessage(content=prompt)])
        return LLMResponse(
            content=str(response.content),
            latency_ms=int((time.perf_counter() - start) * 1000),
            model=self.model,
        )

    async def health_check(self) -> bool:
        """
        True when the server answers /api/tags and the configured model is pulled.
        """
        url = f"{self.base_url}/api/tags"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Ollama health check error: {e} (url={url})")
            return False

        if resp.status_code != 200:
            logger.error(f"Ollama health check failed: {resp.status_code} {resp.text}")
            return False

        names = {m.get("name", "") for m in resp.json().get("models", [])}
        if self.model not in names and f"{self.model}:latest" not in names:
            logger.error(f"Model {self.model} is not pulled on {self.base_url} (available: {sorted(names)})")
            return False
        return True
