import json
import logging
import re
from typing import Dict, Any, Optional

from pydantic import ValidationError

from core.errors import AIInvocationError
from core.schemas import ClassifyResult, SummaryResult
from services.llm import AIFunction, OllamaClient

logger = logging.getLogger(__name__)


def _extract_json(content: str) -> str:
    """
    Extract JSON from LLM response, stripping markdown code blocks if present.
    """
    content = content.strip()

    # Remove markdown code blocks (```json ... ``` or ``` ... ```)
    pattern = r'^```(?:json)?\s*\n?(.*?)\n?```$'
    match = re.match(pattern, content, re.DOTALL)
    if match:
        return match.group(1).strip()

    object_match = re.search(r'\{.*\}', content, re.DOTALL)
    if object_match:
        return object_match.group(0)

    return content


def _clip(text: Optional[str], limit: int) -> str:
    return (text or "")[:limit].replace("\n", " ").strip()


def build_prompt(task_type: str, payload: Dict[str, Any]) -> str:
    """
    Render the prompt for one AI task type.

    Raises:
        AIInvocationError: for a task type with no prompt.
    """
    if task_type in ("classify", "score", "tag"):
        return f"""You are a technology news curator. Classify the item below.

TITLE: {_clip(payload.get('title'), 300)}
BODY: {_clip(payload.get('body'), 1500)}

Return ONLY a JSON object with:
- score: float 0.0-1.0, how valuable this item is for a daily tech digest
- category: one short lowercase word (ai, finance, hardware, security, energy, tech, ...)
- tags: list of up to 5 short lowercase tags
- priority: integer 0-2 (2 = must read)

Example: {{"score": 0.7, "category": "ai", "tags": ["llm", "open source"], "priority": 1}}

JSON object:"""

    if task_type == "summarize":
        headlines = "\n".join(f"- {title}" for title in payload.get("titles", []))
        return f"""Write a two to three sentence summary of today's digest for {payload.get('date', 'today')}.
The digest contains these headlines, most important first:
{headlines}

Return ONLY a JSON object: {{"summary": "..."}}

JSON object:"""

    if task_type == "query":
        return f"""List up to {payload.get('max_items', 10)} recent news items that answer this query: {payload.get('query', '')}

Return ONLY a JSON object: {{"items": [{{"title": "...", "url": "...", "body": "..."}}]}}

JSON object:"""

    raise AIInvocationError(f"No prompt defined for task type {task_type!r}")


def parse_classification(output: Dict[str, Any]) -> ClassifyResult:
    """
    Validate a classify task's output.

    Raises:
        AIInvocationError: when the output does not match the schema.
    """
    try:
        return ClassifyResult.model_validate(output)
    except ValidationError as e:
        raise AIInvocationError(f"Invalid classification output: {e.errors()[0]['msg']}") from e


def parse_summary(output: Dict[str, Any]) -> str:
    try:
        return SummaryResult.model_validate(output).summary.strip()
    except ValidationError as e:
        raise AIInvocationError(f"Invalid summary output: {e.errors()[0]['msg']}") from e


class OllamaAIFunction(AIFunction):
    """
    AI function backed by a local Ollama model.
    """

    def __init__(self, llm: OllamaClient):
        self.llm = llm

    async def invoke(self, task_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        prompt = build_prompt(task_type, payload)
        response = await self.llm.evaluate(prompt)
        logger.debug(f"LLM response for {task_type} (latency: {response.latency_ms}ms): {response.content[:300]}")

        clean_json = _extract_json(response.content)
        try:
            parsed = json.loads(clean_json)
        except json.JSONDecodeError as e:
            raise AIInvocationError(f"Invalid JSON response from LLM: {e}") from e

        if not isinstance(parsed, dict):
            raise AIInvocationError("LLM response is not a JSON object")
        return parsed
