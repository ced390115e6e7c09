"""Thin async wrapper over the Claude Agent SDK for planning prompts."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Type

from claude_agent_sdk import query, ClaudeAgentOptions, AssistantMessage, TextBlock
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# One JSON file per structured answer
LOGS_DIR = Path("logs/agent_responses")

DEFAULT_SYSTEM_PROMPT = (
    "You are an engineering lead helping a small developer team plan their work. "
    "Be concrete and brief."
)
JSON_INSTRUCTION = "Respond with valid JSON matching the requested schema."


def _close_objects(node) -> None:
    """Set additionalProperties=false on every object schema, in place."""
    if isinstance(node, list):
        for item in node:
            _close_objects(item)
    elif isinstance(node, dict):
        if node.get("type") == "object":
            node["additionalProperties"] = False
        for child in node.values():
            _close_objects(child)


def _strict_schema(response_model: Type[BaseModel]) -> dict:
    schema = response_model.model_json_schema()
    _close_objects(schema)
    return schema


async def _collect_text(prompt: str, options: ClaudeAgentOptions) -> tuple[str, str | None]:
    """Run a query and keep the final text block and stop reason."""
    text = ""
    stop_reason = None
    async for message in query(prompt=prompt, options=options):
        if not isinstance(message, AssistantMessage):
            continue
        stop_reason = getattr(message, "stop_reason", stop_reason)
        blocks = [block.text for block in message.content if isinstance(block, TextBlock)]
        if blocks:
            text = blocks[-1]
    return text, stop_reason


def _audit(entry: dict) -> Path:
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    path = LOGS_DIR / f"response_{entry['timestamp']}.json"
    path.write_text(json.dumps(entry, indent=2))
    return path


async def ask(prompt: str, system_prompt: str | None = None) -> str:
    """Free-text answer to a single prompt, no tools allowed."""
    options = ClaudeAgentOptions(
        allowed_tools=[],
        max_turns=1,
        system_prompt=system_prompt or DEFAULT_SYSTEM_PROMPT,
    )
    text, _ = await _collect_text(prompt, options)
    return text


async def ask_json(
    prompt: str,
    response_model: Type[BaseModel],
    system_prompt: str | None = None,
) -> BaseModel:
    """
    Ask for an answer constrained to a Pydantic schema.

    Every attempt is written to logs/agent_responses/ for auditing.

    Args:
        prompt: Full prompt including pod context
        response_model: Pydantic model the answer must match
        system_prompt: Optional system prompt (defaults to the planning
            prompt plus a JSON instruction)

    Returns:
        Validated Pydantic model instance

    Raises:
        ValueError: If the answer is empty or not JSON
        ValidationError: If the JSON does not fit response_model
    """
    entry = {
        "timestamp": datetime.now().strftime("%Y%m%d_%H%M%S_%f"),
        "schema": response_model.__name__,
        "query_length": len(prompt),
        "success": False,
    }
    options = ClaudeAgentOptions(
        allowed_tools=[],
        max_turns=1,
        system_prompt=system_prompt or f"{DEFAULT_SYSTEM_PROMPT} {JSON_INSTRUCTION}",
        output_format={"type": "json_schema", "schema": _strict_schema(response_model)},
    )
    logger.info(f"Asking for structured {response_model.__name__}")

    try:
        text, stop_reason = await _collect_text(prompt, options)
        entry.update(raw_response=text, stop_reason=stop_reason)
        if not text.strip():
            raise ValueError(f"Agent returned empty response (stop reason: {stop_reason})")
        try:
            result = response_model.model_validate(json.loads(text))
        except json.JSONDecodeError as e:
            raise ValueError(f"Agent returned invalid JSON: {e}") from e
    except Exception as e:
        entry.update(error=str(e), error_type=type(e).__name__)
        logger.error(f"Structured query failed: {e}. Log: {_audit(entry)}")
        raise

    entry["success"] = True
    logger.info(f"Parsed {response_model.__name__}. Log: {_audit(entry)}")
    return result
