import asyncio
import json

import pytest
from claude_agent_sdk import AssistantMessage, TextBlock

from codepods.services import agent
from codepods.services.prompts import TaskSuggestions


@pytest.fixture
def replies(monkeypatch, tmp_path):
    monkeypatch.setattr(agent, "LOGS_DIR", tmp_path)
    texts = []

    async def fake_query(prompt, options):
        for text in texts:
            yield AssistantMessage(content=[TextBlock(text=text)], model="test")

    monkeypatch.setattr(agent, "query", fake_query)
    return texts


def test_strict_schema_closes_nested_objects():
    schema = agent._strict_schema(TaskSuggestions)

    assert schema["additionalProperties"] is False
    assert schema["$defs"]["SuggestedTask"]["additionalProperties"] is False


def test_ask_returns_last_text(replies):
    replies.extend(["thinking", "Write tests."])

    assert asyncio.run(agent.ask("What next?")) == "Write tests."


def test_ask_json_validates_and_audits(replies, tmp_path):
    replies.append(json.dumps({"suggestions": [{"title": "CI", "description": "Add CI", "priority": "low"}]}))

    result = asyncio.run(agent.ask_json("Suggest", TaskSuggestions))

    assert result.suggestions[0].title == "CI"
    logs = list(tmp_path.iterdir())
    assert len(logs) == 1
    assert json.loads(logs[0].read_text())["success"] is True


def test_ask_json_rejects_invalid_json(replies, tmp_path):
    replies.append("not json")

    with pytest.raises(ValueError):
        asyncio.run(agent.ask_json("Suggest", TaskSuggestions))

    entry = json.loads(next(tmp_path.iterdir()).read_text())
    assert entry["success"] is False
    assert entry["error_type"] == "ValueError"


def test_ask_json_rejects_empty_answer(replies):
    with pytest.raises(ValueError):
        asyncio.run(agent.ask_json("Suggest", TaskSuggestions))
