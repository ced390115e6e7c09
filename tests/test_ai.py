import pytest

from codepods.services import planner
from codepods.services.prompts import RoadmapPlan, TaskSuggestions
from conftest import add_member, auth_headers, make_pod, make_user


@pytest.fixture
def team(db):
    lead = make_user(db, name="Lead", reliability_score=100)
    pm = make_user(db, name="PM", reliability_score=50)
    dev = make_user(db, name="Dev", reliability_score=None)
    pod = make_pod(db, lead, name="Rockets")
    add_member(db, pod, pm)
    add_member(db, pod, dev)
    return pod, lead, pm, dev


def test_team_allocation():
    members = [
        {"user_id": "a", "name": "A", "reliability_score": 100},
        {"user_id": "b", "name": "B", "reliability_score": 50},
        {"user_id": "c", "name": "C", "reliability_score": None},
    ]

    allocation = planner.team_allocation(members)

    assert [m["role"] for m in allocation] == ["Lead Engineer", "Product Manager", "Developer"]
    assert [m["match"] for m in allocation] == [94, 89, 94]


def test_fallback_roadmap_marks_auth_progress():
    pod = {"id": "p", "name": "Rockets"}
    members = [{"name": "Lead"}]

    pending = planner.fallback_roadmap(pod, members, [{"title": "Auth flow", "status": "pending"}])
    done = planner.fallback_roadmap(pod, members, [{"title": "Auth flow", "status": "done"}])

    assert len(pending) == 3
    assert pending[0]["status"] == "IN PROGRESS"
    assert done[0]["status"] == "COMPLETED"
    assert pending[1]["tasks"][1]["assignee"] == "Lead"


def test_plan_without_ai_uses_fallback(client, db, team):
    pod, lead, _, _ = team

    response = client.get(f"/api/ai/pods/{pod['id']}/plan", headers=auth_headers(lead))

    assert response.status_code == 200
    data = response.json()
    assert data["stage"] == "Inception"
    assert len(data["roadmap"]) == 3
    assert [m["name"] for m in data["members"]] == ["Lead", "PM", "Dev"]


def test_plan_requires_membership(client, db, team):
    pod, _, _, _ = team

    response = client.get(f"/api/ai/pods/{pod['id']}/plan", headers=auth_headers(make_user(db)))

    assert response.status_code == 403


def test_plan_for_missing_pod(client, db):
    response = client.get("/api/ai/pods/nope/plan", headers=auth_headers(make_user(db)))

    assert response.status_code == 404


def test_plan_with_ai(client, db, team, monkeypatch):
    pod, lead, _, _ = team
    db.add_item("activities", {"user_id": lead["id"], "pod_id": pod["id"], "type": "commit",
                               "meta": {"repo_name": "rocket"}})
    monkeypatch.setenv("AI_ENABLED", "true")
    prompts_seen = []

    async def fake_ask_json(prompt, response_model, system_prompt=None):
        prompts_seen.append(prompt)
        assert response_model is RoadmapPlan
        return RoadmapPlan(
            stage="Development",
            roadmap=[{"id": 1, "title": "Ship", "description": "Ship it", "status": "UPCOMING",
                      "tasks": [{"name": "Deploy", "status": "pending", "assignee": "Lead"}]}],
            confidence=0.8,
            duration="7 Days",
            efficiency="+18%",
        )

    monkeypatch.setattr(planner, "ask_json", fake_ask_json)

    response = client.get(f"/api/ai/pods/{pod['id']}/plan", headers=auth_headers(lead))

    data = response.json()
    assert data["stage"] == "Development"
    assert data["roadmap"][0]["tasks"][0]["name"] == "Deploy"
    assert len(data["members"]) == 3
    assert "Lead did commit in rocket" in prompts_seen[0]
    assert "Rockets" in prompts_seen[0]


def test_plan_falls_back_when_ai_fails(client, db, team, monkeypatch):
    pod, lead, _, _ = team
    monkeypatch.setenv("AI_ENABLED", "true")

    async def broken(prompt, response_model, system_prompt=None):
        raise ValueError("Agent returned invalid JSON")

    monkeypatch.setattr(planner, "ask_json", broken)

    response = client.get(f"/api/ai/pods/{pod['id']}/plan", headers=auth_headers(lead))

    assert response.status_code == 200
    assert response.json()["roadmap"][2]["title"] == "Deployment Prep (Days 6-7)"


def test_suggest_tasks_default(client, db, team):
    pod, lead, _, _ = team

    response = client.post(f"/api/ai/pods/{pod['id']}/suggest-tasks", headers=auth_headers(lead))

    suggestions = response.json()["suggestions"]
    assert len(suggestions) == 3
    assert suggestions[0]["priority"] == "high"


def test_suggest_tasks_with_ai(client, db, team, monkeypatch):
    pod, lead, _, _ = team
    monkeypatch.setenv("AI_ENABLED", "true")

    async def fake_ask_json(prompt, response_model, system_prompt=None):
        return TaskSuggestions(suggestions=[{"title": "Add CI", "description": "GitHub Actions", "priority": "low"}])

    monkeypatch.setattr(planner, "ask_json", fake_ask_json)

    response = client.post(f"/api/ai/pods/{pod['id']}/suggest-tasks", headers=auth_headers(lead))

    assert response.json() == {
        "suggestions": [{"title": "Add CI", "description": "GitHub Actions", "priority": "low"}]
    }


def test_chat_default_reply(client, db, team):
    pod, lead, _, _ = team

    response = client.post(
        f"/api/ai/pods/{pod['id']}/chat", json={"message": "What next?"}, headers=auth_headers(lead)
    )

    data = response.json()
    assert data["reply"] == planner.DEFAULT_REPLY
    assert len(data["timestamp"]) == 5


def test_chat_with_ai(client, db, team, monkeypatch):
    pod, lead, _, _ = team
    monkeypatch.setenv("AI_ENABLED", "true")

    async def fake_ask(prompt, system_prompt=None):
        assert "What next?" in prompt
        return "  Write tests.  "

    monkeypatch.setattr(planner, "ask", fake_ask)

    response = client.post(
        f"/api/ai/pods/{pod['id']}/chat", json={"message": "What next?"}, headers=auth_headers(lead)
    )

    assert response.json()["reply"] == "Write tests."


def test_chat_rejects_empty_message(client, db, team):
    pod, lead, _, _ = team

    response = client.post(
        f"/api/ai/pods/{pod['id']}/chat", json={"message": ""}, headers=auth_headers(lead)
    )

    assert response.status_code == 400
