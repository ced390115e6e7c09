from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class RoadmapTask(BaseModel):
    name: str
    status: Literal["done", "progress", "pending"]
    assignee: Optional[str] = Field(default=None, description="Team member name from the list")
    progress: int = Field(default=0, ge=0, le=100)


class RoadmapPhase(BaseModel):
    id: int
    title: str
    description: str
    status: Literal["COMPLETED", "IN PROGRESS", "UPCOMING"]
    tasks: List[RoadmapTask]


class RoadmapPlan(BaseModel):
    stage: str = Field(description="Inferred project stage, e.g. Inception, Development")
    roadmap: List[RoadmapPhase] = Field(description="Exactly three phases covering 7 days")
    confidence: float = Field(ge=0, le=1)
    duration: str
    efficiency: str = Field(description="Expected efficiency gain, e.g. +18%")


class SuggestedTask(BaseModel):
    title: str
    description: str
    priority: Literal["high", "medium", "low"]


class TaskSuggestions(BaseModel):
    suggestions: List[SuggestedTask]


roadmap_prompt = {
    "name": "roadmap",
    "description": "Strategic 7-day roadmap for a pod",
    "schema": RoadmapPlan,
    "prompt_template": """
Analyze the project state and generate a strategic 7-day roadmap.

Project: {pod_name}
Description: {pod_description}

Team Members:
{team}

Recent Repository Activity:
{activity}

Current Tasks:
{tasks}

Your Task:
1. Infer the current project stage from the activity.
2. Generate a 3-phase roadmap for the NEXT 7 DAYS.
3. For each task in the roadmap, ASSIGN it to a specific team member from the list above.
""",
}

suggestions_prompt = {
    "name": "suggest_tasks",
    "description": "Next tasks for a pod",
    "schema": TaskSuggestions,
    "prompt_template": """
Suggest three concrete next tasks for this project.

Project: {pod_name}
Description: {pod_description}

Current Tasks:
{tasks}

Prefer work that unblocks the team. Do not repeat existing tasks.
""",
}

chat_prompt = {
    "name": "chat",
    "description": "Free-form consultant reply about a pod",
    "schema": None,
    "prompt_template": """
You are the planning consultant for the project "{pod_name}" ({pod_description}).

Current Tasks:
{tasks}

Recent Repository Activity:
{activity}

Team member question: {message}

Answer in at most a short paragraph.
""",
}

prompts = {
    roadmap_prompt["name"]: roadmap_prompt,
    suggestions_prompt["name"]: suggestions_prompt,
    chat_prompt["name"]: chat_prompt,
}
