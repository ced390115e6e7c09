import html
import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

# At least 8 chars: one lower, one upper, one digit, one of @$!%*?&
STRONG_PASSWORD_REGEX = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$"
)
GITHUB_USERNAME_REGEX = re.compile(r"^[a-zA-Z0-9-]+$")

MemberRole = Literal["admin", "maintainer", "member"]
TaskStatus = Literal["pending", "in-progress", "done"]


def _clean_text(value: str | None, min_length: int, max_length: int, label: str) -> str | None:
    """Trim, check length, then HTML-escape user supplied text."""
    if value is None:
        return None
    value = value.strip()
    if not min_length <= len(value) <= max_length:
        if min_length:
            raise ValueError(f"{label} must be between {min_length} and {max_length} characters")
        raise ValueError(f"{label} cannot exceed {max_length} characters")
    return html.escape(value)


class UpdateModel(BaseModel):
    """Base model for partial updates: unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")


# User models
class UserPublic(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: str | None = None
    name: str | None = None
    github_id: str | None = None
    github_username: str | None = None
    tech_stack: list[str] = []
    inferred_role: str | None = None
    role_analysis: dict[str, Any] | None = None
    reliability_score: int = 100
    dynamics_metrics: dict[str, Any] = {}
    created_at: datetime | None = None

    @field_validator("tech_stack", mode="before")
    @classmethod
    def default_tech_stack(cls, v):
        return v or []

    @field_validator("dynamics_metrics", mode="before")
    @classmethod
    def default_metrics(cls, v):
        return v or {}

    @field_validator("reliability_score", mode="before")
    @classmethod
    def default_reliability(cls, v):
        return 100 if v is None else v


class UserSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str | None = None
    email: str | None = None


class SignupRequest(BaseModel):
    email: EmailStr
    password: str
    name: str

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        if not STRONG_PASSWORD_REGEX.match(v):
            raise ValueError(
                "Password must be at least 8 characters long and include uppercase, "
                "lowercase, number, and special character (@$!%*?&)"
            )
        return v

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str) -> str:
        return _clean_text(v, 2, 50, "Name")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class AuthResponse(BaseModel):
    token: str
    user: UserPublic


class ProfileUpdate(UpdateModel):
    name: str | None = None
    github_username: str | None = None

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str | None) -> str | None:
        return _clean_text(v, 2, 50, "Name")

    @field_validator("github_username")
    @classmethod
    def valid_github_username(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not GITHUB_USERNAME_REGEX.match(v):
            raise ValueError("Invalid GitHub username format")
        return v


# Pod models
class PodCreate(BaseModel):
    name: str
    description: str | None = None

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str) -> str:
        return _clean_text(v, 3, 50, "Pod name")

    @field_validator("description")
    @classmethod
    def clean_description(cls, v: str | None) -> str | None:
        return _clean_text(v, 0, 500, "Description")


class PodUpdate(UpdateModel):
    name: str | None = None
    description: str | None = None
    repo_owner: str | None = None
    repo_name: str | None = None

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str | None) -> str | None:
        return _clean_text(v, 3, 50, "Pod name")

    @field_validator("description")
    @classmethod
    def clean_description(cls, v: str | None) -> str | None:
        return _clean_text(v, 0, 500, "Description")

    @field_validator("repo_owner", "repo_name")
    @classmethod
    def valid_repo_part(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not re.match(r"^[A-Za-z0-9_.-]+$", v):
            raise ValueError("Invalid repository owner or name")
        return v


class MemberAdd(BaseModel):
    user_id: str
    role: MemberRole = "member"


class MemberUpdate(UpdateModel):
    role: MemberRole | None = None
    status: Literal["accepted"] | None = None


# Task models
class TaskCreate(BaseModel):
    title: str
    description: str | None = None
    assigned_to: str | None = None
    due_at: datetime | None = None

    @field_validator("title")
    @classmethod
    def clean_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Task title is required")
        return _clean_text(v, 1, 100, "Task title")

    @field_validator("description")
    @classmethod
    def clean_description(cls, v: str | None) -> str | None:
        return _clean_text(v, 0, 1000, "Description")


class TaskStatusUpdate(BaseModel):
    status: str


# Reward models
class RewardCreate(BaseModel):
    user_id: str
    points: int
    reason: str | None = None
    badges: list[str] = []


# AI models
class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)


class ChatReply(BaseModel):
    reply: str
    timestamp: str


class TaskSuggestion(BaseModel):
    title: str
    description: str
    priority: Literal["high", "medium", "low"]


class SuggestionsResponse(BaseModel):
    suggestions: list[TaskSuggestion]
