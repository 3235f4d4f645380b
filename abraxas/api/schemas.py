"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the Abraxas REST API.
Response models never expose encrypted tokens, webhook secrets or
sandbox passwords.
"""

from pydantic import BaseModel, ConfigDict, Field

from abraxas.db.models import AgentModel, ExecutionState, TaskStatus, TaskType


# Project schemas


class ProjectCreate(BaseModel):
    """Request schema for registering a project."""

    name: str = Field(..., min_length=1, max_length=255)
    repository_url: str = Field(..., min_length=1)
    access_token: str = Field(..., min_length=1)
    description: str | None = None
    agents_md_content: str | None = None


class ProjectUpdate(BaseModel):
    """Request schema for a partial project update.

    Only fields present in the request body are applied.
    """

    name: str | None = Field(None, min_length=1, max_length=255)
    repository_url: str | None = None
    access_token: str | None = None
    description: str | None = None
    agents_md_content: str | None = None


class ProjectResponse(BaseModel):
    """Response schema for a project."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None
    repository_url: str
    agents_md_content: str | None
    local_setup_enabled: bool = False
    created_at: str
    updated_at: str


class LocalSetupResponse(BaseModel):
    enabled: bool


class AgentAuthRequest(BaseModel):
    """Request schema carrying the raw opencode auth.json content."""

    auth_json: str = Field(..., min_length=2)


class AgentAuthStatusResponse(BaseModel):
    configured: bool


# Task schemas


class TaskCreate(BaseModel):
    """Request schema for creating a task."""

    project_id: str
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = None
    type: TaskType = TaskType.feature
    model: AgentModel = AgentModel.claude_sonnet_4_5
    status: TaskStatus = TaskStatus.backlog


class TaskUpdate(BaseModel):
    """Request schema for a partial task update."""

    title: str | None = Field(None, min_length=1, max_length=500)
    description: str | None = None
    type: TaskType | None = None
    status: TaskStatus | None = None
    model: AgentModel | None = None
    execution_state: ExecutionState | None = None
    branch_name: str | None = None


class TaskResponse(BaseModel):
    """Response schema for a task."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    title: str
    description: str | None
    type: str
    status: str
    execution_state: str
    branch_name: str | None
    model: str
    completed_at: str | None
    created_at: str
    updated_at: str


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)


class CommentResponse(BaseModel):
    """Response schema for a task comment."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    task_id: str
    user_id: str | None
    agent_name: str | None
    content: str
    sequence: int
    created_at: str


class SessionResponse(BaseModel):
    """Response schema for an execution session."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    task_id: str
    session_id: str
    status: str
    execution_mode: str
    sandbox_name: str | None
    sandbox_url: str | None
    branch_name: str | None
    pull_request_url: str | None
    error_message: str | None
    message_count: str | None
    input_tokens: str | None
    output_tokens: str | None
    created_at: str
    updated_at: str
    completed_at: str | None


class ExecuteResponse(BaseModel):
    """Response schema for a started execution."""

    task_id: str
    session_id: str
    sandbox_name: str
    branch_name: str


class SessionLogResponse(BaseModel):
    session_id: str
    output: str


# Manifest schemas


class ManifestCreate(BaseModel):
    """Request schema for starting a manifest."""

    project_id: str
    name: str = Field(..., min_length=1, max_length=255)
    prd_name: str | None = Field(None, max_length=255)


class ManifestResponse(BaseModel):
    """Response schema for a manifest."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    name: str
    prd_name: str | None
    status: str
    completed_tasks: int
    sandbox_name: str | None
    sandbox_url: str | None
    branch_name: str | None
    error_message: str | None
    created_at: str
    updated_at: str
    completed_at: str | None


class StopSandboxRequest(BaseModel):
    project_id: str
    branch_name: str = Field(..., min_length=1)


class StopSandboxResponse(BaseModel):
    stopped: bool


class WebhookAck(BaseModel):
    success: bool = True
    type: str


class UpdatePrdNameRequest(BaseModel):
    prd_name: str = Field(..., min_length=1, max_length=255)


class PrdTaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    passes: bool
    category: str | None = None
    description: str | None = None
    title: str | None = None
    steps: list[str] = []


class PrdResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    prd_name: str
    tasks: list[PrdTaskResponse]


class PrdDataResponse(BaseModel):
    """PRD state read from a manifest branch."""

    model_config = ConfigDict(from_attributes=True)

    prd: PrdResponse | None = None
    progress: str | None = None


class SandboxRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    branch_name: str
    type: str
    sandbox_name: str
    sandbox_url: str | None
    created_at: str


class ManifestBranchResponse(BaseModel):
    """A manifest-* branch with its PRD state and tracked sandbox."""

    model_config = ConfigDict(from_attributes=True)

    branch_name: str
    prd_name: str
    prd_data: PrdDataResponse | None = None
    sandbox: SandboxRecordResponse | None = None


class PrdCreatorRequest(BaseModel):
    project_id: str


class PrdCreatorResponse(BaseModel):
    sandbox_name: str
    sandbox_url: str | None
    branch_name: str
