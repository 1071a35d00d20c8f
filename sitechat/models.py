from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


WorkflowStatus = Literal["pending", "running", "completed", "failed"]
CheckpointStatus = Literal["started", "completed", "failed"]


class AssistantRecord(BaseModel):
    assistant_id: str
    name: str
    url: str
    external_vector_store_id: str = ""
    external_assistant_id: str = ""
    created_at: datetime
    updated_at: datetime
    version: int = 1


class QueryRecord(BaseModel):
    content: str
    response: str = ""
    started: bool = False
    completed: bool = False


class ThreadRecord(BaseModel):
    thread_id: str
    assistant_id: str
    external_assistant_id: str = ""
    external_thread_id: str = ""
    queries: List[QueryRecord] = Field(default_factory=list)
    active_index: int = 0
    # Idempotency-Key -> query index, written with the append it guards.
    submitted_keys: Dict[str, int] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    version: int = 1


class Checkpoint(BaseModel):
    status: CheckpointStatus
    result: Any = None
    error: Optional[str] = None


class WorkflowRecord(BaseModel):
    workflow_id: str
    kind: str
    args: Dict[str, Any] = Field(default_factory=dict)
    status: WorkflowStatus = "pending"
    iteration: int = 0
    next_run_at: Optional[datetime] = None
    attempt: int = 0
    checkpoints: Dict[str, Checkpoint] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int = 1


class CreateAssistantRequest(BaseModel):
    assistant_id: Optional[str] = Field(default=None, min_length=1, max_length=120)
    name: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1)


class CreateAssistantResponse(BaseModel):
    assistant_id: str


class AssistantStatusResponse(BaseModel):
    assistant_id: str
    external_assistant_id: str


class CreateThreadRequest(BaseModel):
    thread_id: Optional[str] = Field(default=None, min_length=1, max_length=120)
    assistant_id: str = Field(min_length=1)


class CreateThreadResponse(BaseModel):
    thread_id: str


class SubmitQueryRequest(BaseModel):
    content: str = Field(min_length=1)


class SubmitQueryResponse(BaseModel):
    thread_id: str
    index: int


class MessagesResponse(BaseModel):
    thread_id: str
    active_index: int
    queries: List[QueryRecord] = Field(default_factory=list)
