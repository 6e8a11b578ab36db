from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter


class GroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    guidance_text: Optional[str] = None


class GroupOut(BaseModel):
    id: UUID
    name: str
    guidance_text: Optional[str] = None
    class Config:
        from_attributes = True


class ConversationCreate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=255)
    safe_mode: Optional[bool] = None
    llm_model_id: Optional[UUID] = None
    group_id: Optional[UUID] = None


class ConversationUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    archived: Optional[bool] = None
    group_id: Optional[UUID] = None
    llm_model_id: Optional[UUID] = None
    safe_mode: Optional[bool] = None


class ConversationOut(BaseModel):
    id: UUID
    title: str
    archived: bool
    group_id: Optional[UUID] = None
    safe_mode: Optional[bool] = None
    llm_model_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime
    class Config:
        from_attributes = True


class ConversationSearchHit(BaseModel):
    id: UUID
    title: str
    archived: bool
    snippet: Optional[str] = None
    relevance: int
    created_at: datetime
    updated_at: datetime


class ConversationSearchResponse(BaseModel):
    results: List[ConversationSearchHit]


class MessageCreate(BaseModel):
    content: str = Field(min_length=1, max_length=100_000)
    file_ids: List[UUID] = Field(default_factory=list, max_length=20)
    model_name: Optional[str] = Field(default=None, max_length=255)
    model_host: Optional[str] = Field(default=None, max_length=512)
    edit_message_id: Optional[UUID] = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    duration_ms: int = 0


class CompletedMeta(BaseModel):
    status: Literal["completed"] = "completed"
    usage: Optional[Usage] = None


class CancelledMeta(BaseModel):
    status: Literal["cancelled"] = "cancelled"


class ErroredMeta(BaseModel):
    status: Literal["error"] = "error"
    error: str


MessageMeta = Annotated[Union[CompletedMeta, CancelledMeta, ErroredMeta], Field(discriminator="status")]

_meta_adapter = TypeAdapter(MessageMeta)


def parse_meta(raw: Optional[Dict[str, Any]]) -> Optional[MessageMeta]:
    if not raw:
        return None
    return _meta_adapter.validate_python(raw)


class ModelRef(BaseModel):
    name: str
    host: Optional[str] = None


class MessageAttachment(BaseModel):
    id: UUID
    filename: str
    extraction_failed: bool = False


class MessageOut(BaseModel):
    id: UUID
    conversation_id: UUID
    role: str
    content: str
    meta: Optional[MessageMeta] = None
    model: Optional[ModelRef] = None
    version_group_id: Optional[UUID] = None
    version_number: int = 1
    files: List[MessageAttachment] = Field(default_factory=list)
    created_at: datetime


class MessageListResponse(BaseModel):
    messages: List[MessageOut]


class FileMetadata(BaseModel):
    id: UUID
    filename: str
    content_type: str
    size: int
    extraction_status: str
    has_thumbnail: bool = False
    created_at: datetime


class FileUploadResponse(BaseModel):
    file: FileMetadata
    deduplicated: bool = False


class FileListResponse(BaseModel):
    files: List[FileMetadata]


class ModelOut(BaseModel):
    id: UUID
    name: str
    host: Optional[str] = None
    is_active: bool
    class Config:
        from_attributes = True


class AuthContext(BaseModel):
    user_id: str
    role: Literal["admin", "adult", "teen", "child"] = "adult"
    safe_mode: bool = False
