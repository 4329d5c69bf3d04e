from datetime import datetime

from pydantic import BaseModel, Field


class CreateDocumentRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=500)
    mime_type: str = Field(default="application/octet-stream", max_length=100)
    content_base64: str
    uploaded_by: str | None = None
    fault_injection: bool | None = None


class PendingReviewResponse(BaseModel):
    document_id: int
    instance_id: str
    file_name: str
    mime_type: str
    size_bytes: int
    correlation_token: str
    assigned_at: datetime
