"""
Pydantic schemas for job endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field

from jobtracker.schemas.upload import AttachmentResponse, CamelModel


class JobResponse(CamelModel):
    """Job record with its attachments."""
    id: str
    title: str
    company: Optional[str] = None
    status: Optional[str] = None
    # model attribute is job_metadata; the API calls it metadata
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="job_metadata")
    created_at: datetime
    updated_at: datetime
    attachments: List[AttachmentResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
