"""
API Request/Response Models
"""

from typing import Optional

from pydantic import BaseModel, Field


class SubmitSuccessResponse(BaseModel):
    success: bool = True
    lookupOutput: str = Field(..., description="What the lookup agent found")
    issueOutput: str = Field(..., description="Issue agent confirmation, with the issue URL or number")
    detail: Optional[str] = Field(None, description="Set when the issue agent gave no confirmation text")


class SubmitErrorResponse(BaseModel):
    success: bool = False
    stage: Optional[str] = Field(None, description="Stage that failed: lookup or issue")
    lookupOutput: Optional[str] = Field(None, description="Lookup output obtained before the failure")
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    timestamp: str
