"""AI analysis request/response schemas."""
from typing import Literal

from pydantic import Field

from clouddrive.schemas.base import CamelModel


class AnalysisResult(CamelModel):
    summary: str
    tags: list[str] = Field(default_factory=list)


class ChatTurn(CamelModel):
    role: Literal["user", "ai"]
    content: str


# JSON schema sent with text-file analysis requests.
ANALYSIS_JSON_SCHEMA = {
    "type": "object",
    "properties": {
        "summary": {
            "type": "string",
            "description": "A concise overview of the file content.",
        },
        "tags": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Relevant keywords.",
        },
    },
    "required": ["summary", "tags"],
}
