from pydantic import BaseModel, Field
from typing import List, Literal, Optional


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatTurn] = Field(..., min_length=1, description="Full ordered turn history")
    model: Optional[str] = Field(default=None, description="Model id, the configured default when omitted")
