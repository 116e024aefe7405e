from typing import List

from pydantic import BaseModel, Field

from .config import DEFAULT_TOPICS


class LookupQuery(BaseModel):
    protectedKey: str
    history: bool = False


class LookupRequest(BaseModel):
    provider: str = "kvstore"
    query: LookupQuery


class SubmitRequest(BaseModel):
    beef: str
    txid: str
    topics: List[str] = Field(default_factory=lambda: list(DEFAULT_TOPICS))


class SubmitResponse(BaseModel):
    txid: str
    admitted: List[int] = Field(default_factory=list)
