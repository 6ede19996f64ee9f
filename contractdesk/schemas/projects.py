"""Project roster schemas."""
from pydantic import BaseModel


class RosterUpdate(BaseModel):
    client_ids: list[int] = []


class RosterResponse(BaseModel):
    project_id: int
    client_ids: list[int]
    agreement_status: str | None = None
