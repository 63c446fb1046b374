"""Bulk submission wire contract shared by the sync client and the bulk endpoint"""

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List

from .submission import SubmissionCreate


class BulkSubmissionRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    submissions: List[SubmissionCreate]
    local_ids: List[str]  # Client-side ids, same order as submissions

    @model_validator(mode="after")
    def check_lengths(self):
        if not self.submissions:
            raise ValueError("submissions array required")
        if len(self.local_ids) != len(self.submissions):
            raise ValueError("localIds must match submissions length")
        return self


class BulkSubmissionResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    local_id: str
    success: bool
    server_id: Optional[str] = None
    error: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
