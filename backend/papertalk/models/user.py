"""User-related Pydantic models"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime, timezone


class User(BaseModel):
    model_config = ConfigDict(extra="ignore")
    user_id: str
    email: str
    name: str
    role: str = "teacher"  # super_admin, org_admin, teacher, student
    organization_id: str
    voice_id: Optional[str] = None  # Cloned voice for audio feedback
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
