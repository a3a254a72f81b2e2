import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .job import utcnow


class ConnectionCredentials(BaseModel):
    url: str = Field(..., description="Base URL of the remote instance")
    username: str
    password: str


class SavedConnectionInput(BaseModel):
    name: str
    instance_url: str
    username: str
    password: str


class SavedConnection(SavedConnectionInput):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def credentials(self) -> ConnectionCredentials:
        return ConnectionCredentials(url=self.instance_url, username=self.username, password=self.password)


class SavedConnectionUpdate(BaseModel):
    name: Optional[str] = None
    instance_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
