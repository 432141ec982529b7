from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class MediaRead(BaseModel):
    id : int
    uuid : str
    collection_name : str
    disk : str
    path : str
    mime_type : str
    size : int
    generated_conversions : dict[str, bool] = Field(default_factory=dict)
    created_at : datetime

    class Config:
        from_attributes = True


class UploadQueued(BaseModel):
    status : str = "queued"
    correlation_id : str | None


class MediaList(BaseModel):
    items: List[MediaRead] = Field(default_factory=list)
    total: int


class MediaRemoved(BaseModel):
    removed_ids: list[int]
