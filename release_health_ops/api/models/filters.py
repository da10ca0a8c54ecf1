from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncRequest(BaseModel):
    """One ingestion batch as posted by the sync job."""

    model_config = ConfigDict(populate_by_name=True)

    source: Optional[str] = None
    synced_at_utc: Optional[str] = Field(default=None, alias="syncedAtUtc")
    rows: List[Any] = Field(default_factory=list)
