from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncStartRequest(BaseModel):
    folder_id: Optional[str] = Field(
        default=None, description="Folder to sync; omitted means the configured default scope"
    )


class SyncStartResponse(BaseModel):
    run_id: str
    scope: str
    state: str
    progress_url: str = "/api/drive/sync/progress"


class SyncRunSummary(BaseModel):
    run_id: str
    scope: str
    state: str
    running: bool
    total_files: int
    processed_files: int
    total_permissions: int
    processed_permissions: int
    errors: int
    processing_time_ms: int
    created: Dict[str, int]
    updated: Dict[str, int]
    skipped: Dict[str, int]
    pruned_entries: int
    pruned_permissions: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None


class SyncStatusResponse(BaseModel):
    active: bool
    runs: List[SyncRunSummary]


class GrantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    grantee_type: str
    role: str
    email_address: Optional[str] = None
    domain: Optional[str] = None
    discoverable: Optional[bool] = None


class EntryOut(BaseModel):
    id: str
    name: str
    mime_type: Optional[str] = None
    parent_ids: List[str]
    size_bytes: Optional[int] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    is_container: bool
    trashed: bool
    synced_at: Optional[datetime] = None
    grant_count: int = 0
    grants: Optional[List[GrantOut]] = None


class EntryListResponse(BaseModel):
    items: List[EntryOut]
    total: int
