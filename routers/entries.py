from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

import models
from database import get_db
from schemas.sync import EntryListResponse, EntryOut, GrantOut

router = APIRouter(tags=["entries"])


def _entry_out(entry: models.DriveEntry, grant_count: int, include_grants: bool) -> EntryOut:
    return EntryOut(
        id=entry.id,
        name=entry.name,
        mime_type=entry.mime_type,
        parent_ids=entry.parent_ids or [],
        size_bytes=entry.size_bytes,
        created_at=entry.created_at,
        modified_at=entry.modified_at,
        is_container=entry.is_container,
        trashed=entry.trashed,
        synced_at=entry.synced_at,
        grant_count=grant_count,
        grants=[GrantOut.model_validate(grant) for grant in entry.grants] if include_grants else None,
    )


@router.get("/entries", response_model=EntryListResponse)
def list_entries(
    parent_id: Optional[str] = Query(None, description="Only direct children of this folder"),
    include_grants: bool = Query(False, description="Embed each entry's permissions"),
    page: int = Query(default=1, ge=1, description="Page number (1-indexed)"),
    limit: int = Query(default=100, ge=1, le=500, description="Items per page"),
    db: Session = Depends(get_db),
):
    """
    List mirrored entries, folders first, then by name.
    """
    ordering = (models.DriveEntry.is_container.desc(), models.DriveEntry.name, models.DriveEntry.id)
    start = (page - 1) * limit

    grant_counts = (
        db.query(models.DriveGrant.entry_id, func.count(models.DriveGrant.id).label("grant_count"))
        .group_by(models.DriveGrant.entry_id)
        .subquery()
    )
    query = (
        db.query(models.DriveEntry, func.coalesce(grant_counts.c.grant_count, 0))
        .outerjoin(grant_counts, grant_counts.c.entry_id == models.DriveEntry.id)
        .order_by(*ordering)
    )
    if include_grants:
        query = query.options(selectinload(models.DriveEntry.grants))

    if parent_id:
        # parent_ids is a JSON column; match it portably on an id/parents projection
        candidates = db.query(models.DriveEntry.id, models.DriveEntry.parent_ids).order_by(*ordering).all()
        matching = [row.id for row in candidates if parent_id in (row.parent_ids or [])]
        total = len(matching)
        query = query.filter(models.DriveEntry.id.in_(matching[start:start + limit]))
    else:
        total = db.query(func.count(models.DriveEntry.id)).scalar()
        query = query.offset(start).limit(limit)

    items = [_entry_out(entry, count, include_grants) for entry, count in query.all()]
    return {"items": items, "total": total}


@router.get("/entries/{entry_id}", response_model=EntryOut)
def get_entry(entry_id: str, db: Session = Depends(get_db)):
    entry = db.get(models.DriveEntry, entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Entry not found: {entry_id}")
    return _entry_out(entry, len(entry.grants), include_grants=True)
