from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, BigInteger, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database import Base


class DriveEntry(Base):
    """
    Mirror of a Google Drive file or folder.

    `id` is the Drive file id, so it stays stable across syncs.
    `parent_ids` holds the Drive parent ids, stored sorted.
    """
    __tablename__ = "drive_entries"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    parent_ids = Column(JSON, nullable=False, default=list)
    size_bytes = Column(BigInteger, nullable=True)
    modified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    is_container = Column(Boolean, nullable=False, default=False, index=True)
    trashed = Column(Boolean, nullable=False, default=False)

    synced_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # passive_deletes: the database cascade removes grants, not the ORM
    grants = relationship(
        "DriveGrant",
        back_populates="entry",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class DriveGrant(Base):
    """
    Mirror of a Drive permission on one entry.
    """
    __tablename__ = "drive_grants"

    id = Column(String, primary_key=True, index=True)
    entry_id = Column(
        String,
        ForeignKey("drive_entries.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    grantee_type = Column(String, nullable=False)  # user, group, domain, anyone
    role = Column(String, nullable=False)  # owner, organizer, fileOrganizer, writer, commenter, reader
    email_address = Column(String, nullable=True)
    domain = Column(String, nullable=True)
    discoverable = Column(Boolean, nullable=False, default=False)

    synced_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    entry = relationship("DriveEntry", back_populates="grants")
