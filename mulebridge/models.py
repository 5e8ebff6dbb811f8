from sqlalchemy import Column, Integer, Float, Text
from .db import Base

STATUS_DOWNLOADING = "downloading"
STATUS_COMPLETED = "completed"
STATUS_MISSING = "missing"
STATUS_DELETED = "deleted"

DEFAULT_CLIENT_TYPE = "amule"

# Filenames written before the real name is known; only these may be overwritten
PLACEHOLDER_FILENAMES = frozenset({"Unknown", "Magnet download", "Torrent download"})


class DownloadRecord(Base):
    __tablename__ = "download_history"
    hash = Column(Text, primary_key=True)           # lowercase hex (ED2K or info hash)
    filename = Column(Text, nullable=False)
    size = Column(Integer, nullable=True)
    started_at = Column(Text, nullable=False)       # ISO-8601 UTC
    completed_at = Column(Text, nullable=True)
    deleted_at = Column(Text, nullable=True)
    username = Column(Text, nullable=True)
    client_type = Column(Text, default=DEFAULT_CLIENT_TYPE)
    status = Column(Text, default=STATUS_DOWNLOADING)
    last_seen_at = Column(Text, nullable=True)
    downloaded = Column(Integer, default=0)
    uploaded = Column(Integer, default=0)
    ratio = Column(Float, default=0.0)
    tracker_domain = Column(Text, nullable=True)
