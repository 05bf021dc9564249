from sqlalchemy import Column, String, DateTime, Text
from phimcache.db.base_class import Base


class CacheEntry(Base):
    """
    Durable cache tier row.

    Expired rows are not deleted; they are ignored on read and overwritten by
    the next successful set for the same key.
    """
    __tablename__ = "cache_entries"

    key = Column(String(500), primary_key=True)
    value = Column(Text, nullable=False)  # JSON document
    expires_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)
