from sqlalchemy import Column, String, Integer, Float, DateTime, Text
from sqlalchemy.orm import relationship
from phimcache.db.base_class import Base


class MovieCache(Base):
    """
    Durable copy of a normalized movie.

    slug is the identity key and never changes once written. raw_payload keeps
    the last normalized upstream document so already reconciled fields do not
    have to be derived again.
    """
    __tablename__ = "movies"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(500), unique=True, nullable=False, index=True)
    title = Column(String(500))
    original_title = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    poster_url = Column(String(1000), nullable=True)
    thumb_url = Column(String(1000), nullable=True)
    year = Column(String(10), nullable=True)
    director = Column(String(500), nullable=True)
    duration = Column(String(50), nullable=True)
    language = Column(String(50), nullable=True)
    quality = Column(String(50), nullable=True)
    rating = Column(Float, nullable=True)
    trailer_url = Column(String(1000), nullable=True)
    genres = Column(String(500), nullable=True)  # comma separated
    countries = Column(String(200), nullable=True)  # comma separated
    views = Column(Integer, default=0, nullable=False)
    last_updated = Column(DateTime, nullable=False, index=True)
    raw_payload = Column(Text, nullable=True)

    episodes = relationship("EpisodeCache", back_populates="movie", cascade="all, delete-orphan")
