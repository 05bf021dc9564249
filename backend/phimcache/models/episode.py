from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from phimcache.db.base_class import Base


class EpisodeCache(Base):
    __tablename__ = "episodes"
    __table_args__ = (
        UniqueConstraint("movie_slug", "episode_number", name="uq_episode_movie_number"),
    )

    id = Column(String(36), primary_key=True)
    movie_slug = Column(String(500), ForeignKey("movies.slug", ondelete="CASCADE"), nullable=False, index=True)
    episode_number = Column(Integer, nullable=False)  # 1-based
    title = Column(String(200))
    url = Column(String(1000), default="")  # primary URL
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    movie = relationship("MovieCache", back_populates="episodes")
    servers = relationship(
        "EpisodeServer",
        back_populates="episode",
        cascade="all, delete-orphan",
        order_by="EpisodeServer.position",
    )


class EpisodeServer(Base):
    """Server candidates are owned by their episode and replaced wholesale on re-sync."""
    __tablename__ = "episode_servers"

    id = Column(String(36), primary_key=True)
    episode_id = Column(String(36), ForeignKey("episodes.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String(200))
    url = Column(String(1000), nullable=False)
    type = Column(String(32), nullable=False, default="unknown")
    quality = Column(String(8), nullable=False, default="HD")
    is_working = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, nullable=False, default=4)

    episode = relationship("EpisodeCache", back_populates="servers")
