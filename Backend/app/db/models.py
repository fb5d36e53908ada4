from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String

from app.db.base import Base


class AiJobRecord(Base):
    __tablename__ = "ai_jobs"

    id = Column(String, primary_key=True, index=True)  # UUID string
    file_name = Column(String, nullable=False)
    phase = Column(String, nullable=False, index=True)   # queued, running, complete, error
    progress = Column(Integer, default=0)
    message = Column(String, default="")
    processed_items = Column(Integer, nullable=True)
    total_items = Column(Integer, nullable=True)
    result_payload = Column(JSON, nullable=True)         # file reference + row failure summary
    cancelled = Column(Boolean, default=False)
    version = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_updated = Column(DateTime(timezone=True), nullable=False)
