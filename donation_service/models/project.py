from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, func
import uuid

from donation_service.models.base import Base


class Project(Base):
    """Foundation project that can receive earmarked donations.

    Bilingual fields hold ``{"en": ..., "ms": ...}`` objects, see schemas/localized.py.
    """
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slug = Column(String(255), unique=True, nullable=False, index=True)
    title = Column(JSON, nullable=False)
    subtitle = Column(JSON, nullable=True)
    description = Column(JSON, nullable=True)
    content = Column(JSON, nullable=True)
    is_published = Column(Boolean, nullable=False, default=False)

    # Donation configuration, amounts in sen
    donation_enabled = Column(Boolean, nullable=False, default=False)
    donation_goal = Column(Integer, nullable=True)
    donation_raised = Column(Integer, nullable=False, default=0)
    gateway_category_code = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Project(slug={self.slug}, raised={self.donation_raised})>"
