"""SQLAlchemy models."""
from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

APPLICATION_STATUSES = ("Applied", "Interview", "Offer", "Rejected")


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class EmailCredential(Base):
    """OAuth token pair for a user's mailbox. refresh_token is never null; no row means disconnected."""
    __tablename__ = "email_credentials"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_email_credentials_user_provider"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(32), nullable=False, default="gmail")
    email = Column(String, nullable=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Application(Base):
    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    company = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    status = Column(String, nullable=False, default="Applied")  # Applied, Interview, Offer, Rejected
    location = Column(String, nullable=False)
    date_applied = Column(Date, nullable=False)
    source = Column(String, nullable=True)  # Email, Manual, ...
    source_message_id = Column(String, nullable=True, index=True)  # provider message id
    confidence_score = Column(Integer, default=0)
    remote_policy = Column(String, nullable=True)
    salary = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    status_history = relationship(
        "StatusHistory",
        back_populates="application",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class StatusHistory(Base):
    """Status transitions for an application (first row has old_status=None)."""
    __tablename__ = "status_history"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    old_status = Column(String, nullable=True)
    new_status = Column(String, nullable=False)
    changed_at = Column(DateTime, default=utcnow)

    application = relationship("Application", back_populates="status_history")


class OAuthState(Base):
    """OAuth CSRF state for the Gmail connect flow, bound to the user who started it."""
    __tablename__ = "oauth_state"

    state_token = Column(String(64), primary_key=True)
    kind = Column(String(32), nullable=False, index=True)  # gmail
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    redirect_url = Column(String(512), nullable=True)
    created_at = Column(DateTime, nullable=False)


# Indexes for duplicate lookups and listing
Index("ix_applications_user_company_title_date", Application.user_id, Application.company, Application.title, Application.date_applied)
Index("ix_applications_user_date_applied", Application.user_id, Application.date_applied)
Index("ix_applications_user_source_message", Application.user_id, Application.source_message_id, unique=True)
