from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on PostgreSQL while keeping SQLite-backed tests portable.
_JSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Subdomains route tenants and must stay globally unique.
    subdomain: Mapped[str] = mapped_column(String, unique=True, index=True)
    contact_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_address: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_person_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AppUser(Base):
    __tablename__ = "app_users"
    __table_args__ = (Index("ix_app_users_tenant_email", "tenant_id", "email"),)

    # Reuse the identity provider's user id so sessions map to accounts directly.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist the role as a plain string (ADMIN | COUNSELOR).
    role: Mapped[str] = mapped_column(String)
    # Gate access for disabled users without deleting history.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SetupToken(Base):
    __tablename__ = "setup_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_name: Mapped[str] = mapped_column(String)
    subdomain: Mapped[str] = mapped_column(String)
    admin_email: Mapped[str] = mapped_column(String)
    # Store only the salted hash; the plaintext leaves the process once.
    token_hash: Mapped[str] = mapped_column(String, unique=True)
    # Non-secret digest prefix used to narrow the hash scan.
    token_lookup: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Free-form operator identity for out-of-band issuance.
    issued_by: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Set exactly once when the token is consumed.
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Invitation(Base):
    __tablename__ = "invitations"
    __table_args__ = (Index("ix_invitations_tenant_email", "tenant_id", "email"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String)
    invited_by: Mapped[str] = mapped_column(String)
    # Resend replaces hash, lookup and expiry on the same record.
    token_hash: Mapped[str] = mapped_column(String, unique=True)
    token_lookup: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Terminal states are timestamps so transitions stay auditable.
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SecurityEvent(Base):
    __tablename__ = "security_events"
    __table_args__ = (Index("ix_security_events_tenant_created", "tenant_id", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Allow null tenant_id for pre-auth events such as unknown-token attempts.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Persist a closed event taxonomy for investigation queries.
    event_type: Mapped[str] = mapped_column(String, index=True)
    severity: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Client identifier (network origin) used by rate limiting and aggregation.
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Keep details sanitized; plaintext tokens never land here.
    details_json: Mapped[dict[str, Any] | None] = mapped_column(_JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
