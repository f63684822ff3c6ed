from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Envelope string of the tenant's database service credential; never plaintext.
    dedicated_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Setup metadata columns arrive in a later migration; older deployments lack them.
    dedicated_key_saved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    setup_completed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)


class OrgSettings(Base):
    __tablename__ = "org_settings"

    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), primary_key=True)
    # Non-secret tenant database coordinates.
    supabase_url: Mapped[str | None] = mapped_column(String, nullable=True)
    anon_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    storage_profile: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    permissions: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    storage_grace_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OrgMembership(Base):
    __tablename__ = "org_memberships"
    __table_args__ = (UniqueConstraint("org_id", "user_id", name="uq_org_memberships_org_user"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    # Free-form role string; admin and owner gate credential and storage changes.
    role: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
