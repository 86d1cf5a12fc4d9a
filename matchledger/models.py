from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from matchledger.database import Base

USER_TYPES = ("founder", "investor")
PRIORITIES = ("high", "medium", "low")


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(180), unique=True, nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(80), nullable=False)
    last_name: Mapped[str] = mapped_column(String(80), default="")
    company_name: Mapped[str] = mapped_column(String(120), default="")
    bio: Mapped[str] = mapped_column(Text, default="")
    user_type: Mapped[str] = mapped_column(String(16), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("user_type IN ('founder', 'investor')", name="ck_profile_user_type"),
    )

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class PriorityMatch(Base):
    __tablename__ = "priority_matches"
    __table_args__ = (
        UniqueConstraint("founder_id", "investor_id", name="uq_priority_match_pair"),
        CheckConstraint("founder_id <> investor_id", name="ck_priority_match_distinct"),
        CheckConstraint(
            "priority IS NULL OR priority IN ('high', 'medium', 'low')", name="ck_priority_match_priority"
        ),
        CheckConstraint("NOT (not_interested AND priority IS NOT NULL)", name="ck_priority_match_not_interested"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # Investor-investor pairs keep the lower investor id in this column.
    founder_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), index=True)
    investor_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), index=True)
    priority: Mapped[str | None] = mapped_column(String(16), nullable=True)
    not_interested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    set_by: Mapped[int] = mapped_column(ForeignKey("profiles.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def partner_of(self, profile_id: int) -> int:
        return self.investor_id if self.founder_id == profile_id else self.founder_id


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    actor_profile_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor_label: Mapped[str] = mapped_column(String(120), default="anonymous")
    action: Mapped[str] = mapped_column(String(120), nullable=False)
    target_type: Mapped[str] = mapped_column(String(80), default="")
    target_id: Mapped[str] = mapped_column(String(80), default="")
    status: Mapped[str] = mapped_column(String(40), default="success")
    details: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AppUser(Base):
    __tablename__ = "app_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(180), unique=True, nullable=False, index=True)
    profile_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(280), nullable=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[int] = mapped_column(Integer, default=0)


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(80), primary_key=True)
    value: Mapped[str] = mapped_column(String(240), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
