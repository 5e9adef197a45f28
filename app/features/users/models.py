"""
User model mirrored from the identity provider, plus role assignments.
"""
from datetime import datetime
from sqlalchemy import String, Boolean, ForeignKey, Table, Column, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid, utcnow


# User-Role relationship. Resolution unions the grants of every assigned role.
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_code", String(64), ForeignKey("roles.code", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("assigned_by_id", String(26), nullable=True),
)


class User(Base, TimestampMixin):
    """
    User known to the access engine.

    Authentication happens upstream; this row only carries what resolution
    needs: identity, the active flag and (through user_roles) role codes.
    """
    __tablename__ = "users"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    
    # Inactive users resolve to the empty permission set
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    
    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r})>"
