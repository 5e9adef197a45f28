"""
Feature flags, owner access overrides and customer visibility rules.
"""
import enum
from sqlalchemy import String, Text, Boolean, Integer, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class OwnerType(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    SUPPLIER = "SUPPLIER"


class Visibility(str, enum.Enum):
    SHOW = "SHOW"
    HIDE = "HIDE"
    RESTRICTED = "RESTRICTED"


class FeatureFlag(Base, TimestampMixin):
    """Global on/off switch for a feature."""
    __tablename__ = "feature_flags"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<FeatureFlag(key={self.key!r}, enabled={self.is_enabled})>"


class FeatureAccessOverride(Base, TimestampMixin):
    """
    Owner-specific replacement for a flag's global value.

    The row's is_enabled wins outright over the flag, in either direction.
    """
    __tablename__ = "feature_access_overrides"
    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", "feature_key", name="uq_feature_access_owner"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    owner_type: Mapped[OwnerType] = mapped_column(Enum(OwnerType, native_enum=False, length=10), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    feature_key: Mapped[str] = mapped_column(
        String(100), ForeignKey("feature_flags.key", ondelete="CASCADE"), nullable=False
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    def __repr__(self) -> str:
        return f"<FeatureAccessOverride({self.owner_type.value}:{self.owner_id}, {self.feature_key!r}={self.is_enabled})>"


class CustomerFeatureVisibility(Base, TimestampMixin):
    """
    Per-customer visibility rule for a portal feature.

    RESTRICTED shows the feature only once the customer's profile completion
    reaches condition_profile_percent (no threshold means always shown).
    """
    __tablename__ = "customer_feature_visibility"
    __table_args__ = (
        UniqueConstraint("customer_id", "feature_code", name="uq_customer_feature_visibility"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    feature_code: Mapped[str] = mapped_column(String(100), nullable=False)
    visibility: Mapped[Visibility] = mapped_column(
        Enum(Visibility, native_enum=False, length=12), nullable=False, default=Visibility.SHOW
    )
    condition_profile_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    def __repr__(self) -> str:
        return f"<CustomerFeatureVisibility({self.customer_id}, {self.feature_code!r}={self.visibility.value})>"
