from sqlalchemy import Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from pcbcrm.models.base import AuditMixin, Base, UUIDPrimaryKeyMixin

DEAL_STAGES: tuple[str, ...] = (
    "lead",
    "contacted",
    "qualified",
    "proposal",
    "negotiation",
    "closed_won",
    "closed_lost",
)


class Deal(Base, UUIDPrimaryKeyMixin, AuditMixin):
    """A merchant opportunity moving through the sales pipeline."""

    __tablename__ = "deals"
    __table_args__ = (
        Index("ix_deals_stage_updated_at_id", "stage", "updated_at", "id"),
        Index("ix_deals_created_at_id", "created_at", "id"),
    )

    business_name: Mapped[str] = mapped_column(String(200), nullable=False)
    stage: Mapped[str] = mapped_column(
        String(30), server_default="lead", default="lead", nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), server_default="active", default="active", nullable=False
    )
    assigned_to: Mapped[str | None] = mapped_column(String(100), nullable=True)
    estimated_monthly_volume: Mapped[float] = mapped_column(
        Float, server_default="0", default=0.0, nullable=False
    )
    deal_probability: Mapped[int] = mapped_column(
        Integer, server_default="0", default=0, nullable=False
    )
    temperature: Mapped[str | None] = mapped_column(String(10), nullable=True)
    priority: Mapped[str | None] = mapped_column(String(10), nullable=True)
