"""ORM models for the tender markup service - SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, Numeric, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# ── AUTH ──────────────────────────────────────────────────────────────────────
class Role(Base):
    __tablename__ = "roles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    users: Mapped[list["User"]] = relationship("User", back_populates="role")


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    role_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("roles.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    role: Mapped[Optional["Role"]] = relationship("Role", back_populates="users")


# ── MARKUP PARAMETERS ─────────────────────────────────────────────────────────
class MarkupParameter(Base):
    __tablename__ = "markup_parameters"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    order_num: Mapped[int] = mapped_column(Integer, default=0)
    default_value: Mapped[float] = mapped_column(Numeric(8, 4), default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenderMarkupPercentage(Base):
    __tablename__ = "tender_markup_percentage"
    __table_args__ = (UniqueConstraint("tender_id", "markup_parameter_id", name="uq_tender_markup_parameter"),)
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tender_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenders.id", ondelete="CASCADE"), index=True)
    markup_parameter_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("markup_parameters.id"))
    value: Mapped[float] = mapped_column(Numeric(8, 4), nullable=False)
    parameter: Mapped["MarkupParameter"] = relationship("MarkupParameter")


# ── TACTICS ───────────────────────────────────────────────────────────────────
class MarkupTactic(Base):
    __tablename__ = "markup_tactics"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    # {"мат": [step, ...], "раб": [...], ...} in the camelCase step format
    sequences: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    base_costs: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)
    is_global: Mapped[bool] = mapped_column(Boolean, default=False)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ── TENDERS ───────────────────────────────────────────────────────────────────
class Tender(Base):
    __tablename__ = "tenders"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    tender_number: Mapped[str] = mapped_column(String(100), nullable=False)
    client_name: Mapped[Optional[str]] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer, default=1)
    markup_tactic_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("markup_tactics.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    markup_tactic: Mapped[Optional["MarkupTactic"]] = relationship("MarkupTactic")
    positions: Mapped[list["ClientPosition"]] = relationship("ClientPosition", back_populates="tender")


class TenderPricingDistribution(Base):
    __tablename__ = "tender_pricing_distribution"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tender_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenders.id", ondelete="CASCADE"), unique=True)
    markup_tactic_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("markup_tactics.id"))
    # "material" | "work"
    basic_material_base_target: Mapped[str] = mapped_column(String(10), default="material")
    basic_material_markup_target: Mapped[str] = mapped_column(String(10), default="material")
    auxiliary_material_base_target: Mapped[str] = mapped_column(String(10), default="material")
    auxiliary_material_markup_target: Mapped[str] = mapped_column(String(10), default="material")
    component_material_base_target: Mapped[Optional[str]] = mapped_column(String(10))
    component_material_markup_target: Mapped[Optional[str]] = mapped_column(String(10))
    subcontract_basic_material_base_target: Mapped[Optional[str]] = mapped_column(String(10))
    subcontract_basic_material_markup_target: Mapped[Optional[str]] = mapped_column(String(10))
    subcontract_auxiliary_material_base_target: Mapped[Optional[str]] = mapped_column(String(10))
    subcontract_auxiliary_material_markup_target: Mapped[Optional[str]] = mapped_column(String(10))
    work_base_target: Mapped[str] = mapped_column(String(10), default="work")
    work_markup_target: Mapped[str] = mapped_column(String(10), default="work")
    component_work_base_target: Mapped[Optional[str]] = mapped_column(String(10))
    component_work_markup_target: Mapped[Optional[str]] = mapped_column(String(10))

    def to_mapping(self) -> dict:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns if c.name.endswith("_target")}


class SubcontractGrowthExclusion(Base):
    __tablename__ = "subcontract_growth_exclusions"
    __table_args__ = (
        UniqueConstraint("tender_id", "detail_cost_category_id", "exclusion_type", name="uq_growth_exclusion"),
    )
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tender_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenders.id", ondelete="CASCADE"), index=True)
    detail_cost_category_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    exclusion_type: Mapped[str] = mapped_column(String(20), nullable=False)  # works | materials


# ── POSITIONS & BOQ ───────────────────────────────────────────────────────────
class ClientPosition(Base):
    __tablename__ = "client_positions"
    __table_args__ = (Index("ix_client_positions_tender_number", "tender_id", "position_number"),)
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tender_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenders.id", ondelete="CASCADE"))
    position_number: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    item_no: Mapped[Optional[str]] = mapped_column(String(100))
    work_name: Mapped[str] = mapped_column(Text, nullable=False)
    unit_code: Mapped[Optional[str]] = mapped_column(String(20))
    volume: Mapped[Optional[float]] = mapped_column(Numeric(18, 4))
    client_note: Mapped[Optional[str]] = mapped_column(Text)
    hierarchy_level: Mapped[int] = mapped_column(Integer, default=0)
    is_additional: Mapped[bool] = mapped_column(Boolean, default=False)
    parent_position_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("client_positions.id", ondelete="SET NULL")
    )
    total_commercial_material: Mapped[Optional[float]] = mapped_column(Numeric(18, 2))
    total_commercial_work: Mapped[Optional[float]] = mapped_column(Numeric(18, 2))
    tender: Mapped["Tender"] = relationship("Tender", back_populates="positions")
    boq_items: Mapped[list["BoqItem"]] = relationship("BoqItem", back_populates="client_position")


class BoqItem(Base):
    __tablename__ = "boq_items"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    tender_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tenders.id", ondelete="CASCADE"), index=True)
    client_position_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("client_positions.id", ondelete="CASCADE")
    )
    sort_number: Mapped[int] = mapped_column(Integer, default=0)
    boq_item_type: Mapped[str] = mapped_column(String(20), nullable=False)  # мат | суб-мат | мат-комп. | раб | суб-раб | раб-комп.
    quantity: Mapped[Optional[float]] = mapped_column(Numeric(18, 4))
    unit_rate: Mapped[Optional[float]] = mapped_column(Numeric(18, 4))
    total_amount: Mapped[Optional[float]] = mapped_column(Numeric(18, 2))
    detail_cost_category_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False))
    commercial_markup: Mapped[Optional[float]] = mapped_column(Numeric(12, 6))
    total_commercial_material_cost: Mapped[Optional[float]] = mapped_column(Numeric(18, 2))
    total_commercial_work_cost: Mapped[Optional[float]] = mapped_column(Numeric(18, 2))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    client_position: Mapped["ClientPosition"] = relationship("ClientPosition", back_populates="boq_items")
