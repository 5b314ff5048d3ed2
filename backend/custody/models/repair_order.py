from __future__ import annotations
from datetime import datetime
from typing import Optional, List
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Boolean, DateTime, ForeignKey, JSON, Text
from custody.models.authz import Base
from custody.utils.clock import utcnow

class RepairWorkOrder(Base):
    __tablename__ = 'repair_work_orders'
    # Status constants
    STATUS_RECEIVED = 'RECEIVED'
    STATUS_DIAGNOSING = 'DIAGNOSING'
    STATUS_ON_PROGRESS = 'ON_PROGRESS'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_SCRAPPED = 'SCRAPPED'
    ALL_STATUSES = (STATUS_RECEIVED, STATUS_DIAGNOSING, STATUS_ON_PROGRESS, STATUS_COMPLETED, STATUS_SCRAPPED)
    ACTIVE_STATUSES = (STATUS_RECEIVED, STATUS_DIAGNOSING, STATUS_ON_PROGRESS)

    TYPE_ROUTINE = 'ROUTINE'
    TYPE_ON_DEMAND = 'ON_DEMAND'
    TYPE_EMERGENCY = 'EMERGENCY'
    ALL_TYPES = (TYPE_ROUTINE, TYPE_ON_DEMAND, TYPE_EMERGENCY)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey('assets.id', ondelete='CASCADE'), nullable=False, index=True)
    ticket_id: Mapped[Optional[int]] = mapped_column(ForeignKey('service_tickets.id', ondelete='SET NULL'), nullable=True, index=True)
    maintenance_id: Mapped[Optional[int]] = mapped_column(ForeignKey('maintenance_tasks.id', ondelete='SET NULL'), nullable=True, index=True)
    repair_type: Mapped[str] = mapped_column(String(16), nullable=False, default=TYPE_ON_DEMAND)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_RECEIVED, index=True)
    assigned_to: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    qc_passed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    parts_replaced: Mapped[List[str]] = mapped_column(JSON, default=list)
    repair_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    warranty_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    warranty_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    warranty_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    repaired_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    deleted_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    asset = relationship('Asset', back_populates='repair_orders')

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and self.status in self.ACTIVE_STATUSES

# Status flow: RECEIVED -> (DIAGNOSING) -> (ON_PROGRESS) -> COMPLETED
# A failed quality check still ends the cycle as COMPLETED with qc_passed=False.
