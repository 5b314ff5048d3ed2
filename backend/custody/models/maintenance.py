from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Boolean, DateTime, ForeignKey, Text, UniqueConstraint
from custody.models.authz import Base
from custody.utils.clock import utcnow

class MaintenanceTask(Base):
    __tablename__ = 'maintenance_tasks'
    # Status constants
    STATUS_SCHEDULED = 'SCHEDULED'
    STATUS_IN_PROGRESS = 'IN_PROGRESS'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_RESCHEDULED = 'RESCHEDULED'
    ALL_STATUSES = (STATUS_SCHEDULED, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_CANCELLED, STATUS_RESCHEDULED)
    ACTIVE_STATUSES = (STATUS_SCHEDULED, STATUS_IN_PROGRESS, STATUS_RESCHEDULED)

    TYPE_ROUTINE = 'ROUTINE'
    TYPE_ON_DEMAND = 'ON_DEMAND'
    TYPE_EMERGENCY = 'EMERGENCY'
    ALL_TYPES = (TYPE_ROUTINE, TYPE_ON_DEMAND, TYPE_EMERGENCY)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    task_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_SCHEDULED, index=True)
    maintenance_type: Mapped[str] = mapped_column(String(16), nullable=False, default=TYPE_ROUTINE)
    title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    organization_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    actual_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    assigned_to: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    interval_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    next_due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    auto_schedule: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    successor_task_id: Mapped[Optional[int]] = mapped_column(ForeignKey('maintenance_tasks.id', ondelete='SET NULL'), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    findings: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    deleted_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    details = relationship(
        'MaintenanceAssetDetail', back_populates='task', cascade='all, delete-orphan',
        order_by='MaintenanceAssetDetail.id',
    )

    @property
    def asset_ids(self):
        return [d.asset_id for d in self.details]


class MaintenanceAssetDetail(Base):
    __tablename__ = 'maintenance_asset_details'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    task_id: Mapped[int] = mapped_column(ForeignKey('maintenance_tasks.id', ondelete='CASCADE'), nullable=False, index=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey('assets.id', ondelete='CASCADE'), nullable=False, index=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    task = relationship('MaintenanceTask', back_populates='details')
    asset = relationship('Asset', back_populates='maintenance_details')

    __table_args__ = (UniqueConstraint('task_id', 'asset_id', name='uq_task_asset'),)

# Status flow: SCHEDULED -> (RESCHEDULED) -> IN_PROGRESS -> COMPLETED; CANCELLED from any non-terminal state.
