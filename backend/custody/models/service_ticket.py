from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Boolean, DateTime, ForeignKey, Text, UniqueConstraint
from custody.models.authz import Base
from custody.utils.clock import utcnow

class ServiceTicket(Base):
    __tablename__ = 'service_tickets'
    # Status constants
    STATUS_OPEN = 'OPEN'
    STATUS_PENDING_APPROVAL = 'PENDING_APPROVAL'
    STATUS_APPROVED_ON_SITE = 'APPROVED_ON_SITE'
    STATUS_IN_DELIVERY = 'IN_DELIVERY'
    STATUS_RECEIVED = 'RECEIVED'
    STATUS_IN_PROGRESS = 'IN_PROGRESS'
    STATUS_RESOLVED = 'RESOLVED'
    STATUS_RETURN_SHIPPED = 'RETURN_SHIPPED'
    STATUS_CLOSED = 'CLOSED'
    ALL_STATUSES = (
        STATUS_OPEN, STATUS_PENDING_APPROVAL, STATUS_APPROVED_ON_SITE, STATUS_IN_DELIVERY,
        STATUS_RECEIVED, STATUS_IN_PROGRESS, STATUS_RESOLVED, STATUS_RETURN_SHIPPED, STATUS_CLOSED,
    )
    # Statuses where repair work may be under way (resolution rule applies)
    REPAIR_PHASE_STATUSES = (STATUS_RECEIVED, STATUS_APPROVED_ON_SITE, STATUS_IN_PROGRESS, STATUS_RESOLVED)

    LOCATION_REPAIR_CENTER = 'REPAIR_CENTER'
    LOCATION_ON_SITE = 'ON_SITE'
    ALL_LOCATIONS = (LOCATION_REPAIR_CENTER, LOCATION_ON_SITE)

    PRIORITIES = ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_OPEN, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default='MEDIUM')
    repair_location: Mapped[str] = mapped_column(String(16), nullable=False, default=LOCATION_REPAIR_CENTER)
    organization_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    reported_by: Mapped[int] = mapped_column(Integer, nullable=False)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    deleted_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    details = relationship(
        'TicketAssetDetail', back_populates='ticket', cascade='all, delete-orphan',
        order_by='TicketAssetDetail.id',
    )
    delivery = relationship('DeliveryRecord', back_populates='ticket', uselist=False)
    return_record = relationship('ReturnRecord', back_populates='ticket', uselist=False)

    __mapper_args__ = {'version_id_col': version}

    @property
    def asset_ids(self):
        return [d.asset_id for d in self.details]

    def detail_for(self, asset_id: int) -> Optional['TicketAssetDetail']:
        for d in self.details:
            if d.asset_id == asset_id:
                return d
        return None


class TicketAssetDetail(Base):
    __tablename__ = 'ticket_asset_details'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey('assets.id', ondelete='CASCADE'), nullable=False, index=True)
    request_replacement: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    replacement_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    issue_notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    ticket = relationship('ServiceTicket', back_populates='details')
    asset = relationship('Asset', back_populates='ticket_details')

    __table_args__ = (UniqueConstraint('ticket_id', 'asset_id', name='uq_ticket_asset'),)

# Status flow: OPEN -> IN_DELIVERY -> RECEIVED -> IN_PROGRESS -> RESOLVED -> (RETURN_SHIPPED) -> CLOSED
# On-site branch: OPEN -> PENDING_APPROVAL -> APPROVED_ON_SITE -> IN_PROGRESS -> RESOLVED -> CLOSED
