from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, DateTime, ForeignKey
from custody.models.authz import Base
from custody.utils.clock import utcnow

class Asset(Base):
    __tablename__ = 'assets'
    # Status constants
    STATUS_OK = 'OK'
    STATUS_BAD = 'BAD'
    STATUS_IN_TRANSIT_TO_CENTER = 'IN_TRANSIT_TO_CENTER'
    STATUS_IN_REPAIR = 'IN_REPAIR'
    STATUS_READY_FOR_PICKUP = 'READY_FOR_PICKUP'
    STATUS_IN_TRANSIT_TO_FIELD = 'IN_TRANSIT_TO_FIELD'
    STATUS_SCRAPPED = 'SCRAPPED'
    ALL_STATUSES = (
        STATUS_OK, STATUS_BAD, STATUS_IN_TRANSIT_TO_CENTER, STATUS_IN_REPAIR,
        STATUS_READY_FOR_PICKUP, STATUS_IN_TRANSIT_TO_FIELD, STATUS_SCRAPPED,
    )
    # Custody is with the repair center or a courier
    IN_PROCESS_STATUSES = (
        STATUS_IN_TRANSIT_TO_CENTER, STATUS_IN_REPAIR, STATUS_READY_FOR_PICKUP, STATUS_IN_TRANSIT_TO_FIELD,
    )
    # Accepted by repair intake
    INTAKE_STATUSES = (STATUS_BAD, STATUS_IN_TRANSIT_TO_CENTER, STATUS_IN_REPAIR)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    serial_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    asset_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    organization_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_OK, index=True)
    replaces_asset_id: Mapped[Optional[int]] = mapped_column(ForeignKey('assets.id', ondelete='SET NULL'), nullable=True)
    replaced_by_asset_id: Mapped[Optional[int]] = mapped_column(ForeignKey('assets.id', ondelete='SET NULL'), nullable=True)
    replacement_ticket_id: Mapped[Optional[int]] = mapped_column(ForeignKey('service_tickets.id', ondelete='SET NULL', use_alter=True, name='fk_assets_replacement_ticket'), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    ticket_details = relationship('TicketAssetDetail', back_populates='asset', cascade='all, delete-orphan')
    repair_orders = relationship('RepairWorkOrder', back_populates='asset', cascade='all, delete-orphan')
    maintenance_details = relationship('MaintenanceAssetDetail', back_populates='asset', cascade='all, delete-orphan')

# Status flow: OK -> BAD -> IN_TRANSIT_TO_CENTER -> IN_REPAIR -> READY_FOR_PICKUP -> (IN_TRANSIT_TO_FIELD) -> OK
# SCRAPPED is terminal; only the Synchronization Engine writes `status`.
