from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, DateTime, ForeignKey
from custody.models.authz import Base
from custody.utils.clock import utcnow


class DeliveryRecord(Base):
    """Outbound leg: field -> repair center. One per ticket."""
    __tablename__ = 'delivery_records'
    METHOD_COURIER = 'COURIER'
    METHOD_SELF_DELIVERY = 'SELF_DELIVERY'
    ALL_METHODS = (METHOD_COURIER, METHOD_SELF_DELIVERY)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), unique=True, nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False, default=METHOD_COURIER)
    courier_service: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shipped_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    sent_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    received_at_center: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    received_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    ticket = relationship('ServiceTicket', back_populates='delivery')


class ReturnRecord(Base):
    """Return leg: repair center -> field. One per ticket."""
    __tablename__ = 'return_records'
    METHOD_PICKUP = 'PICKUP'
    METHOD_COURIER = 'COURIER'
    ALL_METHODS = (METHOD_PICKUP, METHOD_COURIER)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), unique=True, nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False, default=METHOD_PICKUP)
    courier_service: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shipped_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    sent_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    received_in_field: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    received_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    ticket = relationship('ServiceTicket', back_populates='return_record')
