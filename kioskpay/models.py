"""
Square Connection Models
Database models for storing Square OAuth tokens, pending OAuth state and payment records
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from .database import Base
from .utils import utcnow


class SquareConnection(Base):
    """Square OAuth tokens and merchant information for one organization"""

    __tablename__ = "square_connections"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), unique=True, nullable=False, index=True)
    merchant_id = Column(String(255), nullable=True, index=True)
    location_id = Column(String(255), nullable=True, index=True)
    access_token = Column(Text, nullable=False)  # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    expires_at = Column(DateTime, nullable=True)
    merchant_email = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SquarePendingToken(Base):
    """OAuth state issued to a kiosk, polled until tokens are obtained"""

    __tablename__ = "square_pending_tokens"

    id = Column(Integer, primary_key=True, index=True)
    state = Column(String(255), unique=True, nullable=False, index=True)
    organization_id = Column(String(255), nullable=False)
    device_id = Column(String(255), nullable=True)
    access_token = Column(Text, nullable=True)  # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    merchant_id = Column(String(255), nullable=True)
    location_id = Column(String(255), nullable=True)
    location_data = Column(Text, nullable=True)  # JSON list of selectable locations
    expires_at = Column(DateTime, nullable=True)
    obtained = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)


class PaymentRecord(Base):
    """Local copy of payments taken through the kiosk"""

    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), nullable=False, index=True)
    square_payment_id = Column(String(255), unique=True, nullable=False)
    square_order_id = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    tip_cents = Column(Integer, default=0)
    status = Column(String(50), nullable=True)
    payment_data = Column(Text, nullable=True)  # Raw Square payment JSON
    created_at = Column(DateTime, default=utcnow)
