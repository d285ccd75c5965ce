"""
Broker Sync - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for broker accounts and journal trades.

TABLES:
- broker_accounts: Connected brokerage accounts
- journal_trades: Synced trades, unique per (user, platform, platform_trade_id)

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """
    Declarative base for broker sync models.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class TimestampMixin:
    """created_at / updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Record creation timestamp (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last update timestamp (UTC)"
    )


# ============================================================
# BROKER ACCOUNT MODEL
# ============================================================

class BrokerAccountModel(Base, TimestampMixin):
    """
    Persisted brokerage connection.

    Mutated on token rotation and on every sync attempt.
    """

    __tablename__ = "broker_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    # Credentials
    api_key: Mapped[Optional[str]] = mapped_column(String(256))
    api_secret: Mapped[Optional[str]] = mapped_column(String(256))
    access_token: Mapped[Optional[str]] = mapped_column(Text)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text)
    token_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    extras: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Sync state
    sync_status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    __table_args__ = (
        Index("ix_broker_accounts_user_active", "user_id", "is_active"),
    )


# ============================================================
# JOURNAL TRADE MODEL
# ============================================================

class JournalTradeModel(Base, TimestampMixin):
    """
    Persisted journal trade.

    The natural key (user_id, platform, platform_trade_id) is unique.
    """

    __tablename__ = "journal_trades"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    platform_trade_id: Mapped[str] = mapped_column(String(256), nullable=False)

    symbol: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    instrument_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)

    entry_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    exit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    profit_loss: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))

    entry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    exit_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    exchange: Mapped[Optional[str]] = mapped_column(String(32))
    product_type: Mapped[Optional[str]] = mapped_column(String(32))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "platform_trade_id", name="uq_journal_trades_natural_key"),
        Index("ix_journal_trades_user_platform", "user_id", "platform"),
    )
