"""
Broker Sync - Repository.

============================================================
PURPOSE
============================================================
SQLAlchemy implementation of the TradeStore contract.

RESPONSIBILITIES:
- Save/load broker accounts
- Record token rotation and sync status
- Look up and upsert journal trades by natural key

CRITICAL REQUIREMENTS:
- Every write commits in its own transaction
- The natural-key unique constraint is enforced by the database

============================================================
"""

import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from dotenv import load_dotenv
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base, BrokerAccountModel, JournalTradeModel
from .store import DuplicateTradeError, TradeStore
from .types import (
    BrokerAccount,
    CanonicalTrade,
    InstrumentType,
    Platform,
    SyncStatus,
    TokenUpdate,
    TradeDirection,
    TradeStatus,
    utc_now,
)


logger = logging.getLogger(__name__)


# ============================================================
# ENGINE
# ============================================================

def get_database_url() -> str:
    """Get database URL from environment."""
    load_dotenv()
    url = os.getenv("DATABASE_URL")
    if not url:
        url = "sqlite+aiosqlite:///./broker_sync.db"
        logger.warning(f"DATABASE_URL not set, using default: {url}")
    return url


def create_store_engine(url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for the trade store.

    Args:
        url: SQLAlchemy async URL; defaults to DATABASE_URL
        echo: Log SQL statements

    Returns:
        AsyncEngine
    """
    url = url or get_database_url()
    kwargs = {"echo": echo, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = 10
        kwargs["max_overflow"] = 20

    engine = create_async_engine(url, **kwargs)
    logger.info(f"Trade store engine created: {url.split('@')[-1]}")
    return engine


async def create_tables(engine: AsyncEngine) -> None:
    """Create broker sync tables if missing."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


# ============================================================
# SQLALCHEMY TRADE STORE
# ============================================================

class SqlAlchemyTradeStore(TradeStore):
    """
    Trade store backed by SQLAlchemy async sessions.
    """

    def __init__(self, session_factory: async_sessionmaker):
        """
        Initialize repository.

        Args:
            session_factory: Factory producing AsyncSession instances
        """
        self._session_factory = session_factory

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> "SqlAlchemyTradeStore":
        return cls(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))

    # --------------------------------------------------------
    # MAPPING
    # --------------------------------------------------------

    @staticmethod
    def _trade_from_model(model: JournalTradeModel) -> CanonicalTrade:
        return CanonicalTrade(
            id=model.id,
            user_id=model.user_id,
            symbol=model.symbol,
            direction=TradeDirection(model.direction),
            instrument_type=InstrumentType(model.instrument_type),
            entry_price=_decimal(model.entry_price),
            exit_price=_decimal(model.exit_price),
            quantity=_decimal(model.quantity),
            entry_at=_aware(model.entry_at),
            exit_at=_aware(model.exit_at),
            profit_loss=_decimal(model.profit_loss),
            platform=Platform.parse(model.platform),
            platform_trade_id=model.platform_trade_id,
            status=TradeStatus(model.status),
            exchange=model.exchange,
            product_type=model.product_type,
            notes=model.notes,
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
        )

    @staticmethod
    def _apply_trade(model: JournalTradeModel, trade: CanonicalTrade) -> None:
        model.symbol = trade.symbol
        model.direction = trade.direction.value
        model.instrument_type = trade.instrument_type.value
        model.status = trade.status.value
        model.entry_price = trade.entry_price
        model.exit_price = trade.exit_price
        model.quantity = trade.quantity
        model.profit_loss = trade.profit_loss
        model.entry_at = trade.entry_at
        model.exit_at = trade.exit_at
        model.exchange = trade.exchange
        model.product_type = trade.product_type
        model.notes = trade.notes
        model.updated_at = trade.updated_at

    @staticmethod
    def _account_from_model(model: BrokerAccountModel) -> BrokerAccount:
        return BrokerAccount(
            id=model.id,
            user_id=model.user_id,
            platform=Platform.parse(model.platform),
            api_key=model.api_key,
            api_secret=model.api_secret,
            access_token=model.access_token,
            refresh_token=model.refresh_token,
            token_expiry=_aware(model.token_expiry),
            extras=dict(model.extras or {}),
            sync_status=SyncStatus(model.sync_status),
            last_sync_at=_aware(model.last_sync_at),
            is_active=model.is_active,
            created_at=_aware(model.created_at),
        )

    # --------------------------------------------------------
    # TRADE OPERATIONS
    # --------------------------------------------------------

    async def find_trade(
        self,
        user_id: str,
        platform: Platform,
        platform_trade_id: str,
    ) -> Optional[CanonicalTrade]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(JournalTradeModel).where(
                    JournalTradeModel.user_id == user_id,
                    JournalTradeModel.platform == platform.value,
                    JournalTradeModel.platform_trade_id == platform_trade_id,
                )
            )
            model = result.scalar_one_or_none()
            return self._trade_from_model(model) if model else None

    async def insert_trade(self, trade: CanonicalTrade) -> CanonicalTrade:
        async with self._session_factory() as session:
            model = JournalTradeModel(
                id=trade.id,
                user_id=trade.user_id,
                platform=trade.platform.value,
                platform_trade_id=trade.platform_trade_id,
                created_at=trade.created_at,
            )
            self._apply_trade(model, trade)
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateTradeError(f"Duplicate trade: {trade.platform_trade_id}") from e

        logger.debug(f"Created trade {trade.platform_trade_id} for user {trade.user_id}")
        return trade

    async def update_trade(self, trade: CanonicalTrade) -> CanonicalTrade:
        async with self._session_factory() as session:
            model = await session.get(JournalTradeModel, trade.id)
            if model is None:
                raise KeyError(f"Trade not found: {trade.id}")
            self._apply_trade(model, trade)
            await session.commit()

        logger.debug(f"Updated trade {trade.platform_trade_id} for user {trade.user_id}")
        return trade

    async def list_trades(
        self,
        user_id: str,
        platform: Optional[Platform] = None,
    ) -> List[CanonicalTrade]:
        async with self._session_factory() as session:
            query = select(JournalTradeModel).where(JournalTradeModel.user_id == user_id)
            if platform is not None:
                query = query.where(JournalTradeModel.platform == platform.value)
            query = query.order_by(JournalTradeModel.entry_at)
            result = await session.execute(query)
            return [self._trade_from_model(model) for model in result.scalars().all()]

    # --------------------------------------------------------
    # ACCOUNT OPERATIONS
    # --------------------------------------------------------

    async def list_accounts(
        self,
        user_id: str,
        platform: Optional[Platform] = None,
        active_only: bool = True,
    ) -> List[BrokerAccount]:
        async with self._session_factory() as session:
            query = select(BrokerAccountModel).where(BrokerAccountModel.user_id == user_id)
            if platform is not None:
                query = query.where(BrokerAccountModel.platform == platform.value)
            if active_only:
                query = query.where(BrokerAccountModel.is_active.is_(True))
            query = query.order_by(BrokerAccountModel.created_at)
            result = await session.execute(query)
            return [self._account_from_model(model) for model in result.scalars().all()]

    async def list_users_with_active_accounts(self) -> List[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BrokerAccountModel.user_id)
                .where(BrokerAccountModel.is_active.is_(True))
                .distinct()
            )
            return list(result.scalars().all())

    async def get_account(self, account_id: str) -> Optional[BrokerAccount]:
        async with self._session_factory() as session:
            model = await session.get(BrokerAccountModel, account_id)
            return self._account_from_model(model) if model else None

    async def save_account(self, account: BrokerAccount) -> BrokerAccount:
        async with self._session_factory() as session:
            model = await session.get(BrokerAccountModel, account.id)
            if model is None:
                model = BrokerAccountModel(id=account.id, created_at=account.created_at)
                session.add(model)

            model.user_id = account.user_id
            model.platform = account.platform.value
            model.api_key = account.api_key
            model.api_secret = account.api_secret
            model.access_token = account.access_token
            model.refresh_token = account.refresh_token
            model.token_expiry = account.token_expiry
            model.extras = dict(account.extras)
            model.sync_status = account.sync_status.value
            model.last_sync_at = account.last_sync_at
            model.is_active = account.is_active

            await session.commit()

        return account

    async def update_account_tokens(self, account_id: str, tokens: TokenUpdate) -> None:
        values = {
            "access_token": tokens.access_token,
            "token_expiry": tokens.token_expiry,
            "updated_at": utc_now(),
        }
        if tokens.refresh_token:
            values["refresh_token"] = tokens.refresh_token

        async with self._session_factory() as session:
            await session.execute(
                update(BrokerAccountModel)
                .where(BrokerAccountModel.id == account_id)
                .values(**values)
            )
            await session.commit()

        logger.info(f"Updated tokens for account {account_id}")

    async def update_sync_status(
        self,
        account_id: str,
        status: SyncStatus,
        last_sync_at: datetime,
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(BrokerAccountModel)
                .where(BrokerAccountModel.id == account_id)
                .values(
                    sync_status=status.value,
                    last_sync_at=last_sync_at,
                    updated_at=utc_now(),
                )
            )
            await session.commit()
