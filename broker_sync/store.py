"""
Broker Sync - Trade Store Contract.

============================================================
PURPOSE
============================================================
Persistence contract used by the resolver and orchestrator,
plus an in-memory implementation for tests and local runs.

The SQLAlchemy implementation lives in repository.py.

============================================================
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .types import (
    BrokerAccount,
    CanonicalTrade,
    Platform,
    SyncStatus,
    TokenUpdate,
    utc_now,
)


class DuplicateTradeError(ValueError):
    """A trade with the same natural key already exists."""


# ============================================================
# STORE CONTRACT
# ============================================================

class TradeStore(ABC):
    """Persistence for broker accounts and journal trades."""

    @staticmethod
    def new_id() -> str:
        """Generate a primary key for a new record."""
        return uuid.uuid4().hex

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    @abstractmethod
    async def find_trade(
        self,
        user_id: str,
        platform: Platform,
        platform_trade_id: str,
    ) -> Optional[CanonicalTrade]:
        """Find a trade by its natural key."""
        pass

    @abstractmethod
    async def insert_trade(self, trade: CanonicalTrade) -> CanonicalTrade:
        """
        Insert a new trade.

        Raises:
            DuplicateTradeError: Natural key already taken
        """
        pass

    @abstractmethod
    async def update_trade(self, trade: CanonicalTrade) -> CanonicalTrade:
        """Overwrite an existing trade identified by id."""
        pass

    @abstractmethod
    async def list_trades(
        self,
        user_id: str,
        platform: Optional[Platform] = None,
    ) -> List[CanonicalTrade]:
        """List a user's trades."""
        pass

    # --------------------------------------------------------
    # ACCOUNTS
    # --------------------------------------------------------

    @abstractmethod
    async def list_accounts(
        self,
        user_id: str,
        platform: Optional[Platform] = None,
        active_only: bool = True,
    ) -> List[BrokerAccount]:
        """List a user's accounts ordered by creation time."""
        pass

    @abstractmethod
    async def list_users_with_active_accounts(self) -> List[str]:
        """User ids owning at least one active account."""
        pass

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[BrokerAccount]:
        pass

    @abstractmethod
    async def save_account(self, account: BrokerAccount) -> BrokerAccount:
        """Insert or replace an account."""
        pass

    @abstractmethod
    async def update_account_tokens(self, account_id: str, tokens: TokenUpdate) -> None:
        """Persist rotated tokens."""
        pass

    @abstractmethod
    async def update_sync_status(
        self,
        account_id: str,
        status: SyncStatus,
        last_sync_at: datetime,
    ) -> None:
        """Record the outcome of a sync attempt."""
        pass


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemoryTradeStore(TradeStore):
    """Dictionary-backed store."""

    def __init__(self):
        self._trades: Dict[str, CanonicalTrade] = {}
        self._trade_index: Dict[Tuple[str, Platform, str], str] = {}
        self._accounts: Dict[str, BrokerAccount] = {}

    async def find_trade(self, user_id, platform, platform_trade_id):
        trade_id = self._trade_index.get((user_id, platform, platform_trade_id))
        if trade_id is None:
            return None
        return replace(self._trades[trade_id])

    async def insert_trade(self, trade):
        key = (trade.user_id, trade.platform, trade.platform_trade_id)
        if key in self._trade_index:
            raise DuplicateTradeError(f"Duplicate trade: {trade.platform_trade_id}")
        self._trades[trade.id] = replace(trade)
        self._trade_index[key] = trade.id
        return trade

    async def update_trade(self, trade):
        if trade.id not in self._trades:
            raise KeyError(f"Trade not found: {trade.id}")
        self._trades[trade.id] = replace(trade)
        return trade

    async def list_trades(self, user_id, platform=None):
        return [
            replace(trade) for trade in self._trades.values()
            if trade.user_id == user_id and (platform is None or trade.platform == platform)
        ]

    async def list_accounts(self, user_id, platform=None, active_only=True):
        accounts = [
            replace(account) for account in self._accounts.values()
            if account.user_id == user_id
            and (platform is None or account.platform == platform)
            and (account.is_active or not active_only)
        ]
        return sorted(accounts, key=lambda account: account.created_at)

    async def list_users_with_active_accounts(self):
        users: List[str] = []
        for account in sorted(self._accounts.values(), key=lambda a: a.created_at):
            if account.is_active and account.user_id not in users:
                users.append(account.user_id)
        return users

    async def get_account(self, account_id):
        account = self._accounts.get(account_id)
        return replace(account) if account else None

    async def save_account(self, account):
        self._accounts[account.id] = replace(account)
        return account

    async def update_account_tokens(self, account_id, tokens):
        account = self._accounts[account_id]
        account.access_token = tokens.access_token
        if tokens.refresh_token:
            account.refresh_token = tokens.refresh_token
        account.token_expiry = tokens.token_expiry

    async def update_sync_status(self, account_id, status, last_sync_at):
        account = self._accounts[account_id]
        account.sync_status = status
        account.last_sync_at = last_sync_at or utc_now()
