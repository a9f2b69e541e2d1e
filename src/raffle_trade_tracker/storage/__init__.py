"""Storage layer - Record store schema and repositories."""

from raffle_trade_tracker.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from raffle_trade_tracker.storage.models import (
    Base,
    LedgerApplicationModel,
    RaffleModel,
    TicketModel,
    TradeEventModel,
    WalletUserModel,
)
from raffle_trade_tracker.storage.repos import (
    LedgerApplicationRepository,
    RaffleDTO,
    RaffleRepository,
    TicketRepository,
    TradeEventDTO,
    TradeEventRepository,
    WalletUserRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "LedgerApplicationModel",
    "LedgerApplicationRepository",
    "RaffleDTO",
    "RaffleModel",
    "RaffleRepository",
    "TicketModel",
    "TicketRepository",
    "TradeEventDTO",
    "TradeEventModel",
    "TradeEventRepository",
    "WalletUserModel",
    "WalletUserRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
