from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from folioledger.db.types import UTCDateTime
from folioledger.utils.time import utcnow


class Base(DeclarativeBase):
    pass


TradeSide = Enum("BUY", "SELL", name="trade_side")
MatchingPolicy = Enum("FIFO", "LIFO", name="matching_policy")
MatchStatus = Enum("OPEN", "PARTIAL", "CLOSED", "UNMATCHED", name="match_status")
Granularity = Enum("DAILY", "WEEKLY", "MONTHLY", name="snapshot_granularity")
CashFlowType = Enum(
    "DEPOSIT",
    "WITHDRAWAL",
    "TRADE_BUY",
    "TRADE_SELL",
    "FUND_SUBSCRIPTION",
    "FUND_REDEMPTION",
    "DIVIDEND",
    "FEE",
    "OTHER",
    name="cash_flow_type",
)
# Money crossing the portfolio boundary; excluded from time-weighted returns.
EXTERNAL_FLOW_TYPES = ("DEPOSIT", "WITHDRAWAL", "FUND_SUBSCRIPTION", "FUND_REDEMPTION")
UnitTxnType = Enum("SUBSCRIBE", "REDEEM", name="unit_txn_type")
ExecutionStatus = Enum("started", "in_progress", "completed", "failed", "cancelled", name="execution_status")
ExecutionKind = Enum("SINGLE", "BULK", name="execution_kind")

# Scales: quantities/prices 8, fund units/NAV 6, money 2, ratios 8.
Qty = Numeric(28, 8)
Px = Numeric(28, 8)
Units = Numeric(28, 6)
Nav = Numeric(28, 6)
Money = Numeric(24, 2)
Ratio = Numeric(18, 8)

PORTFOLIO_SNAPSHOT_SCHEMA_VERSION = 2


class Portfolio(Base):
    __tablename__ = "portfolios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    base_currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    is_fund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    matching_policy: Mapped[str] = mapped_column(MatchingPolicy, nullable=False, default="FIFO")
    total_outstanding_units: Mapped[Decimal] = mapped_column(Units, nullable=False, default=Decimal("0"))
    seed_nav_per_unit: Mapped[Decimal] = mapped_column(Nav, nullable=False, default=Decimal("1"))
    nav_per_unit: Mapped[Optional[Decimal]] = mapped_column(Nav)
    last_nav_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    trades: Mapped[list["Trade"]] = relationship(back_populates="portfolio")
    holdings: Mapped[list["InvestorHolding"]] = relationship(back_populates="portfolio")


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    asset_type: Mapped[str] = mapped_column(String(32), nullable=False, default="STOCK")
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class AssetPrice(Base):
    __tablename__ = "asset_prices"
    __table_args__ = (
        UniqueConstraint("asset_id", "price_date"),
        Index("ix_asset_prices_lookup", "asset_id", "price_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), nullable=False)
    price_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    price: Mapped[Decimal] = mapped_column(Px, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="MANUAL")
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    holdings: Mapped[list["InvestorHolding"]] = relationship(back_populates="account")


# --- Trade ledger (append-only source of truth) ---


class Trade(Base):
    __tablename__ = "trades"
    __table_args__ = (Index("ix_trades_scope", "portfolio_id", "asset_id", "trade_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), nullable=False)
    side: Mapped[str] = mapped_column(TradeSide, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    price: Mapped[Decimal] = mapped_column(Px, nullable=False)
    fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    tax: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    trade_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(50))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    portfolio: Mapped["Portfolio"] = relationship(back_populates="trades")
    asset: Mapped["Asset"] = relationship()
    match_state: Mapped[Optional["TradeMatchState"]] = relationship(back_populates="trade", uselist=False)


class TradeMatchState(Base):
    """Matched-so-far counter for a trade; the trade row itself is never edited."""

    __tablename__ = "trade_match_states"

    trade_id: Mapped[int] = mapped_column(ForeignKey("trades.id"), primary_key=True)
    matched_quantity: Mapped[Decimal] = mapped_column(Qty, nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(MatchStatus, nullable=False, default="OPEN")
    note: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    trade: Mapped["Trade"] = relationship(back_populates="match_state")


class AssetLedger(Base):
    __tablename__ = "asset_ledgers"
    __table_args__ = (UniqueConstraint("portfolio_id", "asset_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    trade_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_trade_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    last_rematch_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class TradeMatch(Base):
    __tablename__ = "trade_matches"
    __table_args__ = (
        Index("ix_trade_matches_scope", "portfolio_id", "asset_id"),
        Index("ix_trade_matches_sell", "sell_trade_id"),
        Index("ix_trade_matches_buy", "buy_trade_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), nullable=False)
    buy_trade_id: Mapped[int] = mapped_column(ForeignKey("trades.id"), nullable=False)
    sell_trade_id: Mapped[int] = mapped_column(ForeignKey("trades.id"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    buy_price: Mapped[Decimal] = mapped_column(Px, nullable=False)
    sell_price: Mapped[Decimal] = mapped_column(Px, nullable=False)
    allocated_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    allocated_tax: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    realized_pl: Mapped[Decimal] = mapped_column(Money, nullable=False)
    matched_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    policy: Mapped[str] = mapped_column(MatchingPolicy, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    buy_trade: Mapped["Trade"] = relationship(foreign_keys=[buy_trade_id])
    sell_trade: Mapped["Trade"] = relationship(foreign_keys=[sell_trade_id])


class CashFlow(Base):
    __tablename__ = "cash_flows"
    __table_args__ = (Index("ix_cash_flows_scope", "portfolio_id", "flow_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    flow_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    flow_type: Mapped[str] = mapped_column(CashFlowType, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)  # signed; inflow positive
    reference_type: Mapped[Optional[str]] = mapped_column(String(50))
    reference_id: Mapped[Optional[int]] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


# --- Derived materializations ---


class AssetSnapshot(Base):
    __tablename__ = "asset_snapshots"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "asset_id", "snapshot_date", "granularity"),
        Index("ix_asset_snapshots_scope", "portfolio_id", "snapshot_date", "granularity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), nullable=False)
    snapshot_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    granularity: Mapped[str] = mapped_column(Granularity, nullable=False)
    asset_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    asset_type: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    current_price: Mapped[Decimal] = mapped_column(Px, nullable=False)
    price_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    price_source: Mapped[str] = mapped_column(String(20), nullable=False)  # MARKET|CARRIED_FORWARD|TRADE
    current_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    cost_basis: Mapped[Decimal] = mapped_column(Money, nullable=False)
    avg_cost: Mapped[Decimal] = mapped_column(Px, nullable=False)
    realized_pl: Mapped[Decimal] = mapped_column(Money, nullable=False)
    unrealized_pl: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_pl: Mapped[Decimal] = mapped_column(Money, nullable=False)
    allocation_pct: Mapped[Decimal] = mapped_column(Ratio, nullable=False)
    portfolio_total_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    return_pct: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    daily_return: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    cumulative_return: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class PortfolioSnapshot(Base):
    __tablename__ = "portfolio_snapshots"
    __table_args__ = (UniqueConstraint("portfolio_id", "snapshot_date", "granularity"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    snapshot_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    granularity: Mapped[str] = mapped_column(Granularity, nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=PORTFOLIO_SNAPSHOT_SCHEMA_VERSION)
    total_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    invested_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    cash_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    cost_basis: Mapped[Decimal] = mapped_column(Money, nullable=False)
    realized_pl: Mapped[Decimal] = mapped_column(Money, nullable=False)
    unrealized_pl: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_pl: Mapped[Decimal] = mapped_column(Money, nullable=False)
    daily_return: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    weekly_return: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    monthly_return: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    ytd_return: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    volatility: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    max_drawdown: Mapped[Decimal] = mapped_column(Ratio, nullable=False, default=Decimal("0"))
    sharpe_ratio: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    # Flow-adjusted (time-weighted) returns; net_external_flow covers (previous snapshot, snapshot_date].
    net_external_flow: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    twr_daily: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    twr_weekly: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    twr_monthly: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    twr_ytd: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    mwr_ytd: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    asset_allocation_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    asset_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outstanding_units: Mapped[Optional[Decimal]] = mapped_column(Units)
    nav_per_unit: Mapped[Optional[Decimal]] = mapped_column(Nav)
    price_gap_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class AssetGroupSnapshot(Base):
    """Per asset-type rollup written alongside each portfolio snapshot."""

    __tablename__ = "asset_group_snapshots"
    __table_args__ = (UniqueConstraint("portfolio_id", "asset_type", "snapshot_date", "granularity"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    asset_type: Mapped[str] = mapped_column(String(32), nullable=False)
    snapshot_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    granularity: Mapped[str] = mapped_column(Granularity, nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    cost_basis: Mapped[Decimal] = mapped_column(Money, nullable=False)
    realized_pl: Mapped[Decimal] = mapped_column(Money, nullable=False)
    unrealized_pl: Mapped[Decimal] = mapped_column(Money, nullable=False)
    allocation_pct: Mapped[Decimal] = mapped_column(Ratio, nullable=False)
    asset_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_asset_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_trade_flow: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))  # buys in, sells out
    twr_daily: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    twr_ytd: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    volatility: Mapped[Optional[Decimal]] = mapped_column(Ratio)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


# --- Fund units ---


class InvestorHolding(Base):
    __tablename__ = "investor_holdings"
    __table_args__ = (UniqueConstraint("account_id", "portfolio_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    total_units: Mapped[Decimal] = mapped_column(Units, nullable=False, default=Decimal("0"))
    avg_cost_per_unit: Mapped[Decimal] = mapped_column(Nav, nullable=False, default=Decimal("0"))
    total_investment: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    current_value: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    realized_pl: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    unrealized_pl: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    account: Mapped["Account"] = relationship(back_populates="holdings")
    portfolio: Mapped["Portfolio"] = relationship(back_populates="holdings")
    transactions: Mapped[list["FundUnitTransaction"]] = relationship(back_populates="holding")


class FundUnitTransaction(Base):
    __tablename__ = "fund_unit_transactions"
    __table_args__ = (Index("ix_fund_unit_txns_scope", "portfolio_id", "effective_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    holding_id: Mapped[int] = mapped_column(ForeignKey("investor_holdings.id"), nullable=False)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    type: Mapped[str] = mapped_column(UnitTxnType, nullable=False)
    units: Mapped[Decimal] = mapped_column(Units, nullable=False)
    nav_per_unit: Mapped[Decimal] = mapped_column(Nav, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    realized_pl: Mapped[Optional[Decimal]] = mapped_column(Money)
    nav_source: Mapped[str] = mapped_column(String(20), nullable=False)  # SEED|SNAPSHOT|LIVE
    effective_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    cash_flow_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cash_flows.id"))
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    holding: Mapped["InvestorHolding"] = relationship(back_populates="transactions")
    cash_flow: Mapped[Optional["CashFlow"]] = relationship()


# --- Execution tracking ---


class SnapshotExecution(Base):
    __tablename__ = "snapshot_executions"
    __table_args__ = (
        Index("ix_snapshot_exec_key", "portfolio_id", "snapshot_date", "granularity", "status"),
        Index("ix_snapshot_exec_started", "started_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    execution_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    kind: Mapped[str] = mapped_column(ExecutionKind, nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False, default="MANUAL")  # MANUAL|SCHEDULED
    parent_execution_id: Mapped[Optional[str]] = mapped_column(String(64))
    portfolio_id: Mapped[Optional[int]] = mapped_column(ForeignKey("portfolios.id"))
    snapshot_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    granularity: Mapped[str] = mapped_column(Granularity, nullable=False)
    status: Mapped[str] = mapped_column(ExecutionStatus, nullable=False, default="started")
    started_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    finished_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    total_portfolios: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_portfolios: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_portfolios: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_snapshots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    execution_time_ms: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    details_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    actor: Mapped[str] = mapped_column(String(200), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    old_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    new_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    note: Mapped[Optional[str]] = mapped_column(Text)
