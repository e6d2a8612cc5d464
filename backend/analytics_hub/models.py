from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


class Platform(str, Enum):
    ga = "ga"
    gsc = "gsc"
    youtube = "youtube"
    linkedin = "linkedin"


class OAuthProvider(str, Enum):
    google = "google"
    linkedin = "linkedin"


PLATFORM_PROVIDER: dict[Platform, OAuthProvider] = {
    Platform.ga: OAuthProvider.google,
    Platform.gsc: OAuthProvider.google,
    Platform.youtube: OAuthProvider.google,
    Platform.linkedin: OAuthProvider.linkedin,
}


class CacheDataType(str, Enum):
    daily_snapshot = "daily_snapshot"
    all = "all"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    email: Mapped[str] = mapped_column(sa.String(255), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="member")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


class UserSession(Base):
    __tablename__ = "user_sessions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    token_sha256: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    members: Mapped[list["UserCompany"]] = relationship(
        back_populates="company", cascade="all, delete-orphan", passive_deletes=True
    )
    mappings: Mapped[list["CompanyPlatformMapping"]] = relationship(
        back_populates="company", cascade="all, delete-orphan", passive_deletes=True
    )


class UserCompany(Base):
    __tablename__ = "user_companies"
    __table_args__ = (sa.UniqueConstraint("user_id", "company_id", name="uq_user_companies_user_company"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    company_id: Mapped[str] = mapped_column(sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="viewer")

    company: Mapped[Company] = relationship(back_populates="members")


class CompanyPlatformMapping(Base):
    __tablename__ = "company_platform_mappings"
    __table_args__ = (sa.UniqueConstraint("company_id", "platform", name="uq_company_platform_mappings_company_platform"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    platform: Mapped[Platform] = mapped_column(sa.String(32), nullable=False)
    # GA property id, GSC site url, YouTube channel id or LinkedIn organization id
    account_id: Mapped[str] = mapped_column(sa.String(512), nullable=False)
    account_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    owner_user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    company: Mapped[Company] = relationship(back_populates="mappings")


class OAuthCredential(Base):
    __tablename__ = "oauth_tokens"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "provider", "identity", name="uq_oauth_tokens_user_provider_identity"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    provider: Mapped[OAuthProvider] = mapped_column(sa.String(32), nullable=False)
    identity: Mapped[str] = mapped_column(sa.String(255), nullable=False, server_default="default")
    identity_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    linked_account_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True, index=True)
    access_token: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    scope: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default="")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class AnalyticsCache(Base):
    __tablename__ = "analytics_cache"
    __table_args__ = (sa.Index("ix_analytics_cache_company_type", "company_id", "data_type"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    data_type: Mapped[CacheDataType] = mapped_column(sa.String(32), nullable=False)
    date_range_start: Mapped[date | None] = mapped_column(sa.Date(), nullable=True)
    date_range_end: Mapped[date | None] = mapped_column(sa.Date(), nullable=True)
    data: Mapped[dict] = mapped_column(sa.JSON(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


class SyncStatus(Base):
    __tablename__ = "sync_status"
    __table_args__ = (sa.UniqueConstraint("company_id", "platform", name="uq_sync_status_company_platform"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    platform: Mapped[Platform] = mapped_column(sa.String(32), nullable=False)
    sync_state: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="pending")
    last_sync_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    data_start_date: Mapped[date | None] = mapped_column(sa.Date(), nullable=True)
    data_end_date: Mapped[date | None] = mapped_column(sa.Date(), nullable=True)


class GADailyMetrics(Base):
    __tablename__ = "ga_daily_metrics"
    __table_args__ = (sa.UniqueConstraint("company_id", "date", name="uq_ga_daily_metrics_company_date"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(sa.Date(), nullable=False, index=True)
    total_users: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    new_users: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    sessions: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    page_views: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    avg_session_duration: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default="0")
    bounce_rate: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default="0")
    key_events: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    user_key_event_rate: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default="0")


class GSCDailyMetrics(Base):
    __tablename__ = "gsc_daily_metrics"
    __table_args__ = (sa.UniqueConstraint("company_id", "date", name="uq_gsc_daily_metrics_company_date"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(sa.Date(), nullable=False, index=True)
    impressions: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    clicks: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    avg_position: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default="0")
    indexed_pages: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    ranking_keywords: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")


class YTDailyMetrics(Base):
    __tablename__ = "yt_daily_metrics"
    __table_args__ = (sa.UniqueConstraint("company_id", "date", name="uq_yt_daily_metrics_company_date"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(sa.Date(), nullable=False, index=True)
    views: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    watch_time_seconds: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    shares: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    avg_view_duration: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default="0")
    likes: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    dislikes: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    comments: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    subscribers_gained: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    subscribers_lost: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")


class LIDailyMetrics(Base):
    __tablename__ = "li_daily_metrics"
    __table_args__ = (sa.UniqueConstraint("company_id", "date", name="uq_li_daily_metrics_company_date"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(sa.Date(), nullable=False, index=True)
    page_views: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    unique_visitors: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    desktop_visitors: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    mobile_visitors: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    organic_follower_gain: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    paid_follower_gain: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    impressions: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    clicks: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    reactions: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    comments: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")
    reposts: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, server_default="0")


class PlatformPeriodSnapshot(Base):
    __tablename__ = "platform_period_snapshots"
    __table_args__ = (
        sa.Index("ix_platform_period_snapshots_company_platform", "company_id", "platform", "snapshot_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[Platform] = mapped_column(sa.String(32), nullable=False)
    period_start: Mapped[date] = mapped_column(sa.Date(), nullable=False)
    period_end: Mapped[date] = mapped_column(sa.Date(), nullable=False)
    snapshot_date: Mapped[date] = mapped_column(sa.Date(), nullable=False)
    payload: Mapped[dict] = mapped_column(sa.JSON(), nullable=False)


class PortfolioCache(Base):
    __tablename__ = "portfolio_cache"
    __table_args__ = (sa.UniqueConstraint("user_id", "cache_date", name="uq_portfolio_cache_user_date"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    cache_date: Mapped[date] = mapped_column(sa.Date(), nullable=False, index=True)
    companies_data: Mapped[list] = mapped_column(sa.JSON(), nullable=False)
    aggregate_metrics: Mapped[dict] = mapped_column(sa.JSON(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
