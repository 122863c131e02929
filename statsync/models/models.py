"""
Database models for the ingestion-merge-notify pipeline.

Layout:
- sync_state: one cursor record per resumable job key
- raw source tables: one per provider entity type, each upserted by a
  string ``natural_key`` and keeping the latest provider payload in ``raw``
- canonical_metrics: merged provider + computed metrics per entity/season/scope
- standings / matchups: materialized aggregates, safe to drop and rebuild
- webhook_subscriptions / alerts: notification configuration
"""
from datetime import datetime
from sqlalchemy import (
    Column, String, Float, Integer, DateTime, ForeignKey, Boolean, Text, Index,
    UniqueConstraint, JSON,
)
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()


# =============================================================================
# SYNC STATE
# =============================================================================

class SyncState(Base):
    """Durable cursor for one independently resumable job.

    Keys are derived from the entity type and its stable filters, e.g.
    ``advanced_rushing_season_2024_scope_season`` or
    ``plays_cursor_game_424150``. Records are never auto-deleted; only an
    explicit admin reset removes them.
    """
    __tablename__ = "sync_state"

    key = Column(String(255), primary_key=True)
    cursor = Column(String(255), nullable=True)
    meta = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


# =============================================================================
# RAW SOURCE TABLES
# =============================================================================

class Team(Base):
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    provider_id = Column(Integer, nullable=False, index=True)
    abbreviation = Column(String(8), nullable=True)
    full_name = Column(String(100), nullable=True)
    conference = Column(String(16), nullable=True)
    division = Column(String(16), nullable=True)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Player(Base):
    __tablename__ = "players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    provider_id = Column(Integer, nullable=False, index=True)
    first_name = Column(String(64), nullable=True)
    last_name = Column(String(64), nullable=True)
    position = Column(String(32), nullable=True)
    team_id = Column(Integer, nullable=True, index=True)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Game(Base):
    """Game schedule and final score as reported by the provider."""
    __tablename__ = "games"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    provider_id = Column(Integer, nullable=False, index=True)
    season = Column(Integer, nullable=True, index=True)
    week = Column(Integer, nullable=True)
    postseason = Column(Boolean, nullable=False, default=False)
    status = Column(String(32), nullable=True)
    game_date = Column(String(32), nullable=True)
    home_team_id = Column(Integer, nullable=True, index=True)
    visitor_team_id = Column(Integer, nullable=True, index=True)
    home_score = Column(Integer, nullable=True)
    visitor_score = Column(Integer, nullable=True)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_games_season_week', 'season', 'week'),
    )


class PlayerGameStat(Base):
    """One player's box-score line for one game (natural key ``player:game``)."""
    __tablename__ = "player_game_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    player_id = Column(Integer, nullable=False, index=True)
    game_id = Column(Integer, nullable=False, index=True)
    team_id = Column(Integer, nullable=True)
    season = Column(Integer, nullable=True, index=True)
    week = Column(Integer, nullable=True)
    postseason = Column(Boolean, nullable=False, default=False)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_player_game_stats_player_season', 'player_id', 'season'),
    )


class TeamGameStat(Base):
    __tablename__ = "team_game_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    team_id = Column(Integer, nullable=False, index=True)
    game_id = Column(Integer, nullable=False, index=True)
    season = Column(Integer, nullable=True, index=True)
    week = Column(Integer, nullable=True)
    postseason = Column(Boolean, nullable=False, default=False)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_team_game_stats_team_season', 'team_id', 'season'),
    )


class TeamSeasonStat(Base):
    __tablename__ = "team_season_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    team_id = Column(Integer, nullable=False, index=True)
    season = Column(Integer, nullable=False, index=True)
    postseason = Column(Boolean, nullable=False, default=False)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class SeasonStat(Base):
    __tablename__ = "season_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    player_id = Column(Integer, nullable=False, index=True)
    season = Column(Integer, nullable=False, index=True)
    postseason = Column(Boolean, nullable=False, default=False)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class AdvancedStat(Base):
    """Provider-computed advanced rushing/passing/receiving line."""
    __tablename__ = "advanced_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(160), nullable=False, unique=True)
    stat_type = Column(String(16), nullable=False)  # rushing, passing, receiving
    player_id = Column(Integer, nullable=False, index=True)
    season = Column(Integer, nullable=False, index=True)
    week = Column(Integer, nullable=False, default=0)  # 0 = full season
    postseason = Column(Boolean, nullable=False, default=False)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Play(Base):
    __tablename__ = "plays"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    game_id = Column(Integer, nullable=False, index=True)
    sequence = Column(Integer, nullable=True)
    epa = Column(Float, nullable=True)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class OddsLine(Base):
    __tablename__ = "odds_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    game_id = Column(Integer, nullable=False, index=True)
    vendor = Column(String(64), nullable=False)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class PlayerProp(Base):
    __tablename__ = "player_props"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(200), nullable=False, unique=True)
    game_id = Column(Integer, nullable=False, index=True)
    player_id = Column(Integer, nullable=False, index=True)
    vendor = Column(String(64), nullable=False)
    prop_type = Column(String(64), nullable=False)
    line_value = Column(Float, nullable=True)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Injury(Base):
    """Injury report entry (natural key ``player:date``)."""
    __tablename__ = "injuries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(128), nullable=False, unique=True)
    player_id = Column(Integer, nullable=False, index=True)
    status = Column(String(64), nullable=True)
    comment = Column(Text, nullable=True)
    report_date = Column(String(32), nullable=True)
    raw = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


# =============================================================================
# DERIVED DATA
# =============================================================================

class CanonicalMetric(Base):
    """Merged metrics document for one entity, season and scope.

    ``sources`` holds ``{"provider": {...}, "computed": {...}}`` written by two
    independent producers. ``metrics`` is a cache of ``merge_metrics(sources)``
    and is only ever replaced wholesale.
    """
    __tablename__ = "canonical_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(16), nullable=False)  # player, team
    entity_id = Column(Integer, nullable=False)
    season = Column(Integer, nullable=False)
    scope = Column(String(32), nullable=False, default="season")
    sources = Column(JSON, nullable=False, default=dict)
    metrics = Column(JSON, nullable=False, default=dict)
    game_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        UniqueConstraint('entity_type', 'entity_id', 'season', 'scope', name='uq_canonical_metric_entity'),
        Index('ix_canonical_metrics_season', 'season'),
    )


class Standing(Base):
    """Win/loss table row, fully recomputed from completed games."""
    __tablename__ = "standings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, nullable=False)
    season = Column(Integer, nullable=False)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    ties = Column(Integer, nullable=False, default=0)
    games_played = Column(Integer, nullable=False, default=0)
    points_for = Column(Integer, nullable=False, default=0)
    points_against = Column(Integer, nullable=False, default=0)
    win_pct = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('team_id', 'season', name='uq_standing_team_season'),
    )


class Matchup(Base):
    """Head-to-head comparison for one provider game."""
    __tablename__ = "matchups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_game_id = Column(Integer, nullable=False, unique=True)
    season = Column(Integer, nullable=True, index=True)
    week = Column(Integer, nullable=True)
    home_team_id = Column(Integer, nullable=True, index=True)
    visitor_team_id = Column(Integer, nullable=True, index=True)
    home_metrics = Column(JSON, nullable=False, default=dict)
    visitor_metrics = Column(JSON, nullable=False, default=dict)
    comparison = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class WebhookSubscription(Base):
    """Outbound webhook target; ``events`` lists generic event names."""
    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(String(1024), nullable=False)
    events = Column(JSON, nullable=False, default=list)
    active = Column(Boolean, nullable=False, default=True, index=True)
    secret = Column(String(255), nullable=True)
    last_status = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    alerts = relationship("Alert", back_populates="webhook", cascade="all, delete-orphan")


class Alert(Base):
    """Threshold rule over one metric of one canonical document."""
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=True)
    entity_type = Column(String(16), nullable=False)
    entity_id = Column(Integer, nullable=False)
    season = Column(Integer, nullable=True)
    scope = Column(String(32), nullable=False, default="season")
    metric = Column(String(64), nullable=False)
    operator = Column(String(4), nullable=False)  # gt, gte, lt, lte, eq
    value = Column(Float, nullable=False)
    webhook_id = Column(Integer, ForeignKey("webhook_subscriptions.id"), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    last_value = Column(Float, nullable=True)
    last_fired_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    webhook = relationship("WebhookSubscription", back_populates="alerts")

    __table_args__ = (
        Index('ix_alerts_entity', 'entity_type', 'entity_id', 'scope'),
    )
