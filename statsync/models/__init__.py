"""
Models for the ingestion-merge-notify pipeline.

Usage:
    from statsync.models import CanonicalMetric, SyncState
"""
from statsync.models.models import (
    Base,
    SyncState,
    Team,
    Player,
    Game,
    PlayerGameStat,
    TeamGameStat,
    TeamSeasonStat,
    SeasonStat,
    AdvancedStat,
    Play,
    OddsLine,
    PlayerProp,
    Injury,
    CanonicalMetric,
    Standing,
    Matchup,
    WebhookSubscription,
    Alert,
)

__all__ = [
    "Base",
    "SyncState",
    "Team",
    "Player",
    "Game",
    "PlayerGameStat",
    "TeamGameStat",
    "TeamSeasonStat",
    "SeasonStat",
    "AdvancedStat",
    "Play",
    "OddsLine",
    "PlayerProp",
    "Injury",
    "CanonicalMetric",
    "Standing",
    "Matchup",
    "WebhookSubscription",
    "Alert",
]
