"""Pydantic models for scoreboard state and the envelopes pushed to viewers."""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

EnvelopeKind = Literal["update", "snapshot", "ping"]


# ── Game sheet ────────────────────────────────────────────────────────────────

class PlayerGoal(BaseModel):
    team_name: Optional[str] = None
    team_id: Optional[str] = None
    time: Optional[str] = None            # "MM:SS" remaining in the period
    period: Optional[int] = None
    scorer_name: Optional[str] = None
    scorer_id: Optional[str] = None
    first_assister_name: Optional[str] = None
    first_assister_id: Optional[str] = None
    second_assister_name: Optional[str] = None
    second_assister_id: Optional[str] = None


class PlayerPenalty(BaseModel):
    team_name: Optional[str] = None
    team_id: Optional[str] = None
    time: Optional[str] = None
    period: Optional[int] = None
    player_name: Optional[str] = None
    player_id: Optional[str] = None
    penalty_description: Optional[str] = None


class GameState(BaseModel):
    """Full scoreboard for one game. Producers emit partial dicts of this."""
    channel_id: Optional[str] = None
    division_id: Optional[str] = None
    gamesheet_id: Optional[str] = None
    game_number: Optional[str] = None
    game_location: Optional[str] = None
    status: str = "scheduled"             # "scheduled" | "in_progress" | "final"
    home_team_name: Optional[str] = None
    home_team_bg_color: Optional[str] = None
    home_team_fg_color: Optional[str] = None
    away_team_name: Optional[str] = None
    away_team_bg_color: Optional[str] = None
    away_team_fg_color: Optional[str] = None
    home_team_goals: int = 0
    away_team_goals: int = 0
    home_team_shots: int = 0
    away_team_shots: int = 0
    period: int = 1
    time_remaining: Optional[str] = None
    goals: list[PlayerGoal] = Field(default_factory=list)
    penalties: list[PlayerPenalty] = Field(default_factory=list)


# ── Wire ──────────────────────────────────────────────────────────────────────

class UpdateEnvelope(BaseModel):
    """One unit of data pushed to a viewer. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    channel_id: str
    changed_fields: dict[str, Any] = Field(default_factory=dict)
    kind: EnvelopeKind = "update"

    def encode(self) -> bytes:
        return self.model_dump_json().encode("utf-8")


def ping_envelope(channel_id: str) -> UpdateEnvelope:
    return UpdateEnvelope(channel_id=channel_id, kind="ping")
