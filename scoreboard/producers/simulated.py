"""
Simulated game producer. No I/O.

Runs a deterministic game clock per channel so the relay can be exercised
without a live upstream. All randomness is seeded from SIM_SEED + channel id,
so two sessions for the same channel replay the same game.
"""
from __future__ import annotations

import hashlib
import random
from typing import Optional

from scoreboard.config import (
    SIM_CLOCK_STEP_SEC,
    SIM_PERIOD_COUNT,
    SIM_PERIOD_LENGTH_SEC,
    SIM_SEED,
)
from scoreboard.models import GameState, PlayerGoal, PlayerPenalty, UpdateEnvelope
from scoreboard.producers.base import UpstreamProducer, changed_fields

_TEAMS = [
    ("Barrie Bears", "#1d3f8f", "#ffffff"),
    ("Cambridge Turbos", "#c8102e", "#ffffff"),
    ("Gloucester Devils", "#000000", "#d4af37"),
    ("Kitchener Flames", "#f47a20", "#000000"),
    ("Nepean Ravens", "#4b2e83", "#ffffff"),
    ("Waterloo Wildfire", "#006341", "#f2c75c"),
    ("Richmond Hill Lightning", "#ffd100", "#002d62"),
    ("Whitby Wolves", "#5b6770", "#ffffff"),
]
_PLAYERS = ["Avery", "Brooke", "Casey", "Devon", "Emerson", "Finley", "Harper", "Jordan", "Logan", "Quinn"]
_PENALTIES = ["Tripping", "Hooking", "Interference", "Body contact", "Illegal substitution"]

SHOT_CHANCE = 0.45      # per team per poll
GOAL_CHANCE = 0.12      # per shot
PENALTY_CHANCE = 0.06   # per poll


def _seeded_rng(channel_id: str) -> random.Random:
    seed = int(hashlib.sha256(f"{SIM_SEED}:{channel_id}".encode()).hexdigest(), 16) % (2**32)
    return random.Random(seed)


def _clock(seconds: int) -> str:
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


class _SimGame:
    def __init__(self, channel_id: str) -> None:
        self.channel_id = channel_id
        self.rng = _seeded_rng(channel_id)
        (home, home_bg, home_fg), (away, away_bg, away_fg) = self.rng.sample(_TEAMS, 2)
        self.remaining = SIM_PERIOD_LENGTH_SEC
        self.state = GameState(
            channel_id=channel_id,
            gamesheet_id=channel_id,
            game_number=str(self.rng.randint(1000, 9999)),
            home_team_name=home,
            home_team_bg_color=home_bg,
            home_team_fg_color=home_fg,
            away_team_name=away,
            away_team_bg_color=away_bg,
            away_team_fg_color=away_fg,
            time_remaining=_clock(self.remaining),
        )
        self.previous: dict = {}

    # ── One tick of game time ─────────────────────────────────────────────────

    def advance(self) -> None:
        s = self.state
        if s.status == "final":
            return
        if s.status == "scheduled":
            s.status = "in_progress"
            return

        for side in ("home", "away"):
            if self.rng.random() >= SHOT_CHANCE:
                continue
            shots_attr = f"{side}_team_shots"
            setattr(s, shots_attr, getattr(s, shots_attr) + 1)
            if self.rng.random() < GOAL_CHANCE:
                goals_attr = f"{side}_team_goals"
                setattr(s, goals_attr, getattr(s, goals_attr) + 1)
                scorer, a1, a2 = self.rng.sample(_PLAYERS, 3)
                s.goals = s.goals + [PlayerGoal(
                    team_name=getattr(s, f"{side}_team_name"),
                    time=_clock(self.remaining),
                    period=s.period,
                    scorer_name=scorer,
                    first_assister_name=a1,
                    second_assister_name=a2 if self.rng.random() < 0.5 else None,
                )]

        if self.rng.random() < PENALTY_CHANCE:
            side = self.rng.choice(("home", "away"))
            s.penalties = s.penalties + [PlayerPenalty(
                team_name=getattr(s, f"{side}_team_name"),
                time=_clock(self.remaining),
                period=s.period,
                player_name=self.rng.choice(_PLAYERS),
                penalty_description=self.rng.choice(_PENALTIES),
            )]

        self.remaining -= SIM_CLOCK_STEP_SEC
        if self.remaining <= 0:
            if s.period >= SIM_PERIOD_COUNT:
                self.remaining = 0
                s.status = "final"
            else:
                s.period += 1
                self.remaining = SIM_PERIOD_LENGTH_SEC
        s.time_remaining = _clock(self.remaining)

    def diff(self) -> dict:
        current = self.state.model_dump()
        delta = changed_fields(self.previous, current)
        self.previous = current
        return delta


class SimulatedProducer(UpstreamProducer):
    """Every poll advances the channel's game clock by SIM_CLOCK_STEP_SEC."""

    async def start(self, channel_id: str) -> _SimGame:
        return _SimGame(channel_id)

    async def poll(self, handle: _SimGame) -> Optional[UpdateEnvelope]:
        # First poll reports the whole sheet; later polls tick the clock.
        if handle.previous:
            handle.advance()
        delta = handle.diff()
        if not delta:
            return None
        return UpdateEnvelope(channel_id=handle.channel_id, changed_fields=delta)

    async def stop(self, handle: _SimGame) -> None:
        handle.previous = {}
