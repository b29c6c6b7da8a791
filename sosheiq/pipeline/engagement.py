"""Engagement score: per-turn decay, clamping, and low-engagement termination.

    new = clamp(current + proposed_delta - decay_per_turn, 0, 100)

A streak counts consecutive turns that end at or below zero. Once the streak
reaches `termination_streak` the tracker signals a low-engagement exit. The
streak resets the moment engagement climbs back above zero.

Reaching 100 is a success exit and is signalled by the orchestrator, not here.
"""

from __future__ import annotations

from typing import NamedTuple

from sosheiq.models import clamp


class EngagementUpdate(NamedTuple):
    engagement: int
    zero_streak: int
    should_terminate_low_engagement: bool


class EngagementTracker:
    def __init__(self, decay_per_turn: int = 2, termination_streak: int = 3) -> None:
        if termination_streak < 1:
            raise ValueError("termination_streak must be at least 1")
        self.decay_per_turn = decay_per_turn
        self.termination_streak = termination_streak

    def apply(self, current: int, proposed_delta: int, zero_streak: int = 0) -> EngagementUpdate:
        engagement = clamp(current + proposed_delta - self.decay_per_turn)
        streak = zero_streak + 1 if engagement <= 0 else 0
        return EngagementUpdate(
            engagement=engagement,
            zero_streak=streak,
            should_terminate_low_engagement=streak >= self.termination_streak,
        )
