"""ThresholdStateMachine: three-tier trigger evaluation with cooldown/hysteresis re-arm."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..types import TIER_ORDER, TIER_PHASE, Phase, ThresholdConfig, Tier, WatcherState

logger = logging.getLogger(__name__)


@dataclass
class TierDecision:
    tier: Tier
    recovered: bool = False  # re-entry of a tier interrupted mid-action
    bypassed_cooldown: bool = False


class ThresholdStateMachine:
    """Decide which tiers fire for a usage ratio, and record the transitions.

    - Archive (default 80%): snapshot + index
    - Prune (default 85%): host compaction
    - Distill (default 90%): distillation + continuity rollover

    All decisions are pure functions of the config, the persisted
    ``WatcherState`` and the ``now`` passed in.
    """

    def __init__(self, config: ThresholdConfig, cooldown_secs: float) -> None:
        self.config = config
        self.cooldown_secs = cooldown_secs

    def threshold(self, tier: Tier) -> float:
        if tier is Tier.ARCHIVE:
            return self.config.archive_ratio
        if tier is Tier.PRUNE:
            return self.config.prune_ratio
        return self.config.distill_ratio

    # -- re-arm --

    def observe(self, state: WatcherState, ratio: float) -> None:
        """Re-arm tiers whose usage has dropped below ``threshold - margin``."""
        for tier in TIER_ORDER:
            if ratio < self.threshold(tier) - self.config.hysteresis_margin:
                if not state.tier_armed.get(tier.value, True):
                    logger.debug(f"Tier {tier.value} re-armed by hysteresis at {ratio:.3f}")
                state.tier_armed[tier.value] = True

    def cooldown_ready(self, state: WatcherState, tier: Tier, now: float) -> bool:
        last = state.last_action_at.get(tier.value)
        return last is None or now - last >= self.cooldown_secs

    def is_armed(self, state: WatcherState, tier: Tier, now: float) -> bool:
        if tier.value not in state.last_action_at:
            return True
        cooldown_ok = self.cooldown_ready(state, tier, now)
        hysteresis_ok = state.tier_armed.get(tier.value, True)
        policy = self.config.rearm_policy
        if policy == "hysteresis":
            return hysteresis_ok
        if policy == "either":
            return cooldown_ok or hysteresis_ok
        return cooldown_ok

    # -- evaluation --

    def tick(self, state: WatcherState, now: float) -> None:
        """Leave Cooldown once ``cooldown_until`` has passed."""
        if state.phase is Phase.COOLDOWN and (state.cooldown_until is None or now >= state.cooldown_until):
            state.phase = Phase.NORMAL
            state.cooldown_until = None

    def blocked(self, state: WatcherState, now: float) -> bool:
        return state.blocked_until is not None and now < state.blocked_until

    def evaluate(self, state: WatcherState, ratio: float, now: float) -> list[TierDecision]:
        """Tiers to run this cycle, in ascending order."""
        self.tick(state, now)
        if self.blocked(state, now):
            logger.info(f"Destructive stages blocked until {state.blocked_until:.0f}")
            return []

        self.observe(state, ratio)

        recovered = Tier(state.in_flight) if state.in_flight else None
        decisions: list[TierDecision] = []
        for tier in TIER_ORDER:
            if tier is recovered:
                logger.warning(f"Re-entering tier {tier.value} interrupted in a previous run")
                decisions.append(TierDecision(tier=tier, recovered=True))
                continue
            if ratio < self.threshold(tier):
                continue
            if self.is_armed(state, tier, now):
                decisions.append(TierDecision(tier=tier))
            elif tier is Tier.PRUNE and ratio >= self.config.emergency_ratio:
                logger.warning(f"Usage {ratio:.3f} above emergency ratio; prune bypasses cooldown")
                decisions.append(TierDecision(tier=tier, bypassed_cooldown=True))
        return decisions

    # -- transitions (persist the state after each call) --

    def begin(self, state: WatcherState, tier: Tier, now: float) -> None:
        state.phase = TIER_PHASE[tier]
        state.in_flight = tier.value
        state.last_action_at[tier.value] = now
        state.tier_armed[tier.value] = False

    def complete(self, state: WatcherState, tier: Tier) -> None:
        if state.in_flight == tier.value:
            state.in_flight = None

    def fail(self, state: WatcherState, tier: Tier, retry: bool = True) -> None:
        """Early exit back to Normal. ``retry`` leaves the tier eligible next cycle."""
        state.phase = Phase.NORMAL
        state.in_flight = None
        if retry:
            state.last_action_at.pop(tier.value, None)
            state.tier_armed[tier.value] = True

    def block(self, state: WatcherState, now: float, backoff_secs: float) -> None:
        state.blocked_until = now + backoff_secs

    def finish_cycle(self, state: WatcherState, fired: list[Tier], now: float) -> None:
        """After side effects: enter Cooldown if anything fired, else stay Normal."""
        state.in_flight = None
        if state.blocked_until is not None and now >= state.blocked_until:
            state.blocked_until = None
        if fired and state.phase is not Phase.NORMAL:
            state.phase = Phase.COOLDOWN
            state.cooldown_until = now + self.cooldown_secs
        elif state.phase is not Phase.COOLDOWN:
            state.phase = Phase.NORMAL
