"""Conflict resolution for cloud-synced copies of the engine's own records.

The sync transport delivers eventually-consistent replicas of DailyLog,
ShieldInventory and StreakState written on other devices. Merging is
commutative and idempotent so that replicas converge whatever order they
arrive in.
"""

from __future__ import annotations

from stepstreak.data.schemas import DailyLog, DayState, ShieldInventory, StreakState


def merge_daily_log(local: DailyLog | None, remote: DailyLog) -> DailyLog:
    """Highest steps, flags OR-ed, session references united, finalized wins.

    The goal frozen on a finalized local row is kept; otherwise the remote
    row's goal is taken only if the remote row is finalized.
    """
    if local is None:
        return remote
    if local.date != remote.date:
        msg = f"Cannot merge logs of different days: {local.date} and {remote.date}"
        raise ValueError(msg)

    finalized = DayState.FINALIZED in (local.state, remote.state)
    if local.state is DayState.FINALIZED or remote.state is not DayState.FINALIZED:
        goal_target = local.goal_target
    else:
        goal_target = remote.goal_target
    steps = max(local.steps, remote.steps)
    return DailyLog(
        date=local.date,
        steps=steps,
        goal_target=goal_target,
        goal_met=steps >= goal_target,
        shield_used=local.shield_used or remote.shield_used,
        repair_declined=local.repair_declined or remote.repair_declined,
        state=DayState.FINALIZED if finalized else DayState.OPEN,
        contributing_session_ids=sorted(set(local.contributing_session_ids) | set(remote.contributing_session_ids)),
    )


def merge_shields(local: ShieldInventory, remote: ShieldInventory) -> ShieldInventory:
    """Available buckets take the minimum so a token spent anywhere stays spent.

    The later refill period wins along with its recurring bucket, so a grant
    is never issued twice across devices. Lifetime counters take the maximum.
    """
    local_period = local.last_recurring_refill_period or ""
    remote_period = remote.last_recurring_refill_period or ""
    if local_period == remote_period:
        used_this_period = max(local.used_this_period, remote.used_this_period)
        recurring = min(local.recurring_available, remote.recurring_available)
    elif local_period > remote_period:
        used_this_period = local.used_this_period
        recurring = local.recurring_available
    else:
        used_this_period = remote.used_this_period
        recurring = remote.recurring_available
    # Purchases one side has not seen yet are credited before taking the minimum.
    local_purchased = local.purchased_available + max(0, remote.purchased_lifetime - local.purchased_lifetime)
    remote_purchased = remote.purchased_available + max(0, local.purchased_lifetime - remote.purchased_lifetime)
    return ShieldInventory(
        recurring_available=recurring,
        purchased_available=min(local_purchased, remote_purchased),
        last_recurring_refill_period=max(local_period, remote_period) or None,
        used_this_period=used_this_period,
        total_used_lifetime=max(local.total_used_lifetime, remote.total_used_lifetime),
        purchased_lifetime=max(local.purchased_lifetime, remote.purchased_lifetime),
    )


def merge_streak(local: StreakState, remote: StreakState) -> StreakState:
    """Keep the best longest streak and the fired milestone; the current run is re-derived later."""
    fired = [m for m in (local.last_fired_milestone, remote.last_fired_milestone) if m is not None]
    return local.model_copy(
        update={
            "longest_streak": max(local.longest_streak, remote.longest_streak),
            "last_fired_milestone": max(fired) if fired else None,
        }
    )
