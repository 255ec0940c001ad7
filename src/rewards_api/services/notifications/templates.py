"""Push copy for loyalty events."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping


class NotificationEventType(str, Enum):
    POINTS_RECEIVED = "points_received"
    REDEMPTION_REGISTERED = "redemption_registered"
    REDEMPTION_READY = "redemption_ready"
    REDEMPTION_DELIVERED = "redemption_delivered"
    BENEFIT_CLAIMED = "benefit_claimed"
    BENEFIT_ASSIGNED = "benefit_assigned"
    BENEFIT_USED = "benefit_used"
    REFERRAL_ACTIVATED = "referral_activated"
    TIER_CHANGED = "tier_changed"
    NEW_REDEMPTION = "new_redemption"
    NEW_BENEFIT = "new_benefit"


@dataclass
class RenderedPush:
    title: str
    body: str


def _points(value: Any) -> str:
    try:
        amount = int(value)
    except (TypeError, ValueError):
        return "some points"
    return f"{amount} point" if abs(amount) == 1 else f"{amount} points"


def render_push(event_type: NotificationEventType, data: Mapping[str, Any]) -> RenderedPush:
    item = data.get("item_name") or "your reward"
    if event_type == NotificationEventType.POINTS_RECEIVED:
        delta = data.get("delta")
        if isinstance(delta, int) and delta < 0:
            return RenderedPush(
                "Points adjusted",
                f"{_points(-delta)} were deducted. New balance: {data.get('new_balance')}.",
            )
        return RenderedPush(
            "You received points!",
            f"{_points(delta)} were added to your account. New balance: {data.get('new_balance')}.",
        )
    if event_type == NotificationEventType.REDEMPTION_REGISTERED:
        return RenderedPush("Redemption registered", f"We received your request for {item}.")
    if event_type == NotificationEventType.REDEMPTION_READY:
        return RenderedPush("Ready for pickup", f"{item} is ready for you.")
    if event_type == NotificationEventType.REDEMPTION_DELIVERED:
        return RenderedPush("Redemption delivered", f"{item} was marked as delivered. Enjoy!")
    if event_type == NotificationEventType.BENEFIT_CLAIMED:
        if data.get("points"):
            return RenderedPush("Gift claimed", f"{_points(data.get('points'))} were added from your gift.")
        return RenderedPush("Gift claimed", f"{data.get('benefit_name') or 'Your benefit'} is now in your account.")
    if event_type == NotificationEventType.BENEFIT_ASSIGNED:
        return RenderedPush("New benefit", f"{data.get('benefit_name') or 'A service'} was added to your account.")
    if event_type == NotificationEventType.BENEFIT_USED:
        return RenderedPush("Benefit used", f"{data.get('benefit_name') or 'Your benefit'} was redeemed.")
    if event_type == NotificationEventType.REFERRAL_ACTIVATED:
        return RenderedPush("Referral activated", f"You earned {_points(data.get('points'))} for your referral.")
    if event_type == NotificationEventType.TIER_CHANGED:
        return RenderedPush("Membership updated", f"Your membership level is now {data.get('tier')}.")
    if event_type == NotificationEventType.NEW_REDEMPTION:
        return RenderedPush(
            "New redemption",
            f"{data.get('display_name') or 'A member'} redeemed {item} for {_points(data.get('points_spent'))}.",
        )
    if event_type == NotificationEventType.NEW_BENEFIT:
        return RenderedPush(
            "Gift claimed",
            f"A gift link was claimed ({data.get('benefit_name') or _points(data.get('points'))}).",
        )
    return RenderedPush("Loyalty update", "There is news in your account.")


__all__ = ["NotificationEventType", "RenderedPush", "render_push"]
