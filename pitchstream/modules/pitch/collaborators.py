"""Contracts with services outside this backend.

Billing owns subscriptions and the notification service owns in-app
alerts. Both are reached over HTTP; either may be left unconfigured in
development.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import httpx

from pitchstream.core.config import settings
from pitchstream.core.logging import log_warning
from pitchstream.modules.pitch.entitlement import PlanDuration, Subscription

logger = logging.getLogger(__name__)

PITCH_REMOVED_MESSAGE = "Admin has removed your elevator pitch video. Please upload again."
PITCH_UPDATE_TYPE = "Update elevator pitch"


class SubscriptionLookup(ABC):
    """Source of an owner's latest active plan."""

    @abstractmethod
    async def get_active_subscription(self, owner_id: str) -> Optional[Subscription]:
        """Latest complete and active plan, or None when the owner has none."""
        pass


class Notifier(ABC):
    """Delivers in-app notifications to a user."""

    @abstractmethod
    async def notify(
        self,
        owner_id: str,
        message: str,
        type: str,
        reference_id: Optional[str] = None,
    ) -> None:
        pass


def parse_subscription(payload: Optional[dict]) -> Optional[Subscription]:
    """Build a Subscription from the billing service's JSON, if it has one."""
    if not payload:
        return None
    try:
        plan_duration = PlanDuration(str(payload["plan_duration"]).lower())
        created_at = datetime.fromisoformat(str(payload["created_at"]).replace("Z", "+00:00"))
    except (KeyError, ValueError):
        return None
    return Subscription(plan_duration=plan_duration, created_at=created_at)


class HttpSubscriptionLookup(SubscriptionLookup):
    """Queries ``GET {BILLING_SERVICE_URL}/subscriptions/{owner_id}/active``."""

    def __init__(
        self,
        base_url: Optional[str] = settings.BILLING_SERVICE_URL,
        timeout: float = settings.COLLABORATOR_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout

    async def get_active_subscription(self, owner_id: str) -> Optional[Subscription]:
        if not self.base_url:
            return None

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}/subscriptions/{owner_id}/active")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return parse_subscription(response.json())


class HttpNotifier(Notifier):
    """Posts to ``{NOTIFICATION_SERVICE_URL}/notifications``; logs when unset."""

    def __init__(
        self,
        base_url: Optional[str] = settings.NOTIFICATION_SERVICE_URL,
        timeout: float = settings.COLLABORATOR_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout

    async def notify(
        self,
        owner_id: str,
        message: str,
        type: str,
        reference_id: Optional[str] = None,
    ) -> None:
        if not self.base_url:
            logger.info(
                "Notification service not configured",
                extra={"owner_id": owner_id, "notification_type": type, "text": message},
            )
            return

        payload = {
            "to": owner_id,
            "message": message,
            "type": type,
            "id": reference_id,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/notifications", json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            log_warning(logger, f"Notification delivery failed: {e}", owner_id=owner_id)
