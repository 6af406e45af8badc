"""Monthly execution quota and paid entitlements."""
from datetime import datetime, timezone
from typing import Protocol

import httpx

from nodeflow.errors import QuotaExceededError, TransientError
from nodeflow.observability import get_logger
from nodeflow.storage.repositories import ExecutionRepository

logger = get_logger(__name__)


def month_start(now: datetime | None = None) -> datetime:
    """First instant of the current UTC month."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class EntitlementChecker(Protocol):
    """Answers whether a user holds an active paid plan."""

    def has_active_entitlement(self, owner_id: str) -> bool:
        ...


class StaticEntitlementChecker:
    """Fixed set of entitled users; empty means nobody is entitled."""

    def __init__(self, entitled: set[str] | None = None):
        self.entitled = set(entitled or ())

    def has_active_entitlement(self, owner_id: str) -> bool:
        return owner_id in self.entitled


class PolarEntitlementChecker:
    """Checks active subscriptions through the Polar customer state API.

    Users are looked up by external id. A missing customer has no
    subscription.
    """

    def __init__(self, access_token: str, server: str = "https://api.polar.sh", timeout_s: float = 10.0):
        self.access_token = access_token
        self.server = server.rstrip("/")
        self.timeout_s = timeout_s

    def has_active_entitlement(self, owner_id: str) -> bool:
        url = f"{self.server}/v1/customers/external/{owner_id}/state"
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                response = client.get(url, headers={"Authorization": f"Bearer {self.access_token}"})
        except httpx.TransportError as e:
            raise TransientError(f"Entitlement check failed: {e}") from e

        if response.status_code == 404:
            return False
        response.raise_for_status()
        return bool(response.json().get("active_subscriptions"))


class QuotaGuard:
    """Rejects a run when a non-entitled owner has used the monthly allowance."""

    def __init__(
        self,
        executions: ExecutionRepository,
        entitlements: EntitlementChecker,
        monthly_limit: int = 100,
    ):
        self.executions = executions
        self.entitlements = entitlements
        self.monthly_limit = monthly_limit

    def check(self, owner_id: str, correlation_id: str, now: datetime | None = None) -> None:
        """
        Raise if the owner is over quota.

        The current run's own record is not counted.

        Raises:
            QuotaExceededError: If the owner has no entitlement and already
                started ``monthly_limit`` executions this month
        """
        used = self.executions.count_owner_executions_since(
            owner_id, month_start(now), exclude_correlation_id=correlation_id
        )
        if used < self.monthly_limit:
            return
        if self.entitlements.has_active_entitlement(owner_id):
            return
        logger.warning(
            "Monthly execution quota exceeded",
            extra={"owner_id": owner_id, "used": used, "limit": self.monthly_limit},
        )
        raise QuotaExceededError(
            f"Monthly execution limit of {self.monthly_limit} reached. Upgrade to continue."
        )
