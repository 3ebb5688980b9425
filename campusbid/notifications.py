"""
CampusBid Escrow — Notification Collaborator
Receives the plaintext delivery code exactly once, at generation time, and
owns out-of-band delivery (SMS / email). Implementations must not persist
or log the code.
"""
import logging
from dataclasses import dataclass, field

logger = logging.getLogger("campusbid.notifications")


class Notifier:
    """Interface for the out-of-band delivery channel."""

    async def send_delivery_code(self, buyer_id: str, resource_id: str, code: str) -> None:
        raise NotImplementedError

    async def send_security_alert(self, user_id: str, message: str, details: dict) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default channel for local runs: records the hand-off, never the code itself."""

    async def send_delivery_code(self, buyer_id, resource_id, code):
        logger.info("📨 Delivery code dispatched to buyer %s for %s", buyer_id, resource_id)

    async def send_security_alert(self, user_id, message, details):
        logger.warning("🚨 Security alert for %s: %s %s", user_id, message, details)


@dataclass
class RecordingNotifier(Notifier):
    """Keeps hand-offs in memory; used by tests and the demo seed."""

    codes: list = field(default_factory=list)
    alerts: list = field(default_factory=list)

    async def send_delivery_code(self, buyer_id, resource_id, code):
        self.codes.append({"buyer_id": buyer_id, "resource_id": resource_id, "code": code})

    async def send_security_alert(self, user_id, message, details):
        self.alerts.append({"user_id": user_id, "message": message, "details": details})

    def last_code_for(self, resource_id: str) -> str:
        for entry in reversed(self.codes):
            if entry["resource_id"] == resource_id:
                return entry["code"]
        raise KeyError(resource_id)


async def notify_safely(coro, description: str) -> None:
    """Notification failures are logged and never block a committed transition."""
    try:
        await coro
    except Exception as exc:
        logger.error("Failed to send %s: %s", description, exc)
