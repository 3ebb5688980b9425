"""
CampusBid Escrow — Canonical Code Verifier
The single place where a presented delivery/confirmation code is checked.
Both the escrow verify-delivery path and the transaction confirmation path
delegate here, so they share one lockout policy:
  - locked codes are rejected before any comparison, even if correct
  - comparison is bcrypt.checkpw (constant time)
  - every mismatch is counted; the code locks for good at the threshold
"""
import logging
from typing import Optional

from campusbid.config import get_settings
from campusbid.encryption import is_well_formed_code, verify_code_hash
from campusbid.exceptions import CodeLockedError, InvalidCodeError
from campusbid.notifications import Notifier, notify_safely
from campusbid.services.attempts import AttemptTracker

logger = logging.getLogger("campusbid.verifier")


class CodeVerifier:
    def __init__(
        self,
        tracker: AttemptTracker,
        notifier: Optional[Notifier] = None,
        max_failed_attempts: Optional[int] = None,
    ):
        self._tracker = tracker
        self._notifier = notifier
        self.max_failed_attempts = (
            max_failed_attempts or get_settings().CODE_MAX_FAILED_ATTEMPTS
        )

    async def ensure_not_locked(self, subject_key: str) -> None:
        if await self._tracker.is_locked(subject_key):
            raise CodeLockedError(
                "Code is locked due to too many failed attempts",
                subject=subject_key,
            )

    async def failed_attempts(self, subject_key: str) -> int:
        counter = await self._tracker.get(subject_key)
        return counter.count if counter else 0

    async def check(
        self,
        subject_key: str,
        code: str,
        code_hash: str,
        actor_id: Optional[str] = None,
    ) -> None:
        """Return silently on a match; raise CodeLockedError / InvalidCodeError otherwise."""
        await self.ensure_not_locked(subject_key)

        if is_well_formed_code(code) and verify_code_hash(code, code_hash):
            return

        counter = await self._tracker.record_failure(subject_key, self.max_failed_attempts)
        remaining = max(self.max_failed_attempts - counter.count, 0)
        logger.warning(
            "Invalid code for %s by %s — %d attempt(s) remaining",
            subject_key, actor_id or "unknown", remaining,
        )

        if counter.locked_at is not None and remaining == 0 and actor_id and self._notifier:
            await notify_safely(
                self._notifier.send_security_alert(
                    actor_id,
                    "Delivery code locked due to too many failed attempts",
                    {"subject": subject_key, "failed_attempts": counter.count},
                ),
                "security alert",
            )

        raise InvalidCodeError(
            f"Invalid code. {remaining} attempt(s) remaining",
            attempts_remaining=remaining,
        )
