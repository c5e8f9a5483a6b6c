"""
Authentication Manager Module - QR Check-In Attendance Protocol

Privileged re-authorization for destructive session actions. Clearing a
session wipes every attendance record in it, so the lecturer must confirm the
action with a separate password that is checked against a stored werkzeug
hash. Repeated failures lock the actor out for a while.

Features:
- Password verification against a werkzeug hash
- Failed attempt tracking and lockout per actor
- Security logging of every decision
"""

from werkzeug.security import check_password_hash
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, Optional
import logging
import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class ClearAuthorization:
    """Credentials presented when asking to clear a session."""
    actor: str
    password: str


class ClearAuthorizer:
    """
    Verifies clear requests and tracks failed attempts.
    """

    def __init__(self, password_hash: Optional[str],
                 max_attempts: int = 5,
                 lockout_minutes: int = 15,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the authorizer.

        Args:
            password_hash (str): werkzeug hash of the clear password; None disables clearing
            max_attempts (int): Failures allowed before the actor is locked out
            lockout_minutes (int): Length of the lockout
            clock (Callable): Source of the current time
        """
        self.password_hash = password_hash
        self.max_attempts = max_attempts
        self.lockout_duration = timedelta(minutes=lockout_minutes)
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.failed_attempts: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def verify(self, authorization: Optional[ClearAuthorization]) -> bool:
        """
        Check a clear request.

        Args:
            authorization (ClearAuthorization): Actor and password

        Returns:
            bool: True if the request may proceed
        """
        if authorization is None or not authorization.actor:
            self.logger.warning("Clear request without an actor refused")
            return False

        actor = str(authorization.actor)

        if not self.password_hash:
            self.logger.warning(f"Clear request by {actor} refused: no clear password configured")
            return False

        with self._lock:
            if self._is_locked(actor):
                self.logger.warning(f"Clear request by locked-out actor {actor} refused")
                return False

            if not authorization.password or not check_password_hash(self.password_hash, authorization.password):
                self._record_failed_attempt(actor)
                return False

            self.failed_attempts.pop(actor, None)

        self.logger.info(f"Clear request authorized for {actor}")
        return True

    def is_locked(self, actor: str) -> bool:
        with self._lock:
            return self._is_locked(str(actor))

    def _is_locked(self, actor: str) -> bool:
        attempt_data = self.failed_attempts.get(actor)
        if attempt_data is None:
            return False

        # Lockout expired
        if self.clock() - attempt_data['last_attempt'] > self.lockout_duration:
            del self.failed_attempts[actor]
            return False

        return attempt_data['count'] >= self.max_attempts

    def _record_failed_attempt(self, actor: str) -> None:
        attempt_data = self.failed_attempts.setdefault(actor, {'count': 0, 'last_attempt': self.clock()})
        attempt_data['count'] += 1
        attempt_data['last_attempt'] = self.clock()

        self.logger.warning(f"Failed clear authorization attempt {attempt_data['count']} for {actor}")
