"""
Token Validator Module - QR Check-In Attendance Protocol

Scanner-side freshness authority. Opens an envelope with the token codec and
decides whether the identity inside may be used for a check-in right now.
Validation is a pure function of its inputs: no I/O, no state, safe to retry.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from attendance_checkin.modules.errors import Rejection, describe
from attendance_checkin.modules.token_codec import (
    ATTENDANCE_PURPOSE,
    DecodeError,
    IdentityToken,
    SubjectId,
    TokenCodec,
)
from attendance_checkin.modules.token_generator import DEFAULT_ROTATION_INTERVAL_MS

DEFAULT_MAX_AGE_MS = 35_000


@dataclass(frozen=True)
class ValidIdentity:
    """Identity extracted from an accepted token."""
    subject_id: SubjectId
    display_name: str
    email: str
    issued_at_ms: int
    age_ms: int
    nonce: Optional[str] = None

    @classmethod
    def from_token(cls, token: IdentityToken, age_ms: int) -> 'ValidIdentity':
        return cls(
            subject_id=token.subject_id,
            display_name=token.display_name,
            email=token.email,
            issued_at_ms=token.issued_at_ms,
            age_ms=age_ms,
            nonce=token.nonce,
        )


@dataclass(frozen=True)
class ValidationResult:
    identity: Optional[ValidIdentity] = None
    rejection: Optional[Rejection] = None

    @property
    def valid(self) -> bool:
        return self.identity is not None

    def to_dict(self) -> Dict[str, Any]:
        if self.valid:
            return {
                'valid': True,
                'student_id': self.identity.subject_id,
                'name': self.identity.display_name,
                'age_ms': self.identity.age_ms,
            }
        return {
            'valid': False,
            'error': describe(self.rejection),
            'error_type': self.rejection.value,
        }


class TokenValidator:
    """
    Checks envelopes against a freshness window.

    ``max_age_ms`` must leave a margin over the rotation interval so a token
    scanned just before its successor appears is still accepted.
    """

    def __init__(self, codec: TokenCodec,
                 max_age_ms: int = DEFAULT_MAX_AGE_MS,
                 rotation_interval_ms: int = DEFAULT_ROTATION_INTERVAL_MS,
                 clock: Optional[Callable[[], int]] = None):
        if max_age_ms <= rotation_interval_ms:
            raise ValueError(
                f"max_age_ms ({max_age_ms}) must exceed the rotation interval ({rotation_interval_ms})"
            )
        self.codec = codec
        self.max_age_ms = max_age_ms
        self.rotation_interval_ms = rotation_interval_ms
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.logger = logging.getLogger(__name__)

    def validate(self, envelope: Any, now_ms: Optional[int] = None,
                 max_age_ms: Optional[int] = None) -> ValidationResult:
        """
        Validate an envelope.

        Args:
            envelope (str): Scanned envelope text
            now_ms (int): Current epoch milliseconds; the validator clock when omitted
            max_age_ms (int): Freshness window override

        Returns:
            ValidationResult: Identity on success, rejection reason otherwise
        """
        now = self.clock() if now_ms is None else now_ms
        window = self.max_age_ms if max_age_ms is None else max_age_ms

        try:
            token = self.codec.decode(envelope)
        except DecodeError:
            return ValidationResult(rejection=Rejection.MALFORMED)

        if token.purpose != ATTENDANCE_PURPOSE:
            return ValidationResult(rejection=Rejection.WRONG_PURPOSE)

        age = now - token.issued_at_ms
        if age < 0:
            self.logger.info(f"Token for subject {token.subject_id} is dated {-age} ms in the future")
            return ValidationResult(rejection=Rejection.INVALID_TIMESTAMP)
        if age > window:
            return ValidationResult(rejection=Rejection.EXPIRED)

        return ValidationResult(identity=ValidIdentity.from_token(token, age))
