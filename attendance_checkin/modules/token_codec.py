"""
Token Codec Module - QR Check-In Attendance Protocol

This module turns a student's identity into the encrypted envelope carried by
the rotating attendance QR code, and back. Envelopes are sealed with Fernet
(AES-CBC plus HMAC-SHA256) so that a scanner without the shared key learns
nothing about the payload and any tampering is rejected.

Features:
- Canonical JSON serialization of the identity payload
- Authenticated encryption with a fresh random IV per envelope
- Versioned key ring: one active key encodes, every known key decodes
- Fail-closed decoding with a single, cause-free error
- Lightweight envelope shape check before decryption
"""

import base64
import binascii
import hashlib
import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

ATTENDANCE_PURPOSE = 'attendance'

KEY_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,32}$')
ENVELOPE_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,32}\.[A-Za-z0-9_=-]{20,}$')

SubjectId = Union[int, str]


class DecodeError(Exception):
    """Raised when an envelope cannot be turned back into a token.

    The message is always the same; the underlying cause is only logged.
    """

    def __init__(self):
        super().__init__('Invalid QR code')


@dataclass(frozen=True)
class IdentityToken:
    """Decrypted content of an attendance envelope."""
    subject_id: SubjectId
    first_name: str
    last_name: str
    email: str
    issued_at_ms: int
    purpose: str = ATTENDANCE_PURPOSE
    nonce: Optional[str] = field(default=None)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_payload(self) -> Dict[str, Any]:
        """Wire payload, in the field names the mobile and web clients use."""
        payload = {
            'subjectId': self.subject_id,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'email': self.email,
            'timestamp': self.issued_at_ms,
            'type': self.purpose,
        }
        if self.nonce is not None:
            payload['nonce'] = self.nonce
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> 'IdentityToken':
        """
        Build a token from a decrypted payload after checking its schema.

        Args:
            payload: Parsed JSON value

        Returns:
            IdentityToken: The checked token

        Raises:
            ValueError: If any field is missing or has the wrong type
        """
        if not isinstance(payload, dict):
            raise ValueError('payload is not an object')

        subject_id = payload.get('subjectId')
        if isinstance(subject_id, bool) or not isinstance(subject_id, (int, str)):
            raise ValueError('subjectId must be a number or a string')
        if isinstance(subject_id, str) and not subject_id.strip():
            raise ValueError('subjectId is empty')

        timestamp = payload.get('timestamp')
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError('timestamp must be a number')
        if isinstance(timestamp, float) and not timestamp.is_integer():
            raise ValueError('timestamp must be whole milliseconds')

        for name in ('firstName', 'lastName', 'email', 'type'):
            if not isinstance(payload.get(name), str):
                raise ValueError(f'{name} must be a string')

        nonce = payload.get('nonce')
        if nonce is not None and not isinstance(nonce, str):
            raise ValueError('nonce must be a string')

        return cls(
            subject_id=subject_id,
            first_name=payload['firstName'],
            last_name=payload['lastName'],
            email=payload['email'],
            issued_at_ms=int(timestamp),
            purpose=payload['type'],
            nonce=nonce,
        )


def new_nonce() -> str:
    return secrets.token_urlsafe(12)


def derive_fernet_key(secret: Union[str, bytes]) -> bytes:
    """
    Turn a configured secret into a Fernet key.

    A secret that already is a valid Fernet key (32 bytes, urlsafe base64) is
    used as is; anything else is stretched through SHA-256.
    """
    raw = secret.encode('utf-8') if isinstance(secret, str) else secret
    try:
        if len(base64.urlsafe_b64decode(raw)) == 32 and len(raw) == 44:
            return raw
    except (binascii.Error, ValueError):
        pass
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


class KeyRing:
    """
    Versioned set of shared secrets.

    The active key seals new envelopes; every key in the ring opens them, so a
    rotation leaves envelopes sealed under the previous key readable.
    """

    def __init__(self, keys: Dict[str, Union[str, bytes]], active_key_id: Optional[str] = None):
        if not keys:
            raise ValueError('Key ring needs at least one key')

        self._ciphers: Dict[str, Fernet] = {}
        for key_id, secret in keys.items():
            if not KEY_ID_PATTERN.match(key_id):
                raise ValueError(f'Invalid key id: {key_id!r}')
            if not secret:
                raise ValueError(f'Empty secret for key id {key_id!r}')
            self._ciphers[key_id] = Fernet(derive_fernet_key(secret))

        self.active_key_id = active_key_id or next(iter(keys))
        if self.active_key_id not in self._ciphers:
            raise ValueError(f'Active key id {self.active_key_id!r} is not in the ring')

    @classmethod
    def from_string(cls, keys_text: str, active_key_id: Optional[str] = None) -> 'KeyRing':
        """
        Parse ``"v1:secret,v2:secret"``. A bare secret becomes key ``v1``.
        """
        keys: Dict[str, str] = {}
        for item in (part.strip() for part in keys_text.split(',')):
            if not item:
                continue
            if ':' in item:
                key_id, secret = item.split(':', 1)
                keys[key_id.strip()] = secret.strip()
            else:
                keys['v1'] = item
        return cls(keys, active_key_id)

    @property
    def key_ids(self):
        return list(self._ciphers)

    def active(self) -> Fernet:
        return self._ciphers[self.active_key_id]

    def get(self, key_id: str) -> Optional[Fernet]:
        return self._ciphers.get(key_id)


def looks_like_envelope(text: Any) -> bool:
    """Cheap shape check; says nothing about authenticity."""
    return isinstance(text, str) and bool(ENVELOPE_PATTERN.match(text.strip()))


class TokenCodec:
    """
    Seals identity tokens into envelopes and opens them again.

    The codec holds no state besides its key ring and is safe to share
    between threads.
    """

    def __init__(self, key_ring: KeyRing):
        self.key_ring = key_ring
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def serialize(token: IdentityToken) -> bytes:
        return json.dumps(
            token.to_payload(), sort_keys=True, separators=(',', ':')
        ).encode('utf-8')

    def encode(self, token: IdentityToken) -> str:
        """
        Encrypt a token under the active key.

        Args:
            token (IdentityToken): Token to seal

        Returns:
            str: Envelope of the form ``<keyId>.<fernet token>``
        """
        sealed = self.key_ring.active().encrypt(self.serialize(token))
        return f"{self.key_ring.active_key_id}.{sealed.decode('ascii')}"

    def decode(self, envelope: Any) -> IdentityToken:
        """
        Authenticate, decrypt and schema-check an envelope.

        Args:
            envelope (str): Envelope text as scanned

        Returns:
            IdentityToken: The decoded token

        Raises:
            DecodeError: On any failure, without saying which
        """
        if not looks_like_envelope(envelope):
            self.logger.debug("Envelope rejected: unexpected shape")
            raise DecodeError()

        key_id, sealed = envelope.strip().split('.', 1)
        cipher = self.key_ring.get(key_id)
        if cipher is None:
            self.logger.debug(f"Envelope rejected: unknown key id {key_id!r}")
            raise DecodeError()

        # Fernet's decoder ignores the spare low bits of the final base64
        # character; insist on the canonical spelling so every edit is caught.
        try:
            raw = base64.urlsafe_b64decode(sealed.encode('ascii'))
        except (binascii.Error, ValueError):
            self.logger.debug("Envelope rejected: bad base64")
            raise DecodeError() from None
        if base64.urlsafe_b64encode(raw).decode('ascii') != sealed:
            self.logger.debug("Envelope rejected: non-canonical base64")
            raise DecodeError()

        try:
            plaintext = cipher.decrypt(sealed.encode('ascii'))
        except InvalidToken:
            self.logger.debug("Envelope rejected: authentication failed")
            raise DecodeError() from None

        try:
            payload = json.loads(plaintext.decode('utf-8'))
            return IdentityToken.from_payload(payload)
        except (UnicodeDecodeError, ValueError) as e:
            self.logger.debug(f"Envelope rejected: payload check failed ({e})")
            raise DecodeError() from None
