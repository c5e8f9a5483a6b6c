"""
Token Generator Module - QR Check-In Attendance Protocol

Runs on the student's device. Mints a fresh attendance envelope for one
identity every rotation interval so that the QR code on screen is always
recent. The scanner side, not this module, decides whether a token is still
fresh enough to accept.

Features:
- Single cancellable periodic task per generator (no global timers)
- Lazy, infinite, restartable token streams
- Non-decreasing issuance timestamps per subject with unique nonces
- Countdown to the next rotation for display purposes
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from attendance_checkin.modules.token_codec import (
    ATTENDANCE_PURPOSE,
    IdentityToken,
    SubjectId,
    TokenCodec,
    new_nonce,
)

DEFAULT_ROTATION_INTERVAL_MS = 30_000


def epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StudentIdentity:
    """Who the generated tokens speak for."""
    subject_id: SubjectId
    first_name: str
    last_name: str
    email: str = ''


class PeriodicTask:
    """
    Call a function every ``interval`` seconds on a daemon thread.

    The first call happens immediately on ``start``. ``stop`` is idempotent
    and may be called from inside the callback.
    """

    def __init__(self, func: Callable[[], None], interval: float, name: str = 'periodic-task'):
        if interval <= 0:
            raise ValueError('interval must be positive')
        self.func = func
        self.interval = interval
        self.name = name
        self.logger = logging.getLogger(__name__)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop_event,), name=self.name, daemon=True
            )
            self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.func()
            except Exception as e:
                self.logger.error(f"Periodic task {self.name} failed: {str(e)}")
            stop_event.wait(self.interval)


class TokenStream:
    """
    Lazy, infinite sequence of envelopes for one identity.

    Every ``iter()`` starts a new sequence; each ``next()`` mints a fresh
    envelope at the current time. ``current`` is the envelope most recently
    minted by the owning generator's periodic task.
    """

    def __init__(self, generator: 'TokenGenerator', identity: StudentIdentity):
        self._generator = generator
        self.identity = identity
        self.current: Optional[str] = None

    def __iter__(self) -> Iterator[str]:
        while True:
            yield self._generator.mint(self.identity)


class TokenGenerator:
    """
    Owns the periodic minting of attendance envelopes for one identity.
    """

    def __init__(self, codec: TokenCodec, clock: Callable[[], int] = epoch_ms):
        self.codec = codec
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.rotation_interval_ms = DEFAULT_ROTATION_INTERVAL_MS

        self._last_issued: Dict[str, int] = {}
        self._issue_lock = threading.Lock()
        self._task: Optional[PeriodicTask] = None
        self._stream: Optional[TokenStream] = None
        self._on_token: Optional[Callable[[str], None]] = None
        self._last_rotation_ms: Optional[int] = None

    def mint(self, identity: StudentIdentity) -> str:
        """
        Mint one envelope for ``identity`` at the current time.

        Args:
            identity (StudentIdentity): Student the token identifies

        Returns:
            str: Encrypted envelope
        """
        key = str(identity.subject_id)
        with self._issue_lock:
            # Never earlier than the last issuance; same-millisecond tokens differ by nonce
            issued_at = max(self.clock(), self._last_issued.get(key, 0))
            self._last_issued[key] = issued_at

        token = IdentityToken(
            subject_id=identity.subject_id,
            first_name=identity.first_name,
            last_name=identity.last_name,
            email=identity.email,
            issued_at_ms=issued_at,
            purpose=ATTENDANCE_PURPOSE,
            nonce=new_nonce(),
        )
        return self.codec.encode(token)

    def start(self, identity: StudentIdentity,
              rotation_interval_ms: int = DEFAULT_ROTATION_INTERVAL_MS,
              on_token: Optional[Callable[[str], None]] = None) -> TokenStream:
        """
        Begin rotating tokens for ``identity``.

        A running generator is stopped first, so one generator never drives
        two schedules.

        Args:
            identity (StudentIdentity): Student the tokens identify
            rotation_interval_ms (int): Milliseconds between rotations
            on_token (Callable[[str], None]): Receives each rotated envelope

        Returns:
            TokenStream: Stream bound to this generator
        """
        if rotation_interval_ms <= 0:
            raise ValueError('rotation_interval_ms must be positive')

        self.stop()
        self.rotation_interval_ms = rotation_interval_ms
        self._on_token = on_token
        self._stream = TokenStream(self, identity)
        self._task = PeriodicTask(
            self._rotate,
            rotation_interval_ms / 1000.0,
            name=f"token-rotation-{identity.subject_id}",
        )
        self._task.start()

        self.logger.info(f"Token rotation started for subject {identity.subject_id} every {rotation_interval_ms} ms")
        return self._stream

    def stop(self) -> None:
        """Cancel the periodic task. Safe to call any number of times."""
        task, self._task = self._task, None
        if task is None:
            return
        task.stop()
        if self._stream is not None:
            self.logger.info(f"Token rotation stopped for subject {self._stream.identity.subject_id}")

    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running

    @property
    def current(self) -> Optional[str]:
        return self._stream.current if self._stream else None

    def seconds_until_rotation(self) -> int:
        """Whole seconds left before the next rotation, for a countdown display."""
        if not self.running or self._last_rotation_ms is None:
            return 0
        elapsed = self.clock() - self._last_rotation_ms
        remaining_ms = max(0, self.rotation_interval_ms - elapsed)
        return -(-remaining_ms // 1000)

    def _rotate(self) -> None:
        stream = self._stream
        if stream is None:
            return
        envelope = self.mint(stream.identity)
        stream.current = envelope
        self._last_rotation_ms = self.clock()
        if self._on_token is not None:
            self._on_token(envelope)
