"""
Notification System Module - QR Check-In Attendance Protocol

This module emits change notifications whenever a session's live counts
move: a student checked in, a session started, ended or was cleared. It only
hands events to in-process observers; pushing them to browsers (sockets,
polling, server-sent events) is the job of whoever subscribes.

Features:
- Per-session and global subscriptions with unsubscribe handles
- Background queue-draining dispatcher thread, or inline delivery
- Human-readable messages rendered from jinja2 templates
- Observer failures are logged and never reach the publisher
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from queue import Queue
from typing import Any, Callable, Dict, List, Optional, Tuple

from jinja2 import Template

EVENT_CHECKED_IN = 'checked_in'
EVENT_SESSION_STARTED = 'session_started'
EVENT_SESSION_ENDED = 'session_ended'
EVENT_SESSION_CLEARED = 'session_cleared'
EVENT_STATUS_CORRECTED = 'status_corrected'
EVENT_MANUAL_MARK = 'manually_marked'

MESSAGE_TEMPLATES = {
    EVENT_CHECKED_IN: Template(
        "{{ name or subject_id }} checked in ({{ status }}) - "
        "{{ stats.marked_count }}/{{ stats.enrolled_count }} marked, {{ stats.remaining_count }} remaining"
    ),
    EVENT_SESSION_STARTED: Template(
        "Attendance started for {{ class_id }} - {{ stats.enrolled_count }} enrolled"
    ),
    EVENT_SESSION_ENDED: Template(
        "Attendance ended for {{ class_id }} - {{ stats.marked_count }}/{{ stats.enrolled_count }} checked in"
        "{% if stats.status_counts.absent %}, {{ stats.status_counts.absent }} marked absent{% endif %}"
    ),
    EVENT_SESSION_CLEARED: Template(
        "Attendance for {{ class_id }} was cleared"
    ),
    EVENT_STATUS_CORRECTED: Template(
        "{{ subject_id }} changed to {{ status }} in {{ class_id }}"
    ),
    EVENT_MANUAL_MARK: Template(
        "{{ subject_id }} marked {{ status }} by hand - "
        "{{ stats.marked_count }}/{{ stats.enrolled_count }} marked, {{ stats.remaining_count }} remaining"
    ),
}

Observer = Callable[['StatsChangeEvent'], None]


@dataclass
class StatsChangeEvent:
    """A change to a session's live counts."""
    event_type: str
    session_id: int
    class_id: str
    stats: Any
    subject_id: Optional[str] = None
    status: Optional[str] = None
    message: str = ''
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.event_type,
            'sessionId': self.session_id,
            'classId': self.class_id,
            'stats': self.stats.to_dict() if hasattr(self.stats, 'to_dict') else self.stats,
            'subjectId': self.subject_id,
            'status': self.status,
            'message': self.message,
            'createdAt': self.created_at,
        }


class StatsNotifier:
    """
    Fan-out of session change events to subscribed observers.
    """

    def __init__(self, async_dispatch: bool = True):
        """
        Initialize the notifier.

        Args:
            async_dispatch (bool): Deliver on a background thread instead of inline
        """
        self.logger = logging.getLogger(__name__)
        self.async_dispatch = async_dispatch

        self._observers: List[Tuple[Optional[int], Observer]] = []
        self._observers_lock = threading.Lock()

        self.notification_queue: Queue = Queue()
        self.notification_processor: Optional[threading.Thread] = None
        if async_dispatch:
            self.notification_processor = threading.Thread(
                target=self._process_notifications,
                name='stats-notifier',
                daemon=True
            )
            self.notification_processor.start()

    def subscribe(self, observer: Observer, session_id: Optional[int] = None) -> Callable[[], None]:
        """
        Register an observer for one session, or for every session when
        ``session_id`` is None.

        Returns:
            Callable: Call it to unsubscribe
        """
        entry = (session_id, observer)
        with self._observers_lock:
            self._observers.append(entry)

        def unsubscribe() -> None:
            with self._observers_lock:
                if entry in self._observers:
                    self._observers.remove(entry)

        return unsubscribe

    def publish(self, event_type: str, session_id: int, class_id: str, stats: Any,
                subject_id: Optional[str] = None, status: Optional[str] = None,
                name: Optional[str] = None) -> StatsChangeEvent:
        """
        Build an event and hand it to observers.

        Returns:
            StatsChangeEvent: The published event
        """
        event = StatsChangeEvent(
            event_type=event_type,
            session_id=session_id,
            class_id=class_id,
            stats=stats,
            subject_id=subject_id,
            status=status,
            message=self._format_message(event_type, class_id, stats, subject_id, status, name),
        )

        if self.async_dispatch:
            self.notification_queue.put(event)
        else:
            self._deliver(event)
        return event

    def _format_message(self, event_type, class_id, stats, subject_id, status, name) -> str:
        template = MESSAGE_TEMPLATES.get(event_type)
        if template is None:
            return event_type
        return template.render(
            class_id=class_id,
            stats=stats,
            subject_id=subject_id,
            status=status,
            name=name,
        )

    def _deliver(self, event: StatsChangeEvent) -> None:
        with self._observers_lock:
            targets = [
                observer for session_id, observer in self._observers
                if session_id is None or session_id == event.session_id
            ]

        for observer in targets:
            try:
                observer(event)
            except Exception as e:
                self.logger.error(f"Observer failed for {event.event_type} on session {event.session_id}: {str(e)}")

    def _process_notifications(self) -> None:
        """Background thread draining the notification queue."""
        while True:
            event = self.notification_queue.get()
            try:
                if event is None:  # Shutdown signal
                    break
                self._deliver(event)
            finally:
                self.notification_queue.task_done()

    def flush(self) -> None:
        """Block until every queued event has been delivered."""
        if self.async_dispatch:
            self.notification_queue.join()

    def shutdown(self) -> None:
        """Deliver what is queued, then stop the dispatcher."""
        if self.notification_processor is not None and self.notification_processor.is_alive():
            self.notification_queue.put(None)
            self.notification_processor.join(timeout=5)
        self.logger.info("Notification system shut down")
