import logging
import threading

from attendance_checkin.modules.notification_system import (
    EVENT_CHECKED_IN,
    EVENT_SESSION_CLEARED,
    StatsNotifier,
)
from attendance_checkin.modules.session_registry import SessionStats

STATS = SessionStats(enrolled_count=30, marked_count=12, remaining_count=18, status_counts={'present': 12})


def test_inline_delivery_and_unsubscribe():
    notifier = StatsNotifier(async_dispatch=False)
    seen = []
    unsubscribe = notifier.subscribe(seen.append)

    notifier.publish(EVENT_CHECKED_IN, 1, 'CS101', STATS, subject_id='S1', status='present')
    unsubscribe()
    unsubscribe()
    notifier.publish(EVENT_CHECKED_IN, 1, 'CS101', STATS, subject_id='S2', status='present')

    assert [event.subject_id for event in seen] == ['S1']
    assert seen[0].message == 'S1 checked in (present) - 12/30 marked, 18 remaining'


def test_session_filter():
    notifier = StatsNotifier(async_dispatch=False)
    first, everything = [], []
    notifier.subscribe(first.append, session_id=1)
    notifier.subscribe(everything.append)

    notifier.publish(EVENT_SESSION_CLEARED, 2, 'CS202', STATS)

    assert first == []
    assert everything[0].message == 'Attendance for CS202 was cleared'


def test_failing_observer_does_not_block_others(caplog):
    notifier = StatsNotifier(async_dispatch=False)
    seen = []

    def broken(event):
        raise RuntimeError('socket closed')

    notifier.subscribe(broken)
    notifier.subscribe(seen.append)

    with caplog.at_level(logging.ERROR):
        event = notifier.publish(EVENT_CHECKED_IN, 1, 'CS101', STATS, subject_id='S1', status='late')

    assert seen == [event]
    assert 'socket closed' in caplog.text


def test_async_delivery_runs_on_worker_thread():
    notifier = StatsNotifier(async_dispatch=True)
    threads = []
    delivered = threading.Event()

    def observer(event):
        threads.append(threading.current_thread().name)
        delivered.set()

    notifier.subscribe(observer)
    try:
        notifier.publish(EVENT_CHECKED_IN, 1, 'CS101', STATS, subject_id='S1', status='present')
        notifier.flush()
        assert delivered.is_set()
        assert threads == ['stats-notifier']
    finally:
        notifier.shutdown()

    assert not notifier.notification_processor.is_alive()


def test_event_to_dict():
    notifier = StatsNotifier(async_dispatch=False)

    data = notifier.publish('custom_event', 3, 'CS303', STATS).to_dict()

    assert data['type'] == 'custom_event'
    assert data['message'] == 'custom_event'
    assert data['stats'] == STATS.to_dict()
    assert data['classId'] == 'CS303'
    assert data['createdAt']
