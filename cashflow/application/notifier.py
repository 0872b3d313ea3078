"""
Change Notifier — best-effort publish/subscribe for balance and request changes.

The transactional core never waits on subscribers:

- emit() persists the event as a Notification row inside the caller's
  transaction and schedules publish() with transaction.on_commit(), so
  rolled-back work is never announced and delivery never holds a lock
  shared with the mutation path.
- In asynchronous mode delivery runs on a single background worker. One
  worker keeps events for the same holder in creation order.
- A subscriber that raises is logged and skipped. It cannot roll back or
  block a settlement, and it cannot starve other subscribers.

Delivery is at-least-once from the consumer's point of view; consumers
deduplicate on NotificationEvent.event_id.

The Notification row is a transactional outbox: it commits or rolls back
with the business change that produced it. That insert is the only
coupling between notifications and the core. If it fails, the decision
fails with it (an approval surfaces SettlementFailed), so no settled change
can exist without its event. Delivery to subscribers is never part of the
transaction.
"""

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from functools import partial

from django.db import transaction

from cashflow.conf import cashflow_setting
from cashflow.domain.events import NotificationEvent
from cashflow.models import Notification

logger = logging.getLogger(__name__)


class ChangeNotifier:
    def __init__(self, asynchronous=True):
        self._lock = threading.Lock()
        self._by_holder = defaultdict(list)
        self._everyone = []
        self._executor = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="cashflow-notify")
            if asynchronous
            else None
        )

    @property
    def asynchronous(self):
        return self._executor is not None

    def subscribe(self, holder_id, callback):
        """Deliver events addressed to ``holder_id`` to ``callback``. Returns an unsubscribe function."""
        with self._lock:
            self._by_holder[holder_id].append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._by_holder.get(holder_id)
                if callbacks and callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._by_holder.pop(holder_id, None)

        return unsubscribe

    def subscribe_all(self, callback):
        """Deliver every event to ``callback``, e.g. a push gateway. Returns an unsubscribe function."""
        with self._lock:
            self._everyone.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._everyone:
                    self._everyone.remove(callback)

        return unsubscribe

    def publish(self, event):
        """Hand ``event`` to its subscribers and return without waiting for them."""
        with self._lock:
            targets = list(self._by_holder.get(event.recipient_id, ())) + list(self._everyone)

        if not targets:
            return

        if self._executor is None:
            self._deliver(event, targets)
            return

        try:
            self._executor.submit(self._deliver, event, targets)
        except RuntimeError:
            logger.warning(
                "Notifier is shut down, dropping event=%s kind=%s recipient=%s",
                event.event_id, event.kind, event.recipient_id,
            )

    def _deliver(self, event, targets):
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Notification delivery failed: event=%s kind=%s recipient=%s",
                    event.event_id, event.kind, event.recipient_id,
                )

    def drain(self):
        """Block until everything published so far has been delivered."""
        if self._executor is not None:
            self._executor.submit(lambda: None).result()

    def shutdown(self, wait=True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


_default_notifier = None
_default_lock = threading.Lock()


def get_notifier():
    """The process-wide notifier, built on first use from CASHFLOW['NOTIFY_ASYNC']."""
    global _default_notifier
    with _default_lock:
        if _default_notifier is None:
            _default_notifier = ChangeNotifier(
                asynchronous=cashflow_setting("NOTIFY_ASYNC"),
            )
        return _default_notifier


def emit(recipient_id, kind, subject_id, title, message, notifier=None):
    """
    Record a change for ``recipient_id`` and publish it once the surrounding transaction commits.

    Returns the NotificationEvent that will be published.
    """
    notification = Notification.objects.create(
        recipient_id=recipient_id,
        kind=kind,
        subject_id=subject_id,
        title=title,
        message=message,
    )
    event = NotificationEvent(
        recipient_id=recipient_id,
        kind=kind,
        subject_id=subject_id,
        event_id=notification.id,
        created_at=notification.created_at,
    )

    target = notifier if notifier is not None else get_notifier()
    transaction.on_commit(partial(target.publish, event))
    return event
