"""Hand-off of appointment lifecycle events to the external notifier.

Notification is best effort. Dispatch happens after the triggering
transaction has committed, and a failing notifier is logged and ignored so it
can never undo a booking or a transition.
"""

import logging
from collections import deque
from datetime import datetime
from typing import Any, Callable, Protocol

from medbook.core.actor import CLIENT, PRACTITIONER
from medbook.models.appointment import Appointment
from medbook.schemas import AppointmentEvent, AppointmentResponse
from medbook.scheduling.policy import NotificationMode

logger = logging.getLogger(__name__)

# Who hears about each event.
EVENT_RECIPIENTS = {
    'created': (CLIENT, PRACTITIONER),
    'confirmed': (CLIENT, PRACTITIONER),
    'in_progress': (),
    'completed': (CLIENT,),
    'cancelled': (CLIENT, PRACTITIONER),
    'no_show': (CLIENT,),
    'expired': (CLIENT,),
}

Defer = Callable[..., Any]


class Notifier(Protocol):
    def notify(self, event: AppointmentEvent, appointment: AppointmentResponse) -> None:
        ...


class LoggingNotifier:
    """Default sink: records the event in the application log."""

    def notify(self, event: AppointmentEvent, appointment: AppointmentResponse) -> None:
        logger.info(
            'Appointment %s event %s for %s',
            appointment.id,
            event.name,
            ', '.join(event.recipients) or 'nobody',
        )


def build_event(
    name: str,
    appointment: Appointment,
    occurred_at: datetime,
    previous_status: str | None = None,
) -> tuple[AppointmentEvent, AppointmentResponse]:
    return (
        AppointmentEvent(
            name=name,
            recipients=EVENT_RECIPIENTS.get(name, ()),
            previous_status=previous_status,
            occurred_at=occurred_at,
        ),
        AppointmentResponse.model_validate(appointment),
    )


class NotificationDispatcher:
    def __init__(self, notifier: Notifier | None = None) -> None:
        self.notifier = notifier or LoggingNotifier()
        self._pending: deque[tuple[AppointmentEvent, AppointmentResponse]] = deque()

    def dispatch(self, event: AppointmentEvent, appointment: AppointmentResponse) -> bool:
        try:
            self.notifier.notify(event, appointment)
        except Exception:
            logger.exception('Notification %s for appointment %s failed', event.name, appointment.id)
            return False
        return True

    def publish(
        self,
        event: AppointmentEvent,
        appointment: AppointmentResponse,
        mode: NotificationMode = NotificationMode.IMMEDIATE,
        defer: Defer | None = None,
    ) -> bool | None:
        """Send now, or hand the event to a post-commit hook.

        In deferred mode ``defer`` (for example ``BackgroundTasks.add_task``)
        receives the dispatch call; without one the event waits in the
        pending queue until ``flush`` runs.
        """
        if mode == NotificationMode.IMMEDIATE:
            return self.dispatch(event, appointment)

        if defer is not None:
            defer(self.dispatch, event, appointment)
        else:
            self._pending.append((event, appointment))
        return None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def flush(self) -> int:
        delivered = 0
        while self._pending:
            event, appointment = self._pending.popleft()
            if self.dispatch(event, appointment):
                delivered += 1
        return delivered
