import threading
from dataclasses import dataclass
from datetime import date
from typing import Callable, Protocol

import structlog

from quotawatch.models import UsageSnapshot

logger = structlog.get_logger()

DEFAULT_SESSION_THRESHOLD = 80.0
DEFAULT_PERIODIC_THRESHOLD = 90.0


@dataclass(frozen=True, slots=True)
class Alert:
    title: "str"
    body: "str"

    @property
    def key(self) -> "str":
        return f"{self.title}:{self.body}"


class Notifier(Protocol):
    """
    Notifier delivers an alert to the user (desktop toast, tray balloon,
    log line).
    """

    def notify(self, alert: "Alert") -> "None": ...


class LogNotifier:
    """
    LogNotifier writes alerts to the log. It is the delivery used when no
    UI shell is attached.
    """

    def notify(self, alert: "Alert") -> "None":
        logger.warning("usage_alert", title=alert.title, body=alert.body)


class NotificationGate:
    """
    NotificationGate: Is a thread-safe gate that decides which usage
    alerts to send and drops the ones already sent.

    The dedup key is the rendered title and body, so a percentage that
    changes produces a new alert while an unchanged message is sent once.
    The sent set is cleared by reset(), and automatically the first time
    an evaluation happens on a new local calendar day.
    """

    def __init__(
        self,
        session_threshold: "float" = DEFAULT_SESSION_THRESHOLD,
        periodic_threshold: "float" = DEFAULT_PERIODIC_THRESHOLD,
        notifier: "Notifier | None" = None,
        today: "Callable[[], date]" = date.today,
    ) -> "None":
        self._session_threshold = session_threshold
        self._periodic_threshold = periodic_threshold
        self._notifier: "Notifier" = notifier or LogNotifier()
        self._today = today
        self._lock: "threading.Lock" = threading.Lock()
        self._sent: "set[str]" = set()
        self._day: "date" = today()

    def check(self, provider_name: "str", snapshot: "UsageSnapshot") -> "list[Alert]":
        """
        returns the alerts the snapshot warrants, ignoring what was sent
        before. Windows with a limit of 0 are unbounded and never alert.
        """
        alerts: "list[Alert]" = []

        session = snapshot.session_percent
        if session is not None and session >= self._session_threshold:
            alerts.append(
                Alert(
                    title=f"{provider_name} Usage Warning",
                    body=f"Session usage at {session:.0f}% ({snapshot.used}/{snapshot.limit})",
                )
            )

        periodic = snapshot.periodic_percent
        if periodic is not None and periodic >= self._periodic_threshold:
            alerts.append(
                Alert(
                    title=f"{provider_name} Periodic Limit",
                    body=f"Periodic usage at {periodic:.0f}%",
                )
            )
        return alerts

    def evaluate(self, provider_name: "str", snapshot: "UsageSnapshot") -> "list[Alert]":
        """
        dispatches every alert that has not been sent yet and returns
        the ones that were dispatched.
        """
        fresh: "list[Alert]" = []
        with self._lock:
            today = self._today()
            if today != self._day:
                logger.debug("notification_day_rollover", sent=len(self._sent))
                self._sent.clear()
                self._day = today
            for alert in self.check(provider_name, snapshot):
                if alert.key in self._sent:
                    continue
                self._sent.add(alert.key)
                fresh.append(alert)

        for alert in fresh:
            try:
                self._notifier.notify(alert)
            except Exception:
                logger.exception("notification_failed", title=alert.title)
        return fresh

    def reset(self) -> "None":
        with self._lock:
            self._sent.clear()
            self._day = self._today()
