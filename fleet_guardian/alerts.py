import asyncio
import inspect
import smtplib
import time
from dataclasses import dataclass, asdict
from email.message import EmailMessage
from enum import Enum, IntEnum
from typing import Callable, List, Optional

from fleet_guardian import config
from fleet_guardian.logging_config import get_logger
from fleet_guardian.store import Store

logger = get_logger("alerts", "alerts.log")


class AlertType(str, Enum):
    SPEEDING = "speeding"
    STAGNATION = "stagnation"


class Priority(IntEnum):
    NORMAL = 1
    HIGH = 2


@dataclass(frozen=True)
class Alert:
    type: AlertType
    vehicle_id: str
    vehicle_name: str
    message: str
    timestamp: int  # epoch ms
    location: Optional[dict] = None

    @property
    def priority(self) -> Priority:
        return Priority.HIGH if self.type is AlertType.SPEEDING else Priority.NORMAL

    def to_dict(self) -> dict:
        d = asdict(self)
        d["type"] = self.type.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Alert":
        return cls(
            type=AlertType(d["type"]),
            vehicle_id=d["vehicle_id"],
            vehicle_name=d.get("vehicle_name") or d["vehicle_id"],
            message=d["message"],
            timestamp=int(d["timestamp"]),
            location=d.get("location"),
        )


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------
#                 ALERT LOG
# ---------------------------------------------------
class AlertLog:
    """Insertion-ordered alert history; only the newest `cap` entries survive."""

    def __init__(self, store: Store, key: str, cap: int):
        self.store = store
        self.key = key
        self.cap = cap

    async def append(self, alerts: List[Alert]) -> int:
        return await self.store.append_capped(self.key, [a.to_dict() for a in alerts], self.cap)

    async def recent(self, limit: Optional[int] = None) -> List[dict]:
        return await self.store.tail(self.key, limit)

    async def count(self) -> int:
        return await self.store.length(self.key)


# ---------------------------------------------------
#                 NOTIFIERS
# ---------------------------------------------------
def notification_text(alert: Alert):
    return "Vehicle Alert", f"{alert.vehicle_name}: {alert.message}"


class LogNotifier:
    async def notify(self, alert: Alert) -> None:
        title, body = notification_text(alert)
        if alert.priority is Priority.HIGH:
            logger.warning(f"[notify] {title} | {body}")
        else:
            logger.info(f"[notify] {title} | {body}")


class EmailNotifier:
    """SMTP delivery; the blocking send runs in the default executor."""

    def __init__(self, host: str, port: int, user: Optional[str], password: Optional[str],
                 recipient: str):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.recipient = recipient

    def build_message(self, alert: Alert) -> EmailMessage:
        title, body = notification_text(alert)
        msg = EmailMessage()
        msg["Subject"] = f"{title}: {alert.type.value} {alert.vehicle_name}"
        msg["From"] = self.user or self.recipient
        msg["To"] = self.recipient
        msg["X-Priority"] = "1" if alert.priority is Priority.HIGH else "3"
        msg.set_content(body)
        return msg

    def _send(self, msg: EmailMessage) -> None:
        with smtplib.SMTP_SSL(self.host, self.port, timeout=30) as smtp:
            if self.user:
                smtp.login(self.user, self.password or "")
            smtp.send_message(msg)

    async def notify(self, alert: Alert) -> None:
        msg = self.build_message(alert)
        await asyncio.get_running_loop().run_in_executor(None, self._send, msg)
        logger.info(f"[notify] Email sent to {self.recipient} for {alert.vehicle_id} ({alert.type.value})")


def build_notifier():
    if config.SMTP_HOST and config.PRIMARY_EMAIL:
        return EmailNotifier(
            config.SMTP_HOST, config.SMTP_PORT, config.SMTP_USER,
            config.SMTP_PASSWORD, config.PRIMARY_EMAIL,
        )
    return LogNotifier()


async def send_alert(alert: Alert, notifier=None) -> None:
    notifier = notifier or LogNotifier()
    await notifier.notify(alert)


# ---------------------------------------------------
#                 ALERT SINK
# ---------------------------------------------------
class AlertSink:
    """
    Commits a cycle's alerts: log append first, then one notification per
    alert, then the batch to live listeners. A failed append is logged and
    the alerts are still dispatched; notification and listener failures are
    logged and never undo the append.
    """

    def __init__(self, log: AlertLog, notifier=None):
        self.log = log
        self.notifier = notifier
        self._listeners: List[Callable] = []

    def subscribe(self, listener: Callable) -> Callable:
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Callable) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def commit(self, alerts: List[Alert]) -> int:
        if not alerts:
            return await self.log.count()

        size = 0
        try:
            size = await self.log.append(alerts)
            logger.info(f"[sink] Stored {len(alerts)} alert(s) in {self.log.key}, log size={size}")
        except Exception:
            logger.exception(f"[sink] Error storing {len(alerts)} alert(s) in {self.log.key}")

        for alert in alerts:
            try:
                await send_alert(alert, self.notifier)
            except Exception:
                logger.exception(
                    f"[sink] Error sending notification for {alert.vehicle_id} ({alert.type.value})"
                )

        for listener in list(self._listeners):
            try:
                result = listener(alerts)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[sink] Alert listener failed")

        return size
