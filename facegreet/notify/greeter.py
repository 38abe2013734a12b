from __future__ import annotations

from typing import Iterable, Optional

from facegreet.config import GreeterConfig
from facegreet.errors import NotificationError
from facegreet.face.matcher import MatchVerdict, Recognized
from facegreet.notify.sinks import LogSink, NotificationSink
from facegreet.notify.throttle import CooldownThrottle
from facegreet.utils.log import get_logger

logger = get_logger(__name__)


class Greeter:
    """Greets recognized identities through a sink, at most once per cooldown.

    Sentinel labels (unknown/error) and empty names are never greeted and never
    touch the cooldown table; neither does a delivery that failed.
    """

    def __init__(
        self,
        throttle: Optional[CooldownThrottle] = None,
        sink: Optional[NotificationSink] = None,
        config: Optional[GreeterConfig] = None,
        sentinels: Iterable[str] = ("Unknown", "Error"),
    ):
        self.throttle = throttle or CooldownThrottle()
        self.sink = sink or LogSink()
        self.config = config or GreeterConfig()
        self.sentinels = frozenset(sentinels)

    @property
    def enabled(self) -> bool:
        return bool(self.config.enabled)

    def set_enabled(self, enabled: bool) -> None:
        self.config.enabled = bool(enabled)
        logger.info(f"Greetings {'enabled' if self.config.enabled else 'disabled'}")

    def greeting(self, identity: str) -> str:
        return self.config.template.format(name=identity)

    def greet(self, identity: Optional[str], now: Optional[float] = None) -> bool:
        """Notify `identity` if due. Returns True when a greeting was delivered."""
        if not self.enabled or not identity or identity in self.sentinels:
            return False
        now = self.throttle.now() if now is None else float(now)
        if not self.throttle.should_notify(identity, now):
            return False
        try:
            self.sink.notify(identity, self.greeting(identity))
        except NotificationError as e:
            logger.error(f"Greeting {identity!r} failed: {e}")
            return False
        except Exception as e:
            logger.error(f"Notification sink raised for {identity!r}: {e}")
            return False
        self.throttle.record_notified(identity, now)
        return True

    def greet_verdict(self, verdict: MatchVerdict, now: Optional[float] = None) -> bool:
        if not isinstance(verdict, Recognized):
            return False
        return self.greet(verdict.name, now)
