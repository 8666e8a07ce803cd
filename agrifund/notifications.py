import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class Notifier:
    """Outbound notification collaborator. Templates and transport live elsewhere."""

    def send(self, event: str, recipient_id: str, context: Dict[str, Any]) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    def send(self, event: str, recipient_id: str, context: Dict[str, Any]) -> None:
        logger.info("notify %s -> %s %s", event, recipient_id, context)


_default = LogNotifier()


def notify_safely(
    notifier: Optional[Notifier], event: str, recipient_id: Optional[str], **context: Any
) -> bool:
    """Fire-and-forget. A failing notifier never fails the calling operation."""
    if not recipient_id:
        return False
    try:
        (notifier or _default).send(event, recipient_id, context)
        return True
    except Exception as e:
        logger.warning("Notification %s to %s failed: %s", event, recipient_id, e)
        return False
