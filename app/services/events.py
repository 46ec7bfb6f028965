import logging
import asyncio
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

STATUS_CHANGED = "change_record.status_changed"
RECORD_CREATED = "change_record.created"
SETTINGS_UPDATED = "automation_settings.updated"


class EventBus:
    """
    Lightweight in-process event bus.
    The notification system subscribes here to hear about status transitions;
    delivery is fire-and-forget and a failing handler never affects the publisher.
    """
    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_type: str, handler: Callable):
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)
        logger.debug(f"[EVENT] Subscribed to {event_type}")

    def unsubscribe(self, event_type: str, handler: Callable):
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def clear(self):
        self._handlers.clear()

    def publish(self, event_type: str, data: Any):
        logger.info(f"[EVENT] Publishing {event_type}")
        for handler in list(self._handlers.get(event_type, [])):
            try:
                if asyncio.iscoroutinefunction(handler):
                    self._dispatch_async(handler, data)
                else:
                    handler(data)
            except Exception as e:
                logger.error(f"[EVENT] Handler {getattr(handler, '__name__', handler)} failed for {event_type}: {e}")

    def _dispatch_async(self, handler: Callable, data: Any):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # sync callers (endpoints, CLI) must not wait on the handler
            threading.Thread(
                target=self._run_in_thread,
                args=(handler, data),
                name=f"event-{getattr(handler, '__name__', 'handler')}",
                daemon=True,
            ).start()
            return
        task = loop.create_task(handler(data))
        task.add_done_callback(self._log_task_error)

    @staticmethod
    def _run_in_thread(handler: Callable, data: Any):
        try:
            asyncio.run(handler(data))
        except Exception as e:
            logger.error(f"[EVENT] Exception in async handler {getattr(handler, '__name__', handler)}: {e}")

    @staticmethod
    def _log_task_error(task: "asyncio.Task"):
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[EVENT] Exception in async handler: {task.exception()}")


# singleton
bus = EventBus()
