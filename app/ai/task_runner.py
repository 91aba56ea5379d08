"""
Well-Architected Review Service
Background Task Runner.

Runs long review steps (environment collection, AI analysis) in daemon
threads so HTTP callers return immediately and poll for status.

At most one task per key (review session id) runs at a time. Exceptions
raised by the task never escape the thread: they are logged and handed to
the ``on_error`` callback, which records them on the session.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class TaskRunner:
    """Runs keyed tasks in background threads inside a Flask app context."""

    def __init__(self, app=None):
        self._app = app
        self._running: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def submit(self, key: str, fn, *args, on_error=None) -> bool:
        """
        Run ``fn(*args)`` in a background thread.

        Args:
            key: Task key; a second submit for a running key is refused.
            fn: Callable to run inside an app context.
            on_error: Optional callable(key, exc) invoked if ``fn`` raises.

        Returns:
            True if the task was started, False if one is already running for ``key``.
        """
        if self._app is None:
            raise RuntimeError("TaskRunner is not bound to a Flask app")

        with self._lock:
            existing = self._running.get(key)
            if existing is not None and existing.is_alive():
                logger.warning("TaskRunner: task %s already running, ignoring submit", key,
                               extra={"session_id": key})
                return False
            t = threading.Thread(
                target=self._execute_in_background,
                args=(key, fn, args, on_error),
                name=f"review-{key[:8]}",
                daemon=True,
            )
            self._running[key] = t
        t.start()
        return True

    def is_running(self, key: str) -> bool:
        t = self._running.get(key)
        return t is not None and t.is_alive()

    def join(self, key: str, timeout: float | None = None) -> bool:
        """Wait for the task for ``key``; True if it finished (or never ran)."""
        t = self._running.get(key)
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()

    # ── Internal ──────────────────────────────────────────────────────────

    def _execute_in_background(self, key: str, fn, args: tuple, on_error):
        from app.models import db

        with self._app.app_context():
            try:
                fn(*args)
            except Exception as e:
                logger.exception("TaskRunner: task %s failed: %s", key, e,
                                 extra={"session_id": key})
                db.session.rollback()
                if on_error is not None:
                    try:
                        on_error(key, e)
                    except Exception:
                        logger.exception("TaskRunner: error handler for %s failed", key,
                                         extra={"session_id": key})
            finally:
                db.session.remove()
                with self._lock:
                    if self._running.get(key) is threading.current_thread():
                        self._running.pop(key, None)
