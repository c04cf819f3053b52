"""
Deferred task execution for work that must not block a request.

Tasks are submitted to a thread pool and each one runs inside a fresh
application context, so it gets its own SQLAlchemy session and never
touches the request's.  Failures are logged, never raised into the pool.

With ``TASK_QUEUE_EAGER`` set (the testing config) tasks run inline in the
caller's context, which keeps tests deterministic.

Durability comes from the database rather than the pool: a task only acts
on rows still in the expected status, and ``flask simulations resume``
re-enqueues anything left ``running`` after a restart.
"""
from concurrent.futures import ThreadPoolExecutor
import threading

from flask import current_app, has_app_context


class TaskQueue:
    """Flask extension wrapping a lazily created ThreadPoolExecutor."""

    def __init__(self, app=None):
        self.app = None
        self.eager = False
        self.max_workers = 2
        self._executor = None
        self._lock = threading.Lock()
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        self.eager = app.config.get('TASK_QUEUE_EAGER', False)
        self.max_workers = app.config.get('TASK_QUEUE_WORKERS', 2)
        app.extensions['task_queue'] = self

    def _get_executor(self):
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix='simulation-worker',
                )
            return self._executor

    def enqueue(self, func, *args, **kwargs):
        """Schedule ``func(*args, **kwargs)``.

        Returns a Future in threaded mode, or the function's result in
        eager mode.
        """
        app = current_app._get_current_object() if has_app_context() else self.app

        if self.eager:
            return self._run(app, func, args, kwargs, push_context=not has_app_context())

        return self._get_executor().submit(self._run, app, func, args, kwargs)

    @staticmethod
    def _run(app, func, args, kwargs, push_context=True):
        if not push_context:
            return TaskQueue._call(app, func, args, kwargs)
        with app.app_context():
            return TaskQueue._call(app, func, args, kwargs)

    @staticmethod
    def _call(app, func, args, kwargs):
        try:
            return func(*args, **kwargs)
        except Exception:
            app.logger.exception(f"Deferred task {getattr(func, '__qualname__', func)} failed")
            return None

    def shutdown(self, wait=True):
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None
