"""Live log viewer: watch a log file and push re-rendered payloads to subscribers.

Two independent triggers feed one debounced re-parse per subscription: a fast
stat-polling watcher that reports change/rename events and a coarse poll
timer that catches anything the watcher misses. Every re-parse reads the
whole file again.

All methods must be called from the running event loop.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from agent_runner.config import ViewerSettings
from agent_runner.execution.debounce import Debouncer
from agent_runner.execution.ledger import HistoryLedger
from agent_runner.execution.models import ExecutionRecord, ExecutionType, TargetStatus
from agent_runner.execution.view_model import (
    LOG_FILE_NOT_FOUND,
    ErrorMessage,
    LoadingMessage,
    LogContext,
    LogDataMessage,
    RunContext,
    ViewerMessage,
    build_log_payload,
    run_context_for,
)
from agent_runner.execution.watcher import FileWatcher, PollTimer, WatchEvent

logger = logging.getLogger(__name__)

LogSubscriber = Callable[[ViewerMessage], None]


class LogSubscription:
    """Handle returned by `LiveLogViewer.attach`."""

    def __init__(self, viewer: LiveLogViewer, context: LogContext, subscriber: LogSubscriber) -> None:
        self._viewer = viewer
        self.context = context
        self.subscriber = subscriber
        self.watcher: FileWatcher | None = None
        self.poller: PollTimer | None = None
        self.debouncer: Debouncer | None = None
        self.closed = False
        self.updates = 0

    @property
    def key(self) -> str:
        return self.context.key

    @property
    def log_file(self) -> Path:
        return self.context.log_file

    def refresh(self) -> None:
        self._viewer.refresh(self.key)

    def close(self) -> None:
        self._viewer.close(self.key)

    def teardown(self) -> None:
        if self.debouncer is not None:
            self.debouncer.cancel()
        if self.watcher is not None:
            self.watcher.close()
        if self.poller is not None:
            self.poller.close()
        self.watcher = None
        self.poller = None
        self.debouncer = None


class LiveLogViewer:
    """Serves one subscription per target key."""

    def __init__(
        self,
        *,
        workspace_root: Path | None = None,
        ledger: HistoryLedger | None = None,
        settings: ViewerSettings | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.workspace_root = workspace_root
        self.ledger = ledger
        self.settings = settings or ViewerSettings()
        self._log = log or logger
        self._subscriptions: dict[str, LogSubscription] = {}

    def subscriptions(self) -> list[LogSubscription]:
        return list(self._subscriptions.values())

    def get(self, key: str) -> LogSubscription | None:
        return self._subscriptions.get(key)

    def attach(self, context: LogContext, subscriber: LogSubscriber) -> LogSubscription:
        """Start (or re-point) the subscription for `context.key` and emit the first payload."""

        existing = self._subscriptions.get(context.key)
        if existing is not None:
            existing.context = replace(context, run=existing.context.run.merged(context.run))
            existing.subscriber = subscriber
            self._watch(existing)
            self._post(existing)
            return existing

        subscription = LogSubscription(self, replace(context), subscriber)
        self._subscriptions[context.key] = subscription
        self._emit(subscription, LoadingMessage(loading=True))
        self._watch(subscription)
        self._post(subscription)
        self._emit(subscription, LoadingMessage(loading=False))
        return subscription

    def update_run_context(
        self,
        type_: ExecutionType,
        target_id: str,
        updates: RunContext,
    ) -> bool:
        """Merge run details into an open subscription and re-emit; False if none is open."""

        subscription = self._subscriptions.get(f"{type_.value}:{target_id}")
        if subscription is None:
            return False
        subscription.context.run = subscription.context.run.merged(updates)
        self._post(subscription)
        return True

    def status_listener(
        self,
        type_: ExecutionType,
    ) -> Callable[[TargetStatus, ExecutionRecord | None], None]:
        """Tracker `on_change` hook that keeps headers of open subscriptions current."""

        def listener(status: TargetStatus, record: ExecutionRecord | None) -> None:
            self.update_run_context(type_, status.target_id, run_context_for(record, error=status.error))

        return listener

    def refresh(self, key: str) -> None:
        subscription = self._subscriptions.get(key)
        if subscription is not None:
            self._post(subscription)

    def close(self, key: str) -> None:
        subscription = self._subscriptions.pop(key, None)
        if subscription is None:
            return
        subscription.teardown()
        subscription.closed = True

    def close_all(self) -> None:
        for key in list(self._subscriptions):
            self.close(key)

    def _watch(self, subscription: LogSubscription) -> None:
        subscription.teardown()
        log_file = subscription.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)
        if not log_file.exists():
            log_file.touch()

        key = subscription.key
        subscription.debouncer = Debouncer(
            self.settings.debounce_seconds,
            lambda: self.refresh(key),
        )
        subscription.watcher = FileWatcher(
            log_file,
            lambda event: self._on_watch_event(key, event),
            interval=self.settings.watch_interval_seconds,
            log=self._log,
        )
        subscription.poller = PollTimer(
            self.settings.poll_interval_seconds,
            lambda: self._on_poll(key),
        )
        subscription.watcher.start()
        subscription.poller.start()

    def _on_watch_event(self, key: str, event: WatchEvent) -> None:
        subscription = self._subscriptions.get(key)
        if subscription is None:
            return
        if event is WatchEvent.RENAME and not subscription.log_file.exists():
            self._handle_deleted(subscription)
            return
        self._schedule(subscription)

    def _on_poll(self, key: str) -> None:
        subscription = self._subscriptions.get(key)
        if subscription is None:
            return
        if subscription.log_file.exists():
            self._schedule(subscription)
        else:
            self._handle_deleted(subscription)

    def _schedule(self, subscription: LogSubscription) -> None:
        if subscription.debouncer is not None:
            subscription.debouncer.trigger()

    def _handle_deleted(self, subscription: LogSubscription) -> None:
        log_file = subscription.log_file
        self._log.info("Log file deleted: %s", log_file)
        self.close(subscription.key)
        self._emit(subscription, ErrorMessage(message=LOG_FILE_NOT_FOUND, not_found=True))
        if self.ledger is not None and self.ledger.remove_by_log_file(log_file):
            self._log.info("Removed history record for deleted log file: %s", log_file)

    def _post(self, subscription: LogSubscription) -> None:
        try:
            payload = build_log_payload(subscription.context, self.workspace_root)
        except FileNotFoundError:
            self._emit(subscription, ErrorMessage(message=LOG_FILE_NOT_FOUND, not_found=True))
            return
        except (OSError, ValueError) as error:
            self._log.error("Failed to read log file %s: %s", subscription.log_file, error)
            self._emit(subscription, ErrorMessage(message=str(error)))
            return
        subscription.updates += 1
        self._emit(subscription, LogDataMessage(payload=payload))

    def _emit(self, subscription: LogSubscription, message: ViewerMessage) -> None:
        try:
            subscription.subscriber(message)
        except Exception:  # noqa: BLE001
            self._log.exception("Log subscriber failed for %s", subscription.key)
