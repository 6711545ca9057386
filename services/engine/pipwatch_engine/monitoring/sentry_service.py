"""Sentry error reporting for the monitoring engine.

Errors are captured with the signal they concern, each reconciliation or
repair pass runs inside a transaction, and the steps a signal goes through
(target hit, stop trailed, outcome written) are left as breadcrumbs so an
error report shows what the pass did just before it failed.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generator

import sentry_sdk
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ("token", "password", "secret", "authorization", "dsn", "database_url")
REDACTED = "[REDACTED]"


class SentryLevel(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


@dataclass
class SentryConfig:
    """Sentry configuration."""
    dsn: str
    environment: str = "development"
    release: str = ""
    traces_sample_rate: float = 0.1
    enabled: bool = True
    debug: bool = False
    # Exception class names never reported
    ignore_errors: list[str] = field(default_factory=lambda: [
        "ConnectionResetError",
        "CancelledError",
    ])


def scrub(value: Any) -> Any:
    """Redact credentials anywhere in a nested event payload."""
    if isinstance(value, dict):
        return {
            key: REDACTED if any(s in str(key).lower() for s in SENSITIVE_KEYS) else scrub(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [scrub(item) for item in value]
    return value


class SentryService:
    """Reports engine errors and signal data problems to Sentry.

    Every method is a no-op until ``initialize`` succeeds, so callers never
    need to check whether Sentry is configured.
    """

    def __init__(self, config: SentryConfig):
        self.config = config
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> bool:
        """Initialize the SDK; returns False when disabled, unconfigured or failing."""
        if not self.config.enabled or not self.config.dsn:
            return False

        try:
            sentry_sdk.init(
                dsn=self.config.dsn,
                environment=self.config.environment,
                release=self.config.release or os.environ.get("SENTRY_RELEASE") or "pipwatch@unknown",
                traces_sample_rate=self.config.traces_sample_rate,
                debug=self.config.debug,
                integrations=[
                    HttpxIntegration(),
                    SqlalchemyIntegration(),
                    # Log records stay local; errors are reported explicitly
                    LoggingIntegration(level=None, event_level=None),
                ],
                before_send=self._before_send,
            )
        except Exception as e:
            logger.error("Sentry initialization failed: %s", e)
            return False
        self._initialized = True
        return True

    def _before_send(self, event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
        exc_info = hint.get("exc_info")
        if exc_info and exc_info[0].__name__ in self.config.ignore_errors:
            return None
        return scrub(event)

    def capture_error(
        self,
        error: Exception,
        context: dict[str, Any] | None = None,
        tags: dict[str, str] | None = None,
        level: SentryLevel = SentryLevel.ERROR,
    ) -> str | None:
        """
        Capture an exception in its own scope.

        Args:
            error: Exception to capture
            context: Signal or phase details (signal_id, symbol, price, phase)
            tags: Searchable tags such as the failing stage
            level: Severity level

        Returns:
            Event ID if captured, None otherwise
        """
        if not self._initialized:
            return None

        with sentry_sdk.new_scope() as scope:
            scope.set_level(level.value)
            if context:
                scope.set_context("signal_context", context)
                if "signal_id" in context:
                    scope.set_tag("signal_id", str(context["signal_id"]))
            for key, value in (tags or {}).items():
                scope.set_tag(key, value)
            return sentry_sdk.capture_exception(error)

    def capture_data_issue(self, message: str, signal_id: str, context: dict[str, Any]) -> str | None:
        """Report a corrupt or inconsistent signal as a warning-level message."""
        if not self._initialized:
            return None

        with sentry_sdk.new_scope() as scope:
            scope.set_tag("signal_id", signal_id)
            scope.set_context("signal_context", context)
            return sentry_sdk.capture_message(message, level=SentryLevel.WARNING.value)

    def signal_step(self, step: str, signal_id: str, symbol: str, **data: Any) -> None:
        """Leave a breadcrumb for one step of a signal's processing."""
        if not self._initialized:
            return

        sentry_sdk.add_breadcrumb(
            category="signal",
            message=f"{step} {signal_id} ({symbol})",
            data={"signal_id": signal_id, "symbol": symbol, **data},
            level=SentryLevel.INFO.value,
        )

    @contextmanager
    def pass_transaction(self, name: str) -> Generator[Any, None, None]:
        """Trace one reconciliation or repair pass; yields None when Sentry is off."""
        if not self._initialized:
            yield None
            return

        with sentry_sdk.start_transaction(op="reconcile", name=name) as transaction:
            yield transaction

    def flush(self, timeout: float = 2.0) -> None:
        if self._initialized:
            sentry_sdk.flush(timeout=timeout)


_service: SentryService | None = None


def init_sentry(config: SentryConfig) -> SentryService:
    """Initialize the global Sentry service.

    Args:
        config: Sentry configuration

    Returns:
        The service, initialized if the DSN is usable
    """
    global _service
    _service = SentryService(config)
    _service.initialize()
    return _service


def get_sentry() -> SentryService | None:
    return _service
