"""Scan coordination: structural validation, heuristics, external engines.

Engine failures are classified by reason code. Infra and configuration failures
feed a per-scanner circuit breaker; infected verdicts never do.
"""
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Sequence

import structlog

from cache import CounterStore
from config import ScanSettings
from errors import (
    AntivirusConfigError,
    AntivirusError,
    AntivirusInfraError,
    CircuitOpenError,
    ScanRejection,
)
from helpers import Clock, SystemClock
from services.scanners import CLEAN, INFECTED, Scanner
from services.validation import DetectedImage, ScanTarget, StructuralValidator

logger = structlog.get_logger(__name__)

NO_ENGINES = "no_engines"

RETRYABLE_REASONS = frozenset(
    {
        "timeout",
        "process_timeout",
        "unreachable",
        "connection_refused",
        "process_failed",
        "process_exception",
    }
)

CONFIG_REASONS = frozenset(
    {
        "binary_missing",
        "build_failed",
        "ruleset_invalid",
        "ruleset_missing",
        "rules_integrity_failed",
        "rules_path_invalid",
        "target_missing",
        "target_unreadable",
        "file_too_large",
    }
)


def is_retryable_reason(reason: str | None) -> bool:
    return reason in RETRYABLE_REASONS


def antivirus_error(scanner: str, reason: str | None) -> AntivirusError:
    reason = reason or "unknown"
    if is_retryable_reason(reason):
        return AntivirusInfraError(scanner, reason)
    # unknown reasons go to the operator, not the retry loop
    return AntivirusConfigError(scanner, reason)


@dataclass(frozen=True)
class CircuitState:
    failure_count: int
    opened_at: datetime | None

    @property
    def is_open(self) -> bool:
        return self.opened_at is not None


class ScanCircuitBreaker:
    def __init__(
        self,
        store: CounterStore,
        key: str = "image_scan:circuit_failures",
        max_failures: int = 5,
        decay_seconds: int = 900,
        clock: Clock | None = None,
    ):
        self.store = store
        self.key = key
        self.max_failures = max_failures
        self.decay_seconds = max(60, decay_seconds)
        self.clock = clock or SystemClock()

    def _count_key(self, scanner: str) -> str:
        return f"{self.key}:{scanner}"

    def _opened_key(self, scanner: str) -> str:
        return f"{self.key}:{scanner}:opened_at"

    def state(self, scanner: str) -> CircuitState:
        count = self.store.get(self._count_key(scanner)) or 0
        opened = None
        if count >= self.max_failures:
            raw = self.store.get(self._opened_key(scanner))
            opened = (
                datetime.fromtimestamp(raw, tz=timezone.utc) if raw is not None else self.clock.now()
            )
        return CircuitState(count, opened)

    def record_failure(self, scanner: str, reason: str | None) -> int:
        count = self.store.increment(self._count_key(scanner), self.decay_seconds)
        if count >= self.max_failures:
            self.store.put(
                self._opened_key(scanner), int(self.clock.now().timestamp()), self.decay_seconds
            )
            if count == self.max_failures:
                logger.error(
                    "scan_circuit_opened",
                    scanner=scanner,
                    reason=reason,
                    failures=count,
                    decay_seconds=self.decay_seconds,
                )
        return count

    def assert_available(self, scanner: str) -> None:
        state = self.state(scanner)
        if state.is_open:
            logger.warning("scan_circuit_short_circuit", scanner=scanner, failures=state.failure_count)
            raise CircuitOpenError(scanner, state.failure_count)

    def reset(self, scanner: str) -> None:
        self.store.forget(self._count_key(scanner))
        self.store.forget(self._opened_key(scanner))


class ScanCoordinator:
    def __init__(
        self,
        validator: StructuralValidator,
        heuristic: Scanner,
        engines: Sequence[Scanner],
        breaker: ScanCircuitBreaker,
        settings: ScanSettings,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.validator = validator
        self.heuristic = heuristic
        self.engines = tuple(engines)
        self.breaker = breaker
        self.settings = settings
        self.sleep = sleep

    def guarded_ids(self) -> list[str]:
        ids = [self.heuristic.name]
        if self.settings.enabled:
            ids.extend(engine.name for engine in self.engines)
            if not self.engines:
                ids.append(NO_ENGINES)
        return ids

    def assert_available(self) -> None:
        for scanner_id in self.guarded_ids():
            self.breaker.assert_available(scanner_id)

    def scan(self, target: ScanTarget, context: dict | None = None) -> DetectedImage:
        context = context or {}
        self.assert_available()
        detected = self.validator.validate(target)
        self._run(self.heuristic, target, context)

        if not self.settings.enabled:
            logger.info("scan_engines_disabled", **context)
            return detected
        if not self.engines:
            self.breaker.record_failure(NO_ENGINES, "binary_missing")
            logger.error("scan_no_engines_configured", **context)
            raise AntivirusConfigError(NO_ENGINES, "binary_missing")

        for engine in self.engines:
            self._run(engine, target, context)

        logger.info(
            "scan_passed",
            mime=detected.mime,
            width=detected.width,
            height=detected.height,
            engines=[engine.name for engine in self.engines],
            **context,
        )
        return detected

    def _run(self, scanner: Scanner, target: ScanTarget, context: dict) -> None:
        attempts = max(1, self.settings.retry_attempts)
        for attempt in range(1, attempts + 1):
            outcome = scanner.scan(target)
            if outcome.verdict == CLEAN:
                if self.breaker.state(scanner.name).failure_count:
                    self.breaker.reset(scanner.name)
                return
            if outcome.verdict == INFECTED:
                logger.warning(
                    "scan_rejected", scanner=scanner.name, reason=outcome.reason, **context
                )
                raise ScanRejection(scanner.name, outcome.reason or "infected")

            error = antivirus_error(scanner.name, outcome.reason)
            if error.retryable and attempt < attempts:
                delay_ms = self.settings.retry_backoff_ms * attempt + random.randint(
                    0, max(0, self.settings.retry_jitter_ms)
                )
                logger.info(
                    "scan_retry",
                    scanner=scanner.name,
                    reason=error.reason,
                    attempt=attempt,
                    delay_ms=delay_ms,
                    **context,
                )
                self.sleep(delay_ms / 1000)
                continue

            failures = self.breaker.record_failure(scanner.name, error.reason)
            log = logger.warning if error.retryable else logger.error
            log(
                "scan_engine_failed",
                scanner=scanner.name,
                reason=error.reason,
                retryable=error.retryable,
                failures=failures,
                **context,
            )
            raise error
