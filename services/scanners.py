"""Scanner adapters. Each returns a ``ScanOutcome``; none of them raises."""
import hashlib
import hmac
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

import structlog

from services.validation import ScanTarget

logger = structlog.get_logger(__name__)

CLEAN = "clean"
INFECTED = "infected"
ERROR = "error"


@dataclass(frozen=True)
class ScanOutcome:
    verdict: str
    reason: str | None
    scanner_id: str

    @classmethod
    def clean(cls, scanner_id: str) -> "ScanOutcome":
        return cls(CLEAN, None, scanner_id)

    @classmethod
    def infected(cls, scanner_id: str, reason: str = "infected") -> "ScanOutcome":
        return cls(INFECTED, reason, scanner_id)

    @classmethod
    def error(cls, scanner_id: str, reason: str) -> "ScanOutcome":
        return cls(ERROR, reason, scanner_id)

    @property
    def is_clean(self) -> bool:
        return self.verdict == CLEAN


class Scanner(Protocol):
    name: str

    def scan(self, target: ScanTarget) -> ScanOutcome: ...


class PayloadHeuristicScanner:
    """Looks for script markers in the first bytes of an upload."""

    name = "heuristic"

    def __init__(self, patterns: Sequence[str], scan_bytes: int = 50 * 1024):
        self.patterns = tuple(patterns)
        self.scan_bytes = scan_bytes
        self._compiled: list[re.Pattern] | None = None

    def _compile(self) -> list[re.Pattern]:
        if self._compiled is None:
            self._compiled = [re.compile(p.encode(), re.IGNORECASE) for p in self.patterns]
        return self._compiled

    def scan(self, target: ScanTarget) -> ScanOutcome:
        try:
            compiled = self._compile()
        except re.error as exc:
            logger.error("heuristic_pattern_invalid", error=str(exc))
            return ScanOutcome.error(self.name, "ruleset_invalid")

        try:
            with target.path.open("rb") as handle:
                sample = handle.read(self.scan_bytes)
        except FileNotFoundError:
            return ScanOutcome.error(self.name, "target_missing")
        except OSError:
            return ScanOutcome.error(self.name, "target_unreadable")

        for pattern in compiled:
            if pattern.search(sample):
                logger.warning(
                    "heuristic_payload_detected", pattern=pattern.pattern.decode(errors="replace")
                )
                return ScanOutcome.infected(self.name, "suspicious_payload")
        return ScanOutcome.clean(self.name)


class ProcessScanner:
    """Runs an external engine binary with a hard timeout.

    Exit code 0 is clean, 1 is infected, anything else is an engine error whose
    reason is derived from stderr.
    """

    name = "process"

    def __init__(
        self,
        binary: str,
        arguments: Sequence[str] = (),
        timeout: float = 10.0,
        allowlist: Sequence[str] = (),
    ):
        self.binary = binary
        self.arguments = tuple(arguments)
        self.timeout = timeout
        self.allowlist = tuple(allowlist)

    def command(self, target: ScanTarget) -> list[str]:
        return [self.binary, *self.arguments, str(target.path)]

    def preflight(self, target: ScanTarget) -> ScanOutcome | None:
        if self.allowlist and self.binary not in self.allowlist:
            return ScanOutcome.error(self.name, "binary_missing")
        if not (os.path.isfile(self.binary) and os.access(self.binary, os.X_OK)):
            return ScanOutcome.error(self.name, "binary_missing")
        if not target.path.is_file():
            return ScanOutcome.error(self.name, "target_missing")
        return None

    def scan(self, target: ScanTarget) -> ScanOutcome:
        outcome = self.preflight(target)
        if outcome is not None:
            return outcome

        try:
            completed = subprocess.run(
                self.command(target),
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return ScanOutcome.error(self.name, "process_timeout")
        except FileNotFoundError:
            return ScanOutcome.error(self.name, "binary_missing")
        except OSError:
            return ScanOutcome.error(self.name, "process_exception")

        return self.interpret(
            completed.returncode,
            completed.stdout.decode(errors="replace"),
            completed.stderr.decode(errors="replace"),
        )

    def interpret(self, returncode: int, stdout: str, stderr: str) -> ScanOutcome:
        if returncode == 0:
            return ScanOutcome.clean(self.name)
        if returncode == 1:
            return ScanOutcome.infected(self.name)
        return ScanOutcome.error(self.name, self.error_reason(stderr))

    def error_reason(self, stderr: str) -> str:
        return "process_failed"


class ClamAvScanner(ProcessScanner):
    name = "clamav"

    def error_reason(self, stderr: str) -> str:
        message = stderr.lower()
        if "connection refused" in message:
            return "connection_refused"
        if "can't connect" in message or "could not connect" in message or "no such file" in message:
            return "unreachable"
        if "timeout" in message or "timed out" in message:
            return "timeout"
        return "process_failed"


RULE_EXTENSIONS = (".yar", ".yara", ".yarac")


def ruleset_digest(paths: Sequence[Path]) -> str:
    """sha256 over the rule files, read in sorted path order."""
    digest = hashlib.sha256()
    for path in sorted(paths):
        with path.open("rb") as handle:
            while chunk := handle.read(64 * 1024):
                digest.update(chunk)
    return digest.hexdigest()


class YaraScanner(ProcessScanner):
    """Runs yara against a pinned ruleset.

    The ruleset must sit under ``rules_base`` and hash to the expected value,
    read from ``hash_file`` (``<rules>.sha256`` by default) or ``expected_hash``.
    """

    name = "yara"

    def __init__(
        self,
        binary: str,
        rules_path: str,
        rules_base: str | None = None,
        expected_hash: str = "",
        hash_file: str | None = None,
        **kwargs,
    ):
        super().__init__(binary, **kwargs)
        self.rules_path = Path(rules_path)
        self.rules_base = Path(rules_base).resolve() if rules_base else None
        self.expected_hash = expected_hash.strip().lower()
        self.hash_file = Path(hash_file) if hash_file else self.rules_path.with_name(
            self.rules_path.name + ".sha256"
        )

    def expected_digest(self) -> str:
        if self.hash_file.is_file():
            raw = self.hash_file.read_text().strip()
            if raw:
                # accept sha256sum output, "<hash>  <file>"
                return raw.split()[0].lower()
        return self.expected_hash

    def check_rules(self) -> str | None:
        if not self.rules_path.exists():
            return "ruleset_missing"
        if self.rules_path.is_symlink() or not self.rules_path.is_file():
            return "rules_path_invalid"
        if self.rules_path.suffix.lower() not in RULE_EXTENSIONS:
            return "rules_path_invalid"
        resolved = self.rules_path.resolve()
        if self.rules_base is not None and self.rules_base not in resolved.parents:
            logger.error("yara_rules_outside_base", rules_path=str(resolved), base=str(self.rules_base))
            return "rules_path_invalid"

        expected = self.expected_digest()
        if not expected:
            logger.error("yara_rules_hash_missing", rules_path=str(resolved))
            return "rules_integrity_failed"
        try:
            actual = ruleset_digest([resolved])
        except OSError:
            return "ruleset_missing"
        if not hmac.compare_digest(expected.encode(), actual.encode()):
            logger.error("yara_rules_hash_mismatch", rules_path=str(resolved), actual=actual[:12])
            return "rules_integrity_failed"
        return None

    def command(self, target: ScanTarget) -> list[str]:
        return [self.binary, *self.arguments, str(self.rules_path), str(target.path)]

    def preflight(self, target: ScanTarget) -> ScanOutcome | None:
        reason = self.check_rules()
        if reason is not None:
            return ScanOutcome.error(self.name, reason)
        return super().preflight(target)

    def interpret(self, returncode: int, stdout: str, stderr: str) -> ScanOutcome:
        if returncode == 0:
            # yara prints one line per matching rule
            if stdout.strip():
                return ScanOutcome.infected(self.name, "rule_match")
            return ScanOutcome.clean(self.name)
        return ScanOutcome.error(self.name, self.error_reason(stderr))

    def error_reason(self, stderr: str) -> str:
        message = stderr.lower()
        if "syntax error" in message or "undefined identifier" in message or "warning" in message:
            return "ruleset_invalid"
        if "could not open file" in message and str(self.rules_path).lower() in message:
            return "ruleset_missing"
        return "process_failed"
