#!/usr/bin/env python3
"""
Review Orchestrator for Kritiq Reviewer

Runs one batch review over a folder:

    1. Take the run lock (a second run while one is active is rejected)
    2. Check the target folder and the API key
    3. Scan the folder and apply the batch policy
    4. For each file in scan order: read, build prompt, invoke the model,
       write back fixes
    5. Report fixed / clean / error counters

Files are reviewed strictly one at a time. Per-file failures are counted
and the loop moves on; a quota refusal (HTTP 429) ends the batch but keeps
what was already fixed. Cancellation is checked between files only.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple

from batch_policy import BatchPolicy, DecisionKind
from gemini_client import resolve_api_key
from ops_logger import OpsLogger
from prompt_builder import ReviewPromptBuilder
from review_invoker import (
    DEFAULT_TIMEOUT, MIN_RESPONSE_CHARS, OutcomeKind, ReviewInvoker, ReviewOutcome,
)
from tree_scanner import FileCandidate, TreeScanner

logger = logging.getLogger(__name__)

DEFAULT_MODE = "Standard"
MAX_FILE_CHARS = 40000


class ReviewerError(Exception):
    """Base exception for errors that abort a run before files are touched."""
    pass


class ConfigurationError(ReviewerError):
    """Raised when the target folder or the API key is missing."""
    pass


class ConcurrencyError(ReviewerError):
    """Raised when a run is requested while another one is active."""
    pass


AlreadyRunning = ConcurrencyError


class ModelProtocol(Protocol):
    def generate(self, prompt: str) -> str: ...


class FileEditorProtocol(Protocol):
    """Read and write-back collaborators."""

    def read_file_text(self, path: Path) -> str: ...

    def replace_file_content(self, path: Path, new_text: str) -> Optional[Path]: ...


class StopReason(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    QUOTA_EXCEEDED = "quota_exceeded"
    NO_FILES = "no_files"
    DECLINED = "declined"


@dataclass
class RunStats:
    """Counters for one run. CLEAN and SKIPPED share the clean counter."""
    fixed: int = 0
    clean: int = 0
    errors: int = 0

    def record(self, outcome: ReviewOutcome) -> None:
        if outcome.kind == OutcomeKind.FIXED:
            self.fixed += 1
        elif outcome.kind in (OutcomeKind.CLEAN, OutcomeKind.SKIPPED):
            self.clean += 1
        else:
            self.errors += 1

    @property
    def processed(self) -> int:
        return self.fixed + self.clean + self.errors

    def summary(self) -> str:
        return f"Review Complete! Fixed: {self.fixed} | Clean: {self.clean} | Errors: {self.errors}"


@dataclass
class RunReport:
    """What a run did."""
    folder: Path
    stats: RunStats
    stop_reason: StopReason
    files: List[FileCandidate] = field(default_factory=list)
    outcomes: List[Tuple[Path, ReviewOutcome]] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return self.stats.summary()


class RunState:
    """
    The run lock of one orchestrator.

    hold() never blocks: it either takes the lock for the duration of the
    with-block or raises ConcurrencyError immediately.
    """

    def __init__(self):
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise ConcurrencyError("Kritiq is already running! Please wait.")
        try:
            yield
        finally:
            self._lock.release()


@dataclass
class RunSettings:
    """Read-only settings of a run."""
    api_key: str = ""
    mode: str = DEFAULT_MODE
    timeout: float = DEFAULT_TIMEOUT
    max_file_chars: int = MAX_FILE_CHARS
    min_response_chars: int = MIN_RESPONSE_CHARS
    dry_run: bool = False


def create_settings_from_config(config_dict: Dict[str, Any]) -> RunSettings:
    """Create RunSettings from the 'review' section plus the resolved API key."""
    review_config = config_dict.get('review') or {}
    return RunSettings(
        api_key=resolve_api_key(config_dict),
        mode=str(review_config.get('mode') or DEFAULT_MODE),
        timeout=float(review_config.get('timeout', DEFAULT_TIMEOUT)),
        max_file_chars=int(review_config.get('max_file_chars', MAX_FILE_CHARS)),
        min_response_chars=int(review_config.get('min_response_chars', MIN_RESPONSE_CHARS)),
        dry_run=bool(review_config.get('dry_run', False)),
    )


class ReviewOrchestrator:
    """
    Drives review runs. Holds the run lock and the counters of the
    current (or last) run.
    """

    def __init__(
        self,
        settings: RunSettings,
        model_factory: Callable[[str], ModelProtocol],
        editor: FileEditorProtocol,
        scanner: Optional[TreeScanner] = None,
        batch_policy: Optional[BatchPolicy] = None,
        prompt_builder: Optional[ReviewPromptBuilder] = None,
        ops_logger: Optional[OpsLogger] = None,
        notify: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            settings: Run settings (API key, mode, limits)
            model_factory: Builds the model collaborator from the API key
            editor: Read and write-back collaborator
            scanner: Tree scanner (default filter if omitted)
            batch_policy: Batch size policy (truncate at 15 if omitted)
            prompt_builder: Prompt builder
            ops_logger: Optional JSONL event log
            notify: Receives messages the user must not miss (quota stop)
        """
        self.settings = settings
        self.model_factory = model_factory
        self.editor = editor
        self.scanner = scanner or TreeScanner()
        self.batch_policy = batch_policy or BatchPolicy()
        self.prompt_builder = prompt_builder or ReviewPromptBuilder()
        self.ops = ops_logger
        self.notify = notify or (lambda message: logger.error(message))
        self.state = RunState()
        self.stats = RunStats()

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    def run(
        self,
        folder: Optional[Path],
        cancel_event: Optional[threading.Event] = None,
    ) -> RunReport:
        """
        Review every selected file under a folder.

        Args:
            folder: Target folder
            cancel_event: Set by the caller to stop before the next file

        Returns:
            RunReport

        Raises:
            ConcurrencyError: A run is already active (nothing is changed)
            ConfigurationError: No usable folder or no API key
            ScanError: The folder cannot be read
        """
        with self.state.hold():
            # Reports keep their own counters
            self.stats = RunStats()
            return self._run_locked(folder, cancel_event)

    def _check_preconditions(self, folder: Optional[Path]) -> Path:
        if folder is None or not str(folder).strip():
            raise ConfigurationError("No target folder given. Pass the folder to review.")
        folder = Path(folder).expanduser()
        if not folder.is_dir():
            raise ConfigurationError(f"Not a folder: {folder}")
        if not self.settings.api_key or not self.settings.api_key.strip():
            raise ConfigurationError(
                "Gemini API key missing! Set gemini.api_key in config.yaml "
                "or export KRITIQ_API_KEY."
            )
        return folder.absolute()

    def _run_locked(
        self,
        folder: Optional[Path],
        cancel_event: Optional[threading.Event],
    ) -> RunReport:
        folder = self._check_preconditions(folder)

        logger.info(f"Scanning folder: {folder}")
        candidates = self.scanner.scan(folder)
        report = RunReport(folder=folder, stats=self.stats, stop_reason=StopReason.COMPLETED)

        decision = self.batch_policy.decide(candidates)
        if decision.kind == DecisionKind.NO_FILES:
            logger.warning("No supported code files found.")
            report.stop_reason = StopReason.NO_FILES
            return report

        self._log_enumeration(candidates)

        if decision.kind == DecisionKind.CANCEL:
            logger.info("Review cancelled before start.")
            report.stop_reason = StopReason.DECLINED
            return report

        files = decision.files
        report.files = files
        project_names = [c.name for c in files]

        if self.ops:
            self.ops.run_start(str(folder), len(files), self.settings.mode)

        model = self.model_factory(self.settings.api_key)
        invoker = ReviewInvoker(
            model.generate,
            timeout=self.settings.timeout,
            min_response_chars=self.settings.min_response_chars,
        )
        try:
            report.stop_reason = self._review_files(
                files, project_names, invoker, report, cancel_event
            )
        finally:
            close = getattr(model, 'close', None)
            if close is not None:
                close()

        logger.info(self.stats.summary())
        if self.ops:
            self.ops.run_end(
                self.stats.fixed, self.stats.clean, self.stats.errors,
                report.stop_reason.value,
            )
        return report

    def _log_enumeration(self, candidates: List[FileCandidate]) -> None:
        logger.info("-" * 51)
        logger.info(f"Found {len(candidates)} files to review:")
        for index, candidate in enumerate(candidates, 1):
            logger.info(f"{index}. {candidate.name}")
        logger.info("-" * 51)

    def _review_files(
        self,
        files: List[FileCandidate],
        project_names: List[str],
        invoker: ReviewInvoker,
        report: RunReport,
        cancel_event: Optional[threading.Event],
    ) -> StopReason:
        total = len(files)
        for index, candidate in enumerate(files, 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Operation cancelled by user.")
                if self.ops:
                    self.ops.run_cancelled(self.stats.processed)
                return StopReason.CANCELLED

            logger.info(f"[{index}/{total}] Reviewing {candidate.name}...")
            outcome = self._review_file(candidate, project_names, invoker)
            backup = None
            if outcome.kind == OutcomeKind.FIXED:
                outcome, backup = self._write_back(candidate, outcome)

            candidate.content = None
            self.stats.record(outcome)
            report.outcomes.append((candidate.path, outcome))
            self._log_outcome(candidate, outcome, invoker.timeout, backup)

            if outcome.kind == OutcomeKind.QUOTA_EXCEEDED:
                self.notify("Gemini API Quota Exceeded. Stopping review.")
                return StopReason.QUOTA_EXCEEDED

        return StopReason.COMPLETED

    def _review_file(
        self,
        candidate: FileCandidate,
        project_names: List[str],
        invoker: ReviewInvoker,
    ) -> ReviewOutcome:
        try:
            code = self.editor.read_file_text(candidate.path)
        except UnicodeDecodeError as e:
            return ReviewOutcome.error(f"not valid UTF-8: {e.reason}")
        except OSError as e:
            return ReviewOutcome.error(f"cannot read file: {e.strerror or e}")

        candidate.content = code
        if not code.strip():
            return ReviewOutcome.skipped("empty")
        if len(code) > self.settings.max_file_chars:
            return ReviewOutcome.skipped(f"too large ({len(code)} chars)")

        prompt = self.prompt_builder.build(code, candidate.name, project_names, self.settings.mode)
        return invoker.invoke(prompt, code)

    def _write_back(
        self,
        candidate: FileCandidate,
        outcome: ReviewOutcome,
    ) -> Tuple[ReviewOutcome, Optional[Path]]:
        if self.settings.dry_run:
            return outcome, None
        try:
            backup = self.editor.replace_file_content(candidate.path, outcome.content)
        except OSError as e:
            return ReviewOutcome.error(f"write failed: {e.strerror or e}"), None
        return outcome, backup

    def _log_outcome(
        self,
        candidate: FileCandidate,
        outcome: ReviewOutcome,
        timeout: float,
        backup: Optional[Path] = None,
    ) -> None:
        name = candidate.name
        kind = outcome.kind
        details = None
        if kind == OutcomeKind.FIXED:
            if self.settings.dry_run:
                logger.info(f"WOULD FIX: {name} (dry run)")
                details = {"dry_run": True}
            else:
                logger.info(f"FIXED: {name}")
                details = {"backup": str(backup)} if backup else None
        elif kind == OutcomeKind.CLEAN:
            logger.info(f"CLEAN: {name}")
        elif kind == OutcomeKind.SKIPPED:
            logger.info(f"Skipped {name} ({outcome.message})")
        elif kind == OutcomeKind.QUOTA_EXCEEDED:
            logger.error(f"GEMINI QUOTA EXCEEDED at {name}. Stopping.")
        else:
            logger.error(f"ERROR {name}: {outcome.message}")

        if self.ops is None:
            return
        if outcome.is_timeout:
            self.ops.file_outcome(str(candidate.path), "timeout", duration_seconds=timeout)
        else:
            self.ops.file_outcome(
                str(candidate.path), kind.value, message=outcome.message, details=details
            )
