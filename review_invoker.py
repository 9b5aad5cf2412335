#!/usr/bin/env python3
"""
Review Invoker for Kritiq Reviewer

Sends one prompt to the model, races it against a deadline and classifies
what came back. Never touches files; write-back is the caller's job.
"""

import concurrent.futures
import logging
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
MIN_RESPONSE_CHARS = 10

TIMEOUT_MESSAGE = "timeout"
QUOTA_STATUS = 429

# Best-effort cleanup, not a parser. Text after a closing fence is kept as is.
_LEADING_FENCE_RE = re.compile(r'^```[A-Za-z0-9_+#.-]*[ \t]*\r?\n')
_TRAILING_FENCE_RE = re.compile(r'\r?\n```[ \t]*$')


class OutcomeKind(str, Enum):
    FIXED = "fixed"
    CLEAN = "clean"
    SKIPPED = "skipped"
    ERROR = "error"
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass
class ReviewOutcome:
    """Result of reviewing one file."""
    kind: OutcomeKind
    content: Optional[str] = None  # replacement text, FIXED only
    message: Optional[str] = None  # skip reason or error text

    @classmethod
    def fixed(cls, content: str) -> "ReviewOutcome":
        return cls(OutcomeKind.FIXED, content=content)

    @classmethod
    def clean(cls) -> "ReviewOutcome":
        return cls(OutcomeKind.CLEAN)

    @classmethod
    def skipped(cls, reason: str) -> "ReviewOutcome":
        return cls(OutcomeKind.SKIPPED, message=reason)

    @classmethod
    def error(cls, message: str) -> "ReviewOutcome":
        return cls(OutcomeKind.ERROR, message=message)

    @classmethod
    def quota_exceeded(cls, message: str) -> "ReviewOutcome":
        return cls(OutcomeKind.QUOTA_EXCEEDED, message=message)

    @property
    def is_timeout(self) -> bool:
        return self.kind == OutcomeKind.ERROR and self.message == TIMEOUT_MESSAGE


def strip_code_fences(text: str) -> str:
    """Remove a wrapping ```lang ... ``` fence, then surrounding whitespace."""
    text = text.strip()
    text = _LEADING_FENCE_RE.sub('', text, count=1)
    text = _TRAILING_FENCE_RE.sub('', text, count=1)
    return text.strip()


def is_quota_error(exc: BaseException) -> bool:
    """
    Check if an error means the provider refused further calls.

    Uses the status_code attribute when the error has one; the "429"
    substring check only applies to errors without a status.
    """
    status = getattr(exc, 'status_code', None)
    if status is not None:
        return status == QUOTA_STATUS
    return str(QUOTA_STATUS) in str(exc)


class ReviewInvoker:
    """
    Runs one model call per invoke() under a wall-clock deadline.

    The call runs on a daemon worker thread. When the deadline passes first
    the worker is abandoned: it keeps running until the HTTP client's own
    timeout or process exit, and whatever it returns is discarded.
    """

    def __init__(
        self,
        generate: Callable[[str], str],
        timeout: float = DEFAULT_TIMEOUT,
        min_response_chars: int = MIN_RESPONSE_CHARS,
    ):
        self.generate = generate
        self.timeout = timeout
        self.min_response_chars = min_response_chars

    def invoke(self, prompt: str, original: str) -> ReviewOutcome:
        """
        Send a prompt and classify the reply against the original text.

        Args:
            prompt: Full prompt text
            original: The file content the prompt was built from

        Returns:
            ReviewOutcome (FIXED, CLEAN, ERROR or QUOTA_EXCEEDED)
        """
        start_time = time.time()
        future: concurrent.futures.Future = concurrent.futures.Future()

        def _call() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.generate(prompt))
            except BaseException as e:
                future.set_exception(e)

        # Daemon, so an abandoned call does not hold up interpreter exit
        worker = threading.Thread(target=_call, name="kritiq-model", daemon=True)
        worker.start()
        try:
            response = future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            logger.debug(f"Model call abandoned after {self.timeout}s")
            return ReviewOutcome.error(TIMEOUT_MESSAGE)
        except Exception as e:
            if is_quota_error(e):
                return ReviewOutcome.quota_exceeded(str(e))
            return ReviewOutcome.error(str(e) or type(e).__name__)

        logger.debug(f"Model replied in {time.time() - start_time:.1f}s")
        return self.classify(response, original)

    def classify(self, response: Optional[str], original: str) -> ReviewOutcome:
        """Turn raw model text into CLEAN or FIXED."""
        candidate = strip_code_fences(response or '')
        if len(candidate) <= self.min_response_chars:
            return ReviewOutcome.clean()
        if candidate == original or candidate == original.strip():
            return ReviewOutcome.clean()
        return ReviewOutcome.fixed(candidate)
