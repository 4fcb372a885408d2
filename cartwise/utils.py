"""
Shared utility functions.
"""

from __future__ import annotations

import importlib
import re
import string
import time
from contextlib import contextmanager
from types import ModuleType
from typing import TYPE_CHECKING, Callable, Generator

if TYPE_CHECKING:
    import logging


# ---------------------------------------------------------------------------
# Import Utilities
# ---------------------------------------------------------------------------


def require_import(package: str, *, pip_name: str | None = None) -> ModuleType:
    """Import a provider SDK with a standardized error message.

    Usage:
        anthropic = require_import("anthropic")

    Args:
        package: The Python package name to import.
        pip_name: The pip install name if different from package name.

    Returns:
        The imported module.

    Raises:
        ImportError: With a helpful message including install command.
    """
    try:
        return importlib.import_module(package)
    except ImportError as e:
        raise ImportError(
            f"{package} package required. Install with: pip install {pip_name or package}"
        ) from e


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------


class StageTimer:
    """Collects elapsed milliseconds per named stage."""

    def __init__(self) -> None:
        self.durations_ms: dict[str, float] = {}

    @contextmanager
    def stage(
        self,
        name: str,
        logger: logging.Logger | None = None,
        metrics_observer: Callable[[float], None] | None = None,
    ) -> Generator[None, None, None]:
        with timed_operation(
            name, logger, metrics_observer, on_complete=self._record(name)
        ):
            yield

    def _record(self, name: str) -> Callable[[float], None]:
        def record(seconds: float) -> None:
            self.durations_ms[name] = self.durations_ms.get(name, 0.0) + seconds * 1000

        return record

    def get(self, name: str) -> float:
        return self.durations_ms.get(name, 0.0)


@contextmanager
def timed_operation(
    name: str,
    logger: logging.Logger | None = None,
    metrics_observer: Callable[[float], None] | None = None,
    log_format: str = "%s: %.0fms",
    on_complete: Callable[[float], None] | None = None,
) -> Generator[None, None, None]:
    """Context manager for timing operations with optional logging and metrics.

    Usage:
        with timed_operation("llm_invocation", logger, observe_stage_duration):
            result = invoker.invoke(prompt, ...)

    Args:
        name: Operation name for logging.
        logger: Logger instance for debug-level timing output.
        metrics_observer: Callback that receives duration in seconds.
        log_format: Format string for log message (name, ms).
        on_complete: Extra callback that receives duration in seconds.

    Yields:
        None. Duration is computed and reported on exit.
    """
    t0 = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - t0
        if metrics_observer is not None:
            metrics_observer(duration)
        if on_complete is not None:
            on_complete(duration)
        if logger is not None:
            logger.debug(log_format, name, duration * 1000)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------

_WORD_RE = re.compile(r"[a-z0-9]+(?:['.][a-z0-9]+)*")

STOPWORDS = frozenset(
    """
    a an the and or but if then than so of to in on at by for with from into
    about as is are was were be been being it its this that these those there
    here i you he she we they me my your our their them what which who whom
    how when where why do does did done have has had can could would should
    will shall may might must not no yes all any some more most very just also
    please want need looking find show tell me get
    """.split()
)


def normalize_text(text: str) -> str:
    """Normalize text for fuzzy matching.

    Converts to lowercase, strips punctuation, and collapses whitespace.

    Args:
        text: Text to normalize.

    Returns:
        Normalized text string.
    """
    text = text.lower().translate(str.maketrans("", "", string.punctuation))
    return " ".join(text.split())


def content_tokens(text: str) -> list[str]:
    """Lowercased word tokens with stopwords removed, order preserved."""
    return [w for w in _WORD_RE.findall(text.lower()) if w not in STOPWORDS]
