"""
Errors raised by drayage itself (configuration, task API, consistency, locks).

Each error renders compiler style: a coded headline, the user source line
that triggered it with a caret underline, then notes and a help hint.
Handler failures are not DrayageErrors; those go through the retry
classifier instead.
"""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from types import FrameType
from typing import Any, Iterator

# Frames under this directory belong to drayage, not to the caller
_PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Stable codes, grouped by hundreds.

    - E2xx: configuration, store URL, CLI and worker locator
    - E3xx: handler registry
    - E4xx: task API
    - E5xx: consistency checks
    - E6xx: coordination (locks)
    """

    CONFIG_INVALID_QUEUE = 'E200'
    CONFIG_INVALID_RETRY = 'E201'
    CONFIG_INVALID_BATCH = 'E202'
    STORE_INVALID_URL = 'E203'
    CLI_INVALID_ARGS = 'E206'
    WORKER_INVALID_LOCATOR = 'E207'
    CONFIG_INVALID_RESILIENCE = 'E208'

    HANDLER_NOT_REGISTERED = 'E300'
    HANDLER_DUPLICATE = 'E301'

    TASK_INVALID_TYPE = 'E400'
    TASK_INVALID_PRIORITY = 'E401'
    TASK_INVALID_OPTIONS = 'E402'
    TASK_NOT_FOUND = 'E403'
    TASK_INVALID_DEPENDENCY = 'E404'
    TASK_ENQUEUE_FAILED = 'E405'

    ILLEGAL_TRANSITION = 'E500'
    PROGRESS_REGRESSION = 'E501'
    DUPLICATE_NATURAL_KEY = 'E502'
    MISSING_REQUIRED_FIELD = 'E503'
    CONSISTENCY_CHECK_FAILED = 'E504'

    LOCK_UNAVAILABLE = 'E600'


@dataclass(frozen=True)
class _Palette:
    reset: str = ''
    bold: str = ''
    red: str = ''
    blue: str = ''
    cyan: str = ''
    green: str = ''


_ANSI = _Palette(
    reset='\033[0m',
    bold='\033[1m',
    red='\033[91m',
    blue='\033[94m',
    cyan='\033[96m',
    green='\033[92m',
)
_PLAIN = _Palette()


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    if _env_flag('DRAYAGE_FORCE_COLOR'):
        return True
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _palette(use_colors: bool | None) -> _Palette:
    if use_colors is None:
        use_colors = _should_use_colors()
    return _ANSI if use_colors else _PLAIN


@dataclass
class SourceLocation:
    """File and line an error is attributed to."""

    file: str
    line: int

    @classmethod
    def from_frame(cls, frame: FrameType) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    def get_source_line(self) -> str | None:
        text = linecache.getline(self.file, self.line)
        return text.rstrip('\n') or None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


def _outer_frames() -> Iterator[FrameType]:
    frame = inspect.currentframe()
    while frame is not None:
        yield frame
        frame = frame.f_back


def _find_user_frame() -> FrameType | None:
    """Innermost frame that is neither drayage code nor an installed library."""
    for frame in _outer_frames():
        filename = frame.f_code.co_filename
        if filename.startswith('<'):
            continue
        if filename.startswith(_PACKAGE_ROOT) or '/site-packages/' in filename:
            continue
        return frame
    return None


def _render_location(location: SourceLocation, p: _Palette) -> list[str]:
    lines = [f'  {p.blue}-->{p.reset} {p.cyan}{location.format_short()}{p.reset}']
    source = location.get_source_line()
    if source is None:
        return lines
    number = str(location.line)
    gutter = ' ' * len(number)
    code = source.lstrip()
    indent = ' ' * (len(source) - len(code))
    lines.append(f'   {p.blue}{gutter}|{p.reset}')
    lines.append(f'   {p.blue}{number}|{p.reset} {source}')
    lines.append(f'   {p.blue}{gutter}|{p.reset} {p.red}{indent}{"^" * len(code)}{p.reset}')
    return lines


def _render_notes(notes: list[str], p: _Palette) -> list[str]:
    lines: list[str] = []
    for note in notes:
        first, *rest = note.split('\n')
        lines.append(f'   {p.blue}={p.reset} {p.bold}{p.blue}note{p.reset}: {first}')
        lines.extend(f'          {extra}' for extra in rest)
    return lines


def _render_help(help_text: str, p: _Palette) -> list[str]:
    lines = ['', f'   {p.blue}={p.reset} {p.bold}{p.green}help{p.reset}:']
    lines.extend(f'        {line}' for line in help_text.split('\n'))
    return lines


@dataclass
class DrayageError(Exception):
    """Base class of every error drayage raises on purpose.

    `location` defaults to the first caller frame outside the package, so a
    bad `create_task(...)` call points at the line in the caller's code.
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.location is None:
            frame = _find_user_frame()
            if frame is not None:
                self.location = SourceLocation.from_frame(frame)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        p = _palette(use_colors)
        tag = f'[{self.code.value}]' if self.code else ''
        lines = ['', f'{p.bold}{p.red}error{tag}:{p.reset} {self.message}']
        if self.location is not None:
            lines.extend(_render_location(self.location, p))
        lines.extend(_render_notes(self.notes, p))
        if self.help_text:
            lines.extend(_render_help(self.help_text, p))
        return '\n'.join(lines)

    def __str__(self) -> str:
        # Plain: also written to logs and error_message columns
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _drayage_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    if not isinstance(exc_value, DrayageError) or _env_flag('DRAYAGE_PLAIN_ERRORS'):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return
    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('DRAYAGE_VERBOSE'):
        print(file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Render uncaught DrayageErrors compiler style instead of as a traceback."""
    sys.excepthook = _drayage_excepthook


def uninstall_error_handler() -> None:
    sys.excepthook = _original_excepthook


# ----------------- Concrete errors -----------------


@dataclass
class ConfigurationError(DrayageError):
    """Invalid app, store, queue, retry, batch or worker configuration."""


@dataclass
class RegistryError(DrayageError):
    """Bad handler registration or lookup of an unregistered task type."""


@dataclass
class TaskValidationError(DrayageError):
    """A task submission was rejected before anything was written."""


@dataclass
class TaskEnqueueError(DrayageError):
    """A validated task could not be persisted."""

    task_id: str | None = None


@dataclass
class TaskNotFoundError(DrayageError):
    task_id: str | None = None


@dataclass
class ConsistencyViolation(DrayageError):
    """A state change broke a data invariant.

    Fatal for the current attempt: the unit of work is rolled back and the
    task is not retried.
    """

    task_id: str | None = None
    violations: list[str] = field(default_factory=lambda: [])


@dataclass
class IllegalTransitionError(ConsistencyViolation):
    """A status change that is not an edge of the task state machine."""

    from_status: str | None = None
    to_status: str | None = None


@dataclass
class LockUnavailableError(DrayageError):
    """A lock the unit of work cannot run without is held elsewhere."""

    lock_key: str | None = None


# ----------------- Collected validation errors -----------------


class ValidationReport:
    """Errors gathered while validating one phase, reported together."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name = phase_name
        self.errors: list[DrayageError] = []

    def add(self, error: DrayageError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        p = _palette(use_colors)
        rendered = [error.format_rust_style(use_colors=p is _ANSI) for error in self.errors]
        rendered.append(
            f'\n{p.bold}{p.red}error{p.reset}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(rendered)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(DrayageError):
    """Two or more errors of one ValidationReport."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Each wrapped error carries its own location
        Exception.__init__(self, self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise nothing, the single error as-is, or MultipleValidationErrors."""
    match len(report.errors):
        case 0:
            return
        case 1:
            raise report.errors[0]
        case count:
            raise MultipleValidationErrors(
                message=f'aborting due to {count} previous errors',
                report=report,
            )
