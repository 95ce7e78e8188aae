"""
Classification of pg_dump / pg_restore output.

Every stderr line is sorted into progress, warning, ignorable, context or
fatal. Ignorable categories are versioned data so that changes to what
is tolerated during a restore are explicit and testable. Any non-empty
line that matches nothing is fatal.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Pattern, Tuple

CLASSIFIER_VERSION = "2024.1"


class LineKind(str, Enum):
    """Kinds of process output lines."""
    PROGRESS = "progress"
    WARNING = "warning"
    IGNORABLE = "ignorable"
    CONTEXT = "context"
    FATAL = "fatal"


@dataclass(frozen=True)
class WarningCategory:
    """A named, known non-fatal error message."""
    name: str
    pattern: Pattern
    description: str
    requires_context: Optional[Pattern] = None

    def matches(self, line: str) -> bool:
        return bool(self.pattern.search(line))


IGNORABLE_CATEGORIES: Tuple[WarningCategory, ...] = (
    WarningCategory(
        name="missing-role",
        pattern=re.compile(r'role "[^"]+" does not exist', re.IGNORECASE),
        description="Object owner or grantee role does not exist on the target",
    ),
    WarningCategory(
        name="ownership",
        pattern=re.compile(r"must be owner of", re.IGNORECASE),
        description="Ownership change rejected for the restoring user",
    ),
    WarningCategory(
        name="acl",
        pattern=re.compile(
            r"no privileges (were granted|could be revoked)|(could not|cannot|permission denied to) (grant|revoke)",
            re.IGNORECASE
        ),
        description="Grant or revoke statement rejected",
    ),
    WarningCategory(
        name="session-parameter",
        pattern=re.compile(r'unrecognized configuration parameter "[^"]+"', re.IGNORECASE),
        description="Session parameter unknown to the target server, set while connecting",
        requires_context=re.compile(r"Command was:\s*SET\s", re.IGNORECASE),
    ),
    WarningCategory(
        name="errors-ignored-summary",
        pattern=re.compile(r"errors ignored on restore:\s*\d+", re.IGNORECASE),
        description="pg_restore summary of errors it already skipped",
    ),
)

_TOOL_PREFIX = r"^(?:pg_dump|pg_restore|pg_dumpall):\s+(?:\[[^\]]+\]\s+)?"

PROGRESS_PATTERN = re.compile(
    _TOOL_PREFIX + r"(?!(?:error|warning|fatal|from TOC entry|while PROCESSING TOC)\b)", re.IGNORECASE
)
# Server errors relayed by either the current or the bracketed pre-12 format.
ERROR_PATTERN = re.compile(r"could not execute query:|\bERROR:")
WARNING_PATTERN = re.compile(r"(" + _TOOL_PREFIX + r"warning:|^(?:WARNING|NOTICE):)", re.IGNORECASE)
CONTEXT_PATTERN = re.compile(
    r"^\s*(?:Command was:|DETAIL:|HINT:|LINE \d+:|CONTEXT:|\s+\^|"
    + _TOOL_PREFIX[1:] + r"(?:Error )?(?:from TOC entry|while PROCESSING TOC))",
    re.IGNORECASE
)


@dataclass(frozen=True)
class ClassifiedLine:
    text: str
    kind: LineKind
    category: Optional[str] = None


@dataclass
class OutputClassification:
    """Classified stderr of one process run."""
    lines: List[ClassifiedLine]
    exit_code: int
    version: str = CLASSIFIER_VERSION

    def _of_kind(self, kind: LineKind) -> List[str]:
        return [line.text for line in self.lines if line.kind == kind]

    @property
    def fatal_lines(self) -> List[str]:
        return self._of_kind(LineKind.FATAL)

    @property
    def warning_lines(self) -> List[str]:
        return self._of_kind(LineKind.WARNING)

    @property
    def ignorable_lines(self) -> List[str]:
        return self._of_kind(LineKind.IGNORABLE)

    @property
    def progress_lines(self) -> List[str]:
        return self._of_kind(LineKind.PROGRESS)

    @property
    def ignored_by_category(self) -> Counter:
        return Counter(line.category for line in self.lines if line.kind == LineKind.IGNORABLE)

    @property
    def is_fatal(self) -> bool:
        """Fatal lines always fail; a nonzero exit fails unless explained by ignorable lines."""
        if self.fatal_lines:
            return True
        return self.exit_code != 0 and not self.ignorable_lines


def _match_category(line: str) -> Optional[WarningCategory]:
    for category in IGNORABLE_CATEGORIES:
        if category.matches(line):
            return category
    return None


def classify_line(line: str) -> Tuple[LineKind, Optional[str]]:
    """Classify a single line without surrounding context."""
    text = line.rstrip()
    if CONTEXT_PATTERN.search(text):
        return LineKind.CONTEXT, None
    category = _match_category(text)
    if category is not None:
        return LineKind.IGNORABLE, category.name
    if ERROR_PATTERN.search(text):
        return LineKind.FATAL, None
    if WARNING_PATTERN.search(text):
        return LineKind.WARNING, None
    if PROGRESS_PATTERN.search(text):
        return LineKind.PROGRESS, None
    return LineKind.FATAL, None


def _following_context(lines: List[str], index: int) -> List[str]:
    context = []
    for text in lines[index + 1:]:
        if not CONTEXT_PATTERN.search(text):
            break
        context.append(text)
    return context


def classify_output(stderr_lines: Iterable[str], exit_code: int) -> OutputClassification:
    """Classify all stderr lines of a finished pg_dump/pg_restore run."""
    lines = [line.rstrip("\r\n") for line in stderr_lines]
    lines = [line for line in lines if line.strip()]
    classified: List[ClassifiedLine] = []

    for index, text in enumerate(lines):
        kind, category_name = classify_line(text)
        if kind == LineKind.IGNORABLE:
            category = next(c for c in IGNORABLE_CATEGORIES if c.name == category_name)
            if category.requires_context is not None:
                context = _following_context(lines, index)
                if not any(category.requires_context.search(c) for c in context):
                    kind, category_name = LineKind.FATAL, None
        classified.append(ClassifiedLine(text=text, kind=kind, category=category_name))

    return OutputClassification(lines=classified, exit_code=exit_code)
