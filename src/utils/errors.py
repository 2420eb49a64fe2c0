from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Invariant(Enum):
    """The structural wrapper rules every configuration must satisfy."""
    RULES_IN_EVENT_FILTERING = "rules_in_event_filtering"
    EVENT_TYPES_IN_RULE_GROUP = "event_types_in_rule_group"
    RULE_GROUP_REQUIRED = "rule_group_required"

    @property
    def description(self) -> str:
        return _INVARIANT_DESCRIPTIONS[self]


_INVARIANT_DESCRIPTIONS = {
    Invariant.RULES_IN_EVENT_FILTERING:
        "all event filtering rules must be wrapped in a single <EventFiltering> element",
    Invariant.EVENT_TYPES_IN_RULE_GROUP:
        "each event type must be wrapped in a <RuleGroup> element",
    Invariant.RULE_GROUP_REQUIRED:
        "<EventFiltering> requires at least one <RuleGroup> element",
}


@dataclass(frozen=True)
class InvariantViolation:
    invariant: Invariant
    element_path: str
    message: str

    def __str__(self) -> str:
        return f"{self.invariant.description} ({self.message} at {self.element_path})"


class SysmonConfigError(Exception):
    """Base class for every error raised by this package."""


class ConfigIOError(SysmonConfigError):
    def __init__(self, path, reason):
        super().__init__(f"I/O error on {path}: {reason}")
        self.path = str(path)
        self.reason = reason


class ConfigSyntaxError(SysmonConfigError):
    def __init__(self, path, reason, element_path: Optional[str] = None):
        location = f" at {element_path}" if element_path else ""
        super().__init__(f"Malformed configuration {path}{location}: {reason}")
        self.path = str(path)
        self.reason = reason
        self.element_path = element_path


class StructuralViolationError(SysmonConfigError):
    def __init__(self, path, violation: InvariantViolation):
        super().__init__(f"Invalid configuration {path}: {violation}")
        self.path = str(path)
        self.violation = violation

    @property
    def invariant(self) -> Invariant:
        return self.violation.invariant


class MergeOutputInvalidError(SysmonConfigError):
    """The merge engine emitted a document that fails validation."""

    def __init__(self, violation):
        super().__init__(f"Merge produced invalid output: {violation}")
        self.violation = violation


class NoInputConfigsError(SysmonConfigError):
    def __init__(self, input_dir):
        super().__init__(f"No input configurations found in {input_dir}")
        self.input_dir = str(input_dir)


class MergeLimitError(SysmonConfigError):
    def __init__(self, input_dir, found: int, limit: int):
        super().__init__(f"Found {found} configuration files in {input_dir}, limit is {limit}")
        self.found = found
        self.limit = limit


class ConversionError(SysmonConfigError):
    def __init__(self, path, reason):
        super().__init__(f"Conversion failed for {path}: {reason}")
        self.path = str(path)
        self.reason = reason


class PreprocessError(SysmonConfigError):
    def __init__(self, path, reason):
        super().__init__(f"{self.kind} while preprocessing {path}: {reason}")
        self.path = str(path)
        self.reason = reason

    kind = "Preprocessing error"


class PreprocessIOError(PreprocessError):
    kind = "I/O error"


class PreprocessXmlError(PreprocessError):
    kind = "XML error"


class PreprocessValidationError(PreprocessError):
    kind = "Validation error"


class PreprocessPathError(PreprocessError):
    kind = "Path error"


class PreprocessParserError(PreprocessError):
    kind = "Parser error"
