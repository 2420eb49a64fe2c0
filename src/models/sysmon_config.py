"""
In-memory structure of a Sysmon configuration document.

Only the parts that matter for merging are modelled explicitly: rule groups,
event type blocks and their rule entries. Everything else at the top level of
the document (hash algorithms, revocation checks, archive settings...) is kept
as opaque pass-through elements.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, List, Optional, Tuple, Union

ROOT_TAG = "Sysmon"
EVENT_FILTERING_TAG = "EventFiltering"
RULE_GROUP_TAG = "RuleGroup"
COMPOUND_RULE_TAG = "Rule"


class EventKind(Enum):
    """Filterable Sysmon event types, valued by their XML element name."""
    PROCESS_CREATE = "ProcessCreate"
    FILE_CREATE_TIME = "FileCreateTime"
    NETWORK_CONNECT = "NetworkConnect"
    PROCESS_TERMINATE = "ProcessTerminate"
    DRIVER_LOAD = "DriverLoad"
    IMAGE_LOAD = "ImageLoad"
    CREATE_REMOTE_THREAD = "CreateRemoteThread"
    RAW_ACCESS_READ = "RawAccessRead"
    PROCESS_ACCESS = "ProcessAccess"
    FILE_CREATE = "FileCreate"
    REGISTRY_EVENT = "RegistryEvent"
    FILE_CREATE_STREAM_HASH = "FileCreateStreamHash"
    PIPE_EVENT = "PipeEvent"
    WMI_EVENT = "WmiEvent"
    DNS_QUERY = "DnsQuery"
    FILE_DELETE = "FileDelete"
    CLIPBOARD_CHANGE = "ClipboardChange"
    PROCESS_TAMPERING = "ProcessTampering"
    FILE_DELETE_DETECTED = "FileDeleteDetected"
    FILE_BLOCK_EXECUTABLE = "FileBlockExecutable"
    FILE_BLOCK_SHREDDING = "FileBlockShredding"
    FILE_EXECUTABLE_DETECTED = "FileExecutableDetected"

    @classmethod
    def from_tag(cls, tag: str) -> Optional["EventKind"]:
        return _EVENT_KINDS_BY_TAG.get(tag)


EVENT_KIND_TAGS: FrozenSet[str] = frozenset(kind.value for kind in EventKind)
_EVENT_KINDS_BY_TAG = {kind.value: kind for kind in EventKind}


class MatchPolarity(Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


class GroupRelation(Enum):
    OR = "or"
    AND = "and"


class Operator(Enum):
    """Sysmon filter conditions, valued by their canonical attribute spelling."""
    IS = "is"
    IS_NOT = "is not"
    IS_ANY = "is any"
    CONTAINS = "contains"
    CONTAINS_ANY = "contains any"
    CONTAINS_ALL = "contains all"
    EXCLUDES = "excludes"
    EXCLUDES_ANY = "excludes any"
    EXCLUDES_ALL = "excludes all"
    BEGIN_WITH = "begin with"
    NOT_BEGIN_WITH = "not begin with"
    END_WITH = "end with"
    NOT_END_WITH = "not end with"
    LESS_THAN = "less than"
    MORE_THAN = "more than"
    IMAGE = "image"


DEFAULT_OPERATOR = Operator.IS
DEFAULT_POLARITY = MatchPolarity.INCLUDE
DEFAULT_RELATION = GroupRelation.OR


def _lookup(enum_cls, raw: Optional[str], default):
    """Case-insensitive enum lookup; returns None for unknown values."""
    if raw is None:
        return default
    normalized = " ".join(raw.split()).lower()
    for member in enum_cls:
        if member.value == normalized:
            return member
    return None


def parse_operator(raw: Optional[str]) -> Optional[Operator]:
    return _lookup(Operator, raw, DEFAULT_OPERATOR)


def parse_polarity(raw: Optional[str]) -> Optional[MatchPolarity]:
    return _lookup(MatchPolarity, raw, DEFAULT_POLARITY)


def parse_relation(raw: Optional[str]) -> Optional[GroupRelation]:
    return _lookup(GroupRelation, raw, DEFAULT_RELATION)


@dataclass(frozen=True)
class RuleEntry:
    """
    One field condition, e.g. ``<Image condition="end with">cmd.exe</Image>``.

    The name label is metadata and does not take part in equality.
    """
    field: str
    operator: Operator
    value: str
    name: Optional[str] = field(default=None, compare=False)

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.field, self.operator.value, self.value)


@dataclass(frozen=True)
class CompoundRule:
    """A ``<Rule>`` element combining several conditions with its own relation."""
    relation: GroupRelation
    conditions: Tuple[RuleEntry, ...]
    name: Optional[str] = field(default=None, compare=False)

    @property
    def identity(self) -> Tuple[Any, ...]:
        return (COMPOUND_RULE_TAG, self.relation.value, frozenset(c.identity for c in self.conditions))


Entry = Union[RuleEntry, CompoundRule]
BlockKey = Tuple[EventKind, MatchPolarity]


@dataclass
class EventTypeBlock:
    kind: EventKind
    polarity: MatchPolarity
    entries: List[Entry] = field(default_factory=list)

    @property
    def key(self) -> BlockKey:
        return (self.kind, self.polarity)


@dataclass
class RuleGroup:
    name: Optional[str] = None
    relation: GroupRelation = DEFAULT_RELATION
    blocks: List[EventTypeBlock] = field(default_factory=list)


@dataclass
class ConfigDocument:
    """
    Parsed configuration document.

    ``settings`` holds the serialized top-level elements outside
    EventFiltering, in document order, as (tag, xml bytes) pairs.
    """
    schema_version: Optional[str] = None
    rule_groups: List[RuleGroup] = field(default_factory=list)
    settings: List[Tuple[str, bytes]] = field(default_factory=list)
    source: Optional[str] = None

    def iter_blocks(self):
        for group in self.rule_groups:
            for block in group.blocks:
                yield group, block

    def entries_by_key(self):
        """Map (kind, polarity) to the set of entry identities below it."""
        result = {}
        for _, block in self.iter_blocks():
            bucket = result.setdefault(block.key, set())
            bucket.update(entry.identity for entry in block.entries)
        return result
