"""
Merge accumulator: folds parsed fragments into one deduplicated rule set.

Rules are bucketed by (event kind, polarity) and then by the groupRelation
of the RuleGroup they came from. Buckets under different relations are never
combined, because an "and" group and an "or" group for the same event type
mean different things to Sysmon. Insertion order is remembered everywhere so
the emitted document is reproducible for a given input order.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from models.sysmon_config import BlockKey, ConfigDocument, Entry, GroupRelation

logger = logging.getLogger(__name__)


def _version_key(version: str) -> Tuple:
    parts = []
    for part in version.split("."):
        parts.append((0, int(part), "") if part.isdecimal() else (1, 0, part))
    return tuple(parts)


@dataclass
class _EntryBucket:
    entries: List[Entry] = field(default_factory=list)
    seen: set = field(default_factory=set)

    def add(self, entry: Entry) -> bool:
        if entry.identity in self.seen:
            return False
        self.seen.add(entry.identity)
        self.entries.append(entry)
        return True


class MergedConfig:
    """
    Accumulated state of one merge run.

    Each merge builds its own instance, folds fragments into it in discovery
    order and hands it to the emitter once.
    """

    def __init__(self):
        self.schema_version: Optional[str] = None
        self.settings: Dict[str, bytes] = {}
        self.relations: List[GroupRelation] = []
        self.keys: List[BlockKey] = []
        self.relations_by_key: Dict[BlockKey, List[GroupRelation]] = {}
        self._buckets: Dict[Tuple[BlockKey, GroupRelation], _EntryBucket] = {}

        self.fragments_folded = 0
        self.entries_added = 0
        self.duplicates_dropped = 0

    def fold(self, fragment: ConfigDocument) -> "MergedConfig":
        """
        Fold one fragment into the accumulated state.

        Args:
            fragment: A parsed and validated configuration document

        Returns:
            self, so folds can be chained
        """
        self._fold_metadata(fragment)

        # Groups without blocks still count, otherwise a set of empty
        # fragments would emit an EventFiltering with no RuleGroup.
        for group in fragment.rule_groups:
            if group.relation not in self.relations:
                self.relations.append(group.relation)

        added = dropped = 0
        for group, block in fragment.iter_blocks():
            key = block.key
            relation = group.relation
            bucket = self._bucket(key, relation)
            for entry in block.entries:
                if bucket.add(entry):
                    added += 1
                else:
                    dropped += 1

        self.fragments_folded += 1
        self.entries_added += added
        self.duplicates_dropped += dropped
        logger.debug(f"Folded {fragment.source}: {added} entries added, {dropped} duplicates dropped")
        return self

    def _fold_metadata(self, fragment: ConfigDocument):
        version = fragment.schema_version
        if version and (self.schema_version is None
                        or _version_key(version) > _version_key(self.schema_version)):
            self.schema_version = version

        for tag, xml in fragment.settings:
            if tag not in self.settings:
                self.settings[tag] = xml
            elif self.settings[tag] != xml:
                logger.warning(f"Conflicting <{tag}> setting in {fragment.source}, keeping the first one seen")

    def _bucket(self, key: BlockKey, relation: GroupRelation) -> _EntryBucket:
        if key not in self.relations_by_key:
            self.keys.append(key)
            self.relations_by_key[key] = []

        key_relations = self.relations_by_key[key]
        if relation not in key_relations:
            if key_relations:
                kind, polarity = key
                logger.warning(
                    f"{kind.value}/{polarity.value} appears under groupRelation "
                    f"{', '.join(r.value for r in key_relations)} and {relation.value}; "
                    f"keeping separate rule groups")
            key_relations.append(relation)
            self._buckets[(key, relation)] = _EntryBucket()

        return self._buckets[(key, relation)]

    def entries_for(self, key: BlockKey, relation: GroupRelation) -> List[Entry]:
        bucket = self._buckets.get((key, relation))
        return list(bucket.entries) if bucket else []

    def keys_for(self, relation: GroupRelation) -> List[BlockKey]:
        """Keys carrying the given relation, in first-seen key order."""
        return [key for key in self.keys if relation in self.relations_by_key[key]]

    @property
    def is_empty(self) -> bool:
        return self.fragments_folded == 0

    @property
    def entry_count(self) -> int:
        return sum(len(bucket.entries) for bucket in self._buckets.values())
