import logging

from lxml import etree

from models.sysmon_config import (
    COMPOUND_RULE_TAG,
    EVENT_FILTERING_TAG,
    ROOT_TAG,
    RULE_GROUP_TAG,
    CompoundRule,
    Entry,
    RuleEntry,
)
from merging.accumulator import MergedConfig

logger = logging.getLogger(__name__)


def _append_condition(parent: etree._Element, entry: RuleEntry):
    element = etree.SubElement(parent, entry.field)
    if entry.name:
        element.set("name", entry.name)
    element.set("condition", entry.operator.value)
    element.text = entry.value


def _append_entry(parent: etree._Element, entry: Entry):
    if isinstance(entry, CompoundRule):
        rule = etree.SubElement(parent, COMPOUND_RULE_TAG)
        if entry.name:
            rule.set("name", entry.name)
        rule.set("groupRelation", entry.relation.value)
        for condition in entry.conditions:
            _append_condition(rule, condition)
    else:
        _append_condition(parent, entry)


def emit_document(merged: MergedConfig) -> etree._Element:
    """
    Build the combined configuration tree from the accumulated state.

    One RuleGroup is emitted per distinct groupRelation, in the order the
    relations were first observed. Blocks and entries keep first-seen order.
    """
    root = etree.Element(ROOT_TAG)
    if merged.schema_version:
        root.set("schemaversion", merged.schema_version)

    for xml in merged.settings.values():
        root.append(etree.fromstring(xml))

    event_filtering = etree.SubElement(root, EVENT_FILTERING_TAG)
    for relation in merged.relations:
        group = etree.SubElement(event_filtering, RULE_GROUP_TAG)
        group.set("name", "")
        group.set("groupRelation", relation.value)
        for key in merged.keys_for(relation):
            kind, polarity = key
            block = etree.SubElement(group, kind.value)
            block.set("onmatch", polarity.value)
            for entry in merged.entries_for(key, relation):
                _append_entry(block, entry)

    logger.debug(f"Emitted {len(merged.relations)} rule groups, {len(merged.keys)} event type keys")
    return root


def serialize_document(root: etree._Element) -> bytes:
    etree.indent(root, space="  ")
    return etree.tostring(root, pretty_print=True, xml_declaration=True, encoding="UTF-8")
