import copy
import logging
from pathlib import Path
from typing import Optional, Union

from lxml import etree

from models.sysmon_config import (
    COMPOUND_RULE_TAG,
    EVENT_FILTERING_TAG,
    RULE_GROUP_TAG,
    CompoundRule,
    ConfigDocument,
    EventKind,
    EventTypeBlock,
    RuleEntry,
    RuleGroup,
    parse_operator,
    parse_polarity,
    parse_relation,
)
from utils.errors import ConfigSyntaxError, StructuralViolationError
from utils.file_ops import read_bytes
from validation.validator import validate

logger = logging.getLogger(__name__)


def _make_parser(encoding: Optional[str] = None) -> etree.XMLParser:
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        remove_blank_text=True,
        encoding=encoding,
    )


def load_config_tree(content: Union[str, bytes], source: str = "<memory>") -> etree._Element:
    """
    Parse raw configuration content into an lxml element tree.

    Raises:
        ConfigSyntaxError: If the markup is malformed
    """
    try:
        if isinstance(content, str):
            return etree.fromstring(content.encode("utf-8"), _make_parser("utf-8"))
        return etree.fromstring(content, _make_parser())
    except etree.XMLSyntaxError as e:
        raise ConfigSyntaxError(source, e) from e


def _element_path(element: etree._Element) -> str:
    return element.getroottree().getpath(element)


def _child_elements(element: etree._Element):
    # Comments and processing instructions have a non-string tag.
    return [child for child in element if isinstance(child.tag, str)]


class _Extractor:
    """Turns a validated lxml tree into a ConfigDocument."""

    def __init__(self, source: str):
        self.source = source

    def _fail(self, element: etree._Element, reason: str):
        raise ConfigSyntaxError(self.source, reason, _element_path(element))

    def extract(self, root: etree._Element) -> ConfigDocument:
        document = ConfigDocument(
            schema_version=root.get("schemaversion"),
            source=self.source,
        )

        for child in _child_elements(root):
            if child.tag == EVENT_FILTERING_TAG:
                for group_element in _child_elements(child):
                    if group_element.tag != RULE_GROUP_TAG:
                        self._fail(group_element, f"unexpected <{group_element.tag}> in <{EVENT_FILTERING_TAG}>")
                    document.rule_groups.append(self._extract_group(group_element))
            else:
                setting = copy.deepcopy(child)
                setting.tail = None
                document.settings.append((child.tag, etree.tostring(setting, encoding="utf-8")))

        return document

    def _extract_group(self, element: etree._Element) -> RuleGroup:
        relation = parse_relation(element.get("groupRelation"))
        if relation is None:
            self._fail(element, f"unknown groupRelation {element.get('groupRelation')!r}")

        group = RuleGroup(name=element.get("name"), relation=relation)
        for block_element in _child_elements(element):
            kind = EventKind.from_tag(block_element.tag)
            if kind is None:
                self._fail(block_element, f"unknown event type <{block_element.tag}>")
            group.blocks.append(self._extract_block(kind, block_element))
        return group

    def _extract_block(self, kind: EventKind, element: etree._Element) -> EventTypeBlock:
        polarity = parse_polarity(element.get("onmatch"))
        if polarity is None:
            self._fail(element, f"unknown onmatch {element.get('onmatch')!r}")

        block = EventTypeBlock(kind=kind, polarity=polarity)
        for entry_element in _child_elements(element):
            if entry_element.tag == COMPOUND_RULE_TAG:
                block.entries.append(self._extract_compound(entry_element))
            else:
                block.entries.append(self._extract_entry(entry_element))
        return block

    def _extract_compound(self, element: etree._Element) -> CompoundRule:
        relation = parse_relation(element.get("groupRelation"))
        if relation is None:
            self._fail(element, f"unknown groupRelation {element.get('groupRelation')!r}")

        conditions = []
        for child in _child_elements(element):
            if child.tag == COMPOUND_RULE_TAG:
                self._fail(child, f"nested <{COMPOUND_RULE_TAG}> elements are not supported")
            conditions.append(self._extract_entry(child))
        if not conditions:
            self._fail(element, f"<{COMPOUND_RULE_TAG}> has no conditions")

        return CompoundRule(relation=relation, conditions=tuple(conditions), name=element.get("name"))

    def _extract_entry(self, element: etree._Element) -> RuleEntry:
        if _child_elements(element):
            self._fail(element, f"field <{element.tag}> must not contain child elements")

        operator = parse_operator(element.get("condition"))
        if operator is None:
            self._fail(element, f"unknown condition {element.get('condition')!r}")

        return RuleEntry(
            field=element.tag,
            operator=operator,
            value=(element.text or "").strip(),
            name=element.get("name"),
        )


def parse_config_content(content: Union[str, bytes], source: str = "<memory>") -> ConfigDocument:
    """
    Parse and validate one configuration document.

    Args:
        content: Raw XML text or bytes
        source: Label used in error messages, usually the file path

    Returns:
        The extracted ConfigDocument

    Raises:
        ConfigSyntaxError: Malformed markup or unknown event type / attribute value
        StructuralViolationError: One of the wrapper invariants is violated
    """
    root = load_config_tree(content, source)
    violation = validate(root)
    if violation:
        raise StructuralViolationError(source, violation)
    return _Extractor(source).extract(root)


def parse_config_file(path: Union[str, Path]) -> ConfigDocument:
    content = read_bytes(path)
    document = parse_config_content(content, source=str(path))
    logger.debug(f"Parsed {path}: {len(document.rule_groups)} rule groups")
    return document
