"""
Structural validation of Sysmon configuration documents.

Only the three wrapper rules are enforced:

1. rule-bearing elements live inside exactly one <EventFiltering> element,
2. every event type element sits directly inside a <RuleGroup>,
3. <EventFiltering> holds at least one <RuleGroup>.

The same check is used to reject fragments before a merge and to assert the
correctness of the merged output.
"""

import logging
from typing import Optional

from lxml import etree

from models.sysmon_config import (
    COMPOUND_RULE_TAG,
    EVENT_FILTERING_TAG,
    EVENT_KIND_TAGS,
    RULE_GROUP_TAG,
)
from utils.errors import Invariant, InvariantViolation, StructuralViolationError

logger = logging.getLogger(__name__)

_RULE_BEARING_TAGS = tuple(sorted(EVENT_KIND_TAGS)) + (RULE_GROUP_TAG, COMPOUND_RULE_TAG)


def _path(element: etree._Element) -> str:
    return element.getroottree().getpath(element)


def _check_event_filtering(root: etree._Element) -> Optional[InvariantViolation]:
    filtering = list(root.iter(EVENT_FILTERING_TAG))
    if not filtering:
        # Report the first stray rule element if there is one; it is the
        # more useful location for the operator.
        stray = next(root.iter(*_RULE_BEARING_TAGS), None)
        where = stray if stray is not None else root
        return InvariantViolation(
            Invariant.RULES_IN_EVENT_FILTERING, _path(where),
            f"no <{EVENT_FILTERING_TAG}> element found",
        )
    if len(filtering) > 1:
        return InvariantViolation(
            Invariant.RULES_IN_EVENT_FILTERING, _path(filtering[1]),
            f"found {len(filtering)} <{EVENT_FILTERING_TAG}> elements, expected exactly one",
        )

    event_filtering = filtering[0]
    if event_filtering.getparent() is not root:
        return InvariantViolation(
            Invariant.RULES_IN_EVENT_FILTERING, _path(event_filtering),
            f"<{EVENT_FILTERING_TAG}> must be a direct child of the document root",
        )

    for element in root.iter(*_RULE_BEARING_TAGS):
        if next(element.iterancestors(EVENT_FILTERING_TAG), None) is None:
            return InvariantViolation(
                Invariant.RULES_IN_EVENT_FILTERING, _path(element),
                f"<{element.tag}> is outside <{EVENT_FILTERING_TAG}>",
            )
    return None


def _check_rule_group_wrapping(event_filtering: etree._Element) -> Optional[InvariantViolation]:
    for element in event_filtering.iter(*EVENT_KIND_TAGS):
        parent = element.getparent()
        if parent is None or parent.tag != RULE_GROUP_TAG:
            return InvariantViolation(
                Invariant.EVENT_TYPES_IN_RULE_GROUP, _path(element),
                f"<{element.tag}> is not a direct child of <{RULE_GROUP_TAG}>",
            )
    return None


def _check_rule_group_present(event_filtering: etree._Element) -> Optional[InvariantViolation]:
    if event_filtering.find(RULE_GROUP_TAG) is None:
        return InvariantViolation(
            Invariant.RULE_GROUP_REQUIRED, _path(event_filtering),
            f"<{EVENT_FILTERING_TAG}> has no <{RULE_GROUP_TAG}> child",
        )
    return None


def validate(root: etree._Element) -> Optional[InvariantViolation]:
    """
    Check the structural invariants of a parsed document.

    Args:
        root: Root element of the document

    Returns:
        The first violation found, or None if the document is valid
    """
    violation = _check_event_filtering(root)
    if violation:
        return violation

    event_filtering = root.find(EVENT_FILTERING_TAG)
    return (_check_rule_group_wrapping(event_filtering)
            or _check_rule_group_present(event_filtering))


def validate_config(path):
    """
    Validate a configuration file on disk.

    Returns the parsed ConfigDocument. Raises StructuralViolationError,
    ConfigSyntaxError or ConfigIOError when the file is not usable.
    """
    from parsers.config_parser import parse_config_file

    try:
        document = parse_config_file(path)
    except StructuralViolationError as e:
        logger.warning(f"Validation failed for {path}: {e.violation}")
        raise
    logger.info(f"Configuration is valid: {path}")
    return document
