"""
Normalization pass applied to a configuration before conversion.

XML input is cleaned up (comments and processing instructions removed, leaf
text trimmed, condition/onmatch/groupRelation spellings lower-cased) and then
checked against the structural invariants. JSON input is re-indented.
Each failure mode raises its own PreprocessError subclass.
"""

import json
import logging
from pathlib import Path
from typing import Union

from lxml import etree

from models.sysmon_config import ROOT_TAG
from parsers.config_parser import parse_config_content
from utils.errors import (
    ConfigSyntaxError,
    PreprocessIOError,
    PreprocessParserError,
    PreprocessPathError,
    PreprocessValidationError,
    PreprocessXmlError,
    StructuralViolationError,
)
from validation.validator import validate

logger = logging.getLogger(__name__)

_NORMALIZED_ATTRIBUTES = ("condition", "onmatch", "groupRelation")
_UTF8_BOM = b"\xef\xbb\xbf"


def _resolve(path: Union[str, Path]) -> Path:
    try:
        resolved = Path(path).resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise PreprocessPathError(path, e) from e
    if not resolved.is_file():
        raise PreprocessPathError(path, "not a regular file")
    return resolved


def _normalize_tree(root: etree._Element):
    for node in list(root.iter(etree.Comment, etree.ProcessingInstruction)):
        parent = node.getparent()
        if parent is None:
            continue
        # Keep the text that followed the removed node.
        if node.tail:
            previous = node.getprevious()
            if previous is not None:
                previous.tail = (previous.tail or "") + node.tail
            else:
                parent.text = (parent.text or "") + node.tail
        parent.remove(node)

    for element in root.iter(tag=etree.Element):
        if len(element) == 0 and element.text is not None:
            element.text = element.text.strip()
        for attribute in _NORMALIZED_ATTRIBUTES:
            value = element.get(attribute)
            if value is not None:
                element.set(attribute, " ".join(value.split()).lower())


def _preprocess_xml(path: Path, content: bytes) -> str:
    if content.startswith(_UTF8_BOM):
        content = content[len(_UTF8_BOM):]

    parser = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)
    try:
        root = etree.fromstring(content, parser)
    except etree.XMLSyntaxError as e:
        raise PreprocessXmlError(path, e) from e

    if root.tag != ROOT_TAG:
        raise PreprocessValidationError(path, f"root element is <{root.tag}>, expected <{ROOT_TAG}>")

    _normalize_tree(root)
    violation = validate(root)
    if violation:
        raise PreprocessValidationError(path, violation)

    etree.indent(root, space="  ")
    normalized = etree.tostring(root, pretty_print=True, xml_declaration=True,
                                encoding="UTF-8").decode("utf-8")

    try:
        parse_config_content(normalized, source=str(path))
    except (ConfigSyntaxError, StructuralViolationError) as e:
        raise PreprocessParserError(path, e) from e

    return normalized


def _preprocess_json(path: Path, content: bytes) -> str:
    try:
        data = json.loads(content.decode("utf-8-sig"))
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise PreprocessParserError(path, e) from e


def preprocess_config(path: Union[str, Path]) -> str:
    """
    Return the normalized content of a configuration file.

    Args:
        path: XML or JSON configuration file

    Returns:
        Normalized file content
    """
    resolved = _resolve(path)
    try:
        with open(resolved, 'rb') as f:
            content = f.read()
    except OSError as e:
        raise PreprocessIOError(path, e) from e

    if resolved.suffix.lower() == ".json":
        normalized = _preprocess_json(resolved, content)
    else:
        normalized = _preprocess_xml(resolved, content)

    logger.debug(f"Preprocessed {path} ({len(content)} -> {len(normalized)} bytes)")
    return normalized
