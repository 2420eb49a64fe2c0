import json
import logging
from pathlib import Path
from typing import Optional, Union
from xml.parsers.expat import ExpatError

import xmltodict

from utils.errors import ConversionError
from utils.file_ops import atomic_write_text

logger = logging.getLogger(__name__)

XML_SUFFIX = ".xml"
JSON_SUFFIX = ".json"
SUPPORTED_SUFFIXES = (XML_SUFFIX, JSON_SUFFIX)


def default_output_path(input_path: Union[str, Path]) -> Path:
    """Swap .xml for .json and anything else for .xml."""
    input_path = Path(input_path)
    if input_path.suffix.lower() == XML_SUFFIX:
        return input_path.with_suffix(JSON_SUFFIX)
    return input_path.with_suffix(XML_SUFFIX)


def xml_to_json(content: str, source: str = "<memory>") -> str:
    try:
        data = xmltodict.parse(content)
    except (ExpatError, ValueError, RecursionError) as e:
        raise ConversionError(source, f"invalid XML: {e}") from e

    try:
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    except RecursionError as e:
        raise ConversionError(source, f"document nested too deeply: {e}") from e


def json_to_xml(content: str, source: str = "<memory>") -> str:
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, RecursionError) as e:
        raise ConversionError(source, f"invalid JSON: {e}") from e

    if not isinstance(data, dict) or len(data) != 1:
        raise ConversionError(source, "JSON document must be an object with exactly one root key")

    try:
        return xmltodict.unparse(data, pretty=True, indent="  ") + "\n"
    except (ValueError, TypeError, RecursionError) as e:
        raise ConversionError(source, e) from e


def convert_file(input_path: Union[str, Path], output_path: Union[str, Path],
                 content: Optional[str] = None) -> Path:
    """
    Convert a configuration between XML and JSON.

    The direction is taken from the input file extension. Attributes map to
    "@name" keys and element text to "#text", following xmltodict.

    Args:
        input_path: Source file (.xml or .json)
        output_path: Destination file, written atomically
        content: Already loaded (e.g. preprocessed) source text; read from
            input_path when omitted

    Returns:
        The output path
    """
    input_path = Path(input_path)
    output_path = Path(output_path)
    suffix = input_path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ConversionError(input_path, f"unsupported file extension {input_path.suffix!r}")

    if content is None:
        try:
            with open(input_path, 'r', encoding='utf-8-sig') as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise ConversionError(input_path, e) from e

    if suffix == XML_SUFFIX:
        converted = xml_to_json(content, str(input_path))
    else:
        converted = json_to_xml(content, str(input_path))

    atomic_write_text(output_path, converted)
    logger.info(f"Converted {input_path} -> {output_path}")
    return output_path


def verify_output(output_path: Union[str, Path]) -> None:
    """
    Re-read a converted file and make sure it parses.

    Raises:
        ConversionError: If the file cannot be read or parsed
    """
    output_path = Path(output_path)
    try:
        with open(output_path, 'r', encoding='utf-8') as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ConversionError(output_path, f"verification read failed: {e}") from e

    try:
        if output_path.suffix.lower() == JSON_SUFFIX:
            json.loads(content)
        else:
            xmltodict.parse(content)
    except (ExpatError, ValueError, RecursionError) as e:
        raise ConversionError(output_path, f"verification failed: {e}") from e
    logger.debug(f"Verified {output_path}")
