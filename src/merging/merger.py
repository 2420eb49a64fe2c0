import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from merging.accumulator import MergedConfig
from merging.emitter import emit_document, serialize_document
from parsers.config_parser import load_config_tree, parse_config_file
from utils.errors import (
    ConfigIOError,
    ConfigSyntaxError,
    MergeLimitError,
    MergeOutputInvalidError,
    NoInputConfigsError,
    StructuralViolationError,
)
from utils.file_ops import atomic_write_bytes, matches_ignore_pattern
from validation.validator import validate

logger = logging.getLogger(__name__)

CONFIG_EXTENSION = ".xml"


@dataclass
class MergeResult:
    """Summary of a completed merge."""
    output_path: Path
    files_merged: int
    files_skipped: int
    rule_groups: int
    entries: int
    duplicates_dropped: int


def discover_config_files(input_dir: Union[str, Path], recursive: bool = False,
                          max_depth: Optional[int] = None,
                          ignore_patterns: Optional[Sequence[str]] = None,
                          exclude: Optional[Path] = None) -> List[Path]:
    """
    List candidate fragment files under input_dir in a stable order.

    Files are sorted by their path relative to input_dir (POSIX separators),
    which fixes the "first seen" order used by the merge.

    Args:
        input_dir: Directory to scan
        recursive: Descend into subdirectories
        max_depth: Maximum subdirectory depth when recursive (None = unlimited)
        ignore_patterns: Glob patterns matched against relative path and file name
        exclude: A path never to return (the merge output)
    """
    root = Path(input_dir)
    patterns = list(ignore_patterns or [])
    excluded = exclude.resolve() if exclude is not None else None
    found = []

    for dirpath, dirnames, filenames in os.walk(root):
        depth = len(Path(dirpath).relative_to(root).parts)
        if not recursive or (max_depth is not None and depth >= max_depth):
            dirnames[:] = []

        for filename in filenames:
            if not filename.lower().endswith(CONFIG_EXTENSION):
                continue
            path = Path(dirpath) / filename
            relative = path.relative_to(root).as_posix()
            if patterns and matches_ignore_pattern(relative, patterns):
                logger.debug(f"Ignoring {relative}")
                continue
            if excluded is not None and path.resolve() == excluded:
                continue
            found.append((relative, path))

    found.sort(key=lambda item: item[0])
    return [path for _, path in found]


def merge_configs(input_dir: Union[str, Path], output_path: Union[str, Path], recursive: bool = False,
                  *, max_depth: Optional[int] = None, max_files: Optional[int] = None,
                  ignore_patterns: Optional[Sequence[str]] = None,
                  skip_invalid: bool = False) -> MergeResult:
    """
    Merge every configuration fragment under input_dir into output_path.

    Fragments are read in sorted path order and must each be valid on their
    own. The first invalid fragment aborts the merge unless skip_invalid is
    set, in which case it is logged and left out.

    Raises:
        ConfigIOError: input_dir is not a directory, or a file cannot be read/written
        ConfigSyntaxError: A fragment is malformed
        StructuralViolationError: A fragment violates a wrapper invariant
        NoInputConfigsError: No valid fragment was found
        MergeLimitError: More than max_files candidates were found
        MergeOutputInvalidError: The merged document failed validation
    """
    input_dir = Path(input_dir)
    output_path = Path(output_path)
    if not input_dir.is_dir():
        raise ConfigIOError(input_dir, "merge input is not a directory")

    files = discover_config_files(input_dir, recursive=recursive, max_depth=max_depth,
                                  ignore_patterns=ignore_patterns, exclude=output_path)
    if max_files is not None and len(files) > max_files:
        raise MergeLimitError(input_dir, len(files), max_files)

    logger.info(f"Found {len(files)} candidate configuration files in {input_dir}")

    merged = MergedConfig()
    skipped = 0
    for path in files:
        try:
            fragment = parse_config_file(path)
        except (ConfigSyntaxError, StructuralViolationError) as e:
            if not skip_invalid:
                logger.error(f"Aborting merge, invalid fragment: {e}")
                raise
            logger.warning(f"Skipping invalid fragment: {e}")
            skipped += 1
            continue
        merged.fold(fragment)

    if merged.is_empty:
        raise NoInputConfigsError(input_dir)

    root = emit_document(merged)
    data = serialize_document(root)

    # Check what will actually be written, not the in-memory tree.
    try:
        violation = validate(load_config_tree(data, str(output_path)))
    except ConfigSyntaxError as e:
        raise MergeOutputInvalidError(str(e)) from e
    if violation:
        raise MergeOutputInvalidError(violation)

    atomic_write_bytes(output_path, data)

    result = MergeResult(
        output_path=output_path,
        files_merged=merged.fragments_folded,
        files_skipped=skipped,
        rule_groups=len(merged.relations),
        entries=merged.entry_count,
        duplicates_dropped=merged.duplicates_dropped,
    )
    logger.info(f"Merged {result.files_merged} files into {output_path} "
                f"({result.entries} entries, {result.duplicates_dropped} duplicates dropped, "
                f"{result.files_skipped} skipped)")
    return result
