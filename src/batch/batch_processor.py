import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from converters.codec import SUPPORTED_SUFFIXES, convert_file, default_output_path, verify_output
from utils.errors import SysmonConfigError
from utils.file_ops import create_backup, matches_ignore_pattern

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass
class ProcessingOptions:
    max_file_size: int = 10 * MB
    max_depth: int = 10
    workers: Optional[int] = None
    verify_output: bool = False
    silent: bool = False
    create_backup: bool = False
    ignore_patterns: List[str] = field(default_factory=list)

    @property
    def worker_count(self) -> int:
        return max(1, self.workers or os.cpu_count() or 1)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "ProcessingOptions":
        """Build options from the ``processing`` section of the YAML config."""
        config = config or {}
        return cls(
            max_file_size=int(config.get('max_size_mb', 10)) * MB,
            max_depth=int(config.get('max_depth', 10)),
            workers=config.get('workers'),
            verify_output=bool(config.get('verify', False)),
            silent=bool(config.get('silent', False)),
            create_backup=bool(config.get('backup', False)),
            ignore_patterns=list(config.get('ignore_patterns') or []),
        )


@dataclass
class BatchProcessingStats:
    processed: int = 0
    errors: int = 0
    skipped: int = 0


class ProgressReporter:
    """
    Thread-safe progress counter shared by the batch workers.

    The count only ever increases; readers may poll it at any time.
    """

    def __init__(self, total: int, silent: bool = False):
        self.total = total
        self.silent = silent
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    def increment(self, label: str = "") -> int:
        with self._lock:
            self._count += 1
            current = self._count
        if not self.silent:
            logger.info(f"[{current}/{self.total}] {label}")
        return current


def iter_candidate_files(input_dir: Path, recursive: bool, options: ProcessingOptions) -> Iterable[Path]:
    """Yield convertible files under input_dir in sorted order."""
    for dirpath, dirnames, filenames in os.walk(input_dir):
        depth = len(Path(dirpath).relative_to(input_dir).parts)
        if not recursive or depth >= options.max_depth:
            dirnames[:] = []
        dirnames.sort()

        for filename in sorted(filenames):
            if Path(filename).suffix.lower() not in SUPPORTED_SUFFIXES:
                continue
            path = Path(dirpath) / filename
            relative = path.relative_to(input_dir).as_posix()
            if options.ignore_patterns and matches_ignore_pattern(relative, options.ignore_patterns):
                logger.debug(f"Ignoring {relative}")
                continue
            yield path


def count_candidate_files(input_dir, recursive: bool, options: Optional[ProcessingOptions] = None) -> int:
    return sum(1 for _ in iter_candidate_files(Path(input_dir), recursive, options or ProcessingOptions()))


class BatchProcessor:
    """
    Converts every configuration under a directory tree.

    Files are independent units of work spread over a thread pool. A failing
    file is logged and counted; it never stops the rest of the batch.
    """

    def process_directory(self, input_dir, output_dir, recursive: bool,
                          options: Optional[ProcessingOptions] = None,
                          progress: Optional[ProgressReporter] = None) -> BatchProcessingStats:
        """
        Convert all XML/JSON configs below input_dir into output_dir.

        Args:
            input_dir: Directory to scan
            output_dir: Destination root; relative paths are mirrored
            recursive: Descend into subdirectories (bounded by options.max_depth)
            options: Processing options
            progress: Optional shared progress reporter

        Returns:
            Aggregated statistics
        """
        options = options or ProcessingOptions()
        input_dir = Path(input_dir)
        output_dir = Path(output_dir)
        if not input_dir.is_dir():
            raise SysmonConfigError(f"Batch input is not a directory: {input_dir}")

        files = list(iter_candidate_files(input_dir, recursive, options))
        stats = BatchProcessingStats()
        logger.info(f"Processing {len(files)} files with {options.worker_count} workers")

        with ThreadPoolExecutor(max_workers=options.worker_count) as executor:
            future_to_path = {
                executor.submit(self._process_file, path, input_dir, output_dir, options): path
                for path in files
            }

            for future in as_completed(future_to_path):
                path = future_to_path[future]
                try:
                    status, _ = future.result()
                    if status == "skipped":
                        stats.skipped += 1
                    else:
                        stats.processed += 1
                except (SysmonConfigError, OSError) as e:
                    logger.error(f"Failed to process {path}: {e}")
                    stats.errors += 1
                except Exception as e:
                    logger.error(f"Unexpected error processing {path}: {e}", exc_info=True)
                    stats.errors += 1

                if progress:
                    progress.increment(path.name)

        logger.info(f"Batch complete: {stats.processed} processed, "
                    f"{stats.errors} errors, {stats.skipped} skipped")
        return stats

    def _process_file(self, path: Path, input_dir: Path, output_dir: Path,
                      options: ProcessingOptions) -> Tuple[str, Optional[Path]]:
        size = path.stat().st_size
        if size > options.max_file_size:
            logger.warning(f"Skipping {path}: {size} bytes exceeds limit of {options.max_file_size}")
            return "skipped", None

        output_path = default_output_path(output_dir / path.relative_to(input_dir))
        output_path.parent.mkdir(parents=True, exist_ok=True)

        if options.create_backup and output_path.exists():
            create_backup(output_path)

        convert_file(path, output_path)

        if options.verify_output:
            verify_output(output_path)
        return "processed", output_path
