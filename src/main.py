import argparse
import os
import re
import sys
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional

import yaml

from batch.batch_processor import (
    BatchProcessor,
    ProcessingOptions,
    ProgressReporter,
    count_candidate_files,
)
from converters.codec import convert_file, default_output_path, verify_output
from converters.preprocessor import preprocess_config
from merging.merger import merge_configs
from utils.errors import SysmonConfigError
from utils.file_ops import create_backup
from validation.validator import validate_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config/config.yaml'


def setup_logging(config: Dict[str, Any], silent: bool = False):
    """Configure logging based on config."""
    log_config = config.get('logging', {}) or {}
    log_level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    if silent:
        log_level = max(log_level, logging.WARNING)
    log_file = log_config.get('file')

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        # Create log directory if needed
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


def load_config(path: str) -> Dict[str, Any]:
    """Load YAML configuration file with environment variable expansion."""
    with open(path, 'r') as f:
        content = f.read()

    # Expand environment variables (${VAR_NAME} format)
    def expand_env_var(match):
        return os.environ.get(match.group(1), '')

    content = re.sub(r'\$\{([^}]+)\}', expand_env_var, content)
    return yaml.safe_load(content) or {}


def resolve_config_path(cli_path: Optional[str]) -> Optional[str]:
    if cli_path:
        return cli_path
    env_path = os.environ.get('CONFIG_PATH')
    if env_path:
        return env_path
    return DEFAULT_CONFIG_PATH if os.path.exists(DEFAULT_CONFIG_PATH) else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sysmon-json',
        description='Convert, validate and merge Sysmon configurations (XML <-> JSON)')
    parser.add_argument('--input', '-i', required=True, type=Path,
                        help='Input file or directory path')
    parser.add_argument('--output', '-o', type=Path,
                        help='Output file or directory path')
    parser.add_argument('--recursive', '-r', action='store_true', default=None,
                        help='Process directories recursively')
    parser.add_argument('--batch', '-b', action='store_true',
                        help='Process input as a directory containing multiple files')
    parser.add_argument('--merge', '-m', action='store_true',
                        help='Merge all Sysmon configs in the input directory into a single file')
    parser.add_argument('--validate', action='store_true',
                        help='Only validate the input configuration')
    parser.add_argument('--max-size', type=int,
                        help='Maximum file size in MB (default: 10)')
    parser.add_argument('--max-depth', type=int,
                        help='Maximum recursion depth (default: 10)')
    parser.add_argument('--workers', type=int,
                        help='Number of worker threads (default: number of CPU cores)')
    parser.add_argument('--verify', action='store_true',
                        help='Verify output after conversion')
    parser.add_argument('--silent', action='store_true',
                        help='Suppress progress output')
    parser.add_argument('--backup', action='store_true',
                        help='Create backups of existing files')
    parser.add_argument('--ignore', dest='ignore_patterns', action='append', default=[],
                        help='Pattern to ignore (can be specified multiple times)')
    parser.add_argument('--skip-preprocessing', action='store_true',
                        help='Convert the input as-is without normalizing it first')
    parser.add_argument('--skip-invalid', action='store_true', default=None,
                        help='Merge mode: skip invalid fragments instead of aborting')
    parser.add_argument('--config', '-c',
                        help=f'YAML configuration file (default: $CONFIG_PATH or {DEFAULT_CONFIG_PATH})')
    return parser


def build_options(args: argparse.Namespace, config: Dict[str, Any]) -> ProcessingOptions:
    """Processing options from the config file, overridden by CLI flags."""
    options = ProcessingOptions.from_config(config.get('processing'))
    if args.max_size is not None:
        options.max_file_size = args.max_size * 1024 * 1024
    if args.max_depth is not None:
        options.max_depth = args.max_depth
    if args.workers is not None:
        options.workers = args.workers
    options.verify_output = options.verify_output or args.verify
    options.silent = options.silent or args.silent
    options.create_backup = options.create_backup or args.backup
    options.ignore_patterns = options.ignore_patterns + list(args.ignore_patterns)
    return options


def handle_merge_mode(args: argparse.Namespace, config: Dict[str, Any], options: ProcessingOptions):
    if not args.input.is_dir():
        raise SysmonConfigError("Merge mode requires input to be a directory")

    merge_config = config.get('merge', {}) or {}
    output_path = args.output or args.input / merge_config.get('output_name', 'merged.xml')
    recursive = args.recursive if args.recursive is not None else bool(merge_config.get('recursive', False))
    skip_invalid = args.skip_invalid if args.skip_invalid is not None else bool(merge_config.get('skip_invalid', False))

    logger.info(f"Merging configs from {args.input} to {output_path}")
    result = merge_configs(
        args.input,
        output_path,
        recursive,
        max_depth=options.max_depth if recursive else None,
        max_files=merge_config.get('max_files'),
        ignore_patterns=options.ignore_patterns,
        skip_invalid=skip_invalid,
    )
    logger.info(f"Merge completed successfully ({result.files_merged} files, {result.entries} entries)")


def handle_batch_mode(args: argparse.Namespace, options: ProcessingOptions):
    if not args.input.is_dir():
        raise SysmonConfigError("Batch mode requires input to be a directory")

    input_dir = args.input.resolve()
    output_dir = args.output or input_dir.with_name(f"{input_dir.name or 'output'}_converted")
    recursive = bool(args.recursive)

    logger.info(f"Processing directory: {args.input}")
    logger.info(f"Output directory: {output_dir}")

    progress = None
    if not options.silent:
        progress = ProgressReporter(count_candidate_files(args.input, recursive, options))

    stats = BatchProcessor().process_directory(args.input, output_dir, recursive, options, progress)
    if stats.errors > 0:
        logger.warning("Some files failed to process. Check the log for details.")


def handle_single_file(args: argparse.Namespace, options: ProcessingOptions):
    output_path = args.output or default_output_path(args.input)

    if options.create_backup and output_path.exists():
        create_backup(output_path)

    if args.skip_preprocessing:
        logger.info(f"Converting {args.input} to {output_path}")
        convert_file(args.input, output_path)
    else:
        logger.info("Preprocessing configuration file...")
        content = preprocess_config(args.input)
        logger.info(f"Converting {args.input} to {output_path}")
        convert_file(args.input, output_path, content=content)

    if options.verify_output:
        verify_output(output_path)

    logger.info("Conversion completed successfully")


def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config_path = resolve_config_path(args.config)
    if config_path and not os.path.exists(config_path):
        print(f"Error: Config file not found at {config_path}")
        return 1
    config = load_config(config_path) if config_path else {}

    options = build_options(args, config)
    setup_logging(config, silent=options.silent)

    try:
        if not args.input.exists():
            raise SysmonConfigError(f"Input path does not exist: {args.input}")

        if args.validate:
            validate_config(args.input)
        elif args.merge:
            handle_merge_mode(args, config, options)
        elif args.batch or args.input.is_dir():
            handle_batch_mode(args, options)
        else:
            handle_single_file(args, options)
    except SysmonConfigError as e:
        logger.error(f"Error: {e}")
        return 1

    return 0


def main():
    sys.exit(run())


if __name__ == '__main__':
    main()
