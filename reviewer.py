#!/usr/bin/env python3
"""
Kritiq Reviewer

Batch bug-fixing reviewer: scans a folder, sends each eligible source file
to Gemini under a strict output contract and writes accepted fixes back.

Usage:
    python reviewer.py [folder] [--config config.yaml]

Architecture:
    1. Load configuration from config.yaml
    2. Scan the folder (allow/block lists) and apply the batch policy
    3. Review files one at a time, racing each model call against a deadline
    4. Overwrite fixed files atomically, keeping a backup copy for --undo
    5. Print the fixed / clean / error summary
"""

import argparse
import datetime
import json
import logging
import os
import shutil
import signal
import sys
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from batch_policy import BatchChoice, create_policy_from_config
from gemini_client import GeminiClient, create_config_from_dict
from ops_logger import create_logger_from_config
from orchestrator import (
    ReviewerError, ReviewOrchestrator, StopReason, create_settings_from_config,
)
from path_filter import create_filter_from_config
from tree_scanner import ScanError, TreeScanner

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration file. An empty file is an empty config."""
    with open(config_path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


class FileEditor:
    """
    Reads review targets and writes fixes back.

    Writes go to a temporary file in the target's directory and are moved
    into place with os.replace, so a reader never sees a half-written file.
    With a backup directory, the first overwrite of each file copies the
    previous content there and records it in manifest.json for --undo.
    """

    def __init__(self, backup_dir: Optional[Path] = None):
        self.backup_dir = backup_dir
        self._backups: Dict[str, str] = {}

    @staticmethod
    def read_file_text(file_path: Path) -> str:
        """Read a file as strict UTF-8; decode errors propagate."""
        return Path(file_path).read_bytes().decode('utf-8')

    def replace_file_content(self, file_path: Path, new_text: str) -> Optional[Path]:
        """
        Overwrite a file with new text.

        Returns:
            Path of the backup copy, or None when backups are off
        """
        file_path = Path(file_path)
        backup = self._backup(file_path) if self.backup_dir else None

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{file_path.name}.", suffix=".kritiq", dir=str(file_path.parent)
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
                f.write(new_text)
            shutil.copymode(file_path, tmp_name)
            os.replace(tmp_name, file_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return backup

    def _backup(self, file_path: Path) -> Path:
        key = str(file_path.absolute())
        if key in self._backups:
            return Path(self._backups[key])

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        dest = self.backup_dir / f"{len(self._backups):04d}_{file_path.name}"
        shutil.copy2(file_path, dest)
        self._backups[key] = str(dest)

        manifest = self.backup_dir / MANIFEST_NAME
        manifest.write_text(json.dumps(self._backups, indent=2), encoding='utf-8')
        return dest


def restore_backups(backup_dir: Path) -> List[Path]:
    """
    Put back every file recorded in a run's backup manifest.

    Returns:
        Paths that were restored
    """
    manifest = Path(backup_dir) / MANIFEST_NAME
    if not manifest.exists():
        raise FileNotFoundError(f"No {MANIFEST_NAME} in {backup_dir}")

    entries = json.loads(manifest.read_text(encoding='utf-8'))
    restored = []
    for original, backup in entries.items():
        shutil.copy2(backup, original)
        restored.append(Path(original))
        logger.info(f"Restored {original}")
    return restored


def ask_batch_choice(total: int, limit: int) -> Optional[BatchChoice]:
    """Interactive chooser for large batches."""
    print(f"\nFound {total} files. Reviewing many files may use up the API quota.")
    print(f"  [a] Review all {total} files")
    print(f"  [f] Review the first {limit} files")
    print("  [c] Cancel")
    try:
        answer = input("Choice [f]: ").strip().lower()
    except EOFError:
        return None
    if answer in ('a', 'all'):
        return BatchChoice.REVIEW_ALL
    if answer in ('', 'f', 'first'):
        return BatchChoice.REVIEW_FIRST
    return BatchChoice.CANCEL


def install_cancel_handler(cancel_event: threading.Event) -> None:
    """First Ctrl-C stops after the current file; the second one aborts."""
    def _handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        print("\n*** Cancel requested - stopping after the current file (Ctrl-C again to abort)",
              file=sys.stderr)

    signal.signal(signal.SIGINT, _handler)


def apply_cli_overrides(config: Dict[str, Any], args: argparse.Namespace) -> None:
    """Fold command-line options into the configuration dictionary."""
    review = config.setdefault('review', {}) or {}
    config['review'] = review
    batch = config.setdefault('batch', {}) or {}
    config['batch'] = batch

    if args.mode:
        review['mode'] = args.mode
    if args.dry_run:
        review['dry_run'] = True
    if args.policy:
        batch['policy'] = args.policy
    if args.limit:
        batch['limit'] = args.limit
        batch['threshold'] = args.limit


def build_orchestrator(
    config: Dict[str, Any],
    backup_dir: Optional[Path],
    interactive: bool,
) -> ReviewOrchestrator:
    """Wire the orchestrator and its collaborators from configuration."""
    gemini_config = create_config_from_dict(config)

    def model_factory(api_key: str) -> GeminiClient:
        return GeminiClient(replace(gemini_config, api_key=api_key))

    def notify(message: str) -> None:
        print(f"\n*** {message}", file=sys.stderr)

    ops_logger = create_logger_from_config(config)
    # Backups of earlier runs and the ops log must never be reviewed
    skip_paths = [ops_logger.log_dir]
    if backup_dir is not None:
        skip_paths.append(backup_dir.parent)

    return ReviewOrchestrator(
        settings=create_settings_from_config(config),
        model_factory=model_factory,
        editor=FileEditor(backup_dir=backup_dir),
        scanner=TreeScanner(create_filter_from_config(config), skip_paths=skip_paths),
        batch_policy=create_policy_from_config(
            config, chooser=ask_batch_choice if interactive else None
        ),
        ops_logger=ops_logger,
        notify=notify,
    )


def resolve_backup_dir(config: Dict[str, Any]) -> Optional[Path]:
    backup_config = config.get('backup') or {}
    if not backup_config.get('enabled', True):
        return None
    base = Path(backup_config.get('dir', '.kritiq-backup'))
    if not base.is_absolute():
        base = Path.cwd() / base
    return base / datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Kritiq - batch AI bug-fixing reviewer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python reviewer.py src/                    # Review src/ with config.yaml
    python reviewer.py src/ --dry-run          # Report fixes without writing
    python reviewer.py src/ --policy interactive
    python reviewer.py --undo .kritiq-backup/20250101_120000
        """
    )

    parser.add_argument('folder', nargs='?', help='Folder to review (default: source.root from config)')
    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument('--mode', help='Review mode label passed to the model (default: Standard)')
    parser.add_argument(
        '--policy',
        choices=['truncate', 'interactive'],
        help='What to do with large batches'
    )
    parser.add_argument('--limit', type=int, help='Batch threshold and truncation size')
    parser.add_argument('--dry-run', action='store_true', help='Do not write fixes back')
    parser.add_argument('--undo', metavar='BACKUP_DIR', help='Restore files from a backup directory')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
        datefmt='%H:%M:%S'
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if args.undo:
        try:
            restored = restore_backups(Path(args.undo))
        except (OSError, ValueError) as e:
            logger.error(f"Undo failed: {e}")
            sys.exit(1)
        print(f"\n✓ Restored {len(restored)} file(s)")
        sys.exit(0)

    config_path = Path(args.config)
    defaults_path = config_path.parent / "config.yaml.defaults"

    if not config_path.exists():
        if defaults_path.exists():
            shutil.copy(defaults_path, config_path)
            logger.warning(f"No {config_path} found - copied from {defaults_path}")
            print(f"\n*** Created {config_path} from defaults")
            print("*** IMPORTANT: Edit config.yaml to set your Gemini API key (or export KRITIQ_API_KEY)")
        else:
            logger.info(f"No {config_path} found - using built-in defaults")

    config: Dict[str, Any] = {}
    if config_path.exists():
        logger.info(f"Loading configuration from {config_path}")
        try:
            config = load_yaml_config(config_path)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Cannot load {config_path}: {e}")
            sys.exit(1)

    apply_cli_overrides(config, args)
    folder = args.folder or (config.get('source') or {}).get('root')

    try:
        orchestrator = build_orchestrator(
            config,
            backup_dir=resolve_backup_dir(config),
            interactive=sys.stdin.isatty(),
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    cancel_event = threading.Event()
    install_cancel_handler(cancel_event)

    try:
        report = orchestrator.run(Path(folder) if folder else None, cancel_event=cancel_event)
    except ScanError as e:
        logger.error(str(e))
        sys.exit(1)
    except ReviewerError as e:
        print(f"\n*** {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.exception(f"CRITICAL ERROR: {e}")
        sys.exit(1)

    if report.stop_reason in (StopReason.NO_FILES, StopReason.DECLINED):
        sys.exit(0)

    print(f"\n{report.summary}")
    editor = orchestrator.editor
    if isinstance(editor, FileEditor) and editor.backup_dir and editor.backup_dir.exists():
        print(f"Undo with: python reviewer.py --undo {editor.backup_dir}")

    sys.exit(2 if report.stop_reason == StopReason.QUOTA_EXCEEDED else 0)


if __name__ == "__main__":
    main()
