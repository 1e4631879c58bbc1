#!/usr/bin/env python3
r"""
Project Sync (psync): task-file driven rsync/tar wrapper for project trees

Features:
- Task files in CSV or JSON, auto-detected by extension, then by content.
- One task per invocation (explicit index), all tasks in order (--all), or one
  task per cluster array index (SLURM_ARRAY_TASK_ID by default).
- Destinations built from the project hierarchy:
      <root>/<project>[/<experiment>[/<run>]]/<destination>
      <root>/<project>[/<analysis>]/<destination>
- Operations:
    * dryrun  -> rsync --dry-run
    * copy    -> rsync
    * move    -> rsync --remove-source-files
    * archive -> <destination>/<source_basename>_<YYYYMMDD_HHMMSS>.tar.gz
    * permit  -> chmod 755 on the destination directory
    * skip    -> destination directory only
- Helpers: new (template), check (validate), preview (tree), interactive.
- Loguru logging to the console (and an optional rotating log file).

CSV columns (no quoting, '#' in the first field marks a comment):
    project,experiment,run,analysis,source,destination,option,owner

JSON layout:
    {"psync_tasks": [{"project": "...", "destination": "...", "option": "copy"}, ...]}

INI keys (all optional):
    [Settings]
    destination_root = /scratch/projects
    rsync_binary = rsync
    rsync_options = -av --progress
    archive_timestamp_format = %Y%m%d_%H%M%S
    array_index_variable = SLURM_ARRAY_TASK_ID
    log_file = ~/logs/psync.log
    log_level = INFO
"""

from __future__ import annotations

import argparse
import configparser
import datetime as dt
import enum
import getpass
import json
import os
import re
import shlex
import subprocess
import sys
import tarfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from tqdm.auto import tqdm

try:
    from loguru import logger
except ImportError:
    print("Error: loguru is required. Install it with: pip install loguru", file=sys.stderr)
    sys.exit(1)


__version__ = "0.1.0"

PROG = "psync"
TASKS_KEY = "psync_tasks"
DEFAULT_CONFIG_PATH = Path("~/.config/project-sync/psync.ini")
CONSOLE_FORMAT = "[{time:YYYY-MM-DD HH:mm:ss}] {level: <8} {message}"
LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]

# Column order of a CSV line and key names of a JSON task.
INPUT_FIELDS = ("project", "experiment", "run", "analysis", "source", "destination", "option", "owner")

# A CSV line counts as a task when a run of non-whitespace is followed by a comma.
_COUNTED_LINE = re.compile(r"[^\s]*,")


# -------------------------------- Errors ------------------------------------ #

class ProjectSyncError(Exception):
    """Invocation-level failure; ends the run with exit code 1."""


class UsageError(ProjectSyncError):
    pass


class ConfigError(ProjectSyncError):
    pass


class UnsupportedFormat(ProjectSyncError):
    pass


class InvalidOperation(ProjectSyncError):
    pass


class ArchiveError(ProjectSyncError):
    pass


# ------------------------------- Data Types --------------------------------- #

class InputFormat(str, enum.Enum):
    CSV = "CSV"
    STRUCTURED = "JSON"

    @property
    def label(self) -> str:
        """Word used for record numbers in messages."""
        return "line" if self is InputFormat.CSV else "task"


class Operation(str, enum.Enum):
    DRYRUN = "dryrun"
    COPY = "copy"
    MOVE = "move"
    ARCHIVE = "archive"
    PERMIT = "permit"
    SKIP = "skip"


class Verdict(enum.Enum):
    VALID = "valid"
    SKIP = "skip"
    REJECT = "reject"


class DirectiveKind(enum.Enum):
    SKIP = "skip"
    SET_PERMISSIONS = "set_permissions"
    CREATE_ARCHIVE = "create_archive"
    TRANSFER = "transfer"


@dataclass(frozen=True)
class TaskRecord:
    """One synchronization job as read from a task file."""
    project: str = ""
    experiment: str = ""
    run: str = ""
    analysis: str = ""
    source: str = ""
    destination: str = ""
    operation: str = ""
    owner: str = ""
    is_comment: bool = False   # CSV line whose first field starts with "#"

    @classmethod
    def from_values(cls, values: Sequence[str]) -> "TaskRecord":
        """Build from positional values in INPUT_FIELDS order; short input is padded."""
        padded = list(values) + [""] * (len(INPUT_FIELDS) - len(values))
        return cls(*padded[: len(INPUT_FIELDS)])

    @classmethod
    def from_mapping(cls, data: object) -> "TaskRecord":
        """Build from a JSON task object; missing keys and nulls become ''."""
        if not isinstance(data, dict):
            return cls()
        values = []
        for key in INPUT_FIELDS:
            value = data.get(key)
            values.append("" if value is None else str(value))
        return cls.from_values(values)

    @property
    def is_blank(self) -> bool:
        return not any((self.project, self.experiment, self.run, self.analysis,
                        self.source, self.destination, self.operation))


@dataclass(frozen=True)
class Outcome:
    """Validation result: verdict, its reason, and non-blocking warnings."""
    verdict: Verdict
    reason: str = ""
    warnings: Tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return self.verdict is Verdict.VALID


@dataclass(frozen=True)
class OperationDirective:
    kind: DirectiveKind
    flags: str = ""   # rsync flags, TRANSFER only


@dataclass(frozen=True)
class ExecutionResult:
    ok: bool
    action: str
    detail: str = ""


@dataclass(frozen=True)
class Settings:
    """Per-run settings from [Settings] with CLI overrides applied."""
    destination_root: Path
    rsync_binary: str = "rsync"
    rsync_options: str = "-av --progress"
    archive_timestamp_format: str = "%Y%m%d_%H%M%S"
    array_index_variable: str = "SLURM_ARRAY_TASK_ID"
    log_file: Optional[Path] = None
    log_level: str = "INFO"


@dataclass
class RunSummary:
    processed: int = 0
    skipped: int = 0
    rejected: int = 0
    failed: int = 0
    missing: int = 0

    def record(self, status: str) -> None:
        setattr(self, status, getattr(self, status) + 1)


# ------------------------------ Small Utilities ----------------------------- #

def is_tty(stream=None) -> bool:
    """True if the stream (stderr by default) is an interactive terminal."""
    stream = stream if stream is not None else sys.stderr
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


def safe_resolve(p: Path) -> Path:
    try:
        return p.expanduser().resolve(strict=False)
    except (OSError, RuntimeError):
        return p.expanduser().absolute()


def path_is_within(child: Path, parent: Path) -> bool:
    child_r = safe_resolve(child)
    parent_r = safe_resolve(parent)
    try:
        child_r.relative_to(parent_r)
        return True
    except ValueError:
        return False


def _console_sink(message) -> None:
    # tqdm.write keeps an active progress bar intact below the log lines.
    tqdm.write(str(message), end="")


def configure_logging(log_file: Optional[Path], level: str, console_enabled: bool) -> None:
    """
    Configure loguru sinks.

    - Console sink: stdout, on unless console_enabled=False (--silent).
    - File sink: only when log_file is set (rotates at ~10 MB, keeps 10 files).
    """
    logger.remove()

    if console_enabled:
        logger.add(_console_sink, level=level, format=CONSOLE_FORMAT, colorize=False,
                   backtrace=False, diagnose=False)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level=level,
            rotation="10 MB",
            retention=10,
            encoding="utf-8",
            backtrace=False,
            diagnose=False,
        )


# ----------------------------- Format Detection ----------------------------- #

def detect_format(path: Path) -> InputFormat:
    """
    Decide between CSV and JSON for a task file.

    The extension wins when it is .csv or .json (case-insensitive); otherwise
    the first non-whitespace character '{' or '[' means JSON and a first
    non-blank line containing a comma means CSV.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise UnsupportedFormat(f"Cannot read task file '{path}': {e}") from e

    suffix = path.suffix.lower()
    if suffix == ".json":
        return InputFormat.STRUCTURED
    if suffix == ".csv":
        return InputFormat.CSV

    stripped = text.lstrip()
    if stripped.startswith(("{", "[")):
        return InputFormat.STRUCTURED
    first_line = stripped.split("\n", 1)[0] if stripped else ""
    if "," in first_line:
        return InputFormat.CSV

    raise UnsupportedFormat(f"Unsupported file format for '{path}' (expected CSV or JSON)")


# ------------------------------- Task Sources ------------------------------- #

def _csv_lines(path: Path) -> List[str]:
    return path.read_text(encoding="utf-8").splitlines()


def _csv_record(line: str) -> TaskRecord:
    # No quoting: the last column keeps any surplus commas.
    values = line.split(",", len(INPUT_FIELDS) - 1)
    return replace(TaskRecord.from_values(values), is_comment=values[0].startswith("#"))


def _structured_tasks(path: Path) -> List[object]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UnsupportedFormat(f"Cannot parse JSON task file '{path}': {e}") from e

    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        tasks = data.get(TASKS_KEY)
        if isinstance(tasks, list):
            return tasks
        arrays = [value for value in data.values() if isinstance(value, list)]
        if len(arrays) == 1:
            return arrays[0]
    logger.warning("No '{key}' array found in {p}", key=TASKS_KEY, p=path)
    return []


def count_tasks(path: Path, fmt: Optional[InputFormat] = None) -> int:
    """
    Number of tasks in a task file.

    For CSV this counts lines that start with a comma-terminated field, so
    blank lines and free-text comments are left out while '#,...' style
    comment lines are counted (and skipped later by validation).
    """
    fmt = fmt or detect_format(path)
    if fmt is InputFormat.CSV:
        try:
            return sum(1 for line in _csv_lines(path) if _COUNTED_LINE.match(line))
        except (OSError, UnicodeDecodeError) as e:
            raise UnsupportedFormat(f"Cannot read task file '{path}': {e}") from e
    return len(_structured_tasks(path))


def read_task(path: Path, index: int, fmt: Optional[InputFormat] = None) -> Optional[TaskRecord]:
    """Return task `index` (1-based), or None when there is no such task."""
    fmt = fmt or detect_format(path)
    if index < 1:
        return None
    if fmt is InputFormat.CSV:
        try:
            lines = _csv_lines(path)
        except (OSError, UnicodeDecodeError) as e:
            raise UnsupportedFormat(f"Cannot read task file '{path}': {e}") from e
        if index > len(lines) or not lines[index - 1].strip():
            return None
        return _csv_record(lines[index - 1])

    tasks = _structured_tasks(path)
    if index > len(tasks):
        return None
    return TaskRecord.from_mapping(tasks[index - 1])


def iter_tasks(path: Path, fmt: Optional[InputFormat] = None) -> Iterator[Tuple[int, TaskRecord]]:
    """Yield (number, record) for every non-blank CSV line or every JSON task."""
    fmt = fmt or detect_format(path)
    if fmt is InputFormat.CSV:
        try:
            lines = _csv_lines(path)
        except (OSError, UnicodeDecodeError) as e:
            raise UnsupportedFormat(f"Cannot read task file '{path}': {e}") from e
        for number, line in enumerate(lines, start=1):
            if line.strip():
                yield number, _csv_record(line)
    else:
        for number, task in enumerate(_structured_tasks(path), start=1):
            yield number, TaskRecord.from_mapping(task)


# -------------------------------- Validation -------------------------------- #

VALID_OPERATIONS = frozenset(op.value for op in Operation)


def validate_task(record: TaskRecord) -> Outcome:
    """
    Classify a record as VALID, SKIP (sparse or inconsistent hierarchy) or
    REJECT (malformed: missing destination/option or unknown option).

    Empty source and empty owner only add warnings.
    """
    if record.is_comment:
        return Outcome(Verdict.SKIP, "comment line")

    warnings: List[str] = []
    if not record.source:
        warnings.append("Source field is empty - directory will be created but no data will be moved")
    if not record.owner:
        warnings.append("Owner field is empty - this may cause permission issues")
    found = tuple(warnings)

    if not record.project:
        return Outcome(Verdict.SKIP, "Project field is required and cannot be empty (project required)", found)
    if record.run and not record.experiment:
        return Outcome(Verdict.SKIP, "Run field provided but experiment field is missing (run requires experiment)",
                       found)
    if record.analysis and (record.run or record.experiment):
        return Outcome(Verdict.SKIP, "Analysis field cannot be provided when run or experiment fields are present "
                                     "(analysis incompatible with run/experiment)", found)
    if not record.destination or not record.operation:
        return Outcome(Verdict.REJECT, "Missing required fields (destination, option)", found)
    if record.operation not in VALID_OPERATIONS:
        return Outcome(Verdict.REJECT, f"Invalid option '{record.operation}'", found)
    return Outcome(Verdict.VALID, "", found)


def report_outcome(outcome: Outcome, number: int, label: str) -> None:
    for warning in outcome.warnings:
        logger.warning("{label} {n}: {msg}", label=label, n=number, msg=warning)
    if outcome.verdict is Verdict.SKIP:
        logger.warning("{label} {n}: {msg} - skipping {label}", label=label, n=number, msg=outcome.reason)
    elif outcome.verdict is Verdict.REJECT:
        logger.error("{label} {n}: {msg}", label=label, n=number, msg=outcome.reason)


# ------------------------------ Path / Dispatch ----------------------------- #

def build_path(record: TaskRecord) -> str:
    """Join the non-empty hierarchy fields: project/experiment/run/analysis."""
    parts = (record.project, record.experiment, record.run, record.analysis)
    return "/".join(part for part in parts if part)


def destination_for(record: TaskRecord, root: Path) -> Path:
    # Plain concatenation: absolute-looking fields still land under root.
    return Path(f"{root}/{build_path(record)}/{record.destination}")


_DIRECTIVES: Dict[Operation, OperationDirective] = {
    Operation.DRYRUN: OperationDirective(DirectiveKind.TRANSFER, "--dry-run"),
    Operation.COPY: OperationDirective(DirectiveKind.TRANSFER, ""),
    Operation.MOVE: OperationDirective(DirectiveKind.TRANSFER, "--remove-source-files"),
    Operation.ARCHIVE: OperationDirective(DirectiveKind.CREATE_ARCHIVE),
    Operation.PERMIT: OperationDirective(DirectiveKind.SET_PERMISSIONS),
    Operation.SKIP: OperationDirective(DirectiveKind.SKIP),
}


def resolve_operation(keyword: str) -> OperationDirective:
    try:
        return _DIRECTIVES[Operation(keyword)]
    except ValueError:
        raise InvalidOperation(f"Invalid option '{keyword}'") from None


# -------------------------------- Execution --------------------------------- #

def run_sync_tool(source: str, destination: Path, flags: str, settings: Settings) -> int:
    """Run rsync (or the configured binary) and return its exit status."""
    cmd = [settings.rsync_binary, *shlex.split(settings.rsync_options), *shlex.split(flags),
           source, str(destination)]
    logger.debug("Running: {cmd}", cmd=" ".join(shlex.quote(c) for c in cmd))
    return subprocess.run(cmd, check=False).returncode


def refuse_archive_into_source(source: Path, destination: Path) -> None:
    if path_is_within(destination, source):
        raise ArchiveError(
            "Refusing to archive into a subdirectory of the source.\n"
            f"  source:      {safe_resolve(source)}\n"
            f"  destination: {safe_resolve(destination)}"
        )


def create_archive(source: Path, destination: Path, *, when: dt.datetime, timestamp_format: str) -> Path:
    """
    Write <destination>/<source.name>_<timestamp>.tar.gz holding the source
    tree under its own basename. Any failure raises ArchiveError.
    """
    name = safe_resolve(source).name or "root"
    archive_path = destination / f"{name}_{when.strftime(timestamp_format)}.tar.gz"

    refuse_archive_into_source(source, destination)
    if not source.exists():
        raise ArchiveError(f"Failed to create archive {archive_path}: source '{source}' does not exist")

    try:
        with tarfile.open(archive_path, "w:gz") as tar:
            tar.add(str(source), arcname=name)
    except (OSError, tarfile.TarError) as e:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to create archive {archive_path}: {e}") from e
    return archive_path


def execute_directive(
    source: str,
    destination: Path,
    directive: OperationDirective,
    settings: Settings,
    *,
    when: Optional[dt.datetime] = None,
) -> ExecutionResult:
    """
    Carry out one resolved task against `destination`.

    Every failure is reported through the result except archive creation,
    which raises ArchiveError and ends the whole run (remaining tasks of an
    --all run included).
    """
    archiving = directive.kind is DirectiveKind.CREATE_ARCHIVE and bool(source)
    if archiving:
        refuse_archive_into_source(Path(source), destination)

    keep_existing_file = (directive.kind is DirectiveKind.SET_PERMISSIONS
                          and destination.exists() and not destination.is_dir())
    if not keep_existing_file:
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            if archiving:
                raise ArchiveError(f"Failed to create archive destination {destination}: {e}") from e
            logger.error("Cannot create destination directory {p}: {e}", p=destination, e=e)
            return ExecutionResult(False, "mkdir", str(e))

    if directive.kind is DirectiveKind.SKIP:
        logger.info("SKIP: Skipping entry completely")
        return ExecutionResult(True, "skip")

    if directive.kind is DirectiveKind.SET_PERMISSIONS:
        logger.info("PERMIT: Setting permissions to 755 on {p}", p=destination)
        if not destination.is_dir():
            logger.warning("{p} is not a directory, cannot set permissions", p=destination)
            return ExecutionResult(True, "permit", "not a directory")
        try:
            destination.chmod(0o755)
        except OSError as e:
            logger.error("Cannot set permissions on {p}: {e}", p=destination, e=e)
            return ExecutionResult(False, "permit", str(e))
        logger.info("Permissions set to 755 for directory: {p}", p=destination)
        return ExecutionResult(True, "permit")

    if directive.kind is DirectiveKind.CREATE_ARCHIVE:
        if not source:
            logger.warning("ARCHIVE: Cannot create archive - source is empty")
            return ExecutionResult(True, "archive", "empty source")
        logger.info("ARCHIVE: Creating tar.gz archive of {src}", src=source)
        archive_path = create_archive(
            Path(source), destination,
            when=when or dt.datetime.now(),
            timestamp_format=settings.archive_timestamp_format,
        )
        logger.info("Archive created successfully: {p}", p=archive_path)
        return ExecutionResult(True, "archive", str(archive_path))

    if not source:
        logger.info("Source is empty - directory created but no data transferred: {p}", p=destination)
        return ExecutionResult(True, "transfer", "empty source")

    logger.info("Syncing: {src} -> {dst}", src=source, dst=destination)
    logger.info("Options: {flags}", flags=directive.flags or "(none)")
    try:
        status = run_sync_tool(source, destination, directive.flags, settings)
    except OSError as e:
        logger.error("Cannot run {tool}: {e}", tool=settings.rsync_binary, e=e)
        return ExecutionResult(False, "transfer", str(e))
    if status != 0:
        logger.error("{tool} exited with status {s}: {src} -> {dst}",
                     tool=settings.rsync_binary, s=status, src=source, dst=destination)
        return ExecutionResult(False, "transfer", f"exit status {status}")
    return ExecutionResult(True, "transfer")


# ------------------------------ Run Controller ------------------------------ #

def process_task(record: TaskRecord, number: int, label: str, settings: Settings) -> str:
    """Validate, resolve and execute one record; return its RunSummary bucket."""
    logger.info("Processing {label} {n}", label=label, n=number)

    outcome = validate_task(record)
    report_outcome(outcome, number, label)
    if outcome.verdict is Verdict.SKIP:
        logger.info("Completed processing {label} {n}", label=label, n=number)
        return "skipped"
    if outcome.verdict is Verdict.REJECT:
        logger.info("Completed processing {label} {n}", label=label, n=number)
        return "rejected"

    directive = resolve_operation(record.operation)
    file_path = build_path(record)
    full_dest = destination_for(record, settings.destination_root)

    logger.info("Project: {p}, Experiment: {e}, Run: {r}, Analysis: {a}",
                p=record.project, e=record.experiment, r=record.run, a=record.analysis)
    logger.info("Constructed path: {path}", path=file_path)
    logger.info("Full destination: {dest}", dest=full_dest)

    result = execute_directive(record.source, full_dest, directive, settings)
    logger.info("Completed processing {label} {n}", label=label, n=number)
    return "processed" if result.ok else "failed"


def _process_index(path: Path, fmt: InputFormat, index: int, settings: Settings) -> str:
    record = read_task(path, index, fmt)
    if record is None:
        logger.info("No data for {label} {n}, nothing to do", label=fmt.label, n=index)
        return "missing"
    return process_task(record, index, fmt.label, settings)


def _parse_index(value: str, what: str) -> int:
    try:
        index = int(value.strip())
    except ValueError:
        raise UsageError(f"Invalid {what} '{value}': expected a positive integer") from None
    if index < 1:
        raise UsageError(f"Invalid {what} '{value}': expected a positive integer")
    return index


def run_tasks(
    input_path: Path,
    settings: Settings,
    *,
    index: str = "1",
    run_all: bool = False,
    cluster_index: Optional[str] = None,
    show_progress: bool = False,
) -> RunSummary:
    """
    Dispatch one invocation.

    A cluster array index wins over the explicit arguments; an array index
    past the end of the file is a clean no-op.
    """
    fmt = detect_format(input_path)
    total = count_tasks(input_path, fmt)
    summary = RunSummary()

    if cluster_index is not None:
        task_id = _parse_index(cluster_index, f"array index ({settings.array_index_variable})")
        if task_id > total:
            logger.info("Array task {n}: No corresponding {label} in file (total: {t}), exiting gracefully",
                        n=task_id, label=fmt.label, t=total)
            return summary
        logger.info("Array task {n}: Processing {label} {n} of {t}", n=task_id, label=fmt.label, t=total)
        summary.record(_process_index(input_path, fmt, task_id, settings))
        return summary

    if total == 0:
        raise UsageError(f"No valid entries found in {input_path}")

    if run_all:
        logger.info("Standalone mode: Processing all {t} entries", t=total)
        bar = tqdm(total=total, desc="Tasks", unit=" task", dynamic_ncols=True,
                   disable=not show_progress, file=sys.stderr)
        try:
            for i in range(1, total + 1):
                logger.info("=== Processing entry {i} of {t} ===", i=i, t=total)
                summary.record(_process_index(input_path, fmt, i, settings))
                bar.update(1)
        finally:
            bar.close()
        logger.info("All entries processed: processed={p}, skipped={s}, rejected={r}, failed={f}",
                    p=summary.processed, s=summary.skipped, r=summary.rejected, f=summary.failed)
        return summary

    index = index.strip()
    if not index.isdigit() or not 1 <= int(index) <= total:
        raise UsageError(f"Invalid line number '{index}'. Must be between 1 and {total}")
    line_number = int(index)
    logger.info("Standalone mode: Processing entry {n} of {t}", n=line_number, t=total)
    summary.record(_process_index(input_path, fmt, line_number, settings))
    return summary


# --------------------------------- Helpers ---------------------------------- #

def check_file(path: Path, *, check_sources: bool = True) -> int:
    """Validate every record of a task file; return the number of rejects."""
    fmt = detect_format(path)
    logger.info("Validating {p} ({fmt} format)...", p=path, fmt=fmt.value)

    checked = 0
    errors = 0
    for number, record in iter_tasks(path, fmt):
        if fmt is InputFormat.CSV and (record.is_comment or record.is_blank):
            continue
        checked += 1
        outcome = validate_task(record)
        report_outcome(outcome, number, fmt.label)
        if outcome.verdict is Verdict.REJECT:
            errors += 1

        if (check_sources and record.source
                and record.operation in (Operation.COPY, Operation.MOVE, Operation.DRYRUN)
                and not Path(record.source).exists()):
            logger.warning("{label} {n}: Source path does not exist: {src}",
                           label=fmt.label, n=number, src=record.source)

    if errors:
        logger.error("{fmt} file validation failed: {e} error(s) in {c} entries", fmt=fmt.value, e=errors, c=checked)
    else:
        logger.info("{fmt} file validation completed: {c} entries checked", fmt=fmt.value, c=checked)
    return errors


def preview_structure(path: Path) -> List[str]:
    fmt = detect_format(path)
    lines = []
    for _number, record in iter_tasks(path, fmt):
        if record.is_comment or record.is_blank:
            continue
        lines.append(f"  {build_path(record)}/{record.destination}/ ({record.operation})")
    return lines


def template_tasks(project: str, owner: str) -> List[Dict[str, str]]:
    rows = [
        (project, "exp_001", "run_001", "", "/source/path", "preprocessed", "copy"),
        (project, "exp_001", "run_002", "", "/source/path", "qc_results", "dryrun"),
        (project, "", "", "analysis", "/processed/path", "final_results", "move"),
    ]
    return [dict(zip(INPUT_FIELDS, row + (owner,))) for row in rows]


def write_template(project: str, output: Path, *, owner: Optional[str] = None, force: bool = False) -> Path:
    if output.exists() and not force:
        raise UsageError(f"Refusing to overwrite existing file: {output} (use --force)")
    owner = owner if owner is not None else getpass.getuser()
    tasks = template_tasks(project, owner)

    if output.suffix.lower() == ".json":
        output.write_text(json.dumps({TASKS_KEY: tasks}, indent=2) + "\n", encoding="utf-8")
    else:
        # '#project,...' is counted as a task line, so line numbers and task
        # indices stay the same.
        lines = ["#" + ",".join(INPUT_FIELDS)]
        lines += [",".join(task[key] for key in INPUT_FIELDS) for task in tasks]
        output.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return output


INTERACTIVE_CHOICES = (
    ("1", Operation.DRYRUN, "Preview changes"),
    ("2", Operation.COPY, "Copy files"),
    ("3", Operation.MOVE, "Move files"),
    ("4", Operation.ARCHIVE, "Create archive"),
    ("5", Operation.PERMIT, "Set permissions"),
    ("6", Operation.SKIP, "Skip (for testing)"),
)


def interactive_session(settings: Settings, *, prompt: Callable[[str], str] = input) -> str:
    print("=== Project Sync Interactive Mode ===")
    project = prompt("Project name: ").strip()
    source = prompt("Source directory: ").strip()
    destination = prompt("Destination name: ").strip()

    print("Select operation:")
    for key, op, text in INTERACTIVE_CHOICES:
        print(f"{key}) {op.value} - {text}")
    choice = prompt("Choice (1-6): ").strip()
    operations = {key: op for key, op, _ in INTERACTIVE_CHOICES}
    if choice not in operations:
        raise UsageError(f"Invalid choice '{choice}'")

    record = TaskRecord(project=project, source=source, destination=destination,
                        operation=operations[choice].value)
    print(f"Running: {record.operation} operation")
    print(f"Source: {record.source}")
    print(f"Destination: {record.project}/{record.destination}")
    return process_task(record, 1, "task", settings)


# ---------------------------------- CLI / INI -------------------------------- #

def load_settings(ini_path: Optional[Path], *, required: bool = False) -> Settings:
    """Read [Settings] from an INI file; every key is optional."""
    cfg = configparser.ConfigParser(interpolation=None)
    if ini_path is not None:
        read_ok = cfg.read(ini_path, encoding="utf-8")
        if not read_ok and required:
            raise ConfigError(f"Failed to read config file: {ini_path}")
        if read_ok and "Settings" not in cfg:
            raise ConfigError(f"Missing [Settings] section in config: {ini_path}")
    if "Settings" not in cfg:
        cfg.add_section("Settings")
    section = cfg["Settings"]

    defaults = Settings(destination_root=Path.cwd())
    root = section.get("destination_root", "").strip()
    log_file = section.get("log_file", "").strip()
    log_level = section.get("log_level", defaults.log_level).strip().upper() or defaults.log_level
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"Unknown log_level '{log_level}' in [Settings] (expected one of {', '.join(LOG_LEVELS)})")
    return Settings(
        destination_root=safe_resolve(Path(root)) if root else defaults.destination_root,
        rsync_binary=section.get("rsync_binary", defaults.rsync_binary).strip() or defaults.rsync_binary,
        rsync_options=section.get("rsync_options", defaults.rsync_options).strip(),
        archive_timestamp_format=(section.get("archive_timestamp_format", "", raw=True).strip()
                                  or defaults.archive_timestamp_format),
        array_index_variable=(section.get("array_index_variable", "").strip()
                              or defaults.array_index_variable),
        log_file=safe_resolve(Path(log_file)) if log_file else None,
        log_level=log_level,
    )


COMMANDS = {"run", "new", "check", "validate", "preview", "show", "interactive", "i"}


class PsyncArgumentParser(argparse.ArgumentParser):
    """Reports bad command lines as UsageError so main() exits with status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        raise UsageError(f"{self.prog}: {message}")


def build_arg_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", type=Path, default=None,
                        help=f"Path to an INI file (default: {DEFAULT_CONFIG_PATH} if present)")
    common.add_argument("--log-file", type=Path, default=None, help="Also log to this file (rotating)")
    common.add_argument("--log-level", default=None, type=str.upper, choices=LOG_LEVELS,
                        help="Log level (default: INFO)")
    common.add_argument("--silent", action="store_true", help="No console output or progress bars.")

    p = PsyncArgumentParser(
        prog=PROG,
        description="Project Sync: run CSV/JSON sync tasks (rsync, tar, chmod) into a project hierarchy",
        epilog=f"Shorthand: '{PROG} FILE [INDEX|--all]' is '{PROG} run FILE [INDEX|--all]'.",
    )
    p.add_argument("--version", action="version", version=f"{PROG} v{__version__}")
    sub = p.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    run = sub.add_parser("run", parents=[common], help="Process one task, all tasks, or the array task")
    run.add_argument("input", type=Path, help="Task file (CSV or JSON)")
    run.add_argument("index", nargs="?", default="1", help="1-based task/line number (default: 1)")
    run.add_argument("-a", "--all", dest="run_all", action="store_true", help="Process every task in order")
    run.add_argument("--root", type=Path, default=None,
                     help="Destination root directory (default: current directory)")
    run.add_argument("--no-progress-bar", action="store_true", help="Disable the tqdm bar in --all mode.")

    new = sub.add_parser("new", parents=[common], help="Create a CSV or JSON task template")
    new.add_argument("project", nargs="?", default="new_project", help="Project name (default: new_project)")
    new.add_argument("output", nargs="?", type=Path, default=None,
                     help="Output file; a .json name writes JSON (default: <project>.csv)")
    new.add_argument("--force", action="store_true", help="Overwrite an existing file")

    check = sub.add_parser("check", aliases=["validate"], parents=[common], help="Validate every task in a file")
    check.add_argument("input", type=Path, help="Task file (CSV or JSON)")
    check.add_argument("--skip-source-check", action="store_true",
                       help="Do not warn about missing source paths")

    preview = sub.add_parser("preview", aliases=["show"], parents=[common],
                             help="Show the directory structure a file would create")
    preview.add_argument("input", type=Path, help="Task file (CSV or JSON)")

    interactive = sub.add_parser("interactive", aliases=["i"], parents=[common],
                                 help="Build and run a single task from prompts")
    interactive.add_argument("--root", type=Path, default=None,
                             help="Destination root directory (default: current directory)")
    return p


def _normalize_argv(argv: List[str]) -> List[str]:
    if argv and argv[0] not in COMMANDS and argv[0] not in ("-h", "--help", "--version"):
        return ["run", *argv]
    return argv


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = _normalize_argv(list(sys.argv[1:] if argv is None else argv))
    configure_logging(None, "INFO", console_enabled=True)
    try:
        args = build_arg_parser().parse_args(argv)
    except UsageError as e:
        logger.error("{msg}", msg=e)
        return 1

    configure_logging(None, args.log_level or "INFO", console_enabled=not args.silent)
    try:
        if args.config is not None:
            settings = load_settings(safe_resolve(args.config), required=True)
        else:
            settings = load_settings(safe_resolve(DEFAULT_CONFIG_PATH))

        overrides = {}
        if getattr(args, "root", None) is not None:
            overrides["destination_root"] = safe_resolve(args.root)
        if args.log_file is not None:
            overrides["log_file"] = safe_resolve(args.log_file)
        if args.log_level is not None:
            overrides["log_level"] = args.log_level
        if overrides:
            settings = replace(settings, **overrides)
        configure_logging(settings.log_file, settings.log_level, console_enabled=not args.silent)

        return _dispatch(args, settings)
    except ProjectSyncError as e:
        logger.error("{msg}", msg=e)
        return 1


def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "run":
        if not args.input.is_file():
            raise UsageError(f"Task file not found: {args.input}")
        cluster_index = os.environ.get(settings.array_index_variable) or None
        show_progress = (args.run_all and not args.silent and not args.no_progress_bar
                         and cluster_index is None and is_tty())
        run_tasks(
            args.input, settings,
            index=args.index,
            run_all=args.run_all,
            cluster_index=cluster_index,
            show_progress=show_progress,
        )
        return 0

    if args.command == "new":
        output = args.output or Path(f"{args.project}.csv")
        write_template(args.project, output, force=args.force)
        print(f"Created {'JSON' if output.suffix.lower() == '.json' else 'CSV'} template: {output}")
        print(f"Edit the file and run: {PROG} {output}")
        return 0

    if args.command in ("check", "validate"):
        if not args.input.is_file():
            raise UsageError(f"File not found: {args.input}")
        errors = check_file(args.input, check_sources=not args.skip_source_check)
        return 1 if errors else 0

    if args.command in ("preview", "show"):
        if not args.input.is_file():
            raise UsageError(f"File not found: {args.input}")
        fmt = detect_format(args.input)
        print(f"Project structure preview for: {args.input} ({fmt.value})")
        print("=====================================")
        for line in preview_structure(args.input):
            print(line)
        return 0

    interactive_session(settings)
    return 0


if __name__ == "__main__":
    sys.exit(main())
