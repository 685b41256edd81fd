#
# rotate-backups
#
# A small cross-platform CLI tool to rotate dated backup files (monthly, monday and daily retention tiers).
#
# Copyright (c) 2025-2026 Thomas Kuhlmann
#
# Licensed under the MIT License. See LICENSE file in the project root for license information.
#

import argparse
import calendar
import os
import re
import sys
import traceback
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum, IntEnum
from pathlib import Path
from types import SimpleNamespace
from typing import NoReturn, Optional, TextIO, no_type_check


VERSION: str = "dev-1.0.0"

SCRIPT_START: datetime = datetime.now()

DEFAULT_DIR: str = "/backup"
DEFAULT_GLOB: str = "*.sql.gz"

MONTHLY_WINDOW_MONTHS: int = 12
WEEKLY_ANCHOR_WINDOW_DAYS: int = 28
DAILY_WINDOW_DAYS: int = 6

# Leftmost 8 digits directly followed by a dot, e.g. 'db-20251029.sql.gz'
DATE_TOKEN_PATTERN: "re.Pattern[str]" = re.compile(r"([0-9]{8})\.")


class IntegrityCheckFailedError(Exception):
    pass


class FileCouldNotBeDeletedError(Exception):
    pass


class DateExtractionError(Exception):
    reason: str = "no date"


class NoDateTokenError(DateExtractionError):
    reason = "no date"


class InvalidDateError(DateExtractionError):
    reason = "invalid date"


class ConfigNamespace(SimpleNamespace):
    pass


class RetentionTier(Enum):
    MONTHLY = ("monthly", f"{MONTHLY_WINDOW_MONTHS}mo")
    WEEKLY_ANCHOR = ("monday", f"{WEEKLY_ANCHOR_WINDOW_DAYS}d")
    DAILY = ("daily", f"{DAILY_WINDOW_DAYS}d")

    def __init__(self, tag: str, window: str) -> None:
        self.tag = tag
        self.window = window

    def reason(self, delete: bool) -> str:
        return f"{self.tag}{'>' if delete else '<='}{self.window}"


class Decision(Enum):
    KEEP = "keep"
    DELETE = "delete"
    SKIP = "skip"


def subtract_months(moment: datetime, months: int) -> datetime:
    """Go back a number of calendar months, clamping the day to the length of the target month."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    day = min(moment.day, calendar.monthrange(year, month + 1)[1])
    return moment.replace(year=year, month=month + 1, day=day)


def extract_date(name: str) -> date:
    re_match = DATE_TOKEN_PATTERN.search(name)
    if not re_match:
        raise NoDateTokenError(f"No date token (YYYYMMDD.) in file name: {name}")
    token = re_match.group(1)
    try:
        return date(int(token[0:4]), int(token[4:6]), int(token[6:8]))
    except ValueError as e:
        raise InvalidDateError(f"Invalid date '{token}' in file name {name}: {e}") from e


@dataclass(frozen=True)
class CandidateFile:
    path: Path
    file_date: date

    @classmethod
    def from_path(cls, path: Path) -> "CandidateFile":
        return cls(path, extract_date(path.name))

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def weekday(self) -> int:
        return self.file_date.isoweekday()  # 1 = Monday ... 7 = Sunday

    @property
    def is_first_of_month(self) -> bool:
        return self.file_date.day == 1

    @property
    def is_monday(self) -> bool:
        return self.weekday == 1

    @property
    def iso_date(self) -> str:
        return self.file_date.isoformat()

    @property
    def instant(self) -> datetime:
        return datetime.combine(self.file_date, time.min)


@dataclass(frozen=True)
class Cutoffs:
    now: datetime
    monthly: datetime
    weekly_anchor: datetime
    daily: datetime

    @classmethod
    def from_now(cls, now: datetime) -> "Cutoffs":
        return cls(
            now=now,
            monthly=subtract_months(now, MONTHLY_WINDOW_MONTHS),
            weekly_anchor=now - timedelta(days=WEEKLY_ANCHOR_WINDOW_DAYS),
            daily=now - timedelta(days=DAILY_WINDOW_DAYS),
        )

    def for_tier(self, tier: RetentionTier) -> datetime:
        if tier is RetentionTier.MONTHLY:
            return self.monthly
        if tier is RetentionTier.WEEKLY_ANCHOR:
            return self.weekly_anchor
        return self.daily


@dataclass(frozen=True)
class Classification:
    tier: RetentionTier
    decision: Decision
    reason: str


def assign_tier(candidate: CandidateFile) -> RetentionTier:
    if candidate.is_first_of_month:  # wins over monday
        return RetentionTier.MONTHLY
    if candidate.is_monday:
        return RetentionTier.WEEKLY_ANCHOR
    return RetentionTier.DAILY


def classify(candidate: CandidateFile, cutoffs: Cutoffs) -> Classification:
    tier = assign_tier(candidate)
    delete = candidate.instant < cutoffs.for_tier(tier)  # strictly before, a file at the cutoff is kept
    return Classification(tier, Decision.DELETE if delete else Decision.KEEP, tier.reason(delete))


class LogLevel(IntEnum):
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3

    @classmethod
    def from_name_or_number(cls, prefix: str) -> "LogLevel":
        try:
            return next(m for m in cls if prefix and m.name.startswith(prefix.strip().upper()))
        except StopIteration:
            try:
                return cls(int(prefix))
            except ValueError:
                raise ValueError("Invalid log level: " + prefix)


class Logger:
    _args: ConfigNamespace

    def __init__(self, args: ConfigNamespace) -> None:
        self._args = args

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= int(self._args.verbose)

    def _raw_verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        print(f"[{prefix or LogLevel(level).name}] {message}", file=file or sys.stderr)

    def verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, file, prefix)

    def report(self, message: str = "") -> None:
        if self.has_log_level(LogLevel.INFO):
            print(message)

    def report_policy(self, cutoffs: Cutoffs) -> None:
        self.report("Rotation policy:")
        self.report(f"  Monthly (1st): keep since {cutoffs.monthly.date().isoformat()}")
        self.report(f"  Mondays:       keep since {cutoffs.weekly_anchor.date().isoformat()}")
        self.report(f"  Others:        keep since {cutoffs.daily.date().isoformat()}")
        self.report()
        self.verbose(LogLevel.DEBUG, f"Cutoffs (now: {cutoffs.now}): monthly {cutoffs.monthly}, monday {cutoffs.weekly_anchor}, daily {cutoffs.daily}")

    def report_decision(self, candidate: CandidateFile, classification: Classification) -> None:
        self.report(f"{classification.decision.value:<7} {candidate.name}  ({candidate.iso_date}; {classification.reason})")
        self.verbose(LogLevel.DEBUG, f"{candidate.name}: tier {classification.tier.name}, weekday {candidate.weekday}, first of month: {candidate.is_first_of_month}")

    def report_skip(self, file: Path, reason: str) -> None:
        self.verbose(LogLevel.WARN, f"{reason}: {file.name}", prefix="SKIP")

    def report_summary(self, result: "RotationResult") -> None:
        self.report()
        self.report("Summary:")
        self.report(f"  Keep   : {len(result.keep)} file(s)")
        self.report(f"  Delete : {len(result.delete)} file(s)")
        if result.skip:
            self.report(f"  Skip   : {len(result.skip)} file(s)")
        self.report()


class ModernHelpFormatter(argparse.HelpFormatter):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, max_help_position=30, width=120, **kw)

    @no_type_check
    def start_section(self, heading) -> None:  # noqa: ANN001
        super().start_section(heading.capitalize())


class ModernStrictArgumentParser(argparse.ArgumentParser):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, **kw)
        self._errors: list[str] = []

    def add_error(self, msg: str) -> None:
        if msg not in self._errors:
            self._errors.append(msg)

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        print("\nError(s):", file=sys.stderr)
        for line in message.split("\n"):
            print(f"  • {line}", file=sys.stderr)
        print("\nHint: Try '--help' for more information.", file=sys.stderr)
        sys.exit(2)

    # Argument type helpers
    def verbose_argument(self, value: str) -> LogLevel:
        try:
            return LogLevel.from_name_or_number(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid verbose value '{value}' (use ERROR, WARN, INFO, DEBUG or 0, 1, 2, 3)")

    # Internal helper methods
    def _suggest(self, argument: str) -> list[str]:
        opts = [o for a in self._actions for o in a.option_strings if o.startswith("--")]
        cand = [o for o in opts if abs(len(o) - len(argument)) <= 2 and sum(a != b for a, b in zip(o, argument)) <= 2]
        return cand[:1]

    @no_type_check
    def _collect_raw_args(self, args):  # noqa: ANN202, ANN001
        if args is not None:
            return list(args)
        return sys.argv[1:]  # default argparse behavior

    @no_type_check
    def _detect_duplicate_flags(self, raw_args) -> None:  # noqa: ANN001
        # Normalize option strings
        alias = {opt: action.option_strings[0] for action in self._actions for opt in action.option_strings}
        seen = set()

        for tok in raw_args:
            if not tok.startswith("-") or tok == "-":
                continue

            # Extract option (handles -g*.gz, -g=*.gz, --dir=/backup)
            opt = tok.split("=", 1)[0]

            # Attached short option value, -d/backup → -d
            if len(opt) > 2 and opt.startswith("-") and not opt.startswith("--"):
                opt = opt[:2]

            if opt not in alias:
                continue  # unknown options are reported separately

            key = alias[opt]
            if key in seen:
                self.add_error(f"Duplicate flag: {key}")
            seen.add(key)

    @no_type_check
    def _validate_arguments(self, ns) -> None:  # noqa: ANN001
        # Default verbosity, if none given
        if ns.verbose is None:
            ns.verbose = LogLevel.INFO

        if ns.dir is not None and not ns.dir.strip():
            self.add_error("--dir must not be empty")

        if ns.glob is not None:
            if not ns.glob.strip():
                self.add_error("--glob must not be empty")
            elif "/" in ns.glob or os.sep in ns.glob:
                self.add_error(f"--glob must not contain a path separator (recursion is not supported): {ns.glob}")

    # Main hook
    @no_type_check
    def parse_known_args(self, args=None, namespace=None) -> tuple[argparse.Namespace, list[str]]:  # noqa: ANN001
        self._errors = []
        raw_args = self._collect_raw_args(args)
        self._detect_duplicate_flags(raw_args)

        ns, unknown = super().parse_known_args(raw_args, namespace or argparse.Namespace())

        if unknown:
            kind = "Unknown option" if unknown[0].startswith("-") else "Unexpected argument"
            sug = self._suggest(unknown[0]) if unknown[0].startswith("--") else []
            if sug:
                self.add_error(f"{kind}: {unknown[0]} (did you mean {sug[0]}?)")
            else:
                self.add_error(f"{kind}: {unknown[0]}")

        self._validate_arguments(ns)

        if self._errors:
            msg = "\n".join(f"{e}" for e in self._errors)
            self.error(msg)

        return ns, unknown


def create_parser() -> ModernStrictArgumentParser:
    parser: ModernStrictArgumentParser = ModernStrictArgumentParser(
        prog="rotate-backups",
        description=(
            f"rotate-backups {VERSION}\n\nRotate dated backup files: "
            f"1st of month kept {MONTHLY_WINDOW_MONTHS} months, Mondays {WEEKLY_ANCHOR_WINDOW_DAYS} days, others {DAILY_WINDOW_DAYS} days"
        ),
        usage="rotate-backups [--delete] [--dir DIR] [--glob PATTERN] [options]\n\nExample:\n  rotate-backups --dir /backup --glob '*.sql.gz' --delete",
        epilog=(
            "Files must contain a date YYYYMMDD followed by a '.', e.g. prefix-20251029.sql.gz. "
            "This is a dry run unless --delete is given."
        ),
        formatter_class=ModernHelpFormatter,
        add_help=False,
        allow_abbrev=False,
    )

    g_main = parser.add_argument_group("Main arguments")
    g_behavior = parser.add_argument_group("Behavior arguments")
    g_common = parser.add_argument_group("Common arguments")

    g_main.add_argument("--dir", "-d", type=str, metavar="DIR", default=DEFAULT_DIR, help=f"Directory to scan, recursion is not supported (default: {DEFAULT_DIR})")
    g_main.add_argument("--glob", "-g", type=str, metavar="PATTERN", default=DEFAULT_GLOB, help=f"Glob pattern to match backups, quote it to prevent shell expansion (default: {DEFAULT_GLOB})")

    g_behavior.add_argument("--delete", action="store_true", help="Actually delete files (default: dry run, nothing is changed)")
    g_behavior.add_argument("--fail-on-delete-error", action="store_true", help="Abort on the first file that could not be deleted (default: warn and continue)")
    # fmt: off
    g_behavior.add_argument("--verbose", "-V", type=parser.verbose_argument, default=None, nargs="?", const=LogLevel.DEBUG, metavar="lev",
        help="Verbosity level: 0 = error, 1 = warn, 2 = info, 3 = debug (default: 'info'; 'debug', if specified without value; use numbers or names)")
    # fmt: on

    g_common.add_argument("--version", "-R", action="version", version=f"%(prog)s {VERSION}")
    g_common.add_argument("--help", "-h", action="help", help="Show this help message and exit")
    g_common.add_argument("--stacktrace", action="store_true", help=argparse.SUPPRESS)

    return parser


def parse_arguments() -> ConfigNamespace:
    parser = create_parser()
    args = parser.parse_args()
    return ConfigNamespace(**vars(args))


def read_filelist(args: ConfigNamespace, logger: Logger) -> list[Path]:
    base: Path = Path(args.dir)
    if not base.exists():
        raise FileNotFoundError(f"Directory not found: {base}")
    if not base.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {base}")
    if not os.access(base, os.R_OK | os.X_OK):
        raise PermissionError(f"Directory is not accessible: {base}")

    matches: list[Path] = [file for file in base.glob(args.glob) if file.is_file()]

    # Hidden files only match a pattern starting with a dot, like a shell glob without dotglob
    if not args.glob.startswith("."):
        matches = [file for file in matches if not file.name.startswith(".")]

    # Check, if child of base directory
    for file in matches:
        if not file.parent.resolve() == base.resolve():
            raise ValueError(f"File '{file}' is not a child of directory '{base}' (recursion is not supported)")

    logger.verbose(LogLevel.DEBUG, f"Found {len(matches)} files using glob pattern '{args.glob}'")

    # byte order of the names, like a shell glob expansion with LC_ALL=C
    return sorted(matches, key=lambda file: os.fsencode(file.name))


@dataclass
class RotationResult:
    keep: list[Path] = field(default_factory=list)
    delete: list[Path] = field(default_factory=list)
    skip: list[Path] = field(default_factory=list)

    def add(self, file: Path, decision: Decision) -> None:
        if decision is Decision.DELETE:
            self.delete.append(file)
        elif decision is Decision.SKIP:
            self.skip.append(file)
        else:
            self.keep.append(file)


class RotationLogic:
    _matches: list[Path]
    _cutoffs: Cutoffs
    _logger: Logger

    def __init__(self, matches: list[Path], cutoffs: Cutoffs, logger: Logger) -> None:
        self._matches = matches
        self._cutoffs = cutoffs
        self._logger = logger

    def _process_file(self, file: Path, result: RotationResult) -> None:
        try:
            candidate = CandidateFile.from_path(file)
        except DateExtractionError as e:
            self._logger.report_skip(file, e.reason)
            result.add(file, Decision.SKIP)
            return

        classification = classify(candidate, self._cutoffs)
        self._logger.report_decision(candidate, classification)
        result.add(file, classification.decision)

    def process_rotation_logic(self) -> RotationResult:
        # Every file is classified and reported before the next one, in enumeration order
        result = RotationResult()
        for file in self._matches:
            self._process_file(file, result)

        # Simple integrity checks
        if not len(self._matches) == len(result.keep) + len(result.delete) + len(result.skip):
            raise IntegrityCheckFailedError(
                f"File count mismatch: some files are neither kept, deleted nor skipped (all: {len(self._matches)}, keep: {len(result.keep)}, delete: {len(result.delete)}, skip: {len(result.skip)})!!"
            )
        if set(result.delete) & (set(result.keep) | set(result.skip)):
            raise IntegrityCheckFailedError("File to delete is also kept or skipped!!")

        return result


def run_deletion(file: Path, args: ConfigNamespace, logger: Logger) -> bool:
    if not file.parent.resolve() == Path(args.dir).resolve():
        raise IntegrityCheckFailedError(f"File '{file}' is not a child of directory '{args.dir}', it must not be deleted")

    if not args.delete:
        logger.verbose(LogLevel.DEBUG, f"DRY-RUN DELETE: {file.name}")  # Just simulate deletion
        return False

    logger.verbose(LogLevel.DEBUG, f"DELETING: {file.name}")
    try:
        file.unlink()
    except FileNotFoundError:  # Removed in the meantime, nothing left to do
        logger.verbose(LogLevel.DEBUG, f"Already deleted: {file.name}")
        return False
    except OSError as e:
        if args.fail_on_delete_error:
            raise FileCouldNotBeDeletedError(f"Error while deleting file '{file.name}': {e}") from e
        logger.verbose(LogLevel.WARN, f"Error while deleting file '{file.name}': {e}")
        return False
    return True


def handle_exception(exception: Exception, exit_code: int, stacktrace: bool, prefix: str = "") -> None:
    if stacktrace:
        traceback.print_exc()
    print(f"[{prefix or LogLevel.ERROR.name}] {exception}", file=sys.stderr)
    sys.exit(exit_code)


def main() -> None:
    args: Optional[ConfigNamespace] = None

    try:
        args = parse_arguments()

        logger = Logger(args)

        logger.verbose(LogLevel.DEBUG, f"Parsed arguments: {args}")

        cutoffs = Cutoffs.from_now(SCRIPT_START)  # one snapshot of 'now' for the whole run

        matches = read_filelist(args, logger)
        logger.verbose(LogLevel.DEBUG, "Files found: " + ", ".join(f'"{p.name}"' for p in matches))

        logger.report_policy(cutoffs)

        if not matches:
            logger.report(f"No files matched '{os.path.join(args.dir, args.glob)}'.")
            return

        result = RotationLogic(matches, cutoffs, logger).process_rotation_logic()

        logger.report_summary(result)

        deleted = sum(1 for file in result.delete if run_deletion(file, args, logger))

        if args.delete:
            logger.report(f"Deleted {deleted} file(s).")
        else:
            logger.report("Dry-run complete. Use --delete to actually remove files.")

    except OSError as e:
        handle_exception(e, 1, args.stacktrace if args is not None else True)
    except ValueError as e:
        handle_exception(e, 2, args.stacktrace if args is not None else True)
    except FileCouldNotBeDeletedError as e:
        handle_exception(e, 6, args.stacktrace if args is not None else True)
    except IntegrityCheckFailedError as e:
        handle_exception(e, 7, args.stacktrace if args is not None else True)
    except Exception as e:
        handle_exception(e, 9, args.stacktrace if args is not None else True, prefix="UNEXPECTED ERROR")


if __name__ == "__main__":
    main()
