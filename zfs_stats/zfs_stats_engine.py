#!/usr/bin/env python3
"""ZFS statistics engine.

Shared core for the HTTP service and the command line:
- Size codec for ZFS human-readable sizes ("12.3G", "0B", "-")
- Dataset classification into filesystems / snapshots / bookmarks
- Pool-root usage totals (nested filesystems are not double counted)
- Collector that runs `zfs list -t all -j` and validates its JSON
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import math
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Sequence

from pydantic import ValidationError

try:
    from zfs_stats.zfs_stats_models import Dataset, ZfsListOutput, ZfsStats, to_wire
except ModuleNotFoundError:
    from zfs_stats_models import Dataset, ZfsListOutput, ZfsStats, to_wire


# ------------------------------- Constants ---------------------------------- #

APP_NAME = "zfs_stats"
DEFAULT_LOG_FILE = Path.home() / ".local" / "share" / APP_NAME / "zfs_stats.log"
DEFAULT_ZFS_BIN = os.getenv("ZFS_STATS_ZFS_BIN", "zfs")
ZFS_LIST_ARGS = ["list", "-t", "all", "-j"]

DATASET_FILESYSTEM = "FILESYSTEM"
DATASET_SNAPSHOT = "SNAPSHOT"
DATASET_BOOKMARK = "BOOKMARK"
KNOWN_DATASET_TYPES = {DATASET_FILESYSTEM, DATASET_SNAPSHOT, DATASET_BOOKMARK}

SIZE_UNITS = ["B", "K", "M", "G", "T", "P", "E"]
SIZE_MULTIPLIERS = {
    "": 1,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
    "P": 1024**5,
    "E": 1024**6,
}
U64_MAX = 2**64 - 1

_FLOAT_LITERAL = re.compile(
    r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf|infinity|nan)",
    re.IGNORECASE,
)


# ------------------------------- Errors ------------------------------------- #


class ParseError(ValueError):
    """A size string could not be decoded."""

    def __init__(self, message: str, text: str):
        super().__init__(message)
        self.text = text


class InvalidNumber(ParseError):
    def __init__(self, text: str):
        super().__init__(f"Invalid number in size string: {text!r}", text)


class UnknownSuffix(ParseError):
    def __init__(self, text: str, suffix: str):
        super().__init__(f"Unknown size suffix {suffix!r} in size string: {text!r}", text)
        self.suffix = suffix


class ZfsStatsError(Exception):
    """Collecting or decoding the zfs listing failed."""

    code = "ZFS_ERROR"


class ZfsCommandError(ZfsStatsError):
    code = "ZFS_COMMAND_FAILED"

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ZfsOutputError(ZfsStatsError):
    code = "ZFS_OUTPUT_INVALID"


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def env_timeout(name: str = "ZFS_STATS_COMMAND_TIMEOUT") -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return float(raw)


def setup_logger(log_file: Path, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file
    try:
        ensure_parent(log_file)
    except OSError:
        chosen = Path("/tmp") / APP_NAME / "zfs_stats.log"
        ensure_parent(chosen)

    logger.setLevel(level)
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


def parse_log_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


# ------------------------------- Size Codec --------------------------------- #


def _parse_float(text: str) -> float | None:
    if not _FLOAT_LITERAL.fullmatch(text):
        return None
    return float(text)


def _saturating_u64(value: float) -> int:
    if math.isnan(value) or value <= 0:
        return 0
    if value >= 2**64:
        return U64_MAX
    return int(value)


def parse_size(text: str) -> int:
    """Decode a ZFS size string ("1.5G", "512B", "-") into a byte count.

    Suffixes are binary (K = 1024). "-" and "" decode to 0. Raises
    InvalidNumber when the magnitude is not a float literal and
    UnknownSuffix when the trailing letter is not one of K/M/G/T/P/E.
    """
    if text == "-" or text == "":
        return 0

    text = text.strip()
    if text.endswith("B"):
        if text == "0B":
            return 0
        number = _parse_float(text[:-1])
        if number is not None:
            return _saturating_u64(number)

    if not text:
        raise InvalidNumber(text)

    suffix = text[-1]
    if suffix.isalpha():
        number_part = text[:-1]
    else:
        number_part, suffix = text, ""

    number = _parse_float(number_part)
    if number is None:
        raise InvalidNumber(text)

    multiplier = SIZE_MULTIPLIERS.get(suffix)
    if multiplier is None:
        raise UnknownSuffix(text, suffix)

    return _saturating_u64(number * multiplier)


def format_bytes(size: int) -> str:
    """Render a byte count the way `zfs list` does: "512B", "1.00K", "10.0K", "150M"."""
    size = max(int(size), 0)
    if size == 0:
        return "0B"

    unit_index = min(int(math.floor(math.log2(size) / 10)), len(SIZE_UNITS) - 1)
    if unit_index == 0:
        return f"{size}B"

    value = size / 1024**unit_index
    unit = SIZE_UNITS[unit_index]
    if value >= 100:
        return f"{value:.0f}{unit}"
    if value >= 10:
        return f"{value:.1f}{unit}"
    return f"{value:.2f}{unit}"


def _size_or_zero(text: str) -> int:
    try:
        return parse_size(text)
    except ParseError:
        return 0


# ------------------------------- Aggregation -------------------------------- #


def is_top_level(name: str) -> bool:
    # "pool" or "pool/fs"; anything deeper is already counted in its parent's "used".
    return name.count("/") <= 1


def _by_name(dataset: Dataset) -> str:
    return dataset.name


def aggregate(listing: ZfsListOutput) -> ZfsStats:
    """Group a `zfs list -j` result into pools, categories and usage totals.

    Never raises on well-formed input: sizes that fail to decode are left out
    of the totals while their datasets still appear in the listing. Datasets of
    unrecognized type are dropped from every category.
    """
    pools: list[str] = []
    seen_pools: set[str] = set()
    filesystems: list[Dataset] = []
    snapshots: list[Dataset] = []
    bookmarks: list[Dataset] = []
    total_used = 0
    total_available = 0

    for dataset in listing.datasets.values():
        if dataset.pool not in seen_pools:
            seen_pools.add(dataset.pool)
            pools.append(dataset.pool)

        kind = dataset.dataset_type
        if kind == DATASET_FILESYSTEM:
            if is_top_level(dataset.name):
                total_used += _size_or_zero(dataset.properties.used.value)
                total_available += _size_or_zero(dataset.properties.available.value)
            filesystems.append(dataset)
        elif kind == DATASET_SNAPSHOT:
            snapshots.append(dataset)
        elif kind == DATASET_BOOKMARK:
            bookmarks.append(dataset)

    pools.sort()
    filesystems.sort(key=_by_name)
    snapshots.sort(key=_by_name)
    bookmarks.sort(key=_by_name)

    return ZfsStats(
        pools=pools,
        filesystems=filesystems,
        snapshots=snapshots,
        bookmarks=bookmarks,
        total_used=format_bytes(total_used),
        total_available=format_bytes(total_available),
    )


def unrecognized_datasets(listing: ZfsListOutput) -> list[Dataset]:
    dropped = [d for d in listing.datasets.values() if d.dataset_type not in KNOWN_DATASET_TYPES]
    return sorted(dropped, key=_by_name)


def filesystems_by_pool(stats: ZfsStats, pool: str) -> list[Dataset]:
    return [fs for fs in stats.filesystems if fs.pool == pool]


def snapshots_by_dataset(stats: ZfsStats, dataset_name: str) -> list[Dataset]:
    return [snap for snap in stats.snapshots if snap.dataset == dataset_name]


def usage_percentage(used: str, available: str) -> int:
    used_bytes = _size_or_zero(used)
    total = used_bytes + _size_or_zero(available)
    if total == 0:
        return 0
    return int(math.floor(used_bytes / total * 100 + 0.5))


def pool_summary(stats: ZfsStats, pool: str) -> dict[str, Any]:
    if pool not in stats.pools:
        raise KeyError(pool)

    filesystems: list[dict[str, Any]] = []
    for fs in filesystems_by_pool(stats, pool):
        props = fs.properties
        filesystems.append(
            {
                "name": fs.name,
                "used": props.used.value,
                "available": props.available.value,
                "referenced": props.referenced.value,
                "mountpoint": props.mountpoint.value,
                "usage_pct": usage_percentage(props.used.value, props.available.value),
                "snapshot_count": len(snapshots_by_dataset(stats, fs.name)),
            }
        )

    return {
        "pool": pool,
        "filesystems": filesystems,
        "snapshot_count": sum(1 for s in stats.snapshots if s.pool == pool),
        "bookmark_count": sum(1 for b in stats.bookmarks if b.pool == pool),
    }


# ------------------------------- Collector ---------------------------------- #


def run_command(command: list[str], timeout: float | None = None) -> tuple[int, str, str]:
    try:
        cp = subprocess.run(
            command,
            encoding="utf-8",
            errors="replace",
            capture_output=True,
            timeout=timeout,
            check=False,
        )
        return cp.returncode, cp.stdout, cp.stderr
    except (OSError, subprocess.TimeoutExpired) as exc:
        return 1, "", str(exc)


def parse_zfs_list(text: str) -> ZfsListOutput:
    try:
        return ZfsListOutput.model_validate_json(text)
    except ValidationError as exc:
        raise ZfsOutputError(f"Failed to parse ZFS JSON output: {exc}") from exc


def load_zfs_list(path: Path) -> ZfsListOutput:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ZfsOutputError(f"Failed to read ZFS listing {path}: {exc}") from exc
    return parse_zfs_list(text)


def collect_zfs_list(zfs_bin: str | None = None, timeout: float | None = None) -> ZfsListOutput:
    command = [zfs_bin or DEFAULT_ZFS_BIN, *ZFS_LIST_ARGS]
    returncode, stdout, stderr = run_command(command, timeout=timeout)
    if returncode != 0:
        detail = stderr.strip() or f"exit code {returncode}"
        raise ZfsCommandError(f"ZFS command failed: {detail}", returncode=returncode, stderr=stderr)
    return parse_zfs_list(stdout)


def get_zfs_stats(
    source: Path | None = None,
    zfs_bin: str | None = None,
    timeout: float | None = None,
    logger: logging.Logger | None = None,
) -> ZfsStats:
    """Collect one listing (from `zfs` or a saved JSON file) and aggregate it."""
    log = logger or logging.getLogger(APP_NAME)
    log.info("Fetching ZFS stats...")

    listing = load_zfs_list(source) if source else collect_zfs_list(zfs_bin, timeout=timeout)

    for dataset in unrecognized_datasets(listing):
        log.warning("unrecognized_dataset_type name=%s type=%s", dataset.name, dataset.dataset_type)

    stats = aggregate(listing)
    log.info(
        "zfs_stats pools=%s filesystems=%s snapshots=%s bookmarks=%s used=%s available=%s",
        len(stats.pools),
        len(stats.filesystems),
        len(stats.snapshots),
        len(stats.bookmarks),
        stats.total_used,
        stats.total_available,
    )
    return stats


# -------------------------------- CLI -------------------------------------- #


def export_json(path: Path, obj: Any) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def command_stats(args: argparse.Namespace, logger: logging.Logger) -> Any:
    source = Path(args.input) if args.input else None
    stats = get_zfs_stats(source=source, zfs_bin=args.zfs_bin, timeout=args.timeout, logger=logger)
    if args.pool:
        return pool_summary(stats, args.pool)
    return to_wire(stats)


def command_parse_size(args: argparse.Namespace, logger: logging.Logger) -> Any:
    return {text: parse_size(text) for text in args.values}


def command_format_bytes(args: argparse.Namespace, logger: logging.Logger) -> Any:
    return {str(n): format_bytes(n) for n in args.values}


def command_schema(args: argparse.Namespace, logger: logging.Logger) -> Any:
    return ZfsStats.model_json_schema(by_alias=True)


def byte_count(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if not 0 <= n <= U64_MAX:
        raise argparse.ArgumentTypeError(f"byte count out of range 0..{U64_MAX}: {value}")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zfs-stats",
        description="Summarize ZFS pools, filesystems, snapshots and bookmarks as JSON",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--log-file", default=os.getenv("ZFS_STATS_LOG_FILE", str(DEFAULT_LOG_FILE)))
    parser.add_argument("--log-level", default=os.getenv("ZFS_STATS_LOG_LEVEL", "info"))

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("stats", help="Run `zfs list -t all -j` and print aggregated stats")
    p.add_argument("--input", default=os.getenv("ZFS_STATS_INPUT_FILE"), help="Saved `zfs list -j` JSON instead of running zfs")
    p.add_argument("--zfs-bin", default=DEFAULT_ZFS_BIN)
    p.add_argument("--timeout", type=float, default=env_timeout(), help="Seconds before the zfs command is abandoned")
    p.add_argument("--pool", default=None, help="Only summarize this pool")
    p.add_argument("--output", default=None, help="Also write the JSON result to this file")

    p = sub.add_parser("parse-size", help="Decode ZFS size strings into bytes")
    p.add_argument("values", nargs="+")
    p.add_argument("--output", default=None)

    p = sub.add_parser("format-bytes", help="Render byte counts as ZFS size strings")
    p.add_argument("values", nargs="+", type=byte_count)
    p.add_argument("--output", default=None)

    p = sub.add_parser("schema", help="Print the JSON Schema of the stats document")
    p.add_argument("--output", default=None)

    return parser


def dispatch(args: argparse.Namespace, logger: logging.Logger) -> Any:
    cmd = args.command
    if cmd == "stats":
        return command_stats(args, logger)
    if cmd == "parse-size":
        return command_parse_size(args, logger)
    if cmd == "format-bytes":
        return command_format_bytes(args, logger)
    if cmd == "schema":
        return command_schema(args, logger)
    raise ValueError(f"Unknown command: {cmd}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        logger = setup_logger(Path(args.log_file), parse_log_level(args.log_level))
        result = dispatch(args, logger)
        if args.output:
            export_json(Path(args.output), result)
        print(json.dumps(result, indent=2, ensure_ascii=True))
        return 0
    except Exception as exc:  # pylint: disable=broad-except
        logging.getLogger(APP_NAME).error("command_failed command=%s err=%s", args.command, exc)
        print(json.dumps({
            "status": "error",
            "command": getattr(args, "command", None),
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
