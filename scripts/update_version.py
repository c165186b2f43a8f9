#!/usr/bin/env python3
"""Set the release version in version.json and the APP_VERSION constant.

Both files are staged in memory first and only written once everything
has been read and validated. The metadata file is written before the
source file; if the second write fails the first is not rolled back.

Version format: X.Y.Z (three non-negative integers, no suffixes)

Usage:
    python scripts/update_version.py 2.3.1
    python scripts/update_version.py 2.3.1 dist/App.zip Fix seek bar
    python scripts/update_version.py 2.3.1 --dry     # show what would change
    python scripts/update_version.py 2.3.1 --strict  # fail if APP_VERSION is missing
"""

from __future__ import annotations

import argparse
import enum
import hashlib
import json
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

CONFIG = Path(__file__).resolve().parent / "config.json"

DEFAULTS = {
    "metadata_file": "version.json",
    "source_file": "src/types.go",
    "constant": "APP_VERSION",
    "indent": 4,
    "release_url": "",
}

VERSION_PATTERN = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+")
USAGE = "Usage: update-version <version> [zip-path] [changelog ...]"

# ── errors ──────────────────────────────────────────────────────────────────


class UpdateError(Exception):
    """Base class for failures reported to the user before any write."""


class UsageError(UpdateError):
    """No version argument was given."""


class FormatError(UpdateError):
    """The version argument is not X.Y.Z."""

    def __init__(self, candidate: str):
        self.candidate = candidate
        super().__init__(
            f"Version must be in format X.Y.Z (e.g., 1.0.0), got {candidate!r}"
        )


class ConstantNotFoundError(UpdateError):
    """The source file has no assignment to the version constant."""

    def __init__(self, name: str, path: Path):
        self.name = name
        self.path = path
        super().__init__(f"{name} assignment not found in {path}")


def validate_version(candidate: Optional[str]) -> str:
    if not candidate:
        raise UsageError("Version not provided")
    if not VERSION_PATTERN.fullmatch(candidate):
        raise FormatError(candidate)
    return candidate


# ── metadata file ───────────────────────────────────────────────────────────


@dataclass
class MetadataRecord:
    """Contents of version.json. Unset optional fields are left out."""

    version: str
    checksum: Optional[str] = None
    url: Optional[str] = None
    size: Optional[int] = None
    changelog: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"version": self.version}
        for key in ("checksum", "url", "size", "changelog"):
            value = getattr(self, key)
            if value not in (None, ""):
                data[key] = value
        return data

    def to_json(self, indent: int = 4) -> str:
        return json.dumps(self.to_dict(), indent=indent) + "\n"


def describe_archive(path: Path) -> tuple[str, int]:
    """Return (``sha256:<hex>``, size in bytes) for a release archive."""
    data = path.read_bytes()
    return "sha256:" + hashlib.sha256(data).hexdigest(), len(data)


# ── source constant ─────────────────────────────────────────────────────────


@dataclass
class VersionConstant:
    """A ``NAME = "value"`` assignment embedded in a source file.

    Only the quoted value is ever rewritten; the name, the spacing
    around ``=`` and the quotes are kept byte for byte.
    """

    name: str = "APP_VERSION"

    @property
    def pattern(self) -> re.Pattern:
        return re.compile(rf'(\b{re.escape(self.name)}\s*=\s*")([^"]+)(")')

    def find(self, text: str) -> Optional[str]:
        m = self.pattern.search(text)
        return m.group(2) if m else None

    def replace(self, text: str, version: str) -> tuple[str, int]:
        # A callable replacement keeps backslashes in the value literal
        return self.pattern.subn(
            lambda m: m.group(1) + version + m.group(3), text, count=1
        )


def read_text(path: Path) -> str:
    # newline="" and surrogateescape so any bytes, CRLF included, come back out unchanged
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


def write_text(path: Path, text: str) -> None:
    with open(
        path, "w", encoding="utf-8", errors="surrogateescape", newline=""
    ) as f:
        f.write(text)


# ── config ──────────────────────────────────────────────────────────────────


@dataclass
class Settings:
    root: Path
    metadata_file: str = DEFAULTS["metadata_file"]
    source_file: str = DEFAULTS["source_file"]
    constant: str = DEFAULTS["constant"]
    indent: int = DEFAULTS["indent"]
    release_url: str = DEFAULTS["release_url"]

    @property
    def metadata_path(self) -> Path:
        return self.root / self.metadata_file

    @property
    def source_path(self) -> Path:
        return self.root / self.source_file


def load_settings(config_path: Path = CONFIG, root: Optional[Path] = None) -> Settings:
    """Read config.json, falling back to DEFAULTS for anything missing.

    The project root is ``root`` when given, else the config file's
    grandparent (config.json lives in scripts/), else the working directory
    when there is no config file (an installed command has none).
    """
    config = dict(DEFAULTS)
    if config_path.exists():
        with config_path.open() as f:
            config.update({k: v for k, v in json.load(f).items() if k in DEFAULTS})
        if root is None:
            root = config_path.resolve().parent.parent

    if root is None:
        root = Path.cwd()
    return Settings(root=Path(root), **config)


# ── staging and applying ────────────────────────────────────────────────────


class Outcome(enum.Enum):
    BOTH_UPDATED = "both_updated"
    METADATA_ONLY_UPDATED = "metadata_only_updated"
    FAILED = "failed"


@dataclass
class UpdatePlan:
    """New contents for both files, computed before anything is written."""

    settings: Settings
    record: MetadataRecord
    metadata_text: str
    source_text: str
    old_version: Optional[str] = None
    replacements: int = 0


@dataclass
class UpdateResult:
    outcome: Outcome
    plan: UpdatePlan
    error: Optional[OSError] = None
    failed_step: Optional[str] = None
    written: list = field(default_factory=list)


def stage_update(settings: Settings, record: MetadataRecord) -> UpdatePlan:
    """Read the source file and render both new contents. Writes nothing."""
    constant = VersionConstant(settings.constant)
    original = read_text(settings.source_path)
    patched, count = constant.replace(original, record.version)
    return UpdatePlan(
        settings=settings,
        record=record,
        metadata_text=record.to_json(settings.indent),
        source_text=patched,
        old_version=constant.find(original),
        replacements=count,
    )


def apply_update(plan: UpdatePlan) -> UpdateResult:
    """Write the metadata file, then the source file.

    A failure on the first write leaves the source file untouched, though
    the metadata file may be truncated (FAILED); a failure on the second
    leaves the metadata file already updated (METADATA_ONLY_UPDATED).
    """
    settings = plan.settings
    written = []
    try:
        settings.metadata_path.parent.mkdir(parents=True, exist_ok=True)
        write_text(settings.metadata_path, plan.metadata_text)
    except OSError as e:
        return UpdateResult(Outcome.FAILED, plan, error=e, failed_step="metadata")
    written.append(settings.metadata_path)

    try:
        write_text(settings.source_path, plan.source_text)
    except OSError as e:
        return UpdateResult(
            Outcome.METADATA_ONLY_UPDATED,
            plan,
            error=e,
            failed_step="source",
            written=written,
        )
    written.append(settings.source_path)

    return UpdateResult(Outcome.BOTH_UPDATED, plan, written=written)


# ── CLI ─────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="update-version",
        description="Set the release version in version.json and the source constant",
    )
    parser.add_argument("version", nargs="?", help="New version, X.Y.Z")
    parser.add_argument(
        "zip_path", nargs="?", type=Path, help="Release archive to checksum"
    )
    parser.add_argument("changelog", nargs="*", help="Changelog text")
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG,
        help="Path to config.json (default: scripts/config.json)",
    )
    parser.add_argument(
        "--root", type=Path, default=None, help="Project root (default: from --config)"
    )
    parser.add_argument(
        "--dry", action="store_true", help="Show what would change without writing"
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail if the source file has no version constant",
    )
    return parser


def build_record(args: argparse.Namespace, settings: Settings) -> MetadataRecord:
    record = MetadataRecord(version=args.version)
    if args.zip_path is not None:
        try:
            record.checksum, record.size = describe_archive(args.zip_path)
        except OSError as e:
            raise UpdateError(f"cannot read archive {args.zip_path}: {e}") from e
        record.url = settings.release_url or None
        print(f"  Zip size: {record.size} bytes")
        print(f"  Checksum: {record.checksum}")
    if args.changelog:
        record.changelog = " ".join(args.changelog)
        print(f"  Changelog: {record.changelog}")
    return record


def run(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args, extra = parser.parse_known_args(argv)
    if extra:
        # argparse reads "-1.2.3" as an unknown flag; it is a bad version instead
        if args.version is None and re.match(r"-[0-9.]", extra[0]):
            args.version = extra[0]
        else:
            parser.error(f"unrecognized arguments: {' '.join(extra)}")

    try:
        validate_version(args.version)
    except UsageError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 1
    except FormatError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    settings = load_settings(args.config, args.root)
    print(f"Updating version to {args.version}...")

    try:
        record = build_record(args, settings)
        try:
            plan = stage_update(settings, record)
        except (OSError, ValueError) as e:
            raise UpdateError(f"cannot read {settings.source_file}: {e}") from e
        if plan.replacements == 0 and args.strict:
            raise ConstantNotFoundError(settings.constant, Path(settings.source_file))
    except UpdateError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if plan.old_version is not None:
        print(f"Old version:  {plan.old_version}")

    if args.dry:
        print(f"Would update {settings.metadata_file}")
        if plan.replacements:
            print(f"Would update {settings.source_file}")
        print("(dry run: no changes written)")
        return 0

    result = apply_update(plan)
    if result.outcome is Outcome.FAILED:
        print(
            f"Error: failed to write {settings.metadata_file}: {result.error}",
            file=sys.stderr,
        )
        print(
            f"{settings.metadata_file} may be incomplete; "
            f"{settings.source_file} was not changed.",
            file=sys.stderr,
        )
        return 1

    print(f"✅ Updated {settings.metadata_file}")

    if result.outcome is Outcome.METADATA_ONLY_UPDATED:
        print(
            f"Error: failed to write {settings.source_file}: {result.error}",
            file=sys.stderr,
        )
        print(
            f"{settings.metadata_file} was already updated to {args.version}; "
            f"{settings.source_file} was not.",
            file=sys.stderr,
        )
        return 1

    if plan.replacements:
        print(f"✅ Updated {settings.source_file}")
    else:
        print(
            f"⚠️  {settings.constant} not found in {settings.source_file} "
            "(file left unchanged)"
        )

    print(f"\nVersion successfully updated to {args.version}")
    return 0


def main() -> None:
    sys.exit(run(sys.argv[1:]))


if __name__ == "__main__":
    main()
