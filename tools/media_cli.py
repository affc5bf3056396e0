"""Utility CLI for inspecting media storage."""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import json_utils as json  # noqa: E402
from config import config  # noqa: E402
from services.hashing import Hasher, is_valid_digest  # noqa: E402
from services.media_catalog import MediaCatalog  # noqa: E402
from services.media_errors import MediaError  # noqa: E402
from services.path_allocator import PathAllocator  # noqa: E402


class CLIError(Exception):
    """Raised when CLI validation fails."""


@dataclass
class VerifyIssue:
    """Single problem found while verifying the originals tree."""

    category: str
    path: str
    detail: str


@dataclass
class VerifyReport:
    """Aggregated, read-only report of the originals tree."""

    originals_scanned: int = 0
    digest_mismatches: int = 0
    missing_thumbnails: int = 0
    unexpected_files: int = 0
    issues: List[VerifyIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originals_scanned": self.originals_scanned,
            "digest_mismatches": self.digest_mismatches,
            "missing_thumbnails": self.missing_thumbnails,
            "unexpected_files": self.unexpected_files,
            "issues": [issue.__dict__ for issue in self.issues],
        }


def _resolve_allocator() -> PathAllocator:
    return PathAllocator(config.STORAGE)


def _require_digest(value: str) -> str:
    digest = value.strip().lower()
    if not is_valid_digest(digest):
        raise CLIError("sha must be 64 hexadecimal characters")
    return digest


def verify_storage(allocator: PathAllocator, hasher: Optional[Hasher] = None) -> VerifyReport:
    """Re-hash every original and check that its thumbnail exists."""
    hasher = hasher or Hasher(chunk_size=config.UPLOAD.chunk_size)
    report = VerifyReport()
    if not allocator.originals_root.exists():
        return report

    for path in sorted(allocator.originals_root.rglob("*")):
        if not path.is_file():
            continue
        if path.name.startswith("."):
            continue
        name_digest = path.stem
        if not is_valid_digest(name_digest):
            report.unexpected_files += 1
            report.issues.append(VerifyIssue("unexpected_file", str(path), "file name is not a digest"))
            continue

        report.originals_scanned += 1
        actual, _ = hasher.digest_of_file(path)
        if actual != name_digest:
            report.digest_mismatches += 1
            report.issues.append(VerifyIssue("digest_mismatch", str(path), f"content hashes to {actual}"))

        location = allocator.location_for_original(path)
        if not location.thumbnail_path.is_file():
            report.missing_thumbnails += 1
            report.issues.append(
                VerifyIssue("missing_thumbnail", str(location.thumbnail_path), f"no thumbnail for {name_digest}")
            )
    return report


def _command_locate(args: argparse.Namespace) -> int:
    digest = _require_digest(args.sha)
    match = _resolve_allocator().locate_by_digest(digest)
    if match is None:
        print(f"No original stored for {digest}")
        return 1
    path, _ = match
    print(str(path))
    return 0


def _command_meta(args: argparse.Namespace) -> int:
    digest = _require_digest(args.sha)
    catalog = MediaCatalog.from_config(config, allocator=_resolve_allocator())
    try:
        view = asyncio.run(catalog.get_metadata_by_digest(digest))
    except MediaError as exc:
        raise CLIError(f"{exc.code}: {exc.message}") from exc
    print(json.dumps(view.model_dump(mode="json", by_alias=True), indent=2))
    return 0


def _command_verify(args: argparse.Namespace) -> int:
    report = verify_storage(_resolve_allocator())
    payload = report.to_dict()
    if not args.verbose:
        payload.pop("issues", None)
    print(json.dumps(payload, indent=2))
    if report.issues and not args.verbose:
        print("\nIssues detected:")
        for issue in report.issues:
            print(f" - [{issue.category}] {issue.path}: {issue.detail}")
    return 0 if report.ok else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspection tools for Media Vault storage")
    subparsers = parser.add_subparsers(dest="command", required=True)

    locate_parser = subparsers.add_parser("locate", help="Print the stored original path for a digest")
    locate_parser.add_argument("sha", help="SHA-256 digest of the normalized media")
    locate_parser.set_defaults(func=_command_locate)

    meta_parser = subparsers.add_parser("meta", help="Print metadata for a digest as JSON")
    meta_parser.add_argument("sha", help="SHA-256 digest of the normalized media")
    meta_parser.set_defaults(func=_command_meta)

    verify_parser = subparsers.add_parser("verify", help="Re-hash originals and check thumbnails (read-only)")
    verify_parser.add_argument("--verbose", action="store_true", help="Include individual issues in the JSON output")
    verify_parser.set_defaults(func=_command_verify)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except CLIError as exc:
        parser.error(str(exc))
        return 2


if __name__ == "__main__":  # pragma: no cover - manual invocation only
    raise SystemExit(main())
