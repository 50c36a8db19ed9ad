"""Artifact verification: check a worker's claims against the filesystem.

A claimed file is confirmed when it exists inside the project root. A claimed
export is confirmed when a definition of that symbol appears in one of the
task's confirmed files (or, if it claimed none, under the configured source
directories). Checks are pluggable so tests and other backends can swap them.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from pathlib import Path

from wavefront import log
from wavefront.config import DEFAULT_SOURCE_DIRS
from wavefront.io_utils import read_text
from wavefront.tasks.model import (
    Artifacts,
    Task,
    UnverifiedClaim,
    Verification,
    normalize_path,
    now_iso,
)

# (root, path) -> None when confirmed, else the reason it is not.
FileChecker = Callable[[Path, str], "str | None"]
# (root, candidate files, symbol) -> None when confirmed, else the reason.
SymbolChecker = Callable[[Path, list[str], str], "str | None"]

_SOURCE_SUFFIXES = {
    ".py", ".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".go", ".rs",
}

_DEFINITION_TEMPLATES = (
    # Python
    r"^\s*(?:async\s+)?def\s+{name}\s*\(",
    r"^\s*class\s+{name}\b",
    r"^{name}\s*(?::[^=]+)?=",
    # JavaScript / TypeScript
    r"\bexport\s+(?:default\s+)?(?:async\s+)?(?:const|let|var|function\*?|class|type|interface|enum)\s+{name}\b",
    r"\bexport\s*\{{[^}}]*\b{name}\b[^}}]*\}}",
    # Go
    r"^func\s+(?:\([^)]*\)\s*)?{name}\s*[\[(]",
    # Rust
    r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:fn|struct|enum|trait)\s+{name}\b",
)


def _definition_pattern(symbol: str) -> re.Pattern[str]:
    name = re.escape(symbol)
    alternatives = "|".join(f"(?:{t.format(name=name)})" for t in _DEFINITION_TEMPLATES)
    return re.compile(alternatives, re.MULTILINE)


def _inside(root: Path, path: str) -> Path | None:
    target = (root / path).resolve()
    try:
        target.relative_to(root.resolve())
    except ValueError:
        return None
    return target


def check_file(root: Path, path: str) -> str | None:
    if "\x00" in path:
        return "invalid path"
    try:
        target = _inside(root, path)
        if target is None:
            return "outside project root"
        if not target.is_file():
            return "file does not exist"
    except (OSError, ValueError):
        return "invalid path"
    return None


def check_symbol(root: Path, files: list[str], symbol: str) -> str | None:
    if not symbol.strip():
        return "empty symbol name"
    pattern = _definition_pattern(symbol.strip())
    for path in files:
        try:
            target = _inside(root, path)
            if target is None or not target.is_file():
                continue
            text = read_text(target, errors="replace")
        except (OSError, ValueError):
            continue
        if pattern.search(text):
            return None
    return "no definition found"


class ArtifactVerifier:
    """Partition claimed artifacts into verified and unverified."""

    def __init__(
        self,
        root: Path,
        *,
        source_dirs: Iterable[str] = DEFAULT_SOURCE_DIRS,
        file_checker: FileChecker = check_file,
        symbol_checker: SymbolChecker = check_symbol,
    ) -> None:
        self.root = root
        self.source_dirs = list(source_dirs)
        self.file_checker = file_checker
        self.symbol_checker = symbol_checker

    def _fallback_sources(self) -> list[str]:
        found: list[str] = []
        for d in self.source_dirs:
            base = self.root / d
            if not base.is_dir():
                continue
            for p in sorted(base.rglob("*")):
                if p.is_file() and p.suffix in _SOURCE_SUFFIXES:
                    found.append(p.relative_to(self.root).as_posix())
        return found

    def verify(self, artifacts: Artifacts) -> Verification:
        verified = Artifacts(extra=dict(artifacts.extra))
        claims: list[UnverifiedClaim] = []

        def check(paths: list[str], bucket: list[str]) -> None:
            for raw in paths:
                path = normalize_path(raw)
                reason = self.file_checker(self.root, path)
                if reason is None:
                    bucket.append(path)
                else:
                    claims.append(UnverifiedClaim("file", raw, reason))

        check(artifacts.files_created, verified.files_created)
        check(artifacts.files_modified, verified.files_modified)
        check(artifacts.test_files, verified.test_files)

        candidates = [*verified.files_created, *verified.files_modified]
        if not candidates and artifacts.exports_added:
            candidates = self._fallback_sources()
        for symbol in artifacts.exports_added:
            reason = self.symbol_checker(self.root, candidates, symbol)
            if reason is None:
                verified.exports_added.append(symbol)
            else:
                claims.append(UnverifiedClaim("export", symbol, reason))

        for claim in claims:
            log.debug(f"Unverified {claim.kind} {claim.value}: {claim.reason}")
        return Verification(verified=verified, unverified_claims=claims, verified_at=now_iso())

    def verify_task(self, task: Task) -> Verification:
        """Re-check a stored task's claimed artifacts."""
        return self.verify(task.artifacts or Artifacts())
