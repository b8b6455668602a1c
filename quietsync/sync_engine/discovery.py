"""Eligible-file discovery for a workspace.

Decides which files of a workspace take part in a sync: hard-coded ignore
patterns, patterns from ``.gitignore`` / ``.quietsyncignore`` at the workspace
root, and a text-extension allow-list.  The same rules back the full file
listing used by an initial index and the direct-children listing used by the
incremental diff, so both paths agree on what exists locally.

Ignore files support a practical subset of gitignore syntax: blank lines and
``#`` comments are skipped, a trailing ``/`` restricts a pattern to
directories, a pattern containing ``/`` is matched against the whole relative
path, anything else against the entry name.  Negation (``!``) is not
supported and such lines are ignored.

All methods here block on the filesystem; async callers wrap them in
``anyio.to_thread.run_sync``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path

from loguru import logger

DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (
    "node_modules/",
    ".git/",
    ".cursor/",
    ".venv/",
    "__pycache__/",
    "dist/",
    "build/",
    "coverage/",
    ".nyc_output/",
    ".DS_Store",
    "Thumbs.db",
    ".env",
    ".env.*",
)

IGNORE_FILES: tuple[str, ...] = (".gitignore", ".quietsyncignore")

DEFAULT_TEXT_EXTENSIONS: frozenset[str] = frozenset(
    {
        # Documents
        ".txt", ".md", ".markdown", ".rst", ".adoc", ".asciidoc", ".tex", ".bib", ".org",
        # Programming languages
        ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".py", ".pyi", ".java", ".c", ".cpp", ".cxx",
        ".cc", ".h", ".hpp", ".hxx", ".cs", ".php", ".rb", ".go", ".rs", ".swift", ".kt", ".scala",
        ".clj", ".hs", ".ml", ".m", ".r", ".pl", ".pm", ".sh", ".bash", ".zsh", ".ps1", ".lua",
        ".dart", ".nim", ".zig", ".v", ".ex", ".exs",
        # Web
        ".html", ".htm", ".css", ".scss", ".sass", ".less", ".vue", ".svelte", ".astro",
        # Config and data
        ".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf", ".xml", ".csv", ".tsv",
        # DSLs
        ".sql", ".graphql", ".gql", ".proto", ".dockerfile", ".makefile",
    }
)  # fmt: skip

TEXT_FILENAMES: frozenset[str] = frozenset({"dockerfile", "makefile"})


@dataclass(frozen=True)
class LocalEntry:
    """A direct child of a workspace directory."""

    rel_path: str
    is_dir: bool

    @property
    def is_file(self) -> bool:
        return not self.is_dir


@dataclass(frozen=True)
class _IgnoreRule:
    pattern: str
    dir_only: bool
    anchored: bool

    def matches(self, rel_path: str, name: str, is_dir: bool) -> bool:
        if self.dir_only and not is_dir:
            return False
        if self.anchored:
            return fnmatchcase(rel_path, self.pattern)
        return fnmatchcase(name, self.pattern)


def _parse_rules(lines: list[str] | tuple[str, ...]) -> list[_IgnoreRule]:
    rules: list[_IgnoreRule] = []
    for line in lines:
        text = line.strip()
        if not text or text.startswith(("#", "!")):
            continue
        dir_only = text.endswith("/")
        text = text.rstrip("/")
        anchored = "/" in text
        text = text.lstrip("/")
        if text:
            rules.append(_IgnoreRule(text, dir_only, anchored))
    return rules


def normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    return ext if ext.startswith(".") else f".{ext}"


class FileDiscovery:
    """Lists the eligible files of one workspace."""

    def __init__(
        self,
        workspace_root: str | Path,
        *,
        limit: int = 1000,
        extra_extensions: list[str] | tuple[str, ...] = (),
    ) -> None:
        self.root = Path(workspace_root)
        self.limit = limit
        self.extensions = DEFAULT_TEXT_EXTENSIONS | {normalize_extension(e) for e in extra_extensions if e.strip()}
        self._rules = _parse_rules(DEFAULT_IGNORE_PATTERNS) + self._load_ignore_files()

    def _load_ignore_files(self) -> list[_IgnoreRule]:
        rules: list[_IgnoreRule] = []
        for name in IGNORE_FILES:
            path = self.root / name
            try:
                content = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Could not read ignore file {}: {}", path, exc)
                continue
            rules.extend(_parse_rules(content.splitlines()))
        return rules

    def _abs(self, rel_path: str) -> Path:
        return self.root if rel_path in ("", ".") else self.root / rel_path

    # -- Rules -----------------------------------------------------------------

    def is_ignored(self, rel_path: str, is_dir: bool) -> bool:
        parts = rel_path.split("/")
        # A path is ignored when it or any of its ancestors matches.
        for depth in range(1, len(parts) + 1):
            prefix = "/".join(parts[:depth])
            prefix_is_dir = is_dir or depth < len(parts)
            if any(rule.matches(prefix, parts[depth - 1], prefix_is_dir) for rule in self._rules):
                return True
        return False

    def is_text_file(self, rel_path: str) -> bool:
        name = rel_path.rsplit("/", 1)[-1].lower()
        if name in TEXT_FILENAMES:
            return True
        return os.path.splitext(name)[1] in self.extensions

    def is_eligible(self, rel_path: str, is_dir: bool) -> bool:
        if self.is_ignored(rel_path, is_dir):
            return False
        return is_dir or self.is_text_file(rel_path)

    # -- Listing ---------------------------------------------------------------

    def list_children(self, rel_path: str = ".") -> list[LocalEntry]:
        """Eligible direct children of a directory, sorted by name.

        Returns an empty list when ``rel_path`` is not a readable directory.
        """
        out: list[LocalEntry] = []
        try:
            with os.scandir(self._abs(rel_path)) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError:
            return out
        for entry in entries:
            child = entry.name if rel_path in ("", ".") else f"{rel_path}/{entry.name}"
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = entry.is_file(follow_symlinks=False)
            except OSError:
                continue
            if not (is_dir or is_file):
                continue
            if self.is_eligible(child, is_dir):
                out.append(LocalEntry(child, is_dir))
        return out

    def files_under(self, rel_path: str = ".", limit: int | None = None) -> list[str]:
        """Eligible files beneath a directory, depth first, capped at ``limit``."""
        cap = self.limit if limit is None else limit
        out: list[str] = []
        stack = [rel_path]
        while stack and len(out) < cap:
            current = stack.pop()
            children = self.list_children(current)
            dirs: list[str] = []
            for child in children:
                if child.is_dir:
                    dirs.append(child.rel_path)
                else:
                    out.append(child.rel_path)
                    if len(out) >= cap:
                        break
            stack.extend(reversed(dirs))
        return out

    def list_files(self) -> list[str]:
        """All eligible files in the workspace, capped at ``limit``."""
        files = self.files_under(".")
        if len(files) >= self.limit:
            logger.warning("File discovery stopped at the limit of {} files in {}", self.limit, self.root)
        return files

    def is_file(self, rel_path: str) -> bool:
        return self._abs(rel_path).is_file()
