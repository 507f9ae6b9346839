"""Lightweight project scan feeding the system prompt."""

import fnmatch
import os
from collections import Counter
from pathlib import Path

from codehelm.logging import get_logger

log = get_logger(__name__)

DEFAULT_IGNORE_PATTERNS = (
    ".git",
    ".hg",
    ".venv",
    "venv",
    "__pycache__",
    "node_modules",
    "vendor",
    "dist",
    "build",
    "*.egg-info",
)

LANGUAGES = {
    ".py": "Python",
    ".go": "Go",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".rs": "Rust",
    ".java": "Java",
    ".kt": "Kotlin",
    ".rb": "Ruby",
    ".php": "PHP",
    ".c": "C",
    ".h": "C",
    ".cpp": "C++",
    ".cs": "C#",
    ".swift": "Swift",
    ".sh": "Shell",
    ".md": "Markdown",
    ".yaml": "YAML",
    ".yml": "YAML",
    ".json": "JSON",
    ".toml": "TOML",
}

MAX_TOP_LEVEL_ENTRIES = 25
MAX_LANGUAGES = 8


class ProjectContext:
    """File counts, languages and top-level layout of the project root.

    ``get_summary`` is a pure function of the last ``load`` so the system
    prompt stays byte-stable between turns until the tree changes.
    """

    def __init__(self, root: Path | str, ignore_patterns: tuple[str, ...] | list[str] = DEFAULT_IGNORE_PATTERNS):
        self.root = Path(root)
        self.ignore_patterns = tuple(ignore_patterns)
        self.file_count = 0
        self.total_bytes = 0
        self.languages: Counter[str] = Counter()
        self.top_level: list[str] = []
        self._loaded = False

    def _ignored(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.ignore_patterns)

    def load(self) -> None:
        """Walk the project tree and refresh the metrics."""
        file_count = 0
        total_bytes = 0
        languages: Counter[str] = Counter()

        try:
            entries = sorted(os.listdir(self.root))
        except OSError as e:
            log.warning("Cannot list project root", root=str(self.root), error=str(e))
            entries = []
        top_level = []
        for name in entries:
            if self._ignored(name):
                continue
            top_level.append(f"{name}/" if (self.root / name).is_dir() else name)

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=None):
            dirnames[:] = sorted(d for d in dirnames if not self._ignored(d))
            for filename in filenames:
                if self._ignored(filename):
                    continue
                file_count += 1
                try:
                    total_bytes += os.path.getsize(os.path.join(dirpath, filename))
                except OSError:
                    pass
                language = LANGUAGES.get(Path(filename).suffix.lower())
                if language:
                    languages[language] += 1

        self.file_count = file_count
        self.total_bytes = total_bytes
        self.languages = languages
        self.top_level = top_level
        self._loaded = True
        log.debug("Project scanned", root=str(self.root), files=file_count)

    def get_summary(self) -> str:
        if not self._loaded:
            self.load()
        lines = [
            f"- **Root**: `{self.root}`",
            f"- **Files**: {self.file_count} ({self.total_bytes / 1024:.1f} KB)",
        ]
        if self.languages:
            ranked = sorted(self.languages.items(), key=lambda kv: (-kv[1], kv[0]))[:MAX_LANGUAGES]
            lines.append("- **Languages**: " + ", ".join(f"{lang} ({count})" for lang, count in ranked))
        if self.top_level:
            shown = self.top_level[:MAX_TOP_LEVEL_ENTRIES]
            layout = ", ".join(f"`{entry}`" for entry in shown)
            if len(self.top_level) > len(shown):
                layout += f", ... (+{len(self.top_level) - len(shown)} more)"
            lines.append(f"- **Layout**: {layout}")
        return "\n".join(lines)
