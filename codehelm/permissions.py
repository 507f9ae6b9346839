"""Tool permissions, shell command policy and the approval audit log."""

import fnmatch
import json
import re
import shlex
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from codehelm.config import PermissionsConfig
from codehelm.logging import get_logger

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "env"}


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def split_shell_segments(command: str) -> list[list[str]]:
    """Split a command into tokenized segments separated by control operators.

    Raises:
        ValueError: if the command cannot be tokenized (e.g. unbalanced quotes)
    """
    segments: list[list[str]] = []
    current: list[str] = []
    for token in _tokenize_shell_command(command):
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _segment_base_command(tokens: list[str]) -> str:
    """Executable token of a segment, skipping wrappers and env assignments."""
    for token in tokens:
        token = token.strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token
    return ""


def extract_shell_base_commands(command: str) -> list[str]:
    """Extract base command token from each shell segment."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return []
    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return []
    return [base for segment in segments if (base := _segment_base_command(segment))]


class PermissionManager:
    """Answers which tools may run, which need approval, and which commands are denied."""

    def __init__(self, config: PermissionsConfig | None = None):
        self.config = config or PermissionsConfig()
        self._lock = threading.Lock()
        self._audit_file: IO[str] | None = None

    def is_tool_allowed(self, tool: str) -> bool:
        allowed = self.config.allowed_tools
        return "*" in allowed or tool in allowed

    def is_sensitive_tool(self, tool: str) -> bool:
        return tool in self.config.sensitive_tools

    def requires_approval(self, tool: str) -> bool:
        if self.config.require_approval_for_all:
            return True
        if self.is_sensitive_tool(tool):
            return True
        return not self.config.auto_approve_non_sensitive

    def is_command_allowed(self, command: str) -> bool:
        """Whether a raw shell command matches no denied pattern.

        Patterns are globs tested against the whole command, each segment
        between ``;``/``&&``/``|`` and each segment's base command. Commands
        that cannot be parsed are denied.
        """
        cleaned = str(command or "").strip()
        if not cleaned:
            return False
        try:
            segments = split_shell_segments(cleaned)
        except ValueError:
            self._audit("command", cleaned, False, "unparseable command")
            return False
        if not segments:
            self._audit("command", cleaned, False, "unparseable command")
            return False

        targets = [cleaned]
        targets.extend(" ".join(tokens) for tokens in segments)
        targets.extend(base for tokens in segments if (base := _segment_base_command(tokens)))

        for raw_pattern in self.config.denied_commands:
            pattern = str(raw_pattern or "").strip()
            if not pattern:
                continue
            for target in targets:
                if fnmatch.fnmatchcase(target, pattern):
                    log.warning("Command denied by policy", command=cleaned, pattern=pattern)
                    self._audit("command", cleaned, False, f"matches denied pattern: {pattern}")
                    return False
        return True

    def log_approval_decision(self, tool: str, approved: bool, reason: str = "") -> None:
        self._audit("approval", tool, approved, reason or ("approved" if approved else "denied"))

    def log_approval_timeout(self, tool: str) -> None:
        self._audit("approval", tool, False, "timeout")

    def _audit(self, action: str, name: str, allowed: bool, reason: str = "") -> None:
        if not self.config.audit_enabled:
            return
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "action": action,
            "name": name,
            "allowed": allowed,
            "reason": reason,
        }
        with self._lock:
            try:
                if self._audit_file is None:
                    path = Path(self.config.audit_log_path).expanduser()
                    path.parent.mkdir(parents=True, exist_ok=True)
                    self._audit_file = open(path, "a", encoding="utf-8")
                self._audit_file.write(json.dumps(entry) + "\n")
                self._audit_file.flush()
            except OSError as e:
                log.error("Failed to write audit entry", error=str(e), action=action, name=name)

    def close(self) -> None:
        with self._lock:
            if self._audit_file is not None:
                self._audit_file.close()
                self._audit_file = None
