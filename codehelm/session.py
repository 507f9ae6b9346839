"""Session tracking for context-refresh decisions."""

import hashlib
import threading
import time
import uuid
from dataclasses import dataclass

from codehelm.logging import get_logger

log = get_logger(__name__)


def context_fingerprint(system_prompt: str, rules: str, project_info: str) -> str:
    """SHA-256 over the three prompt inputs, each length-prefixed."""
    digest = hashlib.sha256()
    for part in (system_prompt, rules, project_info):
        encoded = (part or "").encode("utf-8")
        digest.update(len(encoded).to_bytes(8, "big"))
        digest.update(encoded)
    return digest.hexdigest()


@dataclass(frozen=True)
class ContextStats:
    """Read-only snapshot of session context usage."""

    session_id: str
    message_count: int
    total_prompt_tokens: int
    completion_count: int
    context_sent: bool
    fingerprint: str
    session_age: float

    def should_compress(self, trigger: int) -> bool:
        return self.message_count > trigger


class SessionManager:
    """Tracks whether the full system context has already been sent.

    The agent only resends the system prompt when it has changed since the
    last ``mark_context_sent`` or after ``reset_session``.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._session_id = uuid.uuid4().hex[:16]
        self._started = time.monotonic()
        self._fingerprint = ""
        self._context_sent = False
        self._message_count = 0
        self._total_prompt_tokens = 0
        self._completion_count = 0

    def needs_context_refresh(self, system_prompt: str, rules: str, project_info: str) -> bool:
        fingerprint = context_fingerprint(system_prompt, rules, project_info)
        with self._lock:
            return not self._context_sent or self._fingerprint != fingerprint

    def mark_context_sent(self, system_prompt: str, rules: str, project_info: str) -> None:
        fingerprint = context_fingerprint(system_prompt, rules, project_info)
        with self._lock:
            self._fingerprint = fingerprint
            self._context_sent = True

    def update_token_usage(self, prompt_tokens: int) -> None:
        """Accumulate prompt tokens for one completion."""
        with self._lock:
            self._total_prompt_tokens += max(0, int(prompt_tokens))
            self._completion_count += 1

    def set_message_count(self, count: int) -> None:
        with self._lock:
            self._message_count = max(0, int(count))

    def should_compress(self, trigger: int) -> bool:
        with self._lock:
            return self._message_count > trigger

    def reset_session(self) -> None:
        """Forget the sent context so the next turn resends it."""
        with self._lock:
            self._fingerprint = ""
            self._context_sent = False
        log.debug("Session context reset", session_id=self._session_id)

    def state(self) -> tuple[str, str, bool, int, int, int]:
        """Comparable tuple of the mutable session state (excludes wall-clock age)."""
        with self._lock:
            return (
                self._session_id,
                self._fingerprint,
                self._context_sent,
                self._message_count,
                self._total_prompt_tokens,
                self._completion_count,
            )

    def get_context_stats(self) -> ContextStats:
        with self._lock:
            return ContextStats(
                session_id=self._session_id,
                message_count=self._message_count,
                total_prompt_tokens=self._total_prompt_tokens,
                completion_count=self._completion_count,
                context_sent=self._context_sent,
                fingerprint=self._fingerprint,
                session_age=time.monotonic() - self._started,
            )
