"""Single-slot bridge between the agent and an external approver."""

import asyncio
from enum import Enum
from typing import Callable

from codehelm.logging import get_logger

log = get_logger(__name__)

PREVIEW_MAX_CHARS = 200

# Receives (tool_name, argument_preview).
ApprovalRequestCallback = Callable[[str, str], None]


class ApprovalOutcome(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


def truncate_preview(text: str, limit: int = PREVIEW_MAX_CHARS) -> str:
    text = str(text or "")
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class ApprovalBridge:
    """Capacity-1 decision channel.

    ``submit`` never blocks: a decision that arrives while no request is
    outstanding, or while the slot is already full, is dropped. ``submit`` must
    be called on the event loop thread; other threads should go through
    ``loop.call_soon_threadsafe``.
    """

    def __init__(self, request_callback: ApprovalRequestCallback | None = None):
        self._queue: asyncio.Queue[bool] = asyncio.Queue(maxsize=1)
        self._pending = False
        self._request_callback = request_callback

    def set_request_callback(self, callback: ApprovalRequestCallback | None) -> None:
        self._request_callback = callback

    @property
    def pending(self) -> bool:
        """Whether a request is currently waiting for a decision."""
        return self._pending

    def submit(self, decision: bool) -> bool:
        """Deliver a decision; returns False when it was dropped."""
        if not self._pending:
            log.debug("Dropping approval decision with no outstanding request", decision=decision)
            return False
        try:
            self._queue.put_nowait(bool(decision))
        except asyncio.QueueFull:
            log.debug("Dropping approval decision, slot already full", decision=decision)
            return False
        return True

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return

    async def request_decision(
        self,
        tool: str,
        args_preview: str,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> ApprovalOutcome:
        """Ask the approver about ``tool`` and wait for the answer."""
        self._drain()
        preview = truncate_preview(args_preview)
        self._pending = True
        cancel_task: asyncio.Task[bool] | None = None
        try:
            if self._request_callback is not None:
                try:
                    self._request_callback(tool, preview)
                except Exception as e:
                    log.warning("Approval request callback failed", tool=tool, error=str(e))

            if cancel_event is not None and cancel_event.is_set():
                return ApprovalOutcome.CANCELLED

            wait = asyncio.wait_for(self._queue.get(), timeout=timeout)
            if cancel_event is None:
                try:
                    decision = await wait
                except asyncio.TimeoutError:
                    return ApprovalOutcome.TIMED_OUT
                return ApprovalOutcome.APPROVED if decision else ApprovalOutcome.DENIED

            decision_task = asyncio.ensure_future(wait)
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            done, _ = await asyncio.wait(
                {decision_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if decision_task not in done:
                decision_task.cancel()
                try:
                    await decision_task
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass
                return ApprovalOutcome.CANCELLED
            try:
                decision = decision_task.result()
            except asyncio.TimeoutError:
                return ApprovalOutcome.TIMED_OUT
            return ApprovalOutcome.APPROVED if decision else ApprovalOutcome.DENIED
        finally:
            self._pending = False
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
            self._drain()

    async def request(
        self,
        tool: str,
        args_preview: str,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        """True only for an explicit approval; timeout and cancellation deny."""
        outcome = await self.request_decision(tool, args_preview, timeout, cancel_event)
        return outcome is ApprovalOutcome.APPROVED
