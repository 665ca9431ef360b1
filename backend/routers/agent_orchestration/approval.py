"""
CSR Approval Gate - human-in-the-loop consent for sensitive tool calls

Each request is a correlation entry keyed by request id with:
- a Future the agent loop awaits
- a cancellable loop.call_later deadline

Whichever of manual resolve() and deadline expiry runs first performs the
single transition out of "pending"; the other finds a resolved request and
does nothing. All transitions run on the event loop thread.

Timeout policy:
- "reject" (default): a timed-out request denies the tool call
- "approve": a timed-out request lets the tool call proceed
"""

import asyncio
import inspect
import logging
import time
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from errors import ConfigurationError, NotFoundError
from logging_config import log_approval

from .types import ApprovalRequest, ApprovalResolution

logger = logging.getLogger(__name__)

# listener(event, request) where event is "requested" or "resolved"
ApprovalListener = Callable[[str, ApprovalRequest], Union[None, Awaitable[None]]]

TIMEOUT_POLICIES = ("reject", "approve")


class ApprovalGate:
    def __init__(self, default_timeout: float = 30.0, timeout_policy: str = "reject", max_history: int = 500):
        """
        Args:
            default_timeout: Seconds before a pending request auto-resolves to timed_out
            timeout_policy: "reject" or "approve"; whether timed_out lets the tool run
            max_history: Resolved requests retained for lookup
        """
        if timeout_policy not in TIMEOUT_POLICIES:
            raise ConfigurationError(
                f"Unknown approval timeout policy: {timeout_policy}",
                details=f"Expected one of {TIMEOUT_POLICIES}",
            )
        self.default_timeout = default_timeout
        self.timeout_policy = timeout_policy
        self.max_history = max_history

        self._requests: "OrderedDict[str, ApprovalRequest]" = OrderedDict()
        self._futures: Dict[str, asyncio.Future] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._listeners: List[ApprovalListener] = []
        self._listener_tasks: set = set()

    # === Requests ===

    def request(
        self,
        tool_name: str,
        args: Dict[str, Any],
        timeout: Optional[float] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """Open an approval request and start its deadline. Returns the request id."""
        loop = asyncio.get_running_loop()
        timeout = self.default_timeout if timeout is None else timeout

        now = time.time()
        request_id = f"apr-{uuid.uuid4().hex[:12]}"
        req = ApprovalRequest(
            id=request_id,
            tool_name=tool_name,
            args=dict(args),
            created_at=now,
            deadline=now + timeout,
            session_id=session_id,
        )
        self._requests[request_id] = req
        self._futures[request_id] = loop.create_future()
        self._timers[request_id] = loop.call_later(timeout, self._expire, request_id)

        log_approval(logger, request_id, "requested", tool_name=tool_name)
        self._notify("requested", req)
        return request_id

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        return self._requests.get(request_id)

    def pending(self, session_id: Optional[str] = None) -> List[ApprovalRequest]:
        return [
            r for r in self._requests.values()
            if r.is_pending and (session_id is None or r.session_id == session_id)
        ]

    def resolve(self, request_id: str, approved: bool, approved_by: Optional[str] = None) -> bool:
        """Manually approve or reject.

        Returns:
            True if this call performed the transition, False if the request
            was unknown or already resolved (including by deadline).
        """
        req = self._requests.get(request_id)
        if req is None:
            logger.warning(f"Approval {request_id} not found")
            return False
        if not req.is_pending:
            logger.info(f"Approval {request_id} already {req.resolution.value}, ignoring resolve")
            return False

        timer = self._timers.pop(request_id, None)
        if timer is not None:
            timer.cancel()

        resolution = ApprovalResolution.APPROVED if approved else ApprovalResolution.REJECTED
        return self._transition(request_id, resolution, approved_by or "unknown")

    async def wait(self, request_id: str) -> ApprovalRequest:
        """Suspend until the request is resolved (manually or by deadline)."""
        req = self._requests.get(request_id)
        if req is None:
            raise NotFoundError(f"Approval request not found: {request_id}", resource_type="approval",
                                resource_id=request_id)
        if not req.is_pending:
            return req
        # Shielded so a cancelled waiter leaves the request to its deadline
        return await asyncio.shield(self._futures[request_id])

    def allows(self, request: ApprovalRequest) -> bool:
        """Whether a resolved request lets the tool execute under the current policy."""
        if request.resolution == ApprovalResolution.APPROVED:
            return True
        if request.resolution == ApprovalResolution.TIMED_OUT:
            return self.timeout_policy == "approve"
        return False

    # === Listeners ===

    def subscribe(self, listener: ApprovalListener) -> Callable[[], None]:
        """Register a listener for request/resolve events. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def stats(self) -> Dict[str, Any]:
        return {
            "pending": len(self.pending()),
            "tracked": len(self._requests),
            "timeoutPolicy": self.timeout_policy,
            "defaultTimeout": self.default_timeout,
        }

    # === Internal ===

    def _expire(self, request_id: str) -> None:
        self._timers.pop(request_id, None)
        self._transition(request_id, ApprovalResolution.TIMED_OUT, None)

    def _transition(self, request_id: str, resolution: ApprovalResolution, resolved_by: Optional[str]) -> bool:
        req = self._requests.get(request_id)
        if req is None or not req.is_pending:
            return False

        req.resolution = resolution
        req.resolved_by = resolved_by
        req.resolved_at = time.time()

        future = self._futures.pop(request_id, None)
        if future is not None and not future.done():
            future.set_result(req)

        log_approval(logger, request_id, resolution.value, tool_name=req.tool_name, by=resolved_by or "")
        self._notify("resolved", req)
        self._trim_history()
        return True

    def _notify(self, event: str, req: ApprovalRequest) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event, req)
            except Exception as e:
                logger.warning(f"Approval listener failed on {event} {req.id}: {e}", exc_info=True)
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Approval listener failed: {task.exception()}")

    def _trim_history(self) -> None:
        resolved = [rid for rid, r in self._requests.items() if not r.is_pending]
        for rid in resolved[: max(0, len(resolved) - self.max_history)]:
            del self._requests[rid]
