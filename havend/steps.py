"""Multi-step command state machine.

A :class:`CommandFlow` walks an ordered list of step handlers. Each raw
input line goes to ``steps[cursor]``, and the handler's :class:`StepResult`
decides what happens next: advance, hold (re-prompt on the same step),
rewind to the fallback step, or finish. Reaching the end of the steps
completes the flow; a cancel token cancels it. Either way the flow's
``data`` bag is cleared.

:class:`CommandEngine` owns at most one active flow for one owner (a
connection) and processes one input at a time. Input that arrives while
no flow is active is handed to the one-shot command handler instead.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from .constants import CANCEL_TOKENS


class Action(enum.Enum):
    ADVANCE = "advance"
    HOLD = "hold"
    REWIND = "rewind"
    DONE = "done"


class FlowState(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    action: Action
    lines: list[str] = field(default_factory=list)

    @classmethod
    def advance(cls, *lines: str) -> StepResult:
        return cls(Action.ADVANCE, list(lines))

    @classmethod
    def hold(cls, *lines: str) -> StepResult:
        return cls(Action.HOLD, list(lines))

    @classmethod
    def rewind(cls, *lines: str) -> StepResult:
        return cls(Action.REWIND, list(lines))

    @classmethod
    def done(cls, *lines: str) -> StepResult:
        return cls(Action.DONE, list(lines))


StepHandler = Callable[[Any, "CommandFlow", str], StepResult]


class CommandFlow:
    def __init__(
        self,
        name: str,
        steps: Sequence[StepHandler],
        *,
        owner: Any = None,
        fallback: int = 0,
    ) -> None:
        if not steps:
            raise ValueError("a flow needs at least one step")
        if not 0 <= fallback < len(steps):
            raise ValueError("fallback must index a step")
        self.name = name
        self.steps = list(steps)
        self.owner = owner
        self.fallback = fallback
        self.cursor = 0
        self.data: dict[str, Any] = {}
        self.state = FlowState.ACTIVE

    @property
    def active(self) -> bool:
        return self.state is FlowState.ACTIVE

    def feed(self, line: str) -> StepResult:
        if not self.active:
            raise RuntimeError(f"flow {self.name} is {self.state.value}")
        try:
            result = self.steps[self.cursor](self.owner, self, line)
        except Exception:
            # Effects of earlier steps stay; the flow itself is over.
            self.cancel()
            raise

        if result.action is Action.ADVANCE:
            self.cursor += 1
            if self.cursor >= len(self.steps):
                self._finish(FlowState.COMPLETED)
        elif result.action is Action.REWIND:
            self.cursor = self.fallback
        elif result.action is Action.DONE:
            self._finish(FlowState.COMPLETED)
        return result

    def cancel(self) -> None:
        if self.active:
            self._finish(FlowState.CANCELLED)

    def _finish(self, state: FlowState) -> None:
        self.state = state
        self.data.clear()


@dataclass(frozen=True)
class Command:
    name: str
    help: str = ""
    func: Callable[[Any, list[str]], list[str]] | None = None
    steps: tuple[StepHandler, ...] = ()
    fallback: int = 0

    @property
    def multi_step(self) -> bool:
        return bool(self.steps)


@dataclass
class EngineOutput:
    lines: list[str]
    command: str | None = None
    active: bool = False


class CommandEngine:
    def __init__(
        self,
        owner: Any,
        commands: Mapping[str, Command],
        *,
        authorize: Callable[[Any, str], None] | None = None,
        cancel_tokens: Sequence[str] = CANCEL_TOKENS,
    ) -> None:
        self.owner = owner
        self.commands = commands
        self.authorize = authorize
        self.cancel_tokens = tuple(t.lower() for t in cancel_tokens)
        self.flow: CommandFlow | None = None
        self.log = logging.getLogger("havend.commands")
        self._lock = threading.Lock()
        # Pairs the end of a feed with cancel(); never held during a step.
        self._cancel_lock = threading.Lock()
        self._cancel_requested = False

    def feed(self, line: str) -> EngineOutput:
        self._lock.acquire()
        cancelled = False
        try:
            if self.flow is not None and self.flow.active:
                out = self._feed_flow(self.flow, line)
            else:
                self.flow = None
                out = self._dispatch(line)
        finally:
            with self._cancel_lock:
                # cancel() arrived from another thread while the step ran.
                if self._cancel_requested:
                    self._cancel_requested = False
                    self._drop_flow()
                    cancelled = True
                self._lock.release()
        if cancelled:
            out.active = False
        return out

    def _feed_flow(self, flow: CommandFlow, line: str) -> EngineOutput:
        if line.strip().lower() in self.cancel_tokens:
            flow.cancel()
            self.flow = None
            return EngineOutput(["Cancelled"], flow.name, False)

        try:
            result = flow.feed(line)
        finally:
            if not flow.active:
                self.flow = None
        return EngineOutput(result.lines, flow.name, flow.active)

    def _dispatch(self, line: str) -> EngineOutput:
        parts = line.split()
        if not parts:
            return EngineOutput([])
        name, args = parts[0].lower(), parts[1:]
        command = self.commands.get(name)
        if command is None:
            return EngineOutput([f"{name}: command not found"], None, False)

        if self.authorize is not None:
            self.authorize(self.owner, command.name)

        if not command.multi_step:
            if command.func is None:
                raise ValueError(f"command {command.name} has neither steps nor a handler")
            return EngineOutput(command.func(self.owner, args), command.name, False)

        flow = CommandFlow(command.name, command.steps, owner=self.owner, fallback=command.fallback)
        self.flow = flow
        self.log.debug("Flow started command=%s", command.name)
        return self._feed_flow(flow, " ".join(args))

    def cancel(self) -> bool:
        """Cancel the active flow.

        Never waits for a running step: when another thread is inside
        :meth:`feed`, the flow is cancelled as soon as that step returns.
        """
        with self._cancel_lock:
            if not self._lock.acquire(blocking=False):
                self._cancel_requested = True
                return True
        try:
            return self._drop_flow()
        finally:
            self._lock.release()

    def _drop_flow(self) -> bool:
        flow, self.flow = self.flow, None
        if flow is None or not flow.active:
            return False
        flow.cancel()
        return True
