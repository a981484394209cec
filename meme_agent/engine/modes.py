"""Operating-mode state machine: IDLE, CHAT and AUTO.

All transitions go through ``transition()`` and the table below.
Leaving AUTO (or pausing it) cancels the scheduler, which advances the
cycle epoch; entering AUTO (or resuming) advances the epoch and starts
the scheduler.  The epoch always moves before any mode callback or
subscriber runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from meme_agent.engine.scheduler import CycleFn, ResultFn, Scheduler
from meme_agent.errors import AgentError, ModeTransitionError
from meme_agent.observability.logger import get_logger

log = get_logger(__name__)


class Mode(str, Enum):
    IDLE = "idle"
    CHAT = "chat"
    AUTO = "auto"


_ALLOWED: dict[Mode, frozenset[Mode]] = {
    Mode.IDLE: frozenset({Mode.IDLE, Mode.CHAT, Mode.AUTO}),
    Mode.CHAT: frozenset({Mode.IDLE, Mode.AUTO}),
    Mode.AUTO: frozenset({Mode.IDLE, Mode.CHAT}),
}


@dataclass
class CommandResponse:
    ok: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)


CommandHandler = Callable[[list[str]], Awaitable[CommandResponse]]


@dataclass(frozen=True)
class Command:
    name: str
    handler: CommandHandler
    help: str = ""
    usage: str = ""


@dataclass
class ModeSpec:
    welcome: str = ""
    on_enter: Callable[[], None] | None = None
    on_exit: Callable[[], None] | None = None
    commands: dict[str, Command] = field(default_factory=dict)

    def add(self, command: Command) -> "ModeSpec":
        self.commands[command.name] = command
        return self


@dataclass(frozen=True)
class ModeChanged:
    previous: Mode
    current: Mode
    epoch: int
    reason: str = ""


class ModeController:
    def __init__(
        self,
        scheduler: Scheduler,
        *,
        interval_secs: float,
        cycle_fn: CycleFn,
        on_result: ResultFn | None = None,
        specs: dict[Mode, ModeSpec] | None = None,
    ):
        self._scheduler = scheduler
        self._interval = interval_secs
        self._cycle_fn = cycle_fn
        self._on_result = on_result
        self._specs: dict[Mode, ModeSpec] = {m: ModeSpec() for m in Mode}
        self._specs.update(specs or {})
        self._mode = Mode.IDLE
        self._paused = False
        self._listeners: list[Callable[[ModeChanged], None]] = []

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def epoch(self) -> int:
        return self._scheduler.epoch.current

    def spec(self, mode: Mode | None = None) -> ModeSpec:
        return self._specs[mode or self._mode]

    def set_spec(self, mode: Mode, spec: ModeSpec) -> None:
        self._specs[mode] = spec

    def subscribe(self, listener: Callable[[ModeChanged], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ── transitions ──────────────────────────────────────────────────

    def enter_chat(self) -> None:
        self.transition(Mode.CHAT)

    def enter_auto(self) -> None:
        self.transition(Mode.AUTO)

    def stop(self) -> None:
        self.transition(Mode.IDLE)

    def transition(self, target: Mode) -> None:
        previous = self._mode
        if target not in _ALLOWED[previous]:
            raise ModeTransitionError(f"Cannot switch from {previous.value} to {target.value}")

        if previous is Mode.AUTO or target is Mode.IDLE:
            self._scheduler.cancel()
        if target is Mode.AUTO:
            self._scheduler.epoch.advance()

        self._run_hook(self._specs[previous].on_exit, "on_exit", previous)
        self._mode = target
        self._paused = False
        if target is Mode.AUTO:
            self._start_loop()
        self._run_hook(self._specs[target].on_enter, "on_enter", target)

        log.info("mode.changed", previous=previous.value, current=target.value, epoch=self.epoch)
        self._publish(ModeChanged(previous=previous, current=target, epoch=self.epoch))

    def pause(self) -> None:
        if self._mode is not Mode.AUTO:
            raise ModeTransitionError("pause is only available in auto mode")
        if self._paused:
            raise ModeTransitionError("auto mode is already paused")
        self._scheduler.cancel()
        self._paused = True
        log.info("mode.paused", epoch=self.epoch)
        self._publish(ModeChanged(Mode.AUTO, Mode.AUTO, self.epoch, reason="paused"))

    def resume(self) -> None:
        if self._mode is not Mode.AUTO:
            raise ModeTransitionError("resume is only available in auto mode")
        if not self._paused:
            raise ModeTransitionError("auto mode is not paused")
        self._scheduler.epoch.advance()
        self._paused = False
        self._start_loop()
        log.info("mode.resumed", epoch=self.epoch)
        self._publish(ModeChanged(Mode.AUTO, Mode.AUTO, self.epoch, reason="resumed"))

    # ── commands ─────────────────────────────────────────────────────

    def commands(self) -> dict[str, Command]:
        return dict(self._specs[self._mode].commands)

    async def dispatch(self, name: str, args: list[str] | None = None) -> CommandResponse:
        """Run a command of the current mode; errors become short messages."""
        command = self._specs[self._mode].commands.get(name.lower())
        if command is None:
            return CommandResponse(
                ok=False,
                message=f"Unknown command '{name}' in {self._mode.value} mode. Try 'help'.",
            )
        try:
            return await command.handler(list(args or []))
        except AgentError as e:
            log.warning("mode.command_failed", command=name, mode=self._mode.value, error=str(e))
            return CommandResponse(ok=False, message=str(e))

    # ── internals ────────────────────────────────────────────────────

    def _start_loop(self) -> None:
        self._scheduler.start(self._interval, self._cycle_fn, on_result=self._on_result)

    def _run_hook(self, hook: Callable[[], None] | None, kind: str, mode: Mode) -> None:
        if hook is None:
            return
        try:
            hook()
        except Exception as e:
            log.error("mode.hook_failed", hook=kind, mode=mode.value, error=str(e))

    def _publish(self, event: ModeChanged) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.warning("mode.listener_error", error=str(e))
