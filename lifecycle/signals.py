"""
Keystone - Process Signal Wiring

The orchestrator never touches OS-global handlers directly; it is handed a
SignalAdapter and asks it to install callbacks once startup succeeded.

    on_signal(name)   termination signal received (SIGTERM, SIGINT, SIGHUP)
    on_crash(error)   uncaught exception or unhandled task error

ProcessSignalAdapter binds those callbacks to the running event loop and the
interpreter. Tests inject a recording adapter and trigger the callbacks
themselves.
"""
from __future__ import annotations

import asyncio
import signal
import sys
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from observability.logging import get_logger

logger = get_logger("keystone.lifecycle.signals")

SignalCallback = Callable[[str], Awaitable[None]]
CrashCallback = Callable[[BaseException], Awaitable[None]]

DEFAULT_TERMINATION_SIGNALS = ("SIGTERM", "SIGINT", "SIGHUP")


class SignalAdapter(ABC):
    """Boundary between the orchestrator and process-level events."""

    @abstractmethod
    def install(self, on_signal: SignalCallback, on_crash: CrashCallback) -> None:
        """Start delivering termination signals and crashes to the callbacks."""

    @abstractmethod
    def uninstall(self) -> None:
        """Stop delivering events and restore whatever was there before."""

    @abstractmethod
    def exit(self, code: int) -> None:
        """Terminate the process with ``code``."""


class ProcessSignalAdapter(SignalAdapter):
    """
    SignalAdapter backed by the real process.

    Signals are bound with ``loop.add_signal_handler`` (not available on
    Windows, where only crash handling is installed). Crashes are caught via
    ``sys.excepthook`` and the loop's exception handler.
    """

    def __init__(
        self,
        signals: Sequence[str] = DEFAULT_TERMINATION_SIGNALS,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.signals = tuple(signals)
        self._loop = loop
        self._on_signal: Optional[SignalCallback] = None
        self._on_crash: Optional[CrashCallback] = None
        self._bound: List[signal.Signals] = []
        self._previous_excepthook: Optional[Callable[..., Any]] = None
        self._previous_loop_handler: Optional[Callable[..., Any]] = None
        self._tasks: Set[asyncio.Task] = set()
        self._crashed = False
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self, on_signal: SignalCallback, on_crash: CrashCallback) -> None:
        if self._installed:
            self.uninstall()

        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        self._on_signal = on_signal
        self._on_crash = on_crash

        if sys.platform != "win32":
            for name in self.signals:
                sig = getattr(signal, name, None)
                if sig is None:
                    logger.warning("Unknown signal, not installing handler", signal=name)
                    continue
                loop.add_signal_handler(sig, self._dispatch_signal, name)
                self._bound.append(sig)

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook
        self._previous_loop_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._loop_exception_handler)

        self._installed = True
        logger.info(
            "Process handlers installed",
            signals=[s.name for s in self._bound],
        )

    def uninstall(self) -> None:
        if not self._installed:
            return

        loop = self._loop
        if loop is not None and not loop.is_closed():
            for sig in self._bound:
                loop.remove_signal_handler(sig)
            loop.set_exception_handler(self._previous_loop_handler)
        self._bound = []

        if sys.excepthook == self._excepthook:
            sys.excepthook = self._previous_excepthook or sys.__excepthook__
        self._previous_excepthook = None
        self._previous_loop_handler = None
        self._crashed = False
        self._installed = False
        logger.debug("Process handlers removed")

    def exit(self, code: int) -> None:
        sys.exit(code)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _dispatch_signal(self, name: str) -> None:
        logger.info("Termination signal received", signal=name)
        if self._on_signal is not None:
            self._spawn(self._on_signal(name))

    def _dispatch_crash(self, error: BaseException) -> bool:
        if self._crashed or self._on_crash is None:
            return False
        self._crashed = True
        self._spawn(self._on_crash(error))
        return True

    def _loop_exception_handler(
        self,
        loop: asyncio.AbstractEventLoop,
        context: Dict[str, Any],
    ) -> None:
        if self._previous_loop_handler is not None:
            self._previous_loop_handler(loop, context)
        else:
            loop.default_exception_handler(context)

        error = context.get("exception")
        if error is not None:
            self._dispatch_crash(error)

    def _excepthook(self, exc_type, exc, tb) -> None:
        if self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc, tb)

        if issubclass(exc_type, KeyboardInterrupt) or self._crashed or self._on_crash is None:
            return

        self._crashed = True
        loop = self._loop
        if loop is not None and loop.is_running():
            self._spawn(self._on_crash(exc))
            return

        # The loop is gone; run the emergency shutdown on a fresh one.
        # The interpreter exits with status 1 once this hook returns.
        try:
            asyncio.run(self._on_crash(exc))
        except SystemExit:
            pass
