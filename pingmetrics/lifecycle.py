"""Process lifecycle: run units together, stop them together.

A Group runs each registered unit on its own thread. The first unit to return,
cleanly or by raising, makes the group interrupt every other unit once; run()
then waits for all of them and re-raises the first failure, if any.
"""
from __future__ import annotations

import logging
import queue
import signal
import socket
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Tuple

import uvicorn

from .config import split_listen_address

_LOGGER = logging.getLogger(__name__)

Execute = Callable[[], None]
Interrupt = Callable[[Optional[BaseException]], None]


class ServerError(Exception):
    """The HTTP server could not start or stopped on its own."""


class UnitExit(Exception):
    """A unit left through SystemExit or another non-Exception BaseException."""


@dataclass
class Unit:
    name: str
    execute: Execute
    interrupt: Interrupt


class Group:
    """A set of units that terminate together."""

    def __init__(self) -> None:
        self._units: List[Unit] = []

    def __len__(self) -> int:
        return len(self._units)

    def add(self, execute: Execute, interrupt: Interrupt, name: str | None = None) -> None:
        self._units.append(Unit(name or f"unit-{len(self._units)}", execute, interrupt))

    def run(self) -> None:
        """Block until every unit has returned; raise the first error seen."""
        if not self._units:
            return

        done: "queue.Queue[Tuple[Unit, Optional[BaseException]]]" = queue.Queue()
        threads = []
        for unit in self._units:
            thread = threading.Thread(
                target=self._execute, args=(unit, done), name=unit.name, daemon=True
            )
            thread.start()
            threads.append(thread)

        first, error = done.get()
        _LOGGER.info("%s finished, stopping %d other unit(s)", first.name, len(self._units) - 1)
        for unit in self._units:
            if unit is not first:
                self._interrupt(unit, error)

        for _ in range(len(self._units) - 1):
            _, unit_error = done.get()
            if error is None:
                error = unit_error
        for thread in threads:
            thread.join()

        if error is not None:
            raise error

    @staticmethod
    def _execute(unit: Unit, done: "queue.Queue[Tuple[Unit, Optional[BaseException]]]") -> None:
        error: Optional[BaseException] = None
        try:
            unit.execute()
        except Exception as exc:
            error = exc
        except BaseException as exc:
            # uvicorn calls sys.exit() on some startup failures.
            error = UnitExit(f"{unit.name} exited: {exc!r}")
            error.__cause__ = exc
        done.put((unit, error))

    @staticmethod
    def _interrupt(unit: Unit, error: Optional[BaseException]) -> None:
        try:
            unit.interrupt(error)
        except Exception:
            _LOGGER.exception("Failed to stop %s", unit.name)


class SignalWatcher:
    """Unit that returns once SIGINT/SIGTERM arrives.

    Handlers can only be installed from the main thread, so they are set when
    the context is entered and restored when it exits.
    """

    def __init__(self, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)) -> None:
        self.signals = tuple(signals)
        self.received: Optional[int] = None
        self._done = threading.Event()
        self._previous: dict = {}

    def __enter__(self) -> "SignalWatcher":
        for signum in self.signals:
            self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def _handle(self, signum: int, frame: Any) -> None:
        self.received = signum
        self._done.set()

    def execute(self) -> None:
        self._done.wait()
        if self.received is not None:
            _LOGGER.info("Received signal %s, shutting down", signal.Signals(self.received).name)

    def interrupt(self, error: Optional[BaseException] = None) -> None:
        self._done.set()


class HTTPServer:
    """Unit serving an ASGI app with uvicorn until interrupted."""

    def __init__(self, app: Any, listen_address: str) -> None:
        self.listen_address = listen_address
        self.host, self.port = split_listen_address(listen_address)
        self.config = uvicorn.Config(app, host=self.host or "0.0.0.0", port=self.port, log_config=None)
        self.server = uvicorn.Server(self.config)
        self._interrupted = threading.Event()

    def bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        if not self.host and socket.has_dualstack_ipv6():
            return socket.create_server(
                ("", self.port), family=socket.AF_INET6, dualstack_ipv6=True
            )
        return socket.create_server((self.host, self.port), family=family)

    def execute(self) -> None:
        try:
            sock = self.bind()
        except OSError as exc:
            raise ServerError(f"starting web server on {self.listen_address}: {exc}") from exc

        try:
            if self._interrupted.is_set():
                return
            _LOGGER.info("ping listening on %s", self.listen_address)
            # Not on the main thread, so uvicorn leaves signal handling to us.
            self.server.run(sockets=[sock])
        finally:
            sock.close()

        if not self.server.started and not self._interrupted.is_set():
            raise ServerError("web server exited before it started serving")

    def interrupt(self, error: Optional[BaseException] = None) -> None:
        self._interrupted.set()
        # Close immediately; in-flight requests are not drained.
        self.server.should_exit = True
        self.server.force_exit = True
