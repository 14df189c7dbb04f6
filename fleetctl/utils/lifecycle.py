"""Ordered startup and shutdown of background services."""

import atexit
import logging
import signal
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from types import FrameType

from fleetctl.config import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class _StartupStep:
    name: str
    callback: Callable[[], None]
    depends_on: tuple[str, ...]
    dependents: list[int] = field(default_factory=list)


class LifecycleCoordinator:
    """Runs startup steps in dependency order and shutdown hooks in reverse.

    Steps are stored in a list and refer to each other by index once
    resolved, so ordering is a plain Kahn topological sort over integers.
    Registration order breaks ties, which keeps startup deterministic.
    """

    def __init__(self, graceful_shutdown_timeout: int = 30) -> None:
        self.graceful_shutdown_timeout = graceful_shutdown_timeout
        self._steps: list[_StartupStep] = []
        self._index: dict[str, int] = {}
        self._shutdown_hooks: list[tuple[str, Callable[[], None]]] = []
        self._lock = threading.Lock()
        self._started = False
        self._shutdown_called = False

    def register_startup(
        self,
        name: str,
        callback: Callable[[], None],
        depends_on: Iterable[str] = (),
    ) -> None:
        """Register a named startup step that runs after its dependencies."""
        if name in self._index:
            raise ConfigurationError(f"Startup step '{name}' is registered twice")
        self._index[name] = len(self._steps)
        self._steps.append(_StartupStep(name, callback, tuple(depends_on)))

    def register_shutdown(self, name: str, callback: Callable[[], None]) -> None:
        """Register a shutdown hook; hooks run in reverse registration order."""
        self._shutdown_hooks.append((name, callback))

    def startup_order(self) -> list[str]:
        """Resolve the startup order.

        Raises:
            ConfigurationError: On unknown dependencies or dependency cycles
        """
        in_degree = [0] * len(self._steps)
        for step in self._steps:
            step.dependents.clear()

        for index, step in enumerate(self._steps):
            for dependency in step.depends_on:
                dep_index = self._index.get(dependency)
                if dep_index is None:
                    raise ConfigurationError(
                        f"Startup step '{step.name}' depends on unknown step '{dependency}'"
                    )
                self._steps[dep_index].dependents.append(index)
                in_degree[index] += 1

        ready = [i for i, degree in enumerate(in_degree) if degree == 0]
        order: list[int] = []
        while ready:
            ready.sort()
            current = ready.pop(0)
            order.append(current)
            for dependent in self._steps[current].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(self._steps):
            stuck = sorted(self._steps[i].name for i, degree in enumerate(in_degree) if degree > 0)
            raise ConfigurationError(f"Startup dependency cycle between: {', '.join(stuck)}")

        return [self._steps[i].name for i in order]

    def start(self) -> None:
        """Run all startup steps once, in dependency order."""
        with self._lock:
            if self._started:
                return
            order = self.startup_order()
            self._started = True

        for name in order:
            logger.info("Starting %s", name)
            self._steps[self._index[name]].callback()

        atexit.register(self.shutdown)

    def install_signal_handlers(self) -> None:
        """Shut down cleanly on SIGTERM (container stop)."""
        signal.signal(signal.SIGTERM, self._handle_sigterm)

    def _handle_sigterm(self, signum: int, frame: FrameType | None) -> None:
        logger.info("Received signal %d, shutting down", signum)
        self.shutdown()
        raise SystemExit(0)

    def shutdown(self) -> None:
        """Run shutdown hooks in reverse order. Safe to call multiple times."""
        with self._lock:
            if self._shutdown_called:
                return
            self._shutdown_called = True

        deadline = time.perf_counter() + self.graceful_shutdown_timeout
        for name, callback in reversed(self._shutdown_hooks):
            if time.perf_counter() > deadline:
                logger.warning("Graceful shutdown timeout exceeded, skipping %s", name)
                continue
            try:
                callback()
            except Exception as e:
                logger.error("Error shutting down %s: %s", name, e)
