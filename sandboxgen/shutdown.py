"""Process-wide registry of cleanup actions run once at shutdown.

Restoration of shared configuration happens primarily at the call site
(see ``config_guard``).  The hooks registered here are the backstop for
the process ending before that code runs, including SIGTERM/SIGHUP once
``install()`` has been called.
A SIGKILL still bypasses them.
"""

from __future__ import annotations

import atexit
import signal
import threading
from typing import Callable

from rich.markup import escape

from sandboxgen.utils import console

ShutdownHook = Callable[[], None]


class ShutdownHooks:
    """Ordered list of zero-argument cleanup actions.

    ``run()`` invokes every registered hook exactly once, in registration
    order.  A hook that raises is reported and the remaining hooks still
    run.  Later calls to ``run()`` only see hooks registered since.
    """

    def __init__(self) -> None:
        self._hooks: list[ShutdownHook] = []
        self._lock = threading.Lock()
        self._installed = False

    def __len__(self) -> int:
        return len(self._hooks)

    def register(self, hook: ShutdownHook) -> Callable[[], None]:
        """Append *hook* and return a callable that unregisters it."""
        with self._lock:
            self._hooks.append(hook)

        def remove() -> None:
            self.discard(hook)

        return remove

    def discard(self, hook: ShutdownHook) -> None:
        with self._lock:
            # Identity match; equal-comparing callables are distinct hooks.
            for index, registered in enumerate(self._hooks):
                if registered is hook:
                    del self._hooks[index]
                    return

    def run(self) -> None:
        with self._lock:
            hooks, self._hooks = self._hooks, []

        for hook in hooks:
            try:
                hook()
            except Exception as exc:
                console.print(
                    f"[bold red]Shutdown hook failed:[/bold red] {escape(str(exc))}"
                )

    def install(self) -> None:
        """Run the hooks at interpreter exit and on SIGTERM/SIGHUP.

        The signals are turned into ``SystemExit`` so pending ``finally``
        blocks unwind before ``atexit`` fires.  Only the main thread may
        install signal handlers; elsewhere only ``atexit`` is wired.
        """
        if self._installed:
            return
        self._installed = True
        atexit.register(self.run)

        if threading.current_thread() is not threading.main_thread():
            return
        for signame in ("SIGTERM", "SIGHUP"):
            signum = getattr(signal, signame, None)
            if signum is not None:
                signal.signal(signum, _exit_on_signal)


def _exit_on_signal(signum: int, frame: object) -> None:
    raise SystemExit(128 + signum)


shutdown_hooks = ShutdownHooks()


def before_shutdown(hook: ShutdownHook) -> Callable[[], None]:
    """Register *hook* on the process-wide registry."""
    return shutdown_hooks.register(hook)
