"""
The batch deadline shared by every in-flight operation.

This module provides a context manager that turns a configured timeout, and
the POSIX signals SIGINT and SIGTERM, into a single `asyncio.Event`. Every
remote call of a batch is bound to that event so the whole batch can be
aborted uniformly.
"""

import asyncio
import logging
import os
import signal
from types import FrameType
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar

from bucket_relay.exceptions import DeadlineExceeded

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

_SignalHandler = Callable[[int, Optional[FrameType]], None]


class BatchDeadline:
    """
    A single, irreversible cancellation signal for a copy batch.

    Used as an async context manager, it arms a timer when a positive timeout
    is configured and captures SIGINT and SIGTERM. The first of the timer, a
    signal or an explicit `fire` wins; a second signal triggers an immediate,
    forceful exit. Previous signal handlers are restored on exit.
    """

    def __init__(self, timeout_s: float = 0, handle_signals: bool = True) -> None:
        """
        Initialize the deadline.

        Args:
            timeout_s (float): Seconds from batch start until the deadline
                fires. Zero or less disables the timer.
            handle_signals (bool): Whether to translate SIGINT/SIGTERM into
                an early deadline.
        """
        self._timeout_s: float = timeout_s
        self._handle_signals: bool = handle_signals
        self._event: asyncio.Event = asyncio.Event()
        self._reason: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._signalled: bool = False
        self._old_handlers: Dict[signal.Signals, _SignalHandler] = {}

    @property
    def expired(self) -> bool:
        """Whether the deadline has fired."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """Why the deadline fired, or None while it is pending."""
        return self._reason

    def fire(self, reason: str = "batch cancelled") -> None:
        """
        Fires the deadline. Only the first call has any effect.

        Args:
            reason (str): A human-readable cause, reported by aborted operations.
        """
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.warning(f"Batch deadline fired: {reason}.")

    async def wait(self) -> None:
        """Suspends until the deadline fires."""
        await self._event.wait()

    async def bound(self, aw: Awaitable[T]) -> T:
        """
        Runs an awaitable bound to the deadline.

        Args:
            aw (Awaitable[T]): The operation to run.

        Returns:
            T: The result of the operation, if it completes first.

        Raises:
            DeadlineExceeded: If the deadline had already fired, in which case
                the operation is never started, or fires before it completes,
                in which case it is cancelled.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise DeadlineExceeded(self._reason or "deadline exceeded")

        task: "asyncio.Future[T]" = asyncio.ensure_future(aw)
        fired: "asyncio.Task[bool]" = asyncio.create_task(self._event.wait())
        try:
            await asyncio.wait({task, fired}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            fired.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise DeadlineExceeded(self._reason or "deadline exceeded")

    def start(self) -> None:
        """Arms the timer. Called on context entry, i.e. at batch start."""
        if self._timeout_s > 0 and self._timer is None:
            loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
            self._timer = loop.call_later(
                self._timeout_s,
                self.fire,
                f"timeout of {self._timeout_s:g}s elapsed",
            )
            logger.debug(f"Batch deadline armed for {self._timeout_s:g}s.")

    def cancel_timer(self) -> None:
        """Disarms the timer, if armed."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def __aenter__(self) -> "BatchDeadline":
        """
        Arms the timer and registers signal handlers.

        Returns:
            BatchDeadline: This deadline.
        """
        self.start()
        if not self._handle_signals:
            return self

        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        signals_to_handle: Set[signal.Signals] = {
            signal.SIGINT,
            signal.SIGTERM,
        }

        def _handler(sig: int, _: Optional[FrameType]) -> None:
            """
            Handles shutdown signals.

            The first signal fires the deadline, any subsequent signal
            triggers an immediate, forceful exit.
            """
            if self._signalled:
                logger.critical(
                    "Received second shutdown signal. Forcing immediate exit."
                )
                os._exit(1)
            self._signalled = True
            loop.call_soon_threadsafe(
                self.fire, f"received signal {signal.strsignal(sig)}"
            )

        for sig in signals_to_handle:
            try:
                # signal.signal must be called from the main thread
                self._old_handlers[sig] = signal.signal(sig, _handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not set handler for {sig.name}: {e}")

        return self

    async def __aexit__(self, *args: Any) -> None:
        """Disarms the timer and restores original signal handlers."""
        self.cancel_timer()
        for sig, handler in self._old_handlers.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not restore handler for {sig.name}: {e}")
        self._old_handlers.clear()
