import asyncio
from typing import Any, Awaitable, Optional


_RAISE = object()


class CommandCancelled(Exception):
    """Raised at a suspension point once the command's cancel signal has fired."""


class OperationTimeout(Exception):
    def __init__(self, timeout_s: Optional[float]):
        super().__init__(f"timed out after {timeout_s}s")
        self.timeout_s = timeout_s


class CancelSignal:
    """Cooperative cancellation flag shared by everything awaited for one command."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CommandCancelled()

    async def wait(self) -> None:
        await self._event.wait()


def _consume_result(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        task.exception()


async def run_with_timeout(
    aw: Awaitable[Any],
    timeout_s: Optional[float] = None,
    *,
    signal: Optional[CancelSignal] = None,
    fallback: Any = _RAISE,
    interrupt: bool = True,
) -> Any:
    """Await ``aw`` under an optional wall-clock timeout while watching ``signal``.

    Timeout returns ``fallback`` when one is given, otherwise raises
    OperationTimeout. A fired signal raises CommandCancelled. With
    ``interrupt=False`` the awaited work is left running on cancellation or
    timeout instead of being cancelled.
    """
    task = asyncio.ensure_future(aw)
    if signal is not None and signal.cancelled:
        if interrupt:
            task.cancel()
        task.add_done_callback(_consume_result)
        raise CommandCancelled()
    waiters = {task}
    cancel_waiter: Optional[asyncio.Task] = None
    if signal is not None:
        cancel_waiter = asyncio.ensure_future(signal.wait())
        waiters.add(cancel_waiter)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
    if task in done:
        return task.result()
    if interrupt:
        task.cancel()
    task.add_done_callback(_consume_result)
    if signal is not None and signal.cancelled:
        raise CommandCancelled()
    if fallback is _RAISE:
        raise OperationTimeout(timeout_s)
    return fallback


async def await_with_signal(aw: Awaitable[Any], signal: Optional[CancelSignal], *, interrupt: bool = False) -> Any:
    if signal is None:
        return await aw
    return await run_with_timeout(aw, None, signal=signal, interrupt=interrupt)


async def sleep_with_signal(delay_s: float, signal: Optional[CancelSignal]) -> None:
    await await_with_signal(asyncio.sleep(delay_s), signal, interrupt=True)
