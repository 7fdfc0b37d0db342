"""Operator confirmation for rollback and promotion."""
import asyncio
import threading
from typing import Awaitable, Callable, Optional

from loguru import logger

Confirm = Callable[[str], Awaitable[bool]]


async def auto_confirm(prompt: str) -> bool:
    logger.info(f"Auto mode: {prompt} -> yes")
    return True


def _read_line(loop: asyncio.AbstractEventLoop, future: asyncio.Future, prompt: str) -> None:
    try:
        answer: Optional[str] = input(prompt)
    except EOFError:
        answer = None
    try:
        loop.call_soon_threadsafe(_deliver, future, answer)
    except RuntimeError:
        logger.debug("Event loop closed before the operator answered")


def _deliver(future: asyncio.Future, answer: Optional[str]) -> None:
    if not future.done():
        future.set_result(answer)


async def prompt_confirm(prompt: str) -> bool:
    """Ask on the terminal; anything but y/yes declines.

    The read runs on a daemon thread so an abandoned prompt never holds up
    interpreter shutdown.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()
    threading.Thread(
        target=_read_line,
        args=(loop, future, f"{prompt} (y/N): "),
        name="operator-prompt",
        daemon=True,
    ).start()

    answer = await future
    if answer is None:
        logger.warning("No operator input available, treating as declined")
        return False
    return answer.strip().lower() in ("y", "yes")


async def confirm_unless_stopped(confirm: Confirm, prompt: str, stop: asyncio.Event) -> Optional[bool]:
    """Wait for the operator's answer or a stop request, whichever comes first.

    Returns:
        The answer, or None when ``stop`` was set before the operator answered
    """
    if stop.is_set():
        return None

    answer = asyncio.ensure_future(confirm(prompt))
    stopped = asyncio.ensure_future(stop.wait())
    done, pending = await asyncio.wait({answer, stopped}, return_when=asyncio.FIRST_COMPLETED)

    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    if answer in done:
        return answer.result()
    logger.warning(f"Stop requested while waiting for confirmation: {prompt}")
    return None
