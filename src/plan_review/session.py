"""Review session coordination.

``run_review_session`` races four termination sources (browser submit,
browser cancel, idle timeout, caller abort) into one ``ResolutionGuard``.
Whichever fires first decides the outcome; the server is closed before the
function returns, whatever path was taken.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from .browser import open_url
from .errors import ReviewServerError
from .models import Decision, Proposal, ReviewEndReason, ReviewOutcome
from .server import ReviewServer, ServerState
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

Launcher = Callable[[str], Awaitable[None]]


class ResolutionGuard:
    """One-shot outcome holder; the first ``resolve`` wins, later ones are ignored."""

    def __init__(self) -> None:
        self._future: asyncio.Future[ReviewOutcome] = asyncio.get_running_loop().create_future()

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def resolve(self, outcome: ReviewOutcome) -> bool:
        if self._future.done():
            logger.debug("Ignoring late %s resolution", outcome.reason.value)
            return False
        self._future.set_result(outcome)
        return True

    async def wait(self) -> ReviewOutcome:
        return await asyncio.shield(self._future)


async def _watch_abort(abort: asyncio.Event, guard: ResolutionGuard, server: ReviewServer) -> None:
    await abort.wait()
    if server.state is ServerState.RESOLVED:
        # The reviewer already acted; that action is delivered after the grace delay.
        logger.info("Abort ignored; review session already resolved (%s)", server.resolution.value)
        return
    if guard.resolve(ReviewOutcome(reason=ReviewEndReason.ABORTED)):
        logger.info("Review session aborted by caller")


def _launch_finished(task: asyncio.Future[None], guard: ResolutionGuard, server: ReviewServer, url: str) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is None or server.state is ServerState.RESOLVED:
        return
    if guard.resolve(ReviewOutcome(reason=ReviewEndReason.LAUNCH_FAILED, error=str(exc), url=url)):
        logger.error("Could not open review page %s: %s", url, exc)


async def run_review_session(
    proposal: Proposal,
    abort: asyncio.Event | None = None,
    *,
    settings: RuntimeSettings | None = None,
    cwd: str | Path | None = None,
    launcher: Launcher = open_url,
    server_factory: Callable[..., ReviewServer] = ReviewServer,
) -> ReviewOutcome:
    """Serve ``proposal`` for review and wait for exactly one terminal outcome.

    Args:
        proposal: Plan to review.
        abort: Optional event; setting it ends the session like a browser cancel.
        settings: Runtime settings (idle timeout, heartbeat, grace delay, host).
        cwd: Working directory shown on the review page.
        launcher: Coroutine that opens the session URL.
        server_factory: Review server constructor.

    Returns:
        The winning ``ReviewOutcome``. ``outcome.decision`` is set only when the
        reviewer submitted a decision.
    """
    settings = settings if settings is not None else RuntimeSettings.from_env()
    guard = ResolutionGuard()

    def on_submit(decision: Decision) -> None:
        guard.resolve(ReviewOutcome(reason=ReviewEndReason.SUBMITTED, decision=decision))

    def on_cancel(reason: ReviewEndReason) -> None:
        guard.resolve(ReviewOutcome(reason=reason))

    server = server_factory(
        proposal=proposal,
        on_submit=on_submit,
        on_cancel=on_cancel,
        cwd=str(cwd if cwd is not None else Path.cwd()),
        timeout=settings.idle_timeout,
        heartbeat_interval=settings.heartbeat_interval,
        grace_delay=settings.grace_delay,
        host=settings.host,
    )
    abort_watch: asyncio.Future[None] | None = None
    launch: asyncio.Future[None] | None = None
    try:
        if abort is not None:
            abort_watch = asyncio.ensure_future(_watch_abort(abort, guard, server))
        try:
            url = await server.start()
        except ReviewServerError as exc:
            logger.error("%s", exc)
            guard.resolve(ReviewOutcome(reason=ReviewEndReason.SERVER_ERROR, error=str(exc)))
        else:
            if not guard.resolved:
                launch = asyncio.ensure_future(launcher(url))
                launch.add_done_callback(lambda task: _launch_finished(task, guard, server, url))
        outcome = await guard.wait()
    finally:
        if launch is not None and not launch.done():
            launch.cancel()
        if abort_watch is not None:
            abort_watch.cancel()
        await server.close()

    logger.info("Review session for %r ended: %s", proposal.title, outcome.reason.value)
    return outcome
