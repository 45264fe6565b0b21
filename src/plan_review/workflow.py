from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path

from .browser import open_url
from .errors import ConfigurationError, GenerationError
from .generator import ProposalGenerator
from .models import DecisionKind, FailureKind, PlanResult, PlanStatus, Proposal, ReviewEndReason
from .renderer import render_review_summary
from .session import Launcher, run_review_session
from .settings import RuntimeSettings
from .store import PlanStore

logger = logging.getLogger(__name__)

GENERATION_FAILED_MESSAGE = "Failed to generate plan. Please try again with more details."


async def review_proposal(
    proposal: Proposal,
    *,
    abort: asyncio.Event | None = None,
    settings: RuntimeSettings,
    cwd: str | Path | None = None,
    launcher: Launcher = open_url,
    store: PlanStore | None = None,
) -> PlanResult:
    """Run a review session for an existing proposal and persist an approval."""
    outcome = await run_review_session(proposal, abort, settings=settings, cwd=cwd, launcher=launcher)

    if outcome.reason is ReviewEndReason.LAUNCH_FAILED:
        return PlanResult(
            status=PlanStatus.PENDING,
            message=f"Failed to open browser: {outcome.error}\n\nReview URL: {outcome.url}",
            proposal=proposal,
            failure=FailureKind.LAUNCH,
            review_url=outcome.url,
        )
    if outcome.reason is ReviewEndReason.SERVER_ERROR:
        return PlanResult(
            status=PlanStatus.FAILED,
            message=f"Server error: {outcome.error}",
            proposal=proposal,
            failure=FailureKind.SERVER,
        )
    if outcome.abandoned or outcome.decision is None:
        return PlanResult(
            status=PlanStatus.ABANDONED,
            message=f"Plan review ended without a decision ({outcome.reason.value}).",
            proposal=proposal,
        )

    decision = outcome.decision
    if decision.decision is DecisionKind.REJECT:
        reason = decision.notes or "No reason provided"
        return PlanResult(
            status=PlanStatus.REJECTED,
            message=f"Plan rejected.\n\nReason: {reason}",
            proposal=proposal,
            decision=decision,
        )

    plan_store = store if store is not None else PlanStore(settings.plans_path)
    try:
        saved_path = plan_store.write_plan(proposal, decision)
    except OSError as exc:
        logger.error("Could not save approved plan to %s: %s", plan_store.root, exc)
        return PlanResult(
            status=PlanStatus.FAILED,
            message=f"Plan approved but could not be saved: {exc}",
            proposal=proposal,
            decision=decision,
            failure=FailureKind.PERSISTENCE,
        )
    return PlanResult(
        status=PlanStatus.APPROVED,
        message=render_review_summary(proposal, decision, saved_path),
        proposal=proposal,
        decision=decision,
        saved_path=str(saved_path),
    )


async def create_plan(
    task: str,
    *,
    context: str | None = None,
    context_files: Iterable[str | Path] = (),
    abort: asyncio.Event | None = None,
    settings: RuntimeSettings | None = None,
    cwd: str | Path | None = None,
    generator: ProposalGenerator | None = None,
    launcher: Launcher = open_url,
    store: PlanStore | None = None,
) -> PlanResult:
    """Generate a plan, collect a browser review, and persist approvals.

    Every failure is returned as a classified ``PlanResult``.
    """
    if not task or not task.strip():
        return PlanResult(status=PlanStatus.FAILED, message="No task provided.", failure=FailureKind.INVALID_INPUT)

    if settings is None:
        try:
            settings = RuntimeSettings.from_env()
        except ValueError as exc:
            logger.error("Invalid configuration: %s", exc)
            return PlanResult(status=PlanStatus.FAILED, message=str(exc), failure=FailureKind.CONFIGURATION)
    generator = generator if generator is not None else ProposalGenerator(settings)

    try:
        proposal = await generator.generate(task, context=context, context_files=context_files, abort=abort)
    except ConfigurationError as exc:
        logger.error("Plan generation is not configured: %s", exc)
        return PlanResult(status=PlanStatus.FAILED, message=str(exc), failure=FailureKind.CONFIGURATION)
    except GenerationError as exc:
        logger.error("%s", exc)
        return PlanResult(status=PlanStatus.FAILED, message=GENERATION_FAILED_MESSAGE, failure=FailureKind.GENERATION)

    if abort is not None and abort.is_set():
        return PlanResult(status=PlanStatus.PENDING, message="Plan generation was aborted.", proposal=proposal)
    if proposal is None:
        return PlanResult(status=PlanStatus.FAILED, message=GENERATION_FAILED_MESSAGE, failure=FailureKind.GENERATION)

    return await review_proposal(
        proposal,
        abort=abort,
        settings=settings,
        cwd=cwd,
        launcher=launcher,
        store=store,
    )
