from importlib.metadata import PackageNotFoundError, version

from .errors import BrowserLaunchError, ConfigurationError, GenerationError, PlanReviewError, ReviewServerError
from .generator import ProposalGenerator, extract_plan_payload, parse_proposal
from .models import (
    Decision,
    DecisionKind,
    FailureKind,
    Phase,
    PlanResult,
    PlanStatus,
    Proposal,
    ReviewEndReason,
    ReviewOutcome,
    SuccessCriteria,
    TestingStrategy,
)
from .renderer import render_plan_markdown, render_review_summary
from .server import ReviewServer
from .session import ResolutionGuard, run_review_session
from .settings import RuntimeSettings
from .store import PlanStore, slugify_title
from .workflow import create_plan, review_proposal


def get_version() -> str:
    try:
        return version("plan-review")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "BrowserLaunchError",
    "ConfigurationError",
    "Decision",
    "DecisionKind",
    "FailureKind",
    "GenerationError",
    "Phase",
    "PlanResult",
    "PlanReviewError",
    "PlanStatus",
    "PlanStore",
    "Proposal",
    "ProposalGenerator",
    "ResolutionGuard",
    "ReviewEndReason",
    "ReviewOutcome",
    "ReviewServer",
    "ReviewServerError",
    "RuntimeSettings",
    "SuccessCriteria",
    "TestingStrategy",
    "create_plan",
    "extract_plan_payload",
    "get_version",
    "parse_proposal",
    "render_plan_markdown",
    "render_review_summary",
    "review_proposal",
    "run_review_session",
    "slugify_title",
]
