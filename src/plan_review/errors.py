from __future__ import annotations


class PlanReviewError(RuntimeError):
    """Base class for failures surfaced by the plan review workflow."""


class ConfigurationError(PlanReviewError):
    """No usable generation target (model name or API key) is configured."""


class GenerationError(PlanReviewError):
    """The text-generation call failed before producing a response."""


class BrowserLaunchError(PlanReviewError):
    """The platform browser could not be opened for the review URL."""

    def __init__(self, message: str, *, url: str) -> None:
        super().__init__(message)
        self.url = url


class ReviewServerError(PlanReviewError):
    """The local review server could not be started."""
