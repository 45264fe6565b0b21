from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from langchain_core.messages import AIMessage

from plan_review.models import Proposal

PLAN_JSON = json.dumps(
    {
        "title": "Add rate limiting",
        "overview": "Throttle clients.",
        "phases": [
            {"number": 1, "name": "Middleware", "tasks": ["Add token bucket"]},
            {"number": 2, "name": "Config", "description": "Expose {limits} via settings"},
        ],
    }
)


class FakeChatModel:
    """Stand-in chat model; records calls and notices cancellation."""

    def __init__(self, content: Any = PLAN_JSON, *, delay: float = 0.0, error: Exception | None = None) -> None:
        self.content = content
        self.delay = delay
        self.error = error
        self.calls: list[Any] = []
        self.cancelled = False

    async def ainvoke(self, messages: Any) -> AIMessage:
        self.calls.append(messages)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return AIMessage(content=self.content)


def build_proposal(title: str = "Add rate limiting", phase_numbers: tuple[int, ...] = (1, 2)) -> Proposal:
    return Proposal.model_validate(
        {
            "title": title,
            "overview": "Throttle abusive clients on the public API.",
            "currentState": "No throttling exists; `api/app.py` accepts unlimited requests.",
            "desiredEndState": "Requests beyond the quota receive HTTP 429.",
            "outOfScope": ["Per-tenant billing"],
            "phases": [
                {
                    "number": number,
                    "name": f"Phase {number} work",
                    "description": f"Description of phase {number}.",
                    "tasks": [f"Task {number}.a", f"Task {number}.b"],
                    "successCriteria": {
                        "automated": [f"`pytest tests/test_phase_{number}.py` passes"],
                        "manual": [f"Manual check {number}"],
                    },
                    "implementationNotes": f"Note for phase {number}",
                }
                for number in phase_numbers
            ],
            "testingStrategy": {"unit": ["Token bucket math"], "integration": ["429 on burst"], "manual": []},
            "references": ["docs/rate-limits.md"],
        }
    )


@pytest.fixture
def proposal() -> Proposal:
    return build_proposal()
