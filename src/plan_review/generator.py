from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError

from .errors import GenerationError
from .llm import extract_response_text, get_chat_model
from .models import Proposal
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

PLAN_SYSTEM_PROMPT = """You are an expert implementation planner. Create detailed, actionable implementation plans through thorough analysis.

## Core Principles

1. **Be Skeptical & Thorough**:
   - Question vague requirements
   - Identify potential issues early
   - Base decisions on the provided context, not assumptions
   - Include specific file paths and references where relevant

2. **No Open Questions**:
   - The plan must be complete and actionable
   - Every decision must be made; do NOT leave unresolved questions
   - If context is insufficient, make reasonable assumptions and document them

3. **Be Practical**:
   - Focus on incremental, testable changes
   - Consider migration and rollback scenarios
   - Think about edge cases
   - Explicitly list what is OUT of scope

## Output Format

Output MUST be valid JSON matching this structure:
{
  "title": "string - descriptive title for the implementation",
  "overview": "string - 1-2 sentence summary of what we're implementing and why",
  "currentState": "string - what exists now, key constraints, relevant file paths (optional)",
  "desiredEndState": "string - specification of the desired end state and how to verify it",
  "outOfScope": ["string array - what we're NOT doing, to prevent scope creep"],
  "phases": [
    {
      "number": 1,
      "name": "Phase Name",
      "description": "What this phase accomplishes and high-level approach",
      "tasks": [
        "Specific task 1 with file path if relevant",
        "Specific task 2 with implementation details"
      ],
      "successCriteria": {
        "automated": ["Specific command to run, e.g. `pytest tests/test_x.py`"],
        "manual": ["Feature works as expected when tested via [specific method]"]
      },
      "implementationNotes": "Pause for manual confirmation before the next phase."
    }
  ],
  "testingStrategy": {
    "unit": ["What to unit test"],
    "integration": ["End-to-end scenarios to test"],
    "manual": ["Specific manual testing steps"]
  },
  "references": ["Related files or documentation paths"]
}

## Guidelines

- Break work into 2-5 logical phases, each independently valuable
- Each phase needs SPECIFIC success criteria:
  - **Automated**: runnable commands (tests, lint, type checks)
  - **Manual**: verification steps a human must perform
- Include file paths where changes are needed
- Consider database migrations, API changes, and client updates
- For refactoring: keep backwards compatibility and include a migration strategy"""

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


class SupportsAsyncInvoke(Protocol):
    """Protocol for any LangChain-compatible chat model that supports ainvoke."""

    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


def read_context_files(paths: Iterable[str | Path]) -> list[tuple[str, str]]:
    """Read auxiliary context files, skipping anything missing or unreadable."""
    loaded: list[tuple[str, str]] = []
    for raw_path in paths:
        path = Path(raw_path).expanduser()
        if not path.is_file():
            logger.debug("Skipping missing context file %s", path)
            continue
        try:
            loaded.append((str(raw_path), path.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Skipping unreadable context file %s: %s", path, exc)
    return loaded


def build_task_description(task: str, context: str | None = None) -> str:
    if context and context.strip():
        return f"{task.strip()}\n\nContext: {context.strip()}"
    return task.strip()


def build_user_prompt(task_description: str, files: list[tuple[str, str]]) -> str:
    file_context = "".join(f"\n\n--- File: {name} ---\n{content}" for name, content in files)
    parts = [
        "Create an implementation plan for the following task:",
        "",
        task_description,
        "",
    ]
    if file_context:
        parts.append(f"\nContext from files:{file_context}")
        parts.append("")
    parts.append("Output ONLY valid JSON matching the required structure. No markdown, no explanation.")
    return "\n".join(parts)


def _outermost_object_span(text: str) -> str | None:
    """Return the first balanced ``{...}`` span, honouring JSON string literals.

    Falls back to first-brace/last-brace when the braces never balance.
    """
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    end = text.rfind("}")
    if end > start:
        return text[start : end + 1]
    return None


def _loads_object(candidate: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(candidate.strip())
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def extract_plan_payload(text: str) -> dict[str, Any] | None:
    """Locate a JSON object inside free-form model output.

    Tries a fenced code block first, then the whole text, then the outermost
    object-like span. Returns None when nothing parses into an object.
    """
    body = text.strip()
    if not body:
        return None

    fenced = _FENCED_BLOCK_RE.search(body)
    if fenced is not None:
        payload = _loads_object(fenced.group(1))
        if payload is not None:
            return payload

    payload = _loads_object(body)
    if payload is not None:
        return payload

    span = _outermost_object_span(body)
    if span is not None:
        return _loads_object(span)
    return None


def parse_proposal(text: str) -> Proposal | None:
    payload = extract_plan_payload(text)
    if payload is None:
        preview = text.strip()[:220].replace("\n", " ")
        logger.warning("Model output did not contain a JSON object: %s", preview)
        return None
    try:
        return Proposal.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Model output did not match the plan schema: %s", exc)
        return None


class ProposalGenerator:
    """Generates a Proposal from a task description with a cancellable model call."""

    def __init__(self, settings: RuntimeSettings | None = None, *, model: SupportsAsyncInvoke | None = None) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self._model = model

    def _resolve_model(self) -> SupportsAsyncInvoke:
        if self._model is None:
            self._model = get_chat_model(self.settings)
        return self._model

    async def generate(
        self,
        task: str,
        *,
        context: str | None = None,
        context_files: Iterable[str | Path] = (),
        abort: asyncio.Event | None = None,
    ) -> Proposal | None:
        """Generate a plan for ``task``.

        Returns None when the call was aborted or the response held no valid
        plan.

        Raises:
            ValueError: If ``task`` is blank.
            ConfigurationError: If no generation target is configured.
            GenerationError: If the model call itself fails.
        """
        if not task or not task.strip():
            raise ValueError("task must be a non-empty string")

        model = self._resolve_model()
        if abort is not None and abort.is_set():
            logger.info("Plan generation aborted before the model call")
            return None

        prompt = build_user_prompt(build_task_description(task, context), read_context_files(context_files))
        messages = [SystemMessage(content=PLAN_SYSTEM_PROMPT), HumanMessage(content=prompt)]

        call = asyncio.ensure_future(model.ainvoke(messages))
        if abort is None:
            response = await self._await_call(call)
        else:
            abort_wait = asyncio.ensure_future(abort.wait())
            try:
                done, _ = await asyncio.wait({call, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                call.cancel()
                raise
            finally:
                abort_wait.cancel()
            if call not in done:
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)
                logger.info("Plan generation aborted during the model call")
                return None
            response = await self._await_call(call)

        text = extract_response_text(response)
        proposal = parse_proposal(text)
        if proposal is not None:
            logger.info("Generated plan %r with %d phases", proposal.title, len(proposal.phases))
        return proposal

    @staticmethod
    async def _await_call(call: asyncio.Future[Any]) -> Any:
        try:
            return await call
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Plan generation call failed: %s", exc)
            raise GenerationError(f"Plan generation failed: {exc}") from exc
