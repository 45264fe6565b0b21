from __future__ import annotations

import logging
import os
import re
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from .models import Decision, Proposal
from .renderer import render_plan_markdown

logger = logging.getLogger(__name__)

PLAN_SUFFIX = ".md"
_MAX_NAME_ATTEMPTS = 100


def slugify_title(title: str, *, max_length: int = 60) -> str:
    slug = re.sub(r"\s+", "-", title.lower().strip())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    return slug[:max_length].rstrip("-") or "plan"


def generate_plan_id(now: datetime) -> str:
    return now.strftime("%Y-%m-%d-%H%M%S")


def plan_filename(title: str, now: datetime) -> str:
    return f"{generate_plan_id(now)}-{slugify_title(title)}{PLAN_SUFFIX}"


def _atomic_create_text(path: Path, content: str) -> None:
    """Create *path* with *content* atomically.

    Writes to a temporary file in the same directory, then hard-links it into
    place so readers never see a partial plan. Raises ``FileExistsError``
    instead of replacing an existing file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.link(tmp_path, str(path))
        os.unlink(tmp_path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class PlanStore:
    """Directory of approved plan documents."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, proposal: Proposal, now: datetime) -> Path:
        return self.root / plan_filename(proposal.title, now)

    def write_plan(self, proposal: Proposal, decision: Decision | None, *, now: datetime | None = None) -> Path:
        """Render and persist a plan; returns the written path."""
        timestamp = now if now is not None else datetime.now(UTC)
        content = render_plan_markdown(proposal, decision, generated_at=timestamp)
        base = self.path_for(proposal, timestamp.astimezone())
        self.root.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, _MAX_NAME_ATTEMPTS + 1):
            path = base if attempt == 1 else base.with_name(f"{base.stem}-{attempt}{PLAN_SUFFIX}")
            try:
                _atomic_create_text(path, content)
            except FileExistsError:
                continue
            logger.info("Saved plan %r to %s", proposal.title, path)
            return path
        raise FileExistsError(f"No free plan filename for {base.name} after {_MAX_NAME_ATTEMPTS} attempts")

    def list_plans(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(path for path in self.root.iterdir() if path.is_file() and path.suffix == PLAN_SUFFIX)
