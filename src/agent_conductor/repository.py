"""Local repository snapshots inside an agent workspace."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from agent_conductor.errors import ConductorError

logger = logging.getLogger(__name__)

_REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class RepositoryError(ConductorError):
    """git failed to produce a usable snapshot."""


@dataclass(frozen=True)
class RepositorySnapshot:
    repository: str
    path: Path
    action: str


async def _git(*args: str, timeout_s: float) -> None:
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise RepositoryError(f"git could not be started: {exc}") from exc
    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise RepositoryError(f"git {args[0]} timed out after {timeout_s:.0f}s") from exc
    if process.returncode != 0:
        raise RepositoryError(stderr.decode("utf-8", errors="replace").strip() or "git failed")


async def materialize_repository(
    repository: str, workspace_path: str | Path, *, timeout_s: float = 300.0
) -> RepositorySnapshot:
    """Shallow-clone ``owner/name`` into ``<workspace>/repo`` or pull if present."""
    if not _REPO_PATTERN.match(repository):
        raise RepositoryError(f"Invalid repository name: {repository}")

    target = Path(workspace_path) / "repo"
    if (target / ".git").exists():
        await _git("-C", str(target), "pull", "origin", timeout_s=timeout_s)
        action = "updated"
    else:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RepositoryError(f"Cannot prepare {target.parent}: {exc}") from exc
        await _git(
            "clone",
            "--depth",
            "1",
            f"https://github.com/{repository}.git",
            str(target),
            timeout_s=timeout_s,
        )
        action = "cloned"

    logger.info("repository event=%s repository=%s path=%s", action, repository, target)
    return RepositorySnapshot(repository=repository, path=target, action=action)
