from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import aiofiles

from vtb.results import WorkflowResult


async def write_report(result: WorkflowResult, path: Path, *, workflow: Path | None = None) -> Path:
    """Persist the workflow result as JSON next to the run's other artifacts."""
    payload = {
        "workflow": str(workflow) if workflow is not None else None,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        **result.to_dict(),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as handle:
        await handle.write(json.dumps(payload, ensure_ascii=False, indent=2))
    return path
