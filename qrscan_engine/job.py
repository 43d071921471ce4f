from __future__ import annotations

import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .errors import user_message
from .types import ScanError
from .utils import append_jsonl, ensure_dir, utc_now_iso, write_json


@dataclass
class JobPaths:
    job_dir: Path
    input_dir: Path
    pages_dir: Path
    result_json: Path
    state_json: Path
    errors_jsonl: Path


def create_job_dirs(workspace: str | Path, job_id: str) -> JobPaths:
    job_dir = Path(workspace) / "jobs" / job_id
    input_dir = job_dir / "input"
    pages_dir = job_dir / "pages"
    for p in (input_dir, pages_dir):
        ensure_dir(p)

    return JobPaths(
        job_dir=job_dir,
        input_dir=input_dir,
        pages_dir=pages_dir,
        result_json=job_dir / "result.json",
        state_json=job_dir / "state.json",
        errors_jsonl=job_dir / "errors.jsonl",
    )


def new_job_id() -> str:
    """Timeline job id: ``YYYY-MM-DD/HH-MM-SS__<shortid>``."""
    now = datetime.now(timezone.utc)
    return f"{now.strftime('%Y-%m-%d')}/{now.strftime('%H-%M-%S')}__{uuid.uuid4().hex[:8]}"


def record_error(paths: JobPaths, error: ScanError) -> None:
    append_jsonl(
        paths.errors_jsonl,
        {
            "kind": error.kind.value,
            "page_number": error.page_number,
            "message": error.message,
            "user_message": user_message(error.kind, error.page_number or None),
            "retry_count": error.retry_count,
        },
    )


def init_job_outputs(paths: JobPaths) -> None:
    # Output files exist from the start, even if the run dies early.
    write_json(paths.result_json, {"job": {"created_at": utc_now_iso(), "finished": False}, "items": []})
    write_json(paths.state_json, {})
    paths.errors_jsonl.parent.mkdir(parents=True, exist_ok=True)
    paths.errors_jsonl.touch(exist_ok=True)


def snapshot_input(paths: JobPaths, input_path: str | Path, input_type: str) -> None:
    src = Path(input_path)
    if input_type == "pdf" and src.is_file():
        shutil.copy2(src, paths.input_dir / src.name)
    else:
        write_json(paths.input_dir / "manifest.json", {"type": input_type, "path": str(src.resolve())})
