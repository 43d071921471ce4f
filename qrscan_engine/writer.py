from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .job import JobPaths, record_error
from .types import ScanProgress, ScanState
from .utils import to_jsonable, utc_now_iso, write_json


@dataclass
class JobWriter:
    paths: JobPaths

    def write_final(
        self,
        job_meta: dict[str, Any],
        results: list[Any],
        state: ScanState,
        progress: ScanProgress | None,
    ) -> None:
        job_out = dict(job_meta)
        job_out["finished"] = True
        job_out["completed_at"] = utc_now_iso()
        job_out["phase"] = state.phase.value
        job_out["stop_reason"] = state.stop_reason

        detections = []
        if progress is not None:
            for page_number, d in progress.detections:
                row = to_jsonable(d)
                row["page_number"] = page_number
                detections.append(row)

        write_json(self.paths.result_json, {"job": job_out, "items": results, "detections": detections})
        write_json(self.paths.state_json, state)

        for err in state.errors:
            record_error(self.paths, err)
        if state.summary is not None:
            record_error(self.paths, state.summary)
