from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from PIL import Image

from .config import load_config
from .decoder import DecodeEngine
from .errors import ScanEngineError, user_message
from .job import create_job_dirs, init_job_outputs, new_job_id, snapshot_input
from .materializer import ActionBuilder
from .orchestrator import ScanOrchestrator
from .page_provider import PageProvider
from .pixels import PixelBuffer
from .types import ScanPhase, ScanState
from .utils import load_json, to_jsonable, utc_now_iso
from .writer import JobWriter

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="qrscan_engine")
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Scan every page of a document for QR codes")
    run.add_argument("--input", required=True, help="Input path (pdf file or images folder)")
    run.add_argument("--type", required=True, choices=["pdf", "images"], help="Input type")
    run.add_argument("--workspace", default="./workspace", help="Workspace root")
    run.add_argument("--dpi", type=int, default=150, help="DPI for PDF rendering (pdf only)")
    run.add_argument("--config", default=str(Path("config") / "default.json"), help="Config path")
    run.add_argument("--save-pages", action="store_true", help="Keep rendered page images in the job dir")

    dec = sub.add_parser("decode", help="Decode QR codes in a single image and print them as JSON")
    dec.add_argument("--image", required=True, help="Image file")
    dec.add_argument("--config", default=str(Path("config") / "default.json"), help="Config path")

    validate = sub.add_parser("validate", help="Validate the output files of a scan job")
    validate.add_argument("--job-dir", required=True, help="Job directory (workspace/jobs/<job_id>)")

    return p


def _log_state(state: ScanState) -> None:
    if state.phase in (ScanPhase.COMPLETED, ScanPhase.ABORTED):
        logger.info("session %s (found=%d, errors=%d)", state.phase.value, state.found_count, len(state.errors))


def _report_errors(state: ScanState) -> None:
    for err in state.errors:
        logger.warning(user_message(err.kind, err.page_number or None))
    if state.summary is not None:
        logger.warning("%s (%s)", user_message(state.summary.kind), state.summary.message)


def cmd_run(args: argparse.Namespace) -> int:
    job_id = new_job_id()
    paths = create_job_dirs(args.workspace, job_id)
    init_job_outputs(paths)
    snapshot_input(paths, args.input, args.type)

    cfg = load_config(args.config)
    try:
        provider = PageProvider(
            input_path=args.input,
            input_type=args.type,
            dpi=int(args.dpi),
            pages_dir=paths.pages_dir if args.save_pages else None,
        )
    except (ScanEngineError, ValueError, RuntimeError) as e:
        logger.error("could not open %s: %s", args.input, e)
        print(f"scan_failed: {e}")
        return 1

    orch = ScanOrchestrator(
        engine=DecodeEngine(cfg.decode),
        materializer=ActionBuilder(cfg.materializer),
        config=cfg.scan,
    )
    orch.on_state_change(_log_state)

    try:
        try:
            results = orch.start_scanning(provider.page_count, provider)
        except ScanEngineError as e:
            logger.error("scan could not start: %s", e)
            print(f"scan_failed: {e}")
            return 1
        finally:
            provider.close()

        state = orch.get_state()
        _report_errors(state)
        job_meta = {
            "job_id": job_id,
            "input": str(args.input),
            "input_type": args.type,
            "dpi": int(args.dpi),
            "pages_total": state.total_pages,
            "created_at": state.started_at,
        }
        JobWriter(paths).write_final(job_meta, results, state, orch.get_progress())
    finally:
        orch.dispose()

    print(str(paths.job_dir))
    return 0


def cmd_decode(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    engine = DecodeEngine(cfg.decode)
    info = engine.support_info()
    if not info.supported:
        print(f"unsupported: {info.reason}")
        return 1

    with Image.open(args.image) as img:
        buffer = PixelBuffer.from_image(img)
    try:
        detections = engine.decode(buffer)
    except ScanEngineError as e:
        print(f"decode_failed: {e}")
        return 1

    print(json.dumps(to_jsonable(detections), ensure_ascii=False, indent=2))
    return 0


def _is_sha1_hex(s: Any) -> bool:
    if not isinstance(s, str) or len(s) != 40:
        return False
    try:
        int(s, 16)
        return True
    except ValueError:
        return False


def _validate_items(obj: Any, errors: list[str]) -> int:
    invalid = 0
    items = (obj or {}).get("items", []) if isinstance(obj, dict) else []
    for idx, it in enumerate(items):
        if not isinstance(it, dict):
            errors.append(f"invalid item[{idx}]: not an object")
            invalid += 1
            continue
        for k in ("item_id", "page_number", "label", "url", "bounding_box"):
            if k not in it:
                errors.append(f"invalid item[{idx}]: missing field {k}")
                invalid += 1
        if not _is_sha1_hex(it.get("item_id")):
            errors.append(f"invalid item[{idx}]: item_id not sha1 hex")
            invalid += 1
        box = it.get("bounding_box")
        if not (isinstance(box, dict) and all(isinstance(box.get(k), (int, float)) for k in ("x", "y", "width", "height"))):
            errors.append(f"invalid item[{idx}]: bounding_box must have numeric x/y/width/height")
            invalid += 1
    return invalid


def cmd_validate(args: argparse.Namespace) -> int:
    job_dir = Path(args.job_dir)
    errors: list[str] = []
    missing_files = 0
    invalid_items = 0

    for f in ("result.json", "state.json", "errors.jsonl"):
        if not (job_dir / f).exists():
            missing_files += 1
            errors.append(f"missing: {job_dir / f}")

    try:
        invalid_items += _validate_items(load_json(job_dir / "result.json"), errors)
    except (OSError, ValueError) as e:
        errors.append(f"failed to read result.json: {e}")
        invalid_items += 1

    try:
        state = load_json(job_dir / "state.json")
        phase = state.get("phase") if isinstance(state, dict) else None
        if phase not in {p.value for p in ScanPhase}:
            errors.append(f"state.json: unknown phase {phase!r}")
    except (OSError, ValueError) as e:
        errors.append(f"failed to read state.json: {e}")

    print(f"missing_files={missing_files}")
    print(f"invalid_items={invalid_items}")
    if errors:
        for m in errors:
            print(m)
        return 1
    print("OK")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT, datefmt="%H:%M:%S")
    logger.debug("qrscan_engine cli started at %s", utc_now_iso())

    if args.command == "run":
        return cmd_run(args)

    if args.command == "decode":
        return cmd_decode(args)

    if args.command == "validate":
        return cmd_validate(args)

    raise SystemExit(2)


if __name__ == "__main__":
    raise SystemExit(main())
