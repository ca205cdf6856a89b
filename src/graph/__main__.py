import argparse
import json
import os
from typing import Any, Dict

import pandas as pd

from src.graph.service import TransformService
from src.utils.run_storage import InMemoryRecordStore, JsonDirRecordStore
from src.utils.schema_summary import infer_columns


def _parse_params(pairs) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise argparse.ArgumentTypeError(f"Parameter must be NAME=VALUE, got '{pair}'")
        name, value = pair.split("=", 1)
        params[name.strip()] = value
    return params


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a plain-language transformation against a CSV file.")
    parser.add_argument("csv_path", type=str, help="Input CSV file.")
    parser.add_argument("--instruction", type=str, default="", help="What the transformation should do.")
    parser.add_argument("--playbook", type=str, default="", help="Run a saved playbook instead of generating code.")
    parser.add_argument("--param", action="append", default=[], help="Parameter override NAME=VALUE (repeatable).")
    parser.add_argument("--sep", type=str, default=",", help="CSV separator.")
    parser.add_argument("--encoding", type=str, default="utf-8", help="CSV encoding.")
    parser.add_argument("--store_dir", type=str, default="", help="Persist runs and playbooks as JSON under this dir.")
    parser.add_argument("--save_playbook", type=str, default="", help="Save the generated code as a playbook with this name.")
    parser.add_argument("--output", type=str, default="", help="Write the full result to this .csv or .xlsx path.")
    parser.add_argument("--generate_only", action="store_true", help="Print the generated code without running it.")
    parser.add_argument("--audit", action="store_true", help="Include every attempt in the printed summary.")
    args = parser.parse_args()

    if not args.instruction and not args.playbook:
        parser.print_help()
        return 1
    if not os.path.exists(args.csv_path):
        print(f"Input file not found: {args.csv_path}")
        return 2

    frame = pd.read_csv(args.csv_path, sep=args.sep, encoding=args.encoding)
    store = JsonDirRecordStore(args.store_dir) if args.store_dir else InMemoryRecordStore()
    service = TransformService(store=store)
    try:
        params = _parse_params(args.param)
    except argparse.ArgumentTypeError as e:
        print(str(e))
        return 2

    try:
        if args.generate_only:
            unit = service.generate(args.instruction, infer_columns(frame), frame.head(5).to_dict("records"))
            print(json.dumps(unit.to_dict(), indent=2, default=str))
            return 0 if not unit.generation_failed else 3

        if args.playbook:
            run = service.run_playbook(args.playbook, frame, overrides=params)
        else:
            run = service.generate_and_run(args.instruction, frame, parameters=params)
    finally:
        service.shutdown(wait=False)

    print(json.dumps(run.to_summary(audit=args.audit), indent=2, default=str))

    if run.final_status != "completed":
        return 3

    if args.save_playbook and run.final_attempt is not None:
        playbook = service.save_playbook(args.save_playbook, run.final_attempt.unit, args.instruction)
        print(f"Saved playbook {playbook['id']} ({playbook['name']})")

    if args.output:
        fmt = "xlsx" if args.output.lower().endswith(".xlsx") else "csv"
        _, _, payload = service.download(run.run_id, fmt)
        with open(args.output, "wb") as f:
            f.write(payload)
        print(f"Wrote {run.final_result.result_row_count} rows to {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
