import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from sheet_qa.lib.errors import SheetQAError, user_message_for
from sheet_qa.lib.schema import extract_schema
from sheet_qa.question_pipeline import Pipeline


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ask a natural-language question about a spreadsheet.")
    parser.add_argument("dataset", help="Path to an .xlsx/.xls/.csv file")
    parser.add_argument("question", nargs="?", default="", help="Question to answer")
    parser.add_argument("--sheet", default=None, help="Sheet name (defaults to the first sheet)")
    parser.add_argument("--timeout", type=int, default=None, help="Execution timeout in seconds")
    parser.add_argument("--chart", action="store_true", help="Include the chart verdict and series")
    parser.add_argument("--schema-only", action="store_true", help="Print the extracted schema and exit")
    return parser.parse_args(argv)


def _chart_payload(exchange: Any) -> Dict[str, Any]:
    verdict = exchange.analyze_chart()
    if verdict is None:
        return {"chartVerdict": None, "series": {}}
    series = {}
    for chart_type in verdict.available_chart_types:
        derived = exchange.chart_series(chart_type)
        series[chart_type] = derived.to_dict() if derived else None
    return {"chartVerdict": verdict.to_dict(), "series": series}


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    if args.schema_only:
        try:
            snapshots = extract_schema(args.dataset)
        except SheetQAError as exc:
            print(user_message_for(exc), file=sys.stderr)
            return 2
        print(json.dumps([s.to_dict() for s in snapshots], ensure_ascii=False, indent=2, default=str))
        return 0
    if not args.question.strip():
        print("A question is required unless --schema-only is given.", file=sys.stderr)
        return 2

    valves = Pipeline.Valves()
    if args.timeout:
        valves.code_timeout_s = args.timeout
    pipeline = Pipeline(valves=valves)
    try:
        exchange = asyncio.run(pipeline.answer(args.dataset, args.question, sheet_name=args.sheet))
    except SheetQAError as exc:
        print(f"{user_message_for(exc)} ({exc.kind.value})", file=sys.stderr)
        return 2
    payload = exchange.to_dict()
    if args.chart:
        payload.update(_chart_payload(exchange))
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
