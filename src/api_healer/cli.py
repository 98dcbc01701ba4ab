"""
Command line entry point for the self-healing engine.

    api-healer diff OLD_SPEC NEW_SPEC [--json] [--ignore-descriptions]
    api-healer analyze RESULT.json [--json]

Exit code is 1 when breaking changes are found or on errors.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .core.errors import HealingEngineError
from .core.models import TestResult
from .services.failure_analyzer import FailureAnalyzer
from .services.spec_diff_analyzer import ComparisonOptions, SpecDiffAnalyzer

logger = logging.getLogger(__name__)


def run_diff(args) -> int:
    analyzer = SpecDiffAnalyzer(ComparisonOptions(ignore_description_changes=args.ignore_descriptions))
    diff = analyzer.compare_spec_files(args.old_spec, args.new_spec)
    report = analyzer.generate_diff_report(diff)

    if args.json:
        print(json.dumps({"diff": diff.to_dict(), "report": report.to_dict()}, indent=2, default=str))
    else:
        print(report.to_text(), end="")

    return 1 if diff.summary.breaking_changes > 0 else 0


def run_analyze(args) -> int:
    try:
        with open(args.result_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        print(f"❌ Cannot read test result {args.result_file}: {e}", file=sys.stderr)
        return 1

    analyzer = FailureAnalyzer()
    results = data if isinstance(data, list) else [data]
    analyses = [analyzer.analyze_failure(TestResult.from_dict(item)) for item in results]

    if args.json:
        print(json.dumps({
            "analyses": [a.to_dict() for a in analyses],
            "statistics": analyzer.get_failure_statistics(analyses),
        }, indent=2, default=str))
        return 0

    for analysis in analyses:
        print(f"{analysis.context.test_file} :: {analysis.context.test_name}")
        print(f"  type: {analysis.failure_type.value} (confidence {analysis.confidence:.2f})")
        for fix in analysis.potential_fixes:
            marker = "auto" if fix.automated else fix.priority.value
            print(f"  - [{marker}] {fix.description}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="api-healer",
        description="Diff OpenAPI specs and classify API test failures")
    parser.add_argument("--log-level", default="WARNING",
                        help="Log level for engine output on stderr (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    diff_parser = subparsers.add_parser("diff", help="Compare two spec files")
    diff_parser.add_argument("old_spec", help="Previous spec (.json, .yaml or .yml)")
    diff_parser.add_argument("new_spec", help="Current spec (.json, .yaml or .yml)")
    diff_parser.add_argument("--json", action="store_true", help="Print the full diff as JSON")
    diff_parser.add_argument("--ignore-descriptions", action="store_true",
                             help="Skip description-only changes")
    diff_parser.set_defaults(handler=run_diff)

    analyze_parser = subparsers.add_parser("analyze", help="Classify failed test results")
    analyze_parser.add_argument("result_file", help="JSON file with one test result or a list of them")
    analyze_parser.add_argument("--json", action="store_true", help="Print analyses as JSON")
    analyze_parser.set_defaults(handler=run_analyze)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format='%(asctime)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )

    try:
        return args.handler(args)
    except HealingEngineError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
