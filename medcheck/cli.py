"""
medcheck — command line.

Usage:
    medcheck analyze ad.txt                     # Rule engine only
    medcheck analyze ad.txt --mode full         # Proposer + audit
    medcheck feedback P-56-01-003 false_positive --text "..."
    medcheck aggregate                          # Recompute performance
    medcheck mine                               # One learning cycle
    medcheck report                             # Performance report
    medcheck pending                            # Items awaiting review
    medcheck approve EC-1a2b3c4d5e6f7a8b
    medcheck reject AL-1a2b3c4d5e6f7a8b --reason "too broad"
    medcheck verdict 3 violation                # Rule on a gray zone case
    medcheck settings exception_min_occurrences 7
    medcheck pattern P-56-10-001 suppress --reason "too noisy"
    medcheck show audit_lq3x9k2a_x7k2m9         # Archived analysis + feedback
    medcheck verify                             # Archive chain integrity
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from medcheck.archive import AuditArchive
from medcheck.catalog import catalog
from medcheck.config import settings
from medcheck.exceptions import MedCheckError, PersistenceFailure, ProposerError
from medcheck.feedback import FeedbackEvent, FeedbackLog, SettingsStore, Verdict
from medcheck.gray_zone import VERDICTS, GrayZoneCollector
from medcheck.learning import (
    AutoLearningLogStore,
    CandidateStatus,
    ExceptionCandidateStore,
    LearningMiner,
)
from medcheck.logging import get_logger, setup_logging
from medcheck.matcher import RuleMatcher
from medcheck.performance import PATTERN_ACTIONS, PerformanceTracker
from medcheck.pipeline import analyze_full, analyze_local

logger = get_logger("cli")


@dataclass
class Stores:
    """Every persistent store, opened on one database and wired together."""
    archive: AuditArchive
    feedback: FeedbackLog
    settings: SettingsStore
    candidates: ExceptionCandidateStore
    learning_log: AutoLearningLogStore
    tracker: PerformanceTracker
    gray_zones: GrayZoneCollector
    miner: LearningMiner

    def matcher(self) -> RuleMatcher:
        return RuleMatcher(learned_exceptions=self.candidates.approved_exceptions())


def open_stores(db_path: Optional[str] = None) -> Stores:
    db_path = db_path or settings.DB_PATH
    archive = AuditArchive(db_path)
    feedback = FeedbackLog(db_path)
    settings_store = SettingsStore(db_path)
    candidates = ExceptionCandidateStore(db_path)
    learning_log = AutoLearningLogStore(db_path)
    tracker = PerformanceTracker(db_path, feedback, settings_store)

    candidates.set_audit_logger(archive.log)
    learning_log.set_audit_logger(archive.log)
    tracker.set_audit_logger(archive.log)
    tracker.set_pending_learning_counter(learning_log.count_pending)

    return Stores(
        archive=archive,
        feedback=feedback,
        settings=settings_store,
        candidates=candidates,
        learning_log=learning_log,
        tracker=tracker,
        gray_zones=GrayZoneCollector(db_path),
        miner=LearningMiner(feedback, candidates, learning_log, settings_store),
    )


def _print(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


# ============================================================
# COMMANDS
# ============================================================

def cmd_analyze(args, stores: Stores) -> int:
    text = sys.stdin.read() if args.path == "-" else Path(args.path).read_text(encoding="utf-8")
    matcher = stores.matcher()

    if args.mode == "full":
        from medcheck.llm.factory import get_provider

        try:
            report = asyncio.run(analyze_full(
                text,
                get_provider(),
                subject_name=args.name,
                tracker=stores.tracker,
                context_type=args.context_type,
                department=args.department,
                archive=stores.archive,
                gray_zone_collector=stores.gray_zones,
                matcher=matcher,
            ))
        except ProposerError as e:
            logger.warning(
                "Proposer unavailable, falling back to local analysis: %s", e.message,
                extra={"error_type": e.code},
            )
            report = analyze_local(
                text, subject_name=args.name, matcher=matcher, tracker=stores.tracker,
            )
            report.meta["fallback_reason"] = e.code
    else:
        report = analyze_local(text, subject_name=args.name, matcher=matcher, tracker=stores.tracker)

    if report.mode == "local":
        try:
            report.meta["archive_hash"] = stores.archive.archive_result(report.result, mode="local")
        except PersistenceFailure as e:
            logger.error(
                "Archive write failed: %s", e.message,
                extra={"analysis_id": report.result.id, "error_type": e.code},
            )

    if args.json:
        _print(report.to_dict())
        return 0

    grade = report.result.grade
    print(f"Grade {grade.grade} ({grade.clean_score}/100), "
          f"{report.result.final_count} violations [{report.mode}]")
    for v in report.result.final_violations:
        print(f"  {v.effective_severity.value:8s} {v.pattern_id}  {v.original_text!r}")
    for issue in report.result.audit_issues:
        print(f"  audit: {issue.type.value} {issue.action.value} {issue.pattern_id}")
    return 0


def cmd_feedback(args, stores: Stores) -> int:
    event = FeedbackEvent(
        pattern_id=args.pattern_id,
        verdict=Verdict(args.verdict),
        analysis_id=args.analysis_id,
        context_type=args.context_type,
        department=args.department,
        sample_text=args.text,
        suggested_pattern=args.suggested_pattern,
    )
    outcome = stores.miner.observe(event)
    data = {"feedback": event.to_dict()}
    if outcome is not None:
        data["candidate"] = outcome.candidate.to_dict()
        data["promoted"] = outcome.promoted
    _print(data)
    return 0


def cmd_aggregate(args, stores: Stores) -> int:
    result = stores.tracker.aggregate(args.days)
    flagged = stores.tracker.flag_low_performance_patterns()
    _print({**result.to_dict(), "flagged": flagged})
    return 1 if result.failures else 0


def cmd_mine(args, stores: Stores) -> int:
    _print(stores.miner.run())
    return 0


def cmd_report(args, stores: Stores) -> int:
    _print(stores.tracker.generate_performance_report(args.days))
    return 0


def cmd_pending(args, stores: Stores) -> int:
    if args.kind == "candidates":
        items = [
            c.to_dict() for c in
            stores.candidates.list_candidates(CandidateStatus.PENDING_REVIEW, limit=args.limit)
        ]
    elif args.kind == "learning":
        items = [log.to_dict() for log in stores.learning_log.get_pending(limit=args.limit)]
    else:
        items = stores.gray_zones.list_cases("pending", limit=args.limit)
    _print(items)
    return 0


def cmd_approve(args, stores: Stores) -> int:
    if args.id.startswith("EC-"):
        item = stores.candidates.approve(args.id, reviewed_by=args.by, note=args.note)
    elif args.id.startswith("AL-"):
        item = stores.learning_log.approve(args.id, reviewed_by=args.by)
    else:
        print(f"Error: unrecognized id: {args.id}", file=sys.stderr)
        return 2
    _print(item.to_dict())
    return 0


def cmd_reject(args, stores: Stores) -> int:
    if args.id.startswith("EC-"):
        item = stores.candidates.reject(args.id, reviewed_by=args.by, note=args.reason)
    elif args.id.startswith("AL-"):
        item = stores.learning_log.reject(args.id, args.reason, reviewed_by=args.by)
    else:
        print(f"Error: unrecognized id: {args.id}", file=sys.stderr)
        return 2
    _print(item.to_dict())
    return 0


def cmd_verdict(args, stores: Stores) -> int:
    stores.gray_zones.set_verdict(
        args.case_id, args.verdict, args.reasoning or "", add_to_prompt=not args.no_prompt,
    )
    print(f"Gray zone case {args.case_id}: {args.verdict}")
    return 0


def cmd_settings(args, stores: Stores) -> int:
    if args.key is not None:
        if args.value is None:
            print(f"Error: missing value for {args.key}", file=sys.stderr)
            return 2
        stores.settings.set(args.key, args.value)
    current = stores.settings.load()
    _print({key: getattr(current, key) for key in current.keys()})
    return 0


def cmd_pattern(args, stores: Stores) -> int:
    if args.action is None:
        _print({
            "pattern_id": args.pattern_id,
            "action": stores.tracker.get_pattern_action(args.pattern_id),
        })
        return 0
    if not catalog.has(args.pattern_id):
        print(f"Error: unknown pattern: {args.pattern_id}", file=sys.stderr)
        return 2
    _print(stores.tracker.set_pattern_action(
        args.pattern_id, args.action, reason=args.reason, updated_by=args.by,
    ))
    return 0


def cmd_show(args, stores: Stores) -> int:
    entries = stores.archive.find_analysis(args.analysis_id)
    if not entries:
        print(f"Error: no archived analysis {args.analysis_id}", file=sys.stderr)
        return 1
    _print({
        "analysis": entries[0]["data"],
        "events": [{k: e[k] for k in ("event_type", "timestamp", "hash")} for e in entries],
        "feedback": [f.to_dict() for f in stores.feedback.events(analysis_id=args.analysis_id)],
    })
    return 0


def cmd_verify(args, stores: Stores) -> int:
    result = stores.archive.verify_chain(args.limit)
    stores.archive.log("chain_verified", {
        "verified": result["verified"],
        "entries_checked": result["entries_checked"],
        "broken": len(result["broken_links"]),
    })
    _print(result)
    return 0 if result["verified"] else 1


# ============================================================
# PARSER
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="medcheck", description="Medical advertising compliance checker")
    parser.add_argument("--db", default=None, help=f"SQLite database (default: {settings.DB_PATH})")
    parser.add_argument("--log-level", default=None, help="Log level (default: MEDCHECK_LOG_LEVEL)")
    parser.add_argument("--log-format", default=None, choices=("json", "text"))
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("analyze", help="Analyze an advertisement text file ('-' for stdin)")
    p.add_argument("path")
    p.add_argument("--mode", choices=("local", "full"), default="local")
    p.add_argument("--name", help="Registered clinic name")
    p.add_argument("--context-type")
    p.add_argument("--department")
    p.add_argument("--json", action="store_true", help="Output the full report as JSON")
    p.set_defaults(func=cmd_analyze)

    p = sub.add_parser("feedback", help="Record a reviewer verdict on a pattern")
    p.add_argument("pattern_id")
    p.add_argument("verdict", choices=[v.value for v in Verdict])
    p.add_argument("--text", help="Matched sample text")
    p.add_argument("--analysis-id")
    p.add_argument("--context-type")
    p.add_argument("--department")
    p.add_argument("--suggested-pattern")
    p.set_defaults(func=cmd_feedback)

    p = sub.add_parser("aggregate", help="Recompute pattern performance from feedback")
    p.add_argument("--days", type=int, default=None)
    p.set_defaults(func=cmd_aggregate)

    p = sub.add_parser("mine", help="Run one learning cycle")
    p.set_defaults(func=cmd_mine)

    p = sub.add_parser("report", help="Performance report")
    p.add_argument("--days", type=int, default=None)
    p.set_defaults(func=cmd_report)

    p = sub.add_parser("pending", help="List items awaiting review")
    p.add_argument("--kind", choices=("candidates", "learning", "gray-zones"), default="candidates")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_pending)

    p = sub.add_parser("approve", help="Approve an exception candidate (EC-) or learning log (AL-)")
    p.add_argument("id")
    p.add_argument("--by", default=None)
    p.add_argument("--note", default=None)
    p.set_defaults(func=cmd_approve)

    p = sub.add_parser("reject", help="Reject an exception candidate (EC-) or learning log (AL-)")
    p.add_argument("id")
    p.add_argument("--reason", required=True)
    p.add_argument("--by", default=None)
    p.set_defaults(func=cmd_reject)

    p = sub.add_parser("verdict", help="Rule on a gray zone case")
    p.add_argument("case_id", type=int)
    p.add_argument("verdict", choices=VERDICTS)
    p.add_argument("--reasoning", default=None)
    p.add_argument("--no-prompt", action="store_true", help="Keep the case out of the prompt")
    p.set_defaults(func=cmd_verdict)

    p = sub.add_parser("settings", help="Show learning settings, or set one")
    p.add_argument("key", nargs="?")
    p.add_argument("value", nargs="?")
    p.set_defaults(func=cmd_settings)

    p = sub.add_parser("pattern", help="Show a pattern's reviewer action, or suppress / restore it")
    p.add_argument("pattern_id")
    p.add_argument("action", nargs="?", choices=PATTERN_ACTIONS)
    p.add_argument("--reason", default=None)
    p.add_argument("--by", default=None)
    p.set_defaults(func=cmd_pattern)

    p = sub.add_parser("show", help="Show an archived analysis and its feedback")
    p.add_argument("analysis_id")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("verify", help="Verify the archive hash chain")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=cmd_verify)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_format)

    try:
        stores = open_stores(args.db)
        return args.func(args, stores)
    except (MedCheckError, KeyError, ValueError) as e:
        message = e.message if isinstance(e, MedCheckError) else str(e)
        print(f"Error: {message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
