#!/usr/bin/env python3
"""Review decisions held for approval from the command line."""

from __future__ import annotations

import argparse
import getpass
import json
import sys
from typing import List, Optional

from orchestrator import ledger
from orchestrator.agent import OrchestrationAgent
from orchestrator.ledger import DecisionNotFound, InvalidTransition
from orchestrator.schemas import DecisionStatus


def list_pending(org_id: Optional[str], limit: int) -> List[dict]:
    decisions, _ = ledger.list_decisions(org_id=org_id, status=DecisionStatus.REQUIRES_APPROVAL.value, limit=limit)
    return [
        {
            "id": d.id,
            "org_id": d.org_id,
            "decision_type": d.decision_type.value,
            "confidence": d.confidence,
            "created_at": d.created_at.isoformat(),
            "reason": next((o.reason for o in d.action_outcomes if o.reason), d.reasoning),
        }
        for d in decisions
    ]


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Approve or reject held orchestration decisions")
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="Show decisions awaiting approval")
    list_cmd.add_argument("--org-id")
    list_cmd.add_argument("--limit", type=int, default=20)

    approve_cmd = sub.add_parser("approve", help="Execute a held decision")
    approve_cmd.add_argument("decision_id")
    approve_cmd.add_argument("--reviewer", default=None)
    approve_cmd.add_argument("--notes")

    reject_cmd = sub.add_parser("reject", help="Reject a held decision")
    reject_cmd.add_argument("decision_id")
    reject_cmd.add_argument("--reason", required=True)
    reject_cmd.add_argument("--reviewer", default=None)

    args = parser.parse_args(argv)

    if args.command == "list":
        print(json.dumps(list_pending(args.org_id, args.limit), indent=2))
        return 0

    reviewer = args.reviewer or getpass.getuser()
    agent = OrchestrationAgent()
    try:
        if args.command == "approve":
            outcome = agent.approve(args.decision_id, reviewer=reviewer, notes=args.notes)
        else:
            outcome = agent.reject(args.decision_id, reviewer=reviewer, reason=args.reason)
    except DecisionNotFound:
        print(f"Decision {args.decision_id} not found", file=sys.stderr)
        return 1
    except InvalidTransition as exc:
        print(str(exc), file=sys.stderr)
        return 2
    finally:
        agent.close()

    decision = outcome.decision
    print(f"{decision.id}: {decision.status.value}" + (f" ({decision.error_message})" if decision.error_message else ""))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
