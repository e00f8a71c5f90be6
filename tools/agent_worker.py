#!/usr/bin/env python3
"""Drain the envelope inbox through the orchestration agent."""

from __future__ import annotations

import argparse
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from orchestrator import config, inbox, metrics
from orchestrator.agent import OrchestrationAgent
from orchestrator.audit import log_exception
from orchestrator.ledger import AgentNotFound

log = logging.getLogger("agent_worker")


def process_once(processor_id: str, agent: OrchestrationAgent) -> bool:
    """Claim one queued envelope and decide it. Returns False when the inbox is empty."""
    row = inbox.claim(processor_id)
    if not row:
        return False

    try:
        outcome = agent.process(row["envelope"], row["org_id"])
    except AgentNotFound as exc:
        inbox.mark(row["id"], "error", error_message=str(exc))
        metrics.incr("worker_agent_missing")
        log.warning("No agent for inbox row", extra={"extra_data": {"inbox_id": row["id"], "org_id": row["org_id"]}})
        return True
    except Exception as exc:
        inbox.mark(row["id"], "error", error_message=f"{type(exc).__name__}: {exc}")
        metrics.incr("worker_failed")
        log_exception("worker_failed", error=exc, inbox_id=row["id"], processor_id=processor_id)
        log.exception("Inbox row failed", extra={"extra_data": {"inbox_id": row["id"]}})
        return True

    decision = outcome.decision
    inbox.mark(row["id"], "done", decision_id=decision.id, decision_status=decision.status.value)
    metrics.incr("worker_processed")
    log.info(
        "Inbox row decided",
        extra={"extra_data": {"inbox_id": row["id"], "decision_id": decision.id, "status": decision.status.value}},
    )
    return True


def drain(agent: OrchestrationAgent, concurrency: Optional[int] = None, prefix: str = "agent-worker") -> int:
    """Process queued envelopes on ``concurrency`` threads until the inbox is empty."""
    workers = max(1, concurrency or config.WORKER_CONCURRENCY)

    def _loop(slot: int) -> int:
        handled = 0
        while process_once(f"{prefix}-{slot}", agent):
            handled += 1
        return handled

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=prefix) as pool:
        return sum(pool.map(_loop, range(workers)))


def main() -> None:
    parser = argparse.ArgumentParser(description="Orchestration agent worker (SQLite inbox)")
    parser.add_argument("--processor-id", default="agent-worker", help="Prefix for worker identifiers")
    parser.add_argument("--concurrency", type=int, default=config.WORKER_CONCURRENCY, help="Parallel workers")
    parser.add_argument("--watch", action="store_true", help="Keep polling for new envelopes")
    parser.add_argument("--poll-interval", type=float, default=3.0, help="Seconds between polls when --watch is set")
    args = parser.parse_args()

    agent = OrchestrationAgent()
    try:
        while True:
            handled = drain(agent, args.concurrency, args.processor_id)
            if handled:
                continue
            if args.watch:
                time.sleep(max(args.poll_interval, 0.25))
                continue
            print("Inbox empty. Nothing to process.")
            break
    finally:
        agent.close()


if __name__ == "__main__":
    main()
