#!/usr/bin/env python3
"""Supervisor that emits SCHEDULE envelopes and drains the inbox on a timer."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

import schedule

from orchestrator import config, inbox
from orchestrator.agent import OrchestrationAgent
from orchestrator.schemas import InputEnvelope, InputSource
from tools import agent_worker

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
log = logging.getLogger("daemon")


def build_tick(now: Optional[datetime] = None) -> InputEnvelope:
    now = now or datetime.now(timezone.utc)
    # One envelope per org and tick minute; a restarted daemon re-emitting it is deduplicated.
    bucket = now.strftime("%Y%m%dT%H%M")
    return InputEnvelope(
        source=InputSource.SCHEDULE,
        type="scheduled_tick",
        raw_content=f"Scheduled review tick at {now.isoformat()}",
        structured_data={"tick_at": now.isoformat(), "interval_minutes": config.SCHEDULE_TICK_MINUTES},
        timestamp=now,
        correlation_id=f"tick:{config.SCHEDULE_ORG_ID}:{bucket}",
    )


def job_tick() -> None:
    if not config.SCHEDULE_ORG_ID:
        log.info("SCHEDULE_ORG_ID not set; skipping scheduled tick.")
        return
    try:
        row_id, created = inbox.enqueue(config.SCHEDULE_ORG_ID, build_tick())
        log.info("[Daemon] Scheduled tick queued (row=%s, new=%s)", row_id, created)
    except Exception as exc:
        log.exception("Scheduling tick failed: %s", exc)


def job_drain(agent: OrchestrationAgent) -> None:
    try:
        handled = agent_worker.drain(agent, prefix="daemon-worker")
        if handled:
            log.info("[Daemon] Decided %s envelope(s)", handled)
    except Exception as exc:
        log.exception("Inbox drain failed: %s", exc)


def main() -> int:
    agent = OrchestrationAgent()
    schedule.every(config.SCHEDULE_TICK_MINUTES).minutes.do(job_tick)
    schedule.every(5).seconds.do(job_drain, agent)

    log.info("Orchestration daemon started. Press Ctrl+C to stop.")
    try:
        while True:
            schedule.run_pending()
            time.sleep(1)
    except KeyboardInterrupt:
        log.info("Daemon stopped by user.")
    finally:
        agent.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
