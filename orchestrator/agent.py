"""OrchestrationAgent: classify, decide, execute, record.

Every envelope that reaches ``process`` ends with a decision row and a
status. The classifier call is the only long suspension point and runs on a
worker thread under a timeout; the policy itself is synchronous.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import config, ledger, metrics
from .audit import log_exception, log_function_call, log_review
from .calendar_store import BookingConflict
from .classifier import ClassifierTimeout, ClassifierUnavailable, IntentClassifier, build_request, get_classifier, render_prompt
from .conflicts import ConflictDetector
from .executor import ActionExecutor, ExecutionContext, ExecutionFailure
from .ledger import DecisionNotFound, InvalidTransition
from .notifications import CollaboratorError
from .policy import (
    AUTO,
    approval_requested,
    counted_actions,
    decide,
    evaluate_gates,
    executed_actions,
    needs_admission,
    rate_limits_for,
    threshold_band,
)
from .rate_limiter import RateLimiter, get_rate_limiter
from .schemas import (
    ActionOutcome,
    ActionProposal,
    AgentConfig,
    AgentDecision,
    ClassifierResult,
    DecisionStatus,
    InputEnvelope,
)

log = logging.getLogger(__name__)

REVIEWABLE = (DecisionStatus.PENDING, DecisionStatus.REQUIRES_APPROVAL)


@dataclass
class DecisionOutcome:
    decision: AgentDecision
    result: Optional[ClassifierResult] = None


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class OrchestrationAgent:
    def __init__(
        self,
        classifier: Optional[IntentClassifier] = None,
        executor: Optional[ActionExecutor] = None,
        rate_limiter: Optional[RateLimiter] = None,
        detector: Optional[ConflictDetector] = None,
        *,
        classifier_timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.classifier = classifier or get_classifier()
        self.executor = executor or ActionExecutor()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.detector = detector or ConflictDetector()
        self.classifier_timeout = classifier_timeout if classifier_timeout is not None else config.CLASSIFIER_TIMEOUT_SECONDS
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or max(4, config.WORKER_CONCURRENCY),
            thread_name_prefix="classifier",
        )

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------ ingestion

    def process(self, envelope: InputEnvelope, org_id: str) -> DecisionOutcome:
        """Run one envelope through classification, policy and execution.

        Raises AgentNotFound before anything is recorded when the org has no
        active agent. Every later failure is recorded on the decision.
        """
        start = time.perf_counter()
        agent = ledger.get_agent_config(org_id)
        if not agent.is_active:
            raise ledger.AgentNotFound(f"Agent for organization {org_id} is inactive")

        request = build_request(agent, envelope)
        decision = ledger.record_decision(agent, envelope, llm_prompt=render_prompt(request), dry_run=agent.dry_run)
        log_function_call("OrchestrationAgent.process", decision_id=decision.id, org_id=org_id, source=envelope.source)

        try:
            result = self._classify(request)
        except ClassifierTimeout as exc:
            metrics.incr("classifier_timeout")
            final = ledger.finalize_decision(
                decision.id,
                DecisionStatus.FAILED,
                error_message=f"timeout: {exc}",
                execution_time_ms=_elapsed_ms(start),
            )
            self._notify_failure(agent, final)
            return DecisionOutcome(final, None)
        except ClassifierUnavailable as exc:
            metrics.incr("classifier_unavailable")
            log_exception("classifier_unavailable", error=exc, decision_id=decision.id)
            result = ClassifierResult.unusable(f"classifier unavailable: {exc}", intent="unavailable")

        try:
            status, reason, outcomes, error = self._apply_policy(decision.id, agent, envelope, result)
        except Exception as exc:
            log.exception("Policy evaluation failed", extra={"extra_data": {"decision_id": decision.id}})
            log_exception("decision_policy_error", error=exc, decision_id=decision.id)
            metrics.incr("decision_failed")
            final = ledger.finalize_decision(
                decision.id,
                DecisionStatus.FAILED,
                result=result,
                llm_response=result.model_dump(by_alias=True, mode="json"),
                error_message=f"{type(exc).__name__}: {exc}",
                execution_time_ms=_elapsed_ms(start),
            )
            self._notify_failure(agent, final)
            return DecisionOutcome(final, result)

        final = ledger.finalize_decision(
            decision.id,
            status,
            result=result,
            llm_response=result.model_dump(by_alias=True, mode="json"),
            action_outcomes=outcomes,
            error_message=error,
            execution_time_ms=_elapsed_ms(start),
        )
        metrics.incr(f"decision_{status.value.lower()}")
        metrics.timing("decision_latency", time.perf_counter() - start)
        log.info(
            "Decision finalized",
            extra={
                "extra_data": {
                    "decision_id": final.id,
                    "org_id": org_id,
                    "status": status.value,
                    "confidence": result.confidence,
                    "reason": reason,
                }
            },
        )

        if status is DecisionStatus.REQUIRES_APPROVAL:
            self._notify_review(agent, final, result)
        elif status is DecisionStatus.FAILED:
            self._notify_failure(agent, final)
        return DecisionOutcome(final, result)

    def _classify(self, request) -> ClassifierResult:
        future = self._pool.submit(self.classifier.classify, request)
        try:
            return future.result(timeout=self.classifier_timeout)
        except FuturesTimeout as exc:
            future.cancel()
            raise ClassifierTimeout(f"classifier did not respond within {self.classifier_timeout:g}s") from exc
        except (ClassifierTimeout, ClassifierUnavailable):
            raise
        except Exception as exc:
            log.exception("Classifier raised unexpectedly")
            raise ClassifierUnavailable(f"{type(exc).__name__}: {exc}") from exc

    def _apply_policy(
        self,
        decision_id: str,
        agent: AgentConfig,
        envelope: InputEnvelope,
        result: ClassifierResult,
    ) -> Tuple[DecisionStatus, str, List[ActionOutcome], Optional[str]]:
        subject_hint = envelope.subject_hint()
        gates = []
        if threshold_band(result.confidence, agent) == AUTO and approval_requested(result) is None:
            gates = evaluate_gates(result, agent, self.detector, subject_hint)

        admission = None
        reserved = 0
        if needs_admission(result, agent, gates):
            limits = rate_limits_for(agent)
            count = counted_actions(result.actions)
            # Dry runs look at the budget without spending it.
            if agent.dry_run:
                admission = self.rate_limiter.try_admit(agent.agent_id, limits, count)
            else:
                admission = self.rate_limiter.try_acquire(agent.agent_id, limits, count)
                reserved = count if admission.admitted else 0
            if not admission.admitted:
                metrics.incr("rate_limited")

        used = 0
        try:
            verdict = decide(result, agent, gates, admission)
            if not verdict.execute:
                return verdict.status, verdict.reason, verdict.outcomes, None

            status, outcomes, error = self._run_actions(decision_id, agent, result.actions, subject_hint)
            used = executed_actions(outcomes)
            return status, verdict.reason, outcomes, error
        finally:
            if reserved > used:
                # Slots reserved for actions that never ran go back to the window.
                self.rate_limiter.release(agent.agent_id, admission, reserved - used)

    def _run_actions(
        self,
        decision_id: str,
        agent: AgentConfig,
        actions: Sequence[ActionProposal],
        subject_hint: Optional[str],
        *,
        allow_overlap: bool = False,
    ) -> Tuple[DecisionStatus, List[ActionOutcome], Optional[str]]:
        context = ExecutionContext(decision_id, agent, subject_id=subject_hint, allow_overlap=allow_overlap)
        outcomes: List[ActionOutcome] = []
        partial: List[str] = []

        def _remaining(after: int, fate: str, reason: str) -> List[ActionOutcome]:
            return [
                ActionOutcome(index=i, type=actions[i].type, fate=fate, reason=reason, idempotency_key=context.idempotency_key(i))
                for i in range(after + 1, len(actions))
            ]

        for index, action in enumerate(actions):
            try:
                action_result = self.executor.execute(action, context, index)
            except BookingConflict as exc:
                # Lost a race for the slot after the conflict check passed.
                reason = f"calendar conflict at commit: {exc}"
                outcomes.append(ActionOutcome(index=index, type=action.type, fate="deferred", reason=reason, idempotency_key=context.idempotency_key(index)))
                outcomes.extend(_remaining(index, "deferred", f"held with action[{index}]"))
                return DecisionStatus.REQUIRES_APPROVAL, outcomes, None
            except ExecutionFailure as exc:
                outcomes.append(ActionOutcome(index=index, type=action.type, fate="failed", reason=str(exc), idempotency_key=context.idempotency_key(index)))
                outcomes.extend(_remaining(index, "skipped", f"not run after action[{index}] failed"))
                return DecisionStatus.FAILED, outcomes, str(exc)
            except Exception as exc:
                log.exception("Unexpected error executing action", extra={"extra_data": {"decision_id": decision_id, "index": index}})
                message = f"{action.type.value}[{index}]: unexpected error: {exc}"
                outcomes.append(ActionOutcome(index=index, type=action.type, fate="failed", reason=message, idempotency_key=context.idempotency_key(index)))
                outcomes.extend(_remaining(index, "skipped", f"not run after action[{index}] failed"))
                return DecisionStatus.FAILED, outcomes, message

            outcomes.append(action_result.to_outcome())
            if action_result.fate == "partial":
                partial.append(f"{action.type.value}[{index}]: {action_result.message}")

        error = f"partial failure: {'; '.join(partial)}" if partial else None
        return DecisionStatus.EXECUTED, outcomes, error

    # ------------------------------------------------------------------ review

    def _reviewable(self, decision_id: str) -> AgentDecision:
        decision = ledger.get_decision(decision_id)
        if decision is None:
            raise DecisionNotFound(f"Decision {decision_id} not found")
        if decision.status not in REVIEWABLE:
            raise InvalidTransition(f"Decision is {decision.status.value} and can no longer be reviewed")
        return decision

    def approve(self, decision_id: str, reviewer: str, notes: Optional[str] = None) -> DecisionOutcome:
        """Execute a held decision's stored actions on a reviewer's say-so."""
        start = time.perf_counter()
        decision = self._reviewable(decision_id)
        agent = ledger.get_agent_by_id(decision.agent_id)
        envelope = InputEnvelope.model_validate(decision.input_data)
        actions = list(decision.actions)

        if agent.dry_run:
            reason = "dry run: actions simulated"
            status = DecisionStatus.EXECUTED
            outcomes = [ActionOutcome(index=i, type=a.type, fate="simulated", reason=reason) for i, a in enumerate(actions)]
            error = None
        else:
            # The reviewer has accepted any overlap the policy flagged.
            status, outcomes, error = self._run_actions(
                decision.id, agent, actions, envelope.subject_hint(), allow_overlap=True
            )
            # Actions that ran before the hold were counted then; replays are free.
            fresh = executed_actions(outcomes) - executed_actions(decision.action_outcomes)
            self.rate_limiter.record_execution(agent.agent_id, fresh)

        final = ledger.finalize_decision(
            decision.id,
            status,
            action_outcomes=outcomes,
            error_message=error,
            execution_time_ms=_elapsed_ms(start),
            dry_run=agent.dry_run or None,
            reviewer=reviewer,
            review_notes=notes,
        )
        metrics.incr("decision_approved")
        log_review(final.id, reviewer, "approved", notes)
        if status is DecisionStatus.FAILED:
            self._notify_failure(agent, final)
        return DecisionOutcome(final, None)

    def reject(self, decision_id: str, reviewer: str, reason: str) -> DecisionOutcome:
        decision = self._reviewable(decision_id)
        message = f"Rejected by {reviewer}: {reason}"
        outcomes = [
            ActionOutcome(index=i, type=action.type, fate="rejected", reason=message) for i, action in enumerate(decision.actions)
        ]
        final = ledger.finalize_decision(
            decision.id,
            DecisionStatus.REJECTED,
            action_outcomes=outcomes,
            error_message=message,
            reviewer=reviewer,
            review_notes=reason,
        )
        metrics.incr("decision_rejected_by_reviewer")
        log_review(final.id, reviewer, "rejected", reason)
        return DecisionOutcome(final, None)

    # ------------------------------------------------------------------ reporting

    def rate_limit_status(self, org_id: str) -> Dict[str, Any]:
        agent = ledger.get_agent_config(org_id)
        return self.rate_limiter.status(agent.agent_id, rate_limits_for(agent))

    def stats(self, org_id: str) -> Dict[str, Any]:
        agent = ledger.get_agent_config(org_id)
        total = agent.total_decisions
        return {
            "agent_id": agent.agent_id,
            "total_decisions": total,
            "successful_decisions": agent.successful_decisions,
            "success_rate": round(agent.successful_decisions / total, 4) if total else 0.0,
            "last_active_at": agent.last_active_at.isoformat() if agent.last_active_at else None,
            "rate_limit": self.rate_limiter.status(agent.agent_id, rate_limits_for(agent)),
        }

    # ------------------------------------------------------------------ notifications

    def _send_quietly(self, recipients: List[str], subject: str, body: str, priority: str, decision_id: str) -> None:
        try:
            self.executor.notifier.send(recipients, subject, body, priority=priority, metadata={"decision_id": decision_id})
        except CollaboratorError as exc:
            log.warning("Reviewer notification failed", extra={"extra_data": {"decision_id": decision_id, "error": str(exc)}})

    def _notify_review(self, agent: AgentConfig, decision: AgentDecision, result: ClassifierResult) -> None:
        priority = result.priority or max((action.priority for action in result.actions), default=0)
        if not (agent.notify_on_high_priority and agent.escalation_email and priority >= 4):
            return
        self._send_quietly(
            [agent.escalation_email],
            f"Approval needed: {result.intent} ({decision.decision_type.value})",
            f"Decision {decision.id} is waiting for approval.\n\nReasoning: {result.reasoning}",
            "high",
            decision.id,
        )

    def _notify_failure(self, agent: AgentConfig, decision: AgentDecision) -> None:
        if not (agent.notify_on_failure and agent.escalation_email):
            return
        self._send_quietly(
            [agent.escalation_email],
            f"Decision failed: {decision.id}",
            f"Decision {decision.id} failed.\n\nError: {decision.error_message}",
            "high",
            decision.id,
        )
