"""Intent classifier boundary.

The classifier turns an input envelope into a ``ClassifierResult``. Two modes
exist: ``llm`` posts to an Ollama-compatible ``/api/chat`` endpoint and expects
a JSON object back; ``heuristic`` uses keyword rules and always defers to a
human. Malformed classifier output never raises; it comes back as a
zero-confidence result so the decision is rejected and recorded.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import requests

from . import config, metrics
from .actions import decode_actions
from .audit import log_exception
from .schemas import (
    ActionProposal,
    ActionType,
    AgentConfig,
    AssignPipelinePayload,
    ClassifierRequest,
    ClassifierResult,
    EscalatePayload,
    InputEnvelope,
    NoActionPayload,
    OrchestratorError,
)
from .validation import SchemaValidationError, validate_or_repair

log = logging.getLogger(__name__)

PROMPT_VERSION = "orchestrator-v1"
RESULT_SCHEMA = "classifier_result.schema.json"

HEURISTIC_CONFIDENCE = 0.3

INTENT_KEYWORDS: Dict[str, List[str]] = {
    "SALES_INQUIRY": ["price", "pricing", "cost", "quote", "buy", "purchase", "demo", "trial"],
    "SUPPORT_REQUEST": ["help", "support", "issue", "problem", "error", "bug", "not working", "broken"],
    "BILLING_QUESTION": ["billing", "invoice", "payment", "charge", "subscription", "refund"],
    "PARTNERSHIP": ["partnership", "partner", "reseller", "affiliate", "integrate", "api"],
    "SCHEDULING": ["schedule", "meeting", "appointment", "calendar", "book", "slot", "availability"],
}

URGENCY_KEYWORDS: Dict[int, List[str]] = {
    5: ["urgent", "emergency", "asap", "immediately", "critical", "down", "outage"],
    3: ["important", "soon", "priority", "deadline"],
    1: ["whenever", "no rush", "low priority", "when possible"],
}


class ClassifierUnavailable(OrchestratorError):
    """The classifier could not be reached or answered with an error."""


class ClassifierTimeout(OrchestratorError):
    """The classifier did not answer within the configured timeout."""


class IntentClassifier(Protocol):
    def classify(self, request: ClassifierRequest) -> ClassifierResult:
        ...


DEFAULT_SYSTEM_PROMPT = (
    "You are an operations orchestration agent. Read the incoming event, decide what the "
    "organization should do about it, and answer with a single JSON object."
)


def build_system_prompt(agent: AgentConfig) -> str:
    enabled = ", ".join(action.value for action in agent.enabled_actions) or ActionType.NO_ACTION.value
    return (
        f"{agent.system_prompt or DEFAULT_SYSTEM_PROMPT}\n\n"
        f"Allowed action types: {enabled}.\n"
        "Respond with JSON only, in this shape:\n"
        '{"intent": "<short label>", "confidence": <0..1>, "reasoning": "<why>", '
        '"requiresApproval": <true|false>, "priority": <1..5>, '
        '"actions": [{"type": "<ACTION_TYPE>", "params": {...}, "priority": <1..5>, "requiresConfirmation": <true|false>}]}\n'
        "Use ISO-8601 timestamps with a UTC offset for every time value."
    )


def build_user_prompt(envelope: InputEnvelope) -> str:
    body = envelope.model_dump(by_alias=True, mode="json", exclude_none=True)
    return "Incoming event:\n" + json.dumps(body, ensure_ascii=False, indent=2)


def build_request(agent: AgentConfig, envelope: InputEnvelope) -> ClassifierRequest:
    return ClassifierRequest(
        system_prompt=build_system_prompt(agent),
        temperature=agent.temperature,
        max_tokens=agent.max_tokens,
        model_id=agent.model_id or config.OLLAMA_MODEL,
        input_envelope=envelope,
    )


def render_prompt(request: ClassifierRequest) -> str:
    return request.system_prompt + "\n\n" + build_user_prompt(request.input_envelope)


def extract_json_block(text: str) -> Dict[str, Any]:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        snippet = text[start : end + 1]
        return json.loads(snippet)
    raise json.JSONDecodeError("Could not parse JSON", text, 0)


_KEY_ALIASES = {
    "requires_approval": "requiresApproval",
    "decisions": "actions",
    "reason": "reasoning",
}


def _normalise_keys(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return payload
    fixed = dict(payload)
    for old, new in _KEY_ALIASES.items():
        if old in fixed and new not in fixed:
            fixed[new] = fixed.pop(old)
    confidence = fixed.get("confidence")
    if isinstance(confidence, str):
        try:
            fixed["confidence"] = float(confidence.strip().rstrip("%")) / (100 if confidence.strip().endswith("%") else 1)
        except ValueError:
            pass
    return fixed


def parse_classifier_output(payload: Any) -> ClassifierResult:
    """Turn a raw classifier JSON object into a result; malformed input scores zero."""
    try:
        payload = validate_or_repair(payload, RESULT_SCHEMA, fixer=_normalise_keys)
    except SchemaValidationError as exc:
        metrics.incr("classifier_malformed")
        log.warning("Classifier output failed schema validation", extra={"extra_data": {"error": str(exc)}})
        return ClassifierResult.unusable(f"malformed classifier output: {exc}", anomalies=[str(exc)])

    actions, anomalies = decode_actions(payload.get("actions"))
    return ClassifierResult(
        intent=payload["intent"],
        confidence=float(payload["confidence"]),
        reasoning=payload["reasoning"],
        actions=actions,
        requires_approval=bool(payload.get("requiresApproval", False)),
        priority=payload.get("priority"),
        anomalies=anomalies,
    )


class OllamaClassifier:
    """Calls an Ollama chat endpoint and parses the JSON it returns."""

    def __init__(
        self,
        host: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.host = (host or config.OLLAMA_HOST).rstrip("/")
        self.timeout = timeout if timeout is not None else config.CLASSIFIER_TIMEOUT_SECONDS
        self.max_attempts = max(1, max_attempts if max_attempts is not None else config.CLASSIFIER_MAX_RETRIES)
        self.session = session or requests.Session()

    def _chat(self, request: ClassifierRequest, user_prompt: str) -> str:
        payload = {
            "model": request.model_id,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "stream": False,
            "format": "json",
            "options": {
                "temperature": float(request.temperature),
                "num_predict": int(request.max_tokens),
            },
        }
        url = self.host + "/api/chat"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            raise ClassifierTimeout(f"classifier did not respond within {self.timeout:g}s") from exc
        except requests.RequestException as exc:
            raise ClassifierUnavailable(f"classifier request failed: {exc}") from exc
        if response.status_code == 404:
            raise ClassifierUnavailable(
                f"model '{request.model_id}' not found at {self.host}; pull it first (e.g. `ollama pull {request.model_id}`)"
            )
        if response.status_code >= 400:
            raise ClassifierUnavailable(f"classifier returned HTTP {response.status_code}")
        try:
            content = response.json().get("message", {}).get("content")
        except ValueError as exc:
            raise ClassifierUnavailable("classifier returned a non-JSON body") from exc
        if not isinstance(content, str):
            raise ClassifierUnavailable("classifier returned empty content")
        return content

    def classify(self, request: ClassifierRequest) -> ClassifierResult:
        user_prompt_base = build_user_prompt(request.input_envelope)
        last_error = ""
        start = time.perf_counter()
        for attempt in range(self.max_attempts):
            user_prompt = user_prompt_base
            if last_error:
                user_prompt += f"\n\nPrevious answer was rejected: {last_error}\nReturn ONLY valid JSON."
            raw = self._chat(request, user_prompt)
            try:
                parsed = extract_json_block(raw)
                validate_or_repair(parsed, RESULT_SCHEMA, fixer=_normalise_keys)
            except (json.JSONDecodeError, SchemaValidationError) as exc:
                last_error = str(exc)
                log.info(
                    "Classifier answer rejected, retrying",
                    extra={"extra_data": {"attempt": attempt + 1, "error": last_error}},
                )
                continue
            metrics.timing("classifier_latency", time.perf_counter() - start)
            return parse_classifier_output(parsed)

        metrics.incr("classifier_malformed")
        log_exception("classifier_malformed", error=SchemaValidationError(RESULT_SCHEMA, [last_error]), attempts=self.max_attempts)
        return ClassifierResult.unusable(f"malformed classifier output: {last_error}", anomalies=[last_error])


def detect_intent(text: str) -> str:
    lowered = text.lower()
    best, best_hits = "GENERAL", 0
    for intent, keywords in INTENT_KEYWORDS.items():
        hits = sum(1 for keyword in keywords if keyword in lowered)
        if hits > best_hits:
            best, best_hits = intent, hits
    return best


def detect_urgency(text: str) -> int:
    lowered = text.lower()
    for level in sorted(URGENCY_KEYWORDS, reverse=True):
        if any(keyword in lowered for keyword in URGENCY_KEYWORDS[level]):
            return level
    return 2


class HeuristicClassifier:
    """Keyword rules used when no language model is available.

    Results always ask for approval and carry a low confidence, so nothing
    proposed here runs without a reviewer.
    """

    def __init__(self, fallback_pipeline_id: Optional[str] = None) -> None:
        self.fallback_pipeline_id = fallback_pipeline_id or config.FALLBACK_PIPELINE_ID

    def classify(self, request: ClassifierRequest) -> ClassifierResult:
        envelope = request.input_envelope
        text = " ".join(filter(None, [envelope.raw_content, json.dumps(envelope.structured_data, default=str)]))
        intent = detect_intent(text)
        urgency = detect_urgency(text)
        reason = "rule-based classification"

        actions: List[ActionProposal] = []
        intake_id = envelope.structured_data.get("intakeId") or envelope.structured_data.get("intake_id")
        pipeline_id = self.fallback_pipeline_id or envelope.structured_data.get("pipelineId")
        if intake_id and pipeline_id:
            actions.append(
                ActionProposal(
                    type=ActionType.ASSIGN_PIPELINE,
                    payload=AssignPipelinePayload(
                        intake_id=str(intake_id),
                        pipeline_id=str(pipeline_id),
                        priority=urgency,
                        notes=f"[FALLBACK] {reason}. Intent detected: {intent}",
                    ),
                    priority=urgency,
                    requires_confirmation=True,
                )
            )
        if urgency >= 4:
            actions.append(
                ActionProposal(
                    type=ActionType.ESCALATE,
                    payload=EscalatePayload(reason=f"High urgency item routed via fallback: {reason}", level=1, priority="high"),
                    priority=5,
                )
            )
        if not actions:
            actions.append(
                ActionProposal(type=ActionType.NO_ACTION, payload=NoActionPayload(reason=f"Fallback with no suitable action: {reason}"))
            )

        return ClassifierResult(
            intent=intent,
            confidence=HEURISTIC_CONFIDENCE,
            reasoning=f"[FALLBACK] {reason}. Intent {intent}, urgency {urgency}.",
            actions=actions,
            requires_approval=True,
            priority=urgency,
        )


def get_classifier() -> IntentClassifier:
    if config.CLASSIFIER_MODE == "heuristic":
        return HeuristicClassifier()
    return OllamaClassifier()
