"""Normalization and scoring of provider conversation results.

Shared by the webhook ingester and the stuck-screening reconciler, so a
screening is finalized identically whichever path sees the conversation
first. Provider payloads are normalized here, before any scoring runs.
"""

from dataclasses import asdict, dataclass

NO_RESPONSE_REASONS = (
    "Candidate did not respond to screening questions",
    "Call completed without collecting answers",
)

CANDIDATE_SPEAKERS = ("user", "candidate")
PASSING_RESULTS = ("pass", "passed", "success", "true")


@dataclass
class ScreeningResult:
    transcript: list | None
    answers: list | None
    ai_summary: str
    score: float
    outcome: str
    reasons: list | None
    conversation_turns: int
    candidate_responded: bool
    call_connected: bool
    first_response_time_seconds: int | None
    duration_seconds: int | None
    recording_url: str | None

    def as_update(self) -> dict:
        return asdict(self)


def _criterion_passed(value: dict) -> bool:
    passed = value.get("passed")
    if isinstance(passed, bool):
        return passed
    result = value.get("result")
    if isinstance(result, bool):
        return result
    return str(result).lower() in PASSING_RESULTS


def normalize_evaluation_results(raw) -> list[dict]:
    """Flatten provider criteria into ``[{criteria, passed, reason}]``.

    The provider returns either a list of criteria objects or a map keyed
    by criteria id; bare booleans/strings are accepted as results.
    """
    if isinstance(raw, dict):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = [(None, value) for value in raw]
    else:
        return []

    normalized = []
    for key, value in items:
        if not isinstance(value, dict):
            value = {"result": value}
        criteria = value.get("criteria") or value.get("criteria_id") or key or "unknown"
        normalized.append(
            {
                "criteria": str(criteria),
                "passed": _criterion_passed(value),
                "reason": value.get("reason") or value.get("rationale") or value.get("details"),
            }
        )
    return normalized


def compute_score(criteria: list[dict]) -> float:
    if not criteria:
        return 0.0
    passed = sum(1 for c in criteria if c["passed"])
    return passed / len(criteria) * 100


def determine_outcome(call_successful, score: float, threshold: float = 60.0) -> str:
    if isinstance(call_successful, bool):
        return "pass" if call_successful else "fail"
    if isinstance(call_successful, str) and call_successful.lower() in ("success", "failure"):
        return "pass" if call_successful.lower() == "success" else "fail"
    return "pass" if score >= threshold else "fail"


def _is_candidate_turn(entry) -> bool:
    if not isinstance(entry, dict):
        return False
    return entry.get("role") in CANDIDATE_SPEAKERS or entry.get("speaker") in CANDIDATE_SPEAKERS


def _first_response_time(transcript: list) -> int | None:
    first = next((entry for entry in transcript if _is_candidate_turn(entry)), None)
    if first is None:
        return None
    elapsed = first.get("time_in_call_secs")
    if elapsed is None:
        return None
    return round(float(elapsed))


def build_screening_result(conversation: dict, pass_threshold: float = 60.0) -> ScreeningResult:
    """Score a finished conversation (webhook body or polled conversation)."""
    transcript = conversation.get("transcript") or []
    if not isinstance(transcript, list):
        transcript = []
    analysis = conversation.get("analysis") or {}
    metadata = conversation.get("metadata") or {}

    criteria = normalize_evaluation_results(analysis.get("evaluation_criteria_results"))
    score = compute_score(criteria)
    outcome = determine_outcome(analysis.get("call_successful"), score, pass_threshold)

    reasons = [c["reason"] or c["criteria"] for c in criteria if not c["passed"]]
    if not criteria and len(transcript) < 2:
        reasons.extend(NO_RESPONSE_REASONS)

    turns = len(transcript)
    candidate_responded = any(_is_candidate_turn(entry) for entry in transcript)
    duration = metadata.get("duration_seconds", metadata.get("call_duration_secs"))

    return ScreeningResult(
        transcript=transcript or None,
        answers=criteria or None,
        ai_summary=analysis.get("transcript_summary") or "No summary available",
        score=score,
        outcome=outcome,
        reasons=reasons or None,
        conversation_turns=turns,
        candidate_responded=candidate_responded,
        call_connected=turns >= 2 and candidate_responded,
        first_response_time_seconds=_first_response_time(transcript),
        duration_seconds=int(duration) if duration is not None else None,
        recording_url=metadata.get("recording_url"),
    )
