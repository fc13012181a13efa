import json
import os
import time
import logging
from datetime import datetime, timezone

from partcall.backend_sync import BackendClient
from partcall.session import CallState
from partcall.states import CallStatus, NextAction
from partcall.transcript import to_plain_text, to_json_array, to_timestamped_dump

logger = logging.getLogger(__name__)


def determine_outcome(state: CallState) -> str:
    """Terminal label for the durable record."""
    if state.outcome:
        return state.outcome
    if any(q.price is not None for q in state.quotes):
        return "QUOTE_RECEIVED"
    if state.quotes:
        return "PARTIAL_QUOTE"
    if state.status == CallStatus.ESCALATED:
        return "TOO_COMPLEX"
    return "NO_ANSWER"


def _iso(ts: float) -> str:
    if ts > 0:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    return datetime.now(timezone.utc).isoformat()


def build_call_record(state: CallState, end_time: float) -> dict:
    """Build the durable call record payload from the final CallState."""
    duration = int(end_time - state.started_at) if state.started_at > 0 else 0
    return {
        # Identity
        "callId": state.call_id,
        "quoteRequestId": state.quote_request_id,
        "supplierId": state.supplier_id,
        "supplierName": state.supplier_name,
        "supplierPhone": state.supplier_phone,
        "organizationId": state.organization_id,
        "callerId": state.caller_id,

        # Timing
        "startedAt": _iso(state.started_at),
        "endedAt": _iso(end_time),
        "durationSeconds": duration,

        # Outcome
        "status": state.status.value,
        "outcome": determine_outcome(state),
        "nextAction": state.next_action.value,
        "needsHumanEscalation": state.needs_human_escalation,
        "finalNode": state.current_node.value,
        "negotiationAttempts": state.negotiation_attempts,
        "clarificationAttempts": state.clarification_attempts,
        "turnCount": state.turn_count,
        "botScreeningAttempts": state.bot_screening_attempts,

        # Results
        "quotes": [q.to_dict() for q in state.quotes],
        "shippingCost": state.shipping_cost,
        "shippingNotes": state.shipping_notes,

        # Transcript
        "transcript": to_plain_text(state.conversation_history),
        "conversation": to_json_array(state.conversation_history),
    }


def build_followup_job(state: CallState) -> dict | None:
    """Job payload for the background queue, or None when nothing follows."""
    if state.next_action == NextAction.NONE:
        return None
    return {
        "type": state.next_action.value,
        "callId": state.call_id,
        "quoteRequestId": state.quote_request_id,
        "supplierId": state.supplier_id,
        "organizationId": state.organization_id,
        "reason": determine_outcome(state),
        "quotes": [q.to_dict() for q in state.quotes],
        "pendingParts": [p.part_number for p in state.pending_parts()],
    }


def chunk_transcript_dump(dump: dict, max_bytes: int = 3500) -> list[str]:
    """Split a transcript dump into chunks that fit within log line limits.

    Each chunk is a string: TRANSCRIPT_DUMP|N/M|{json}
    The first chunk carries the header fields and as many entries as fit;
    later chunks carry only entries.
    """
    header = {k: v for k, v in dump.items() if k != "entries"}
    entries = dump.get("entries", [])

    if not entries:
        payload = json.dumps({**header, "entries": []})
        return [f"TRANSCRIPT_DUMP|1/1|{payload}"]

    chunks: list[list[dict]] = []
    current: list[dict] = []
    current_size = len(json.dumps({**header, "entries": []}).encode("utf-8"))

    for entry in entries:
        entry_size = len(json.dumps(entry).encode("utf-8")) + 2  # separator overhead
        if current and (current_size + entry_size) > max_bytes:
            chunks.append(current)
            current = []
            current_size = len(json.dumps({"entries": []}).encode("utf-8"))
        current.append(entry)
        current_size += entry_size

    if current:
        chunks.append(current)

    total = len(chunks)
    result = []
    for i, chunk in enumerate(chunks):
        body = {**header, "entries": chunk} if i == 0 else {"entries": chunk}
        result.append(f"TRANSCRIPT_DUMP|{i + 1}/{total}|{json.dumps(body)}")
    return result


def backend_from_env() -> BackendClient | None:
    records_url = os.getenv("BACKEND_RECORDS_URL", "")
    jobs_url = os.getenv("BACKEND_JOBS_URL", "")
    webhook_secret = os.getenv("BACKEND_WEBHOOK_SECRET", "")
    if not records_url or not webhook_secret:
        return None
    return BackendClient(
        records_url=records_url,
        jobs_url=jobs_url,
        webhook_secret=webhook_secret,
    )


async def handle_call_ended(state: CallState, backend: BackendClient | None = None) -> bool:
    """Completion handler: durable record, follow-up job, transcript dump.

    Returns True once the call record is stored downstream. The transcript
    dump is logged either way.
    """
    end_time = time.time()
    backend = backend or backend_from_env()
    synced = False

    if backend is None:
        logger.warning("Backend webhook not configured, skipping post-call sync")
    else:
        # 1. Durable call record
        record_result = await backend.send_call_record(build_call_record(state, end_time))
        logger.info(f"Call record sync: {record_result}")
        synced = not (isinstance(record_result, dict) and record_result.get("success") is False)

        # 2. Follow-up job
        job = build_followup_job(state)
        if job is not None:
            if backend.jobs_url:
                job_result = await backend.enqueue_job(job)
                logger.info(f"Follow-up job ({job['type']}): {job_result}")
            else:
                logger.warning("BACKEND_JOBS_URL not set, %s job for %s not enqueued", job["type"], state.call_id)

    # 3. Structured transcript dump for CLI retrieval
    dump = to_timestamped_dump(
        state.conversation_history,
        start_time=state.started_at,
        call_id=state.call_id,
        supplier=state.supplier_name,
        final_node=state.current_node.value,
    )
    dump["status"] = state.status.value
    dump["outcome"] = determine_outcome(state)
    dump["duration_s"] = round(end_time - state.started_at, 1) if state.started_at > 0 else 0
    for line in chunk_transcript_dump(dump):
        logger.info(line)

    logger.info(
        f"Post-call complete for {state.call_id}: status={state.status.value}, "
        f"outcome={determine_outcome(state)}, quotes={len(state.quotes)}"
    )
    return synced
