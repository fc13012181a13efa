#!/usr/bin/env python3
"""Reassemble the timestamped transcript of a supplier call from server logs.

Usage:
    python scripts/call_transcript.py server.log                  # last call, human-readable
    python scripts/call_transcript.py server.log --raw            # last call, raw JSON
    python scripts/call_transcript.py server.log --call-id c-123  # specific call
    kubectl logs deploy/partcall | python scripts/call_transcript.py
    python scripts/call_transcript.py server.log --gap-threshold 3
"""

import argparse
import json
import sys


def parse_transcript_lines(lines: list[str], call_id: str | None = None) -> list[dict]:
    """Parse TRANSCRIPT_DUMP lines from log output into transcript dicts.

    Handles multi-chunk reassembly. Returns list of complete transcripts
    (most recent last). If call_id is specified, filters to that call only.
    """
    chunk_groups: dict[int, dict[int, str]] = {}
    group_counter = 0

    for line in lines:
        if "TRANSCRIPT_DUMP|" not in line:
            continue

        idx = line.index("TRANSCRIPT_DUMP|")
        fields = line[idx:].split("|", 2)
        if len(fields) < 3:
            continue

        try:
            chunk_num, total = fields[1].split("/")
            chunk_num = int(chunk_num)
            int(total)
        except (ValueError, IndexError):
            continue

        if chunk_num == 1:
            group_counter += 1
        chunk_groups.setdefault(group_counter, {})[chunk_num] = fields[2].strip()

    transcripts = []
    for group_id in sorted(chunk_groups):
        chunks = chunk_groups[group_id]
        try:
            first = json.loads(chunks.get(1, "{}"))
        except json.JSONDecodeError:
            continue

        if call_id and first.get("call_id") != call_id:
            continue

        all_entries = list(first.get("entries", []))
        for i in sorted(chunks):
            if i == 1:
                continue
            try:
                all_entries.extend(json.loads(chunks[i]).get("entries", []))
            except json.JSONDecodeError:
                continue

        first["entries"] = all_entries
        transcripts.append(first)

    return transcripts


def format_transcript(transcript: dict, gap_threshold: float = 2.0) -> str:
    """Format a transcript dict into human-readable output with gap annotations."""
    lines = []

    call_id = transcript.get("call_id", "unknown")
    supplier = transcript.get("supplier") or "unknown supplier"
    duration = transcript.get("duration_s", 0)
    final_node = transcript.get("final_node", "unknown")
    outcome = transcript.get("outcome", "")
    header = f"Call {call_id} | {supplier} | {duration}s | {final_node}"
    if outcome:
        header += f" | {outcome}"
    lines.append(header)
    lines.append("=" * 55)
    lines.append("")

    entries = transcript.get("entries", [])
    prev_t = None

    for entry in entries:
        t = entry.get("t", 0.0)
        node = entry.get("node", "")

        if prev_t is not None:
            gap = t - prev_t
            if gap >= gap_threshold:
                marker = " SLOW" if gap >= 5.0 else ""
                lines.append(f"      : +{gap:.1f}s{marker}")

        node_tag = f"[{node}]" if node else ""
        label = "Agent" if entry.get("speaker") == "ai" else "Supplier"
        lines.append(f"{t:5.1f}s {node_tag:<18} {label}: {entry.get('text', '')}")
        prev_t = t

    if entries:
        lines.append(f"{duration:5.1f}s {'':18} Call ended")

    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(description="Reassemble a call transcript from TRANSCRIPT_DUMP log lines")
    parser.add_argument("logfile", nargs="?", default="-", help="Log file to read (default: stdin)")
    parser.add_argument("--raw", action="store_true", help="Output raw JSON")
    parser.add_argument("--call-id", type=str, default=None, help="Filter by call ID")
    parser.add_argument("--gap-threshold", type=float, default=2.0, help="Gap threshold in seconds (default: 2.0)")
    args = parser.parse_args()

    if args.logfile == "-":
        lines = sys.stdin.read().splitlines()
    else:
        try:
            with open(args.logfile, encoding="utf-8") as f:
                lines = f.read().splitlines()
        except OSError as e:
            print(f"Error: cannot read {args.logfile}: {e}", file=sys.stderr)
            sys.exit(1)

    transcripts = parse_transcript_lines(lines, call_id=args.call_id)
    if not transcripts:
        print("No TRANSCRIPT_DUMP lines found.", file=sys.stderr)
        sys.exit(1)

    transcript = transcripts[-1]
    if args.raw:
        print(json.dumps(transcript, indent=2))
    else:
        print(format_transcript(transcript, gap_threshold=args.gap_threshold))


if __name__ == "__main__":
    main()
