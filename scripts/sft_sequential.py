#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastmcp", "pydantic>=2.0.0"]
# ///
"""
Sequential thinking: in-memory thought ledger with revisions and branches.

Architecture:
  ThoughtLedger → ordered history + branch buckets, lives for the process
  No persistence; a fresh process starts with an empty ledger.
  Each submission is validated, recorded, rendered to stderr/log, summarized.

Usage:
  sft_sequential.py sequentialthinking "thought" -n 1 -t 3     # Submit one thought
  sft_sequential.py sequentialthinking "fix" -n 4 -t 5 -R -r 2 # Revise thought 2
  sft_sequential.py replay trace.jsonl                         # Replay a trace
  sft_sequential.py describe                                   # Tool schema
  sft_sequential.py mcp-stdio                                  # MCP server mode
"""

import argparse
import copy
import json
import math
import os
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any

# =============================================================================
# LOGGING (TSV format)
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = (
    Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv"
    if _LOG_DIR
    else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
)
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(
    level: str,
    event: str,
    msg: str,
    *,
    detail: str = "",
    metrics: str = "",
    trace: str = "",
):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(
                f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{_esc(msg)}\t{_esc(detail)}"
                f"\t{metrics}\t{trace}\n"
            )
    except Exception:
        pass


def _esc(s) -> str:
    """Escape a value for a single TSV cell."""
    if s is None:
        return ""
    return (
        str(s)
        .replace("\\", "\\\\")
        .replace("\t", "\\t")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


# =============================================================================
# CONFIGURATION
# =============================================================================
EXPOSED = ["sequentialthinking"]  # CLI + MCP

CONFIG = {
    "version": "1.0.0",
    "tool_name": "sequentialthinking",
    # Echo the rendered thought block to stderr (log file gets it regardless)
    "echo_thoughts": os.environ.get("SFB_THOUGHT_ECHO", "1").lower()
    not in ("0", "false", "no"),
    "frame_rule": "=" * 16,
}

REQUIRED_FIELDS = ["thought", "nextThoughtNeeded", "thoughtNumber", "totalThoughts"]

TOOL_DESCRIPTION = """A detailed tool for dynamic and reflective problem-solving through thoughts.
This tool helps analyze problems through a flexible thinking process that can adapt and evolve.
Each thought can build on, question, or revise previous insights as understanding deepens.

When to use this tool:
- Breaking down complex problems into steps
- Planning and design with room for revision
- Analysis that might need course correction
- Problems where the full scope might not be clear initially
- Problems that require a multi-step solution
- Tasks that need to maintain context over multiple steps
- Situations where irrelevant information needs to be filtered out

Key features:
- You can adjust total_thoughts up or down as you progress
- You can question or revise previous thoughts
- You can add more thoughts even after reaching what seemed like the end
- You can express uncertainty and explore alternative approaches
- Not every thought needs to build linearly - you can branch or backtrack
- Generates a solution hypothesis
- Verifies the hypothesis based on the Chain of Thought steps
- Repeats the process until satisfied
- Provides a correct answer

Parameters explained:
- thought: Your current thinking step, which can include:
  * Regular analytical steps
  * Revisions of previous thoughts
  * Questions about previous decisions
  * Realizations about needing more analysis
  * Changes in approach
  * Hypothesis generation
  * Hypothesis verification
- next_thought_needed: True if you need more thinking, even if at what seemed like the end
- thought_number: Current number in sequence (can go beyond initial total if needed)
- total_thoughts: Current estimate of thoughts needed (can be adjusted up/down)
- is_revision: A boolean indicating if this thought revises previous thinking
- revises_thought: If is_revision is true, which thought number is being reconsidered
- branch_from_thought: If branching, which thought number is the branching point
- branch_id: Identifier for the current branch (if any)
- needs_more_thoughts: If reaching end but realizing more thoughts needed

You should:
1. Start with an initial estimate of needed thoughts, but be ready to adjust
2. Feel free to question or revise previous thoughts
3. Don't hesitate to add more thoughts if needed, even at the "end"
4. Express uncertainty when present
5. Mark thoughts that revise previous thinking or branch into new paths
6. Ignore information that is irrelevant to the current step
7. Generate a solution hypothesis when appropriate
8. Verify the hypothesis based on the Chain of Thought steps
9. Repeat the process until satisfied with the solution
10. Provide a single, ideally correct answer as the final output
11. Only set next_thought_needed to false when truly done and a satisfactory answer is reached"""

INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "thought": {"type": "string", "description": "Your current thinking step"},
        "nextThoughtNeeded": {
            "type": "boolean",
            "description": "Whether another thought step is needed",
        },
        "thoughtNumber": {"type": "integer", "description": "Current thought number"},
        "totalThoughts": {
            "type": "integer",
            "description": "Estimated total thoughts needed",
        },
        "isRevision": {
            "type": "boolean",
            "description": "Whether this revises previous thinking",
        },
        "revisesThought": {
            "type": "integer",
            "description": "Which thought is being reconsidered",
        },
        "branchFromThought": {
            "type": "integer",
            "description": "Branching point thought number",
        },
        "branchId": {"type": "string", "description": "Branch identifier"},
        "needsMoreThoughts": {
            "type": "boolean",
            "description": "If more thoughts are needed",
        },
    },
    "required": REQUIRED_FIELDS,
}

TOOLS = [
    {
        "name": CONFIG["tool_name"],
        "description": TOOL_DESCRIPTION,
        "inputSchema": INPUT_SCHEMA,
    }
]

# Rendering labels per classification
LABELS = {
    "revision": "🔄 Revision",
    "branch": "🌿 Branch",
    "plain": "💭 Thought",
}


# =============================================================================
# CORE FUNCTIONS
# =============================================================================


class ThoughtValidationError(ValueError):
    """A required thought field is missing or has the wrong type."""

    def __init__(self, field: str, message: str):
        super().__init__(f"Invalid {field}: {message}")
        self.field = field


@dataclass
class ThoughtRecord:
    """One submitted thought. Optional fields are None when absent."""

    thought: str
    thought_number: int
    total_thoughts: int
    next_thought_needed: bool
    is_revision: bool | None = None
    revises_thought: int | None = None
    branch_from_thought: int | None = None
    branch_id: str | None = None
    needs_more_thoughts: bool | None = None

    def to_dict(self) -> dict:
        """Wire form (camelCase), absent optionals omitted."""
        data = {
            "thought": self.thought,
            "thoughtNumber": self.thought_number,
            "totalThoughts": self.total_thoughts,
            "nextThoughtNeeded": self.next_thought_needed,
            "isRevision": self.is_revision,
            "revisesThought": self.revises_thought,
            "branchFromThought": self.branch_from_thought,
            "branchId": self.branch_id,
            "needsMoreThoughts": self.needs_more_thoughts,
        }
        return {k: v for k, v in data.items() if v is not None}


class ThoughtLedger:
    """Append-only history of thoughts plus branch buckets.

    The ledger does no validation; callers hand it finished records.
    Hold ``lock`` around any sequence of calls that must appear atomic.
    """

    def __init__(self):
        self._history: list[ThoughtRecord] = []
        self._branches: dict[str, list[ThoughtRecord]] = {}
        self.lock = threading.Lock()

    def append(self, record: ThoughtRecord) -> None:
        self._history.append(record)

    def append_to_branch(self, branch_id: str, record: ThoughtRecord) -> None:
        self._branches.setdefault(branch_id, []).append(record)

    def branch_identifiers(self) -> list[str]:
        """Known branch ids. Order is not part of the contract."""
        return list(self._branches)

    def size(self) -> int:
        return len(self._history)

    def __len__(self) -> int:
        return self.size()

    @property
    def history(self) -> tuple[ThoughtRecord, ...]:
        return tuple(self._history)

    @property
    def branches(self) -> MappingProxyType:
        return MappingProxyType(
            {bid: tuple(records) for bid, records in self._branches.items()}
        )


def _as_int(value: Any) -> int | None:
    """JSON number → int (truncating), None for anything else. bool is not a number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def _required_count(args: dict, field: str) -> int:
    number = _as_int(args.get(field))
    if number is None:
        raise ThoughtValidationError(field, "must be a number")
    if number < 1:
        raise ThoughtValidationError(field, "must be a positive number")
    return number


def _parse_thought(args: dict) -> ThoughtRecord:
    """Validate a raw argument bag into a ThoughtRecord.

    Required fields raise ThoughtValidationError. Optional fields of the
    wrong type are dropped without error.
    """
    thought = args.get("thought")
    if not isinstance(thought, str) or not thought:
        raise ThoughtValidationError("thought", "must be a non-empty string")

    thought_number = _required_count(args, "thoughtNumber")
    total_thoughts = _required_count(args, "totalThoughts")

    next_needed = args.get("nextThoughtNeeded")
    if not isinstance(next_needed, bool):
        raise ThoughtValidationError("nextThoughtNeeded", "must be a boolean")

    def _opt_bool(key):
        value = args.get(key)
        return value if isinstance(value, bool) else None

    branch_id = args.get("branchId")

    return ThoughtRecord(
        thought=thought,
        thought_number=thought_number,
        total_thoughts=total_thoughts,
        next_thought_needed=next_needed,
        is_revision=_opt_bool("isRevision"),
        revises_thought=_as_int(args.get("revisesThought")),
        branch_from_thought=_as_int(args.get("branchFromThought")),
        branch_id=branch_id if isinstance(branch_id, str) else None,
        needs_more_thoughts=_opt_bool("needsMoreThoughts"),
    )


def _normalize_thought(record: ThoughtRecord) -> ThoughtRecord:
    """Raise the estimate to the thought number when it was exceeded."""
    if record.thought_number > record.total_thoughts:
        record.total_thoughts = record.thought_number
    return record


def _classify_thought(record: ThoughtRecord) -> str:
    if record.is_revision is True:
        return "revision"
    if record.branch_from_thought is not None:
        return "branch"
    return "plain"


def _thought_header(record: ThoughtRecord) -> str:
    kind = _classify_thought(record)
    context = ""
    if kind == "revision":
        if record.revises_thought is not None:
            context = f" (revising thought {record.revises_thought})"
    elif kind == "branch":
        context = (
            f" (from thought {record.branch_from_thought}, "
            f"ID: {record.branch_id or ''})"
        )
    return (
        f"{LABELS[kind]} {record.thought_number}/{record.total_thoughts}{context}"
    )


def _render_thought(record: ThoughtRecord) -> str:
    """Framed, human-readable block for stderr and the log."""
    return f"\n=== {_thought_header(record)} ===\n{record.thought}\n{CONFIG['frame_rule']}"


def _submit_impl(ledger: ThoughtLedger, args: dict) -> tuple[dict, dict]:
    """Validate, record, render and summarize one thought.

    Raises ThoughtValidationError before touching the ledger.
    """
    start_ms = time.time() * 1000

    record = _parse_thought(args)

    with ledger.lock:
        _normalize_thought(record)
        ledger.append(record)
        if record.branch_from_thought is not None and record.branch_id is not None:
            ledger.append_to_branch(record.branch_id, record)

        rendered = _render_thought(record)
        if CONFIG["echo_thoughts"]:
            print(rendered, file=sys.stderr)

        result = {
            "thoughtNumber": record.thought_number,
            "totalThoughts": record.total_thoughts,
            "nextThoughtNeeded": record.next_thought_needed,
            "branches": ledger.branch_identifiers(),
            "thoughtHistoryLength": ledger.size(),
        }

    latency_ms = time.time() * 1000 - start_ms
    metrics = {"status": "success", "latency_ms": round(latency_ms, 2)}
    _log(
        "INFO",
        "thought",
        _thought_header(record),
        detail=record.thought,
        metrics=f"history={result['thoughtHistoryLength']} latency_ms={metrics['latency_ms']}",
    )
    return result, metrics


def _text_payload(text: str, is_error: bool = False) -> dict:
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def _call_impl(ledger: ThoughtLedger, name: str, args: Any) -> tuple[dict, dict]:
    """Invoke a named tool with JSON arguments. CLI: replay, MCP: sequentialthinking.

    Failures come back as error payloads, never as exceptions.
    """
    start_ms = time.time() * 1000
    _log("DEBUG", "call_args", f"{name}", detail=json.dumps(args, default=str))

    def _failed(text: str) -> tuple[dict, dict]:
        latency_ms = time.time() * 1000 - start_ms
        return _text_payload(text, is_error=True), {
            "status": "error",
            "latency_ms": round(latency_ms, 2),
        }

    if name != CONFIG["tool_name"]:
        _log("WARN", "unknown_tool", f"Unknown tool {name}")
        return _failed(f"Unknown tool {name}")

    if not isinstance(args, dict):
        _log("WARN", "validation", "arguments must be a JSON object")
        return _failed("Error: arguments must be a JSON object")

    try:
        result, metrics = _submit_impl(ledger, args)
    except ThoughtValidationError as e:
        _log("WARN", "validation", str(e), detail=e.field)
        return _failed(f"Error: {e}")

    return _text_payload(json.dumps(result, indent=2)), metrics


def _describe_impl() -> tuple[dict, dict]:
    """List tool descriptions. CLI: describe, MCP: (tools/list)."""
    start_ms = time.time() * 1000
    tools = []
    for tool in TOOLS:
        schema = copy.deepcopy(tool["inputSchema"])
        schema.setdefault("required", [])
        tools.append({**tool, "inputSchema": schema})
    latency_ms = time.time() * 1000 - start_ms
    return {"tools": tools}, {"status": "success", "latency_ms": round(latency_ms, 2)}


def _replay_impl(ledger: ThoughtLedger, lines) -> tuple[list[dict], dict]:
    """Submit JSON Lines argument objects in order against one ledger. CLI: replay."""
    start_ms = time.time() * 1000
    results = []
    errors = 0
    for lineno, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        try:
            args = json.loads(line)
        except json.JSONDecodeError as e:
            payload = _text_payload(f"Error: line {lineno}: {e.msg}", is_error=True)
        else:
            payload, _ = _call_impl(ledger, CONFIG["tool_name"], args)
        if payload["isError"]:
            errors += 1
        results.append(payload)

    _log("INFO", "replay", f"{len(results)} calls, {errors} errors")
    latency_ms = time.time() * 1000 - start_ms
    metrics = {
        "status": "error" if errors else "success",
        "count": len(results),
        "errors": errors,
        "latency_ms": round(latency_ms, 2),
    }
    return results, metrics


# =============================================================================
# CLI INTERFACE
# =============================================================================


def main():
    parser = argparse.ArgumentParser(
        description="Sequential thinking with revisions and branches",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sft_sequential.py sequentialthinking "List the constraints" -n 1 -t 3
  sft_sequential.py sequentialthinking "Constraint 2 was wrong" -n 2 -t 3 -R -r 1
  sft_sequential.py sequentialthinking "Try caching instead" -n 3 -t 4 -f 1 -b alt
  echo "Final answer" | sft_sequential.py sequentialthinking -n 4 -t 4 -d
  sft_sequential.py replay trace.jsonl
  cat trace.jsonl | sft_sequential.py replay
  sft_sequential.py describe
""",
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {CONFIG['version']}"
    )
    sub = parser.add_subparsers(dest="command")

    # sequentialthinking
    p_think = sub.add_parser(
        "sequentialthinking", help="Submit one thought into a fresh ledger"
    )
    p_think.add_argument("thought", nargs="?", default="", help="The thought (or stdin)")
    p_think.add_argument("-n", "--number", type=int, required=True, help="Thought number")
    p_think.add_argument("-t", "--total", type=int, required=True, help="Estimated total thoughts")
    p_think.add_argument("-d", "--done", action="store_true", help="No further thought needed")
    p_think.add_argument("-R", "--revision", action="store_true", help="This revises earlier thinking")
    p_think.add_argument("-r", "--revises", type=int, help="Thought number being revised")
    p_think.add_argument("-f", "--branch-from", type=int, help="Thought number to branch from")
    p_think.add_argument("-b", "--branch-id", help="Branch identifier")
    p_think.add_argument("-m", "--needs-more", action="store_true", help="Estimate is too low")

    # replay
    p_replay = sub.add_parser("replay", help="Replay a JSON Lines trace of tool arguments")
    p_replay.add_argument("file", nargs="?", default="-", help="JSONL file (default: stdin)")

    # describe
    sub.add_parser("describe", help="Print tool name, description and input schema")

    # mcp-stdio
    sub.add_parser("mcp-stdio", help="Run as MCP stdio server")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "mcp-stdio":
        _run_mcp()
        return

    try:
        if args.command == "sequentialthinking":
            thought = args.thought
            if not thought and not sys.stdin.isatty():
                thought = sys.stdin.read().strip()
            raw = {
                "thought": thought,
                "thoughtNumber": args.number,
                "totalThoughts": args.total,
                "nextThoughtNeeded": not args.done,
            }
            if args.revision:
                raw["isRevision"] = True
            if args.revises is not None:
                raw["revisesThought"] = args.revises
            if args.branch_from is not None:
                raw["branchFromThought"] = args.branch_from
            if args.branch_id:
                raw["branchId"] = args.branch_id
            if args.needs_more:
                raw["needsMoreThoughts"] = True

            payload, _ = _call_impl(ThoughtLedger(), CONFIG["tool_name"], raw)
            text = payload["content"][0]["text"]
            if payload["isError"]:
                print(text, file=sys.stderr)
                sys.exit(1)
            print(text)

        elif args.command == "replay":
            if args.file == "-":
                assert not sys.stdin.isatty(), "replay needs a FILE or piped stdin"
                lines = sys.stdin.read().splitlines()
            else:
                lines = Path(args.file).read_text(encoding="utf-8").splitlines()
            results, metrics = _replay_impl(ThoughtLedger(), lines)
            for payload in results:
                text = payload["content"][0]["text"]
                if payload["isError"]:
                    print(json.dumps({"error": text}))
                else:
                    print(json.dumps(json.loads(text)))
            if metrics["errors"]:
                sys.exit(1)

        elif args.command == "describe":
            result, _ = _describe_impl()
            print(json.dumps(result, indent=2, ensure_ascii=False))

        else:
            parser.print_help()
            sys.exit(1)

    except (AssertionError, Exception) as e:
        _log("ERROR", args.command, str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER
# =============================================================================


def _build_mcp(ledger: ThoughtLedger):
    """Build the FastMCP server around one ledger.

    Parameters are typed Any so raw JSON values reach _parse_thought
    untouched; json_schema_extra keeps the advertised schema types.
    """
    from typing import Annotated

    from fastmcp import FastMCP
    from fastmcp.exceptions import ToolError
    from pydantic import Field

    props = INPUT_SCHEMA["properties"]

    def _param(key):
        return Field(
            description=props[key]["description"],
            json_schema_extra={"type": props[key]["type"]},
        )

    mcp = FastMCP("sequentialthinking")

    @mcp.tool(description=TOOL_DESCRIPTION)
    def sequentialthinking(
        thought: Annotated[Any, _param("thought")],
        nextThoughtNeeded: Annotated[Any, _param("nextThoughtNeeded")],
        thoughtNumber: Annotated[Any, _param("thoughtNumber")],
        totalThoughts: Annotated[Any, _param("totalThoughts")],
        isRevision: Annotated[Any, _param("isRevision")] = None,
        revisesThought: Annotated[Any, _param("revisesThought")] = None,
        branchFromThought: Annotated[Any, _param("branchFromThought")] = None,
        branchId: Annotated[Any, _param("branchId")] = None,
        needsMoreThoughts: Annotated[Any, _param("needsMoreThoughts")] = None,
    ) -> str:
        """Record one step of sequential thinking and report progress.

        Args:
            thought: Your current thinking step
            nextThoughtNeeded: Whether another thought step is needed
            thoughtNumber: Current thought number
            totalThoughts: Estimated total thoughts needed
            isRevision: Whether this revises previous thinking
            revisesThought: Which thought is being reconsidered
            branchFromThought: Branching point thought number
            branchId: Branch identifier
            needsMoreThoughts: If more thoughts are needed
        """
        raw = {
            "thought": thought,
            "nextThoughtNeeded": nextThoughtNeeded,
            "thoughtNumber": thoughtNumber,
            "totalThoughts": totalThoughts,
        }
        optional = {
            "isRevision": isRevision,
            "revisesThought": revisesThought,
            "branchFromThought": branchFromThought,
            "branchId": branchId,
            "needsMoreThoughts": needsMoreThoughts,
        }
        raw.update({k: v for k, v in optional.items() if v is not None})
        payload, _ = _call_impl(ledger, CONFIG["tool_name"], raw)
        text = payload["content"][0]["text"]
        if payload["isError"]:
            raise ToolError(text)
        return text

    return mcp


def _run_mcp():
    """Build and run the FastMCP server."""
    mcp = _build_mcp(ThoughtLedger())
    _log("INFO", "mcp_start", "sequentialthinking MCP server starting")
    print("sequentialthinking MCP server starting...", file=sys.stderr)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
