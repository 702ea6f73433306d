#!/usr/bin/env python3
"""
ToolSpec - Command Line Interface

Usage:
    toolspec install                 Register this environment with the gateway
    toolspec status                  Show access state, approval state and observed tools
    toolspec verify                  Print the gateway access-status document
    toolspec review                  Preview what would be submitted, then confirm [y/N]
    toolspec prepare                 Save a whitelist-only draft without submitting
    toolspec approve                 Submit the saved draft
    toolspec search <keyword>        Search tool reviews (requires granted access)
    toolspec submit                  Submit whitelisted tools only
    toolspec submit all              Also decide per unknown tool (interactive)
    toolspec submit all --yolo       Submit every observed tool
    toolspec uninstall               Revoke the install and remove local files

Environment:
    TOOLSPEC_BASE_URL        Gateway URL (default: https://toolspec.dev)
    TOOLSPEC_CONFIG_DIR      Local state directory (default: ~/.toolspec)
    TOOLSPEC_AGENT_MODEL     Reported agent model (default: unknown-agent)
    TOOLSPEC_OBSERVED_TOOLS  Extra observed tools, comma separated
    TOOLSPEC_HISTORY_PATHS   Extra history files/directories, comma separated
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from toolspec_agent.client import ApiClient, ApiError
from toolspec_agent.history import collect_observed_tools
from toolspec_agent.local_state import LocalState
from toolspec_agent.submission import (
    MODE_ALL,
    MODE_WHITELIST,
    InteractiveDecisionRequired,
    SubmissionDraft,
    SubmissionUsageError,
    build_submission,
    is_interactive,
    terminal_decider_or_none,
)
from toolspec_agent.whitelist import load_registry_from_env, partition

logger = logging.getLogger("toolspec")

SEARCH_RESULT_LIMIT = 25

# Server error code -> the command that resolves it
NEXT_COMMANDS: Dict[str, str] = {
    "install_id_missing": "toolspec install",
    "install_not_found": "toolspec install",
    "install_revoked": "toolspec install",
    "initial_submission_required": "toolspec review",
    "meaningful_submission_required": "toolspec review",
    "validation_failed": "toolspec prepare",
    "invalid_json": "toolspec prepare",
}


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _dump(value: Any) -> None:
    print(json.dumps(value, indent=2))


def _local(args) -> LocalState:
    return LocalState(args.config_dir)


def _client(local: LocalState) -> ApiClient:
    return ApiClient.from_env(install_id=local.install_id())


def _next_command_for(err: ApiError) -> str:
    if err.code in NEXT_COMMANDS:
        return NEXT_COMMANDS[err.code]
    if err.status is None:
        return "toolspec verify   (check TOOLSPEC_BASE_URL and network access)"
    if err.retryable:
        return "retry the same command in a moment"
    return "toolspec status"


def print_api_error(err: ApiError) -> None:
    print(f"ERROR: {err}", file=sys.stderr)
    if err.server_message:
        print(err.server_message, file=sys.stderr)
    if err.details:
        print(json.dumps(err.details, indent=2), file=sys.stderr)
    print(f"NEXT STEP: {_next_command_for(err)}", file=sys.stderr)


def ensure_install(local: LocalState, client: ApiClient) -> str:
    install_id = local.install_id()
    if install_id:
        client.install_id = install_id
        return install_id
    record = client.register_install()
    local.write_install(record)
    client.install_id = record["install_id"]
    logger.info("registered install %s", client.install_id)
    return client.install_id


def _observed_tools() -> List[str]:
    return collect_observed_tools()


def _submit_draft(local: LocalState, client: ApiClient, draft: SubmissionDraft) -> Dict[str, Any]:
    response = client.submit(draft.payload)
    _dump(response)
    local.update_state(
        approved_at_utc=_now_iso(),
        approval_required=False,
        last_approved_review_id=(response or {}).get("review_id"),
    )
    return response or {}


# ---------------------------
# Commands
# ---------------------------

def cmd_install(args):
    """Register a fresh install and save its credentials."""
    local = _local(args)
    local.config_dir.mkdir(parents=True, exist_ok=True)
    try:
        local.install_path.unlink()
    except FileNotFoundError:
        pass

    client = _client(local)
    install_id = ensure_install(local, client)

    print(f"ToolSpec installed: {install_id}")
    print(f"Credentials saved: {local.install_path}")
    print("Install completed local setup only (no review submission was sent).")
    print("REQUIRED NEXT STEP: toolspec review")
    print("`toolspec review` previews data and asks for yes/no confirmation before submit.")
    print("Optional: toolspec verify")


def cmd_verify(args):
    """Print the gateway's access-status document for this install."""
    local = _local(args)
    client = _client(local)
    ensure_install(local, client)
    _dump(client.access_status())


def cmd_status(args):
    """Show access state, approval state and observed tools."""
    local = _local(args)
    client = _client(local)

    status: Optional[Dict[str, Any]] = None
    try:
        status = client.access_status()
        print("ToolSpec status:")
        _dump(status)
    except ApiError as e:
        logger.debug("access-status failed: %s", e)
        print("ToolSpec status unavailable (network/API error).")
    print()

    state = local.read_state()
    draft = local.read_draft()
    unlocked = bool(status and status.get("submission_access") == "granted" and not status.get("post_install_required"))

    if state.get("approved_at_utc") and unlocked:
        print(f"Approval status: approved at {state['approved_at_utc']}")
        print("Search enabled: toolspec search <keyword>")
    elif state.get("approved_at_utc"):
        print(f"Approval status: approved at {state['approved_at_utc']}")
        print("Search locked until required contribution is completed.")
        if status and status.get("post_install_required_message"):
            print(status["post_install_required_message"])
        print(f"REQUIRED NEXT STEP: {(status or {}).get('post_install_required_command') or 'toolspec review'}")
    elif draft and isinstance(draft.get("summary"), dict):
        s = draft["summary"]
        print("Approval status: pending")
        print(
            f"Draft summary: observed={s.get('observed_count')}, whitelist={s.get('whitelist_count')}, "
            f"unknown={s.get('unknown_count')}, redacted={s.get('redacted_count')}"
        )
        print("REQUIRED NEXT STEP: toolspec review")
    else:
        print("Approval status: pending (no cached draft found)")
        print("Run: toolspec review")

    observed = _observed_tools()
    if observed:
        parts = partition(observed, load_registry_from_env())
        print(f"Observed tools: {len(observed)} ({len(parts.public)} public, {len(parts.unknown)} non-whitelist)")
        print("Recommended:")
        print("  toolspec review")
        print("Direct submit modes:")
        print("  toolspec submit")
        print("  toolspec submit all")
        print("  toolspec submit all --yolo")
    else:
        print("Observed tools: 0")
        print("No supported tool history found yet.")
        print("After using tools in Claude/Codex/Cursor, run:")
        print("  toolspec review")


def _prepare(local: LocalState) -> SubmissionDraft:
    draft = build_submission(
        MODE_WHITELIST,
        False,
        _observed_tools(),
        local.install_id(),
        registry=load_registry_from_env(),
    )
    local.write_draft(draft.to_dict())
    local.update_state(draft_prepared_at_utc=draft.created_at_utc, approval_required=True)
    return draft


def cmd_prepare(args):
    """Save a whitelist-only draft without submitting it."""
    local = _local(args)
    draft = _prepare(local)
    print("Prepared local review draft (not submitted).")
    _dump(draft.summary)
    print(f"Draft saved: {local.draft_path}")
    print("Next step: toolspec review")


def cmd_approve(args):
    """Submit the saved draft, preparing one first if needed."""
    local = _local(args)
    draft = SubmissionDraft.from_dict(local.read_draft())
    if draft is None:
        print("No cached draft found; preparing one now...")
        draft = _prepare(local)

    client = _client(local)
    draft = draft.with_install_id(ensure_install(local, client))
    response = _submit_draft(local, client, draft)

    record = draft.to_dict()
    record.update(approved_at_utc=_now_iso(), approved_review_id=response.get("review_id"))
    local.write_draft(record)

    if not draft.summary.get("observed_count"):
        print("Approval complete, but search remains locked.")
        print("Activation review had 0 observed tools.")
        print("After running tools in a session, run:")
        print("  toolspec review")
        return
    print("Approval complete. You can now run: toolspec search <keyword>")


def _matches(row: Dict[str, Any], keyword: str) -> bool:
    models = row.get("agent_models")
    fields = [
        row.get("tool_slug"),
        row.get("tool_name"),
        row.get("category"),
        row.get("recommendation"),
        row.get("confidence"),
        " ".join(models) if isinstance(models, list) else "",
    ]
    return any(keyword in str(f or "").lower() for f in fields)


def cmd_search(args):
    """Search tool reviews by keyword."""
    keyword = " ".join(args.keyword).strip()
    if not keyword:
        print("Usage: toolspec search <keyword>", file=sys.stderr)
        sys.exit(2)

    local = _local(args)
    client = _client(local)
    status = client.access_status()
    if status.get("submission_access") != "granted" or status.get("post_install_required"):
        print(
            status.get("post_install_required_message")
            or "Search is locked. Run `toolspec review` after using tools in a real session.",
            file=sys.stderr,
        )
        print(f"NEXT STEP: {status.get('post_install_required_command') or 'toolspec review'}", file=sys.stderr)
        sys.exit(1)

    payload = client.list_reviews()
    rows = payload.get("reviews") if isinstance(payload, dict) else None
    matches = [r for r in (rows or []) if isinstance(r, dict) and _matches(r, keyword.lower())]

    if not matches:
        print(f"No reviews matched '{keyword}'.")
        return

    print(f"Matches for '{keyword}': {len(matches)}")
    for row in matches[:SEARCH_RESULT_LIMIT]:
        rate = row.get("error_rate")
        error_pct = f"{rate * 100:.1f}%" if isinstance(rate, (int, float)) else "n/a"
        print(
            f"- {row.get('tool_slug')} | {row.get('tool_name')} | "
            f"{row.get('recommendation')}/{row.get('confidence')} | error {error_pct} | {row.get('detail_url')}"
        )
    if len(matches) > SEARCH_RESULT_LIMIT:
        print(f"Showing first {SEARCH_RESULT_LIMIT} of {len(matches)} results.")


def cmd_submit(args):
    """Build a submission from observed tools and send it."""
    if args.yolo and args.scope != "all":
        raise SubmissionUsageError("`--yolo` requires `all`.")
    mode = MODE_ALL if args.scope == "all" else MODE_WHITELIST
    local = _local(args)
    client = _client(local)
    install_id = ensure_install(local, client)

    draft = build_submission(
        mode,
        args.yolo,
        _observed_tools(),
        install_id,
        decider=terminal_decider_or_none(),
        registry=load_registry_from_env(),
    )
    _submit_draft(local, client, draft)

    print(
        f"Submitted tools: {len(draft.submitted_tools)} | Redacted tools: {len(draft.redacted_tools)} | "
        f"Mode: {mode}{' (yolo)' if args.yolo else ''}"
    )
    if draft.redacted_tools:
        print(f"Redacted tool slugs: {', '.join(draft.redacted_tools)}")


def cmd_review(args):
    """Preview the whitelist-only submission and ask before sending it."""
    observed = _observed_tools()
    parts = partition(observed, load_registry_from_env())

    print("ToolSpec review preview:")
    print("Source: local Claude/Codex/Cursor history + TOOLSPEC_OBSERVED_TOOLS")
    _dump({
        "observed_tools": len(observed),
        "whitelisted_tools_to_submit": len(parts.public),
        "non_whitelist_tools_redacted": len(parts.unknown),
    })
    print(f"Submit list: {', '.join(parts.public) if parts.public else '(none)'}")
    if parts.unknown:
        print(f"Redacted by default: {', '.join(parts.unknown)}")
    if not observed:
        print("No observed tools detected in supported history files.")
        print("If your history lives elsewhere, set TOOLSPEC_HISTORY_PATHS and re-run `toolspec review`.")

    if not is_interactive():
        print("Interactive prompt unavailable. Run `toolspec submit` to submit explicitly.")
        return
    try:
        answer = input("Submit this review now? [y/N]: ")
    except EOFError:
        answer = ""
    if answer.strip().lower() not in ("y", "yes"):
        print("Review not submitted.")
        return

    args.scope = None
    args.yolo = False
    cmd_submit(args)


def cmd_uninstall(args):
    """Revoke the install (best effort) and remove local files."""
    local = _local(args)
    install_id = local.install_id()
    if install_id:
        try:
            _client(local).revoke_install(install_id)
        except ApiError as e:
            logger.debug("revoke failed: %s", e)
            print("ToolSpec warning: revoke request failed.", file=sys.stderr)
    local.clear()
    print("ToolSpec uninstalled.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolspec",
        description="ToolSpec CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--config-dir", type=Path, default=None, help="Local state directory (overrides TOOLSPEC_CONFIG_DIR)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("install", help="Register this environment").set_defaults(func=cmd_install)
    subparsers.add_parser("status", help="Show access and approval state").set_defaults(func=cmd_status)
    subparsers.add_parser("verify", help="Print access-status").set_defaults(func=cmd_verify)
    subparsers.add_parser("review", help="Preview and confirm a submission").set_defaults(func=cmd_review)
    subparsers.add_parser("prepare", help="Save a draft without submitting").set_defaults(func=cmd_prepare)
    subparsers.add_parser("approve", help="Submit the saved draft").set_defaults(func=cmd_approve)

    search_parser = subparsers.add_parser("search", help="Search tool reviews")
    search_parser.add_argument("keyword", nargs="*", help="Keyword to match")
    search_parser.set_defaults(func=cmd_search)

    submit_parser = subparsers.add_parser("submit", help="Submit observed tools")
    submit_parser.add_argument("scope", nargs="?", choices=["all"], help="Also consider non-whitelist tools")
    submit_parser.add_argument("--yolo", action="store_true", help="With 'all': include every unknown tool without asking")
    submit_parser.set_defaults(func=cmd_submit)

    subparsers.add_parser("uninstall", help="Revoke and remove local state").set_defaults(func=cmd_uninstall)
    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        args.command = "status"
        args.func = cmd_status

    setup_logging(args.verbose)
    try:
        args.func(args)
    except ApiError as e:
        print_api_error(e)
        sys.exit(1)
    except InteractiveDecisionRequired as e:
        print(f"ERROR: {e}", file=sys.stderr)
        print(f"Unknown tools: {', '.join(e.unknown_tools)}", file=sys.stderr)
        print("NEXT STEP: toolspec submit all --yolo   (or: toolspec submit)", file=sys.stderr)
        sys.exit(1)
    except SubmissionUsageError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        print("Usage: toolspec submit [all] [--yolo]", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
