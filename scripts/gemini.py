#!/usr/bin/env python3
"""
Gemini CLI - chat with Google Gemini from the terminal.
Uses the web app's own endpoints with your browser cookies.
Interactive by default; --prompt sends a single message and exits.
"""

import argparse
import asyncio
import json
import sys
import warnings
from datetime import datetime
from pathlib import Path

try:
    import readline  # noqa: F401  (line editing and history for input())
except ImportError:
    pass

from config import (
    DEFAULT_SCHEMA,
    DEFAULT_TIMEOUT,
    EXIT_COMMAND,
    RESET_COMMAND,
    SHOW_COMMAND,
    get_setting,
    load_env_file,
)
from envelope import SchemaVariant, TurnReply
from errors import (
    ConfigurationError,
    ContinuityUnresolved,
    DecodeError,
    FatalAuthError,
    GeminiError,
    TransportError,
)
from gemini_client import create_session, gemini_prompt, reset, submit

USER_HEADER = "╭─ You"
GEMINI_HEADER = "╭─ Gemini"
SYSTEM_HEADER = "╭─ System"
ARROW = "╰─>"
INPUT_PROMPT = ">- "


def _log(msg: str, verbose: bool) -> None:
    """Print debug message to stderr if verbose mode is enabled."""
    if verbose:
        print(f"[gemini] {msg}", file=sys.stderr)


def _now() -> str:
    return datetime.now().strftime("%H:%M:%S")


# ── Transcript ────────────────────────────────────────────────────────

def transcript_name(first_input: str) -> str:
    """
    File name for a chat transcript, derived from the first message.

    "Hello there, Gemini" → "gemini_hello_ther.md"; falls back to
    "gemini.md" when nothing usable is left.
    """
    slug = "".join(
        c for c in first_input[:10] if c.isalnum() or c.isspace()
    ).lower().replace(" ", "_")
    return f"gemini_{slug}.md" if slug else "gemini.md"


def transcript_path(history_dir: str | None, first_input: str) -> Path | None:
    if not history_dir or not history_dir.strip():
        return None
    return Path(history_dir).expanduser() / transcript_name(first_input)


def append_to_file(path: Path | None, content: str) -> None:
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(content)


# ── Rendering ─────────────────────────────────────────────────────────

def format_reply(reply: TurnReply, multi: bool = False) -> str:
    """Reply block as shown in the terminal."""
    lines = [f"{GEMINI_HEADER} [{_now()}]"]
    if multi and reply.candidates:
        for i, candidate in enumerate(reply.candidates, 1):
            for fragment in candidate.fragments or (candidate.text,):
                lines.append(f"{ARROW} {i}. {fragment}")
    else:
        lines.append(f"{ARROW} {reply.content}")
    if reply.location and reply.location.address:
        place = f" ({reply.location.place_type})" if reply.location.place_type else ""
        lines.append(f"   Location: {reply.location.address}{place}")
    return "\n".join(lines)


def format_candidates(reply: TurnReply | None) -> str:
    """Alternative drafts of the last reply, for !show."""
    if reply is None:
        return f"{SYSTEM_HEADER}\n{ARROW} Nothing to show yet."
    if not reply.candidates:
        return f"{SYSTEM_HEADER}\n{ARROW} No alternative drafts for the last reply."
    lines = [f"{GEMINI_HEADER} [{_now()}]"]
    for i, candidate in enumerate(reply.candidates, 1):
        lines.append(f"{ARROW} {i}. {candidate.text}")
    return "\n".join(lines)


def _thinking(active: bool) -> None:
    if active:
        print("\rGemini: thinking...", end="", file=sys.stderr, flush=True)
    else:
        print("\r\x1b[2K", end="", file=sys.stderr, flush=True)


# ── Interactive mode ──────────────────────────────────────────────────

def _run_turn(runner: asyncio.Runner, session, text: str, verbose: bool) -> TurnReply:
    """Submit one message, surfacing continuity warnings on stderr."""
    _thinking(True)
    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ContinuityUnresolved)
            reply = runner.run(submit(session, text, verbose=verbose))
    finally:
        _thinking(False)
    for w in caught:
        print(f"Warning: {w.message}", file=sys.stderr)
    return reply


def chat_loop(
    runner: asyncio.Runner,
    session,
    multi: bool = False,
    history_dir: str | None = None,
    verbose: bool = False,
    read_line=input,
) -> int:
    """
    Read-eval-print loop over one session.

    Commands: !exit quits, !reset starts a new conversation, !show lists
    the alternative drafts of the last reply. Turn errors are reported and
    the loop carries on.
    """
    file_path = None
    first_input = True
    last_reply = None

    print()
    while True:
        print(f"{USER_HEADER} [{_now()}]")
        try:
            line = read_line(INPUT_PROMPT)
        except EOFError:
            print("\nEOF detected, exiting...")
            return 0
        except KeyboardInterrupt:
            print("\nInterrupt signal detected, exiting...")
            return 0

        text = line.strip()
        if not text:
            continue

        if first_input:
            first_input = False
            file_path = transcript_path(history_dir, text)
            _log(f"transcript: {file_path}", verbose)

        if text == EXIT_COMMAND:
            return 0
        if text == RESET_COMMAND:
            reset(session)
            print(f"{SYSTEM_HEADER}\n{ARROW} Conversation reset.\n")
            continue
        if text == SHOW_COMMAND:
            print(format_candidates(last_reply) + "\n")
            continue

        append_to_file(file_path, f"**You**: {text}\n\n")
        try:
            reply = _run_turn(runner, session, text, verbose)
        except KeyboardInterrupt:
            # Nothing was committed; the session is as it was before the turn.
            print("\nRequest cancelled.\n", file=sys.stderr)
            continue
        except DecodeError as e:
            print(f"Error: could not decode reply ({e.stage}): {e.detail}\n", file=sys.stderr)
            continue
        except TransportError as e:
            print(f"Error: {e}\n", file=sys.stderr)
            continue

        print(format_reply(reply, multi=multi) + "\n")
        append_to_file(file_path, f"**Gemini**: {reply.content}\n\n")
        last_reply = reply


def run_interactive(
    psid: str,
    psidts: str | None,
    proxy: str | None,
    schema: SchemaVariant,
    history_dir: str | None,
    multi: bool,
    timeout: float,
    verbose: bool,
) -> int:
    with asyncio.Runner() as runner:
        try:
            session = runner.run(create_session(
                psid, psidts=psidts, proxy=proxy, schema=schema,
                timeout=timeout, verbose=verbose,
            ))
        except FatalAuthError as e:
            print(f"Error: {e}", file=sys.stderr)
            print("Do not retry right away; refresh your cookies first.", file=sys.stderr)
            return 1
        except GeminiError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        try:
            return chat_loop(
                runner, session, multi=multi, history_dir=history_dir, verbose=verbose,
            )
        finally:
            runner.run(session.aclose())


# ── Entry point ───────────────────────────────────────────────────────

def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        description="Chat with Google Gemini from the terminal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Interactive chat (cookies from .env: PSID, PSIDTS)
  python gemini.py

  # Explicit cookies, save transcript as markdown
  python gemini.py -s "g.a000..." -t "sidts-..." -p ~/notes/gemini

  # One-shot prompt
  python gemini.py --prompt "What is the capital of France?"
  python gemini.py --prompt "Explain monads" --json

  # Through a proxy, with all drafts shown
  python gemini.py -x http://127.0.0.1:8080 --multi

Interactive commands:
  !reset   Start a new conversation (same session)
  !show    Show the alternative drafts of the last reply
  !exit    Quit

Environment (.env):
  PSID, PSIDTS, GEMINI_PROXY_SERVER, GEMINI_HISTORY, GEMINI_SCHEMA
"""
    )

    parser.add_argument("--psid", "-s",
                        help="__Secure-1PSID cookie, usually starts with g.")
    parser.add_argument("--psidts", "-t",
                        help="__Secure-1PSIDTS cookie")
    parser.add_argument("--path", "-p",
                        help="Directory to save the chat as a markdown file")
    parser.add_argument("--env", "-e",
                        help="Path to an extra .env file")
    parser.add_argument("--multi", "-m", action="store_true",
                        help="Show every draft of each reply")
    parser.add_argument("--proxy", "-x",
                        help="Proxy server URL")
    parser.add_argument("--schema",
                        choices=[v.value for v in SchemaVariant],
                        help=f"Reply layout / backend build to target (default: {DEFAULT_SCHEMA})")
    parser.add_argument("--prompt",
                        help="Send a single prompt and exit")
    parser.add_argument("--json", action="store_true",
                        help="With --prompt: print the full result as JSON")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help=f"HTTP timeout in seconds (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging to stderr")

    args = parser.parse_args(argv)

    if args.json and not args.prompt:
        parser.error("--json requires --prompt")

    load_env_file(args.env)

    psid = args.psid or get_setting("PSID")
    if not psid:
        parser.error("No session cookie provided. Either pass it with -s or provide a .env file")
    psidts = args.psidts or get_setting("PSIDTS") or None
    proxy = args.proxy or get_setting("GEMINI_PROXY_SERVER") or None
    history_dir = args.path or get_setting("GEMINI_HISTORY") or None

    try:
        schema = SchemaVariant.parse(args.schema or get_setting("GEMINI_SCHEMA", DEFAULT_SCHEMA))
    except ConfigurationError as e:
        parser.error(str(e))

    # ── One-shot mode ────────────────────────────────────────────────
    if args.prompt:
        _thinking(not args.json)
        try:
            result = asyncio.run(gemini_prompt(
                prompt=args.prompt,
                psid=psid,
                psidts=psidts,
                proxy=proxy,
                schema=schema,
                timeout=args.timeout,
                verbose=args.verbose,
            ))
        finally:
            _thinking(False)

        if result.get("success"):
            path = transcript_path(history_dir, args.prompt)
            append_to_file(path, f"**You**: {args.prompt}\n\n**Gemini**: {result['response']}\n\n")
            for warning in result.get("warnings", []):
                print(f"Warning: {warning}", file=sys.stderr)

        if args.json:
            print(json.dumps(result, indent=2, ensure_ascii=False))
            if not result.get("success"):
                sys.exit(1)
        elif result.get("success"):
            print(result["response"])
        else:
            print(f"Error: {result.get('error')}", file=sys.stderr)
            sys.exit(1)
        return

    # ── Interactive mode ─────────────────────────────────────────────
    sys.exit(run_interactive(
        psid=psid,
        psidts=psidts,
        proxy=proxy,
        schema=schema,
        history_dir=history_dir,
        multi=args.multi,
        timeout=args.timeout,
        verbose=args.verbose,
    ))


if __name__ == "__main__":
    main()
