#!/usr/bin/env python3
"""Idris MCP Server - interactive editing tools backed by idris --ide-mode.

Sessions are in-memory only. Each session owns one Idris process and the
buffers (source files) it has been asked about; a file is re-sent to Idris
only when it changed since it was last loaded.
"""

import logging
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastmcp import FastMCP

from .idris_buffer import FileBuffer
from .idris_commands import (
    EditResult, IdrisCommands, RecordingPresenter, RefineVariant, ScriptedChooser,
)
from .idris_edit import make_editor
from .idris_errors import ChoiceRequired, IdrisError, LoadFailed
from .idris_process import IdrisProcess
from .idris_session import IdrisSession

DEFAULT_TIMEOUT = 30
DEFAULT_LOAD_TIMEOUT = 300

# Snippet-style fields for holes in inserted text (--snippets)
_snippets = os.environ.get("IDRIS_MCP_SNIPPETS", "") not in ("", "0")

logger = logging.getLogger(__name__)


@dataclass
class SessionEntry:
    """Registry entry for an Idris session."""
    session: IdrisSession
    started: datetime
    workdir: Path
    last_used: float = 0.0  # time.time() of last activity
    env: Optional[dict] = None
    buffers: dict[Path, FileBuffer] = field(default_factory=dict)

    def __post_init__(self):
        if self.last_used == 0.0:
            self.last_used = time.time()


mcp = FastMCP("idris", instructions="""Idris interactive editing - hole-driven development:

1. idris_load: Type check a file (pass the .idr path)
2. idris_type_of / idris_warnings: Inspect names and errors
3. idris_case_split, idris_add_clause, idris_add_missing, idris_make_with,
   idris_proof_search, idris_refine: Edit the file at a line/column
4. Edit the file directly as needed; changes are detected automatically

idris_refine may ask for a choice: call it again with choices=[...] listing
every choice made so far plus the new one.
""")
_sessions: dict[str, SessionEntry] = {}


def _sigint_handler(signum, frame):
    """Interrupt every Idris process (e.g. user pressed ESC mid-command)."""
    for entry in list(_sessions.values()):
        try:
            entry.session.transport.interrupt()
        except OSError:
            pass  # Best effort - signal handlers must not raise


signal.signal(signal.SIGINT, _sigint_handler)


_SESSION_IDLE_TIMEOUT = 7200  # 2 hours
_PRUNE_INTERVAL = 300
_last_prune_time = 0.0


async def _prune_idle_sessions():
    """Stop sessions idle longer than _SESSION_IDLE_TIMEOUT (throttled)."""
    global _last_prune_time
    now = time.time()
    if now - _last_prune_time < _PRUNE_INTERVAL:
        return
    _last_prune_time = now
    to_prune = [
        name for name, entry in _sessions.items()
        if now - entry.last_used > _SESSION_IDLE_TIMEOUT
    ]
    for name in to_prune:
        entry = _sessions.get(name)
        if not entry or time.time() - entry.last_used <= _SESSION_IDLE_TIMEOUT:
            continue
        _sessions.pop(name, None)
        await entry.session.quit()


def _make_transport(workdir: Path, env: dict | None):
    return IdrisProcess(str(workdir), env=env)


def _session_age(entry: SessionEntry) -> str:
    secs = int((datetime.now() - entry.started).total_seconds())
    if secs < 60:
        return f"{secs}s"
    elif secs < 3600:
        return f"{secs // 60}m"
    return f"{secs / 3600:.1f}h"


async def _get_entry(name: str, workdir: Path | None = None) -> SessionEntry:
    """Session entry by name, created (not yet started) if missing."""
    await _prune_idle_sessions()
    entry = _sessions.get(name)
    if entry is None:
        workdir = workdir or Path.cwd()
        transport = _make_transport(workdir, None)
        entry = SessionEntry(
            IdrisSession(transport, load_timeout=DEFAULT_LOAD_TIMEOUT, call_timeout=DEFAULT_TIMEOUT),
            datetime.now(), workdir)
        _sessions[name] = entry
    entry.last_used = time.time()
    return entry


def _get_buffer(entry: SessionEntry, file: str) -> FileBuffer:
    """Buffer for file, re-read from disk (edits since last call mark it dirty)."""
    path = Path(file).resolve()
    buffer = entry.buffers.get(path)
    if buffer is None:
        buffer = FileBuffer(path)  # Let FileNotFoundError propagate
        entry.session.watch(buffer)
        entry.buffers[path] = buffer
    else:
        buffer.refresh()
    return buffer


async def _commands(file: str, session: str, choices=None) -> tuple[IdrisCommands, SessionEntry]:
    path = Path(file).resolve()
    entry = await _get_entry(session, path.parent)
    buffer = _get_buffer(entry, file)
    commands = IdrisCommands(
        entry.session, buffer,
        presenter=RecordingPresenter(),
        editor=make_editor(_snippets),
        chooser=ScriptedChooser(choices or []),
    )
    return commands, entry


def _format_warnings(entry: SessionEntry, path: Path | None) -> str:
    warnings = entry.session.diagnostics.for_file(path) if path else entry.session.diagnostics.all()
    lines = []
    for w in warnings:
        lines.append(f"{w.file}:{w.start[0]}:{w.start[1]}-{w.end[0]}:{w.end[1]}:")
        lines.extend(f"  {l}" for l in w.message.splitlines())
    return "\n".join(lines)


def _format_error(e: Exception, entry: SessionEntry | None = None) -> str:
    if isinstance(e, ChoiceRequired):
        options = "\n".join(f"  {c}" for c in e.candidates)
        return (f"CHOICE NEEDED (round {e.round_no}):\n{options}\n"
                "Call again with choices=[...previous choices, your choice].")
    if isinstance(e, LoadFailed) and entry is not None:
        details = _format_warnings(entry, e.path)
        return f"ERROR: {e}\n{details}" if details else f"ERROR: {e}"
    return f"ERROR: {e}"


def _format_edit(result: EditResult, commands: IdrisCommands) -> str:
    lines = [f"{result.command} at line {result.line}:", result.text]
    if result.rounds > 1:
        lines.append(f"[{result.rounds} rounds]")
    if result.fields:
        lines.append("")
        lines.append("Holes to fill:")
        for f in result.fields:
            line, col = commands.buffer.position(f.offset)
            lines.append(f"  {f.number}: {f.default} (line {line} col {col})")
    messages = commands.presenter.render()
    if messages:
        lines.append("")
        lines.append(messages)
    return "\n".join(lines)


async def _run_edit(file: str, session: str, action, choices=None) -> str:
    """Run an editing command and format its result or error."""
    entry = None
    try:
        commands, entry = await _commands(file, session, choices)
        result = await action(commands)
    except FileNotFoundError:
        return f"ERROR: File not found: {file}"
    except IdrisError as e:
        return _format_error(e, entry)
    return _format_edit(result, commands)


@mcp.tool()
async def idris_start(workdir: str, name: str = "default", env: dict = None) -> str:
    """Start an Idris IDE-mode session.

    Idempotent - returns existing session if already running.
    Usually not needed: every file tool starts the session on demand.

    Args:
        workdir: Working directory (project root)
        name: Session identifier
        env: Optional environment variables for the Idris process (e.g. IDRIS_LIBRARY_PATH)

    Returns: Session status
    """
    workdir_path = Path(workdir).resolve()
    if not workdir_path.exists():
        return f"ERROR: Working directory does not exist: {workdir}"

    entry = _sessions.get(name)
    if entry and entry.session.is_running:
        return f"Session '{name}' already running.\nWorkdir: {entry.workdir}"
    if entry is None or entry.env != env or entry.workdir != workdir_path:
        if entry is not None:
            await entry.session.quit()
        transport = _make_transport(workdir_path, env)
        entry = SessionEntry(
            IdrisSession(transport, load_timeout=DEFAULT_LOAD_TIMEOUT, call_timeout=DEFAULT_TIMEOUT),
            datetime.now(), workdir_path, env=env)
        _sessions[name] = entry

    try:
        result = await entry.session.ensure_process()
        await entry.session.switch_working_directory(workdir_path)
    except IdrisError as e:
        return f"ERROR starting Idris: {e}"
    return f"Session '{name}' started. {result or ''}\nWorkdir: {workdir_path}"


@mcp.tool()
async def idris_sessions() -> str:
    """List all Idris sessions with their workdir, age, status and loaded file."""
    await _prune_idle_sessions()
    if not _sessions:
        return "No active sessions."

    lines = ["SESSION      WORKDIR                                    AGE     STATUS   LOADED"]
    lines.append("-" * 100)
    for name, entry in _sessions.items():
        status = "running" if entry.session.is_running else "stopped"
        workdir_str = str(entry.workdir)
        if len(workdir_str) > 40:
            workdir_str = "..." + workdir_str[-37:]
        loaded = entry.session.loaded_buffer
        loaded_str = loaded.file_name if loaded else "(none)"
        lines.append(f"{name:<12} {workdir_str:<42} {_session_age(entry):<7} {status:<8} {loaded_str}")
    return "\n".join(lines)


@mcp.tool()
async def idris_stop(session: str = "default") -> str:
    """Terminate an Idris session, discarding any pending requests.

    Args:
        session: Session name (default: "default")
    """
    entry = _sessions.pop(session, None)
    if entry:
        await entry.session.quit()
        return f"Session '{session}' stopped."
    return f"Session '{session}' not found."


@mcp.tool()
async def idris_interpret(expression: str, session: str = "default", timeout: int = DEFAULT_TIMEOUT) -> str:
    """Evaluate an expression at the Idris REPL, in the context of the loaded file.

    Args:
        expression: Idris expression or REPL command (e.g. ":doc Nat")
        session: Session name (default: "default")
        timeout: Max seconds to wait (default 30, max 600)
    """
    entry = await _get_entry(session)
    timeout = max(1, min(timeout, 600))
    try:
        response = await entry.session.interpret(expression, timeout=timeout)
    except IdrisError as e:
        return _format_error(e, entry)
    output = "".join(entry.session.output)
    entry.session.output.clear()
    return f"{output}{response.text}" if output else response.text


@mcp.tool()
async def idris_load(file: str, force: bool = False, session: str = "default") -> str:
    """Load (type check) an Idris file. Skipped if already loaded and unchanged.

    Args:
        file: Path to the .idr file
        force: Load even if the file is unchanged
        session: Session name (default: "default")

    Returns: Load status and warnings
    """
    entry = None
    try:
        commands, entry = await _commands(file, session)
        buffer = commands.buffer
        if force:
            await entry.session.reload(buffer)
            loaded = True
        else:
            loaded = await entry.session.load_if_needed(buffer)
    except FileNotFoundError:
        return f"ERROR: File not found: {file}"
    except IdrisError as e:
        return _format_error(e, entry)
    status = f"Loaded {buffer.file_name}" if loaded else f"{buffer.file_name} already loaded (unchanged)"
    warnings = _format_warnings(entry, buffer.file_path)
    return f"{status}\n\n{warnings}" if warnings else status


@mcp.tool()
async def idris_warnings(file: str = None, session: str = "default") -> str:
    """Show warnings and errors from the last load.

    Args:
        file: Only show diagnostics for this file (default: all)
        session: Session name (default: "default")
    """
    entry = _sessions.get(session)
    if not entry:
        return f"ERROR: Session '{session}' not found."
    text = _format_warnings(entry, Path(file).resolve() if file else None)
    return text or "No warnings."


@mcp.tool()
async def idris_type_of(file: str, line: int = 1, col: int = 1, name: str = None,
                        session: str = "default") -> str:
    """Show the type of the name at a position (or of an explicit name).

    Args:
        file: Path to the .idr file (loaded first if changed)
        line: 1-indexed line of the name
        col: 1-indexed column within the name
        name: Explicit name to look up instead of the one at line/col
        session: Session name (default: "default")
    """
    entry = None
    try:
        commands, entry = await _commands(file, session)
        response = await commands.type_of(line, col, name=name)
    except FileNotFoundError:
        return f"ERROR: File not found: {file}"
    except IdrisError as e:
        return _format_error(e, entry)
    return response.text


@mcp.tool()
async def idris_case_split(file: str, line: int, col: int, session: str = "default") -> str:
    """Case split the pattern variable at a position, rewriting that line.

    Args:
        file: Path to the .idr file
        line: 1-indexed line of the pattern variable
        col: 1-indexed column within the variable name
        session: Session name (default: "default")
    """
    return await _run_edit(file, session, lambda c: c.case_split(line, col))


@mcp.tool()
async def idris_add_clause(file: str, line: int, col: int, proof: bool = False,
                           session: str = "default") -> str:
    """Add an initial clause for the type declaration at a position.

    Args:
        file: Path to the .idr file
        line: 1-indexed line of the declaration
        col: 1-indexed column within the declared name
        proof: Add a proof clause (add-proof-clause) instead
        session: Session name (default: "default")
    """
    return await _run_edit(file, session, lambda c: c.add_clause(line, col, proof=proof))


@mcp.tool()
async def idris_add_missing(file: str, line: int, col: int, session: str = "default") -> str:
    """Add clauses for the cases missing after the clause at a position.

    Args:
        file: Path to the .idr file
        line: 1-indexed line of an existing clause
        col: 1-indexed column within the function name
        session: Session name (default: "default")
    """
    return await _run_edit(file, session, lambda c: c.add_missing(line, col))


@mcp.tool()
async def idris_make_with(file: str, line: int, col: int, session: str = "default") -> str:
    """Turn the clause at a position into a with-block.

    Args:
        file: Path to the .idr file
        line: 1-indexed line of the clause
        col: 1-indexed column within the function name
        session: Session name (default: "default")
    """
    return await _run_edit(file, session, lambda c: c.make_with(line, col))


@mcp.tool()
async def idris_proof_search(file: str, line: int, col: int, hints: str = "",
                             session: str = "default") -> str:
    """Fill the hole at a position by proof search.

    Args:
        file: Path to the .idr file
        line: 1-indexed line of the hole
        col: 1-indexed column within the hole name
        hints: Names to try, separated by spaces, commas or semicolons
        session: Session name (default: "default")
    """
    return await _run_edit(file, session, lambda c: c.proof_search(line, col, hints))


@mcp.tool()
async def idris_refine(file: str, line: int, col: int, variant: str = "plain",
                       prefix: str = "", choices: list[str] = None,
                       session: str = "default") -> str:
    """Refine the hole at a position with an identifier of compatible type.

    Idris offers candidates; answer by calling again with choices=[...].
    "recursive" keeps asking until the expression is complete, so pass every
    choice made so far, in order.

    Args:
        file: Path to the .idr file
        line: 1-indexed line of the hole
        col: 1-indexed column within the hole name
        variant: "plain", "prefix" (filter candidates by prefix) or "recursive"
        prefix: Candidate prefix for variant="prefix"
        choices: Selections for each round, in order
        session: Session name (default: "default")
    """
    try:
        refine_variant = RefineVariant(variant)
    except ValueError:
        return f"ERROR: variant must be one of plain, prefix, recursive (got '{variant}')"
    return await _run_edit(
        file, session, lambda c: c.refine(line, col, refine_variant, prefix), choices=choices)


@mcp.tool()
async def idris_complete(file: str, line: int, col: int, session: str = "default") -> str:
    """Complete the name ending at a position. Does not load the file.

    Args:
        file: Path to the .idr file
        line: 1-indexed line
        col: 1-indexed column just after the partial name
        session: Session name (default: "default")

    Returns: Candidates, or a note that nothing was found
    """
    entry = None
    try:
        commands, entry = await _commands(file, session)
        completion = await commands.complete_at(line, col)
    except FileNotFoundError:
        return f"ERROR: File not found: {file}"
    except IdrisError as e:
        return _format_error(e, entry)
    if completion is None:
        return "No completions."
    return f"Completions for '{completion.prefix}':\n" + "\n".join(
        f"  {c}" for c in completion.candidates)


def main():
    """CLI entry point for the Idris MCP server."""
    import argparse
    global _snippets

    parser = argparse.ArgumentParser(description="Idris MCP Server")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the MCP server (default)")
    for p, help_text in ((serve_parser, None), (parser, argparse.SUPPRESS)):
        p.add_argument("--transport", choices=["stdio", "http", "sse"], default="stdio",
                       help=help_text or "Transport protocol (default: stdio)")
        p.add_argument("--port", type=int, default=8000, help=help_text or "Port for HTTP/SSE (default: 8000)")
        p.add_argument("--host", default="127.0.0.1", help=help_text or "Host for HTTP/SSE (default: 127.0.0.1)")
        p.add_argument("-v", "--verbose", action="store_true", help=help_text or "Enable debug logging")
        p.add_argument("--snippets", action="store_true",
                       help=help_text or "Report holes in inserted text as numbered fields")

    args = parser.parse_args()

    if args.snippets:
        _snippets = True

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )
        logging.getLogger("mcp").setLevel(logging.DEBUG)

    if args.transport == "stdio":
        mcp.run(show_banner=False)
    else:
        print(f"Idris MCP server starting on {args.host}:{args.port} ({args.transport})", file=sys.stderr)
        mcp.run(transport=args.transport, host=args.host, port=args.port, show_banner=False)


if __name__ == "__main__":
    main()
