"""Idris IDE-mode client and MCP server."""

from .idris_sexp import Command, Response, Symbol, encode, decode, frame
from .idris_errors import (
    IdrisError, ProcessUnavailable, NoTargetAtPoint, MetavariableVanished,
    LoadFailed, CallFailed, ChoiceRequired,
)
from .idris_process import IdrisProcess
from .idris_dispatch import Dispatcher, PendingCall
from .idris_session import IdrisSession, Diagnostics
from .idris_buffer import FileBuffer
from .idris_edit import PlainEditor, TemplateEditor, to_template
from .idris_commands import IdrisCommands, RefineVariant
from .idris_mcp_server import mcp, _sessions, SessionEntry

__all__ = [
    "Command", "Response", "Symbol", "encode", "decode", "frame",
    "IdrisError", "ProcessUnavailable", "NoTargetAtPoint", "MetavariableVanished",
    "LoadFailed", "CallFailed", "ChoiceRequired",
    "IdrisProcess",
    "Dispatcher", "PendingCall",
    "IdrisSession", "Diagnostics",
    "FileBuffer",
    "PlainEditor", "TemplateEditor", "to_template",
    "IdrisCommands", "RefineVariant",
    "mcp", "_sessions", "SessionEntry",
]
