"""Errors raised by the Idris IDE client."""


class IdrisError(Exception):
    """Base class for all client-side Idris errors."""
    pass


class ProcessUnavailable(IdrisError):
    """The Idris process is not running (or died) when a call needs it."""

    def __init__(self, message: str = "Idris not running"):
        super().__init__(message)


class NoTargetAtPoint(IdrisError):
    """No identifier at the cursor for a point-scoped command."""

    def __init__(self, line: int, column: int):
        self.line = line
        self.column = column
        super().__init__(f"No identifier at line {line}, column {column}")


class MetavariableVanished(IdrisError):
    """The hole being refined is no longer on the line."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Metavariable ?{name} no longer on this line")


class LoadFailed(IdrisError):
    """Idris rejected the file; diagnostics hold the details."""

    def __init__(self, diagnostic: str, path=None):
        self.diagnostic = diagnostic
        self.path = path
        super().__init__(f"Load failed: {diagnostic}")


class CallFailed(IdrisError):
    """A command was answered with (:error ...)."""

    def __init__(self, diagnostic: str):
        self.diagnostic = diagnostic
        super().__init__(diagnostic)


class ChoiceRequired(IdrisError):
    """A selection is needed and no scripted choice is left to answer it."""

    def __init__(self, candidates: list[str], round_no: int = 1):
        self.candidates = list(candidates)
        self.round_no = round_no
        super().__init__(f"Choose one of: {', '.join(candidates)}")


class SExpParseError(IdrisError):
    """Malformed s-expression on the wire."""
    pass
