"""Interactive editing commands built on an Idris session.

Every buffer-scoped command loads the buffer first if it is stale, issues its
command synchronously, and only then edits the buffer, so a failed command
never leaves a partial edit behind.
"""

import enum
import logging
import re
from dataclasses import dataclass, field

from .idris_edit import Field, PlainEditor
from .idris_errors import CallFailed, ChoiceRequired, MetavariableVanished
from .idris_sexp import Command, Formatting, Response, Symbol

logger = logging.getLogger(__name__)

_HINT_SPLIT_RE = re.compile(r"[\s,;]+")


# =============================================================================
# Presentation capabilities
# =============================================================================

class RecordingPresenter:
    """Collects informational output and messages for later display."""

    def __init__(self):
        self.info: list[tuple[str, list[Formatting]]] = []
        self.messages: list[str] = []

    def show_info(self, text: str, formatting: list[Formatting] | None = None):
        self.info.append((text, formatting or []))

    def message(self, text: str):
        logger.debug("message: %s", text)
        self.messages.append(text)

    def render(self) -> str:
        """Info blocks then messages, as plain text."""
        lines = [text for text, _ in self.info]
        lines.extend(self.messages)
        return "\n".join(lines)


class ScriptedChooser:
    """Answers selection prompts from a fixed list of choices, in order.

    When the list runs out, raises ChoiceRequired with the candidates so the
    caller can ask again with one more choice.
    """

    def __init__(self, choices=()):
        self.choices = list(choices)
        self.offered: list[list[str]] = []

    async def offer(self, candidates: list[str]) -> str:
        self.offered.append(list(candidates))
        round_no = len(self.offered)
        if not self.choices:
            raise ChoiceRequired(candidates, round_no)
        choice = self.choices.pop(0)
        if choice not in candidates:
            raise ChoiceRequired(candidates, round_no)
        return choice


# =============================================================================
# Refinement protocol
# =============================================================================

class RefineVariant(enum.Enum):
    PLAIN = "plain"          # compatible-identifiers, then make-refined-expression
    PREFIX = "prefix"        # same, with candidates filtered by a typed prefix
    RECURSIVE = "recursive"  # compatible-identifiers-recursive / choose-identifier


class RefineState(enum.Enum):
    START = "start"
    AWAITING_CHOICE = "awaiting-choice"
    DONE = "done"


@dataclass
class MoreChoices:
    candidates: list[str]


@dataclass
class Final:
    expression: str


@dataclass
class DisambiguationState:
    """One refinement: the hole, where it is, and the latest server answer."""
    hole: str
    line: int
    state: RefineState = RefineState.START
    response: MoreChoices | Final | None = None
    rounds: int = 0
    chosen: list[str] = field(default_factory=list)


def parse_disambiguation(value) -> MoreChoices | Final:
    """Decode ``(:more-choices ("a" ...))`` or ``(:final "expr")``."""
    if isinstance(value, list) and len(value) == 2 and isinstance(value[0], Symbol):
        if value[0] == ":more-choices" and isinstance(value[1], list):
            return MoreChoices([str(c) for c in value[1]])
        if value[0] == ":final":
            return Final(str(value[1]))
    raise CallFailed(f"Unexpected refinement reply: {value!r}")


def _identifiers(response: Response) -> list[str]:
    value = response.value
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str) and value:
        return value.split()
    return []


def parse_hints(hints) -> list[str]:
    """Split hint text on whitespace, commas and semicolons."""
    if not hints:
        return []
    if isinstance(hints, str):
        hints = [hints]
    tokens = []
    for h in hints:
        tokens.extend(t for t in _HINT_SPLIT_RE.split(h) if t)
    return tokens


@dataclass
class EditResult:
    """What a command did to the buffer."""
    command: str
    text: str
    line: int
    fields: list[Field] = field(default_factory=list)
    rounds: int = 1


@dataclass
class Completion:
    start: int
    end: int
    prefix: str
    candidates: list[str]


# =============================================================================
# Commands
# =============================================================================

class IdrisCommands:
    """Point-scoped commands against one buffer.

    Args:
        session: IdrisSession owning the process
        buffer: FileBuffer being edited
        presenter: receives show_info/message output
        editor: PlainEditor or TemplateEditor (chosen by configuration)
        chooser: answers candidate selections (``await chooser.offer(list)``)
    """

    def __init__(self, session, buffer, presenter=None, editor=None, chooser=None):
        self.session = session
        self.buffer = buffer
        self.presenter = presenter or RecordingPresenter()
        self.editor = editor or PlainEditor()
        self.chooser = chooser or ScriptedChooser()
        session.watch(buffer)

    async def _call_at(self, tag: str, line: int, col: int, *extra) -> tuple[str, int, Response]:
        name, line = self.buffer.identifier_at(line, col)
        await self.session.load_if_needed(self.buffer)
        response = await self.session.call(Command(tag, (line, name, *extra)))
        return name, line, response

    async def type_of(self, line: int = 1, col: int = 1, name: str | None = None) -> Response:
        """Show the type of the name at point (or of an explicit name)."""
        if name is None:
            name, _ = self.buffer.identifier_at(line, col)
        await self.session.load_if_needed(self.buffer)
        response = await self.session.call(Command("type-of", (name,)))
        self.presenter.show_info(response.text, response.formatting)
        return response

    async def case_split(self, line: int, col: int) -> EditResult:
        """Replace the current line with the clauses for a split on the name at point."""
        name, line, response = await self._call_at("case-split", line, col)
        text = _strip_terminator(response.text)
        start, end = self.buffer.offset(line), self.buffer.line_end(line)
        fields = self.editor.apply(self.buffer, start, end, text)
        self.presenter.message(f"Case split on {name}")
        return EditResult("case-split", text, line, fields)

    async def add_clause(self, line: int, col: int, proof: bool = False) -> EditResult:
        """Add an initial clause for the declaration at point, on a new line."""
        tag = "add-proof-clause" if proof else "add-clause"
        name, line, response = await self._call_at(tag, line, col)
        text = _strip_terminator(response.text)
        end = self.buffer.line_end(line)
        fields = self.editor.apply(self.buffer, end, end, "\n" + text)
        return EditResult(tag, text, line + 1, fields)

    async def add_proof_clause(self, line: int, col: int) -> EditResult:
        return await self.add_clause(line, col, proof=True)

    async def add_missing(self, line: int, col: int) -> EditResult:
        """Insert the missing cases starting on the next line."""
        name, line, response = await self._call_at("add-missing", line, col)
        text = _strip_terminator(response.text)
        if line < self.buffer.line_count:
            at = self.buffer.offset(line + 1)
            fields = self.editor.apply(self.buffer, at, at, text + "\n")
        else:
            at = self.buffer.line_end(line)
            fields = self.editor.apply(self.buffer, at, at, "\n" + text)
        return EditResult("add-missing", text, line + 1, fields)

    async def make_with(self, line: int, col: int) -> EditResult:
        """Replace the current line with a with-block."""
        name, line, response = await self._call_at("make-with", line, col)
        text = _strip_terminator(response.text)
        start, end = self.buffer.offset(line), self.buffer.line_end(line)
        fields = self.editor.apply(self.buffer, start, end, text)
        return EditResult("make-with", text, line, fields)

    async def proof_search(self, line: int, col: int, hints=()) -> EditResult:
        """Fill the hole at point by proof search, optionally with hint names."""
        name, line, response = await self._call_at(
            "proof-search", line, col, parse_hints(hints))
        span = self.buffer.hole_span_before(line, col, name)
        if span is None:
            raise MetavariableVanished(name)
        text = _strip_terminator(response.text)
        fields = self.editor.apply(self.buffer, span[0], span[1], text)
        return EditResult("proof-search", text, line, fields)

    async def refine(self, line: int, col: int,
                     variant: RefineVariant = RefineVariant.PLAIN,
                     prefix: str = "") -> EditResult:
        """Refine the hole at point by picking from compatible identifiers.

        Runs START -> AWAITING_CHOICE -> ... -> DONE. The recursive variant
        loops for as many rounds as Idris keeps offering choices.
        """
        name, line = self.buffer.identifier_at(line, col)
        state = DisambiguationState(hole=name, line=line)

        while state.state is not RefineState.DONE:
            if state.state is RefineState.START:
                await self.session.load_if_needed(self.buffer)
                state.response = await self._refine_start(state, variant, prefix)
            else:
                choice = await self.chooser.offer(state.response.candidates)
                state.chosen.append(choice)
                state.response = await self._refine_choose(state, variant, choice)
            state.rounds += 1
            state.state = (RefineState.AWAITING_CHOICE
                           if isinstance(state.response, MoreChoices) else RefineState.DONE)
            logger.debug("refine ?%s round %d -> %s", name, state.rounds, state.state.value)

        expression = state.response.expression
        fields = self._replace_hole(state, expression)
        await self.session.reload(self.buffer)
        return EditResult(f"refine-{variant.value}", expression, line, fields, state.rounds)

    async def _refine_start(self, state: DisambiguationState, variant: RefineVariant,
                            prefix: str) -> MoreChoices | Final:
        if variant is RefineVariant.RECURSIVE:
            response = await self.session.call(
                Command("compatible-identifiers-recursive", (state.line, state.hole)))
            return parse_disambiguation(response.value)
        if variant is RefineVariant.PREFIX:
            command = Command("complete-compatible-identifiers", (state.line, state.hole, prefix))
        else:
            command = Command("compatible-identifiers", (state.line, state.hole))
        candidates = _identifiers(await self.session.call(command))
        if not candidates:
            raise CallFailed(f"No compatible identifiers for ?{state.hole}")
        return MoreChoices(candidates)

    async def _refine_choose(self, state: DisambiguationState, variant: RefineVariant,
                             choice: str) -> MoreChoices | Final:
        if variant is RefineVariant.RECURSIVE:
            response = await self.session.call(
                Command("choose-identifier", (state.line, state.hole, choice)))
            return parse_disambiguation(response.value)
        response = await self.session.call(
            Command("make-refined-expression", (state.line, state.hole, choice)))
        return Final(_strip_terminator(response.text))

    def _replace_hole(self, state: DisambiguationState, expression: str) -> list[Field]:
        text = self.buffer.line_text(state.line) if state.line <= self.buffer.line_count else ""
        m = re.search(rf"\?{re.escape(state.hole)}(?![A-Za-z0-9_'])", text)
        if m is None:
            raise MetavariableVanished(state.hole)
        start = self.buffer.offset(state.line) + m.start()
        return self.editor.apply(self.buffer, start, start + len(m.group(0)), expression)

    async def complete_at(self, line: int, col: int) -> Completion | None:
        """Completion candidates for the name ending at (line, col).

        Never loads the buffer, and returns None when Idris is not running.
        """
        if not self.session.is_running:
            return None
        if not 1 <= line <= self.buffer.line_count:
            return None
        start, end, prefix = self.buffer.completion_prefix(line, col)
        if not prefix:
            return None
        response = await self.session.call(Command("repl-completions", (prefix,)))
        value = response.value
        # Idris answers ((candidates ...) "partial")
        if isinstance(value, list) and value and isinstance(value[0], list):
            value = value[0]
        candidates = [str(v) for v in value] if isinstance(value, list) else []
        if not candidates:
            return None
        return Completion(start, end, prefix, candidates)


def _strip_terminator(text: str) -> str:
    return text[:-1] if text.endswith("\n") else text
