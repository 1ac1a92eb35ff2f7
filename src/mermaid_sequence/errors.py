from __future__ import annotations

from dataclasses import dataclass

# ============================================================================
# Sequence diagram errors
#
# Only StructuralError is fatal to a parse call. Everything else the parser
# encounters is recorded as an UnrecognizedLineWarning and the line is skipped.
# ============================================================================


class SequenceDiagramError(ValueError):
    """Base class for all sequence diagram errors."""


class StructuralError(SequenceDiagramError):
    """Unterminated block, unmatched `end`, or a missing header."""

    def __init__(self, message: str, line_index: int, line: str = "") -> None:
        super().__init__(f"{message} (line {line_index}: {line!r})")
        self.line_index = line_index
        self.line = line


class NoteCardinalityError(SequenceDiagramError):
    """A note names the wrong number of participants for its position."""


class MalformedMessageError(SequenceDiagramError):
    """A line contains an arrow token but does not split into sender and receiver."""


class DuplicateParticipantError(SequenceDiagramError):
    pass


class DuplicateBoxError(SequenceDiagramError):
    pass


class UnknownParticipantError(SequenceDiagramError, KeyError):
    pass


class UnknownBoxError(SequenceDiagramError, KeyError):
    pass


class OwnershipError(SequenceDiagramError):
    """A statement would end up owned by two containers (or by itself)."""


class ModelIndexError(SequenceDiagramError, IndexError):
    """A statement, body or participant index is out of range."""


class UnrecognizedLineError(SequenceDiagramError):
    """Raised instead of recording a warning when parsing in strict mode."""

    def __init__(self, warning: UnrecognizedLineWarning) -> None:
        super().__init__(f"{warning.reason} (line {warning.line_index}: {warning.line!r})")
        self.warning = warning


@dataclass(slots=True, frozen=True)
class UnrecognizedLineWarning:
    # Index of the line in the source text (0-based)
    line_index: int
    line: str
    reason: str
