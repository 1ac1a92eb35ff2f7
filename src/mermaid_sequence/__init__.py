"""mermaid-sequence -- an editable model for Mermaid sequence diagrams.

Parse Mermaid ``sequenceDiagram`` text into a mutable model, edit it, derive
the participant columns and activation bars a renderer needs, and generate
canonical text back out.
"""

from __future__ import annotations

from .errors import (
    SequenceDiagramError,
    StructuralError,
    NoteCardinalityError,
    MalformedMessageError,
    DuplicateParticipantError,
    DuplicateBoxError,
    UnknownParticipantError,
    UnknownBoxError,
    OwnershipError,
    ModelIndexError,
    UnrecognizedLineError,
    UnrecognizedLineWarning,
)
from .types import (
    ARROW_TOKENS,
    ArrowKind,
    ParseOptions,
    GenerateOptions,
    SequenceDiagram,
    DiagramObserver,
    SequenceConfig,
    Participant,
    Link,
    Box,
    Message,
    Note,
    ActivationStatement,
    CreateStatement,
    DestroyStatement,
    Branch,
    Loop,
    Alt,
    Opt,
    Par,
    Critical,
    Break,
    Rect,
    ControlStructure,
    Statement,
    block_bodies,
    iter_statements,
)
from .parser import parse_sequence_diagram, parse_message
from .generator import generate_sequence_diagram
from .participants import ordered_participants
from .activations import Activation, resolve_activations

__all__ = [
    "parse_sequence_diagram",
    "parse_message",
    "generate_sequence_diagram",
    "ordered_participants",
    "resolve_activations",
    "reformat",
    "Activation",
    "ARROW_TOKENS",
    "ArrowKind",
    "ParseOptions",
    "GenerateOptions",
    "SequenceDiagram",
    "DiagramObserver",
    "SequenceConfig",
    "Participant",
    "Link",
    "Box",
    "Message",
    "Note",
    "ActivationStatement",
    "CreateStatement",
    "DestroyStatement",
    "Branch",
    "Loop",
    "Alt",
    "Opt",
    "Par",
    "Critical",
    "Break",
    "Rect",
    "ControlStructure",
    "Statement",
    "block_bodies",
    "iter_statements",
    "SequenceDiagramError",
    "StructuralError",
    "NoteCardinalityError",
    "MalformedMessageError",
    "DuplicateParticipantError",
    "DuplicateBoxError",
    "UnknownParticipantError",
    "UnknownBoxError",
    "OwnershipError",
    "ModelIndexError",
    "UnrecognizedLineError",
    "UnrecognizedLineWarning",
]


def reformat(
    text: str,
    parse_options: ParseOptions | None = None,
    generate_options: GenerateOptions | None = None,
) -> str:
    """Parse Mermaid sequence text and generate it back in canonical form."""
    return generate_sequence_diagram(
        parse_sequence_diagram(text, parse_options), generate_options
    )
