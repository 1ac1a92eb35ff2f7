from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from itertools import count
from typing import Callable, ClassVar, Iterator, Literal, Protocol, Union

from .errors import (
    DuplicateBoxError,
    DuplicateParticipantError,
    ModelIndexError,
    NoteCardinalityError,
    OwnershipError,
    UnknownBoxError,
    UnknownParticipantError,
    UnrecognizedLineWarning,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Sequence diagram types
#
# The in-memory model of a Mermaid sequence diagram: participants, a tree of
# statements (messages, notes, activations, create/destroy markers and nested
# control structures), boxes and diagram-level flags.
#
# Every statement type carries a class-level `kind` tag. Consumers dispatch
# over the full Statement union and raise TypeError for anything else.
# ============================================================================

ParticipantKind = Literal["participant", "actor"]
NotePosition = Literal["left", "right", "over"]
ActivationAction = Literal["activate", "deactivate"]

ArrowKind = Literal[
    "plain-solid",       # ->
    "plain-dashed",      # -->
    "solid-arrow",       # ->>
    "dashed-arrow",      # -->>
    "solid-both-ends",   # <<->>
    "dashed-both-ends",  # <<-->>
    "solid-cross",       # -x
    "dashed-cross",      # --x
    "solid-async",       # -)
    "dashed-async",      # --))
]

StatementKind = Literal[
    "message",
    "note",
    "activation",
    "create",
    "destroy",
    "loop",
    "alt",
    "opt",
    "par",
    "critical",
    "break",
    "rect",
]

BlockKind = Literal["loop", "alt", "opt", "par", "critical", "break", "rect"]

ARROW_TOKENS: dict[ArrowKind, str] = {
    "plain-solid": "->",
    "plain-dashed": "-->",
    "solid-arrow": "->>",
    "dashed-arrow": "-->>",
    "solid-both-ends": "<<->>",
    "dashed-both-ends": "<<-->>",
    "solid-cross": "-x",
    "dashed-cross": "--x",
    "solid-async": "-)",
    "dashed-async": "--))",
}

ARROW_KINDS: dict[str, ArrowKind] = {token: kind for kind, token in ARROW_TOKENS.items()}

# Tokens are not prefix-disjoint ("-->>" contains "-->" and "->>"), so the
# matcher must try them longest first. sorted() is stable, so equal-length
# tokens keep their declaration order.
ARROW_TOKENS_LONGEST_FIRST: tuple[str, ...] = tuple(
    sorted(ARROW_TOKENS.values(), key=len, reverse=True)
)


# ============================================================================
# Options
# ============================================================================


@dataclass(slots=True)
class ParseOptions:
    # Raise UnrecognizedLineError instead of recording a warning and skipping
    strict: bool = False


@dataclass(slots=True)
class GenerateOptions:
    # One level of indentation in the generated text
    indent: str = "  "
    # Re-emit the diagram's %% comment lines after the header
    emit_comments: bool = True


# ============================================================================
# Participants and boxes
# ============================================================================


@dataclass(slots=True)
class Link:
    label: str
    url: str


@dataclass(slots=True)
class Participant:
    id: str
    # Display alias from "participant A as Alice"; None when there is no alias
    label: str | None = None
    # 'participant' renders as a box, 'actor' renders as a stick figure
    kind: ParticipantKind = "participant"
    # Declared with participant/actor/create, as opposed to inferred from a message
    explicit: bool = True
    # Assigned by SequenceDiagram.add_participant
    insertion_order: int = 0
    box_id: str | None = None
    links: list[Link] = field(default_factory=list)
    created: bool = False
    destroyed: bool = False

    @property
    def display_label(self) -> str:
        return self.label if self.label is not None else self.id


@dataclass(slots=True)
class Box:
    id: str = ""
    color: str | None = None
    description: str | None = None
    participant_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SequenceConfig:
    autonumber: bool = False
    mirror_actors: bool = False


# ============================================================================
# Leaf statements
# ============================================================================


@dataclass(slots=True)
class Message:
    kind: ClassVar[StatementKind] = "message"

    sender: str
    receiver: str
    arrow: ArrowKind = "solid-arrow"
    text: str = ""
    # "+" after the sender, before the arrow
    activate_sender: bool = False
    # "-" after the sender, before the arrow
    deactivate_sender: bool = False
    # "+" immediately before the receiver
    activate_receiver: bool = False
    # "-" immediately before the receiver
    deactivate_receiver: bool = False

    @property
    def token(self) -> str:
        return ARROW_TOKENS[self.arrow]


@dataclass(slots=True)
class Note:
    kind: ClassVar[StatementKind] = "note"

    position: NotePosition
    # Exactly one id for left/right, one or two for over
    participants: list[str]
    text: str = ""

    def __post_init__(self) -> None:
        validate_note(self.position, self.participants)


def validate_note(position: NotePosition, participants: list[str]) -> None:
    """Raise NoteCardinalityError unless the target count fits the position."""
    if any(not p for p in participants):
        raise NoteCardinalityError(f"Note {position} has an empty participant id")
    if position == "over":
        if len(participants) not in (1, 2):
            raise NoteCardinalityError(
                f"Note over takes 1 or 2 participants, got {len(participants)}"
            )
    elif len(participants) != 1:
        raise NoteCardinalityError(
            f"Note {position} of takes exactly 1 participant, got {len(participants)}"
        )


@dataclass(slots=True)
class ActivationStatement:
    kind: ClassVar[StatementKind] = "activation"

    participant_id: str
    action: ActivationAction = "activate"


@dataclass(slots=True)
class CreateStatement:
    """Position of a "create participant|actor" line in the statement flow."""
    kind: ClassVar[StatementKind] = "create"

    participant_id: str


@dataclass(slots=True)
class DestroyStatement:
    kind: ClassVar[StatementKind] = "destroy"

    participant_id: str


# ============================================================================
# Control structures
# ============================================================================


@dataclass(slots=True)
class Branch:
    label: str = ""
    statements: list[Statement] = field(default_factory=list)


@dataclass(slots=True)
class Loop:
    kind: ClassVar[StatementKind] = "loop"

    label: str = ""
    statements: list[Statement] = field(default_factory=list)


@dataclass(slots=True)
class Opt:
    kind: ClassVar[StatementKind] = "opt"

    label: str = ""
    statements: list[Statement] = field(default_factory=list)


@dataclass(slots=True)
class Break:
    kind: ClassVar[StatementKind] = "break"

    label: str = ""
    statements: list[Statement] = field(default_factory=list)


@dataclass(slots=True)
class Rect:
    kind: ClassVar[StatementKind] = "rect"

    # rgb(...), rgba(...) or a color name; the whole rest of the opener line
    color: str = ""
    statements: list[Statement] = field(default_factory=list)


@dataclass(slots=True)
class Alt:
    kind: ClassVar[StatementKind] = "alt"

    # The first branch carries the "alt" label, later ones the "else" labels
    branches: list[Branch] = field(default_factory=lambda: [Branch()])


@dataclass(slots=True)
class Par:
    kind: ClassVar[StatementKind] = "par"

    # The first branch carries the "par" label, later ones the "and" labels
    branches: list[Branch] = field(default_factory=lambda: [Branch()])


@dataclass(slots=True)
class Critical:
    kind: ClassVar[StatementKind] = "critical"

    label: str = ""
    statements: list[Statement] = field(default_factory=list)
    # "option" branches
    options: list[Branch] = field(default_factory=list)


ControlStructure = Union[Loop, Alt, Opt, Par, Critical, Break, Rect]

Statement = Union[
    Message,
    Note,
    ActivationStatement,
    CreateStatement,
    DestroyStatement,
    Loop,
    Alt,
    Opt,
    Par,
    Critical,
    Break,
    Rect,
]

_LEAF_TYPES = (Message, Note, ActivationStatement, CreateStatement, DestroyStatement)
_BLOCK_TYPES = (Loop, Alt, Opt, Par, Critical, Break, Rect)


def is_block(stmt: Statement) -> bool:
    if isinstance(stmt, _BLOCK_TYPES):
        return True
    if isinstance(stmt, _LEAF_TYPES):
        return False
    raise TypeError(f"Unknown statement type: {type(stmt).__name__}")


def block_bodies(block: ControlStructure) -> list[list[Statement]]:
    """Return the statement lists of a block in order (the live lists, not copies).

    Single-body blocks have one body. Alt and Par have one body per branch.
    Critical has its main body followed by one body per option.
    """
    if isinstance(block, (Loop, Opt, Break, Rect)):
        return [block.statements]
    if isinstance(block, (Alt, Par)):
        return [branch.statements for branch in block.branches]
    if isinstance(block, Critical):
        return [block.statements] + [option.statements for option in block.options]
    raise TypeError(f"Not a control structure: {type(block).__name__}")


def iter_statements(statements: list[Statement]) -> Iterator[tuple[int, int, Statement]]:
    """Pre-order walk yielding (index, depth, statement).

    The index counts every statement in the tree, blocks included, so a block
    comes right before its first contained statement.
    """
    counter = count()

    def visit(items: list[Statement], depth: int) -> Iterator[tuple[int, int, Statement]]:
        for stmt in items:
            yield next(counter), depth, stmt
            if is_block(stmt):
                for body in block_bodies(stmt):  # type: ignore[arg-type]
                    yield from visit(body, depth + 1)

    return visit(statements, 0)


def _check_index(items: list, index: int, what: str, allow_end: bool = False) -> None:
    upper = len(items) if allow_end else len(items) - 1
    if not 0 <= index <= upper:
        raise ModelIndexError(f"{what} index {index} out of range (0..{upper})")


# ============================================================================
# Diagram
# ============================================================================

ContainerPath = tuple[int, ...]


class DiagramObserver(Protocol):
    """Anything that re-renders when a diagram changes."""

    def on_diagram_changed(self) -> None: ...


@dataclass(slots=True)
class SequenceDiagram:
    """Parsed sequence diagram -- the authoritative, editable model.

    Statement containers are addressed by a path of (statement index, body
    index) pairs; the empty path is the top-level statement list. Indices are
    not stable across edits that insert or remove earlier statements.

    Every mutator notifies observers and on_change listeners once; inside
    `with diagram.batch_changes():` they are notified once when the outermost
    batch ends.
    """
    # Declared (and registered implicit) participants in insertion order
    participants: list[Participant] = field(default_factory=list)
    # Top-level statements in chronological order
    statements: list[Statement] = field(default_factory=list)
    boxes: list[Box] = field(default_factory=list)
    config: SequenceConfig = field(default_factory=SequenceConfig)
    # %% comment lines; attached to the diagram, not to a position
    comments: list[str] = field(default_factory=list)
    # Lines the parser skipped; not part of structural equality
    warnings: list[UnrecognizedLineWarning] = field(default_factory=list, compare=False)

    _observers: list[DiagramObserver] = field(
        default_factory=list, init=False, repr=False, compare=False
    )
    _listeners: list[Callable[[], None]] = field(
        default_factory=list, init=False, repr=False, compare=False
    )
    _batch_depth: int = field(default=0, init=False, repr=False, compare=False)

    # --- Change notification ---

    def add_observer(self, observer: DiagramObserver) -> None:
        if not any(o is observer for o in self._observers):
            self._observers.append(observer)

    def remove_observer(self, observer: DiagramObserver) -> None:
        self._observers = [o for o in self._observers if o is not observer]

    def on_change(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a change callback; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            self._listeners = [fn for fn in self._listeners if fn is not listener]

        return unsubscribe

    @contextmanager
    def batch_changes(self) -> Iterator[SequenceDiagram]:
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._notify()

    def _changed(self) -> None:
        if self._batch_depth == 0:
            self._notify()

    def _notify(self) -> None:
        for observer in list(self._observers):
            observer.on_diagram_changed()
        for listener in list(self._listeners):
            listener()

    def generate_id(self, prefix: str) -> str:
        """Return an unused participant id of the form "<prefix>-NN"."""
        pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
        highest = 0
        for p in self.participants:
            match = pattern.match(p.id)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{prefix}-{highest + 1:02d}"

    # --- Participants ---

    def get_participant(self, participant_id: str) -> Participant | None:
        for p in self.participants:
            if p.id == participant_id:
                return p
        return None

    def _require_participant(self, participant_id: str) -> Participant:
        participant = self.get_participant(participant_id)
        if participant is None:
            raise UnknownParticipantError(participant_id)
        return participant

    def add_participant(self, participant: Participant) -> Participant:
        if self.get_participant(participant.id) is not None:
            raise DuplicateParticipantError(f"Participant {participant.id!r} already exists")
        participant.insertion_order = (
            max((p.insertion_order for p in self.participants), default=-1) + 1
        )
        self.participants.append(participant)
        if participant.box_id is not None:
            box = self.get_box(participant.box_id)
            if box is not None and participant.id not in box.participant_ids:
                box.participant_ids.append(participant.id)
        self._changed()
        return participant

    def ensure_participant(
        self,
        participant_id: str,
        kind: ParticipantKind = "participant",
        explicit: bool = False,
    ) -> Participant:
        """Return the participant with this id, registering it if absent."""
        existing = self.get_participant(participant_id)
        if existing is not None:
            return existing
        return self.add_participant(Participant(id=participant_id, kind=kind, explicit=explicit))

    def update_participant(self, participant_id: str, **changes: object) -> Participant:
        """Set display fields of a participant (label, kind, explicit, links, flags).

        Use rename_participant to change the id and assign_box to change the box.
        """
        participant = self._require_participant(participant_id)
        allowed = {f.name for f in fields(Participant)} - {"id", "insertion_order", "box_id"}
        unknown = set(changes) - allowed
        if unknown:
            raise TypeError(f"Cannot update participant field(s): {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            setattr(participant, name, value)
        self._changed()
        return participant

    def rename_participant(self, old_id: str, new_id: str) -> Participant:
        """Change a participant id and rewrite every reference to it."""
        participant = self._require_participant(old_id)
        if old_id == new_id:
            return participant
        if self.get_participant(new_id) is not None:
            raise DuplicateParticipantError(f"Participant {new_id!r} already exists")
        participant.id = new_id
        for box in self.boxes:
            box.participant_ids = [new_id if pid == old_id else pid for pid in box.participant_ids]
        for _, _, stmt in self.walk():
            if isinstance(stmt, Message):
                if stmt.sender == old_id:
                    stmt.sender = new_id
                if stmt.receiver == old_id:
                    stmt.receiver = new_id
            elif isinstance(stmt, Note):
                stmt.participants = [new_id if pid == old_id else pid for pid in stmt.participants]
            elif isinstance(stmt, (ActivationStatement, CreateStatement, DestroyStatement)):
                if stmt.participant_id == old_id:
                    stmt.participant_id = new_id
        logger.debug("renamed participant %r to %r", old_id, new_id)
        self._changed()
        return participant

    def remove_participant(self, participant_id: str) -> Participant:
        """Remove a declaration. Statements that mention the id are kept."""
        participant = self._require_participant(participant_id)
        self.participants.remove(participant)
        for box in self.boxes:
            if participant_id in box.participant_ids:
                box.participant_ids.remove(participant_id)
        self._changed()
        return participant

    def move_participant(self, from_index: int, to_index: int) -> None:
        _check_index(self.participants, from_index, "participant")
        _check_index(self.participants, to_index, "participant")
        self.participants.insert(to_index, self.participants.pop(from_index))
        self._changed()

    # --- Boxes ---

    def get_box(self, box_id: str) -> Box | None:
        for box in self.boxes:
            if box.id == box_id:
                return box
        return None

    def add_box(self, box: Box) -> Box:
        if not box.id:
            n = len(self.boxes)
            while self.get_box(f"box-{n}") is not None:
                n += 1
            box.id = f"box-{n}"
        elif self.get_box(box.id) is not None:
            raise DuplicateBoxError(f"Box {box.id!r} already exists")
        self.boxes.append(box)
        for pid in box.participant_ids:
            participant = self.get_participant(pid)
            if participant is not None:
                participant.box_id = box.id
        self._changed()
        return box

    def _require_box(self, box_id: str) -> Box:
        box = self.get_box(box_id)
        if box is None:
            raise UnknownBoxError(box_id)
        return box

    def update_box(self, box_id: str, **changes: object) -> Box:
        """Set the color and/or description of a box."""
        box = self._require_box(box_id)
        unknown = set(changes) - {"color", "description"}
        if unknown:
            raise TypeError(f"Cannot update box field(s): {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            setattr(box, name, value)
        self._changed()
        return box

    def remove_box(self, box_id: str) -> Box:
        box = self._require_box(box_id)
        self.boxes.remove(box)
        for p in self.participants:
            if p.box_id == box_id:
                p.box_id = None
        self._changed()
        return box

    def assign_box(self, participant_id: str, box_id: str | None) -> None:
        """Move a participant into a box (or out of any box with None)."""
        participant = self._require_participant(participant_id)
        new_box = self._require_box(box_id) if box_id is not None else None
        if participant.box_id is not None:
            old_box = self.get_box(participant.box_id)
            if old_box is not None and participant_id in old_box.participant_ids:
                old_box.participant_ids.remove(participant_id)
        participant.box_id = box_id
        if new_box is not None:
            new_box.participant_ids.append(participant_id)
        self._changed()

    # --- Statements ---

    def walk(self) -> Iterator[tuple[int, int, Statement]]:
        return iter_statements(self.statements)

    def statements_at(self, parent: ContainerPath = ()) -> list[Statement]:
        """Resolve a container path to the live statement list it names."""
        if len(parent) % 2 != 0:
            raise ModelIndexError(f"Container path must have even length, got {parent!r}")
        container = self.statements
        for stmt_index, body_index in zip(parent[0::2], parent[1::2]):
            _check_index(container, stmt_index, "statement")
            stmt = container[stmt_index]
            if not is_block(stmt):
                raise ModelIndexError(f"Statement at {stmt_index} is a {stmt.kind}, not a block")
            bodies = block_bodies(stmt)  # type: ignore[arg-type]
            _check_index(bodies, body_index, "body")
            container = bodies[body_index]
        return container

    def _owned_ids(self) -> set[int]:
        return {id(stmt) for _, _, stmt in self.walk()}

    def add_statement(
        self,
        stmt: Statement,
        index: int | None = None,
        parent: ContainerPath = (),
    ) -> None:
        """Insert a statement at the end of a container or before `index`."""
        container = self.statements_at(parent)
        owned = self._owned_ids()
        if any(id(s) in owned for _, _, s in iter_statements([stmt])):
            raise OwnershipError(f"{stmt.kind} statement is already part of the diagram")
        if index is None:
            container.append(stmt)
        else:
            _check_index(container, index, "statement", allow_end=True)
            container.insert(index, stmt)
        self._changed()

    def update_statement(self, index: int, stmt: Statement, parent: ContainerPath = ()) -> None:
        container = self.statements_at(parent)
        _check_index(container, index, "statement")
        current = container[index]
        owned = self._owned_ids() - {id(s) for _, _, s in iter_statements([current])}
        if any(id(s) in owned for _, _, s in iter_statements([stmt])):
            raise OwnershipError(f"{stmt.kind} statement is already part of the diagram")
        container[index] = stmt
        self._changed()

    def remove_statement(self, index: int, parent: ContainerPath = ()) -> Statement:
        container = self.statements_at(parent)
        _check_index(container, index, "statement")
        stmt = container.pop(index)
        self._changed()
        return stmt

    def move_statement(
        self,
        from_index: int,
        to_index: int,
        parent: ContainerPath = (),
        to_parent: ContainerPath | None = None,
    ) -> None:
        """Move a statement within its container or into another one.

        Within one container both indices must name existing positions. Across
        containers `to_index` may also be the end of the target list.
        """
        source = self.statements_at(parent)
        _check_index(source, from_index, "statement")
        target = source if to_parent is None else self.statements_at(tuple(to_parent))
        stmt = source[from_index]
        for _, _, inner in iter_statements([stmt]):
            if is_block(inner) and any(body is target for body in block_bodies(inner)):  # type: ignore[arg-type]
                raise OwnershipError(f"Cannot move a {stmt.kind} block into itself")
        if target is source:
            _check_index(source, to_index, "statement")
        else:
            _check_index(target, to_index, "statement", allow_end=True)
        target.insert(to_index, source.pop(from_index))
        logger.debug("moved %s statement %d -> %d", stmt.kind, from_index, to_index)
        self._changed()

    # --- Config ---

    def set_autonumber(self, enabled: bool) -> None:
        self.config.autonumber = enabled
        self._changed()

    def set_mirror_actors(self, enabled: bool) -> None:
        self.config.mirror_actors = enabled
        self._changed()
