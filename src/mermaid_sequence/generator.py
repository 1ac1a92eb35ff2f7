from __future__ import annotations

import json
import re

from .types import (
    SequenceDiagram,
    GenerateOptions,
    Participant,
    Box,
    Link,
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
    Statement,
)

# ============================================================================
# Sequence diagram generator
#
# Emits the canonical text form of a SequenceDiagram. For every diagram the
# parser can produce, parsing the output gives back an equal model; comments
# are the exception, they are re-emitted together right after the header.
#
# Output order:
#   init directive (mirror actors), header, comments, autonumber,
#   participant declarations (grouped into boxes), statements, link lines
#
# The parser registers a participant at its first declaration, create line
# or link line, so declarations are placed to reproduce diagram.participants:
# a created participant is declared by its create line, and participants
# that follow it are declared right after that line.
# ============================================================================

MIRROR_ACTORS_DIRECTIVE = '%%{init: {"sequence": {"mirrorActors": true}}}%%'

_WHITESPACE_RE = re.compile(r"\s")


def generate_sequence_diagram(
    diagram: SequenceDiagram,
    options: GenerateOptions | None = None,
) -> str:
    """Generate Mermaid sequenceDiagram text from a model."""
    if options is None:
        options = GenerateOptions()
    ind = options.indent

    lines: list[str] = []
    if diagram.config.mirror_actors:
        lines.append(MIRROR_ACTORS_DIRECTIVE)
    lines.append("sequenceDiagram")

    if options.emit_comments:
        lines.extend(ind + comment for comment in diagram.comments)

    if diagram.config.autonumber:
        lines.append(ind + "autonumber")

    plan = _DeclarationPlan(diagram, ind)
    lines.extend(ind + line for line in plan.header)

    for stmt in diagram.statements:
        _emit_statement(plan, stmt, lines, ind, 1)

    # Links of declared participants come last so they can refer to anyone
    for p in diagram.participants:
        if p.id not in plan.linked:
            lines.extend(ind + line for line in link_lines(p))

    return "\n".join(lines)


# ============================================================================
# Participants, boxes and links
# ============================================================================


def declaration(participant: Participant, create: bool = False) -> str:
    prefix = "create " if create else ""
    alias = f" as {participant.label}" if participant.label is not None else ""
    return f"{prefix}{participant.kind} {participant.id}{alias}"


def box_header(box: Box) -> str:
    parts = ["box"]
    if box.color:
        parts.append(box.color)
    if box.description:
        parts.append(box.description)
    return " ".join(parts)


def link_line(participant_id: str, link: Link) -> str:
    """Render one link, falling back to the JSON form when `link` can't hold it."""
    fits = (
        link.label
        and link.label == link.label.strip()
        and "\n" not in link.label
        and link.url
        and not _WHITESPACE_RE.search(link.url)
    )
    if fits:
        return f"link {participant_id}: {link.label} @ {link.url}"
    return f"links {participant_id}: {json.dumps({link.label: link.url})}"


def link_lines(participant: Participant) -> list[str]:
    return [link_line(participant.id, link) for link in participant.links]


class _DeclarationPlan:
    """Decide where each participant is registered in the generated text.

    Participants are split into slots: the header, then one slot after the
    create line of each created participant that is declared by it. Within a
    slot, explicit participants get a declaration and implicit ones (known
    only from link lines) get their link lines, in diagram.participants order.
    """

    def __init__(self, diagram: SequenceDiagram, ind: str) -> None:
        self.diagram = diagram
        self.ind = ind
        self.boxes = {box.id: box for box in diagram.boxes}
        self.by_id = {p.id: p for p in diagram.participants}
        self.members: dict[str, list[str]] = {box.id: [] for box in diagram.boxes}
        for p in diagram.participants:
            if p.explicit and p.box_id in self.members:
                self.members[p.box_id].append(p.id)

        # Participants whose links were written where they are registered
        self.linked: set[str] = set()
        self.declared: set[str] = set()
        self.emitted_boxes: set[str] = set()
        # id(CreateStatement) -> lines emitted right after that create line
        self.after_create: dict[int, list[str]] = {}

        self.header: list[str] = []
        last_box_slot = self.header
        for anchor, depth, participants in self._slots():
            boxes_before = len(self.emitted_boxes)
            lines = self._render_slot(participants, depth == 0)
            if anchor is None:
                self.header = last_box_slot = lines
            else:
                self.after_create[id(anchor)] = lines
            if len(self.emitted_boxes) > boxes_before:
                last_box_slot = lines

        # Boxes without declared members go after the last box run
        for box in diagram.boxes:
            if box.id not in self.emitted_boxes:
                last_box_slot.extend(self._box_lines(box, []))

    def _slots(self) -> list[tuple[CreateStatement | None, int, list[Participant]]]:
        first_create: dict[str, tuple[int, int, CreateStatement]] = {}
        for index, depth, stmt in self.diagram.walk():
            if isinstance(stmt, CreateStatement):
                first_create.setdefault(stmt.participant_id, (index, depth, stmt))

        participants = self.diagram.participants
        slots: list[tuple[CreateStatement | None, int, list[Participant]]] = [(None, 0, [])]
        for i, p in enumerate(participants):
            create = first_create.get(p.id)
            if create is not None and self._declared_by_create(p, create, participants[i + 1:], first_create):
                slots.append((create[2], create[1], []))
                continue
            slots[-1][2].append(p)
        return slots

    def _declared_by_create(
        self,
        participant: Participant,
        create: tuple[int, int, CreateStatement],
        later: list[Participant],
        first_create: dict[str, tuple[int, int, CreateStatement]],
    ) -> bool:
        index, depth, _ = create
        if not (participant.created and participant.explicit):
            return False
        if participant.links or participant.box_id is not None:
            return False
        # A later participant with an earlier create line would be registered first
        if any(first_create.get(q.id, (index + 1,))[0] < index for q in later):
            return False
        # Boxes are top-level only
        if depth > 0 and any(q.explicit and q.box_id in self.boxes for q in later):
            return False
        return True

    def _render_slot(self, participants: list[Participant], top_level: bool) -> list[str]:
        out: list[str] = []
        for i, p in enumerate(participants):
            if p.id in self.declared:
                continue
            box = self.boxes.get(p.box_id) if top_level and p.explicit and p.box_id else None
            if box is None:
                out.extend(self._register(p))
                continue
            out.extend(self._box_run(box, participants[i:]))
        return out

    def _register(self, participant: Participant) -> list[str]:
        self.declared.add(participant.id)
        if participant.explicit:
            return [declaration(participant)]
        self.linked.add(participant.id)
        # An empty JSON map registers a participant without links
        return link_lines(participant) or [f"links {participant.id}: {{}}"]

    def _box_run(self, box: Box, rest: list[Participant]) -> list[str]:
        """Emit `box` with its members in box order, starting at rest[0].

        Implicit participants registered between two members go inside the
        run. A member whose list position comes before its box turn is
        registered early through its link lines.
        """
        lines: list[str] = []
        for earlier in self.diagram.boxes:
            if earlier is box:
                break
            if earlier.id not in self.emitted_boxes and not self.members[earlier.id]:
                lines.extend(self._box_lines(earlier, []))

        ind = self.ind
        ordered = [pid for pid in box.participant_ids if pid in self.members[box.id]]
        pending = ordered + [pid for pid in self.members[box.id] if pid not in ordered]
        registered: set[str] = set()
        body: list[str] = []

        def declare(pid: str) -> None:
            pending.remove(pid)
            self.declared.add(pid)
            body.append(ind + declaration(self.by_id[pid]))

        for q in rest:
            if not pending:
                break
            if q.id in self.declared:
                continue
            if q.explicit and q.box_id == box.id:
                if pending[0] == q.id or not q.links:
                    declare(q.id)
                else:
                    body.extend(ind + line for line in link_lines(q))
                    self.linked.add(q.id)
                    registered.add(q.id)
            elif not q.explicit:
                body.extend(ind + line for line in self._register(q))
            else:
                break
            while pending and pending[0] in registered:
                declare(pending[0])

        for pid in list(pending):
            declare(pid)
        return lines + self._box_lines(box, body)

    def _box_lines(self, box: Box, body: list[str]) -> list[str]:
        self.emitted_boxes.add(box.id)
        return [box_header(box), *body, "end"]


# ============================================================================
# Statements
# ============================================================================


def message_line(msg: Message) -> str:
    """Render a message, re-attaching +/- shorthand to the side it came from."""
    sender_marks = ("+" if msg.activate_sender else "") + ("-" if msg.deactivate_sender else "")
    receiver_marks = ("+" if msg.activate_receiver else "") + (
        "-" if msg.deactivate_receiver else ""
    )
    # "A- ->>B": the space keeps a trailing "-" from fusing with the arrow
    # ("A-" + "->" would read back as "-->")
    separator = " " if sender_marks.endswith("-") else ""
    text = f": {msg.text}" if msg.text else ""
    return f"{msg.sender}{sender_marks}{separator}{msg.token}{receiver_marks}{msg.receiver}{text}"


def note_line(note: Note) -> str:
    if note.position == "over":
        target = f"over {','.join(note.participants)}"
    else:
        target = f"{note.position} of {note.participants[0]}"
    return f"Note {target}: {note.text}".rstrip()


def _opener(keyword: str, label: str) -> str:
    return f"{keyword} {label}" if label else keyword


def _emit_statement(
    plan: _DeclarationPlan,
    stmt: Statement,
    lines: list[str],
    ind: str,
    level: int,
) -> None:
    prefix = ind * level

    if isinstance(stmt, Message):
        lines.append(prefix + message_line(stmt))
    elif isinstance(stmt, Note):
        lines.append(prefix + note_line(stmt))
    elif isinstance(stmt, ActivationStatement):
        lines.append(f"{prefix}{stmt.action} {stmt.participant_id}")
    elif isinstance(stmt, CreateStatement):
        participant = plan.diagram.get_participant(stmt.participant_id)
        if participant is None:
            lines.append(f"{prefix}create participant {stmt.participant_id}")
        else:
            lines.append(prefix + declaration(participant, create=True))
        lines.extend(prefix + line for line in plan.after_create.get(id(stmt), []))
    elif isinstance(stmt, DestroyStatement):
        lines.append(f"{prefix}destroy {stmt.participant_id}")
    elif isinstance(stmt, (Loop, Opt, Break)):
        lines.append(prefix + _opener(stmt.kind, stmt.label))
        _emit_body(plan, stmt.statements, lines, ind, level + 1)
        lines.append(prefix + "end")
    elif isinstance(stmt, Rect):
        lines.append(prefix + _opener("rect", stmt.color))
        _emit_body(plan, stmt.statements, lines, ind, level + 1)
        lines.append(prefix + "end")
    elif isinstance(stmt, (Alt, Par)):
        separator = "else" if isinstance(stmt, Alt) else "and"
        _emit_branches(plan, stmt.kind, separator, stmt.branches, lines, ind, level)
    elif isinstance(stmt, Critical):
        branches = [Branch(label=stmt.label, statements=stmt.statements), *stmt.options]
        _emit_branches(plan, "critical", "option", branches, lines, ind, level)
    else:
        raise TypeError(f"Unknown statement type: {type(stmt).__name__}")


def _emit_branches(
    plan: _DeclarationPlan,
    keyword: str,
    separator: str,
    branches: list[Branch],
    lines: list[str],
    ind: str,
    level: int,
) -> None:
    prefix = ind * level
    if not branches:
        lines.append(prefix + keyword)
    for i, branch in enumerate(branches):
        lines.append(prefix + _opener(keyword if i == 0 else separator, branch.label))
        _emit_body(plan, branch.statements, lines, ind, level + 1)
    lines.append(prefix + "end")


def _emit_body(
    plan: _DeclarationPlan,
    statements: list[Statement],
    lines: list[str],
    ind: str,
    level: int,
) -> None:
    for stmt in statements:
        _emit_statement(plan, stmt, lines, ind, level)
