from __future__ import annotations

import json
import logging
import re

from .errors import (
    MalformedMessageError,
    NoteCardinalityError,
    StructuralError,
    UnrecognizedLineError,
    UnrecognizedLineWarning,
)
from .types import (
    ARROW_KINDS,
    ARROW_TOKENS_LONGEST_FIRST,
    SequenceDiagram,
    ParseOptions,
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
    ControlStructure,
    Statement,
    block_bodies,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Sequence diagram parser
#
# Parses Mermaid sequenceDiagram syntax into a SequenceDiagram model.
#
# Supported syntax:
#   %%{init: {"sequence": {"mirrorActors": true}}}%%
#   autonumber
#   participant A as Alice / actor B as Bob
#   box Aqua Group ... end
#   create participant C / destroy C
#   activate A / deactivate A
#   A->>B: Solid arrow      (all 10 arrow tokens)
#   A->>+B: Activate target / A-->>-B: Deactivate target
#   Note left of A: Text / Note right of A: Text / Note over A,B: Text
#   link A: Dashboard @ https://... / links A: {"Dashboard": "https://..."}
#   loop/opt/break/rect ... end
#   alt ... else ... end / par ... and ... end / critical ... option ... end
#
# Only structural problems (unterminated or unmatched blocks) raise.
# Any other line that cannot be understood is skipped and recorded in
# diagram.warnings.
# ============================================================================

_HEADER_RE = re.compile(r"^sequenceDiagram\s*$")
_MIRROR_RE = re.compile(r"""["']?mirrorActors["']?\s*:\s*(true|false)""")
_WORD_RE = re.compile(r"[A-Za-z_]\w*")
_BOX_RE = re.compile(r"^box(?:\s+(.*))?$")
_ACTOR_RE = re.compile(r"^(participant|actor)\s+(\S+?)(?:\s+as\s+(.+))?$")
_CREATE_RE = re.compile(r"^create\s+(participant|actor)\s+(\S+?)(?:\s+as\s+(.+))?$")
_DESTROY_RE = re.compile(r"^destroy\s+(\S+)$")
_ACTIVATION_RE = re.compile(r"^(activate|deactivate)\s+(\S+)$")
_NOTE_RE = re.compile(
    r"^Note\s+(left of|right of|over)\s+([^:]+?)\s*:\s*(.*)$", re.IGNORECASE
)
_LINK_RE = re.compile(r"^link\s+(\S+?)\s*:\s*(.+?)\s*@\s*(\S+)$")
_LINKS_RE = re.compile(r"^links\s+(\S+?)\s*:\s*(\{.*\})$")
_BLOCK_RE = re.compile(r"^(loop|alt|opt|par|critical|break|rect)(?:\s+(.*))?$")
_SEPARATOR_RE = re.compile(r"^(else|and|option)(?:\s+(.*))?$")
_COLOR_RE = re.compile(
    r"^(transparent|(?:rgba?|hsla?)\([^)]*\)|#[0-9A-Fa-f]{3,8})(?:\s+(.*))?$"
)

# Branch separator keyword per branching block
_SEPARATORS = {"alt": "else", "par": "and", "critical": "option"}

_NOTE_POSITIONS = {"left of": "left", "right of": "right", "over": "over"}

# Keys that only wrap the mirrorActors setting in an init directive
_DIRECTIVE_KEYS = {"init", "initialize", "sequence"}

# CSS named colors accepted as the first word of a "box" line
CSS_COLOR_NAMES = frozenset("""
aliceblue antiquewhite aqua aquamarine azure beige bisque black blanchedalmond
blue blueviolet brown burlywood cadetblue chartreuse chocolate coral
cornflowerblue cornsilk crimson cyan darkblue darkcyan darkgoldenrod darkgray
darkgreen darkgrey darkkhaki darkmagenta darkolivegreen darkorange darkorchid
darkred darksalmon darkseagreen darkslateblue darkslategray darkslategrey
darkturquoise darkviolet deeppink deepskyblue dimgray dimgrey dodgerblue
firebrick floralwhite forestgreen fuchsia gainsboro ghostwhite gold goldenrod
gray green greenyellow grey honeydew hotpink indianred indigo ivory khaki
lavender lavenderblush lawngreen lemonchiffon lightblue lightcoral lightcyan
lightgoldenrodyellow lightgray lightgreen lightgrey lightpink lightsalmon
lightseagreen lightskyblue lightslategray lightslategrey lightsteelblue
lightyellow lime limegreen linen magenta maroon mediumaquamarine mediumblue
mediumorchid mediumpurple mediumseagreen mediumslateblue mediumspringgreen
mediumturquoise mediumvioletred midnightblue mintcream mistyrose moccasin
navajowhite navy oldlace olive olivedrab orange orangered orchid palegoldenrod
palegreen paleturquoise palevioletred papayawhip peachpuff peru pink plum
powderblue purple rebeccapurple red rosybrown royalblue saddlebrown salmon
sandybrown seagreen seashell sienna silver skyblue slateblue slategray
slategrey snow springgreen steelblue tan teal thistle tomato turquoise violet
wheat white whitesmoke yellow yellowgreen
""".split())


def parse_sequence_diagram(
    text: str,
    options: ParseOptions | None = None,
) -> SequenceDiagram:
    """Parse Mermaid sequenceDiagram text into a SequenceDiagram.

    Raises StructuralError for a missing header, an unterminated block or
    box, or an `end` without an open block. Empty text is an empty diagram.
    """
    return _SequenceParser(text, options or ParseOptions()).parse()


def parse_message(line: str) -> Message | None:
    """Parse a single message line such as "A->>+B: Hello".

    Returns None when the line contains no arrow token. Raises
    MalformedMessageError when it does but cannot be split into exactly a
    sender and a receiver.
    """
    # The arrow is searched for in the head only; message text is free-form
    head, _, text = line.partition(":")

    for token in ARROW_TOKENS_LONGEST_FIRST:
        if token in head:
            break
    else:
        return None

    parts = head.split(token)
    if len(parts) != 2:
        raise MalformedMessageError(f"Expected exactly one {token!r} arrow in {line!r}")

    sender = parts[0].strip()
    receiver = parts[1].strip()
    msg = Message(sender="", receiver="", arrow=ARROW_KINDS[token], text=text.strip())

    # Activation shorthand sits on the inner edges of the two parts
    while sender.endswith(("+", "-")):
        if sender[-1] == "+":
            msg.activate_sender = True
        else:
            msg.deactivate_sender = True
        sender = sender[:-1].rstrip()
    while receiver.startswith(("+", "-")):
        if receiver[0] == "+":
            msg.activate_receiver = True
        else:
            msg.deactivate_receiver = True
        receiver = receiver[1:].lstrip()

    if not sender or not receiver:
        raise MalformedMessageError(f"Message needs a sender and a receiver: {line!r}")

    msg.sender = sender
    msg.receiver = receiver
    return msg


def parse_box_header(rest: str) -> tuple[str | None, str | None]:
    """Split the text after "box" into (color, description)."""
    rest = rest.strip()
    if not rest:
        return None, None
    color_match = _COLOR_RE.match(rest)
    if color_match:
        return color_match.group(1), (color_match.group(2) or "").strip() or None
    first, _, remainder = rest.partition(" ")
    if first.lower() in CSS_COLOR_NAMES:
        return first, remainder.strip() or None
    return None, rest


class _SequenceParser:
    def __init__(self, text: str, options: ParseOptions) -> None:
        self.options = options
        self.diagram = SequenceDiagram()
        # (source line index, trimmed line) for every non-empty, non-comment line
        self.lines: list[tuple[int, str]] = []
        self.pos = 0
        self.current_box: Box | None = None
        self.box_line: tuple[int, str] = (0, "")

        for index, raw in enumerate(text.split("\n")):
            line = raw.strip()
            if not line:
                continue
            if line.startswith("%%"):
                self._comment(line)
                continue
            self.lines.append((index, line))

    def parse(self) -> SequenceDiagram:
        if not self.lines:
            return self.diagram

        index, header = self.lines[0]
        if not _HEADER_RE.match(header):
            raise StructuralError('Expected "sequenceDiagram" header', index, header)
        self.pos = 1

        self._parse_block(self.diagram.statements, None, index, header, 0)

        if self.current_box is not None:
            raise StructuralError("Unterminated box", *self.box_line)

        # A destroy line may come before the participant's declaration
        for _, _, stmt in self.diagram.walk():
            if isinstance(stmt, DestroyStatement):
                participant = self.diagram.get_participant(stmt.participant_id)
                if participant is not None:
                    participant.destroyed = True
        return self.diagram

    # --- Line dispatch ---

    def _parse_block(
        self,
        container: list[Statement],
        block: ControlStructure | None,
        opener_index: int,
        opener_line: str,
        depth: int,
    ) -> None:
        """Consume lines into `container` until the `end` matching `block`.

        At the top level (block is None) this runs to end of input.
        """
        while self.pos < len(self.lines):
            index, line = self.lines[self.pos]
            self.pos += 1

            # --- Block / box end ---
            if line == "end":
                if block is not None:
                    return
                if self.current_box is not None:
                    self.current_box = None
                    continue
                raise StructuralError("Unmatched end", index, line)

            # --- Branch separator: else / and / option at this block's level ---
            if block is not None:
                sep_match = _SEPARATOR_RE.match(line)
                if sep_match and _SEPARATORS.get(block.kind) == sep_match.group(1):
                    container = _start_branch(block, (sep_match.group(2) or "").strip())
                    continue

            self._parse_line(index, line, container, depth)

        if block is not None:
            logger.debug("unterminated %s block opened at line %d", block.kind, opener_index)
            raise StructuralError(f"Unterminated {block.kind} block", opener_index, opener_line)

    def _parse_line(
        self,
        index: int,
        line: str,
        container: list[Statement],
        depth: int,
    ) -> None:
        # --- autonumber ---
        if line == "autonumber":
            self.diagram.config.autonumber = True
            return

        # --- box [COLOR] [DESCRIPTION] ---
        box_match = _BOX_RE.match(line)
        if box_match:
            if depth > 0:
                self._skip(index, line, "box is only allowed at the top level")
                return
            if self.current_box is not None:
                raise StructuralError("Boxes cannot be nested", index, line)
            color, description = parse_box_header(box_match.group(1) or "")
            self.current_box = self.diagram.add_box(Box(color=color, description=description))
            self.box_line = (index, line)
            return

        # --- participant / actor declaration ---
        actor_match = _ACTOR_RE.match(line)
        if actor_match:
            self._declare(index, line, actor_match, created=False)
            return

        # --- create participant / actor ---
        create_match = _CREATE_RE.match(line)
        if create_match:
            self._declare(index, line, create_match, created=True)
            container.append(CreateStatement(participant_id=create_match.group(2)))
            return

        # --- destroy ---
        destroy_match = _DESTROY_RE.match(line)
        if destroy_match:
            container.append(DestroyStatement(participant_id=destroy_match.group(1)))
            return

        # --- activate / deactivate ---
        activation_match = _ACTIVATION_RE.match(line)
        if activation_match:
            container.append(
                ActivationStatement(
                    participant_id=activation_match.group(2),
                    action=activation_match.group(1),  # type: ignore[arg-type]
                )
            )
            return

        # --- Note ---
        note_match = _NOTE_RE.match(line)
        if note_match:
            targets = [s.strip() for s in note_match.group(2).split(",")]
            try:
                note = Note(
                    position=_NOTE_POSITIONS[note_match.group(1).lower()],  # type: ignore[arg-type]
                    participants=targets,
                    text=note_match.group(3).strip(),
                )
            except NoteCardinalityError as err:
                self._skip(index, line, str(err))
                return
            container.append(note)
            return

        # --- link / links ---
        link_match = _LINK_RE.match(line)
        if link_match:
            participant = self.diagram.ensure_participant(link_match.group(1))
            participant.links.append(
                Link(label=link_match.group(2).strip(), url=link_match.group(3))
            )
            return

        links_match = _LINKS_RE.match(line)
        if links_match:
            self._links(index, line, links_match.group(1), links_match.group(2))
            return

        # --- Block start: loop, alt, opt, par, critical, break, rect ---
        block_match = _BLOCK_RE.match(line)
        if block_match:
            block = _new_block(block_match.group(1), (block_match.group(2) or "").strip())
            container.append(block)
            self._parse_block(block_bodies(block)[0], block, index, line, depth + 1)
            return

        # --- Message ---
        try:
            msg = parse_message(line)
        except MalformedMessageError as err:
            self._skip(index, line, str(err))
            return
        if msg is not None:
            container.append(msg)
            return

        self._skip(index, line, "Unrecognized line")

    # --- Helpers ---

    def _declare(self, index: int, line: str, match: re.Match[str], created: bool) -> None:
        kind = match.group(1)
        pid = match.group(2)
        label = match.group(3).strip() if match.group(3) else None

        existing = self.diagram.get_participant(pid)
        if existing is None:
            self.diagram.add_participant(
                Participant(
                    id=pid,
                    label=label,
                    kind=kind,  # type: ignore[arg-type]
                    explicit=True,
                    box_id=None if created or self.current_box is None else self.current_box.id,
                    created=created,
                )
            )
            return

        if existing.explicit and not created:
            self._skip(index, line, f"Participant {pid!r} is already declared")
            return

        # Registered by an earlier link line, or declared and now created
        existing.explicit = True
        existing.kind = kind  # type: ignore[assignment]
        if label is not None:
            existing.label = label
        if created:
            existing.created = True
        elif self.current_box is not None:
            self.diagram.assign_box(pid, self.current_box.id)

    def _links(self, index: int, line: str, pid: str, payload: str) -> None:
        try:
            links = json.loads(payload)
        except json.JSONDecodeError as err:
            self._skip(index, line, f"Invalid links JSON: {err.msg}")
            return
        if not isinstance(links, dict) or not all(isinstance(v, str) for v in links.values()):
            self._skip(index, line, "links must map labels to URL strings")
            return
        participant = self.diagram.ensure_participant(pid)
        for label, url in links.items():
            participant.links.append(Link(label=label, url=url))

    def _comment(self, line: str) -> None:
        if line.startswith("%%{") and line.endswith("}%%"):
            mirror_match = _MIRROR_RE.search(line)
            if mirror_match:
                self.diagram.config.mirror_actors = mirror_match.group(1) == "true"
                # Directives carrying other settings (theme, ...) are kept verbatim
                rest = _MIRROR_RE.sub("", line)
                if not set(_WORD_RE.findall(rest)) - _DIRECTIVE_KEYS:
                    return
        self.diagram.comments.append(line)

    def _skip(self, index: int, line: str, reason: str) -> None:
        warning = UnrecognizedLineWarning(line_index=index, line=line, reason=reason)
        if self.options.strict:
            raise UnrecognizedLineError(warning)
        logger.debug("skipping line %d (%s): %r", index, reason, line)
        self.diagram.warnings.append(warning)


def _new_block(keyword: str, rest: str) -> ControlStructure:
    if keyword == "loop":
        return Loop(label=rest)
    if keyword == "opt":
        return Opt(label=rest)
    if keyword == "break":
        return Break(label=rest)
    if keyword == "rect":
        return Rect(color=rest)
    if keyword == "alt":
        return Alt(branches=[Branch(label=rest)])
    if keyword == "par":
        return Par(branches=[Branch(label=rest)])
    if keyword == "critical":
        return Critical(label=rest)
    raise ValueError(f"Unknown block keyword: {keyword}")


def _start_branch(block: ControlStructure, label: str) -> list[Statement]:
    """Open the next branch of an alt/par/critical block and return its body."""
    branch = Branch(label=label)
    if isinstance(block, (Alt, Par)):
        block.branches.append(branch)
    elif isinstance(block, Critical):
        block.options.append(branch)
    else:
        raise TypeError(f"{block.kind} blocks have no branches")
    return branch.statements
