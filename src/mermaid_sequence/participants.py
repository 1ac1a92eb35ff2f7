from __future__ import annotations

from .types import (
    SequenceDiagram,
    Participant,
    Statement,
    Message,
    Note,
    ActivationStatement,
    CreateStatement,
    DestroyStatement,
    iter_statements,
    is_block,
)

# ============================================================================
# Participant resolver
#
# Derives the canonical left-to-right column order:
#   1. explicitly declared participants, in declaration order
#   2. ids referenced by messages or notes but never declared, in order of
#      first occurrence across a pre-order walk of the statement tree
#   3. registered implicit participants that nothing references (e.g. only
#      named by a "link" line), in registration order
# ============================================================================


def referenced_ids(statements: list[Statement]) -> list[str]:
    """Participant ids named by messages and notes, in first-occurrence order."""
    seen: dict[str, None] = {}
    for _, _, stmt in iter_statements(statements):
        if isinstance(stmt, Message):
            seen.setdefault(stmt.sender)
            seen.setdefault(stmt.receiver)
        elif isinstance(stmt, Note):
            for pid in stmt.participants:
                seen.setdefault(pid)
        elif isinstance(stmt, (ActivationStatement, CreateStatement, DestroyStatement)):
            continue
        elif not is_block(stmt):
            raise TypeError(f"Unknown statement type: {type(stmt).__name__}")
    return list(seen)


def ordered_participants(diagram: SequenceDiagram) -> list[Participant]:
    """Return every participant of the diagram in canonical column order.

    Undeclared ids get a synthetic Participant(explicit=False); participants
    registered without a declaration are reused so their links survive.
    """
    explicit = [p for p in diagram.participants if p.explicit]
    explicit_ids = {p.id for p in explicit}
    registered = {p.id: p for p in diagram.participants if not p.explicit}

    next_order = max((p.insertion_order for p in diagram.participants), default=-1) + 1
    implicit: list[Participant] = []
    for pid in referenced_ids(diagram.statements):
        if pid in explicit_ids:
            continue
        participant = registered.pop(pid, None)
        if participant is None:
            participant = Participant(id=pid, explicit=False, insertion_order=next_order)
            next_order += 1
        implicit.append(participant)

    # Whatever is left was registered but never referenced
    implicit.extend(registered.values())
    return explicit + implicit
