from __future__ import annotations

from dataclasses import dataclass

from .types import (
    SequenceDiagram,
    Message,
    Note,
    ActivationStatement,
    CreateStatement,
    DestroyStatement,
    is_block,
)

# ============================================================================
# Activation resolver
#
# Pairs activations with deactivations per participant using a stack of open
# start indices, so nested activations on one lifeline close innermost first.
# Indices are pre-order positions in the statement tree (see iter_statements),
# which equal top-level positions for a diagram without blocks.
#
# Unbalanced input is tolerated:
#   - a deactivation with nothing open is dropped
#   - activations still open at the end are closed at the last index
# ============================================================================


@dataclass(slots=True)
class Activation:
    """Narrow rectangle on a lifeline showing active processing."""
    participant_id: str
    start_index: int
    end_index: int
    # Stack depth after the pop; outer activations have lower levels
    nest_level: int


def resolve_activations(diagram: SequenceDiagram) -> list[Activation]:
    """Derive matched activation ranges, in the order they close."""
    stacks: dict[str, list[int]] = {}
    activations: list[Activation] = []
    last_index = -1

    def push(pid: str, index: int) -> None:
        stacks.setdefault(pid, []).append(index)

    def pop(pid: str, index: int) -> None:
        stack = stacks.get(pid)
        if not stack:
            return
        start = stack.pop()
        activations.append(
            Activation(participant_id=pid, start_index=start, end_index=index, nest_level=len(stack))
        )

    for index, _, stmt in diagram.walk():
        last_index = index
        if isinstance(stmt, Message):
            if stmt.activate_receiver:
                push(stmt.receiver, index)
            if stmt.activate_sender:
                push(stmt.sender, index)
            if stmt.deactivate_receiver:
                pop(stmt.receiver, index)
            if stmt.deactivate_sender:
                pop(stmt.sender, index)
        elif isinstance(stmt, ActivationStatement):
            if stmt.action == "activate":
                push(stmt.participant_id, index)
            else:
                pop(stmt.participant_id, index)
        elif isinstance(stmt, (Note, CreateStatement, DestroyStatement)):
            continue
        elif not is_block(stmt):
            raise TypeError(f"Unknown statement type: {type(stmt).__name__}")

    # Close any unclosed activations
    for pid, stack in stacks.items():
        for start in stack:
            activations.append(
                Activation(participant_id=pid, start_index=start, end_index=last_index, nest_level=0)
            )

    return activations
