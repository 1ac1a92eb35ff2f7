"""Tests for the editable SequenceDiagram model."""
from __future__ import annotations

import pytest

from mermaid_sequence import (
    ActivationStatement,
    Alt,
    Box,
    Branch,
    Critical,
    DuplicateBoxError,
    DuplicateParticipantError,
    Loop,
    Message,
    ModelIndexError,
    Note,
    NoteCardinalityError,
    OwnershipError,
    Participant,
    SequenceDiagram,
    UnknownBoxError,
    UnknownParticipantError,
    block_bodies,
    parse_sequence_diagram,
)


def msg(sender: str = "A", receiver: str = "B", text: str = "") -> Message:
    return Message(sender=sender, receiver=receiver, text=text)


def nested_diagram() -> SequenceDiagram:
    return parse_sequence_diagram(
        "sequenceDiagram\n"
        "  A->>B: first\n"
        "  alt ok\n"
        "    B->>C: inside ok\n"
        "  else failed\n"
        "    loop retry\n"
        "      B->>C: again\n"
        "    end\n"
        "  end\n"
        "  C->>A: last"
    )


# ============================================================================
# Participants
# ============================================================================


class TestParticipants:
    def test_insertion_order_is_assigned(self):
        d = SequenceDiagram()
        a = d.add_participant(Participant(id="A"))
        b = d.add_participant(Participant(id="B", kind="actor"))
        assert (a.insertion_order, b.insertion_order) == (0, 1)

    def test_insertion_order_never_reuses_values(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        d.add_participant(Participant(id="B"))
        d.remove_participant("A")
        c = d.add_participant(Participant(id="C"))
        assert c.insertion_order == 2

    def test_duplicate_id_raises(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        with pytest.raises(DuplicateParticipantError):
            d.add_participant(Participant(id="A", kind="actor"))
        assert len(d.participants) == 1

    def test_ensure_participant_registers_once(self):
        d = SequenceDiagram()
        first = d.ensure_participant("X")
        second = d.ensure_participant("X", kind="actor")
        assert first is second
        assert first.explicit is False
        assert first.kind == "participant"

    def test_update_participant(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        d.update_participant("A", label="Alice", kind="actor")
        p = d.get_participant("A")
        assert p.label == "Alice"
        assert p.kind == "actor"
        assert p.display_label == "Alice"

    def test_update_rejects_identity_fields(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        with pytest.raises(TypeError):
            d.update_participant("A", id="B")
        with pytest.raises(TypeError):
            d.update_participant("A", insertion_order=9)

    def test_unknown_participant(self):
        d = SequenceDiagram()
        with pytest.raises(UnknownParticipantError):
            d.update_participant("nobody", label="x")
        with pytest.raises(KeyError):
            d.remove_participant("nobody")

    def test_rename_rewrites_references(self):
        d = parse_sequence_diagram(
            "sequenceDiagram\n"
            "  box Aqua\n"
            "    participant A\n"
            "  end\n"
            "  A->>B: hi\n"
            "  loop\n"
            "    Note over A,B: n\n"
            "    activate A\n"
            "  end"
        )
        d.rename_participant("A", "Z")
        assert d.get_participant("A") is None
        assert d.get_participant("Z").explicit is True
        assert d.boxes[0].participant_ids == ["Z"]
        assert d.statements[0].sender == "Z"
        loop = d.statements[1]
        assert loop.statements[0].participants == ["Z", "B"]
        assert loop.statements[1] == ActivationStatement(participant_id="Z", action="activate")

    def test_rename_to_existing_id_raises(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        d.add_participant(Participant(id="B"))
        with pytest.raises(DuplicateParticipantError):
            d.rename_participant("A", "B")

    def test_remove_keeps_statements(self):
        d = parse_sequence_diagram("sequenceDiagram\n  participant A\n  A->>B: hi")
        d.remove_participant("A")
        assert d.participants == []
        assert d.statements == [msg(text="hi")]

    def test_move_participant(self):
        d = SequenceDiagram()
        for pid in "ABC":
            d.add_participant(Participant(id=pid))
        d.move_participant(0, 2)
        assert [p.id for p in d.participants] == ["B", "C", "A"]

    def test_move_participant_out_of_range(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        with pytest.raises(ModelIndexError):
            d.move_participant(0, 1)
        with pytest.raises(IndexError):
            d.move_participant(-1, 0)


# ============================================================================
# Boxes
# ============================================================================


class TestBoxes:
    def test_box_ids_are_generated(self):
        d = SequenceDiagram()
        first = d.add_box(Box(color="Aqua"))
        second = d.add_box(Box())
        assert (first.id, second.id) == ("box-0", "box-1")

    def test_duplicate_box_id_raises(self):
        d = SequenceDiagram()
        d.add_box(Box(id="front"))
        with pytest.raises(DuplicateBoxError):
            d.add_box(Box(id="front"))

    def test_add_box_claims_listed_participants(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        box = d.add_box(Box(participant_ids=["A"]))
        assert d.get_participant("A").box_id == box.id

    def test_assign_box_moves_between_boxes(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        one = d.add_box(Box())
        two = d.add_box(Box())
        d.assign_box("A", one.id)
        d.assign_box("A", two.id)
        assert one.participant_ids == []
        assert two.participant_ids == ["A"]
        d.assign_box("A", None)
        assert two.participant_ids == []
        assert d.get_participant("A").box_id is None

    def test_assign_unknown_box(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        with pytest.raises(UnknownBoxError):
            d.assign_box("A", "missing")
        assert d.get_participant("A").box_id is None

    def test_remove_unknown_box(self):
        d = SequenceDiagram()
        with pytest.raises(UnknownBoxError) as excinfo:
            d.remove_box("missing")
        assert isinstance(excinfo.value, KeyError)

    def test_update_box(self):
        d = SequenceDiagram()
        box = d.add_box(Box(color="Aqua"))
        d.update_box(box.id, color="Purple", description="Backend")
        assert (box.color, box.description) == ("Purple", "Backend")

    def test_update_box_rejects_other_fields(self):
        d = SequenceDiagram()
        box = d.add_box(Box())
        with pytest.raises(TypeError):
            d.update_box(box.id, participant_ids=["A"])
        with pytest.raises(UnknownBoxError):
            d.update_box("missing", color="Red")

    def test_remove_box_releases_members(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        box = d.add_box(Box(participant_ids=["A"]))
        d.remove_box(box.id)
        assert d.boxes == []
        assert d.get_participant("A").box_id is None


# ============================================================================
# Statements
# ============================================================================


class TestStatements:
    def test_add_appends_and_inserts(self):
        d = SequenceDiagram()
        d.add_statement(msg(text="1"))
        d.add_statement(msg(text="3"))
        d.add_statement(msg(text="2"), index=1)
        d.add_statement(msg(text="4"), index=3)
        assert [s.text for s in d.statements] == ["1", "2", "3", "4"]

    def test_add_index_out_of_range(self):
        d = SequenceDiagram()
        d.add_statement(msg())
        with pytest.raises(ModelIndexError):
            d.add_statement(msg(), index=2)

    def test_add_into_nested_body(self):
        d = nested_diagram()
        d.add_statement(msg("X", "Y"), parent=(1, 1, 0, 0))
        loop = d.statements[1].branches[1].statements[0]
        assert loop.statements[-1] == msg("X", "Y")

    def test_statements_at_rejects_bad_paths(self):
        d = nested_diagram()
        with pytest.raises(ModelIndexError):
            d.statements_at((1,))
        with pytest.raises(ModelIndexError):
            d.statements_at((0, 0))
        with pytest.raises(ModelIndexError):
            d.statements_at((1, 2))
        with pytest.raises(ModelIndexError):
            d.statements_at((5, 0))

    def test_same_statement_cannot_be_added_twice(self):
        d = SequenceDiagram()
        m = msg()
        d.add_statement(m)
        with pytest.raises(OwnershipError):
            d.add_statement(m)

    def test_block_containing_owned_statement_is_rejected(self):
        d = SequenceDiagram()
        m = msg()
        d.add_statement(m)
        with pytest.raises(OwnershipError):
            d.add_statement(Loop(statements=[m]))

    def test_update_statement(self):
        d = nested_diagram()
        d.update_statement(0, msg(text="replaced"), parent=(1, 0))
        assert d.statements[1].branches[0].statements == [msg(text="replaced")]

    def test_update_with_itself_is_allowed(self):
        d = SequenceDiagram()
        m = msg()
        d.add_statement(m)
        d.update_statement(0, m)
        assert d.statements[0] is m

    def test_update_out_of_range(self):
        d = SequenceDiagram()
        with pytest.raises(ModelIndexError):
            d.update_statement(0, msg())

    def test_remove_statement(self):
        d = nested_diagram()
        removed = d.remove_statement(1)
        assert isinstance(removed, Alt)
        assert [s.text for s in d.statements] == ["first", "last"]

    def test_remove_out_of_range(self):
        d = nested_diagram()
        with pytest.raises(ModelIndexError):
            d.remove_statement(3)

    def test_move_within_container(self):
        d = nested_diagram()
        d.move_statement(2, 0)
        assert d.statements[0].text == "last"
        assert d.statements[1].text == "first"

    def test_move_within_container_bounds(self):
        d = nested_diagram()
        with pytest.raises(ModelIndexError):
            d.move_statement(0, 3)

    def test_move_across_containers(self):
        d = nested_diagram()
        d.move_statement(0, 1, to_parent=(1, 0))
        assert d.statements[0].branches[0].statements[1].text == "first"
        assert len(d.statements) == 2

    def test_move_to_end_of_other_container(self):
        d = nested_diagram()
        d.move_statement(0, 3, parent=(1, 0), to_parent=())
        assert [s.kind for s in d.statements] == ["message", "alt", "message", "message"]
        assert d.statements[3].text == "inside ok"
        assert d.statements[1].branches[0].statements == []

    def test_block_cannot_move_into_itself(self):
        d = nested_diagram()
        with pytest.raises(OwnershipError):
            d.move_statement(1, 0, to_parent=(1, 1))
        with pytest.raises(OwnershipError):
            d.move_statement(1, 0, to_parent=(1, 1, 0, 0))
        assert isinstance(d.statements[1], Alt)

    def test_walk_is_pre_order(self):
        d = nested_diagram()
        kinds = [(index, depth, stmt.kind) for index, depth, stmt in d.walk()]
        assert kinds == [
            (0, 0, "message"),
            (1, 0, "alt"),
            (2, 1, "message"),
            (3, 1, "loop"),
            (4, 2, "message"),
            (5, 0, "message"),
        ]

    def test_block_bodies_of_critical(self):
        critical = Critical(label="c", options=[Branch(label="o1"), Branch(label="o2")])
        bodies = block_bodies(critical)
        assert len(bodies) == 3
        assert bodies[0] is critical.statements


# ============================================================================
# Notes and config
# ============================================================================


class TestNotes:
    @pytest.mark.parametrize(
        "position,participants",
        [
            ("left", []),
            ("left", ["A", "B"]),
            ("right", []),
            ("over", []),
            ("over", ["A", "B", "C"]),
            ("over", [""]),
        ],
    )
    def test_invalid_cardinality(self, position, participants):
        with pytest.raises(NoteCardinalityError):
            Note(position=position, participants=participants, text="x")

    @pytest.mark.parametrize(
        "position,participants",
        [("left", ["A"]), ("right", ["A"]), ("over", ["A"]), ("over", ["A", "B"])],
    )
    def test_valid_cardinality(self, position, participants):
        note = Note(position=position, participants=participants)
        assert note.participants == participants


class TestConfig:
    def test_flags(self):
        d = SequenceDiagram()
        d.set_autonumber(True)
        d.set_mirror_actors(True)
        assert d.config.autonumber and d.config.mirror_actors
        d.set_autonumber(False)
        assert d.config.autonumber is False

    def test_structural_equality(self):
        assert nested_diagram() == nested_diagram()
        changed = nested_diagram()
        changed.set_autonumber(True)
        assert changed != nested_diagram()


# ============================================================================
# Ids and change notification
# ============================================================================


class Recorder:
    def __init__(self) -> None:
        self.calls = 0

    def on_diagram_changed(self) -> None:
        self.calls += 1


class TestGenerateId:
    def test_first_id(self):
        assert SequenceDiagram().generate_id("part") == "part-01"

    def test_continues_after_highest(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="part-02"))
        d.add_participant(Participant(id="part-x"))
        d.add_participant(Participant(id="other-09"))
        assert d.generate_id("part") == "part-03"

    def test_prefix_is_literal(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="a.b-05"))
        d.add_participant(Participant(id="axb-07"))
        assert d.generate_id("a.b") == "a.b-06"


class TestChangeNotification:
    def test_each_mutator_notifies_once(self):
        d = SequenceDiagram()
        observer = Recorder()
        d.add_observer(observer)

        d.add_participant(Participant(id="A"))
        d.add_participant(Participant(id="B"))
        d.update_participant("A", label="Alice")
        d.rename_participant("B", "Bob")
        d.move_participant(0, 1)
        box = d.add_box(Box())
        d.assign_box("A", box.id)
        d.update_box(box.id, color="Aqua")
        d.add_statement(msg("A", "Bob"))
        d.update_statement(0, msg("Bob", "A"))
        d.add_statement(msg())
        d.move_statement(0, 1)
        d.remove_statement(0)
        d.set_autonumber(True)
        d.set_mirror_actors(True)
        d.remove_box(box.id)
        d.remove_participant("A")
        assert observer.calls == 17

    def test_failed_or_noop_edits_do_not_notify(self):
        d = SequenceDiagram()
        d.add_participant(Participant(id="A"))
        observer = Recorder()
        d.add_observer(observer)
        d.rename_participant("A", "A")
        with pytest.raises(UnknownParticipantError):
            d.update_participant("missing", label="x")
        with pytest.raises(UnknownBoxError):
            d.remove_box("missing")
        assert observer.calls == 0

    def test_observer_is_added_once_and_removed(self):
        d = SequenceDiagram()
        observer = Recorder()
        d.add_observer(observer)
        d.add_observer(observer)
        d.set_autonumber(True)
        assert observer.calls == 1
        d.remove_observer(observer)
        d.set_autonumber(False)
        assert observer.calls == 1

    def test_on_change_returns_unsubscribe(self):
        d = SequenceDiagram()
        calls: list[str] = []
        unsubscribe = d.on_change(lambda: calls.append("changed"))
        d.add_participant(Participant(id="A"))
        unsubscribe()
        d.add_participant(Participant(id="B"))
        assert calls == ["changed"]

    def test_observers_run_before_listeners(self):
        d = SequenceDiagram()
        order: list[str] = []

        class First:
            def on_diagram_changed(self) -> None:
                order.append("observer")

        d.on_change(lambda: order.append("listener"))
        d.add_observer(First())
        d.set_autonumber(True)
        assert order == ["observer", "listener"]

    def test_batch_notifies_once(self):
        d = SequenceDiagram()
        observer = Recorder()
        d.add_observer(observer)
        with d.batch_changes() as batch:
            assert batch is d
            batch.add_participant(Participant(id="A"))
            batch.add_participant(Participant(id="B"))
            with batch.batch_changes():
                batch.add_statement(msg())
            assert observer.calls == 0
        assert observer.calls == 1

    def test_batch_notifies_when_body_raises(self):
        d = SequenceDiagram()
        observer = Recorder()
        d.add_observer(observer)
        with pytest.raises(DuplicateParticipantError):
            with d.batch_changes():
                d.add_participant(Participant(id="A"))
                d.add_participant(Participant(id="A"))
        assert observer.calls == 1
        d.set_autonumber(True)
        assert observer.calls == 2

    def test_notification_state_is_not_compared(self):
        d = nested_diagram()
        d.add_observer(Recorder())
        d.on_change(lambda: None)
        assert d == nested_diagram()
