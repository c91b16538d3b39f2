"""
Tests for aicf.types — record construction, validation and Document helpers.
"""

import pytest

from aicf.types import (
    FORMAT_VERSION,
    CANONICAL_ORDER,
    Conversation,
    Decision,
    Document,
    Insight,
    Link,
    Memory,
    Metadata,
    OpaqueSection,
    SectionKind,
    Session,
    State,
    Work,
)


# ---------------------------------------------------------------------------
# SectionKind
# ---------------------------------------------------------------------------


class TestSectionKind:
    def test_canonical_order(self):
        assert [k.value for k in CANONICAL_ORDER] == [
            "METADATA", "SESSION", "CONVERSATION", "MEMORY", "STATE",
            "INSIGHTS", "DECISIONS", "WORK", "LINKS",
        ]

    def test_from_header_known(self):
        assert SectionKind.from_header("STATE") is SectionKind.STATE

    def test_from_header_alias(self):
        assert SectionKind.from_header("CONVERSATIONS") is SectionKind.CONVERSATION
        assert SectionKind.from_header("DECISION") is SectionKind.DECISIONS

    def test_from_header_unknown(self):
        assert SectionKind.from_header("EMBEDDINGS") is SectionKind.UNKNOWN

    def test_key_value_kinds(self):
        assert SectionKind.METADATA.is_key_value
        assert SectionKind.SESSION.is_key_value
        assert not SectionKind.CONVERSATION.is_key_value


# ---------------------------------------------------------------------------
# Record validation
# ---------------------------------------------------------------------------


class TestRecords:
    def test_conversation_defaults(self):
        c = Conversation(content="hi")
        assert c.id.startswith("C-")
        assert c.role == "user"
        assert c.timestamp

    def test_conversation_invalid_role(self):
        with pytest.raises(ValueError, match="role"):
            Conversation(role="robot")

    def test_memory_invalid_type(self):
        with pytest.raises(ValueError):
            Memory(type="dream")

    def test_memory_blank_importance_is_none(self):
        assert Memory(importance="").importance is None

    def test_state_requires_key(self):
        with pytest.raises(ValueError, match="key"):
            State(scope="user", key="", value="x")

    def test_state_invalid_scope(self):
        with pytest.raises(ValueError):
            State(scope="global", key="k", value="v")

    def test_state_negative_ttl(self):
        with pytest.raises(ValueError):
            State(key="k", value="v", ttl=-1)

    def test_state_scoped_key(self):
        assert State(scope="user", key="lang", value="en").scoped_key == "user:lang"

    def test_insight_confidence_range(self):
        with pytest.raises(ValueError, match="Confidence"):
            Insight(content="x", category="c", confidence=1.5)

    def test_insight_confidence_coerced(self):
        assert Insight(content="x", category="c", confidence="0.25").confidence == 0.25

    def test_decision_invalid_impact(self):
        with pytest.raises(ValueError):
            Decision(decision="d", rationale="r", impact="huge")

    def test_work_invalid_status(self):
        with pytest.raises(ValueError):
            Work(status="done")

    def test_link_free_text_type(self):
        assert Link(type="custom_relation", source="a", target="b").type == "custom_relation"

    def test_link_empty_type_rejected(self):
        with pytest.raises(ValueError):
            Link(type="", source="a", target="b")

    def test_session_counters_non_negative(self):
        with pytest.raises(ValueError):
            Session(event_count=-1)

    def test_session_invalid_status(self):
        with pytest.raises(ValueError):
            Session(status="paused")

    def test_session_extra_reserved_key(self):
        with pytest.raises(ValueError, match="Reserved"):
            Session(extra={"status": "x"})

    def test_metadata_invalid_extra_key(self):
        with pytest.raises(ValueError, match="Invalid key"):
            Metadata(extra={"bad key": "x"})

    def test_metadata_defaults(self):
        m = Metadata()
        assert m.format_version == FORMAT_VERSION
        assert m.get("created_at") == m.created_at
        assert m.get("missing", "d") == "d"


class TestWireFields:
    def test_from_wire_arity_too_low(self):
        with pytest.raises(ValueError, match="expected 4..4"):
            Conversation.from_wire(["id", "ts", "user"])

    def test_from_wire_arity_too_high(self):
        with pytest.raises(ValueError):
            Work.from_wire(["W-1", "completed", "desc", "extra"])

    def test_from_wire_optional_fields(self):
        st = State.from_wire(["user", "lang", "en", "string", "3600"])
        assert st.value_type == "string"
        assert st.ttl == 3600

    def test_from_wire_blank_optional(self):
        st = State.from_wire(["user", "lang", "en", "", ""])
        assert st.value_type is None
        assert st.ttl is None

    def test_wire_values_float_repr(self):
        ins = Insight(content="x", category="c", confidence=0.1)
        assert ins.wire_values()[3] == "0.1"


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


class TestDocument:
    def test_empty(self):
        assert Document().is_empty()

    def test_add_dispatches_by_kind(self):
        doc = Document()
        doc.add(Metadata())
        doc.add(Session(session_id="s1"))
        doc.add(Conversation(content="hi"))
        doc.add(Work(id="W-1"))
        doc.add(OpaqueSection(name="EMBEDDINGS"))
        assert doc.metadata is not None
        assert len(doc.sessions) == 1
        assert len(doc.conversations) == 1
        assert len(doc.work) == 1
        assert len(doc.unknown) == 1
        assert not doc.is_empty()

    def test_add_rejects_foreign_objects(self):
        with pytest.raises(TypeError):
            Document().add("not a record")

    def test_state_last_write_wins(self):
        doc = Document()
        doc.add(State(scope="user", key="lang", value="en"))
        doc.add(State(scope="app", key="lang", value="fr"))
        doc.add(State(scope="user", key="lang", value="de"))
        assert doc.get_state("user", "lang") == "de"
        assert doc.get_state("user:lang") == "de"
        assert doc.get_state("app:lang") == "fr"
        assert doc.get_state("user:missing", default="x") == "x"

    def test_state_for_scope(self):
        doc = Document()
        doc.add(State(scope="user", key="a", value="1"))
        doc.add(State(scope="user", key="b", value="2"))
        doc.add(State(scope="user", key="a", value="3"))
        assert doc.state_for_scope("user") == {"a": "3", "b": "2"}

    def test_current_session_is_last(self):
        doc = Document()
        assert doc.current_session is None
        doc.add(Session(session_id="s1"))
        doc.add(Session(session_id="s1", status="completed"))
        assert doc.current_session.status == "completed"

    def test_counts(self):
        doc = Document()
        doc.add(Conversation(content="a"))
        doc.add(Conversation(content="b"))
        counts = doc.counts()
        assert counts["conversations"] == 2
        assert counts["links"] == 0

    def test_last_conversations(self):
        doc = Document()
        for i in range(1, 8):
            doc.add(Conversation(id=f"C-{i}", content=str(i)))
        assert [c.id for c in doc.last_conversations()] == ["C-3", "C-4", "C-5", "C-6", "C-7"]
        assert [c.id for c in doc.last_conversations(2)] == ["C-6", "C-7"]
        assert len(doc.last_conversations(50)) == 7
        assert doc.last_conversations(0) == []

    def test_current_work_is_latest_per_id(self):
        doc = Document()
        doc.add(Work(id="W-1", status="in_progress", description="parser"))
        doc.add(Work(id="W-2", status="not_started"))
        doc.add(Work(id="W-1", status="completed"))
        current = doc.current_work()
        assert list(current) == ["W-1", "W-2"]
        assert current["W-1"].status == "completed"
        assert current["W-2"].status == "not_started"

    def test_stats(self):
        doc = Document()
        doc.add(Metadata(created_at="t0", updated_at="t1", extra={"project_name": "demo"}))
        doc.add(Session(session_id="s1", status="completed"))
        doc.add(Conversation(content="a"))
        stats = doc.stats()
        assert stats["project_name"] == "demo"
        assert stats["last_update"] == "t1"
        assert stats["format_version"] == "3.1.1"
        assert stats["status"] == "completed"
        assert stats["counts"]["conversations"] == 1

    def test_stats_without_metadata(self):
        stats = Document().stats()
        assert stats["project_name"] == "Unknown"
        assert stats["last_update"] is None
        assert stats["status"] is None

    def test_stats_falls_back_to_created_at(self):
        doc = Document(metadata=Metadata(created_at="t0"))
        assert doc.stats()["last_update"] == "t0"


class TestOpaqueSection:
    def test_valid(self):
        opaque = OpaqueSection(name="EMBEDDINGS", identifier="v2", lines=["vec|0.1", " raw=line"])
        assert opaque.lines == ["vec|0.1", " raw=line"]

    @pytest.mark.parametrize("name", ["extra", "Extra", "1X", "", "A-B", "CONVERSATION", "MEMORIES", "WORK"])
    def test_name_must_be_unknown_header_name(self, name):
        with pytest.raises(ValueError):
            OpaqueSection(name=name)

    def test_identifier_grammar(self):
        with pytest.raises(ValueError, match="identifier"):
            OpaqueSection(name="EXTRA", identifier="a b")

    @pytest.mark.parametrize("line", [
        "x\n@WORK:\nW-9|completed",
        "trailing\r",
        "",
        "   ",
        "@WORK:",
        "  @CONVERSATION",
    ])
    def test_line_rejected(self, line):
        with pytest.raises(ValueError):
            OpaqueSection(name="EXTRA", lines=[line])

    def test_check_after_mutation(self):
        opaque = OpaqueSection(name="EXTRA", lines=["ok"])
        opaque.lines.append("@LINKS:")
        with pytest.raises(ValueError, match="header"):
            opaque.check()
