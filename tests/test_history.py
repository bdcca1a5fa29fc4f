"""Tests for the conversation history index (HistoryStore and its printers)."""

import json

import pytest

from gpt5cli import fmt
from gpt5cli.context import ConversationContext
from gpt5cli.errors import AgentError, HistoryCorruptionError, ValidationError
from gpt5cli.history import (
    HistoryEntry,
    HistoryStore,
    apply_compaction,
    cli_entry_filter,
    format_turns_for_summary,
    print_history_list,
)


@pytest.fixture(autouse=True)
def _init_fmt():
    fmt.init(color=False, no_color=False)


def _store(tmp_path, **kwargs):
    return HistoryStore(tmp_path / "hist" / "history_index.json", **kwargs)


def _write(store, raw):
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text(json.dumps(raw), encoding="utf-8")


def _ctx(**overrides):
    values = dict(
        is_new_conversation=True,
        previous_response_id=None,
        previous_title=None,
        title_to_use="hello",
    )
    values.update(overrides)
    return ConversationContext(**values)


def _upsert(store, ctx, response_id, user="q", assistant="a", **kwargs):
    return store.upsert_conversation(
        model="gpt-5",
        effort="low",
        verbosity="low",
        context=ctx,
        response_id=response_id,
        user_text=user,
        assistant_text=assistant,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Loading and saving
# ---------------------------------------------------------------------------


class TestLoadSave:
    def test_missing_file_is_created_empty(self, tmp_path):
        store = _store(tmp_path)
        assert store.load_entries() == []
        assert json.loads(store.path.read_text()) == []

    def test_save_then_load_is_a_fixed_point(self, tmp_path):
        store = _store(tmp_path)
        _write(
            store,
            [
                {
                    "title": "t",
                    "last_response_id": "r1",
                    "request_count": 2,
                    "context": {"cli": "d2", "custom": [1, 2]},
                }
            ],
        )
        first = store.load_entries()
        store.save_entries(first)
        text = store.path.read_text()
        store.save_entries(store.load_entries())
        assert store.path.read_text() == text
        assert json.loads(text)[0]["context"] == {"cli": "d2", "custom": [1, 2]}

    def test_written_with_two_space_indent(self, tmp_path):
        store = _store(tmp_path)
        store.save_entries([HistoryEntry(title="t", last_response_id="r")])
        text = store.path.read_text()
        assert text.endswith("\n")
        assert '\n  {\n    "title": "t"' in text

    def test_digit_string_request_count_coerced(self, tmp_path):
        store = _store(tmp_path)
        _write(store, [{"last_response_id": "r", "request_count": "3"}])
        assert store.load_entries()[0].request_count == 3

    def test_negative_request_count_rejected(self, tmp_path):
        store = _store(tmp_path)
        _write(store, [{"last_response_id": "r", "request_count": -1}])
        with pytest.raises(HistoryCorruptionError):
            store.load_entries()

    @pytest.mark.parametrize("value", [True, False])
    def test_bool_request_count_rejected(self, tmp_path, value):
        store = _store(tmp_path)
        _write(store, [{"title": "t", "last_response_id": "r", "request_count": value}])
        before = store.path.read_text()
        with pytest.raises(HistoryCorruptionError, match="request_count"):
            store.load_entries()
        assert store.path.read_text() == before

    @pytest.mark.parametrize(
        "entry",
        [
            {"title": None, "last_response_id": "r"},
            {"last_response_id": "r", "resume": {"mode": None}},
            {"last_response_id": "r", "turns": [{"role": "user", "text": None}]},
        ],
    )
    def test_null_fields_rejected(self, tmp_path, entry):
        store = _store(tmp_path)
        _write(store, [entry])
        with pytest.raises(HistoryCorruptionError, match="must not be null"):
            store.load_entries()

    def test_null_context_allowed(self, tmp_path):
        store = _store(tmp_path)
        _write(store, [{"last_response_id": "r", "context": None}])
        assert store.load_entries()[0].context is None

    def test_corrupt_file_raises_and_is_untouched(self, tmp_path):
        store = _store(tmp_path)
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json", encoding="utf-8")
        with pytest.raises(HistoryCorruptionError, match="failed to parse history index"):
            store.load_entries()
        assert store.path.read_text() == "{not json"

    def test_non_array_root_is_corrupt(self, tmp_path):
        store = _store(tmp_path)
        _write(store, {"title": "x"})
        with pytest.raises(HistoryCorruptionError):
            store.load_entries()

    def test_context_validator_rejects(self, tmp_path):
        def validator(value):
            if not isinstance(value, dict):
                raise TypeError("context must be an object")
            return value

        store = _store(tmp_path, context_validator=validator)
        _write(store, [{"last_response_id": "r", "context": "oops"}])
        with pytest.raises(HistoryCorruptionError, match="context must be an object"):
            store.load_entries()


# ---------------------------------------------------------------------------
# Filtered view and indexing
# ---------------------------------------------------------------------------


class TestFilteredView:
    def _seed(self, store):
        _write(
            store,
            [
                {"title": "old", "updated_at": "2025-01-01T00:00:00.000Z", "last_response_id": "a"},
                {
                    "title": "d2 one",
                    "updated_at": "2025-03-01T00:00:00.000Z",
                    "last_response_id": "b",
                    "context": {"cli": "d2"},
                },
                {
                    "title": "new ask",
                    "updated_at": "2025-02-01T00:00:00.000Z",
                    "last_response_id": "c",
                    "context": {"cli": "ask"},
                },
            ],
        )

    def test_newest_first(self, tmp_path):
        store = _store(tmp_path)
        self._seed(store)
        assert [e.title for e in store.get_filtered_entries()] == ["d2 one", "new ask", "old"]

    def test_cli_filter_keeps_untagged(self, tmp_path):
        store = _store(tmp_path, entry_filter=cli_entry_filter("ask"))
        self._seed(store)
        assert [e.title for e in store.get_filtered_entries()] == ["new ask", "old"]

    def test_select_by_number(self, tmp_path):
        store = _store(tmp_path, entry_filter=cli_entry_filter("ask"))
        self._seed(store)
        assert store.select_by_number(2).title == "old"

    @pytest.mark.parametrize("index", [0, 3, -1])
    def test_out_of_range(self, tmp_path, index):
        store = _store(tmp_path, entry_filter=cli_entry_filter("ask"))
        self._seed(store)
        with pytest.raises(ValidationError, match=rf"invalid history number \(1-2\): {index}"):
            store.select_by_number(index)

    def test_empty_view_bounds(self, tmp_path):
        store = _store(tmp_path)
        with pytest.raises(ValidationError, match=r"\(1-0\)"):
            store.select_by_number(1)

    def test_filter_failure_is_reported(self, tmp_path):
        def broken(entry):
            raise RuntimeError("boom")

        store = _store(tmp_path, entry_filter=broken)
        self._seed(store)
        with pytest.raises(AgentError, match="history filter failed"):
            store.get_filtered_entries()

    def test_delete_uses_filtered_index(self, tmp_path):
        store = _store(tmp_path, entry_filter=cli_entry_filter("ask"))
        self._seed(store)
        title, removed = store.delete_by_number(1)
        assert (title, removed) == ("new ask", "c")
        remaining = [e.last_response_id for e in store.load_entries()]
        assert remaining == ["a", "b"]

    def test_delete_without_id(self, tmp_path):
        store = _store(tmp_path)
        _write(store, [{"title": "no id"}])
        with pytest.raises(ValidationError, match="no last_response_id"):
            store.delete_by_number(1)


# ---------------------------------------------------------------------------
# upsert_conversation
# ---------------------------------------------------------------------------


class TestUpsertConversation:
    def test_first_request_creates_entry(self, tmp_path):
        store = _store(tmp_path)
        _upsert(store, _ctx(), "resp_1", user="hello", assistant="hi")
        [entry] = store.load_entries()
        assert entry.request_count == 1
        assert [t.role for t in entry.turns] == ["user", "assistant"]
        assert entry.turns[1].response_id == "resp_1"
        assert entry.first_response_id == entry.last_response_id == "resp_1"
        assert entry.resume.mode == "response_id"
        assert entry.resume.previous_response_id == "resp_1"
        assert entry.title == "hello"
        assert entry.created_at.endswith("Z")

    def test_continuation_updates_in_place(self, tmp_path):
        store = _store(tmp_path)
        _upsert(store, _ctx(), "resp_1")
        ctx = _ctx(is_new_conversation=False, previous_response_id="resp_1")
        _upsert(store, ctx, "resp_2", user="q2", assistant="a2")
        [entry] = store.load_entries()
        assert entry.request_count == 2
        assert len(entry.turns) == 4
        assert entry.first_response_id == "resp_1"
        assert entry.last_response_id == "resp_2"
        assert entry.resume.previous_response_id == "resp_2"

    def test_active_entry_id_is_fallback_target(self, tmp_path):
        store = _store(tmp_path)
        _upsert(store, _ctx(), "resp_1")
        ctx = _ctx(is_new_conversation=False, active_last_response_id="resp_1")
        _upsert(store, ctx, "resp_2")
        assert len(store.load_entries()) == 1

    def test_unmatched_target_appends(self, tmp_path):
        store = _store(tmp_path)
        _upsert(store, _ctx(), "resp_1")
        ctx = _ctx(is_new_conversation=False, previous_response_id="gone")
        _upsert(store, ctx, "resp_2")
        entries = store.load_entries()
        assert len(entries) == 2
        assert entries[1].request_count == 1

    def test_summary_recorded_with_timestamp(self, tmp_path):
        store = _store(tmp_path)
        ctx = _ctx(resume_summary_text="earlier talk")
        entry = _upsert(store, ctx, "resp_1")
        assert entry.resume.summary.text == "earlier talk"
        assert entry.resume.summary.created_at

    def test_summary_keeps_previous_created_at(self, tmp_path):
        store = _store(tmp_path)
        _write(
            store,
            [
                {
                    "last_response_id": "resp_1",
                    "created_at": "2025-01-01T00:00:00.000Z",
                    "resume": {
                        "mode": "new_request",
                        "summary": {"text": "s", "created_at": "2025-01-02T00:00:00.000Z"},
                    },
                }
            ],
        )
        ctx = _ctx(
            is_new_conversation=False,
            active_last_response_id="resp_1",
            resume_summary_text="s",
        )
        entry = _upsert(store, ctx, "resp_2")
        assert entry.resume.summary.created_at == "2025-01-02T00:00:00.000Z"
        assert entry.resume.mode == "response_id"

    def test_summary_dropped_without_text(self, tmp_path):
        store = _store(tmp_path)
        _write(
            store,
            [{"last_response_id": "r1", "resume": {"summary": {"text": "old"}}}],
        )
        ctx = _ctx(is_new_conversation=False, previous_response_id="r1")
        entry = _upsert(store, ctx, "r2")
        assert entry.resume.summary is None

    def test_context_precedence(self, tmp_path):
        store = _store(tmp_path)
        _write(store, [{"last_response_id": "r1", "context": {"cli": "d2", "x": 1}}])
        ctx = _ctx(
            is_new_conversation=False,
            previous_response_id="r1",
            previous_context={"cli": "d2", "x": 2},
        )
        assert _upsert(store, ctx, "r2").context == {"cli": "d2", "x": 2}
        ctx = _ctx(is_new_conversation=False, previous_response_id="r2")
        assert _upsert(store, ctx, "r3").context == {"cli": "d2", "x": 2}
        ctx = _ctx(is_new_conversation=False, previous_response_id="r3")
        assert _upsert(store, ctx, "r4", context_data={"cli": "d2"}).context == {"cli": "d2"}


# ---------------------------------------------------------------------------
# Compaction helpers
# ---------------------------------------------------------------------------


class TestCompaction:
    def test_format_turns(self):
        entry = HistoryEntry.model_validate(
            {
                "turns": [
                    {"role": "system", "kind": "summary", "text": "before"},
                    {"role": "user", "text": "q"},
                    {"role": "assistant", "text": "  "},
                    {"role": "assistant", "text": "a"},
                ]
            }
        )
        assert format_turns_for_summary(entry.turns) == (
            "summary:\nbefore\n\n---\n\nuser:\nq\n\n---\n\nassistant:\na"
        )

    def test_apply_compaction(self):
        entry = HistoryEntry.model_validate(
            {"last_response_id": "r", "turns": [{"role": "user", "text": "q"}]}
        )
        compacted = apply_compaction(entry, "short")
        assert [t.model_dump(exclude_none=True, exclude={"at"}) for t in compacted.turns] == [
            {"role": "system", "kind": "summary", "text": "short"}
        ]
        assert compacted.resume.mode == "new_request"
        assert compacted.resume.previous_response_id == ""
        assert compacted.resume.summary.text == "short"
        assert compacted.last_response_id == "r"


# ---------------------------------------------------------------------------
# Printers
# ---------------------------------------------------------------------------


class TestPrinters:
    def test_empty_list(self, tmp_path, capsys):
        print_history_list(_store(tmp_path))
        assert "(no history)" in capsys.readouterr().out

    def test_list_line_format(self, tmp_path, capsys):
        store = _store(tmp_path)
        _write(
            store,
            [
                {
                    "title": "draw it",
                    "model": "gpt-5",
                    "effort": "low",
                    "verbosity": "medium",
                    "request_count": 3,
                    "updated_at": "2025-01-01T00:00:00.000Z",
                    "last_response_id": "r",
                    "context": {"cli": "d2", "relative_path": "a.d2", "copy": True},
                }
            ],
        )
        print_history_list(store)
        out = capsys.readouterr().out
        assert (
            " 1) draw it [gpt-5/low/medium 3req] 2025-01-01T00:00:00.000Z "
            "paths[relative=a.d2, copy]"
        ) in out

    def test_show_prints_turns(self, tmp_path, capsys):
        store = _store(tmp_path)
        _write(
            store,
            [
                {
                    "title": "t",
                    "last_response_id": "r",
                    "turns": [
                        {"role": "user", "text": "question here"},
                        {"role": "assistant", "text": "answer here"},
                    ],
                }
            ],
        )
        store.show_by_number(1)
        out = capsys.readouterr().out
        assert "History #1: t" in out
        assert out.index("question here") < out.index("answer here")
