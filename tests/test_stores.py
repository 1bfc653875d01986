from __future__ import annotations

from termpilot.agent.stores import MAX_OUTPUT_ENTRIES, MemoryStore, OutputBuffer


def test_memory_store_save_recall_list() -> None:
    store = MemoryStore()
    store.save("port", "8080")
    store.save("db", "sqlite")
    store.save("port", "9090")

    assert store.recall("port") == "9090"
    assert store.recall("missing") is None
    assert store.list() == ["db", "port"]

    store.clear()
    assert store.list() == []


def test_output_buffer_search_is_case_insensitive_with_context() -> None:
    buffer = OutputBuffer()
    buffer.store("a\nb\nKeyError: 'x'\nc\nd", "pytest")

    matches = buffer.search("keyerror", context_lines=1)

    assert len(matches) == 1
    assert matches[0].command == "pytest"
    assert matches[0].line_number == 3
    assert matches[0].context == "b\nKeyError: 'x'\nc"


def test_output_buffer_keeps_latest_entries_only() -> None:
    buffer = OutputBuffer()
    for index in range(MAX_OUTPUT_ENTRIES + 5):
        buffer.store(f"output {index}", f"cmd {index}")

    assert len(buffer) == MAX_OUTPUT_ENTRIES
    assert buffer.full_output("cmd 0") is None
    assert buffer.full_output(f"cmd {MAX_OUTPUT_ENTRIES + 4}") == f"output {MAX_OUTPUT_ENTRIES + 4}"


def test_output_buffer_evicts_oldest_over_char_limit() -> None:
    buffer = OutputBuffer(max_total_chars=10)
    buffer.store("12345", "first")
    buffer.store("67890", "second")
    buffer.store("abc", "third")

    assert buffer.full_output("first") is None
    assert buffer.full_output("second") == "67890"
    assert buffer.search("nothing") == []
