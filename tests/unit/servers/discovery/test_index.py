"""Unit tests for the BM25 tool index."""

import asyncio
import math
import threading

import pytest
from mcp.types import Tool

from mcp_toolbox.servers.discovery.catalog import normalize_tool
from mcp_toolbox.servers.discovery.index import BM25Index
from mcp_toolbox.servers.discovery.types import CatalogEntry, ToolIdentifier


def _entry(id_string: str, text: str, description: str = "") -> CatalogEntry:
    """Build an entry whose searchable text is exactly ``text``."""
    origin, _, name = id_string.partition("_")
    return CatalogEntry(
        id=ToolIdentifier(origin=origin, name=name),
        id_string=id_string,
        description=description,
        input_schema={"type": "object", "properties": {}},
        searchable_text=text,
    )


def _tool(origin: str, name: str, description: str, **properties) -> CatalogEntry:
    return normalize_tool(
        origin,
        Tool(
            name=name,
            description=description,
            inputSchema={
                "type": "object",
                "properties": {
                    arg: {"type": "string", "description": desc}
                    for arg, desc in properties.items()
                },
            },
        ),
    )


@pytest.fixture
def basic_tools():
    return [
        _tool(
            "time",
            "get_current_time",
            "Get current time in a specific timezone",
            timezone="IANA timezone name",
        ),
        _tool("calculator", "add", "Add two numbers"),
        _tool("search", "web_search", "Search the web for information"),
    ]


@pytest.fixture
def catalog():
    """A larger catalog used for chunking and determinism checks."""
    entries = [
        _tool("gmail", "send_email", "Send an email message via Gmail", to="Recipient"),
        _tool("gmail", "read_inbox", "Read recent email from the inbox"),
        _tool("outlook", "send_mail", "Send a mail message with Outlook"),
        _tool("github", "create_pr", "Create a pull request"),
        _tool("github", "list_issues", "List issues in a repository"),
        _tool("gitlab", "create_mr", "Create a merge request"),
        _tool("weather", "get_weather", "Get current weather for a location"),
        _tool("weather", "get_forecast", "Get the weather forecast", days="Optional"),
        _tool("time", "get_current_time", "Get current time", timezone="Timezone"),
        _tool("time", "convert_time", "Convert time between timezones"),
        _tool("files", "read_file", "Read a file from disk", path="File path"),
        _tool("files", "write_file", "Write a file to disk", path="File path"),
    ]
    return entries


class TestBM25IndexBuild:
    """Tests for full rebuilds."""

    def test_index_tools_counts(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)
        assert index.size == 3
        assert len(index) == 3

    def test_index_tools_replaces_previous_contents(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)
        index.index_tools(basic_tools[:1])

        assert index.size == 1
        assert "calculator_add" not in index
        assert index.document_frequency("numbers") == 0

    def test_aggregates(self):
        index = BM25Index()
        index.index_tools([_entry("a_x", "one two three"), _entry("b_y", "four")])

        assert index.total_tokens == 4
        assert index.average_document_length == 2.0

    def test_document_frequencies_count_documents_not_occurrences(self):
        index = BM25Index()
        index.index_tools(
            [_entry("a_x", "time time time"), _entry("b_y", "time zone")]
        )
        freqs = index.document_frequencies()
        assert freqs == {"time": 2, "zone": 1}

    def test_clear(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)
        index.clear()

        assert index.size == 0
        assert index.total_tokens == 0
        assert index.average_document_length == 0.0
        assert index.document_frequencies() == {}

    def test_default_parameters(self):
        index = BM25Index()
        assert index.k1 == 1.2
        assert index.b == 0.75


class TestBM25IndexSearch:
    """Tests for ranking."""

    def test_basic_ranking(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)

        results = index.search("current time timezone", 5)

        assert results[0].id_string == "time_get_current_time"
        assert results[0].score > 0
        assert "calculator_add" not in {r.id_string for r in results}

    def test_result_shape(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)

        result = index.search("timezone", 5)[0]
        assert result.tool == ToolIdentifier("time", "get_current_time")
        assert result.preview == "Get current time in a specific timezone"
        assert result.signature == "get_current_time(timezone)"

    def test_score_matches_formula(self):
        index = BM25Index()
        index.index_tools([_entry("a_x", "apple banana"), _entry("b_y", "cherry")])

        results = index.search("apple", 5)

        # N=2, df=1, avgdl=1.5, dl=2, tf=1
        idf = math.log((2 - 1 + 0.5) / (1 + 0.5) + 1)
        expected = idf * (1 * 2.2) / (1 + 1.2 * (1 - 0.75 + 0.75 * (2 / 1.5)))
        assert len(results) == 1
        assert results[0].score == pytest.approx(expected)

    def test_idf_stays_positive_for_common_terms(self):
        index = BM25Index()
        index.index_tools(
            [_entry("a_x", "common"), _entry("b_y", "common"), _entry("c_z", "common")]
        )
        results = index.search("common", 5)
        assert len(results) == 3
        assert all(r.score > 0 for r in results)

    def test_unknown_query_tokens_contribute_nothing(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)

        plain = index.search("timezone", 5)
        padded = index.search("timezone xyzzy", 5)
        assert [(r.id_string, r.score) for r in plain] == [
            (r.id_string, r.score) for r in padded
        ]

    def test_repeated_query_token_counts_twice(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)

        once = index.search("timezone", 5)[0].score
        twice = index.search("timezone timezone", 5)[0].score
        assert twice == pytest.approx(2 * once)

    def test_query_is_case_and_punctuation_insensitive(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)

        lower = index.search("web search", 5)
        noisy = index.search("WEB, Search!", 5)
        assert lower == noisy

    def test_no_matches(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)
        assert index.search("xyzzy nonmatching terms", 5) == []

    def test_empty_query(self, basic_tools):
        index = BM25Index()
        index.index_tools(basic_tools)
        assert index.search("", 5) == []
        assert index.search("  ?! ", 5) == []

    def test_empty_index(self):
        assert BM25Index().search("anything", 5) == []

    def test_limit(self, catalog):
        index = BM25Index()
        index.index_tools(catalog)

        results = index.search("send create", 2)
        assert len(results) == 2

    def test_more_matches_rank_higher(self, catalog):
        index = BM25Index()
        index.index_tools(catalog)

        results = index.search("send email", 5)
        assert results[0].id_string == "gmail_send_email"

    def test_tie_break_by_id(self):
        index = BM25Index()
        index.index_tools(
            [
                _entry("c_tool", "alpha beta gamma"),
                _entry("a_tool", "gamma alpha beta"),
                _entry("b_tool", "beta gamma alpha"),
            ]
        )

        results = index.search("alpha", 10)

        assert [r.id_string for r in results] == ["a_tool", "b_tool", "c_tool"]
        assert results[0].score == results[1].score == results[2].score

    def test_tie_break_ignores_insertion_order(self):
        entries = [
            _entry("z_last", "shared words here"),
            _entry("m_middle", "here shared words"),
            _entry("a_first", "words here shared"),
        ]
        forward = BM25Index()
        forward.index_tools(entries)
        backward = BM25Index()
        backward.index_tools(list(reversed(entries)))

        assert forward.search("shared", 10) == backward.search("shared", 10)

    def test_deterministic(self, catalog):
        index = BM25Index()
        index.index_tools(catalog)

        first = index.search("get file time", 10)
        for _ in range(5):
            assert index.search("get file time", 10) == first


class TestBM25IndexIncremental:
    """Tests for incremental add and remove."""

    def test_add_tool(self):
        index = BM25Index()
        index.add_tool(_entry("gmail_send_email", "send an email"))

        assert index.size == 1
        assert index.search("email", 5)[0].id_string == "gmail_send_email"

    def test_add_tool_skips_duplicates(self):
        index = BM25Index()
        entry = _entry("gmail_send_email", "send an email")
        index.add_tool(entry)
        before = (
            index.document_frequencies(),
            index.total_tokens,
            index.average_document_length,
        )

        index.add_tool(entry)

        assert index.size == 1
        assert (
            index.document_frequencies(),
            index.total_tokens,
            index.average_document_length,
        ) == before

    def test_duplicate_add_does_not_overwrite(self):
        index = BM25Index()
        original = _entry("gmail_send_email", "send an email", "original")
        index.add_tool(original)
        index.add_tool(_entry("gmail_send_email", "totally different", "replacement"))

        assert index.get_entry("gmail_send_email") is original
        assert index.search("different", 5) == []

    def test_add_then_remove_restores_state(self, catalog):
        index = BM25Index()
        index.index_tools(catalog)
        before = (
            index.document_frequencies(),
            index.size,
            index.total_tokens,
            index.average_document_length,
        )

        extra = _tool("slack", "post_message", "Post a message to a Slack channel")
        index.add_tool(extra)
        assert index.remove_tool(extra.id_string) is True

        assert (
            index.document_frequencies(),
            index.size,
            index.total_tokens,
            index.average_document_length,
        ) == before

    def test_remove_deletes_terms_at_zero(self):
        index = BM25Index()
        index.add_tools_batch(
            [_entry("a_x", "shared unique"), _entry("b_y", "shared other")]
        )

        index.remove_tool("a_x")

        freqs = index.document_frequencies()
        assert "unique" not in freqs
        assert freqs["shared"] == 1
        assert index.search("unique", 5) == []

    def test_remove_missing(self):
        index = BM25Index()
        assert index.remove_tool("nonexistent_tool") is False

    def test_remove_last_document(self):
        index = BM25Index()
        index.add_tool(_entry("a_x", "only one"))
        index.remove_tool("a_x")

        assert index.size == 0
        assert index.average_document_length == 0.0
        assert index.search("only", 5) == []

    def test_add_tools_batch_matches_single_adds(self, catalog):
        batch = BM25Index()
        batch.add_tools_batch(catalog)

        single = BM25Index()
        for entry in catalog:
            single.add_tool(entry)

        assert batch.document_frequencies() == single.document_frequencies()
        assert batch.total_tokens == single.total_tokens
        assert batch.average_document_length == single.average_document_length
        assert batch.search("get weather time", 10) == single.search(
            "get weather time", 10
        )

    def test_progressive_availability(self):
        index = BM25Index()
        tool_a = _entry("alpha_tool", "zebra stripes")
        tool_b = _entry("beta_tool", "giraffe neck")

        index.add_tools_batch([tool_a])
        assert [r.id_string for r in index.search("zebra", 5)] == ["alpha_tool"]

        index.add_tools_batch([tool_b])
        assert [r.id_string for r in index.search("zebra", 5)] == ["alpha_tool"]
        assert [r.id_string for r in index.search("giraffe", 5)] == ["beta_tool"]

    def test_get_all_entries(self, basic_tools):
        index = BM25Index()
        index.add_tools_batch(basic_tools)
        assert index.get_all_entries() == basic_tools


class TestBM25IndexAsync:
    """Tests for chunked asynchronous indexing."""

    @pytest.mark.anyio
    @pytest.mark.parametrize("chunk_size", [1, 5, None])
    async def test_chunk_size_does_not_change_results(self, catalog, chunk_size):
        reference = BM25Index()
        reference.add_tools_batch(catalog)

        index = BM25Index()
        await index.index_tools_async(catalog, chunk_size or len(catalog))

        assert list(index.document_frequencies().items()) == list(
            reference.document_frequencies().items()
        )
        assert index.total_tokens == reference.total_tokens
        assert index.average_document_length == reference.average_document_length
        for query in ("send email", "get current time", "file disk", "create"):
            assert index.search(query, 10) == reference.search(query, 10)

    @pytest.mark.anyio
    async def test_index_tools_async_clears_first(self, catalog, basic_tools):
        index = BM25Index()
        index.add_tools_batch(catalog)

        await index.index_tools_async(basic_tools, 2)

        assert index.size == 3
        assert "gmail_send_email" not in index

    @pytest.mark.anyio
    async def test_add_tools_async_skips_duplicates(self, catalog):
        index = BM25Index()
        index.add_tools_batch(catalog[:3])

        await index.add_tools_async(catalog, 4)

        assert index.size == len(catalog)

    @pytest.mark.anyio
    async def test_add_tools_async_empty(self):
        index = BM25Index()
        await index.add_tools_async([], 10)
        assert index.size == 0

    @pytest.mark.anyio
    async def test_invalid_chunk_size(self, catalog):
        with pytest.raises(ValueError, match="chunk_size"):
            await BM25Index().add_tools_async(catalog, 0)

    @pytest.mark.anyio
    async def test_search_between_chunks_sees_partial_index(self, catalog):
        """Tools become searchable chunk by chunk while indexing continues."""
        index = BM25Index()
        task = asyncio.create_task(index.add_tools_async(catalog, 1))

        # Let the task index its first chunk and yield
        await asyncio.sleep(0)
        partial_size = index.size
        assert 0 < partial_size < len(catalog)
        assert index.search("gmail email", 5)[0].id_string == "gmail_send_email"

        await task
        assert index.size == len(catalog)

    @pytest.mark.anyio
    async def test_rebuild_holds_lock_through_first_chunk(self, catalog):
        """No other thread can write between clearing and the first chunk."""
        index = BM25Index()
        index.add_tools_batch(catalog)
        lock_held: list[bool] = []
        add_batch = index.add_tools_batch

        def try_lock_from_other_thread():
            acquired = index._lock.acquire(blocking=False)
            if acquired:
                index._lock.release()
            lock_held.append(not acquired)

        def checking_add_batch(entries):
            thread = threading.Thread(target=try_lock_from_other_thread)
            thread.start()
            thread.join()
            add_batch(entries)

        index.add_tools_batch = checking_add_batch

        await index.index_tools_async(catalog[:4], 2)

        assert lock_held == [True, True]
        assert index.size == 4

    @pytest.mark.anyio
    async def test_rebuild_with_no_entries_clears(self, catalog):
        index = BM25Index()
        index.add_tools_batch(catalog)

        await index.index_tools_async([], 5)

        assert index.size == 0
        assert index.document_frequencies() == {}


class TestBM25IndexThreading:
    """Test that concurrent writers and readers keep the index consistent."""

    def test_concurrent_add_remove_and_search(self):
        writers = 4
        per_writer = 60
        entries = [
            [
                _entry(
                    f"w{w}_tool{i}",
                    f"writer{w} tool{i} shared term{i % 7} " + "pad " * (i % 5),
                )
                for i in range(per_writer)
            ]
            for w in range(writers)
        ]
        index = BM25Index()
        errors: list[BaseException] = []
        done = threading.Event()

        def write(batch):
            try:
                for entry in batch:
                    index.add_tool(entry)
                for entry in batch[::2]:
                    assert index.remove_tool(entry.id_string)
            except BaseException as e:
                errors.append(e)

        def read():
            try:
                while not done.is_set():
                    for result in index.search("shared term3 pad", 10):
                        assert result.score > 0
            except BaseException as e:
                errors.append(e)

        reader = threading.Thread(target=read)
        threads = [threading.Thread(target=write, args=(b,)) for b in entries]
        reader.start()
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        done.set()
        reader.join()

        assert errors == []

        kept = [entry for batch in entries for entry in batch[1::2]]
        fresh = BM25Index()
        fresh.add_tools_batch(kept)

        assert index.size == len(kept)
        assert index.document_frequencies() == fresh.document_frequencies()
        assert index.total_tokens == fresh.total_tokens
        assert index.average_document_length == pytest.approx(
            index.total_tokens / index.size
        )
        assert index.search("shared term3", 200) == fresh.search("shared term3", 200)
