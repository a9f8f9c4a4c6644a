"""Unit tests for entry presentation and search filtering helpers."""

import base64

import pytest
from pydantic import ValidationError

from dbx_mcp.client.files import (
    FOLDER_MIME_TYPE,
    DateRange,
    SearchOptions,
    entry_reference,
    file_reference,
    filter_search_matches,
    get_extension,
    get_file_category,
    get_mime_type,
    path_from_uri,
    resource_uri,
    summarize_entry,
)


def _match(name: str, size: int = 0, modified: str | None = None, tag: str = "file") -> dict:
    metadata = {".tag": tag, "name": name, "path_display": f"/docs/{name}", "size": size}
    if modified:
        metadata["server_modified"] = modified
    return {
        "match_type": {".tag": "filename"},
        "metadata": {".tag": "metadata", "metadata": metadata},
        "highlight_spans": [],
    }


@pytest.mark.unit
class TestMimeAndCategory:
    """Tests for extension, MIME and category helpers."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [("a.TXT", "txt"), ("archive.tar.gz", "gz"), ("README", ""), (None, "")],
    )
    def test_should_extract_extension(self, name, expected: str) -> None:
        """Verify lower-cased last extension."""
        assert get_extension(name) == expected

    def test_should_map_known_and_unknown_mime_types(self) -> None:
        """Verify known extensions map and others fall back to octet-stream."""
        assert get_mime_type("report.pdf") == "application/pdf"
        assert get_mime_type("notes.md") == "text/markdown"
        assert get_mime_type("blob.xyz") == "application/octet-stream"

    @pytest.mark.parametrize(
        ("metadata", "category"),
        [
            ({"name": "a.png"}, "image"),
            ({"name": "a.docx"}, "document"),
            ({"name": "a.pdf"}, "pdf"),
            ({"name": "a.csv"}, "spreadsheet"),
            ({"name": "a.pptx"}, "presentation"),
            ({"name": "a.mp3"}, "audio"),
            ({"name": "a.mov"}, "video"),
            ({"name": "photos", ".tag": "folder"}, "folder"),
            ({"name": "a.bin"}, "other"),
            ({}, "other"),
            (
                {"name": "scan", "media_info": {"metadata": {"mime_type": "image/heic"}}},
                "image",
            ),
        ],
    )
    def test_should_categorize_entries(self, metadata: dict, category: str) -> None:
        """Verify categories from extension and media info."""
        assert get_file_category(metadata) == category


@pytest.mark.unit
class TestResourceReferences:
    """Tests for dbx:// references."""

    def test_should_round_trip_resource_uri(self) -> None:
        """Verify resource_uri and path_from_uri are inverses."""
        assert resource_uri("/docs/a.txt") == "dbx:///docs/a.txt"
        assert path_from_uri("dbx:///docs/a.txt") == "/docs/a.txt"

    def test_should_reject_foreign_scheme(self) -> None:
        """Verify other schemes are rejected."""
        with pytest.raises(ValueError, match="Invalid resource URI"):
            path_from_uri("file:///etc/passwd")

    def test_should_summarize_file_and_folder_entries(self) -> None:
        """Verify folders report zero size and no timestamps."""
        file_entry = {
            ".tag": "file",
            "name": "a.txt",
            "path_display": "/a.txt",
            "size": 10,
            "server_modified": "2024-01-01T00:00:00Z",
            "client_modified": "2024-01-01T00:00:00Z",
            "id": "id:1",
        }
        folder_entry = {".tag": "folder", "name": "docs", "path_display": "/docs"}

        assert summarize_entry(file_entry)["size"] == 10
        assert "id" not in summarize_entry(file_entry)
        assert summarize_entry(folder_entry) == {
            ".tag": "folder",
            "name": "docs",
            "path_display": "/docs",
            "size": 0,
            "server_modified": None,
            "client_modified": None,
        }

    def test_should_build_collection_reference_for_folder(self) -> None:
        """Verify folder entries become empty collection references."""
        reference = entry_reference({".tag": "folder", "name": "sub", "path_display": "/docs/sub"})

        assert reference["type"] == "collection"
        assert reference["uri"] == "dbx:///docs/sub"
        assert reference["content"]["mimeType"] == FOLDER_MIME_TYPE
        assert reference["content"]["content"] == ""
        assert reference["content"]["metadata"]["size"] == 0

    def test_should_build_inline_reference_with_base64_content(self) -> None:
        """Verify file references carry base64 content and metadata."""
        metadata = {
            "name": "a.txt",
            "size": 5,
            "path_display": "/docs/a.txt",
            "server_modified": "2024-01-01T00:00:00Z",
        }

        reference = file_reference("/docs/a.txt", metadata, b"hello")

        content = reference["content"]
        assert reference["type"] == "inline"
        assert content["mimeType"] == "text/plain"
        assert content["encoding"] == "base64"
        assert base64.b64decode(content["content"]) == b"hello"
        assert content["metadata"] == {
            "size": 5,
            "path": "/docs/a.txt",
            "modified": "2024-01-01T00:00:00Z",
        }


@pytest.mark.unit
class TestSearchOptions:
    """Tests for SearchOptions."""

    def test_should_require_query(self) -> None:
        """Verify an empty query is rejected."""
        with pytest.raises(ValidationError):
            SearchOptions(query="")

    @pytest.mark.parametrize(("requested", "clamped"), [(0, 1), (50, 50), (5000, 1000)])
    def test_should_clamp_max_results(self, requested: int, clamped: int) -> None:
        """Verify max_results is clamped to 1..1000."""
        assert SearchOptions(query="q", max_results=requested).clamped_max_results == clamped

    def test_should_reject_unknown_sort_key(self) -> None:
        """Verify sort_by is restricted."""
        with pytest.raises(ValidationError):
            SearchOptions(query="q", sort_by="name")

    def test_should_report_criteria_without_max_results(self) -> None:
        """Verify criteria echo the filters."""
        criteria = SearchOptions(query="q", file_extensions=["pdf"]).criteria()

        assert criteria["query"] == "q"
        assert criteria["file_extensions"] == ["pdf"]
        assert "max_results" not in criteria
        assert "date_range" not in criteria


@pytest.mark.unit
class TestFilterSearchMatches:
    """Tests for filter_search_matches()."""

    @pytest.fixture
    def raw_matches(self) -> list[dict]:
        return [
            _match("a.pdf", size=300, modified="2024-03-01T00:00:00Z"),
            _match("b.txt", size=100, modified="2024-01-01T00:00:00Z"),
            _match("c.png", size=200, modified="2024-02-01T00:00:00Z"),
        ]

    @staticmethod
    def _names(matches: list[dict]) -> list[str]:
        return [m["metadata"]["name"] for m in matches]

    def test_should_keep_provider_order_for_relevance(self, raw_matches) -> None:
        """Verify relevance desc keeps order and asc reverses it."""
        desc = filter_search_matches(raw_matches, SearchOptions(query="q"))
        asc = filter_search_matches(raw_matches, SearchOptions(query="q", order="asc"))

        assert self._names(desc) == ["a.pdf", "b.txt", "c.png"]
        assert self._names(asc) == ["c.png", "b.txt", "a.pdf"]

    def test_should_filter_by_extension(self, raw_matches) -> None:
        """Verify extensions match with or without the dot."""
        options = SearchOptions(query="q", file_extensions=[".PDF", "png"])

        assert self._names(filter_search_matches(raw_matches, options)) == ["a.pdf", "c.png"]

    def test_should_filter_by_category(self, raw_matches) -> None:
        """Verify category filtering and the category field."""
        matches = filter_search_matches(
            raw_matches, SearchOptions(query="q", file_categories=["image"])
        )

        assert self._names(matches) == ["c.png"]
        assert matches[0]["category"] == "image"
        assert matches[0]["match_type"] == {".tag": "filename"}

    def test_should_filter_by_date_range(self, raw_matches) -> None:
        """Verify server_modified must fall inside the range."""
        options = SearchOptions(
            query="q",
            date_range=DateRange(start="2024-01-15T00:00:00Z", end="2024-02-15"),
        )

        assert self._names(filter_search_matches(raw_matches, options)) == ["c.png"]

    def test_should_sort_by_size_and_time(self, raw_matches) -> None:
        """Verify size and modification sorts honor the order."""
        by_size = filter_search_matches(
            raw_matches, SearchOptions(query="q", sort_by="file_size", order="asc")
        )
        by_time = filter_search_matches(
            raw_matches, SearchOptions(query="q", sort_by="last_modified_time")
        )

        assert self._names(by_size) == ["b.txt", "c.png", "a.pdf"]
        assert self._names(by_time) == ["a.pdf", "c.png", "b.txt"]

    def test_should_keep_folders_in_date_filter(self) -> None:
        """Verify entries without a modification time are not dropped."""
        matches = [_match("docs", tag="folder")]
        options = SearchOptions(query="q", date_range=DateRange(start="2030-01-01"))

        assert len(filter_search_matches(matches, options)) == 1
