"""Helpers for presenting Dropbox entries to MCP clients.

Covers MIME sniffing by extension, coarse file categories, ``dbx://``
resource references and client-side search filtering.
"""

import base64
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

RESOURCE_SCHEME = "dbx://"
FOLDER_MIME_TYPE = "application/x-directory"
DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES = {
    "txt": "text/plain",
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "json": "application/json",
    "md": "text/markdown",
    "html": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "ts": "application/typescript",
    "zip": "application/zip",
    "mp3": "audio/mpeg",
    "mp4": "video/mp4",
}

_IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "bmp", "webp"}
_DOCUMENT_EXTENSIONS = {"doc", "docx", "rtf", "odt"}
_SPREADSHEET_EXTENSIONS = {"xls", "xlsx", "csv", "ods"}
_PRESENTATION_EXTENSIONS = {"ppt", "pptx", "odp"}
_AUDIO_EXTENSIONS = {"mp3", "wav", "ogg", "m4a"}
_VIDEO_EXTENSIONS = {"mp4", "avi", "mov", "wmv"}

MAX_SEARCH_RESULTS = 1000


def get_extension(name: str | None) -> str:
    """Lower-cased extension without the dot, or '' if there is none."""
    if not name or "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def get_mime_type(name: str | None) -> str:
    return MIME_TYPES.get(get_extension(name), DEFAULT_MIME_TYPE)


def get_file_category(metadata: dict[str, Any] | None) -> str:
    """Classify an entry as image, document, pdf, spreadsheet, presentation,
    audio, video, folder or other."""
    if not metadata or not metadata.get("name"):
        return "other"
    extension = get_extension(metadata["name"])
    mime_type = (metadata.get("media_info") or {}).get("metadata", {}).get("mime_type") or ""

    if mime_type.startswith("image/") or extension in _IMAGE_EXTENSIONS:
        return "image"
    if extension in _DOCUMENT_EXTENSIONS:
        return "document"
    if extension == "pdf" or mime_type == "application/pdf":
        return "pdf"
    if extension in _SPREADSHEET_EXTENSIONS:
        return "spreadsheet"
    if extension in _PRESENTATION_EXTENSIONS:
        return "presentation"
    if mime_type.startswith("audio/") or extension in _AUDIO_EXTENSIONS:
        return "audio"
    if mime_type.startswith("video/") or extension in _VIDEO_EXTENSIONS:
        return "video"
    if metadata.get(".tag") == "folder":
        return "folder"
    return "other"


def resource_uri(path: str) -> str:
    return f"{RESOURCE_SCHEME}{path}"


def path_from_uri(uri: str) -> str:
    """Inverse of resource_uri.

    Raises:
        ValueError: If the URI does not use the dbx:// scheme.
    """
    if not uri.startswith(RESOURCE_SCHEME):
        raise ValueError(f"Invalid resource URI: {uri}")
    return uri[len(RESOURCE_SCHEME) :]


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _modified(entry: dict[str, Any]) -> str:
    return entry.get("server_modified") or entry.get("client_modified") or _utcnow_iso()


def summarize_entry(entry: dict[str, Any]) -> dict[str, Any]:
    """Reduce a list_folder entry to the fields list_files reports."""
    is_file = entry.get(".tag") == "file"
    return {
        ".tag": entry.get(".tag"),
        "name": entry.get("name"),
        "path_display": entry.get("path_display"),
        "size": entry.get("size", 0) if is_file else 0,
        "server_modified": entry.get("server_modified") if is_file else None,
        "client_modified": entry.get("client_modified") if is_file else None,
    }


def entry_reference(entry: dict[str, Any], fallback_path: str = "") -> dict[str, Any]:
    """Resource reference for a folder listing entry. Content loads on demand."""
    is_folder = entry.get(".tag") == "folder"
    path = entry.get("path_display") or fallback_path
    uri = resource_uri(path)
    return {
        "type": "collection" if is_folder else "inline",
        "uri": uri,
        "content": {
            "uri": uri,
            "mimeType": FOLDER_MIME_TYPE if is_folder else get_mime_type(entry.get("name")),
            "content": "",
            "encoding": "utf8",
            "metadata": {
                "size": 0 if is_folder else entry.get("size", 0),
                "path": path,
                "modified": _utcnow_iso() if is_folder else _modified(entry),
            },
        },
    }


def file_reference(path: str, metadata: dict[str, Any], content: bytes) -> dict[str, Any]:
    """Inline resource reference carrying base64 file content."""
    uri = resource_uri(path)
    return {
        "type": "inline",
        "uri": uri,
        "content": {
            "uri": uri,
            "mimeType": get_mime_type(metadata.get("name")),
            "content": base64.b64encode(content).decode("ascii"),
            "encoding": "base64",
            "metadata": {
                "size": metadata.get("size", 0),
                "path": metadata.get("path_display") or path,
                "modified": _modified(metadata),
            },
        },
    }


class DateRange(BaseModel):
    start: str | None = None
    end: str | None = None


class SearchOptions(BaseModel):
    """Arguments of the search_file_db tool."""

    query: str = Field(..., min_length=1)
    path: str = ""
    max_results: int = 20
    file_extensions: list[str] = Field(default_factory=list)
    file_categories: list[str] = Field(default_factory=list)
    date_range: DateRange | None = None
    include_content_match: bool = False
    sort_by: Literal["relevance", "last_modified_time", "file_size"] = "relevance"
    order: Literal["asc", "desc"] = "desc"

    @property
    def clamped_max_results(self) -> int:
        return min(max(1, self.max_results), MAX_SEARCH_RESULTS)

    def criteria(self) -> dict[str, Any]:
        return self.model_dump(exclude={"max_results"}, exclude_none=True)


def _parse_time(value: str | None) -> float | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _in_date_range(metadata: dict[str, Any], date_range: DateRange) -> bool:
    if metadata.get(".tag") != "file" or not metadata.get("server_modified"):
        return True
    modified = _parse_time(metadata["server_modified"])
    start = _parse_time(date_range.start)
    end = _parse_time(date_range.end)
    if modified is None:
        return True
    if start is not None and modified < start:
        return False
    if end is not None and modified > end:
        return False
    return True


def _size(metadata: dict[str, Any]) -> int:
    return int(metadata.get("size") or 0) if metadata.get(".tag") == "file" else 0


def _modified_ts(metadata: dict[str, Any]) -> float:
    return _parse_time(metadata.get("server_modified")) or 0.0


def filter_search_matches(
    raw_matches: list[dict[str, Any]], options: SearchOptions
) -> list[dict[str, Any]]:
    """Flatten search_v2 matches, apply the filters and sort.

    Relevance order is the provider's order; ``order="asc"`` reverses it.
    """
    extensions = {e.lower().lstrip(".") for e in options.file_extensions}
    matches = []
    for raw in raw_matches:
        metadata = (raw.get("metadata") or {}).get("metadata") or {}
        if extensions and metadata.get("name"):
            if get_extension(metadata["name"]) not in extensions:
                continue
        category = get_file_category(metadata)
        if options.file_categories and category not in options.file_categories:
            continue
        if options.date_range and not _in_date_range(metadata, options.date_range):
            continue
        matches.append(
            {
                "metadata": metadata,
                "match_type": raw.get("match_type"),
                "highlights": raw.get("highlight_spans"),
                "category": category,
            }
        )

    descending = options.order == "desc"
    if options.sort_by == "last_modified_time":
        matches.sort(key=lambda m: _modified_ts(m["metadata"]), reverse=descending)
    elif options.sort_by == "file_size":
        matches.sort(key=lambda m: _size(m["metadata"]), reverse=descending)
    elif not descending:
        matches.reverse()
    return matches
