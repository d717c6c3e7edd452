"""Minimal multipart/form-data decoder for single-file uploads.

Only the first part carrying a ``filename`` is returned; requests with several
files are not supported. The scanner moves forward through the body and never
revisits bytes it has already passed, so adversarial bodies full of
near-boundary substrings cost linear time.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Optional

# Author: Daniel Neugent

_DISPOSITION_PARAM = re.compile(
    r'(?:^|;)\s*(?P<key>[A-Za-z*]+)\s*=\s*(?:"(?P<quoted>[^"]*)"|(?P<bare>[^;]*))'
)

# Parameter names are case-insensitive; a quoted value may hold spaces.
_BOUNDARY_PARAM = re.compile(
    r'\bboundary\s*=\s*(?:"(?P<quoted>[^"]*)"|(?P<bare>[^;\s]*))', re.IGNORECASE
)


@dataclass
class FilePart:
    field_name: str
    filename: str
    data: bytes


class _State(enum.Enum):
    DELIMITER = "delimiter"
    HEADERS = "headers"
    DATA = "data"


def extract_boundary(content_type: Optional[str]) -> Optional[str]:
    """Return the boundary parameter of a Content-Type header, unquoted."""
    if not content_type:
        return None
    match = _BOUNDARY_PARAM.search(content_type)
    if match is None:
        return None
    quoted = match.group("quoted")
    boundary = quoted if quoted is not None else match.group("bare")
    return boundary or None


def _parse_disposition(headers: bytes) -> tuple[Optional[str], Optional[str]]:
    """Pull name and filename out of the Content-Disposition header line."""
    name: Optional[str] = None
    filename: Optional[str] = None
    for raw_line in headers.split(b"\n"):
        line = raw_line.rstrip(b"\r").decode("utf-8", errors="replace")
        label, sep, value = line.partition(":")
        if not sep or label.strip().lower() != "content-disposition":
            continue
        for match in _DISPOSITION_PARAM.finditer(value):
            key = match.group("key").lower()
            found = match.group("quoted")
            if found is None:
                found = (match.group("bare") or "").strip()
            if key == "name" and name is None:
                name = found
            elif key == "filename" and filename is None:
                filename = found
    return name, filename


def _header_end(body: bytes, start: int) -> tuple[int, int]:
    """Locate the blank line closing a header block: (position, terminator length)."""
    crlf = body.find(b"\r\n\r\n", start)
    lf = body.find(b"\n\n", start, crlf if crlf >= 0 else len(body))
    if crlf < 0 and lf < 0:
        return -1, 0
    if lf < 0 or (0 <= crlf <= lf):
        return crlf, 4
    return lf, 2


def _find_delimiter(body: bytes, marker: bytes, start: int) -> int:
    """Find the next marker that is followed by a line break, "--", space or EOF."""
    found = body.find(marker, start)
    while found >= 0:
        after = body[found + len(marker):found + len(marker) + 1]
        if after in (b"", b"\r", b"\n", b"-", b" ", b"\t"):
            return found
        found = body.find(marker, found + 1)
    return -1


def _trim_line_break(body: bytes, start: int, end: int) -> int:
    """Drop one CRLF, LF or CR that precedes the next delimiter."""
    if end - start >= 2 and body[end - 2:end] == b"\r\n":
        return end - 2
    if end - start >= 1 and body[end - 1:end] in (b"\n", b"\r"):
        return end - 1
    return end


def extract_file(content_type: Optional[str], body: bytes) -> Optional[FilePart]:
    """Return the first file part of a multipart body, or None.

    None covers every failure (no boundary, no header terminator, no closing
    delimiter) so callers can fall back to another body encoding.
    """
    boundary = extract_boundary(content_type)
    if boundary is None or not body:
        return None
    marker = b"--" + boundary.encode("latin-1", errors="replace")
    state = _State.DELIMITER
    pos = 0
    headers_start = data_start = 0
    name: Optional[str] = None
    filename: Optional[str] = None

    while True:
        if state is _State.DELIMITER:
            found = _find_delimiter(body, marker, pos)
            if found < 0:
                return None
            pos = found + len(marker)
            if body[pos:pos + 2] == b"--":
                return None
            if body[pos:pos + 2] == b"\r\n":
                pos += 2
            elif body[pos:pos + 1] == b"\n":
                pos += 1
            headers_start = pos
            state = _State.HEADERS
        elif state is _State.HEADERS:
            end, size = _header_end(body, headers_start)
            if end < 0:
                return None
            name, filename = _parse_disposition(body[headers_start:end])
            data_start = end + size
            state = _State.DATA
        elif state is _State.DATA:
            next_marker = _find_delimiter(body, marker, data_start)
            if next_marker < 0:
                return None
            if filename is not None:
                data_end = _trim_line_break(body, data_start, next_marker)
                return FilePart(
                    field_name=name or "",
                    filename=filename,
                    data=body[data_start:data_end],
                )
            # Plain form field: resume at the delimiter that closed it.
            pos = next_marker
            state = _State.DELIMITER
