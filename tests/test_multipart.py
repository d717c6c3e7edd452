import pytest

from multipart import extract_boundary, extract_file

from tests.conftest import multipart_body


@pytest.mark.parametrize(
    ("content_type", "expected"),
    [
        ("multipart/form-data; boundary=abc123", "abc123"),
        ('multipart/form-data; boundary="quoted value"', "quoted value"),
        ("multipart/form-data; boundary=abc; charset=utf-8", "abc"),
        ("multipart/form-data; boundary=abc charset", "abc"),
        ("multipart/form-data; Boundary=MixedCase", "MixedCase"),
        ('multipart/form-data; BOUNDARY="a b"; charset=utf-8', "a b"),
        ("multipart/form-data", None),
        ("multipart/form-data; boundary=", None),
        (None, None),
    ],
)
def test_extract_boundary(content_type, expected) -> None:
    assert extract_boundary(content_type) == expected


def test_recovers_binary_content_with_boundary_lookalikes() -> None:
    boundary = "XyZ-boundary-42"
    data = (
        bytes(range(256))
        + b"\r\n--XyZ-boundary-4"
        + b"--XyZ-boundary-43"
        + b"\r\n--XyZ-boundary-42x"
        + b"\x00\xff--XyZ-"
    )
    content_type, body = multipart_body("cat.png", data, boundary=boundary)
    part = extract_file(content_type, body)
    assert part is not None
    assert part.field_name == "file"
    assert part.filename == "cat.png"
    assert part.data == data


def test_accepts_lf_only_line_breaks() -> None:
    body = (
        b"--b\n"
        b'Content-Disposition: form-data; name="upload"; filename="a.jpg"\n'
        b"\n"
        b"JPEGDATA\n"
        b"--b--\n"
    )
    part = extract_file("multipart/form-data; boundary=b", body)
    assert part is not None
    assert part.field_name == "upload"
    assert part.filename == "a.jpg"
    assert part.data == b"JPEGDATA"


def test_unquoted_disposition_parameters() -> None:
    body = (
        b"--b\r\n"
        b"content-disposition: form-data; name=file; filename=plain.gif\r\n"
        b"\r\n"
        b"GIF89a\r\n"
        b"--b--\r\n"
    )
    part = extract_file("multipart/form-data; boundary=b", body)
    assert part is not None
    assert part.filename == "plain.gif"
    assert part.data == b"GIF89a"


def test_skips_plain_fields_before_the_file() -> None:
    body = (
        b"--b\r\n"
        b'Content-Disposition: form-data; name="caption"\r\n'
        b"\r\n"
        b"holiday\r\n"
        b"--b\r\n"
        b'Content-Disposition: form-data; name="file"; filename="x.png"\r\n'
        b"Content-Type: image/png\r\n"
        b"\r\n"
        b"PNGDATA\r\n"
        b"--b--\r\n"
    )
    part = extract_file("multipart/form-data; boundary=b", body)
    assert part is not None
    assert part.filename == "x.png"
    assert part.data == b"PNGDATA"


def test_empty_file_part_is_returned_with_no_data() -> None:
    content_type, body = multipart_body("empty.png", b"")
    part = extract_file(content_type, body)
    assert part is not None
    assert part.data == b""


@pytest.mark.parametrize(
    "body",
    [
        b"",
        b"no delimiter at all",
        b'--b\r\nContent-Disposition: form-data; name="f"; filename="a"',
        b'--b\r\nContent-Disposition: form-data; name="f"; filename="a"\r\n\r\nDATA',
        b'--b\r\nContent-Disposition: form-data; name="f"\r\n\r\nvalue\r\n--b--\r\n',
        b"--b--\r\n",
    ],
)
def test_incomplete_or_fileless_bodies_yield_none(body: bytes) -> None:
    assert extract_file("multipart/form-data; boundary=b", body) is None


def test_missing_boundary_yields_none() -> None:
    _, body = multipart_body("a.png", b"data")
    assert extract_file("application/json", body) is None


def test_many_near_boundary_substrings() -> None:
    data = b"\r\n--bounda" * 20000
    content_type, body = multipart_body("big.bin", data, boundary="boundary")
    part = extract_file(content_type, body)
    assert part is not None
    assert part.data == data
