import email
from email.policy import compat32

import pytest

from repair_engine import (
    CandidateFile,
    AttachmentDescriptor,
    MimeReconstructor,
    PartKind,
    classify_part,
    iter_leaf_parts,
    parse_raw_message,
    strip_truncation_marker,
)

DOC_BYTES = b"\xd0\xcf\x11\xe0 binary word document \x00\x01\x02"

MIXED_WITH_DETACHED = (
    "From: Jane <jane@example.com>\n"
    "Subject: Report\n"
    "MIME-Version: 1.0\n"
    'Content-Type: multipart/mixed; boundary="XYZ"\n'
    "\n"
    "--XYZ\n"
    "Content-Type: text/plain; charset=us-ascii\n"
    "\n"
    "See attached.\n"
    "--XYZ\n"
    'Content-Type: application/msword; name="Report (Final).doc"\n'
    'Content-Disposition: attachment; filename="Report (Final).doc"\n'
    "Content-ID: <part2@example.com>\n"
    "\n"
    "[ Attachment content not displayed ]\n"
    "--XYZ--\n"
)


def _parse(text):
    result = parse_raw_message(text)
    assert result.ok, result.error
    return result.message


def _candidate(tmp_path, file_id, filename, data, descriptor=None):
    path = tmp_path / f"{file_id}-{filename}"
    path.write_bytes(data)
    return CandidateFile(file_id=file_id, filename=filename, path=str(path), descriptor=descriptor)


def _leaf_payloads(message):
    return [part.get_payload(decode=True) for part in iter_leaf_parts(message)]


def test_detached_attachment_is_restored_from_matching_file(tmp_path):
    message = _parse(MIXED_WITH_DETACHED)
    pool = {"7": _candidate(tmp_path, "7", "Report-Final.doc", DOC_BYTES)}

    result = MimeReconstructor().reconstruct(message, pool, "42")

    assert result.placed_inline == ["7"]
    assert result.placed_trailer == []
    assert pool == {}
    parts = list(iter_leaf_parts(message))
    assert len(parts) == 2
    assert parts[1].get_payload(decode=True) == DOC_BYTES
    assert parts[1]["Content-Transfer-Encoding"] == "base64"
    assert parts[1]["X-Archive-Attachment-Restored"] == "7"
    assert parts[1].get_filename() == "Report (Final).doc"


def test_restored_message_survives_serialization(tmp_path):
    message = _parse(MIXED_WITH_DETACHED)
    pool = {"7": _candidate(tmp_path, "7", "Report-Final.doc", DOC_BYTES)}
    MimeReconstructor().reconstruct(message, pool, "42")

    reparsed = email.message_from_bytes(message.as_bytes(), policy=compat32)

    assert DOC_BYTES in _leaf_payloads(reparsed)


def test_unmatched_placeholder_becomes_explanatory_text():
    message = _parse(MIXED_WITH_DETACHED)

    result = MimeReconstructor().reconstruct(message, {}, "42")

    part = list(iter_leaf_parts(message))[1]
    assert result.not_found == ["Report (Final).doc"]
    assert part.get_content_type() == "text/plain"
    assert part["X-Archive-Attachment-Not-Found"] == "yes"
    assert part["X-Original-Content-Type"].startswith("application/msword")
    assert 'filename="Report (Final).doc"' in part["X-Original-Content-Disposition"]
    assert part["X-Original-Content-ID"] == "<part2@example.com>"
    assert part["Content-Disposition"] is None
    assert "Report (Final).doc" in part.get_payload()


def test_placeholder_without_filename_is_not_matched_and_file_is_reattached(tmp_path):
    message = _parse(
        "From: a@example.com\n"
        'Content-Type: multipart/mixed; boundary="B"\n'
        "\n"
        "--B\n"
        "Content-Type: text/plain\n"
        "\n"
        "Hello\n"
        "--B\n"
        "Content-Type: application/octet-stream\n"
        "\n"
        "[ Attachment content not displayed ]\n"
        "--B--\n"
    )
    pool = {"3": _candidate(tmp_path, "3", "data.bin", b"payload")}

    result = MimeReconstructor().reconstruct(message, pool, "5")

    assert result.not_found == [""]
    assert result.placed_trailer == ["3"]
    parts = list(iter_leaf_parts(message))
    assert parts[1]["X-Archive-Attachment-Not-Found"] == "yes"
    assert parts[2].get_payload(decode=True) == b"payload"
    assert parts[2]["X-Archive-Attachment-Reattached"] == "3"


def test_descriptor_filename_matches_even_when_disk_name_differs(tmp_path):
    message = _parse(MIXED_WITH_DETACHED)
    descriptor = AttachmentDescriptor(file_id="12", filename="Report (Final).doc", content_type="application/msword")
    pool = {"12": _candidate(tmp_path, "12", "x.bin", DOC_BYTES, descriptor=descriptor)}

    result = MimeReconstructor().reconstruct(message, pool, "42")

    assert result.placed_inline == ["12"]


def test_truncated_plain_body_loses_only_the_marker():
    message = _parse(
        "From: a@example.com\n"
        "Content-Type: text/plain; charset=us-ascii\n"
        "\n"
        "line one\n"
        "line two\n"
        "(Message over 64 KB, truncated)\n"
    )

    result = MimeReconstructor().reconstruct(message, {}, "9")

    assert result.truncated_parts == 1
    assert message.get_payload() == "line one\nline two"
    assert message["X-Archive-Content-Truncated"] == "yes"


def test_truncated_base64_body_keeps_encoded_prefix_byte_for_byte():
    encoded = "SGVsbG8gd29y\nbGQgdGhpcyBp\ncyBjdXQ"
    message = _parse(
        "From: a@example.com\n"
        'Content-Type: multipart/mixed; boundary="B"\n'
        "\n"
        "--B\n"
        "Content-Type: application/pdf\n"
        "Content-Transfer-Encoding: base64\n"
        "\n"
        f"{encoded}\n"
        "(Message over 64 KB, truncated)\n"
        "--B--\n"
    )

    MimeReconstructor().reconstruct(message, {}, "9")

    part = list(iter_leaf_parts(message))[0]
    assert part.get_payload() == encoded
    assert part["Content-Transfer-Encoding"] == "base64"
    assert part["X-Archive-Content-Truncated"] == "yes"


def test_strip_truncation_marker_removes_marker_and_preceding_newline():
    assert strip_truncation_marker("...\n(Message over 64 KB, truncated)") == "..."
    assert strip_truncation_marker("abc\n\n(Message over 64 KB, truncated)\n") == "abc\n"
    assert strip_truncation_marker("untouched\n") == "untouched\n"


def test_orphan_attachment_turns_single_part_message_into_mixed(tmp_path):
    message = _parse(
        "From: a@example.com\n"
        "Subject: Photos\n"
        "Content-Type: text/plain; charset=us-ascii\n"
        "\n"
        "Pictures from the meetup.\n"
    )
    descriptor = AttachmentDescriptor(file_id="4", filename="Meetup Photo.jpg", content_type="image/jpeg")
    pool = {"4": _candidate(tmp_path, "4", "Meetup-Photo.jpg", b"\xff\xd8\xff jpeg", descriptor=descriptor)}

    result = MimeReconstructor().reconstruct(message, pool, "11")

    assert result.placed_trailer == ["4"]
    assert message.get_content_type() == "multipart/mixed"
    assert message["Subject"] == "Photos"
    body, attachment = message.get_payload()
    assert body.get_content_type() == "text/plain"
    assert body.get_payload() == "Pictures from the meetup.\n"
    assert attachment.get_content_type() == "image/jpeg"
    assert attachment.get_filename() == "Meetup Photo.jpg"
    assert attachment.get_payload(decode=True) == b"\xff\xd8\xff jpeg"

    reparsed = email.message_from_bytes(message.as_bytes(), policy=compat32)
    assert reparsed.is_multipart()
    assert b"\xff\xd8\xff jpeg" in _leaf_payloads(reparsed)


def test_wrapped_root_serializes_identically_every_time(tmp_path):
    text = "From: a@example.com\nSubject: Photos\nContent-Type: text/plain\n\nSee photo.\n"
    outputs = []
    for _ in range(2):
        message = _parse(text)
        pool = {"4": _candidate(tmp_path, "4", "photo.jpg", b"\xff\xd8\xff jpeg")}
        MimeReconstructor().reconstruct(message, pool, "11")
        outputs.append(message.as_bytes())

    assert outputs[0] == outputs[1]
    assert message.get_boundary().startswith("=_archive_mixed_")


def test_alternative_root_is_wrapped_before_reattaching(tmp_path):
    message = _parse(
        "From: a@example.com\n"
        'Content-Type: multipart/alternative; boundary="ALT"\n'
        "\n"
        "--ALT\n"
        "Content-Type: text/plain\n"
        "\n"
        "plain\n"
        "--ALT\n"
        "Content-Type: text/html\n"
        "\n"
        "<p>html</p>\n"
        "--ALT--\n"
    )
    pool = {"1": _candidate(tmp_path, "1", "notes.txt", b"notes")}

    MimeReconstructor().reconstruct(message, pool, "3")

    assert message.get_content_type() == "multipart/mixed"
    first, second = message.get_payload()
    assert first.get_content_type() == "multipart/alternative"
    assert len(first.get_payload()) == 2
    assert second.get_payload(decode=True) == b"notes"


def test_every_pool_file_ends_up_exactly_once(tmp_path):
    message = _parse(MIXED_WITH_DETACHED)
    files = {
        "7": b"first file bytes",
        "8": b"second file bytes",
        "9": b"third file bytes",
    }
    pool = {
        "7": _candidate(tmp_path, "7", "Report-Final.doc", files["7"]),
        "8": _candidate(tmp_path, "8", "agenda.pdf", files["8"]),
        "9": _candidate(tmp_path, "9", "minutes.txt", files["9"]),
    }

    result = MimeReconstructor().reconstruct(message, pool, "42")

    payloads = _leaf_payloads(message)
    for data in files.values():
        assert payloads.count(data) == 1
    assert sorted(result.placed_inline + result.placed_trailer) == ["7", "8", "9"]
    assert result.unplaced == []


def test_unreadable_file_is_reported_as_unplaced(tmp_path):
    message = _parse("From: a@example.com\nContent-Type: text/plain\n\nHi\n")
    missing = CandidateFile(file_id="5", filename="gone.txt", path=str(tmp_path / "5-gone.txt"))
    warnings = []

    result = MimeReconstructor(warnings=warnings).reconstruct(message, {"5": missing}, "1")

    assert result.unplaced == ["5"]
    assert [warning["code"] for warning in warnings] == ["attachment_unreadable"]


@pytest.mark.parametrize(
    "body, expected",
    [
        ("[ Attachment content not displayed ]\n", PartKind.DETACHED_ATTACHMENT),
        ("text\n(Message over 64 KB, truncated)\n", PartKind.TRUNCATED_BODY),
        ("Just a normal message\n", PartKind.NORMAL),
    ],
)
def test_classify_part(body, expected):
    message = _parse(f"From: a@example.com\nContent-Type: text/plain\n\n{body}")

    assert classify_part(message) is expected


def test_malformed_multipart_is_a_parse_failure():
    result = parse_raw_message(
        "From: a@example.com\n"
        'Content-Type: multipart/mixed; boundary="never-used"\n'
        "\n"
        "there are no boundaries in this body\n"
    )

    assert not result.ok
    assert "StartBoundaryNotFoundDefect" in result.error


def test_empty_message_is_a_parse_failure():
    assert not parse_raw_message("   \n").ok
