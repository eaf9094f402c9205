import io

import pytest
from docx import Document

from tests.conftest import build_docx
from utils.docx_template import DocxTemplate, extract_placeholders, normalize_field_name
from utils.errors import TemplateUnreadable, ValidationError


def _text(data: bytes) -> str:
    return "\n".join(p.text for p in Document(io.BytesIO(data)).paragraphs)


def test_all_token_syntaxes_are_recognized_in_first_seen_order():
    data = build_docx("{alpha} $[beta]", "${gamma} [delta]", "{alpha} again")
    assert extract_placeholders(data) == ["alpha", "beta", "gamma", "delta"]


def test_placeholder_split_across_runs_is_found_and_replaced():
    data = build_docx(["Hello {full", "Na", "me}, welcome"])
    editor = DocxTemplate(data)
    assert editor.placeholders() == ["fullName"]

    editor.substitute({"fullName": "Juan Dela Cruz"})
    assert _text(editor.to_bytes()) == "Hello Juan Dela Cruz, welcome"


def test_placeholders_inside_tables_are_included():
    data = build_docx("Header {title}", table=[["Name", "{fullName}"], ["Purpose", "$[purpose]"]])
    assert extract_placeholders(data) == ["title", "fullName", "purpose"]


def test_substitute_leaves_unlisted_tokens_alone():
    editor = DocxTemplate(build_docx("{known} and {other}"))
    editor.substitute({"known": "yes"})
    assert editor.to_text() == "yes and {other}"


def test_substitute_reports_qr_marker_runs():
    editor = DocxTemplate(build_docx("Scan: [qr]", "No marker here"))
    marker_runs = editor.substitute({"qr": "2025-ABCDEF-123456"})
    assert len(marker_runs) == 1
    paragraph, run = marker_runs[0]
    assert "2025-ABCDEF-123456" in run.text
    assert paragraph.text == "Scan: 2025-ABCDEF-123456"


def test_add_picture_after_embeds_inline_image():
    from utils.qr_service import render_qr_png

    editor = DocxTemplate(build_docx("[qr]"))
    (paragraph, run), = editor.substitute({"qr": "CODE"})
    editor.add_picture_after(paragraph, run, render_qr_png("https://example.org/verify/CODE"))
    saved = Document(io.BytesIO(editor.to_bytes()))
    assert len(saved.inline_shapes) == 1


@pytest.mark.parametrize("data", [b"", b"this is not a zip file", b"PK\x03\x04broken"])
def test_unreadable_input_raises(data):
    with pytest.raises(TemplateUnreadable):
        DocxTemplate(data)


def test_html_preview_is_sanitized():
    editor = DocxTemplate(build_docx("<script>alert(1)</script> {name}"))
    rendered = editor.to_html()
    assert "<script>" not in rendered
    assert "{name}" in rendered


def test_normalize_field_name_ignores_case_and_punctuation():
    assert normalize_field_name("Full_Name") == normalize_field_name("full-name") == "fullname"
    assert normalize_field_name(None) == ""


def test_substitute_rejects_control_characters_by_field():
    editor = DocxTemplate(build_docx("Purpose: {purpose}"))
    with pytest.raises(ValidationError) as excinfo:
        editor.substitute({"purpose": "Employ\x0bment"})
    assert "purpose" in excinfo.value.details["errors"]
