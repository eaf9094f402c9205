"""Markdown rendering and sanitizing for outbound email and inquiry text."""
import re
from typing import Dict, List

import bleach
from markdown_it import MarkdownIt


# Single parser reused for performance; HTML disabled for safety
_md = MarkdownIt("commonmark", {"linkify": True, "typographer": True, "html": False}).enable(["linkify", "table"])

EMAIL_ALLOWED_TAGS = [
    "p",
    "ul",
    "ol",
    "li",
    "strong",
    "em",
    "h2",
    "h3",
    "table",
    "thead",
    "tbody",
    "tr",
    "th",
    "td",
    "hr",
    "a",
    "br",
]

ALLOWED_ATTRIBUTES = {
    "a": ["href", "title", "rel", "target"],
}


def _normalize_whitespace(text: str) -> str:
    cleaned = re.sub(r"[\r\t]+", " ", text or "")
    cleaned = re.sub(r" +", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def markdown_to_email_html(md_text: str) -> str:
    rendered = _md.render(_normalize_whitespace(md_text))
    safe_html = bleach.clean(rendered, tags=EMAIL_ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)
    return (
        "<div style=\"font-family: 'Segoe UI', Arial, sans-serif; font-size: 14px; line-height: 1.6; color: #0f172a;\">"
        f"{safe_html}"
        "</div>"
    )


def markdown_to_plaintext(md_text: str) -> str:
    rendered = _md.render(_normalize_whitespace(md_text))
    text_only = bleach.clean(rendered, tags=[], attributes={}, strip=True)
    return re.sub(r"[ \t]+", " ", text_only).strip()


def clean_user_text(text: str, max_length: int = 5000) -> str:
    """Strip markup from free text submitted by residents and staff."""
    return bleach.clean(_normalize_whitespace(text), tags=[], attributes={}, strip=True)[:max_length]


def format_sections(sections: List[Dict[str, object]]) -> str:
    """Build markdown from an ordered list of sections."""
    parts: List[str] = []
    for section in sections:
        title = _normalize_whitespace(str(section.get("title", "") or ""))
        if title:
            parts.append(f"## {title}")
        body = section.get("body") or ""
        if body:
            parts.append(_normalize_whitespace(str(body)))
        for bullet in section.get("bullets") or []:
            if bullet:
                parts.append(f"- {_normalize_whitespace(str(bullet))}")
        parts.append("")
    return "\n".join(parts).strip()


def format_status_markdown(doc_request) -> str:
    label = doc_request.document_type.replace("_", " ").title()
    bullets = [f"Request ID: {doc_request.id}", f"Status: {doc_request.status.title()}"]
    if doc_request.document_number:
        bullets.append(f"Document number: {doc_request.document_number}")
    if doc_request.valid_until:
        bullets.append(f"Valid until: {doc_request.valid_until.strftime('%B %d, %Y')}")
    sections = [{"title": f"{label} request update", "bullets": bullets}]
    if doc_request.remarks:
        sections.append({"title": "Remarks", "body": doc_request.remarks})
    if doc_request.status == "approved":
        sections.append({"title": "Next Steps", "bullets": ["Claim your document at the barangay hall or download it from the portal."]})
    return format_sections(sections)


def format_inquiry_reply_markdown(inquiry, reply_text: str) -> str:
    return format_sections(
        [
            {"title": f"Reply to: {inquiry.subject}", "body": reply_text},
            {"bullets": [f"Inquiry status: {inquiry.status}"]},
        ]
    )
