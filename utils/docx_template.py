"""OOXML editor for DOCX templates: placeholder discovery, substitution, and inline images."""
import html
import re
import zipfile
from io import BytesIO
from typing import Dict, Iterator, List, Optional, Tuple

import bleach
from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml import OxmlElement
from docx.shared import Inches
from docx.table import Table
from docx.text.paragraph import Paragraph
from docx.text.run import Run
from lxml.etree import XMLSyntaxError

from utils.errors import TemplateUnreadable, ValidationError

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

_NAME = r"[A-Za-z_][A-Za-z0-9_.\-]*"

# Order matters: the dollar forms must win over the bare bracket/brace forms.
TOKEN_RE = re.compile(
    rf"\$\[(?P<dollar_bracket>{_NAME})\]"
    rf"|\$\{{(?P<dollar_brace>{_NAME})\}}"
    rf"|\{{(?P<brace>{_NAME})\}}"
    rf"|\[(?P<bracket>{_NAME})\]"
)

QR_MARKER = "qr"

# Characters XML 1.0 cannot carry; lxml refuses them in run text.
XML_INVALID_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")

PREVIEW_ALLOWED_TAGS = ["div", "p", "strong", "em", "u", "br", "table", "tbody", "tr", "td"]

_UNREADABLE_ERRORS = (zipfile.BadZipFile, PackageNotFoundError, KeyError, ValueError, XMLSyntaxError)


def token_name(match: re.Match) -> str:
    return next(value for value in match.groupdict().values() if value is not None)


def is_qr_marker(name: str) -> bool:
    return name.lower() == QR_MARKER


def has_xml_invalid(text: str) -> bool:
    return bool(XML_INVALID_RE.search(text or ""))


def strip_xml_invalid(text: str) -> str:
    return XML_INVALID_RE.sub("", text)


class DocxTemplate:
    """Load a DOCX package, edit its main document part, save it back to bytes."""

    def __init__(self, data: bytes) -> None:
        if not data:
            raise TemplateUnreadable("Template is empty")
        try:
            self.document = Document(BytesIO(data))
        except _UNREADABLE_ERRORS as exc:
            raise TemplateUnreadable() from exc

    # -- traversal -----------------------------------------------------------------

    def iter_paragraphs(self) -> Iterator[Paragraph]:
        yield from self.document.paragraphs
        for table in self.document.tables:
            yield from self._table_paragraphs(table)

    def _table_paragraphs(self, table: Table) -> Iterator[Paragraph]:
        seen = set()
        for row in table.rows:
            for cell in row.cells:
                # Merged cells are reported once per grid column they span.
                if id(cell._tc) in seen:
                    continue
                seen.add(id(cell._tc))
                yield from cell.paragraphs
                for nested in cell.tables:
                    yield from self._table_paragraphs(nested)

    @staticmethod
    def paragraph_text(paragraph: Paragraph) -> str:
        return "".join(run.text for run in paragraph.runs)

    # -- placeholders --------------------------------------------------------------

    def placeholders(self) -> List[str]:
        """Unique placeholder names in first-seen order."""
        names: List[str] = []
        for paragraph in self.iter_paragraphs():
            for match in TOKEN_RE.finditer(self.paragraph_text(paragraph)):
                name = token_name(match)
                if name not in names:
                    names.append(name)
        return names

    def substitute(self, values: Dict[str, str]) -> List[Tuple[Paragraph, Run]]:
        """Replace every token whose name is in ``values``.

        Tokens may span several runs; the replacement lands in the run where the
        token starts and the remaining pieces are trimmed from the following runs,
        so formatting of the first run is kept. Returns the (paragraph, run) pairs
        that now hold the text of a QR marker.
        """
        qr_runs: List[Tuple[Paragraph, Run]] = []
        for paragraph in self.iter_paragraphs():
            runs = paragraph.runs
            original = [run.text for run in runs]
            full = "".join(original)
            matches = [m for m in TOKEN_RE.finditer(full) if token_name(m) in values]
            if not matches:
                continue

            starts = []
            cursor = 0
            for text in original:
                starts.append(cursor)
                cursor += len(text)

            def locate(pos: int) -> Tuple[int, int]:
                for idx in range(len(original) - 1, -1, -1):
                    if original[idx] and starts[idx] <= pos:
                        return idx, pos - starts[idx]
                return 0, pos

            texts = list(original)
            marker_runs: List[int] = []
            # Right to left keeps the offsets of earlier tokens valid.
            for match in reversed(matches):
                name = token_name(match)
                replacement = str(values[name])
                if has_xml_invalid(replacement):
                    raise ValidationError(
                        f"Value for {name} contains control characters",
                        errors={name: ["Remove control characters from this value."]},
                    )
                first, first_off = locate(match.start())
                last, last_off = locate(match.end() - 1)
                if first == last:
                    texts[first] = texts[first][:first_off] + replacement + texts[first][last_off + 1:]
                else:
                    texts[first] = texts[first][:first_off] + replacement
                    for idx in range(first + 1, last):
                        texts[idx] = ""
                    texts[last] = texts[last][last_off + 1:]
                if is_qr_marker(name):
                    marker_runs.append(first)

            for run, before, after in zip(runs, original, texts):
                if before != after:
                    run.text = after
            for idx in sorted(set(marker_runs)):
                qr_runs.append((paragraph, runs[idx]))
        return qr_runs

    # -- images --------------------------------------------------------------------

    @staticmethod
    def add_picture_after(paragraph: Paragraph, run: Run, image: bytes, width_inches: float = 1.2) -> Run:
        """Insert a new run holding an inline picture right after ``run``.

        python-docx adds the media part, the relationship and the content type
        default for the image when the picture is attached to the run.
        """
        new_r = OxmlElement("w:r")
        run._r.addnext(new_r)
        picture_run = Run(new_r, paragraph)
        picture_run.add_picture(BytesIO(image), width=Inches(width_inches))
        return picture_run

    # -- output --------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        buffer = BytesIO()
        self.document.save(buffer)
        return buffer.getvalue()

    def to_text(self) -> str:
        return "\n".join(self.paragraph_text(p) for p in self.iter_paragraphs())

    def to_html(self) -> str:
        """Lightweight HTML rendering of body paragraphs and tables for previews."""
        parts: List[str] = ['<div class="docx-preview">']
        for paragraph in self.document.paragraphs:
            parts.append(self._paragraph_html(paragraph))
        for table in self.document.tables:
            parts.append("<table><tbody>")
            for row in table.rows:
                cells = "".join(
                    "<td>" + "".join(self._paragraph_html(p) for p in cell.paragraphs) + "</td>" for cell in row.cells
                )
                parts.append(f"<tr>{cells}</tr>")
            parts.append("</tbody></table>")
        parts.append("</div>")
        return bleach.clean("".join(parts), tags=PREVIEW_ALLOWED_TAGS, attributes={"div": ["class"]}, strip=True)

    @staticmethod
    def _paragraph_html(paragraph: Paragraph) -> str:
        pieces = []
        for run in paragraph.runs:
            text = html.escape(run.text).replace("\n", "<br>")
            if not text:
                continue
            if run.bold:
                text = f"<strong>{text}</strong>"
            if run.italic:
                text = f"<em>{text}</em>"
            if run.underline:
                text = f"<u>{text}</u>"
            pieces.append(text)
        return f"<p>{''.join(pieces)}</p>"


def extract_placeholders(data: bytes) -> List[str]:
    return DocxTemplate(data).placeholders()


def normalize_field_name(name: Optional[str]) -> str:
    """Loose key used to match submitted field names against template tags."""
    return re.sub(r"[^a-z0-9]", "", (name or "").lower())
