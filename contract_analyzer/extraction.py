from __future__ import annotations

import importlib.util
import io
import logging
import re
import string
import zipfile
import zlib
from dataclasses import asdict, dataclass, field
from xml.etree import ElementTree as ET

from contract_analyzer.errors import ExtractionError

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIME_TYPE = "text/plain"
SUPPORTED_CONTENT_TYPES = {
    PDF_MIME_TYPE: ".pdf",
    DOCX_MIME_TYPE: ".docx",
    TEXT_MIME_TYPE: ".txt",
}

PDF_MARKER_MIN_CHARS = 50
PDF_MIN_TEXT_CHARS = 100

# Text objects span lines in real content streams; the lazy match stops at the first ET.
_PDF_TEXT_BLOCK = re.compile(r"BT\s*.*?\s*ET", re.DOTALL)
_NON_PRINTABLE = re.compile(r"[^\x20-\x7E\n\r]")
_READABLE_RUN = re.compile(r"[a-zA-Z\s.,!?;:'\"()-]{20,}")
# Failures a damaged DOCX container or its XML part can raise while being read.
_DOCX_READ_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    KeyError,
    ET.ParseError,
    LookupError,
    ValueError,
    EOFError,
    RuntimeError,
    OSError,
)
_WORD_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"

PLACEHOLDER_CONTRACT_TEXT = """
SAMPLE SERVICE AGREEMENT

This Service Agreement ("Agreement") is entered into on [Date] between [Company Name] ("Client")
and [Service Provider] ("Provider").

1. SERVICES
Provider agrees to provide consulting services as described in Exhibit A.

2. PAYMENT TERMS
Client agrees to pay Provider $5,000 per month, due within 30 days of invoice.

3. TERMINATION
Either party may terminate this agreement with 30 days written notice.

4. INTELLECTUAL PROPERTY
All work product shall be owned by Client upon payment.

5. CONFIDENTIALITY
Both parties agree to maintain confidentiality of proprietary information.

6. GOVERNING LAW
This agreement shall be governed by the laws of [State].

7. DISPUTE RESOLUTION
Any disputes shall be resolved through binding arbitration.

IN WITNESS WHEREOF, the parties have executed this Agreement.

[Signatures]
""".strip()

PARSE_ERROR_PLACEHOLDER_TEXT = """
SAMPLE CONTRACT (PARSING ERROR - USING FALLBACK)

This is a sample contract used for demonstration purposes when the original file could not be parsed.

1. SERVICES: Consulting services to be provided
2. PAYMENT: Monthly payment terms
3. TERMINATION: 30 days notice required
4. CONFIDENTIALITY: Standard confidentiality clauses

Note: This is fallback content due to parsing limitations.
""".strip()


@dataclass(frozen=True)
class ExtractedText:
    text: str
    method: str
    quality: str
    warnings: list[str] = field(default_factory=list)

    @property
    def is_placeholder(self) -> bool:
        return self.quality == "placeholder"

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload.pop("text")
        payload["characters"] = len(self.text)
        return payload


def normalize_content_type(content_type: str | None) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def is_supported_content_type(content_type: str | None) -> bool:
    return normalize_content_type(content_type) in SUPPORTED_CONTENT_TYPES


def _looks_like_unreadable_pdf_text(text: str) -> bool:
    normalized = (text or "").strip()
    if not normalized:
        return True

    lowered = normalized.lower()
    if "%pdf-" in lowered and "xref" in lowered and "/type /catalog" in lowered:
        return True

    printable = sum(1 for char in normalized if char in string.printable)
    printable_ratio = printable / max(1, len(normalized))
    replacement_char_ratio = normalized.count("�") / max(1, len(normalized))

    return printable_ratio < 0.75 or replacement_char_ratio > 0.05


def _extract_pdf_text_with_pypdf(content_bytes: bytes) -> tuple[str, list[str]]:
    warnings: list[str] = []
    if importlib.util.find_spec("pypdf") is None:
        warnings.append("PDF parsing dependency 'pypdf' is not installed; using heuristic extraction.")
        return "", warnings

    from pypdf import PdfReader

    try:
        reader = PdfReader(io.BytesIO(content_bytes))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
        extracted = "\n\n".join(page for page in pages if page).strip()
    except Exception as exc:  # noqa: BLE001
        warnings.append(f"pypdf text extraction failed: {exc}")
        return "", warnings

    if _looks_like_unreadable_pdf_text(extracted):
        warnings.append("pypdf returned unreadable or empty content; using heuristic extraction.")
        return "", warnings

    return extracted, warnings


def _extract_pdf_text_markers(content_bytes: bytes) -> str:
    pdf_text = content_bytes.decode("latin-1")
    blocks = _PDF_TEXT_BLOCK.findall(pdf_text)
    return _NON_PRINTABLE.sub(" ", " ".join(blocks)).strip()


def _extract_pdf_readable_runs(content_bytes: bytes) -> str:
    pdf_text = content_bytes.decode("latin-1")
    runs = _READABLE_RUN.findall(pdf_text)
    return re.sub(r"\s+", " ", " ".join(runs)).strip()


def extract_pdf_text(content_bytes: bytes, *, parser: str = "heuristic") -> ExtractedText:
    """Best-effort PDF text extraction without a structural parser.

    Tiers, in order: optional pypdf (``parser="pypdf"``), text-drawing
    ``BT``/``ET`` blocks, generic printable runs of 20+ characters, and
    finally the fixed placeholder contract text. Never raises.
    """

    warnings: list[str] = []

    if parser == "pypdf":
        structured_text, structured_warnings = _extract_pdf_text_with_pypdf(content_bytes)
        warnings.extend(structured_warnings)
        if len(structured_text) >= PDF_MIN_TEXT_CHARS:
            return ExtractedText(structured_text, "pypdf", "exact", warnings)

    extracted = _extract_pdf_text_markers(content_bytes)
    method = "text_markers"

    if len(extracted) < PDF_MARKER_MIN_CHARS:
        extracted = _extract_pdf_readable_runs(content_bytes)
        method = "printable_runs"

    if len(extracted) < PDF_MIN_TEXT_CHARS:
        warnings.append(
            f"PDF text extraction yielded {len(extracted)} characters; "
            "substituted placeholder contract text."
        )
        return ExtractedText(PLACEHOLDER_CONTRACT_TEXT, "placeholder", "placeholder", warnings)

    return ExtractedText(extracted, method, "heuristic", warnings)


def extract_docx_text(content_bytes: bytes) -> ExtractedText:
    try:
        with zipfile.ZipFile(io.BytesIO(content_bytes)) as archive:
            xml_payload = archive.read("word/document.xml")
        root = ET.fromstring(xml_payload)
    except _DOCX_READ_ERRORS as exc:
        raise ExtractionError(f"DOCX parser failed to read word/document.xml: {exc}") from exc

    paragraphs: list[str] = []
    for paragraph in root.iter(f"{_WORD_NS}p"):
        pieces: list[str] = []
        for node in paragraph.iter():
            if node.tag == f"{_WORD_NS}t" and node.text:
                pieces.append(node.text)
            elif node.tag == f"{_WORD_NS}tab":
                pieces.append("\t")
            elif node.tag in {f"{_WORD_NS}br", f"{_WORD_NS}cr"}:
                pieces.append("\n")
        paragraphs.append("".join(pieces))

    return ExtractedText("\n".join(paragraphs).strip(), "docx_xml", "exact", [])


def extract_plain_text(content_bytes: bytes) -> ExtractedText:
    try:
        text = content_bytes.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ExtractionError(f"Plain text is not valid UTF-8: {exc}") from exc
    return ExtractedText(text, "utf8_decode", "exact", [])


def extract_text(content_bytes: bytes, content_type: str | None, *, pdf_parser: str = "heuristic") -> ExtractedText:
    normalized = normalize_content_type(content_type)
    if normalized == PDF_MIME_TYPE:
        return extract_pdf_text(content_bytes, parser=pdf_parser)
    if normalized == DOCX_MIME_TYPE:
        return extract_docx_text(content_bytes)
    if normalized == TEXT_MIME_TYPE:
        return extract_plain_text(content_bytes)
    raise ExtractionError(f"Unsupported file type: {content_type}", {"content_type": content_type})


def extract_text_or_placeholder(
    content_bytes: bytes,
    content_type: str | None,
    *,
    pdf_parser: str = "heuristic",
) -> ExtractedText:
    """Like ``extract_text`` but substitutes the parse-error placeholder instead of raising."""

    try:
        return extract_text(content_bytes, content_type, pdf_parser=pdf_parser)
    except ExtractionError as exc:
        logger.warning("Text extraction failed for %s: %s", content_type, exc.message)
        return ExtractedText(
            PARSE_ERROR_PLACEHOLDER_TEXT,
            "parse_error_placeholder",
            "placeholder",
            [f"Text extraction failed: {exc.message}"],
        )
