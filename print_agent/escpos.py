"""
ESC/POS encoder.

Turns a ``StructuredReceipt`` into the byte stream a thermal printer
understands. Commands are rendered through python-escpos' ``Dummy`` printer;
text is wrapped here on display columns (not bytes), so wide CJK characters
count twice and combining marks not at all.
"""
import logging
import time
import unicodedata
from dataclasses import dataclass, field

from escpos.constants import GS, HW_INIT, PAPER_PART_CUT, RT_STATUS_ONLINE
from escpos.printer import Dummy

from print_agent.env import PRINTER_ENCODING
from print_agent.errors import ConfigurationIssue
from print_agent.models import JobType, ReceiptLine, StructuredReceipt

logger = logging.getLogger(__name__)

INIT = HW_INIT
CUT = PAPER_PART_CUT
STATUS_REQUEST = RT_STATUS_ONLINE  # DLE EOT 1, printer status

# nominal paper width (mm) -> Font A columns
KNOWN_WIDTHS = {58: 32, 80: 48}

DIAGNOSTIC_PAYLOAD_VERSION = 1
RULER = "1234567890" * 7
ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"


# -----------------------------
# Columns
# -----------------------------
def char_width(ch: str) -> int:
    if unicodedata.combining(ch) or unicodedata.category(ch) in ("Mn", "Me", "Cf", "Cc"):
        return 0
    if unicodedata.east_asian_width(ch) in ("W", "F"):
        return 2
    return 1


def text_width(text: str) -> int:
    return sum(char_width(ch) for ch in text)


def _split_word(word: str, columns: int) -> list[str]:
    parts, current, used = [], "", 0
    for ch in word:
        w = char_width(ch)
        if used + w > columns and current:
            parts.append(current)
            current, used = "", 0
        current += ch
        used += w
    if current:
        parts.append(current)
    return parts


def wrap(text: str, columns: int) -> list[str]:
    """Greedy word wrap on display columns; over-long words are hard-split."""
    if columns <= 0:
        raise ValueError("columns must be positive")
    if not text.strip():
        return [""]

    lines, current = [], ""
    for word in text.split():
        pieces = _split_word(word, columns) if text_width(word) > columns else [word]
        for piece in pieces:
            if not current:
                current = piece
            elif text_width(current) + 1 + text_width(piece) <= columns:
                current = f"{current} {piece}"
            else:
                lines.append(current)
                current = piece
    lines.append(current)
    return lines


def _pad_between(left: str, right: str, columns: int) -> str:
    gap = columns - text_width(left) - text_width(right)
    return left + " " * max(gap, 1) + right


def resolve_width(page_width: int, device=None):
    """Map a requested paper width to a known one.

    Unknown widths fall back to the nearest known width (ties go to the
    wider paper) and produce a non-fatal ConfigurationIssue.
    """
    if page_width in KNOWN_WIDTHS:
        return page_width, None
    nearest = min(KNOWN_WIDTHS, key=lambda w: (abs(w - page_width), -w))
    warning = ConfigurationIssue(
        device=device,
        issue=f"unsupported paper width {page_width}mm, using {nearest}mm",
        suggested_fix=f"Set the printer paper width to one of {sorted(KNOWN_WIDTHS)} mm in settings",
    )
    return nearest, warning


@dataclass
class EncodedReceipt:
    data: bytes
    columns: int
    page_width: int
    warnings: list = field(default_factory=list)


class EscPosEncoder:
    """``encoding`` is a code page name from the printer profile (CP437,
    CP858, ...) or ``AUTO`` to let python-escpos switch code pages per
    character."""

    def __init__(self, encoding: str = PRINTER_ENCODING):
        self.encoding = encoding

    def _printer(self) -> Dummy:
        p = Dummy()
        p.hw("INIT")
        if self.encoding.upper() == "AUTO":
            p.charcode("AUTO")
        else:
            # raises ValueError for code pages the profile does not know
            p.charcode(p.magic.encoder.get_encoding_name(self.encoding))
        return p

    def _line(self, p: Dummy, line: ReceiptLine, columns: int):
        cols = columns // 2 if line.double else columns
        p.set(
            align=line.align,
            bold=line.bold,
            underline=1 if line.underline else 0,
            normal_textsize=not line.double,
            double_height=line.double,
            double_width=line.double,
        )

        rows = wrap(line.text, cols)
        if line.right is not None:
            if text_width(rows[-1]) + 1 + text_width(line.right) <= cols:
                rows[-1] = _pad_between(rows[-1], line.right, cols)
            else:
                rows.append(" " * (cols - text_width(line.right)) + line.right)

        for row in rows:
            p.textln(unicodedata.normalize("NFC", row))

    def encode(self, receipt: StructuredReceipt, page_width: int, device=None) -> EncodedReceipt:
        width, warning = resolve_width(page_width, device)
        warnings = []
        if warning is not None:
            logger.warning("%s", warning.message)
            warnings.append(warning)
        columns = KNOWN_WIDTHS[width]

        p = self._printer()
        for line in receipt.lines:
            self._line(p, line, columns)
        p.set(align="left", bold=False, underline=0, normal_textsize=True)
        if receipt.feed_lines:
            p.print_and_feed(receipt.feed_lines)
        if receipt.cut:
            p.cut(mode="PART")
        return EncodedReceipt(data=p.output, columns=columns, page_width=width, warnings=warnings)


def has_cut(data: bytes) -> bool:
    return GS + b"V" in data


def ensure_cut(data: bytes) -> bytes:
    if has_cut(data):
        return data
    p = Dummy()
    p.cut(mode="PART")
    return data + p.output


# -----------------------------
# Decoding (diagnostics / tests)
# -----------------------------
# second byte -> number of parameter bytes
_ESC_PARAMS = {0x40: 0, 0x21: 1, 0x2D: 1, 0x45: 1, 0x47: 1, 0x4A: 1, 0x4D: 1,
               0x52: 1, 0x61: 1, 0x64: 1, 0x74: 1, 0x70: 2, 0x24: 2, 0x32: 0, 0x33: 1}
_GS_PARAMS = {0x21: 1, 0x42: 1, 0x48: 1, 0x68: 1, 0x77: 1, 0x4C: 2, 0x57: 2}
_DLE_PARAMS = {0x04: 1, 0x05: 1, 0x14: 3}


def _skip_command(data: bytes, i: int) -> int:
    prefix = data[i]
    if i + 1 >= len(data):
        return len(data)
    op = data[i + 1]
    if prefix == 0x1B:
        return i + 2 + _ESC_PARAMS.get(op, 0)
    if prefix == 0x10:
        return i + 2 + _DLE_PARAMS.get(op, 0)
    # GS
    if op == 0x56:  # GS V m [n]
        m = data[i + 2] if i + 2 < len(data) else 0
        return i + 3 + (1 if m in (65, 66) else 0)
    return i + 2 + _GS_PARAMS.get(op, 0)


def decode_text(data: bytes, encoding: str = PRINTER_ENCODING) -> list[str]:
    """Strip ESC/POS control sequences and return the printable lines."""
    text = bytearray()
    i = 0
    while i < len(data):
        b = data[i]
        if b in (0x1B, 0x1D, 0x10):
            i = _skip_command(data, i)
            continue
        if b != 0x0D:
            text.append(b)
        i += 1
    return text.decode(encoding, errors="replace").splitlines()


# -----------------------------
# Fixed test payloads
# -----------------------------
def diagnostic_lines() -> list[str]:
    lines = [f"DIAGNOSTIC TEST v{DIAGNOSTIC_PAYLOAD_VERSION}", RULER]
    for n in range(1, len(RULER) + 1):
        lines.append((ALPHABET * 3)[:n])
    lines.append("END OF TEST")
    return lines


def _fixed_page(lines: list[str]) -> bytes:
    p = Dummy()
    p.hw("INIT")
    p.set(align="left")
    for line in lines:
        p.textln(line)
    p.cut(mode="PART")
    return p.output


def diagnostic_payload() -> bytes:
    """Ruler + alphabet lines, never wrapped, so the paper shows the real width."""
    return _fixed_page(diagnostic_lines())


def direct_test_payload(printer: str, now=None) -> bytes:
    stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(now))
    return _fixed_page([
        "=== DIRECT BYPASS TEST ===",
        f"Printer: {printer}",
        f"Date: {stamp}",
        "Method: Status check bypass",
        "-" * 32,
        "PRINTER WORKING!",
        "Status checks: BYPASSED",
        "-" * 32,
    ])


def preset_test_receipt(job_type: JobType, printer: str) -> StructuredReceipt:
    """Test receipt for troubleshooting presets submitted without a payload."""
    label = job_type.value.replace("_", " ").upper()
    return StructuredReceipt(lines=[
        ReceiptLine(text=f"{label} TEST", align="center", bold=True),
        ReceiptLine(text=f"Printer: {printer}"),
        ReceiptLine(text=time.strftime("%Y-%m-%d %H:%M:%S")),
        ReceiptLine(text="Left", right="Right"),
        ReceiptLine(text="If this is cut cleanly, the mode works.", align="center"),
    ])
