#!/usr/bin/env python3
"""
motronic_rom_inspector.py — Motronic ROM Structure & Calibration Inspector
===========================================================================

by Jason King (pcmhacking.net: kingaustraliagg)
Founder — KingAi Pty Ltd
https://github.com/KingAiCodeForge

Offline analysis engine for Bosch Motronic 3.x ECU images (27C256/27C512
EPROM dumps, 32 KB or 64 KB). Loads a bin, pulls out the identity strings,
checks the 16-bit summation checksum, crawls for structural pointers and
candidate map headers, and reads/writes calibration tables through their
scaling formulas.

Target Hardware:
    ECU:    Bosch Motronic M3.1 / M3.3 / M3.3.1 (BMW M50/M52/S50 family)
    ROM:    27C256 (32 KB) or 27C512 (64 KB) EPROM dump
    CS:     16-bit byte sum, stored big-endian in the last 2 bytes

Architecture:
    Single-file module with a rich-based CLI.
    Pure functions over immutable byte images. Every scan pass is independent
    and side-effect free, so one image can be crawled any number of ways
    without one pass seeing another pass's scratch state.
    Scaling formulas go through a whitelisted expression evaluator,
    never eval().

Sections:
    0  — Imports, logging
    1  — Constants
    2  — Errors
    3  — ByteSource & value codec
    4  — Scaling formulas (forward / reverse)
    5  — Checksum
    6  — Identity scanner
    7  — Structure scanner
    8  — Map model
    9  — Map extraction & write-back
    10 — Definition library
    11 — Scan configuration
    12 — Parse engine
    13 — ROM file I/O & diff
    14 — CLI
    15 — Entry point

MIT License

Copyright (c) 2026 Jason King (pcmhacking.net: kingaustraliagg)

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 0 — IMPORTS & LOGGING
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import sys
import re
import ast
import copy
import json
import math
import logging
import argparse
import operator
import dataclasses
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Tuple, Dict, Any, Sequence, Iterable, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.markup import escape
from rich import box

# ── Version & Metadata ──
__version__ = "0.1.0"
__app_name__ = "KingAI Motronic ROM Inspector"
__target_ecm__ = "Bosch Motronic M3.x (32/64 KB)"

LOG_DIR = Path(__file__).resolve().parent / "logs"
LOGGER_NAME = "rom_inspector"

log = logging.getLogger(LOGGER_NAME)


def setup_logging(
    name: str = LOGGER_NAME,
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Configure and return a logger.

    Args:
        name:          Logger name and log-file prefix.
        level:         Root level (DEBUG captures everything to file).
        console_level: Level for console/terminal output (WARNING+ by
                       default so the rich tables aren't cluttered).
        log_dir:       Override log directory (default: logs/ next to this file).
        rich_console:  Use the Rich handler for the console.

    Returns:
        Configured ``logging.Logger`` instance.

    Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
    """
    log_dir = Path(log_dir) if log_dir else LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: captures everything (DEBUG+) ──
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{name}_{ts}.log"
    file_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_fmt)
    logger.addHandler(fh)

    # ── Console handler: only important stuff (WARNING+ default) ──
    if rich_console:
        ch = RichHandler(
            level=console_level,
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    else:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S",
        ))
    ch.setLevel(console_level)
    logger.addHandler(ch)

    # Startup banner (file only)
    logger.info("=" * 60)
    logger.info("Logger initialized: %s", name)
    logger.info("Log file: %s", log_file)
    logger.info("Console level: %s", logging.getLevelName(console_level))
    logger.info("=" * 60)

    return logger


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1 — CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

# Standard EPROM sizes for this family
ROM_SIZE_27C256 = 32768
ROM_SIZE_27C512 = 65536
STANDARD_ROM_SIZES = (ROM_SIZE_27C256, ROM_SIZE_27C512)

# Checksum
CHECKSUM_TRAILER_SIZE = 2
MIN_CHECKSUM_IMAGE_SIZE = 0x4000   # below 16 KB a byte sum means nothing

# Identity
BOSCH_HW_PREFIX = "0261"           # Bosch hardware part numbers
BOSCH_SW_PREFIX = "1267"           # Bosch software/calibration numbers
BOSCH_ID_DIGITS = 10
ID_SEPARATORS = frozenset(b" .-\x00")
UNKNOWN = "Unknown"

# Structure scan tuning
SELF_POINTER_MAX_BLOCKS = 10
POINTER_LIST_MIN_LENGTH = 4
POINTER_LIST_MISS_BUDGET = 2
POINTER_LIST_MAX = 8
POINTER_ADDRESS_GUARD = 0x1000     # low addresses are RAM/registers, not ROM tables

# Heuristic map-header crawl
MAP_HEADER_TAG = 0x02
MAP_HEADER_ROW_COUNTS = (8, 10, 12, 16)
MAP_HEADER_MAX_CANDIDATES = 15
MAP_HEADER_SKIP = 16
MAP_HEADER_TAIL_MARGIN = 64

# Loader sanity checks
MIN_LOADABLE_SIZE = 100
HTML_SNIFF_BYTES = 50
HTML_MARKERS = ("<!doc", "<html", "<script")

# Identity map / diagnostics categories
CATEGORY_IDENTITY = "Header / Identity"
CATEGORY_SELF_POINTERS = "Structural Pointers"
CATEGORY_POINTER_LISTS = "Pointer Registry"
CATEGORY_HEURISTIC = "Heuristic Findings"
CATEGORY_CANDIDATES = "Map Candidates"
CATEGORY_USER = "User Definitions"


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2 — ERRORS
# ═══════════════════════════════════════════════════════════════════════

class RomInspectorError(Exception):
    """Base class for inspector errors."""


class RomRangeError(RomInspectorError):
    """A write request falls outside the ROM image."""


class DefinitionError(RomInspectorError):
    """A map/axis/definition or config dict is malformed."""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3 — BYTE SOURCE & VALUE CODEC
# ═══════════════════════════════════════════════════════════════════════

class Endian(str, Enum):
    """Byte order for 16-bit cells. JSON values are 'be' / 'le'."""
    BIG = "be"
    LITTLE = "le"


class ByteSource:
    """
    Immutable ROM image.

    Wraps ``bytes`` so nothing can change the image while a scan or
    extraction is running. Writes go through ``to_bytearray()`` and come
    back as a new ByteSource.
    """

    __slots__ = ("_data", "name")

    def __init__(self, data: Union[bytes, bytearray, memoryview], name: str = ""):
        self._data = bytes(data)
        self.name = name

    @classmethod
    def from_buffer(cls, buf: Union[bytes, bytearray, "ByteSource"], name: str = "") -> "ByteSource":
        if isinstance(buf, ByteSource):
            return buf
        return cls(buf, name)

    @property
    def data(self) -> bytes:
        return self._data

    def to_bytearray(self) -> bytearray:
        """Mutable copy for the write path."""
        return bytearray(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __getitem__(self, key):
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __bytes__(self) -> bytes:
        return self._data

    def __eq__(self, other) -> bool:
        if isinstance(other, ByteSource):
            return self._data == other._data
        if isinstance(other, (bytes, bytearray)):
            return self._data == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._data)

    def __repr__(self) -> str:
        return f"ByteSource(name={self.name!r}, size={len(self._data)})"


Buffer = Union[bytes, bytearray, ByteSource]


def _as_bytes(buf: Buffer) -> bytes:
    if isinstance(buf, ByteSource):
        return buf.data
    if isinstance(buf, bytes):
        return buf
    return bytes(buf)


def _check_width(bit_width: int) -> int:
    if bit_width not in (8, 16):
        raise ValueError(f"Unsupported bit width: {bit_width} (expected 8 or 16)")
    return bit_width // 8


def read_int(buf: Buffer, offset: int, bit_width: int = 8, endian: Endian = Endian.BIG) -> int:
    """
    Read an unsigned 8/16-bit value.

    Out-of-range reads return 0 instead of raising, so one bad cell in a
    speculative map never kills a whole scan.
    """
    step = _check_width(bit_width)
    if offset < 0 or offset + step > len(buf):
        return 0
    if step == 1:
        return buf[offset]
    if Endian(endian) is Endian.LITTLE:
        return buf[offset] | (buf[offset + 1] << 8)
    return (buf[offset] << 8) | buf[offset + 1]


def write_int(buf: bytearray, offset: int, bit_width: int, endian: Endian, value: int) -> None:
    """
    Write an unsigned 8/16-bit value, clamped (not wrapped) to the cell range.

    Raises:
        RomRangeError: the cell does not fit inside ``buf``.
    """
    step = _check_width(bit_width)
    if offset < 0 or offset + step > len(buf):
        raise RomRangeError(
            f"Write of {bit_width}-bit value at 0x{offset:X} outside image of {len(buf)} bytes")
    limit = 0xFF if step == 1 else 0xFFFF
    value = max(0, min(limit, int(value)))
    if step == 1:
        buf[offset] = value
    elif Endian(endian) is Endian.LITTLE:
        buf[offset] = value & 0xFF
        buf[offset + 1] = (value >> 8) & 0xFF
    else:
        buf[offset] = (value >> 8) & 0xFF
        buf[offset + 1] = value & 0xFF


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4 — SCALING FORMULAS (FORWARD / REVERSE)
# ═══════════════════════════════════════════════════════════════════════

# Only + - * / ( ), unary sign, numbers and X
_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_ALLOWED_NODES = (
    ast.Expression, ast.BinOp, ast.UnaryOp, ast.Constant, ast.Name, ast.Load,
    *_BIN_OPS.keys(), *_UNARY_OPS.keys(),
)
_FACTOR_NUMBER = re.compile(r"\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:E[-+]?\d+)?)")


def _round_half_up(value: float) -> int:
    """Round like the tuner UI does: halves go up, not to even."""
    if not math.isfinite(value):
        return 0
    return int(math.floor(value + 0.5))


def _literal(node: ast.AST) -> Optional[float]:
    """Numeric literal with optional sign, else None."""
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        inner = _literal(node.operand)
        if inner is None:
            return None
        return -inner if isinstance(node.op, ast.USub) else inner
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        try:
            return float(node.value)
        except OverflowError:
            return None
    return None


def _is_x(node: ast.AST) -> bool:
    return isinstance(node, ast.Name) and node.id == "X"


def _eval_node(node: ast.AST, x: float) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body, x)
    if isinstance(node, ast.Constant):
        return float(node.value)
    if isinstance(node, ast.Name):
        return float(x)
    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand, x))
    if isinstance(node, ast.BinOp):
        return _BIN_OPS[type(node.op)](_eval_node(node.left, x), _eval_node(node.right, x))
    raise ValueError(f"Unsupported node: {type(node).__name__}")


class Formula:
    """
    A compiled scaling formula, ``X`` = raw integer.

    Parsing happens once per map, then ``forward`` runs per cell. Anything
    that isn't plain arithmetic on X is rejected at compile time and the
    formula degrades to identity.
    """

    def __init__(self, text: Optional[str] = None):
        self.text = text or ""
        self.normalized = self.text.strip().upper()
        self.identity = self.normalized in ("", "X")
        self.valid = True
        self._tree: Optional[ast.Expression] = None
        if not self.identity:
            self._tree = self._parse(self.normalized)
            self.valid = self._tree is not None

    @classmethod
    def compile(cls, text: Optional[str]) -> "Formula":
        return cls(text)

    @staticmethod
    def _parse(expr: str) -> Optional[ast.Expression]:
        try:
            tree = ast.parse(expr, mode="eval")
        except (SyntaxError, ValueError, RecursionError, MemoryError):
            log.debug("Unparseable formula %r", expr)
            return None
        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_NODES):
                log.debug("Formula %r uses disallowed %s", expr, type(node).__name__)
                return None
            if isinstance(node, ast.Name) and node.id != "X":
                log.debug("Formula %r references unknown name %r", expr, node.id)
                return None
            if isinstance(node, ast.Constant) and type(node.value) not in (int, float):
                return None
        return tree

    def forward(self, x: float) -> float:
        """Raw → engineering value. Returns ``x`` unchanged on any failure."""
        if self.identity or self._tree is None:
            return x
        try:
            result = _eval_node(self._tree, x)
        except (ZeroDivisionError, OverflowError, ValueError, RecursionError):
            return x
        if not math.isfinite(result):
            return x
        return result

    def _linear_inverse(self, target: float) -> Optional[int]:
        """Exact inverse for ``X/k``, ``X*k`` and ``k*X``."""
        body = self._tree.body
        if not isinstance(body, ast.BinOp) or not isinstance(body.op, (ast.Mult, ast.Div)):
            return None
        k = None
        if _is_x(body.left):
            k = _literal(body.right)
        elif isinstance(body.op, ast.Mult) and _is_x(body.right):
            k = _literal(body.left)
        if not k:
            return None
        if isinstance(body.op, ast.Div):
            return _round_half_up(target * k)
        return _round_half_up(target / k)

    def _factor_inverse(self, target: float) -> int:
        # 16-bit fallback: first *factor, then first /factor, else identity
        for symbol in ("*", "/"):
            idx = self.normalized.find(symbol)
            if idx < 0:
                continue
            m = _FACTOR_NUMBER.match(self.normalized, idx + 1)
            factor = float(m.group(1)) if m else 0.0
            factor = factor or 1.0
            if symbol == "*":
                return _round_half_up(target / factor)
            return _round_half_up(target * factor)
        return _round_half_up(target)

    def reverse(self, target: float, data_size: int = 8) -> int:
        """
        Engineering value → raw integer, best effort.

        8-bit formulas that aren't a plain scale get an exhaustive search of
        all 256 raw values (first minimum wins). 16-bit ones fall back to
        the first ``*factor`` / ``/factor`` token.
        """
        if self.identity:
            return _round_half_up(target)
        if not math.isfinite(target):
            return 0
        if self._tree is not None:
            exact = self._linear_inverse(target)
            if exact is not None:
                return exact
        if data_size == 8:
            best_raw, best_diff = 0, math.inf
            for raw in range(256):
                diff = abs(self.forward(raw) - target)
                if diff < best_diff:
                    best_raw, best_diff = raw, diff
            return best_raw
        return self._factor_inverse(target)

    def __repr__(self) -> str:
        return f"Formula({self.text!r})"


def evaluate_formula(formula: Optional[str], x: float) -> float:
    """Apply a scaling formula to one raw value."""
    return Formula(formula).forward(x)


def reverse_formula(formula: Optional[str], target: float, data_size: int = 8) -> int:
    """Invert a scaling formula for write-back."""
    return Formula(formula).reverse(target, data_size)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5 — CHECKSUM
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ChecksumLayout:
    """
    Where the stored checksum lives.

    ``trailer_offset=None`` is the stock layout (last 2 bytes of the image).
    Revised layouts pin it at a fixed file offset instead.
    """
    trailer_offset: Optional[int] = None
    min_image_size: int = MIN_CHECKSUM_IMAGE_SIZE

    def trailer_start(self, size: int) -> int:
        if self.trailer_offset is None:
            return size - CHECKSUM_TRAILER_SIZE
        return self.trailer_offset

    def trailer_in_range(self, size: int) -> bool:
        start = self.trailer_start(size)
        return 0 <= start and start + CHECKSUM_TRAILER_SIZE <= size


def image_sum16(buf: Buffer) -> int:
    """16-bit sum of the whole image, trailer included. Library fingerprint."""
    return sum(_as_bytes(buf)) & 0xFFFF


def calculate_checksum(buf: Buffer, layout: Optional[ChecksumLayout] = None) -> int:
    """16-bit byte sum of everything except the 2 trailer bytes."""
    layout = layout or ChecksumLayout()
    data = _as_bytes(buf)
    start = layout.trailer_start(len(data))
    if start < 0:
        return sum(data) & 0xFFFF
    total = sum(data[:start]) + sum(data[start + CHECKSUM_TRAILER_SIZE:])
    return total & 0xFFFF


def stored_checksum(buf: Buffer, layout: Optional[ChecksumLayout] = None) -> Optional[int]:
    """Big-endian value in the trailer, or None if the trailer is off the end."""
    layout = layout or ChecksumLayout()
    if not layout.trailer_in_range(len(buf)):
        return None
    return read_int(buf, layout.trailer_start(len(buf)), 16, Endian.BIG)


def verify_checksum(buf: Buffer, layout: Optional[ChecksumLayout] = None) -> bool:
    """Check if the stored checksum matches the computed one."""
    layout = layout or ChecksumLayout()
    if len(buf) < layout.min_image_size:
        return False
    stored = stored_checksum(buf, layout)
    if stored is None:
        return False
    return calculate_checksum(buf, layout) == stored


def fix_checksum(buf: bytearray, layout: Optional[ChecksumLayout] = None) -> Tuple[int, int]:
    """
    Compute and write the correct checksum into the trailer.
    Returns (old_checksum, new_checksum).
    """
    layout = layout or ChecksumLayout()
    old_cs = stored_checksum(buf, layout)
    if old_cs is None:
        raise RomRangeError(f"Checksum trailer outside image of {len(buf)} bytes")
    new_cs = calculate_checksum(buf, layout)
    write_int(buf, layout.trailer_start(len(buf)), 16, Endian.BIG, new_cs)
    return old_cs, new_cs


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6 — IDENTITY SCANNER
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class IdentityMatch:
    """A located identity string. ``offset`` is the lowest byte address."""
    text: str
    offset: int
    size: int
    reversed: bool = False


@dataclass(frozen=True)
class IdentityPattern:
    """One named identity matcher: either a digit prefix or a regex."""
    id: str
    label: str
    prefix: Optional[str] = None
    regex: Optional[str] = None


def default_identity_patterns() -> List[IdentityPattern]:
    return [
        IdentityPattern("hw_id", "Hardware ID", prefix=BOSCH_HW_PREFIX),
        IdentityPattern("sw_id", "Software ID", prefix=BOSCH_SW_PREFIX),
        IdentityPattern("id_num", "ID / Release", regex=r"\d{3}\.\d{2}"),
        IdentityPattern("label_num", "Production Label", regex=r"\d{5}[A-Z]{2}\d{4}"),
    ]


def _is_digit(byte: int) -> bool:
    return 0x30 <= byte <= 0x39


def _walk_forward(data: bytes, start: int, prefix: str, total_digits: int) -> Optional[IdentityMatch]:
    digits = list(prefix)
    p = start + len(prefix)
    last = p - 1
    while len(digits) < total_digits and p < len(data):
        byte = data[p]
        if _is_digit(byte):
            digits.append(chr(byte))
            last = p
        elif byte not in ID_SEPARATORS:
            break
        p += 1
    if len(digits) != total_digits:
        return None
    return IdentityMatch("".join(digits), start, last - start + 1, False)


def _walk_reversed(data: bytes, start: int, prefix: str, total_digits: int) -> Optional[IdentityMatch]:
    # Mirrored prefix sits at [start, start+len); its last byte is the first
    # logical digit, so read leftward from there.
    end = start + len(prefix) - 1
    p = end
    first = end
    digits: List[str] = []
    while len(digits) < total_digits:
        if p < 0:
            return None
        byte = data[p]
        if _is_digit(byte):
            digits.append(chr(byte))
            first = p
        elif byte not in ID_SEPARATORS:
            break
        p -= 1
    if len(digits) != total_digits:
        return None
    return IdentityMatch("".join(digits), first, end - first + 1, True)


def find_prefixed_id(
    buf: Buffer,
    prefix: str,
    total_digits: int = BOSCH_ID_DIGITS,
    reversed: bool = False,
) -> Optional[IdentityMatch]:
    """
    Find a Bosch-style numeric ID (e.g. ``0261200413``) by its prefix.

    Args:
        prefix:       Leading digits in logical order.
        total_digits: Exact digit count of a valid ID.
        reversed:     Look for the byte-reversed encoding instead.

    Spaces, dots, dashes and NULs between digits are skipped; any other
    byte ends the candidate. First hit scanning upward wins.
    """
    data = _as_bytes(buf)
    needle = (prefix[::-1] if reversed else prefix).encode("ascii")
    walk = _walk_reversed if reversed else _walk_forward
    pos = data.find(needle)
    while pos != -1:
        match = walk(data, pos, prefix, total_digits)
        if match is not None:
            return match
        pos = data.find(needle, pos + 1)
    return None


def find_pattern(buf: Buffer, regex: str) -> Optional[IdentityMatch]:
    """First regex hit over the ASCII view of the image (1 char per byte)."""
    text = _as_bytes(buf).decode("latin-1")
    m = re.search(regex, text, re.ASCII)
    if m is None:
        return None
    return IdentityMatch(m.group(0), m.start(), m.end() - m.start(), False)


def scan_identity(
    buf: Buffer,
    patterns: Optional[Sequence[IdentityPattern]] = None,
    total_digits: int = BOSCH_ID_DIGITS,
) -> Dict[str, IdentityMatch]:
    """
    Run every identity pattern and collect the hits by pattern id.

    A matcher that blows up (bad regex etc.) is logged and skipped; the
    rest still run.
    """
    patterns = default_identity_patterns() if patterns is None else patterns
    found: Dict[str, IdentityMatch] = {}
    for pattern in patterns:
        try:
            if pattern.prefix:
                match = (find_prefixed_id(buf, pattern.prefix, total_digits)
                         or find_prefixed_id(buf, pattern.prefix, total_digits, reversed=True))
            elif pattern.regex:
                match = find_pattern(buf, pattern.regex)
            else:
                log.warning("Identity pattern %s has neither prefix nor regex", pattern.id)
                continue
        except (re.error, ValueError) as e:
            log.warning("Identity matcher %s failed: %s", pattern.id, e)
            continue
        if match is not None:
            log.debug("Identity %s = %s @ 0x%04X", pattern.id, match.text, match.offset)
            found[pattern.id] = match
    return found


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7 — STRUCTURE SCANNER
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SelfPointerBlock:
    """Run of consecutive words whose value equals their own offset."""
    offset: int
    length: int
    endian: Endian


@dataclass(frozen=True)
class PointerList:
    """Run of words that look like ROM addresses."""
    offset: int
    count: int      # words spanned, first pointer to last pointer
    hits: int       # words that actually qualified
    endian: Endian


@dataclass(frozen=True)
class HeaderCandidate:
    """Tag byte + row count that might introduce a map."""
    header_offset: int
    offset: int
    rows: int
    cols: int = 1
    data_size: int = 8


def find_self_pointers(buf: Buffer, max_blocks: int = SELF_POINTER_MAX_BLOCKS) -> List[SelfPointerBlock]:
    """
    Scan every even offset for a 16-bit word equal to that offset.

    BE is checked before LE. Consecutive hits with the same byte order are
    grouped into one block; the longest ``max_blocks`` blocks are returned.
    """
    data = _as_bytes(buf)
    blocks: List[SelfPointerBlock] = []
    run_start, run_len, run_endian = 0, 0, None

    # Offset 0 is skipped: a zero word there is erased space, not a pointer.
    for i in range(2, len(data) - 1, 2):
        endian = None
        if ((data[i] << 8) | data[i + 1]) == i:
            endian = Endian.BIG
        elif (data[i] | (data[i + 1] << 8)) == i:
            endian = Endian.LITTLE

        if endian is not None and endian is run_endian and i == run_start + run_len * 2:
            run_len += 1
            continue
        if run_endian is not None:
            blocks.append(SelfPointerBlock(run_start, run_len, run_endian))
        run_start, run_len, run_endian = (i, 1, endian) if endian else (0, 0, None)

    if run_endian is not None:
        blocks.append(SelfPointerBlock(run_start, run_len, run_endian))

    blocks.sort(key=lambda b: (-b.length, b.offset))
    log.debug("Self-pointer scan: %d blocks (keeping %d)", len(blocks), max_blocks)
    return blocks[:max_blocks]


def _pointer_runs(data: bytes, endian: Endian, anchor_offsets: set, min_length: int,
                  miss_budget: int, address_guard: int) -> Iterable[PointerList]:
    size = len(data)
    start: Optional[int] = None
    last = hits = misses = 0
    for i in range(0, size - 1, 2):
        value = read_int(data, i, 16, endian)
        if (address_guard < value < size and value % 2 == 0) or value in anchor_offsets:
            if start is None:
                start, hits = i, 0
            hits += 1
            last = i
            misses = 0
        elif start is not None:
            misses += 1
            if misses > miss_budget:
                if hits >= min_length:
                    yield PointerList(start, (last - start) // 2 + 1, hits, endian)
                start = None
    if start is not None and hits >= min_length:
        yield PointerList(start, (last - start) // 2 + 1, hits, endian)


def find_pointer_lists(
    buf: Buffer,
    anchors: Iterable[SelfPointerBlock] = (),
    min_length: int = POINTER_LIST_MIN_LENGTH,
    miss_budget: int = POINTER_LIST_MISS_BUDGET,
    max_lists: int = POINTER_LIST_MAX,
    address_guard: int = POINTER_ADDRESS_GUARD,
) -> List[PointerList]:
    """
    Find runs of 16-bit words that point into the image.

    A word qualifies when it is an even address above ``address_guard`` and
    inside the image, or when it points at a known self-pointer anchor.
    Up to ``miss_budget`` non-qualifying words in a row are absorbed before
    the run closes. Runs need ``min_length`` qualifying words.
    """
    data = _as_bytes(buf)
    anchor_offsets = {b.offset + 2 * k for b in anchors for k in range(b.length)}
    lists: List[PointerList] = []
    for endian in (Endian.BIG, Endian.LITTLE):
        lists.extend(_pointer_runs(data, endian, anchor_offsets, min_length, miss_budget, address_guard))

    lists.sort(key=lambda p: (-p.count, p.offset))
    log.debug("Pointer-list scan: %d runs (keeping %d)", len(lists), max_lists)
    return lists[:max_lists]


def crawl_for_maps(
    buf: Buffer,
    tag: int = MAP_HEADER_TAG,
    row_counts: Sequence[int] = MAP_HEADER_ROW_COUNTS,
    max_candidates: int = MAP_HEADER_MAX_CANDIDATES,
    skip: int = MAP_HEADER_SKIP,
    tail_margin: int = MAP_HEADER_TAIL_MARGIN,
) -> List[HeaderCandidate]:
    """Last-resort signature crawl: ``tag`` then a plausible row count."""
    data = _as_bytes(buf)
    rows_allowed = frozenset(row_counts)
    candidates: List[HeaderCandidate] = []
    i = 0
    limit = len(data) - max(tail_margin, 1)
    while i < limit and len(candidates) < max_candidates:
        if data[i] == tag and data[i + 1] in rows_allowed:
            candidates.append(HeaderCandidate(i, i + 2, data[i + 1]))
            i += skip
        i += 1
    log.debug("Header crawl: %d candidates", len(candidates))
    return candidates


# ═══════════════════════════════════════════════════════════════════════
# SECTION 8 — MAP MODEL
# ═══════════════════════════════════════════════════════════════════════

class MapDimension(str, Enum):
    VALUE = "Value"
    CURVE_1D = "1D"
    TABLE_2D = "2D"
    SURFACE_3D = "3D"
    FLAG = "Flag"


class MapType(str, Enum):
    SCALAR = "Scalar"
    FUNCTION = "Function"   # 1D
    TABLE = "Table"         # 2D/3D
    FLAG = "Flag"
    STRING = "String"


class AxisSource(str, Enum):
    STEP = "Step"               # index * step value
    ROM = "ROM Address"         # stored in the image
    DISABLED = "None/Disabled"


def _enum(cls, value, what: str):
    try:
        return cls(value)
    except ValueError:
        raise DefinitionError(f"Invalid {what}: {value!r}") from None


@dataclass
class Axis:
    """One table axis (RPM, load, ADC step...)."""
    label: str = ""
    unit: str = ""
    size: int = 1
    offset: int = 0
    source: AxisSource = AxisSource.STEP
    step_value: Optional[float] = None
    data_size: int = 8
    endian: Endian = Endian.BIG
    formula: str = "X"
    values: List[float] = field(default_factory=list)

    def __post_init__(self):
        if self.data_size not in (8, 16):
            raise DefinitionError(f"Axis {self.label!r}: dataSize must be 8 or 16, got {self.data_size}")

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "label": self.label,
            "unit": self.unit,
            "size": self.size,
            "offset": self.offset,
            "source": self.source.value,
            "dataSize": self.data_size,
            "endian": self.endian.value,
            "formula": self.formula,
        }
        if self.step_value is not None:
            d["stepValue"] = self.step_value
        if self.values:
            d["values"] = list(self.values)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Axis":
        if not isinstance(d, dict):
            raise DefinitionError(f"Axis must be an object, got {type(d).__name__}")
        data_size = d.get("dataSize", 8)
        if data_size not in (8, 16):
            raise DefinitionError(f"Axis dataSize must be 8 or 16, got {data_size!r}")
        try:
            return cls(
                label=str(d.get("label", "")),
                unit=str(d.get("unit", "")),
                size=int(d.get("size", 1)) or 1,
                offset=int(d.get("offset", 0)),
                source=_enum(AxisSource, d.get("source", AxisSource.STEP.value), "axis source"),
                step_value=d.get("stepValue"),
                data_size=data_size,
                endian=_enum(Endian, d.get("endian") or Endian.BIG.value, "endian"),
                formula=d.get("formula") or "X",
                values=[float(v) for v in d.get("values") or []],
            )
        except (TypeError, ValueError) as e:
            raise DefinitionError(f"Bad axis definition: {e}") from e


@dataclass
class MapDescriptor:
    """
    A calibration map in the ROM.

    The dimension tag is descriptive only; extraction always walks
    ``rows × cols`` cells row-major from ``offset``.
    """
    id: str
    name: str = ""
    offset: int = 0
    rows: int = 1
    cols: int = 1
    data_size: int = 8
    endian: Endian = Endian.BIG
    formula: str = "X"
    x_axis: Optional[Axis] = None
    y_axis: Optional[Axis] = None
    description: str = ""
    type: MapType = MapType.TABLE
    dimension: Optional[MapDimension] = None
    unit: str = ""
    category: str = "General"
    mask: Optional[int] = None

    def __post_init__(self):
        if self.rows < 1 or self.cols < 1:
            raise DefinitionError(f"Map {self.id}: rows/cols must be >= 1 ({self.rows}x{self.cols})")
        if self.data_size not in (8, 16):
            raise DefinitionError(f"Map {self.id}: dataSize must be 8 or 16, got {self.data_size}")
        if not self.name:
            self.name = self.id
        if self.dimension is None:
            self.dimension = derive_dimension(self.rows, self.cols, self.x_axis, self.y_axis)

    @property
    def cell_width(self) -> int:
        return self.data_size // 8

    @property
    def byte_size(self) -> int:
        return self.rows * self.cols * self.cell_width

    @property
    def end_offset(self) -> int:
        return self.offset + self.byte_size

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "offset": self.offset,
            "dimension": self.dimension.value,
            "dataSize": self.data_size,
            "endian": self.endian.value,
            "rows": self.rows,
            "cols": self.cols,
            "formula": self.formula,
            "unit": self.unit,
            "category": self.category,
        }
        if self.x_axis is not None:
            d["xAxis"] = self.x_axis.to_dict()
        if self.y_axis is not None:
            d["yAxis"] = self.y_axis.to_dict()
        if self.mask is not None:
            d["mask"] = self.mask
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MapDescriptor":
        if not isinstance(d, dict):
            raise DefinitionError(f"Map must be an object, got {type(d).__name__}")
        missing = [k for k in ("id", "offset", "rows", "cols") if k not in d]
        if missing:
            raise DefinitionError(f"Map definition missing keys: {', '.join(missing)}")
        try:
            return cls(
                id=str(d["id"]),
                name=str(d.get("name", "")),
                offset=int(d["offset"]),
                rows=int(d["rows"]),
                cols=int(d["cols"]),
                data_size=int(d.get("dataSize", 8)),
                endian=_enum(Endian, d.get("endian") or Endian.BIG.value, "endian"),
                formula=d.get("formula") or "X",
                x_axis=Axis.from_dict(d["xAxis"]) if d.get("xAxis") else None,
                y_axis=Axis.from_dict(d["yAxis"]) if d.get("yAxis") else None,
                description=str(d.get("description", "")),
                type=_enum(MapType, d.get("type", MapType.TABLE.value), "map type"),
                dimension=_enum(MapDimension, d["dimension"], "dimension") if d.get("dimension") else None,
                unit=str(d.get("unit", "")),
                category=str(d.get("category") or "General"),
                mask=d.get("mask"),
            )
        except (TypeError, ValueError) as e:
            raise DefinitionError(f"Bad map definition {d.get('id')!r}: {e}") from e


def derive_dimension(rows: int, cols: int, x_axis: Optional[Axis] = None,
                     y_axis: Optional[Axis] = None) -> MapDimension:
    if rows == 1 and cols == 1:
        return MapDimension.VALUE
    if rows == 1 or cols == 1:
        return MapDimension.CURVE_1D
    if x_axis is not None and y_axis is not None:
        return MapDimension.SURFACE_3D
    return MapDimension.TABLE_2D


def candidate_from_range(start: int, end: int) -> MapDescriptor:
    """Pin a raw byte selection (either direction) as a one-row candidate."""
    lo = min(start, end)
    size = abs(end - start) + 1
    return MapDescriptor(
        id=f"candidate_{lo:04X}_{size}",
        name=f"Candidate @ 0x{lo:04X}",
        offset=lo, rows=1, cols=size, data_size=8,
        endian=Endian.BIG, type=MapType.TABLE, dimension=MapDimension.TABLE_2D,
        unit="Raw", formula="X", category=CATEGORY_CANDIDATES,
    )


def promote_candidate(candidate: MapDescriptor, **changes) -> MapDescriptor:
    """
    Turn an advisory candidate into a real definition.

    Returns a new descriptor; the candidate itself is left alone.
    """
    promoted = copy.deepcopy(candidate)
    if "category" not in changes and promoted.category in (CATEGORY_HEURISTIC, CATEGORY_CANDIDATES):
        changes["category"] = CATEGORY_USER
    if ("rows" in changes or "cols" in changes) and "dimension" not in changes:
        changes["dimension"] = None
    return dataclasses.replace(promoted, **changes)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 9 — MAP EXTRACTION & WRITE-BACK
# ═══════════════════════════════════════════════════════════════════════

def extract_map_data(buf: Buffer, table: MapDescriptor) -> List[List[float]]:
    """
    Read a map as engineering values, row-major.

    Cells past the end of the image come back as exactly 0; the grid is
    always ``rows × cols``.
    """
    formula = Formula.compile(table.formula)
    step = table.cell_width
    size = len(buf)
    grid: List[List[float]] = []
    offset = table.offset
    clipped = 0
    for _ in range(table.rows):
        row: List[float] = []
        for _ in range(table.cols):
            if offset < 0 or offset + step > size:
                row.append(0)
                clipped += 1
            else:
                raw = read_int(buf, offset, table.data_size, table.endian)
                row.append(round(formula.forward(raw), 3))
            offset += step
        grid.append(row)
    if clipped:
        log.debug("Map %s: %d cells outside image, zero-filled", table.id, clipped)
    return grid


def get_axis_values(buf: Buffer, axis: Optional[Axis]) -> List[float]:
    """Resolve an axis to its display values."""
    if axis is None:
        return []
    if axis.values:
        return list(axis.values)
    if axis.source is AxisSource.DISABLED:
        return []
    size = axis.size or 1
    formula = Formula.compile(axis.formula)
    if axis.source is AxisSource.STEP:
        step = axis.step_value or 1
        return [formula.forward(i * step) for i in range(size)]

    width = axis.data_size // 8
    if axis.offset < 0 or axis.offset + size * width > len(buf):
        log.debug("Axis %r at 0x%X overruns image, zero-filled", axis.label, axis.offset)
        return [0] * size
    return [
        formula.forward(read_int(buf, axis.offset + i * width, axis.data_size, axis.endian))
        for i in range(size)
    ]


def write_map_data(buf: bytearray, table: MapDescriptor, grid: Sequence[Sequence[float]]) -> None:
    """
    Write a grid of engineering values back into the image.

    Raises:
        ValueError:    grid is not ``rows × cols``.
        RomRangeError: the map does not fit inside ``buf``. Nothing is written.
    """
    if len(grid) != table.rows or any(len(row) != table.cols for row in grid):
        raise ValueError(f"Grid shape does not match map {table.id} ({table.rows}x{table.cols})")
    if table.offset < 0 or table.end_offset > len(buf):
        raise RomRangeError(
            f"Map {table.id} spans 0x{table.offset:X}-0x{table.end_offset:X}, "
            f"image is {len(buf)} bytes")
    formula = Formula.compile(table.formula)
    offset = table.offset
    for row in grid:
        for value in row:
            raw = formula.reverse(value, table.data_size)
            write_int(buf, offset, table.data_size, table.endian, raw)
            offset += table.cell_width


def commit_edits(
    source: Buffer,
    edits: Iterable[Tuple[MapDescriptor, Sequence[Sequence[float]]]],
    layout: Optional[ChecksumLayout] = None,
) -> ByteSource:
    """
    Apply edited grids to a copy of the image, then fix the checksum once.

    Returns the new image; ``source`` is untouched.
    """
    name = source.name if isinstance(source, ByteSource) else ""
    buf = bytearray(_as_bytes(source))
    count = 0
    for table, grid in edits:
        write_map_data(buf, table, grid)
        count += 1
    old_cs, new_cs = fix_checksum(buf, layout)
    log.info("Committed %d map(s), checksum 0x%04X -> 0x%04X", count, old_cs, new_cs)
    return ByteSource(buf, name)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 10 — DEFINITION LIBRARY
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class RomDefinition:
    """A known ROM version and its map set."""
    id: str
    hw: str
    sw: str
    description: str = ""
    maps: List[MapDescriptor] = field(default_factory=list)
    name: str = ""
    motronic_version: str = ""
    is_built_in: bool = False
    version: Optional[int] = None
    expected_size: Optional[int] = None
    expected_checksum16: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "hw": self.hw,
            "sw": self.sw,
            "description": self.description,
            "maps": [m.to_dict() for m in self.maps],
        }
        optional = {
            "name": self.name or None,
            "motronicVersion": self.motronic_version or None,
            "isBuiltIn": self.is_built_in or None,
            "version": self.version,
            "expectedSize": self.expected_size,
            "expectedChecksum16": self.expected_checksum16,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RomDefinition":
        if not isinstance(d, dict):
            raise DefinitionError(f"Definition must be an object, got {type(d).__name__}")
        missing = [k for k in ("id", "hw", "sw") if k not in d]
        if missing:
            raise DefinitionError(f"Definition missing keys: {', '.join(missing)}")
        maps = d.get("maps") or []
        if not isinstance(maps, list):
            raise DefinitionError(f"Definition {d['id']!r}: maps must be a list")
        return cls(
            id=str(d["id"]),
            hw=str(d["hw"]),
            sw=str(d["sw"]),
            description=str(d.get("description", "")),
            maps=[MapDescriptor.from_dict(m) for m in maps],
            name=str(d.get("name", "")),
            motronic_version=str(d.get("motronicVersion", "")),
            is_built_in=bool(d.get("isBuiltIn", False)),
            version=d.get("version"),
            expected_size=d.get("expectedSize"),
            expected_checksum16=d.get("expectedChecksum16"),
        )


@dataclass(frozen=True)
class DefinitionSuggestion:
    definition: RomDefinition
    score: int
    reason: str


def _m413_623_maps() -> List[MapDescriptor]:
    return [
        MapDescriptor(
            id="maf_cal",
            name="MAF Calibration",
            description="Mass Air Flow sensor transfer function (ADC Step to kg/hr)",
            type=MapType.FUNCTION,
            offset=0xD290,
            dimension=MapDimension.CURVE_1D,
            data_size=16,
            endian=Endian.LITTLE,
            rows=256,
            cols=1,
            formula="X/4",
            unit="kg/hr",
            category="Sensors",
            y_axis=Axis(label="ADC Step", unit="Step", size=256, offset=0,
                        source=AxisSource.STEP, step_value=1, data_size=8, formula="X"),
        ),
        MapDescriptor(
            id="ign_main",
            name="Ignition Main (WOT)",
            description="Ignition timing advance at Wide Open Throttle",
            type=MapType.TABLE,
            offset=0x8C00,
            dimension=MapDimension.SURFACE_3D,
            data_size=8,
            rows=12,
            cols=12,
            x_axis=Axis(label="RPM", unit="RPM", size=12, offset=0x8BC0,
                        source=AxisSource.ROM, data_size=8, formula="X*40"),
            y_axis=Axis(label="Load", unit="ms", size=12, offset=0x8BE0,
                        source=AxisSource.ROM, data_size=8, formula="X*0.05"),
            formula="X*-0.75 + 72",
            unit="°BTDC",
            category="Ignition",
        ),
    ]


def builtin_definitions() -> List[RomDefinition]:
    """Factory definitions. Fresh objects every call."""
    return [
        RomDefinition(
            id="NA",
            hw="0261200413",
            sw="1267357623",
            name="BRO",
            motronic_version="M3.3.1",
            description="BMW E36 325i M50B25TU (Red Label)",
            maps=_m413_623_maps(),
            is_built_in=True,
            expected_size=ROM_SIZE_27C512,
            expected_checksum16=0x900A,
        ),
    ]


def find_definition(library: Iterable[RomDefinition], hw: str, sw: str) -> Optional[RomDefinition]:
    """Exact HW + SW match."""
    for definition in library:
        if definition.hw == hw and definition.sw == sw:
            return definition
    return None


def suggest_definitions(result: "ParseResult", library: Iterable[RomDefinition]) -> List[DefinitionSuggestion]:
    """
    Rank library entries against a parsed ROM.
    20 points each for HW, SW, ID#, file size and the 16-bit image sum.
    """
    version = result.version
    suggestions = []
    for definition in library:
        score = 0
        reasons = []
        if version.hw != UNKNOWN and definition.hw == version.hw:
            score += 20
            reasons.append("HW")
        if version.sw != UNKNOWN and definition.sw == version.sw:
            score += 20
            reasons.append("SW")
        if version.id != UNKNOWN and (version.id in definition.id or version.id in definition.description):
            score += 20
            reasons.append("ID#")
        if definition.expected_size and definition.expected_size == result.size:
            score += 20
            reasons.append("SIZE")
        if definition.expected_checksum16 is not None and definition.expected_checksum16 == result.image_sum16:
            score += 20
            reasons.append("CS16")
        if score > 0:
            suggestions.append(DefinitionSuggestion(definition, score, ", ".join(reasons)))
    suggestions.sort(key=lambda s: -s.score)
    return suggestions


def load_definitions(path: Union[str, Path]) -> List[RomDefinition]:
    """Load a JSON list of definitions (user library export)."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Definition file not found: {path}")
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise DefinitionError(f"{path}: invalid JSON ({e})") from e
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise DefinitionError(f"{path}: expected a list of definitions")
    definitions = [RomDefinition.from_dict(d) for d in raw]
    log.info("Loaded %d definition(s) from %s", len(definitions), p)
    return definitions


def save_definitions(path: Union[str, Path], definitions: Iterable[RomDefinition]) -> None:
    Path(path).write_text(
        json.dumps([d.to_dict() for d in definitions], indent=2, ensure_ascii=False),
        encoding="utf-8",
    )


def validate_image_size(size: int) -> Tuple[bool, str]:
    """Is this one of the standard EPROM sizes?"""
    if size in STANDARD_ROM_SIZES:
        return True, f"Standard {size // 1024}KB Binary"
    return False, f"Non-standard size ({size / 1024:.1f}KB)"


# ═══════════════════════════════════════════════════════════════════════
# SECTION 11 — SCAN CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ScanConfig:
    """All tuning knobs for one parse pass."""
    checksum: ChecksumLayout = field(default_factory=ChecksumLayout)
    identity_patterns: List[IdentityPattern] = field(default_factory=default_identity_patterns)
    id_digit_count: int = BOSCH_ID_DIGITS
    self_pointer_max_blocks: int = SELF_POINTER_MAX_BLOCKS
    pointer_list_min_length: int = POINTER_LIST_MIN_LENGTH
    pointer_list_miss_budget: int = POINTER_LIST_MISS_BUDGET
    pointer_list_max: int = POINTER_LIST_MAX
    pointer_address_guard: int = POINTER_ADDRESS_GUARD
    header_tag: int = MAP_HEADER_TAG
    header_row_counts: Tuple[int, ...] = MAP_HEADER_ROW_COUNTS
    header_max_candidates: int = MAP_HEADER_MAX_CANDIDATES
    header_skip: int = MAP_HEADER_SKIP
    header_tail_margin: int = MAP_HEADER_TAIL_MARGIN

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ScanConfig":
        """Build from a JSON-style dict; unknown keys and wrong types are an error."""
        if not isinstance(d, dict):
            raise DefinitionError("Scan config must be an object")
        fields = {f.name: f for f in dataclasses.fields(cls)}
        unknown = set(d) - set(fields)
        if unknown:
            raise DefinitionError(f"Unknown scan config keys: {', '.join(sorted(unknown))}")
        kwargs = dict(d)
        for key, value in d.items():
            if fields[key].type == "int":
                _require_int(key, value)

        if "checksum" in kwargs:
            layout = kwargs["checksum"]
            if not isinstance(layout, dict):
                raise DefinitionError("Scan config checksum must be an object")
            if layout.get("trailer_offset") is not None:
                _require_int("checksum.trailer_offset", layout["trailer_offset"])
            if "min_image_size" in layout:
                _require_int("checksum.min_image_size", layout["min_image_size"])
        if "identity_patterns" in kwargs:
            patterns = kwargs["identity_patterns"]
            if not isinstance(patterns, list) or not all(isinstance(p, dict) for p in patterns):
                raise DefinitionError("Scan config identity_patterns must be a list of objects")
            for p in patterns:
                for name, value in p.items():
                    if value is not None and not isinstance(value, str):
                        raise DefinitionError(f"Identity pattern {name} must be a string, got {value!r}")
        if "header_row_counts" in kwargs:
            rows = kwargs["header_row_counts"]
            if not isinstance(rows, (list, tuple)):
                raise DefinitionError("Scan config header_row_counts must be a list")
            for value in rows:
                _require_int("header_row_counts", value)

        try:
            if "checksum" in kwargs:
                kwargs["checksum"] = ChecksumLayout(**kwargs["checksum"])
            if "identity_patterns" in kwargs:
                kwargs["identity_patterns"] = [IdentityPattern(**p) for p in kwargs["identity_patterns"]]
            if "header_row_counts" in kwargs:
                kwargs["header_row_counts"] = tuple(kwargs["header_row_counts"])
            return cls(**kwargs)
        except TypeError as e:
            raise DefinitionError(f"Bad scan config: {e}") from e


def _require_int(key: str, value: Any) -> None:
    # bool is an int subclass; JSON true/false is not a count
    if isinstance(value, bool) or not isinstance(value, int):
        raise DefinitionError(f"Scan config {key} must be an integer, got {value!r}")


def load_config(path: Union[str, Path]) -> ScanConfig:
    p = Path(path)
    try:
        return ScanConfig.from_dict(json.loads(p.read_text(encoding="utf-8")))
    except json.JSONDecodeError as e:
        raise DefinitionError(f"{path}: invalid JSON ({e})") from e


# ═══════════════════════════════════════════════════════════════════════
# SECTION 12 — PARSE ENGINE
# ═══════════════════════════════════════════════════════════════════════

class DiagnosticType(str, Enum):
    IDENTITY = "identity"
    INTEGRITY = "integrity"
    STRUCTURE = "structure"
    HEURISTIC = "heuristic"


@dataclass(frozen=True)
class DiagnosticEntry:
    """One finding from a parse pass."""
    id: str
    label: str
    value: str
    type: DiagnosticType
    offset: Optional[int] = None
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "value": self.value,
            "type": self.type.value,
            "offset": self.offset,
            "size": self.size,
        }


@dataclass(frozen=True)
class RomVersion:
    hw: str = UNKNOWN
    sw: str = UNKNOWN
    id: str = UNKNOWN
    label: str = UNKNOWN

    def to_dict(self) -> Dict[str, str]:
        return dataclasses.asdict(self)


@dataclass
class ParseResult:
    """Everything one parse pass found. Owned by the caller."""
    source: ByteSource
    detected_maps: List[MapDescriptor]
    diagnostics: List[DiagnosticEntry]
    checksum16: int
    checksum_valid: bool
    version: RomVersion
    image_sum16: int = 0
    definition_id: Optional[str] = None

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def size(self) -> int:
        return len(self.source)

    def find_map(self, map_id: str) -> Optional[MapDescriptor]:
        for m in self.detected_maps:
            if m.id == map_id:
                return m
        return None

    def diagnostics_of(self, kind: DiagnosticType) -> List[DiagnosticEntry]:
        return [d for d in self.diagnostics if d.type is kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "checksum16": self.checksum16,
            "checksumValid": self.checksum_valid,
            "imageSum16": self.image_sum16,
            "definitionId": self.definition_id,
            "version": self.version.to_dict(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "detectedMaps": [m.to_dict() for m in self.detected_maps],
        }


def _identity_findings(source: ByteSource, config: ScanConfig,
                       diagnostics: List[DiagnosticEntry], maps: List[MapDescriptor]) -> RomVersion:
    found = scan_identity(source, config.identity_patterns, config.id_digit_count)
    labels = {p.id: p.label for p in config.identity_patterns}
    for pattern_id, match in found.items():
        label = labels[pattern_id]
        diagnostics.append(DiagnosticEntry(
            pattern_id, label, match.text, DiagnosticType.IDENTITY, match.offset, match.size))
        maps.append(MapDescriptor(
            id=f"ident_{pattern_id}",
            name=label,
            description="Extracted identification marker from ROM header area.",
            type=MapType.STRING,
            offset=match.offset,
            dimension=MapDimension.VALUE,
            data_size=8,
            rows=1,
            cols=match.size,
            unit="ASCII",
            category=CATEGORY_IDENTITY,
            formula="X",
        ))

    def text(key: str) -> str:
        return found[key].text if key in found else UNKNOWN

    return RomVersion(hw=text("hw_id"), sw=text("sw_id"), id=text("id_num"), label=text("label_num"))


def _structure_findings(source: ByteSource, config: ScanConfig,
                        diagnostics: List[DiagnosticEntry], maps: List[MapDescriptor]) -> None:
    blocks = find_self_pointers(source, config.self_pointer_max_blocks)
    for block in blocks:
        tag = block.endian.value.upper()
        diagnostics.append(DiagnosticEntry(
            f"self_ptr_{block.offset}", f"Self Pointer ({tag})",
            f"{block.length} x Ptr @ 0x{block.offset:04X}",
            DiagnosticType.STRUCTURE, block.offset, block.length * 2))
        maps.append(MapDescriptor(
            id=f"sp_{block.offset:x}",
            name=f"Self-Ref @ 0x{block.offset:04X}",
            description="Common Bosch map-table initialization marker. Offset value equals stored value.",
            type=MapType.SCALAR if block.length == 1 else MapType.FUNCTION,
            offset=block.offset,
            data_size=16,
            endian=block.endian,
            rows=block.length,
            cols=1,
            unit="Addr",
            category=CATEGORY_SELF_POINTERS,
            formula="X",
        ))

    lists = find_pointer_lists(
        source, blocks,
        min_length=config.pointer_list_min_length,
        miss_budget=config.pointer_list_miss_budget,
        max_lists=config.pointer_list_max,
        address_guard=config.pointer_address_guard,
    )
    for idx, plist in enumerate(lists):
        tag = plist.endian.value.upper()
        diagnostics.append(DiagnosticEntry(
            f"ptr_list_{idx}", f"Pointer sequence ({tag})",
            f"{plist.count} Pointers @ 0x{plist.offset:04X}",
            DiagnosticType.STRUCTURE, plist.offset, plist.count * 2))
        maps.append(MapDescriptor(
            id=f"plist_{plist.offset:x}_{plist.endian.value}",
            name=f"Pointer List @ 0x{plist.offset:04X}",
            description=f"Contiguous sequence of {plist.count} pointers found in ROM structural region.",
            type=MapType.TABLE,
            offset=plist.offset,
            dimension=MapDimension.CURVE_1D,
            data_size=16,
            endian=plist.endian,
            rows=plist.count,
            cols=1,
            unit="Addr",
            category=CATEGORY_POINTER_LISTS,
            formula="X",
        ))


def _heuristic_findings(source: ByteSource, config: ScanConfig,
                        diagnostics: List[DiagnosticEntry], maps: List[MapDescriptor]) -> None:
    candidates = crawl_for_maps(
        source,
        tag=config.header_tag,
        row_counts=config.header_row_counts,
        max_candidates=config.header_max_candidates,
        skip=config.header_skip,
        tail_margin=config.header_tail_margin,
    )
    for idx, cand in enumerate(candidates):
        diagnostics.append(DiagnosticEntry(
            f"heuristic_{idx}", f"Heuristic Candidate {idx + 1}",
            f"{cand.rows}x{cand.cols} Map",
            DiagnosticType.HEURISTIC, cand.offset, cand.rows * cand.cols * cand.data_size // 8))
        maps.append(MapDescriptor(
            id=f"h_map_{cand.header_offset}",
            name=f"Discovered Map @ 0x{cand.header_offset:04X}",
            description="Automatically detected map structure via heuristic signature scan.",
            type=MapType.TABLE,
            offset=cand.offset,
            dimension=MapDimension.TABLE_2D,
            data_size=cand.data_size,
            rows=cand.rows,
            cols=cand.cols,
            unit="Raw",
            category=CATEGORY_HEURISTIC,
            formula="X",
        ))


def parse_rom(
    data: Buffer,
    name: str = "",
    config: Optional[ScanConfig] = None,
    library: Optional[Iterable[RomDefinition]] = None,
) -> ParseResult:
    """
    One full pass over a freshly loaded ROM.

    Order: checksum → identity → self pointers → pointer lists → header
    crawl. If ``library`` has an exact HW/SW match its maps replace the
    detected ones and the header crawl is skipped.
    """
    config = config or ScanConfig()
    source = data if isinstance(data, ByteSource) else ByteSource(data, name)
    if name and not source.name:
        source = ByteSource(source.data, name)
    diagnostics: List[DiagnosticEntry] = []
    maps: List[MapDescriptor] = []

    log.info("Parsing %s (%d bytes)", source.name or "<buffer>", len(source))

    # 1. Checksum
    layout = config.checksum
    checksum16 = calculate_checksum(source, layout)
    checksum_valid = verify_checksum(source, layout)
    stored = stored_checksum(source, layout)
    status = "OK" if checksum_valid else "MISMATCH"
    diagnostics.append(DiagnosticEntry(
        "checksum_16", "Checksum (16-bit Sum)",
        f"0x{checksum16:04X} ({status})",
        DiagnosticType.INTEGRITY,
        layout.trailer_start(len(source)) if stored is not None else None,
        CHECKSUM_TRAILER_SIZE if stored is not None else 0,
    ))
    if not checksum_valid:
        log.info("Checksum mismatch: computed 0x%04X, stored %s", checksum16,
                 f"0x{stored:04X}" if stored is not None else "n/a")

    # 2. Identity
    version = _identity_findings(source, config, diagnostics, maps)

    # 3. Structure
    _structure_findings(source, config, diagnostics, maps)

    # 4. Known definition, else the heuristic crawl
    definition = None
    if library is not None:
        definition = find_definition(library, version.hw, version.sw)
    if definition is not None:
        log.info("Matched definition %s (%s)", definition.id, definition.description)
        maps = copy.deepcopy(definition.maps)
    else:
        _heuristic_findings(source, config, diagnostics, maps)

    log.info("Parse done: %d diagnostics, %d maps", len(diagnostics), len(maps))
    return ParseResult(
        source=source,
        detected_maps=maps,
        diagnostics=diagnostics,
        checksum16=checksum16,
        checksum_valid=checksum_valid,
        version=version,
        image_sum16=image_sum16(source),
        definition_id=definition.id if definition else None,
    )


# ═══════════════════════════════════════════════════════════════════════
# SECTION 13 — ROM FILE I/O & DIFF
# ═══════════════════════════════════════════════════════════════════════

class RomFile:
    """Utilities for loading and saving ROM dumps."""

    @staticmethod
    def load(path: Union[str, Path]) -> ByteSource:
        """Load a .bin file and reject obvious non-ROMs (tiny files, saved web pages)."""
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"ROM file not found: {path}")
        data = p.read_bytes()
        if len(data) < MIN_LOADABLE_SIZE:
            raise ValueError(f"File too small to be a ROM: {len(data)} bytes")
        head = data[:HTML_SNIFF_BYTES].decode("ascii", errors="ignore").lower()
        if any(marker in head for marker in HTML_MARKERS):
            raise ValueError(f"{p.name} contains HTML/script tags, not a binary image")
        valid, message = validate_image_size(len(data))
        if not valid:
            log.warning("%s: %s", p.name, message)
        return ByteSource(data, p.name)

    @staticmethod
    def save(path: Union[str, Path], data: Buffer) -> None:
        """Save a .bin file."""
        Path(path).write_bytes(_as_bytes(data))


def diff_regions(a: Buffer, b: Buffer, merge_gap: int = 8) -> List[Tuple[int, int]]:
    """
    Changed byte ranges between two images, as inclusive (start, end).
    Ranges separated by at most ``merge_gap`` bytes are merged.
    """
    left, right = _as_bytes(a), _as_bytes(b)
    if len(left) != len(right):
        raise ValueError(f"File size mismatch: {len(left)} vs {len(right)}")
    regions: List[List[int]] = []
    for i, (x, y) in enumerate(zip(left, right)):
        if x == y:
            continue
        if regions and i - regions[-1][1] <= merge_gap:
            regions[-1][1] = i
        else:
            regions.append([i, i])
    return [(s, e) for s, e in regions]


# ═══════════════════════════════════════════════════════════════════════
# SECTION 14 — CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

console = Console(highlight=False)


def _library(args: argparse.Namespace) -> List[RomDefinition]:
    library = builtin_definitions()
    if getattr(args, "definitions", None):
        library.extend(load_definitions(args.definitions))
    return library


def _config(args: argparse.Namespace) -> ScanConfig:
    if getattr(args, "config", None):
        return load_config(args.config)
    return ScanConfig()


def _fmt(value: float) -> str:
    if isinstance(value, float) and not value.is_integer():
        return f"{value:.3f}".rstrip("0").rstrip(".")
    return str(int(value))


def cmd_parse(args: argparse.Namespace) -> int:
    rom = RomFile.load(args.file)
    library = _library(args)
    result = parse_rom(rom, rom.name, _config(args), library)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return 0

    console.print(f"\n[bold]{escape(rom.name)}[/bold]  {result.size} bytes  ({validate_image_size(result.size)[1]})")
    v = result.version
    ident = Table(title="Identity", box=box.SIMPLE)
    ident.add_column("Field")
    ident.add_column("Value")
    for label, value in (("HW", v.hw), ("SW", v.sw), ("ID#", v.id), ("Label", v.label)):
        ident.add_row(label, value)
    console.print(ident)

    status = "[green]MATCH[/green]" if result.checksum_valid else "[red]MISMATCH[/red]"
    console.print(f"Checksum: 0x{result.checksum16:04X}  {status}")
    if result.definition_id:
        console.print(f"Definition: {result.definition_id}")
    else:
        for s in suggest_definitions(result, library)[:3]:
            console.print(escape(f"Suggested: {s.definition.id} ({s.definition.description}) "
                                 f"score {s.score} [{s.reason}]"))

    diag = Table(title="Diagnostics", box=box.SIMPLE)
    for col in ("Type", "Label", "Value", "Offset"):
        diag.add_column(col)
    for d in result.diagnostics:
        offset = f"0x{d.offset:04X}" if d.offset is not None else "-"
        diag.add_row(d.type.value, d.label, d.value, offset)
    console.print(diag)

    maps = Table(title="Maps", box=box.SIMPLE)
    for col in ("ID", "Category", "Offset", "Size", "Bits"):
        maps.add_column(col)
    for m in result.detected_maps:
        maps.add_row(m.id, m.category, f"0x{m.offset:04X}", f"{m.rows}x{m.cols}", str(m.data_size))
    console.print(maps)
    return 0


def cmd_checksum(args: argparse.Namespace) -> int:
    rom = RomFile.load(args.file)
    layout = ChecksumLayout(trailer_offset=args.trailer_offset)
    stored = stored_checksum(rom, layout)
    computed = calculate_checksum(rom, layout)
    ok = verify_checksum(rom, layout)
    console.print(f"  File:     {escape(str(args.file))}")
    console.print(f"  Stored:   {'0x%04X' % stored if stored is not None else 'n/a'}")
    console.print(f"  Computed: 0x{computed:04X}")
    console.print(f"  Status:   {'MATCH' if ok else 'MISMATCH'}")
    if not ok and args.fix:
        buf = rom.to_bytearray()
        old, new = fix_checksum(buf, layout)
        RomFile.save(args.file, buf)
        console.print(f"  Fixed:    0x{old:04X} -> 0x{new:04X}")
    return 0


def cmd_extract(args: argparse.Namespace) -> int:
    rom = RomFile.load(args.file)
    result = parse_rom(rom, rom.name, _config(args), _library(args))
    table = result.find_map(args.map)
    if table is None:
        console.print(f"Map not found: {escape(args.map)}")
        return 1

    grid = extract_map_data(rom, table)
    x_vals = get_axis_values(rom, table.x_axis)
    y_vals = get_axis_values(rom, table.y_axis)

    out = Table(title=escape(f"{table.name} [{table.unit}]"), box=box.SIMPLE)
    out.add_column(table.y_axis.label if table.y_axis else "")
    for c in range(table.cols):
        out.add_column(_fmt(x_vals[c]) if c < len(x_vals) else str(c), justify="right")
    for r, row in enumerate(grid):
        head = _fmt(y_vals[r]) if r < len(y_vals) else str(r)
        out.add_row(head, *(_fmt(v) for v in row))
    console.print(out)
    return 0


def cmd_compare(args: argparse.Namespace) -> int:
    a = RomFile.load(args.file_a)
    b = RomFile.load(args.file_b)
    regions = diff_regions(a, b, args.merge_gap)
    if not regions:
        console.print("Images are identical")
        return 0
    out = Table(title=f"{len(regions)} changed region(s)", box=box.SIMPLE)
    for col in ("Start", "End", "Bytes"):
        out.add_column(col)
    for start, end in regions:
        out.add_row(f"0x{start:04X}", f"0x{end:04X}", str(end - start + 1))
    console.print(out)
    return 0


def cmd_definitions(args: argparse.Namespace) -> int:
    out = Table(title="Definition Library", box=box.SIMPLE)
    for col in ("ID", "HW", "SW", "Description", "Maps"):
        out.add_column(col, no_wrap=col != "Description")
    for d in _library(args):
        out.add_row(d.id, d.hw, d.sw, d.description, str(len(d.maps)))
    console.print(out)
    return 0


COMMANDS = {
    "parse": cmd_parse,
    "checksum": cmd_checksum,
    "extract": cmd_extract,
    "compare": cmd_compare,
    "definitions": cmd_definitions,
}


def _int_auto(text: str) -> int:
    return int(text, 0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="motronic_rom_inspector",
        description=f"{__app_name__} v{__version__} — {__target_ecm__} ROM analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s parse stock.bin                         # Identity, checksum, structure
  %(prog)s parse stock.bin --json                  # Same, as JSON
  %(prog)s checksum tuned.bin --fix                # Verify/fix checksum
  %(prog)s extract stock.bin --map ign_main        # Dump a map
  %(prog)s compare stock.bin tuned.bin             # Changed regions
  %(prog)s definitions --definitions mine.json     # List library
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show INFO logs on the console")
    parser.add_argument("--log-dir", type=Path, default=None, help="Log directory (default: logs/)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    parse_p = subparsers.add_parser("parse", help="Full parse pass over a ROM")
    parse_p.add_argument("file", help="ROM .bin file")
    parse_p.add_argument("--json", action="store_true", help="Print the result as JSON")

    cs_p = subparsers.add_parser("checksum", help="Verify or fix ROM checksum")
    cs_p.add_argument("file", help="ROM .bin file")
    cs_p.add_argument("--fix", action="store_true", help="Fix checksum if mismatched")
    cs_p.add_argument("--trailer-offset", type=_int_auto, default=None,
                      help="Fixed checksum offset (default: last 2 bytes)")

    ex_p = subparsers.add_parser("extract", help="Print one map as engineering values")
    ex_p.add_argument("file", help="ROM .bin file")
    ex_p.add_argument("--map", "-m", required=True, help="Map id (see 'parse')")

    cmp_p = subparsers.add_parser("compare", help="List changed regions between two ROMs")
    cmp_p.add_argument("file_a")
    cmp_p.add_argument("file_b")
    cmp_p.add_argument("--merge-gap", type=int, default=8, help="Merge regions at most this many bytes apart")

    def_p = subparsers.add_parser("definitions", help="List the definition library")

    for sub in (parse_p, ex_p, def_p):
        sub.add_argument("--definitions", "-d", help="Extra definition library (JSON)")
    for sub in (parse_p, ex_p):
        sub.add_argument("--config", "-c", help="Scan config overrides (JSON)")

    return parser


# ═══════════════════════════════════════════════════════════════════════
# SECTION 15 — ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(
        console_level=logging.INFO if args.verbose else logging.WARNING,
        log_dir=args.log_dir,
    )
    try:
        return COMMANDS[args.command](args)
    except (RomInspectorError, OSError, ValueError) as e:
        console.print(f"Error: {escape(str(e))}")
        log.debug("CLI error", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
