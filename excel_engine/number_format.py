"""Number format codes and the formatted-value query.

Handles:
- Built-in format ids 0-49 and the custom id range (164+)
- Section selection (positive;negative;zero;text) and [Color]/[cond] tokens
- Digit placeholders 0 # ?, thousands separators, scaling commas
- Percent, scientific and fraction formats
- Date/time formats against the 1900 date system
- Quoted literals, backslash escapes, _x padding and *x fill
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from typing import Any, List, Optional, Tuple, Union

FIRST_CUSTOM_FORMAT_ID = 164

BUILTIN_FORMATS = {
    0: "General",
    1: "0",
    2: "0.00",
    3: "#,##0",
    4: "#,##0.00",
    5: '"$"#,##0_);("$"#,##0)',
    6: '"$"#,##0_);[Red]("$"#,##0)',
    7: '"$"#,##0.00_);("$"#,##0.00)',
    8: '"$"#,##0.00_);[Red]("$"#,##0.00)',
    9: "0%",
    10: "0.00%",
    11: "0.00E+00",
    12: "# ?/?",
    13: "# ??/??",
    14: "mm-dd-yy",
    15: "d-mmm-yy",
    16: "d-mmm",
    17: "mmm-yy",
    18: "h:mm AM/PM",
    19: "h:mm:ss AM/PM",
    20: "h:mm",
    21: "h:mm:ss",
    22: "m/d/yy h:mm",
    37: "#,##0_);(#,##0)",
    38: "#,##0_);[Red](#,##0)",
    39: "#,##0.00_);(#,##0.00)",
    40: "#,##0.00_);[Red](#,##0.00)",
    41: '_(* #,##0_);_(* \\(#,##0\\);_(* "-"_);_(@_)',
    42: '_("$"* #,##0_);_("$"* \\(#,##0\\);_("$"* "-"_);_(@_)',
    43: '_(* #,##0.00_);_(* \\(#,##0.00\\);_(* "-"??_);_(@_)',
    44: '_("$"* #,##0.00_)_("$"* \\(#,##0.00\\)_("$"* "-"??_)_(@_)',
    45: "mm:ss",
    46: "[h]:mm:ss",
    47: "mmss.0",
    48: "##0.0E+0",
    49: "@",
}

_BUILTIN_BY_CODE = {code: fmt_id for fmt_id, code in BUILTIN_FORMATS.items()}

FORMAT_GENERAL = "General"
FORMAT_TEXT = "@"
FORMAT_DATE = "yyyy-mm-dd"
FORMAT_DATETIME = "yyyy-mm-dd h:mm:ss"
FORMAT_TIME = "h:mm:ss"

EPOCH = datetime(1899, 12, 30)

_DATE_TOKEN_RE = re.compile(r"[ymdhs]|am/pm|a/p", re.IGNORECASE)
_BRACKET_RE = re.compile(r"\[[^\]]*\]")
_ELAPSED_RE = re.compile(r"^\[(h+|m+|s+)\]$", re.IGNORECASE)
_CONDITION_RE = re.compile(r"^\[(<=|>=|<>|<|>|=)(-?[\d.]+)\]$")
_DATE_PART_RE = re.compile(
    r'"[^"]*"|\\.|\[[hH]+\]|\[[mM]+\]|\[[sS]+\]|\[[^\]]*\]|'
    r'AM/PM|am/pm|A/P|a/p|'
    r'[yY]+|[mM]+|[dD]+|[hH]+|[sS]+|\.0+|.'
)


def builtin_format_id(code: str) -> Optional[int]:
    """Return the built-in id for a format code, or None if it needs a custom id."""
    return _BUILTIN_BY_CODE.get(code)


# =============================================================================
# DATE SERIALS
# =============================================================================

def to_excel_serial(value: Union[datetime, date, time]) -> float:
    """Convert a date/datetime/time to an Excel serial number (1900 system)."""
    if isinstance(value, datetime):
        delta = value.replace(tzinfo=None) - EPOCH
    elif isinstance(value, date):
        delta = datetime(value.year, value.month, value.day) - EPOCH
    elif isinstance(value, time):
        delta = timedelta(
            hours=value.hour, minutes=value.minute,
            seconds=value.second, microseconds=value.microsecond,
        )
    else:
        raise TypeError(f"Cannot convert {type(value).__name__} to a date serial")
    serial = delta.days + delta.seconds / 86400 + delta.microseconds / 86400e6
    # Serials before 1900-03-01 are shifted by the phantom 1900-02-29
    if 0 < serial < 61 and not isinstance(value, time):
        serial -= 1
    return serial


def from_excel_serial(serial: float) -> datetime:
    """Convert an Excel serial number to a datetime (1900 system)."""
    if serial < 61:
        serial += 1
    # Round to the millisecond so 0.1-second artefacts disappear
    return EPOCH + timedelta(milliseconds=round(serial * 86400000))


def is_date_format(code: str) -> bool:
    """True when the first section of a format code renders a date or time."""
    section = _split_sections(code)[0]
    cleaned = _strip_literals(section)
    if any(_ELAPSED_RE.match(tok) for tok in re.findall(r"\[[^\]]*\]", cleaned)):
        return True
    cleaned = _BRACKET_RE.sub("", cleaned)
    if cleaned.lower() == "general":
        return False
    return bool(_DATE_TOKEN_RE.search(cleaned))


# =============================================================================
# SECTION HANDLING
# =============================================================================

def _split_sections(code: str) -> List[str]:
    sections: List[str] = []
    current: List[str] = []
    in_quote = False
    escape = False
    for ch in code:
        if escape:
            current.append(ch)
            escape = False
            continue
        if ch == "\\":
            current.append(ch)
            escape = True
            continue
        if ch == '"':
            in_quote = not in_quote
        if ch == ";" and not in_quote:
            sections.append("".join(current))
            current = []
            continue
        current.append(ch)
    sections.append("".join(current))
    return sections


def _strip_literals(section: str) -> str:
    """Remove quoted strings and escaped characters."""
    out: List[str] = []
    in_quote = False
    escape = False
    for ch in section:
        if escape:
            escape = False
            continue
        if ch == "\\" and not in_quote:
            escape = True
            continue
        if ch == '"':
            in_quote = not in_quote
            continue
        if not in_quote:
            out.append(ch)
    return "".join(out)


def _condition_matches(token: str, value: float) -> Optional[bool]:
    match = _CONDITION_RE.match(token)
    if not match:
        return None
    op, threshold = match.group(1), float(match.group(2))
    return {
        "<": value < threshold, "<=": value <= threshold,
        ">": value > threshold, ">=": value >= threshold,
        "=": value == threshold, "<>": value != threshold,
    }[op]


def _pick_section(sections: List[str], value: float) -> Tuple[str, bool]:
    """Choose the section for a number. Returns (section, show_minus_sign)."""
    conditions = [
        _condition_matches(tok, value)
        for sec in sections[:2]
        for tok in re.findall(r"\[[^\]]*\]", sec)
        if _CONDITION_RE.match(tok)
    ]
    if conditions:
        for sec in sections[:3]:
            tokens = [t for t in re.findall(r"\[[^\]]*\]", sec) if _CONDITION_RE.match(t)]
            if not tokens or all(_condition_matches(t, value) for t in tokens):
                return sec, not tokens and value < 0
        return sections[-1], value < 0

    if value > 0 or len(sections) == 1:
        return sections[0], value < 0
    if value < 0:
        return sections[1], False
    return (sections[2] if len(sections) > 2 else sections[0]), False


def _clean_section(section: str) -> str:
    """Drop [Color], [cond] and [$-locale] tokens but keep elapsed-time brackets."""
    def keep(match: "re.Match") -> str:
        token = match.group(0)
        if _ELAPSED_RE.match(token):
            return token
        if token.startswith("[$") and "-" in token:
            symbol = token[2:].split("-", 1)[0]
            return f'"{symbol}"' if symbol else ""
        return ""
    return _BRACKET_RE.sub(keep, section)


# =============================================================================
# NUMBER RENDERING
# =============================================================================

def _tokenize_number(section: str) -> List[Tuple[str, str]]:
    """Split a numeric section into ('lit', text) and placeholder tokens."""
    tokens: List[Tuple[str, str]] = []
    i = 0
    while i < len(section):
        ch = section[i]
        if ch == '"':
            end = section.find('"', i + 1)
            end = len(section) if end == -1 else end
            tokens.append(("lit", section[i + 1:end]))
            i = end + 1
            continue
        if ch == "\\" and i + 1 < len(section):
            tokens.append(("lit", section[i + 1]))
            i += 2
            continue
        if ch == "_" and i + 1 < len(section):
            tokens.append(("lit", " "))
            i += 2
            continue
        if ch == "*" and i + 1 < len(section):
            i += 2
            continue
        if ch in "0#?":
            tokens.append(("digit", ch))
        elif ch == ".":
            tokens.append(("dot", ch))
        elif ch == ",":
            tokens.append(("comma", ch))
        elif ch == "%":
            tokens.append(("percent", ch))
        elif ch in "eE" and i + 1 < len(section) and section[i + 1] in "+-":
            tokens.append(("exp", section[i + 1]))
            i += 2
            continue
        elif ch == "/":
            tokens.append(("slash", ch))
        elif ch == "@":
            tokens.append(("text", ch))
        else:
            tokens.append(("lit", ch))
        i += 1
    return tokens


def _round_half_up(value: float, decimals: int) -> Decimal:
    quantum = Decimal(1).scaleb(-decimals)
    return Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP)


def _fill_integer(digits: str, placeholders: List[str]) -> str:
    """Right-align integer digits into placeholders; the leftmost takes the overflow."""
    out: List[str] = []
    remaining = digits
    for idx in range(len(placeholders) - 1, -1, -1):
        ph = placeholders[idx]
        if idx == 0 and remaining:
            out.append(remaining)
            remaining = ""
        elif remaining:
            out.append(remaining[-1])
            remaining = remaining[:-1]
        elif ph == "0":
            out.append("0")
        elif ph == "?":
            out.append(" ")
    return "".join(reversed(out))


def _fill_fraction(digits: str, placeholders: List[str]) -> str:
    out = list(digits[:len(placeholders)])
    # Trailing zeros are dropped for '#' and blanked for '?'
    for idx in range(len(out) - 1, -1, -1):
        if out[idx] != "0" or placeholders[idx] == "0":
            break
        out[idx] = " " if placeholders[idx] == "?" else ""
    return "".join(out)


def _group_thousands(digits: str) -> str:
    if not digits:
        return digits
    head = len(digits) % 3 or 3
    groups = [digits[:head]] + [digits[i:i + 3] for i in range(head, len(digits), 3)]
    return ",".join(groups)


def _render_plain(value: float, tokens: List[Tuple[str, str]]) -> str:
    # Locate the integer/fraction split and scaling commas
    dot_at = next((i for i, t in enumerate(tokens) if t[0] == "dot"), None)
    digit_positions = [i for i, t in enumerate(tokens) if t[0] == "digit"]
    last_int_digit = max((i for i in digit_positions if dot_at is None or i < dot_at), default=None)

    thousands = False
    scale = 0
    for i, (kind, _) in enumerate(tokens):
        if kind != "comma":
            continue
        before_digit = any(j > i and (dot_at is None or j < dot_at) for j in digit_positions)
        if before_digit and last_int_digit is not None and i < last_int_digit:
            thousands = True
        elif last_int_digit is not None and i > last_int_digit and (dot_at is None or i < dot_at):
            scale += 1

    value = value / (1000 ** scale) * (100 ** sum(1 for t in tokens if t[0] == "percent"))

    int_placeholders = [t[1] for i, t in enumerate(tokens) if t[0] == "digit" and (dot_at is None or i < dot_at)]
    frac_placeholders = [t[1] for i, t in enumerate(tokens) if t[0] == "digit" and dot_at is not None and i > dot_at]

    rounded = _round_half_up(abs(value), len(frac_placeholders))
    text = f"{rounded:f}"
    int_digits, _, frac_digits = text.partition(".")
    if int_digits == "0":
        int_digits = ""

    if thousands:
        zeros = sum(1 for p in int_placeholders if p == "0")
        int_text = _group_thousands(int_digits.rjust(zeros, "0") if zeros else int_digits)
    else:
        int_text = _fill_integer(int_digits, int_placeholders) if int_placeholders else int_digits
    frac_text = _fill_fraction(frac_digits, frac_placeholders)

    out: List[str] = []
    int_emitted = False
    for i, (kind, text_tok) in enumerate(tokens):
        if kind == "digit":
            if dot_at is None or i < dot_at:
                if not int_emitted:
                    out.append(int_text)
                    int_emitted = True
            elif i == next(j for j in digit_positions if j > dot_at):
                out.append(frac_text)
        elif kind == "dot":
            if not int_emitted:
                out.append(int_text)
                int_emitted = True
            if frac_text:
                out.append(".")
        elif kind in ("lit", "percent"):
            out.append(text_tok)
        elif kind in ("exp", "slash"):
            out.append(text_tok)
    if not int_emitted and not digit_positions:
        out.insert(0, int_text)
    return "".join(out)


def _render_scientific(value: float, tokens: List[Tuple[str, str]]) -> str:
    exp_at = next(i for i, t in enumerate(tokens) if t[0] == "exp")
    mantissa_tokens = tokens[:exp_at]
    exp_sign = tokens[exp_at][1]
    exp_digits = [t for t in tokens[exp_at + 1:] if t[0] == "digit"]
    suffix = "".join(t[1] for t in tokens[exp_at + 1:] if t[0] == "lit")

    dot_at = next((i for i, t in enumerate(mantissa_tokens) if t[0] == "dot"), None)
    n_int = sum(1 for i, t in enumerate(mantissa_tokens) if t[0] == "digit" and (dot_at is None or i < dot_at)) or 1
    n_frac = sum(1 for i, t in enumerate(mantissa_tokens) if t[0] == "digit" and dot_at is not None and i > dot_at)

    magnitude = abs(value)
    exponent = 0 if magnitude == 0 else math.floor(math.log10(magnitude))
    if n_int > 1:
        exponent -= exponent % n_int
    mantissa = magnitude / (10 ** exponent) if magnitude else 0.0
    if float(_round_half_up(mantissa, n_frac)) >= 10 ** n_int:
        exponent += n_int
        mantissa = magnitude / (10 ** exponent)

    body = _render_plain(mantissa, [t for t in mantissa_tokens if t[0] != "exp"])
    sign = "-" if exponent < 0 else ("+" if exp_sign == "+" else "")
    return f"{body}E{sign}{str(abs(exponent)).rjust(len(exp_digits), '0')}{suffix}"


def _render_fraction(value: float, section: str) -> str:
    literal = _strip_literals(section)
    match = re.search(r"([#0?]*)\s*([#0?]+)\s*/\s*([#0?]+|\d+)", literal)
    if not match:
        return _format_general(value)
    whole_part, num_ph, den_ph = match.groups()
    magnitude = abs(value)
    whole = int(magnitude) if whole_part else 0
    remainder = magnitude - whole
    if den_ph.isdigit():
        denominator = int(den_ph)
        numerator = int(round(remainder * denominator))
    else:
        frac = Fraction(remainder).limit_denominator(10 ** len(den_ph) - 1)
        numerator, denominator = frac.numerator, frac.denominator
    if numerator == denominator and denominator:
        whole += 1
        numerator = 0
    if numerator == 0:
        text = str(whole) if whole_part else "0"
    elif whole_part and whole:
        text = f"{whole} {numerator}/{denominator}"
    else:
        text = f"{numerator}/{denominator}"
    return text


def _format_general(value: float) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if float(value).is_integer() and abs(value) < 1e11:
        return str(int(value))
    text = f"{value:.10g}" if abs(value) < 1e11 else f"{value:.5E}"
    if "e" in text or "E" in text:
        mantissa, _, exponent = text.upper().partition("E")
        if "." in mantissa:
            mantissa = mantissa.rstrip("0").rstrip(".")
        exp_val = int(exponent)
        return f"{mantissa}E{'+' if exp_val >= 0 else '-'}{abs(exp_val):02d}"
    return text


# =============================================================================
# DATE RENDERING
# =============================================================================

_MONTHS = ["January", "February", "March", "April", "May", "June", "July",
           "August", "September", "October", "November", "December"]
_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _render_date(serial: float, section: str) -> str:
    dt = from_excel_serial(serial)
    parts = _DATE_PART_RE.findall(section)
    has_ampm = any(p.upper() in ("AM/PM", "A/P") for p in parts)

    # m/mm after an hour token or before a seconds token means minutes
    kinds: List[str] = []
    for i, part in enumerate(parts):
        low = part.lower()
        if low.startswith("m") and len(low) <= 2 and set(low) == {"m"}:
            prev = next((p.lower() for p in reversed(parts[:i]) if p.strip() and p.lower()[0] in "hsdy"), "")
            nxt = next((p.lower() for p in parts[i + 1:] if p.strip() and p.lower()[0] in "hsdy"), "")
            kinds.append("minute" if prev.startswith("h") or nxt.startswith("s") else "month")
        else:
            kinds.append("")

    out: List[str] = []
    for part, kind in zip(parts, kinds):
        low = part.lower()
        if part.startswith('"'):
            out.append(part[1:-1])
        elif part.startswith("\\"):
            out.append(part[1:])
        elif low.startswith("[h"):
            out.append(str(int(serial * 24)).rjust(len(part) - 2, "0"))
        elif low.startswith("[m"):
            out.append(str(int(round(serial * 1440, 6))).rjust(len(part) - 2, "0"))
        elif low.startswith("[s"):
            out.append(str(int(round(serial * 86400, 6))).rjust(len(part) - 2, "0"))
        elif part.startswith("["):
            continue
        elif low in ("am/pm", "a/p"):
            marker = "AM" if dt.hour < 12 else "PM"
            out.append(marker if low == "am/pm" else marker[0])
        elif low.startswith("y"):
            out.append(str(dt.year) if len(low) > 2 else f"{dt.year % 100:02d}")
        elif kind == "minute":
            out.append(f"{dt.minute:02d}" if len(low) == 2 else str(dt.minute))
        elif low.startswith("m"):
            if len(low) == 1:
                out.append(str(dt.month))
            elif len(low) == 2:
                out.append(f"{dt.month:02d}")
            elif len(low) == 3:
                out.append(_MONTHS[dt.month - 1][:3])
            elif len(low) == 5:
                out.append(_MONTHS[dt.month - 1][0])
            else:
                out.append(_MONTHS[dt.month - 1])
        elif low.startswith("d"):
            if len(low) == 1:
                out.append(str(dt.day))
            elif len(low) == 2:
                out.append(f"{dt.day:02d}")
            elif len(low) == 3:
                out.append(_DAYS[dt.weekday()][:3])
            else:
                out.append(_DAYS[dt.weekday()])
        elif low.startswith("h"):
            hour = (dt.hour % 12 or 12) if has_ampm else dt.hour
            out.append(f"{hour:02d}" if len(low) >= 2 else str(hour))
        elif low.startswith("s"):
            out.append(f"{dt.second:02d}" if len(low) >= 2 else str(dt.second))
        elif low.startswith(".0"):
            frac = dt.microsecond / 1e6
            out.append("." + str(int(round(frac * 10 ** (len(low) - 1)))).rjust(len(low) - 1, "0"))
        else:
            out.append(part)
    return "".join(out)


# =============================================================================
# PUBLIC
# =============================================================================

def format_value(value: Any, code: Optional[str]) -> str:
    """Render a cell value the way a spreadsheet application would display it.

    ``value`` is a number (int/float), bool, str or None. Numbers stored as
    lexical text should be converted by the caller.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    code = code or FORMAT_GENERAL
    sections = _split_sections(code)

    if isinstance(value, str):
        text_section = sections[3] if len(sections) > 3 else (sections[0] if "@" in sections[0] else None)
        if text_section is None:
            return value
        rendered: List[str] = []
        for kind, tok in _tokenize_number(_clean_section(text_section)):
            rendered.append(value if kind == "text" else tok)
        return "".join(rendered)

    if code.strip().lower() == "general":
        return _format_general(value)

    section, minus = _pick_section(sections, value)
    section = _clean_section(section)
    if _strip_literals(section).strip().lower() == "general":
        body = _format_general(abs(value))
        return f"-{body}" if minus else body
    if section == "@" or not section:
        return _format_general(value) if section else ""

    if is_date_format(section):
        if value < 0:
            return "#" * 11
        return _render_date(value, section)

    tokens = _tokenize_number(section)
    if any(t[0] == "slash" for t in tokens):
        body = _render_fraction(value, section)
    elif any(t[0] == "exp" for t in tokens):
        body = _render_scientific(value, tokens)
    else:
        body = _render_plain(value, tokens)

    if minus and any(ch.isdigit() and ch != "0" for ch in body):
        return f"-{body}"
    return body
