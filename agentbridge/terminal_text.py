"""
Terminal text normalization.

Turns a raw pane capture (ANSI colours, cursor codes, carriage returns,
terminal-wrapped URLs) into plain text with ``*bold*`` markup that can be
sent to Telegram.
"""
import re

# Private markers for bold boundaries. They are placed before the generic
# ANSI strip so that stripping can never eat into a bold span.
BOLD_ON = "\x01"
BOLD_OFF = "\x02"

_BOLD_ON_RE = re.compile(r"\x1B\[1m")
_BOLD_OFF_RE = re.compile(r"\x1B\[(?:0|22)m")
_ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
_BOLD_SPAN_RE = re.compile(r"\x01([^\x01\x02]*)\x02")
_BOLD_OPEN_RE = re.compile(r"\x01([^\x01\x02\n]+)$", re.MULTILINE)
_MARKER_RE = re.compile(r"[\x01\x02]")
_ADJACENT_STARS_RE = re.compile(r"\*(?=\*)")

_CONTROL_RE = re.compile(r"[\x00-\x09\x0b\x0c\x0e-\x1f\x7f]")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

_URL_TAIL_RE = re.compile(r"(https?://\S*)$")
_URL_CHARS_RE = re.compile(r"^[\w\-._~:/?#\[\]@!$&'()*+,;=%]+$")


def _bold_span(match: re.Match) -> str:
    content = match.group(1)
    trimmed = content.strip()
    return f"*{trimmed}*" if trimmed else content


def ansi_to_markup(text: str) -> str:
    """Convert ANSI bold to ``*bold*`` and drop every other escape sequence."""
    result = _BOLD_ON_RE.sub(BOLD_ON, text)
    result = _BOLD_OFF_RE.sub(BOLD_OFF, result)
    result = _ANSI_RE.sub("", result)
    result = _BOLD_SPAN_RE.sub(_bold_span, result)
    # Bold that was never switched off runs to the end of its line
    result = _BOLD_OPEN_RE.sub(r"*\1*", result)
    result = _MARKER_RE.sub("", result)
    # *one**two* -> *one* *two*
    return _ADJACENT_STARS_RE.sub("* ", result)


def join_broken_urls(text: str) -> str:
    """Rejoin URLs that the terminal wrapped across several lines."""
    lines = text.split("\n")
    result = []
    i = 0

    while i < len(lines):
        line = lines[i]
        match = _URL_TAIL_RE.search(line)
        if not match:
            result.append(line)
            i += 1
            continue

        url = match.group(1)
        prefix = line[:len(line) - len(url)]
        j = i + 1
        while j < len(lines):
            piece = lines[j].strip()
            if piece and " " not in piece and _URL_CHARS_RE.match(piece):
                url += piece
                j += 1
            else:
                break

        result.append(prefix + url)
        i = j

    return "\n".join(result)


def collapse_blank_lines(text: str) -> str:
    """Cap runs of blank lines at one and trim the result."""
    return _BLANK_RUN_RE.sub("\n\n", text).strip()


def clean_output(text: str) -> str:
    """Normalize a raw terminal capture.

    The result contains no escape sequences or control characters other than
    newlines, has wrapped URLs rejoined, keeps whitespace-only lines as empty
    lines and never has more than one blank line in a row. Applying it twice
    gives the same result as applying it once.
    """
    if not text:
        return ""

    cleaned = ansi_to_markup(text)
    cleaned = _CONTROL_RE.sub("", cleaned)
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = join_broken_urls(cleaned)
    cleaned = "\n".join(line if line.strip() else "" for line in cleaned.split("\n"))
    return collapse_blank_lines(cleaned)
