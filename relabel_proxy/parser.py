"""Parser for the Prometheus text exposition format.

Turns a raw scrape body into an ordered list of entries:
- ``# HELP`` / ``# TYPE`` lines become comments tied to a metric name
- other ``#`` lines become free-text comments, kept verbatim
- sample lines become series carrying their full label set

Malformed lines are skipped and never abort the parse.
"""
import logging
import re
from typing import Dict, List, Optional, Tuple

from relabel_proxy.series import NAME_LABEL, Comment, Entry, Series

METRIC_TYPES = ("counter", "gauge", "histogram", "summary", "untyped")

_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_HELP_RE = re.compile(r"#[ \t]+HELP[ \t]+(?P<name>\S+)(?:[ \t]+(?P<text>.*))?")
_TYPE_RE = re.compile(r"#[ \t]+TYPE[ \t]+(?P<name>\S+)[ \t]+(?P<type>\S+)[ \t]*")
_LABEL_PAIR_RE = re.compile(
    r'[ \t]*(?P<name>[a-zA-Z_][a-zA-Z0-9_]*)[ \t]*=[ \t]*"(?P<value>(?:[^"\\]|\\.)*)"[ \t]*'
)
_LABEL_BLOCK_END_RE = re.compile(r"[ \t]*\}")
_HELP_KEYWORD_RE = re.compile(r"#[ \t]+HELP(?:[ \t]|$)")
_TYPE_KEYWORD_RE = re.compile(r"#[ \t]+TYPE(?:[ \t]|$)")
_ESCAPE_RE = re.compile(r"\\(.)")
_FLOAT_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_SPECIAL_FLOATS = {"nan", "inf", "+inf", "-inf", "infinity", "+infinity", "-infinity"}
_TIMESTAMP_RE = re.compile(r"-?\d+")
_NATIVE_HISTOGRAM_RE = re.compile(r"\{[ \t]*[a-z_]+:")
_UNESCAPES = {"n": "\n", '"': '"', "\\": "\\"}


class LineError(ValueError):
    """Raised internally for a line that does not match any recognised form."""


def unescape_label_value(raw: str) -> str:
    """Resolve ``\\n``, ``\\"`` and ``\\\\``; other escapes are kept as written."""
    return _ESCAPE_RE.sub(lambda m: _UNESCAPES.get(m.group(1), m.group(0)), raw)


def parse_value(token: str) -> float:
    """Parse a sample value token, rejecting anything outside the format."""
    if _FLOAT_RE.fullmatch(token) or token.lower() in _SPECIAL_FLOATS:
        return float(token)
    raise LineError(f"invalid sample value {token!r}")


class ExpositionParser:
    """Parses one scrape body. Holds no state between calls."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def parse(self, buf: bytes) -> List[Entry]:
        """
        Parse a text exposition buffer into entries.

        Args:
            buf: Raw scrape body, assumed UTF-8

        Returns:
            Entries in input order; each carries its 1-based line number
            as its position
        """
        text = buf.decode("utf-8", errors="replace")
        entries: List[Entry] = []
        skipped = 0

        for position, raw_line in enumerate(text.split("\n"), start=1):
            line = raw_line.rstrip()
            if not line.strip():
                continue
            try:
                entries.append(self._parse_line(line.lstrip(), position))
            except LineError as e:
                skipped += 1
                self.logger.debug(f"Skipping line {position}: {e}")

        if skipped:
            self.logger.debug(f"Parsed {len(entries)} entries, skipped {skipped} malformed lines")
        return entries

    def _parse_line(self, line: str, position: int) -> Entry:
        if line.startswith("#"):
            return self._parse_comment(line, position)
        return self._parse_sample(line, position)

    def _parse_comment(self, line: str, position: int) -> Comment:
        help_match = _HELP_RE.fullmatch(line)
        if help_match:
            name = self._metric_name(help_match.group("name"))
            text = help_match.group("text")
            rendered = f"# HELP {name} {text}" if text else f"# HELP {name}"
            return Comment(rendered, position, name)

        if _HELP_KEYWORD_RE.match(line):
            raise LineError("HELP line without metric name")

        type_match = _TYPE_RE.fullmatch(line)
        if type_match:
            name = self._metric_name(type_match.group("name"))
            metric_type = type_match.group("type").lower()
            if metric_type not in METRIC_TYPES:
                metric_type = "untyped"
            return Comment(f"# TYPE {name} {metric_type}", position, name)

        if _TYPE_KEYWORD_RE.match(line):
            raise LineError("TYPE line needs a metric name and a type")

        return Comment(line, position)

    def _parse_sample(self, line: str, position: int) -> Entry:
        name_match = _METRIC_NAME_RE.match(line)
        if not name_match:
            raise LineError("sample line does not start with a metric name")
        name = name_match.group(0)
        rest = line[name_match.end():]
        if rest and rest[0] not in " \t{":
            raise LineError("metric name must be followed by labels or whitespace")
        rest = rest.lstrip(" \t")

        labels: Dict[str, str] = {NAME_LABEL: name}
        if rest.startswith("{") and not _NATIVE_HISTOGRAM_RE.match(rest):
            parsed, rest = self._parse_label_block(rest)
            for label_name, value in parsed:
                if label_name in labels:
                    raise LineError(f"duplicate label {label_name!r}")
                labels[label_name] = value

        rest = rest.strip()
        if _NATIVE_HISTOGRAM_RE.match(rest):
            # Native histogram sample; passed through undecoded
            return Comment(line, position, name)

        tokens = rest.split()
        if not tokens or len(tokens) > 2:
            raise LineError("expected a value and an optional timestamp")
        value = parse_value(tokens[0])
        if len(tokens) == 2 and not _TIMESTAMP_RE.fullmatch(tokens[1]):
            raise LineError(f"invalid timestamp {tokens[1]!r}")

        return Series(name, labels, value, position)

    def _parse_label_block(self, text: str) -> Tuple[List[Tuple[str, str]], str]:
        """Consume ``{name="value", ...}`` and return the pairs plus the remainder."""
        pairs: List[Tuple[str, str]] = []
        pos = 1
        while True:
            closing = _LABEL_BLOCK_END_RE.match(text, pos)
            if closing:
                return pairs, text[closing.end():]
            pair = _LABEL_PAIR_RE.match(text, pos)
            if not pair:
                raise LineError("malformed label block")
            pairs.append((pair.group("name"), unescape_label_value(pair.group("value"))))
            pos = pair.end()
            if pos < len(text) and text[pos] == ",":
                pos += 1
            elif not text.startswith("}", pos):
                raise LineError("labels must be separated by commas")

    @staticmethod
    def _metric_name(name: str) -> str:
        if not _METRIC_NAME_RE.fullmatch(name):
            raise LineError(f"invalid metric name {name!r}")
        return name
