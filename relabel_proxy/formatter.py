"""Rendering of ordered entries back into the text exposition format."""
import logging
import math
from decimal import Decimal
from typing import Iterable, Optional

from relabel_proxy.series import NAME_LABEL, Comment, Entry, format_label_block


def format_value(value: float) -> str:
    """
    Render a sample value the way the Go Prometheus client does.

    Uses the shortest digits that round-trip, switching to exponent form
    when the decimal exponent is below -4 or at least 6
    (``1458255915`` -> ``1.458255915e+09``).
    """
    if value == 1:
        return "1"
    if value == 0:
        return "0"
    if value == -1:
        return "-1"
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"

    sign, digit_tuple, exponent = Decimal(repr(value)).normalize().as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    point = len(digits) + exponent
    prefix = "-" if sign else ""

    decimal_exponent = point - 1
    if decimal_exponent < -4 or decimal_exponent >= 6:
        mantissa = digits[0]
        if len(digits) > 1:
            mantissa += "." + digits[1:]
        exp_sign = "-" if decimal_exponent < 0 else "+"
        return f"{prefix}{mantissa}e{exp_sign}{abs(decimal_exponent):02d}"

    if point <= 0:
        return f"{prefix}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return f"{prefix}{digits}{'0' * (point - len(digits))}"
    return f"{prefix}{digits[:point]}.{digits[point:]}"


class Formatter:
    """Renders entries one per line, without a trailing newline."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def format_entry(self, entry: Entry) -> str:
        if isinstance(entry, Comment):
            return entry.text
        metric_name = entry.labels.get(NAME_LABEL, "")
        return f"{metric_name}{format_label_block(entry.labels)} {format_value(entry.value)}"

    def format(self, entries: Iterable[Entry]) -> str:
        lines = [self.format_entry(entry) for entry in entries]
        self.logger.debug(f"Rendered {len(lines)} lines")
        return "\n".join(lines)
