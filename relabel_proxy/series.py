"""Data structures for parsed exposition entries and label sets."""
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

NAME_LABEL = "__name__"


@dataclass
class Comment:
    """A comment line (HELP, TYPE or free text) kept verbatim for output."""
    text: str
    position: int
    metric_name: Optional[str] = None


@dataclass
class Series:
    """A single sample line with its full label set, including the name label."""
    metric_name: str
    labels: Dict[str, str]
    value: float
    position: int


@dataclass
class AggregatedRecord:
    """Series collapsed under one label set key.

    Position and metric name come from the first series seen for the key.
    """
    labels: Dict[str, str]
    value: float
    position: int
    metric_name: str
    sources: int = field(default=1)


Entry = Union[Comment, Series, AggregatedRecord]


def escape_label_value(value: str) -> str:
    """Escape a label value for the text exposition format."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def format_label_block(labels: Dict[str, str]) -> str:
    """Render all non-name labels sorted by name, or an empty string if none."""
    names = sorted(name for name in labels if name != NAME_LABEL)
    if not names:
        return ""
    pairs = ", ".join(f'{name}="{escape_label_value(labels[name])}"' for name in names)
    return "{" + pairs + "}"


def series_key(labels: Dict[str, str]) -> str:
    """Generate a stable key from the label set, name label first."""
    return labels.get(NAME_LABEL, "") + format_label_block(labels)
