"""Label rewriting rules compatible with Prometheus relabel_configs.

Each action is its own rule type carrying only the fields it uses.
Rules are applied in order to one label set at a time; ``keep``/``drop``
style rules can discard the label set and stop evaluation.
"""
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Union

from relabel_proxy.config import RelabelConfig
from relabel_proxy.series import NAME_LABEL

_TEMPLATE_REF_RE = re.compile(r"\$(?:(\$)|\{([A-Za-z0-9_]+)\}|([A-Za-z0-9_]+))")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")


class Regexp:
    """A regular expression that must match the whole input."""

    def __init__(self, pattern: str = "(.*)"):
        self.pattern = pattern
        self._compiled = re.compile(f"(?:{pattern})")

    def fullmatch(self, value: str) -> Optional[re.Match]:
        return self._compiled.fullmatch(value)

    def matches(self, value: str) -> bool:
        return self._compiled.fullmatch(value) is not None

    def expand(self, template: str, match: re.Match) -> str:
        """
        Substitute ``$1``, ``${1}``, ``$name``, ``${name}`` and ``$$`` in a template.

        References to unknown or non-participating groups expand to "".
        """
        def substitute(ref: re.Match) -> str:
            if ref.group(1):
                return "$"
            name = ref.group(2) or ref.group(3)
            if name.isdigit():
                index = int(name)
                if index > self._compiled.groups:
                    return ""
                return match.group(index) or ""
            if name not in self._compiled.groupindex:
                return ""
            return match.group(name) or ""

        return _TEMPLATE_REF_RE.sub(substitute, template)

    def __eq__(self, other) -> bool:
        return isinstance(other, Regexp) and other.pattern == self.pattern

    def __hash__(self) -> int:
        return hash(self.pattern)

    def __repr__(self) -> str:
        return f"Regexp({self.pattern!r})"


@dataclass(frozen=True)
class Keep:
    source_labels: Tuple[str, ...]
    separator: str
    regex: Regexp


@dataclass(frozen=True)
class Drop:
    source_labels: Tuple[str, ...]
    separator: str
    regex: Regexp


@dataclass(frozen=True)
class KeepEqual:
    source_labels: Tuple[str, ...]
    separator: str
    target_label: str


@dataclass(frozen=True)
class DropEqual:
    source_labels: Tuple[str, ...]
    separator: str
    target_label: str


@dataclass(frozen=True)
class Replace:
    source_labels: Tuple[str, ...]
    separator: str
    regex: Regexp
    target_label: str
    replacement: str


@dataclass(frozen=True)
class LabelDrop:
    regex: Regexp


@dataclass(frozen=True)
class LabelKeep:
    regex: Regexp


@dataclass(frozen=True)
class LabelMap:
    regex: Regexp
    replacement: str


@dataclass(frozen=True)
class HashMod:
    source_labels: Tuple[str, ...]
    separator: str
    target_label: str
    modulus: int


@dataclass(frozen=True)
class Lowercase:
    source_labels: Tuple[str, ...]
    separator: str
    target_label: str


@dataclass(frozen=True)
class Uppercase:
    source_labels: Tuple[str, ...]
    separator: str
    target_label: str


@dataclass(frozen=True)
class Unknown:
    action: str


RelabelRule = Union[
    Keep, Drop, KeepEqual, DropEqual, Replace, LabelDrop, LabelKeep,
    LabelMap, HashMod, Lowercase, Uppercase, Unknown,
]


def compile_rule(config: RelabelConfig) -> RelabelRule:
    """Build the rule variant for one relabel config entry."""
    sources = tuple(config.source_labels)
    sep = config.separator
    target = config.target_label or ""

    match config.action:
        case "keep":
            return Keep(sources, sep, Regexp(config.regex))
        case "drop":
            return Drop(sources, sep, Regexp(config.regex))
        case "keepequal":
            return KeepEqual(sources, sep, target)
        case "dropequal":
            return DropEqual(sources, sep, target)
        case "replace":
            return Replace(sources, sep, Regexp(config.regex), target, config.replacement)
        case "labeldrop":
            return LabelDrop(Regexp(config.regex))
        case "labelkeep":
            return LabelKeep(Regexp(config.regex))
        case "labelmap":
            return LabelMap(Regexp(config.regex), config.replacement)
        case "hashmod":
            return HashMod(sources, sep, target, config.modulus or 0)
        case "lowercase":
            return Lowercase(sources, sep, target)
        case "uppercase":
            return Uppercase(sources, sep, target)
        case _:
            return Unknown(config.action)


def compile_rules(
    configs: Iterable[RelabelConfig],
    logger: Optional[logging.Logger] = None
) -> List[RelabelRule]:
    """Compile relabel configs in order, warning about actions that do nothing."""
    logger = logger or logging.getLogger(__name__)
    rules = []
    for config in configs:
        rule = compile_rule(config)
        if isinstance(rule, Unknown):
            logger.warning(f"Unrecognised relabel action '{rule.action}' will be ignored")
        rules.append(rule)
    return rules


def hashmod(value: str, modulus: int) -> int:
    """Stable hash of a string reduced modulo ``modulus``."""
    digest = hashlib.md5(value.encode()).digest()
    return int.from_bytes(digest[8:], "big") % modulus


def _match_string(rule, labels: Dict[str, str]) -> str:
    return rule.separator.join(labels.get(name, "") for name in rule.source_labels)


def _set_label(labels: Dict[str, str], name: str, value: str):
    if value:
        labels[name] = value
    else:
        labels.pop(name, None)


def apply_rule(rule: RelabelRule, labels: Dict[str, str]) -> bool:
    """
    Apply one rule to a mutable label set.

    Returns:
        False if the label set must be discarded, True otherwise
    """
    match rule:
        case Keep(regex=regex):
            return regex.matches(_match_string(rule, labels))

        case Drop(regex=regex):
            return not regex.matches(_match_string(rule, labels))

        case KeepEqual(target_label=target):
            return _match_string(rule, labels) == labels.get(target, "")

        case DropEqual(target_label=target):
            return _match_string(rule, labels) != labels.get(target, "")

        case Replace(regex=regex, target_label=target, replacement=replacement):
            value = _match_string(rule, labels)
            found = regex.fullmatch(value)
            if found is None:
                return True
            target_name = regex.expand(target, found)
            if not _LABEL_NAME_RE.fullmatch(target_name):
                return True
            _set_label(labels, target_name, regex.expand(replacement, found))

        case LabelDrop(regex=regex):
            for name in list(labels):
                if name != NAME_LABEL and regex.matches(name):
                    del labels[name]

        case LabelKeep(regex=regex):
            for name in list(labels):
                if name != NAME_LABEL and not regex.matches(name):
                    del labels[name]

        case LabelMap(regex=regex, replacement=replacement):
            for name, value in list(labels.items()):
                found = regex.fullmatch(name)
                if found is not None:
                    _set_label(labels, regex.expand(replacement, found), value)

        case HashMod(target_label=target, modulus=modulus):
            labels[target] = str(hashmod(_match_string(rule, labels), modulus))

        case Lowercase(target_label=target):
            _set_label(labels, target, _match_string(rule, labels).lower())

        case Uppercase(target_label=target):
            _set_label(labels, target, _match_string(rule, labels).upper())

        case Unknown():
            pass

    return True


class Relabeler:
    """Applies an ordered rule list to label sets."""

    def __init__(self, rules: List[RelabelRule], logger: Optional[logging.Logger] = None):
        self.rules = list(rules)
        self.logger = logger or logging.getLogger(__name__)
        self.discarded = 0

    def process(self, labels: Dict[str, str]) -> Optional[Dict[str, str]]:
        """
        Rewrite a label set.

        Args:
            labels: Input label set; left unmodified

        Returns:
            The rewritten label set, or None if a rule discarded it
        """
        result = dict(labels)
        for rule in self.rules:
            if not apply_rule(rule, result):
                self.discarded += 1
                self.logger.debug(
                    f"Series {labels.get(NAME_LABEL, '')} discarded by {type(rule).__name__.lower()} rule"
                )
                return None
        return result
