"""Series deduplication and output ordering."""
from typing import Dict, Iterable, List

from relabel_proxy.series import AggregatedRecord, Comment, Entry, series_key


class Aggregator:
    """Collapses series with identical label sets by summing their values.

    One instance serves one scrape of one target and is then thrown away.
    The first series seen for a key fixes the record's position and metric
    name; later collisions only add to the value.
    """

    def __init__(self):
        self._records: Dict[str, AggregatedRecord] = {}

    def add(self, labels: Dict[str, str], value: float, position: int, metric_name: str):
        key = series_key(labels)
        record = self._records.get(key)
        if record is None:
            self._records[key] = AggregatedRecord(dict(labels), value, position, metric_name)
        else:
            record.value += value
            record.sources += 1

    def records(self) -> List[AggregatedRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)


def order_entries(comments: Iterable[Comment], records: Iterable[AggregatedRecord]) -> List[Entry]:
    """
    Merge comments and aggregated series back into input order.

    The sort must be stable: aggregation loses the original order, and
    entries sharing a position keep their relative order so HELP/TYPE
    lines stay next to their series.
    """
    combined: List[Entry] = list(comments)
    combined.extend(records)
    return sorted(combined, key=lambda entry: entry.position)
