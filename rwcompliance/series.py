"""Data structures for decoded remote write samples."""
from dataclasses import dataclass
from typing import NamedTuple, Tuple


class Label(NamedTuple):
    """A single label name/value pair."""
    name: str
    value: str


LabelSet = Tuple[Label, ...]


def labels_from_strings(*pairs: str) -> LabelSet:
    """Build a sorted label set from alternating name, value arguments."""
    if len(pairs) % 2:
        raise ValueError("labels_from_strings needs an even number of arguments")
    labels = [Label(pairs[i], pairs[i + 1]) for i in range(0, len(pairs), 2)]
    return tuple(sorted(labels))


def format_labels(labels: LabelSet) -> str:
    """Render labels in received order, e.g. {__name__="up", job="test"}."""
    return "{" + ", ".join(f'{l.name}="{l.value}"' for l in labels) + "}"


@dataclass(frozen=True)
class Sample:
    """A single (labels, timestamp, value) point."""
    labels: LabelSet
    timestamp: int
    value: float

    def label_names(self) -> Tuple[str, ...]:
        return tuple(l.name for l in self.labels)

    def label_value(self, name: str):
        """Return the first value for ``name``, or None."""
        for label in self.labels:
            if label.name == name:
                return label.value
        return None


@dataclass(frozen=True)
class Batch:
    """The samples decoded from one write request, in wire order."""
    samples: Tuple[Sample, ...] = ()

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self):
        return iter(self.samples)
