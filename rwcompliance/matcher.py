"""Label-subset matching."""
from rwcompliance.series import LabelSet


def labels_contain(outer: LabelSet, inner: LabelSet) -> bool:
    """
    Return True if every label in ``inner`` appears in ``outer`` with the same value.

    Both sets must already be sorted by name and free of duplicate names.
    They are not re-sorted here: sortedness of received labels is itself
    under test, so callers check it separately.
    """
    i, j = 0, 0
    while i < len(outer) and j < len(inner):
        if outer[i].name > inner[j].name:
            # inner[j] is missing from outer
            return False
        elif outer[i].name < inner[j].name:
            # extra label in outer
            i += 1
        elif outer[i].value != inner[j].value:
            return False
        else:
            i += 1
            j += 1

    return j == len(inner)
