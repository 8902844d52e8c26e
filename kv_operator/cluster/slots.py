"""
Slot Planning Module

Pure slot arithmetic for the rebalancer:
- target_ranges(): split the slot space into one contiguous range per primary
- assign_targets(): hand those ranges to primaries with the least churn
- plan_migrations(): diff current ownership against the targets
- compress_slots(): turn a slot set into minimal contiguous ranges

Nothing in this module talks to a node; the executor in
reconcile/rebalance.py applies the plan.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..config.settings import TOTAL_SLOTS
from .models import Node


@dataclass
class SlotRange:
    """An inclusive [min, max] run of slots."""
    min: int
    max: int

    @property
    def width(self) -> int:
        return self.max - self.min + 1

    def contains(self, slot: int) -> bool:
        return self.min <= slot <= self.max

    def to_list(self) -> List[int]:
        return [self.min, self.max]


@dataclass
class SlotMigration:
    """Slots that must move from one primary to another."""
    from_id: str
    to_node: Node
    slots: Set[int] = field(default_factory=set)

    def get_slot_ranges(self) -> List[SlotRange]:
        """Compress the slot set into minimal contiguous ranges."""
        return compress_slots(self.slots)


def compress_slots(slots: Iterable[int]) -> List[SlotRange]:
    """
    Compress slots into sorted, minimal, contiguous ranges.

    Examples:
        >>> [r.to_list() for r in compress_slots({1, 2, 3, 7, 8, 100})]
        [[1, 3], [7, 8], [100, 100]]
    """
    result: List[SlotRange] = []
    for slot in sorted(set(slots)):
        if result and slot == result[-1].max + 1:
            result[-1].max = slot
        else:
            result.append(SlotRange(slot, slot))
    return result


def flatten_ranges(ranges: Iterable[SlotRange]) -> List[int]:
    """Ranges -> the [min, max, min, max, ...] form stored on a Node."""
    result: List[int] = []
    for r in ranges:
        result.extend(r.to_list())
    return result


def target_ranges(num_primaries: int, total_slots: int = TOTAL_SLOTS) -> List[SlotRange]:
    """
    Split [0, total_slots - 1] into ``num_primaries`` contiguous ranges.

    Every range is total_slots // num_primaries wide; the last one absorbs the
    remainder of the division.
    """
    if num_primaries < 1 or num_primaries > total_slots:
        raise ValueError(f"cannot split {total_slots} slots into {num_primaries} ranges")

    width = total_slots // num_primaries
    ranges = []
    for i in range(num_primaries):
        start = i * width
        end = total_slots - 1 if i == num_primaries - 1 else (i + 1) * width - 1
        ranges.append(SlotRange(start, end))
    return ranges


def first_slot(node: Node) -> int:
    """Lowest slot a node owns (slot lists are not guaranteed sorted)."""
    return min(node.slots[0::2])


def assign_targets(
        primaries: List[Node],
        num_primaries: int,
        total_slots: int = TOTAL_SLOTS,
) -> Dict[str, SlotRange]:
    """
    Map target ranges onto primaries, keyed by pod uid.

    Primaries that already own slots are ordered by their lowest slot so each
    keeps the range it mostly already holds; primaries without slots fill the
    remaining ranges. Primaries beyond ``num_primaries`` get no target.
    """
    owning = sorted((p for p in primaries if p.slots), key=first_slot)
    empty = [p for p in primaries if not p.slots]
    ordered = (owning + empty)[:num_primaries]

    ranges = target_ranges(num_primaries, total_slots)
    return {node.pod_uid: ranges[i] for i, node in enumerate(ordered)}


def plan_migrations(
        owners: List[Node],
        targets: Dict[str, SlotRange],
        nodes_by_uid: Dict[str, Node],
) -> List[SlotMigration]:
    """
    Diff current slot ownership against the target assignment.

    Args:
        owners: Nodes that currently own slots (primaries, plus leaving nodes
            still being drained)
        targets: Output of assign_targets()
        nodes_by_uid: Lookup for destination nodes

    Returns:
        One SlotMigration per (source, destination) pair, in first-seen order.
        Slots whose target range has no owner are left where they are.
    """
    by_range: List[Tuple[SlotRange, str]] = sorted(
        ((r, uid) for uid, r in targets.items()), key=lambda item: item[0].min)

    def owner_of(slot: int) -> Optional[str]:
        for slot_range, uid in by_range:
            if slot_range.contains(slot):
                return uid
        return None

    migrations: Dict[Tuple[str, str], SlotMigration] = {}
    for node in owners:
        target = targets.get(node.pod_uid)
        for slot in node.get_slots():
            if target is not None and target.contains(slot):
                continue

            to_uid = owner_of(slot)
            if to_uid is None or to_uid == node.pod_uid:
                continue

            key = (node.id, to_uid)
            if key not in migrations:
                migrations[key] = SlotMigration(from_id=node.id, to_node=nodes_by_uid[to_uid])
            migrations[key].slots.add(slot)

    return list(migrations.values())


def unowned_slots(owned: Iterable[int], total_slots: int = TOTAL_SLOTS) -> List[SlotRange]:
    """Ranges of the slot space that no node owns."""
    taken = set(owned)
    return compress_slots(s for s in range(total_slots) if s not in taken)
