"""
Order status state machine
"""

ORDER_STATUSES = ("pending", "in-progress", "processing", "unfulfilled", "completed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})

ALLOWED_TRANSITIONS = {
    "pending": frozenset({"in-progress", "processing", "unfulfilled", "completed", "cancelled"}),
    "in-progress": frozenset({"completed", "cancelled"}),
    "processing": frozenset({"completed", "cancelled"}),
    "unfulfilled": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())

# statuses a batch of orders may be moved into together; terminal statuses need per-order stamps
GROUP_STATUSES = ("in-progress", "processing", "unfulfilled")
