from __future__ import annotations

from typing import Literal

# purpose: decide whether an actor may move an order out of its current status, and where to
# status: active

STATUS_PENDING = "Pending"
STATUS_SENT_TO_HEAD_OFFICE = "Order Sent To Head Office"
STATUS_WAITING_FOR_QUOTATION = "Waiting For Quotation"
STATUS_BUDGET_RELEASED = "Budget Released"
STATUS_WAITING_FOR_PURCHASE = "Waiting For Purchase"
STATUS_PURCHASE_COMPLETE = "Purchase Complete"
STATUS_PARTS_SENT_TO_FACTORY = "Parts Sent To Factory"
STATUS_PARTS_RECEIVED = "Parts Received"

# workflow order, used to seed the statuses table
ORDER_STATUSES: tuple[str, ...] = (
    STATUS_PENDING,
    STATUS_SENT_TO_HEAD_OFFICE,
    STATUS_WAITING_FOR_QUOTATION,
    STATUS_BUDGET_RELEASED,
    STATUS_WAITING_FOR_PURCHASE,
    STATUS_PURCHASE_COMPLETE,
    STATUS_PARTS_SENT_TO_FACTORY,
    STATUS_PARTS_RECEIVED,
)

TERMINAL_STATUSES = frozenset({STATUS_PARTS_RECEIVED})

_MANAGE_POLICY: dict[str, frozenset[str]] = {
    "admin": frozenset(ORDER_STATUSES) - TERMINAL_STATUSES,
    "department": frozenset({STATUS_PENDING, STATUS_PARTS_SENT_TO_FACTORY}),
    "office": frozenset(
        {
            STATUS_SENT_TO_HEAD_OFFICE,
            STATUS_BUDGET_RELEASED,
            STATUS_WAITING_FOR_PURCHASE,
            STATUS_PURCHASE_COMPLETE,
        }
    ),
    "finance": frozenset({STATUS_WAITING_FOR_QUOTATION}),
}

PERMISSIONS: tuple[str, ...] = tuple(_MANAGE_POLICY)

ManageDecision = Literal["completed", "unauthorized", "allowed"]


def can_manage(status_name: object, permission: object) -> bool:
    """Return True when ``permission`` may transition an order in ``status_name``.

    Defined for every input: unknown statuses, unknown permissions and
    non-string values all yield False.
    """

    if not isinstance(status_name, str) or not isinstance(permission, str):
        return False
    allowed = _MANAGE_POLICY.get(permission)
    if allowed is None:
        return False
    return status_name in allowed


def manage_decision(status_name: object, permission: object) -> ManageDecision:
    """Classify a manage attempt the way the manage screen reacts to it."""

    if isinstance(status_name, str) and status_name in TERMINAL_STATUSES:
        return "completed"
    if not can_manage(status_name, permission):
        return "unauthorized"
    return "allowed"


def next_status(status_name: object) -> str | None:
    """The status an order in ``status_name`` moves to, or None at the end of the workflow."""

    if not isinstance(status_name, str) or status_name not in ORDER_STATUSES:
        return None
    position = ORDER_STATUSES.index(status_name)
    if position + 1 == len(ORDER_STATUSES):
        return None
    return ORDER_STATUSES[position + 1]
