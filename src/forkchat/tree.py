"""Pure functions over a conversation's flat, parent-linked message set.

Messages form a tree through ``parent_id``. Regenerating or forking adds a
sibling (same parent, same role) instead of replacing anything, so a
conversation holds every alternative ever produced. The *active branch* is
the single root-to-leaf path obtained by always following the most recently
selected or created child; switching branches only stamps ``selected_at`` on
the sibling that should win.

Nothing here mutates its input except ``switch_branch``.
"""

from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from .models import Message, Role, utcnow


def _sibling_order(message: Message):
    return (message.created_at, message.id)


def _selection_order(message: Message):
    return (message.effective_time, message.created_at, message.id)


def children_by_parent(messages: List[Message]) -> Dict[Optional[str], List[Message]]:
    """Group messages by parent id in a single pass."""
    children: Dict[Optional[str], List[Message]] = defaultdict(list)
    for message in messages:
        children[message.parent_id].append(message)
    return children


def active_branch(messages: List[Message]) -> List[Message]:
    """Return the root-to-leaf path the conversation currently shows.

    The newest root is treated as the live one; any other roots are left out
    of the active view. From the root, the child with the greatest
    ``selected_at or created_at`` is followed until a leaf is reached.
    """
    children = children_by_parent(messages)
    roots = children.get(None)
    if not roots:
        return []

    current = max(roots, key=_sibling_order)
    branch = [current]
    while children.get(current.id):
        current = max(children[current.id], key=_selection_order)
        branch.append(current)
    return branch


def siblings(message: Message, messages: List[Message]) -> List[Message]:
    """All alternatives at ``message``'s position, oldest first.

    Siblings share both the parent and the role, so a user message and the
    model reply beneath it are never siblings. The result always contains
    ``message`` itself.
    """
    found = [
        m
        for m in messages
        if m.parent_id == message.parent_id and m.role == message.role
    ]
    if not any(m.id == message.id for m in found):
        found.append(message)
    return sorted(found, key=_sibling_order)


def switch_branch(
    message: Message,
    direction: int,
    messages: List[Message],
    now: Optional[datetime] = None,
) -> Optional[Message]:
    """Make the sibling ``direction`` steps away from ``message`` active.

    Stamps ``selected_at`` on that sibling only and returns it. Returns None,
    leaving everything untouched, when the move would leave the sibling list.
    """
    sibs = siblings(message, messages)
    index = next(i for i, m in enumerate(sibs) if m.id == message.id)
    new_index = index + direction
    if new_index < 0 or new_index >= len(sibs):
        return None

    target = sibs[new_index]
    stamp = now or utcnow()
    # selected_at may never precede created_at
    target.selected_at = max(stamp, target.created_at)
    return target


def branch_info(message: Message, messages: List[Message]) -> Tuple[int, int]:
    """(1-based position, sibling count), e.g. for a "2 / 3" indicator."""
    sibs = siblings(message, messages)
    for position, sibling in enumerate(sibs, start=1):
        if sibling.id == message.id:
            return position, len(sibs)
    return 1, 1


def subtree_ids(root_id: str, messages: List[Message]) -> Set[str]:
    """Ids of ``root_id`` and every descendant, for cascading deletes.

    Only previously unseen ids enter the frontier, so malformed or cyclic
    parent links still terminate.
    """
    collected = {root_id}
    frontier = {root_id}
    while frontier:
        next_frontier = {
            m.id
            for m in messages
            if m.parent_id in frontier and m.id not in collected
        }
        collected |= next_frontier
        frontier = next_frontier
    return collected


def path_to(message: Message, messages: List[Message]) -> List[Message]:
    """The ancestor chain from the root down to ``message`` inclusive."""
    by_id = {m.id: m for m in messages}
    chain = [message]
    seen = {message.id}
    parent_id = message.parent_id
    while parent_id is not None and parent_id in by_id and parent_id not in seen:
        parent = by_id[parent_id]
        chain.append(parent)
        seen.add(parent_id)
        parent_id = parent.parent_id
    chain.reverse()
    return chain


def single_delete_ids(message: Message, messages: List[Message]) -> List[str]:
    """The message plus, for a user message, the model replies directly below it."""
    ids = [message.id]
    if message.role == Role.USER:
        ids.extend(
            m.id
            for m in messages
            if m.parent_id == message.id and m.role == Role.MODEL
        )
    return ids
