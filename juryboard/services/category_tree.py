"""
Category tree service

Categories form a forest per competition. Parent assignment walks the
proposed parent's ancestor chain iteratively and rejects any assignment
that would close a cycle. Descendant closure is computed breadth-first
for report filtering.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.errors import ErrorCode, InvalidStateError, InvalidValueError, NotFoundError
from juryboard.orm.category import Category, ParticipantCategory
from juryboard.orm.participant import Participant
from juryboard.services.permission_resolver import Actor, PermissionName, require_permission

logger = logging.getLogger(__name__)


async def _parent_map(db: AsyncSession, competition_id: int) -> Dict[int, Optional[int]]:
    result = await db.execute(
        select(Category.id, Category.parent_id).where(Category.competition_id == competition_id)
    )
    return {row.id: row.parent_id for row in result}


def would_create_cycle(parents: Dict[int, Optional[int]], category_id: int, parent_id: int) -> bool:
    """True if category_id is parent_id itself or one of its ancestors."""
    seen: Set[int] = set()
    current: Optional[int] = parent_id
    while current is not None:
        if current == category_id:
            return True
        if current in seen:
            # Stored data already contains a loop; refuse to extend it
            return True
        seen.add(current)
        current = parents.get(current)
    return False


async def set_category_parent(
    db: AsyncSession,
    actor: Actor,
    category_id: int,
    parent_id: Optional[int]
) -> Category:
    category = await db.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category", category_id)

    await require_permission(db, actor, category.competition_id, PermissionName.CAN_MANAGE_CATEGORIES)

    if parent_id is not None:
        parent = await db.get(Category, parent_id)
        if parent is None:
            raise NotFoundError("Category", parent_id)
        if parent.competition_id != category.competition_id:
            raise InvalidValueError(
                "Parent category belongs to a different competition",
                details={"category_id": category_id, "parent_id": parent_id},
            )

        parents = await _parent_map(db, category.competition_id)
        if would_create_cycle(parents, category_id, parent_id):
            raise InvalidStateError(
                f"Category {parent_id} is a descendant of {category_id}",
                code=ErrorCode.CATEGORY_CYCLE,
                details={"category_id": category_id, "parent_id": parent_id},
            )

    category.parent_id = parent_id
    await db.commit()
    logger.info(f"Category {category_id} parent set to {parent_id} by {actor.label}")
    return category


async def collect_descendant_ids(db: AsyncSession, category_id: int) -> Set[int]:
    """The category and every category below it."""
    category = await db.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category", category_id)

    parents = await _parent_map(db, category.competition_id)
    children: Dict[int, List[int]] = {}
    for cid, pid in parents.items():
        if pid is not None:
            children.setdefault(pid, []).append(cid)

    closure: Set[int] = {category_id}
    frontier = [category_id]
    while frontier:
        next_frontier = []
        for cid in frontier:
            for child in children.get(cid, []):
                if child not in closure:
                    closure.add(child)
                    next_frontier.append(child)
        frontier = next_frontier
    return closure


async def participants_in_all(db: AsyncSession, category_ids: Iterable[int]) -> Optional[Set[int]]:
    """
    Participants belonging to every listed category, where belonging to a
    category includes belonging to any of its descendants.
    Returns None when no category filter applies.
    """
    category_ids = list(category_ids)
    if not category_ids:
        return None

    members: Optional[Set[int]] = None
    for category_id in category_ids:
        closure = await collect_descendant_ids(db, category_id)
        result = await db.execute(
            select(ParticipantCategory.participant_id)
            .where(ParticipantCategory.category_id.in_(closure))
            .distinct()
        )
        ids = set(result.scalars().all())
        members = ids if members is None else members & ids
        if not members:
            break
    return members or set()


async def assign_participant_category(
    db: AsyncSession,
    actor: Actor,
    participant_id: int,
    category_id: int
) -> ParticipantCategory:
    """Idempotent membership assignment."""
    participant = await db.get(Participant, participant_id)
    if participant is None:
        raise NotFoundError("Participant", participant_id)
    category = await db.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category", category_id)
    if category.competition_id != participant.competition_id:
        raise InvalidValueError("Category and participant belong to different competitions")

    await require_permission(db, actor, participant.competition_id, PermissionName.CAN_MANAGE_CATEGORIES)

    membership = await db.get(ParticipantCategory, (participant_id, category_id))
    if membership is None:
        membership = ParticipantCategory(participant_id=participant_id, category_id=category_id)
        db.add(membership)
        await db.commit()
    return membership
