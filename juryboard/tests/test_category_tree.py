"""
Category hierarchy: cycle prevention on re-parenting and descendant closure.
"""
import pytest

from juryboard.errors import DeniedError, ErrorCode, InvalidStateError, InvalidValueError
from juryboard.orm.permissions import AdminRole
from juryboard.services.category_tree import (
    assign_participant_category, collect_descendant_ids, participants_in_all,
    set_category_parent, would_create_cycle
)
from juryboard.services.permission_resolver import Actor


def test_would_create_cycle():
    # 1 <- 2 <- 3
    parents = {1: None, 2: 1, 3: 2}
    assert would_create_cycle(parents, 1, 3)
    assert would_create_cycle(parents, 2, 2)
    assert not would_create_cycle(parents, 3, 1)


def test_existing_loop_is_not_extended():
    parents = {1: 2, 2: 1, 3: None}
    assert would_create_cycle(parents, 3, 1)


@pytest.mark.asyncio
async def test_reparent_rejects_cycle(db, seed):
    competition = await seed.competition()
    root = await seed.admin(AdminRole.SUPER_ADMIN)
    actor = Actor(root.id, root.role)
    music = await seed.category(competition, "Music")
    jazz = await seed.category(competition, "Jazz", parent=music)
    bebop = await seed.category(competition, "Bebop", parent=jazz)

    with pytest.raises(InvalidStateError) as exc:
        await set_category_parent(db, actor, music.id, bebop.id)
    assert exc.value.code == ErrorCode.CATEGORY_CYCLE

    with pytest.raises(InvalidStateError):
        await set_category_parent(db, actor, jazz.id, jazz.id)

    moved = await set_category_parent(db, actor, bebop.id, music.id)
    assert moved.parent_id == music.id

    detached = await set_category_parent(db, actor, jazz.id, None)
    assert detached.parent_id is None


@pytest.mark.asyncio
async def test_reparent_across_competitions_rejected(db, seed):
    root = await seed.admin(AdminRole.SUPER_ADMIN)
    here = await seed.category(await seed.competition(), "Here")
    there = await seed.category(await seed.competition("Other"), "There")

    with pytest.raises(InvalidValueError):
        await set_category_parent(db, Actor(root.id, root.role), here.id, there.id)


@pytest.mark.asyncio
async def test_reparent_requires_permission(db, seed):
    competition = await seed.competition()
    admin = await seed.admin()
    parent = await seed.category(competition, "Parent")
    child = await seed.category(competition, "Child")

    with pytest.raises(DeniedError):
        await set_category_parent(db, Actor(admin.id, admin.role), child.id, parent.id)


@pytest.mark.asyncio
async def test_descendant_closure(db, seed):
    competition = await seed.competition()
    music = await seed.category(competition, "Music")
    jazz = await seed.category(competition, "Jazz", parent=music)
    bebop = await seed.category(competition, "Bebop", parent=jazz)
    rock = await seed.category(competition, "Rock", parent=music)
    await seed.category(competition, "Dance")

    assert await collect_descendant_ids(db, music.id) == {music.id, jazz.id, bebop.id, rock.id}
    assert await collect_descendant_ids(db, jazz.id) == {jazz.id, bebop.id}
    assert await collect_descendant_ids(db, rock.id) == {rock.id}


@pytest.mark.asyncio
async def test_participants_in_all_categories(db, seed):
    competition = await seed.competition()
    music = await seed.category(competition, "Music")
    jazz = await seed.category(competition, "Jazz", parent=music)
    students = await seed.category(competition, "Students")

    trio = await seed.participant(competition, "Trio")
    band = await seed.participant(competition, "Band")
    solo = await seed.participant(competition, "Solo")
    await seed.member(trio, jazz)
    await seed.member(trio, students)
    await seed.member(band, music)
    await seed.member(solo, students)

    assert await participants_in_all(db, []) is None
    assert await participants_in_all(db, [music.id]) == {trio.id, band.id}
    assert await participants_in_all(db, [music.id, students.id]) == {trio.id}
    assert await participants_in_all(db, [jazz.id, students.id]) == {trio.id}


@pytest.mark.asyncio
async def test_assign_membership_is_idempotent(db, seed):
    competition = await seed.competition()
    root = await seed.admin(AdminRole.SUPER_ADMIN)
    actor = Actor(root.id, root.role)
    category = await seed.category(competition, "Finalists")
    participant = await seed.participant(competition)

    await assign_participant_category(db, actor, participant.id, category.id)
    await assign_participant_category(db, actor, participant.id, category.id)

    assert await participants_in_all(db, [category.id]) == {participant.id}
