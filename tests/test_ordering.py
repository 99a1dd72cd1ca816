"""Tests for the ordering engine."""

import asyncio
import random
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from conftest import add_board, add_column, add_task
from kanban_api.exceptions import InvalidTargetPosition, ItemConflict, ItemNotFound
from kanban_api.models import Task
from kanban_api.services import ordering_service
from kanban_api.services.ordering_service import (
    PositionedItem,
    PositionUpdate,
    ScopeLocks,
    board_scope,
    compute_insert,
    compute_move,
    compute_renumber,
    compute_reorder,
    delete_from_scope,
    insert_into_scope,
    is_dense,
    move_task,
    plan_insert,
    plan_move,
    plan_positions,
    plan_reorder,
    renumber_scope,
    reorder_scope,
    task_scope,
    update_task_positions,
)


def items(*ids: str) -> list[PositionedItem]:
    """Dense scope with the given ids in order."""
    return [PositionedItem(item_id, position) for position, item_id in enumerate(ids)]


def apply(scope: list[PositionedItem], updates: list[PositionUpdate]) -> dict[str, int]:
    positions = {item.id: item.position for item in scope}
    for u in updates:
        positions[u.id] = u.position
    return positions


async def task_positions(db, column_id: str) -> dict[str, int]:
    rows = await db.fetch_all(select(Task.id, Task.position).where(Task.column_id == column_id))
    return {row["id"]: row["position"] for row in rows}


class TestComputeReorder:
    """Tests for single-scope reorder planning."""

    def test_move_backward(self):
        """Moving d to position 1 shifts b and c down."""
        scope = items("a", "b", "c", "d")

        updates = compute_reorder(scope, "d", 1)

        assert apply(scope, updates) == {"a": 0, "d": 1, "b": 2, "c": 3}

    def test_move_forward(self):
        """Moving a to the end shifts the others up."""
        scope = items("a", "b", "c")

        updates = compute_reorder(scope, "a", 2)

        assert apply(scope, updates) == {"b": 0, "c": 1, "a": 2}

    def test_moving_item_is_last_update(self):
        """The moving item's write comes after its siblings."""
        updates = compute_reorder(items("a", "b", "c"), "c", 0)
        assert updates[-1] == PositionUpdate("c", 0)

    def test_only_changed_items_are_updated(self):
        """Items outside the shifted range are untouched."""
        updates = compute_reorder(items("a", "b", "c", "d", "e"), "b", 3)
        assert {u.id for u in updates} == {"b", "c", "d"}

    def test_same_position_is_noop(self):
        """Target equal to the current position yields no updates."""
        assert compute_reorder(items("a", "b", "c"), "b", 1) == []

    def test_unknown_item(self):
        """A missing item raises ItemNotFound."""
        with pytest.raises(ItemNotFound):
            compute_reorder(items("a", "b"), "z", 0)

    @pytest.mark.parametrize("target", [-1, 3, 10])
    def test_out_of_range_target(self, target):
        """Targets outside 0..N-1 are rejected."""
        with pytest.raises(InvalidTargetPosition) as exc_info:
            compute_reorder(items("a", "b", "c"), "a", target)
        assert exc_info.value.max_position == 2

    def test_every_move_keeps_scope_dense(self):
        """All (item, target) pairs produce dense positions."""
        scope = items("a", "b", "c", "d", "e")
        for item in scope:
            for target in range(len(scope)):
                result = apply(scope, compute_reorder(scope, item.id, target))
                assert sorted(result.values()) == list(range(len(scope)))
                assert result[item.id] == target


class TestComputeRenumber:
    """Tests for renumbering."""

    def test_duplicates_use_tie_break(self):
        """Duplicated positions are resolved by id when timestamps are absent."""
        scope = [PositionedItem("x", 0), PositionedItem("y", 0), PositionedItem("z", 3)]

        result = apply(scope, compute_renumber(scope))

        assert result == {"x": 0, "y": 1, "z": 2}

    def test_created_at_breaks_ties_before_id(self):
        """Older items come first among equal positions."""
        now = datetime(2024, 1, 1)
        scope = [
            PositionedItem("a", 1, now + timedelta(seconds=5)),
            PositionedItem("b", 1, now),
        ]

        result = apply(scope, compute_renumber(scope))

        assert result == {"b": 0, "a": 1}

    def test_dense_scope_needs_no_updates(self):
        assert compute_renumber(items("a", "b", "c")) == []

    def test_renumber_is_idempotent(self):
        """A second renumber changes nothing."""
        scope = [PositionedItem("p", 7), PositionedItem("q", 2), PositionedItem("r", 2)]
        first = apply(scope, compute_renumber(scope))

        renumbered = [PositionedItem(i, p) for i, p in first.items()]

        assert compute_renumber(renumbered) == []

    def test_random_scopes_become_dense(self):
        """Arbitrary corrupted positions always come back dense."""
        rng = random.Random(42)
        for _ in range(50):
            scope = [PositionedItem(f"i{n}", rng.randint(0, 5)) for n in range(rng.randint(1, 8))]
            result = apply(scope, compute_renumber(scope))
            assert sorted(result.values()) == list(range(len(scope)))


class TestComputeMoveAndInsert:
    """Tests for cross-scope moves and inserts."""

    def test_move_closes_gap_and_opens_slot(self):
        """Source items after the task shift down; target items at or after the slot shift up."""
        source = items("a", "b", "c")
        target = items("x", "y")

        updates = compute_move(source, target, "a", 1, "c2")
        by_id = {u.id: u for u in updates}

        assert by_id["b"] == PositionUpdate("b", 0)
        assert by_id["c"] == PositionUpdate("c", 1)
        assert by_id["y"] == PositionUpdate("y", 2, "c2")
        assert by_id["a"] == PositionUpdate("a", 1, "c2")
        assert "x" not in by_id

    def test_move_to_end_of_target(self):
        """Position len(target) appends without shifting the target."""
        updates = compute_move(items("a"), items("x", "y"), "a", 2, "c2")
        assert updates == [PositionUpdate("a", 2, "c2")]

    def test_move_target_out_of_range(self):
        with pytest.raises(InvalidTargetPosition):
            compute_move(items("a"), items("x"), "a", 2, "c2")

    def test_move_unknown_item(self):
        with pytest.raises(ItemNotFound):
            compute_move(items("a"), items("x"), "q", 0, "c2")

    def test_insert_shifts_following_items(self):
        updates = compute_insert(items("a", "b", "c"), 1)
        assert updates == [PositionUpdate("b", 2), PositionUpdate("c", 3)]

    def test_insert_out_of_range(self):
        with pytest.raises(InvalidTargetPosition):
            compute_insert(items("a"), 2)

    def test_plan_insert_appends_by_default(self):
        assert plan_insert(items("a", "b"), None) == (2, [])


class TestPlanningRepairsGaps:
    """Plans on non-dense scopes renumber first."""

    def test_reorder_on_gapped_scope(self):
        """Positions [0, 5, 9] are treated as [0, 1, 2] before moving."""
        scope = [PositionedItem("a", 0), PositionedItem("b", 5), PositionedItem("c", 9)]

        result = apply(scope, plan_reorder(scope, "c", 0))

        assert result == {"c": 0, "a": 1, "b": 2}

    def test_move_repairs_target_scope(self):
        """Repairs in the target scope carry the target scope id."""
        source = items("a")
        target = [PositionedItem("x", 3), PositionedItem("y", 8)]

        updates = plan_move(source, target, "a", 0, "c2")

        assert all(u.scope_id == "c2" for u in updates)
        assert apply(source + target, updates) == {"a": 0, "x": 1, "y": 2}

    def test_is_dense(self):
        assert is_dense(items("a", "b"))
        assert not is_dense([PositionedItem("a", 1)])
        assert is_dense([])


class TestPlanPositions:
    """Placing several items at once across scopes."""

    def test_full_column_order(self):
        scopes = {"c1": items("a", "b", "c", "d")}
        requested = {"d": ("c1", 0), "a": ("c1", 1), "b": ("c1", 2), "c": ("c1", 3)}

        updates = plan_positions(scopes, requested)

        assert {u.id: u.position for u in updates} == {"d": 0, "a": 1, "b": 2, "c": 3}
        assert all(u.scope_id == "c1" for u in updates)

    def test_moved_item_wins_tie_and_both_scopes_stay_dense(self):
        """a lands on y's slot in c2; y shifts down and c1 closes its gap."""
        scopes = {"c1": items("a", "b", "c"), "c2": items("x", "y")}

        updates = plan_positions(scopes, {"a": ("c2", 1)})

        by_id = {u.id: (u.scope_id, u.position) for u in updates}
        assert by_id == {
            "b": ("c1", 0),
            "c": ("c1", 1),
            "a": ("c2", 1),
            "y": ("c2", 2),
        }

    def test_position_past_end_appends(self):
        scopes = {"c1": items("a", "b")}

        updates = plan_positions(scopes, {"a": ("c1", 9)})

        assert {u.id: u.position for u in updates} == {"b": 0, "a": 1}

    def test_unknown_item(self):
        with pytest.raises(ItemNotFound):
            plan_positions({"c1": items("a")}, {"zzz": ("c1", 0)})


class TestScopeLocks:
    """Per-scope locks are released once unused."""

    @pytest.mark.asyncio
    async def test_lock_map_empties_after_use(self):
        locks = ScopeLocks()

        async with locks.hold("acme", task_scope("c1"), task_scope("c2")):
            assert len(locks) == 2

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiter_keeps_lock_alive(self):
        locks = ScopeLocks()
        order = []
        release = asyncio.Event()

        async def first():
            async with locks.hold("acme", task_scope("c1")):
                order.append("first")
                await release.wait()

        async def second():
            async with locks.hold("acme", task_scope("c1")):
                order.append("second")

        one = asyncio.create_task(first())
        await asyncio.sleep(0)
        two = asyncio.create_task(second())
        await asyncio.sleep(0)
        assert order == ["first"]

        release.set()
        await asyncio.gather(one, two)

        assert order == ["first", "second"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_operations_leave_no_locks(self, db, board_with_tasks):
        await asyncio.gather(
            reorder_scope(db, task_scope("c1"), "A", 3),
            renumber_scope(db, task_scope("c2")),
        )

        assert len(ordering_service.scope_locks) == 0


class TestScopeOperations:
    """Database-backed reorder, renumber, insert and delete."""

    @pytest.mark.asyncio
    async def test_reorder_writes_positions(self, db, board_with_tasks):
        """Reordering D to 1 persists A=0, D=1, B=2, C=3."""
        updates = await reorder_scope(db, task_scope("c1"), "D", 1)

        assert len(updates) == 3
        assert await task_positions(db, "c1") == {"A": 0, "D": 1, "B": 2, "C": 3}

    @pytest.mark.asyncio
    async def test_reorder_noop_writes_nothing(self, db, board_with_tasks):
        """Reordering to the current position leaves every row unchanged."""
        before = await db.fetch_all(select(Task.__table__).where(Task.column_id == "c1"))

        updates = await reorder_scope(db, task_scope("c1"), "B", 1)

        after = await db.fetch_all(select(Task.__table__).where(Task.column_id == "c1"))
        assert updates == []
        assert before == after

    @pytest.mark.asyncio
    async def test_reorder_item_outside_scope(self, db, board_with_tasks):
        """An item from a sibling scope is not found."""
        with pytest.raises(ItemNotFound):
            await reorder_scope(db, task_scope("c1"), "X", 0)

    @pytest.mark.asyncio
    async def test_reorder_invalid_target(self, db, board_with_tasks):
        with pytest.raises(InvalidTargetPosition):
            await reorder_scope(db, task_scope("c1"), "A", 4)
        assert await task_positions(db, "c1") == {"A": 0, "B": 1, "C": 2, "D": 3}

    @pytest.mark.asyncio
    async def test_renumber_corrupted_scope_twice(self, db):
        """Renumber repairs [0, 0, 3] and the second call is a no-op."""
        await add_board(db, "b1", 0)
        await add_column(db, "b1", "c1", 0)
        await add_task(db, "b1", "c1", "x", 0)
        await add_task(db, "b1", "c1", "y", 0)
        await add_task(db, "b1", "c1", "z", 3)

        first = await renumber_scope(db, task_scope("c1"))
        positions = await task_positions(db, "c1")
        second = await renumber_scope(db, task_scope("c1"))

        assert len(first) == 2
        assert positions == {"x": 0, "y": 1, "z": 2}
        assert second == []
        assert await task_positions(db, "c1") == positions

    @pytest.mark.asyncio
    async def test_renumber_missing_column(self, db, board_with_tasks):
        with pytest.raises(ItemNotFound) as exc_info:
            await renumber_scope(db, task_scope("no-such-column"))

        assert exc_info.value.item_id == "no-such-column"

    @pytest.mark.asyncio
    async def test_renumber_board_scope_has_no_parent(self, db):
        assert await renumber_scope(db, board_scope()) == []

    @pytest.mark.asyncio
    async def test_insert_with_taken_id(self, db, board_with_tasks):
        """A duplicate id is a client error and shifts nothing."""
        now = datetime.utcnow()

        with pytest.raises(ItemConflict):
            await insert_into_scope(
                db,
                task_scope("c1"),
                {
                    "id": "X", "board_id": "b1", "column_id": "c1", "title": "dup",
                    "created_at": now, "updated_at": now,
                },
                position=0,
            )

        assert await task_positions(db, "c1") == {"A": 0, "B": 1, "C": 2, "D": 3}

    @pytest.mark.asyncio
    async def test_insert_at_position(self, db, board_with_tasks):
        """Inserting at 0 shifts every existing task."""
        now = datetime.utcnow()
        row, updates = await insert_into_scope(
            db,
            task_scope("c2"),
            {
                "id": "N", "board_id": "b1", "column_id": "c2", "title": "new",
                "description": None, "ticket": None, "member_id": None,
                "pre_board_id": None, "pre_column_id": None,
                "created_at": now, "updated_at": now,
            },
            position=0,
        )

        assert row["position"] == 0
        assert len(updates) == 2
        assert await task_positions(db, "c2") == {"N": 0, "X": 1, "Y": 2}

    @pytest.mark.asyncio
    async def test_delete_closes_gap(self, db, board_with_tasks):
        updates = await delete_from_scope(db, task_scope("c1"), "B")

        assert [u.id for u in updates] == ["C", "D"]
        assert await task_positions(db, "c1") == {"A": 0, "C": 1, "D": 2}

    @pytest.mark.asyncio
    async def test_delete_missing_item(self, db, board_with_tasks):
        with pytest.raises(ItemNotFound):
            await delete_from_scope(db, task_scope("c1"), "nope")

    @pytest.mark.asyncio
    async def test_board_scope_reorder(self, db):
        for position, board_id in enumerate(["b1", "b2", "b3"]):
            await add_board(db, board_id, position)

        await reorder_scope(db, board_scope(), "b1", 2)

        rows = await db.fetch_all("SELECT id, position FROM boards ORDER BY position")
        assert [row["id"] for row in rows] == ["b2", "b3", "b1"]

    @pytest.mark.asyncio
    async def test_concurrent_reorders_stay_dense(self, db, board_with_tasks):
        """Reorders of the same scope are serialised."""
        await asyncio.gather(
            reorder_scope(db, task_scope("c1"), "A", 3),
            reorder_scope(db, task_scope("c1"), "D", 0),
            reorder_scope(db, task_scope("c1"), "B", 2),
        )

        positions = await task_positions(db, "c1")
        assert sorted(positions.values()) == [0, 1, 2, 3]


class TestMoveTask:
    """Tests for moving tasks between columns."""

    @pytest.mark.asyncio
    async def test_move_to_other_column(self, db, board_with_tasks):
        """The task leaves c1 dense and lands in c2 at the requested slot."""
        before, updates = await move_task(db, "B", "c2", 1)

        task = await db.fetch_one(select(Task.__table__).where(Task.id == "B"))
        assert before["column_id"] == "c1"
        assert task["column_id"] == "c2"
        assert task["pre_column_id"] == "c1"
        assert task["pre_board_id"] == "b1"
        assert await task_positions(db, "c1") == {"A": 0, "C": 1, "D": 2}
        assert await task_positions(db, "c2") == {"X": 0, "B": 1, "Y": 2}
        assert {u.id for u in updates if u.scope_id == "c2"} == {"B", "Y"}

    @pytest.mark.asyncio
    async def test_move_to_other_board(self, db, board_with_tasks):
        """Moving into a column of another board updates board_id."""
        await add_board(db, "b2", 1)
        await add_column(db, "b2", "c9", 0)

        await move_task(db, "A", "c9", 0)

        task = await db.fetch_one(select(Task.__table__).where(Task.id == "A"))
        assert task["board_id"] == "b2"
        assert task["pre_board_id"] == "b1"

    @pytest.mark.asyncio
    async def test_move_within_same_column(self, db, board_with_tasks):
        """A move into the task's own column is a reorder."""
        await move_task(db, "A", "c1", 2)
        assert await task_positions(db, "c1") == {"B": 0, "C": 1, "A": 2, "D": 3}

    @pytest.mark.asyncio
    async def test_move_to_missing_column(self, db, board_with_tasks):
        with pytest.raises(ItemNotFound):
            await move_task(db, "A", "missing", 0)

    @pytest.mark.asyncio
    async def test_move_missing_task(self, db, board_with_tasks):
        with pytest.raises(ItemNotFound):
            await move_task(db, "missing", "c2", 0)

    @pytest.mark.asyncio
    async def test_move_beyond_target_end(self, db, board_with_tasks):
        with pytest.raises(InvalidTargetPosition):
            await move_task(db, "A", "c2", 3)
        assert await task_positions(db, "c2") == {"X": 0, "Y": 1}


class TestUpdateTaskPositions:
    """Tests for multi-task placement in one transaction."""

    @pytest.mark.asyncio
    async def test_cross_column_batch(self, db, board_with_tasks):
        updates, column_boards = await update_task_positions(
            db, {"A": ("c2", 1), "D": (None, 0)}
        )

        assert await task_positions(db, "c1") == {"D": 0, "B": 1, "C": 2}
        assert await task_positions(db, "c2") == {"X": 0, "A": 1, "Y": 2}
        assert column_boards == {"c1": "b1", "c2": "b1"}
        assert {u.id for u in updates} == {"A", "D", "Y"}

        moved = await db.fetch_one(select(Task.__table__).where(Task.id == "A"))
        assert moved["column_id"] == "c2"
        assert moved["pre_column_id"] == "c1"

    @pytest.mark.asyncio
    async def test_missing_task_changes_nothing(self, db, board_with_tasks):
        with pytest.raises(ItemNotFound):
            await update_task_positions(db, {"A": (None, 3), "missing": (None, 0)})

        assert await task_positions(db, "c1") == {"A": 0, "B": 1, "C": 2, "D": 3}

    @pytest.mark.asyncio
    async def test_missing_target_column(self, db, board_with_tasks):
        with pytest.raises(ItemNotFound) as exc_info:
            await update_task_positions(db, {"A": ("nowhere", 0)})

        assert exc_info.value.item_id == "nowhere"
