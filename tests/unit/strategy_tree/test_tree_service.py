"""Tests for StrategyTreeService against a SQLite database."""

import threading
from unittest.mock import patch

import pytest

from src.data.database.strategy_models import Action, Condition, StrategyBlock
from src.strategy_tree.errors import (
    AlreadyInitializedError,
    CorruptTreeError,
    CycleRejectedError,
    ImmutableFieldError,
    InvalidPayloadError,
    NotFoundError,
    ParentNotFoundError,
    RootDeletionForbiddenError,
    StrategyBusyError,
)
from src.strategy_tree.locks import StrategyLockRegistry
from src.strategy_tree.materializer import flatten, iter_blocks
from src.strategy_tree.service import StrategyTreeService
from src.strategy_tree.types import BlockType, Operator

OWNER_ID = "user-1"


def _count(db_manager, model) -> int:
    with db_manager.get_session() as session:
        return session.query(model).count()


def _shape(tree):
    """Nested (block_type, order, children) tuples for structural asserts."""
    def walk(node):
        return (node.id, [walk(child) for child in node.children])
    return walk(tree.root)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestCreateStrategy:
    """create_strategy / create_root"""

    def test_creates_root_block(self, service):
        tree = service.create_strategy(OWNER_ID, "  Dip buyer  ", "desc")

        assert tree.name == "Dip buyer"
        assert tree.root_block_id is not None
        assert tree.root.id == tree.root_block_id
        assert tree.root.block_type is BlockType.ROOT
        assert tree.root.order == 0
        assert tree.root.children == []

    def test_blank_name_rejected(self, service):
        with pytest.raises(InvalidPayloadError):
            service.create_strategy(OWNER_ID, "   ")

    def test_create_root_later(self, service):
        tree = service.create_strategy(OWNER_ID, "No root yet", initialize_root=False)
        assert tree.root is None

        root = service.create_root(tree.id)

        assert root.block_type is BlockType.ROOT
        assert service.get_strategy(tree.id).root_block_id == root.id

    def test_create_root_twice_rejected(self, service, strategy):
        with pytest.raises(AlreadyInitializedError) as exc_info:
            service.create_root(strategy.id)
        assert exc_info.value.detail["root_block_id"] == strategy.root_block_id

    def test_create_root_missing_strategy(self, service):
        with pytest.raises(NotFoundError):
            service.create_root(9999)


class TestStrategyLifecycle:
    """get / list / update / delete strategy"""

    def test_get_missing_strategy(self, service):
        with pytest.raises(NotFoundError):
            service.get_strategy(12345)

    def test_list_is_scoped_to_owner(self, service):
        service.create_strategy(OWNER_ID, "Mine")
        service.create_strategy(OWNER_ID, "Mine active", is_active=True)
        service.create_strategy("someone-else", "Theirs")

        assert {s.name for s in service.list_strategies(OWNER_ID)} == {"Mine", "Mine active"}
        assert [s.name for s in service.list_strategies(OWNER_ID, active_only=True)] == ["Mine active"]

    def test_update_metadata(self, service, strategy):
        tree = service.update_strategy(strategy.id, {"name": "Renamed", "isActive": True})
        assert tree.name == "Renamed"
        assert tree.is_active is True
        assert service.list_active_strategy_ids() == [strategy.id]

    def test_update_locked_field_rejected(self, service, strategy):
        with pytest.raises(ImmutableFieldError):
            service.update_strategy(strategy.id, {"owner_id": "thief"})
        with pytest.raises(ImmutableFieldError):
            service.update_strategy(strategy.id, {"root_block_id": strategy.root_block_id + 1})

    def test_update_unknown_field_rejected(self, service, strategy):
        with pytest.raises(InvalidPayloadError):
            service.update_strategy(strategy.id, {"colour": "red"})

    def test_delete_cascades_to_blocks_and_leaves(self, service, strategy, db_manager, sma_condition, log_action):
        branch = service.add_block(strategy.id, strategy.root_block_id, "CONDITION_IF", sma_condition)
        service.add_block(strategy.id, branch.id, "ACTION", log_action)

        result = service.delete_strategy(strategy.id)

        assert len(result.deleted_ids) == 3
        assert result.deleted_ids[0] == strategy.root_block_id
        assert _count(db_manager, StrategyBlock) == 0
        assert _count(db_manager, Condition) == 0
        assert _count(db_manager, Action) == 0
        with pytest.raises(NotFoundError):
            service.get_strategy(strategy.id)


# ---------------------------------------------------------------------------
# add_block
# ---------------------------------------------------------------------------


class TestAddBlock:
    """add_block / create_block"""

    def test_scenario_add_and_delete(self, service, strategy, db_manager, sma_condition, log_action):
        """Root R; IF1 under R; A1 under IF1; delete IF1 leaves R alone."""
        root_id = strategy.root_block_id

        if1 = service.add_block(strategy.id, root_id, BlockType.CONDITION_IF, sma_condition)
        assert if1.order == 0
        assert if1.condition.payload.indicator_type == "SMA"
        assert if1.condition.payload.operator is Operator.LESS_THAN
        assert if1.condition.payload.target_value == 212

        a1 = service.add_block(strategy.id, if1.id, BlockType.ACTION, log_action)
        assert a1.order == 0
        assert a1.action.payload.parameters == {"message": "hit"}

        tree = service.get_strategy(strategy.id)
        assert _shape(tree) == (root_id, [(if1.id, [(a1.id, [])])])

        result = service.delete_block(strategy.id, if1.id)

        assert result.deleted_ids == [if1.id, a1.id]
        assert result.deleted_condition_ids == [if1.condition_id]
        assert result.deleted_action_ids == [a1.action_id]
        assert _shape(service.get_strategy(strategy.id)) == (root_id, [])
        assert _count(db_manager, Condition) == 0
        assert _count(db_manager, Action) == 0

    def test_create_block_alias(self, service, strategy, log_action):
        node = service.create_block(strategy.id, strategy.root_block_id, "ACTION", log_action)
        assert node.block_type is BlockType.ACTION

    def test_default_order_appends(self, service, strategy, log_action):
        orders = [
            service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action).order
            for _ in range(3)
        ]
        assert orders == [0, 1, 2]

    def test_explicit_order_after_gap(self, service, strategy, log_action):
        service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action, order=5)
        node = service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action)
        assert node.order == 6

    def test_taken_order_shifts_later_siblings(self, service, strategy, log_action):
        root_id = strategy.root_block_id
        first = service.add_block(strategy.id, root_id, "ACTION", log_action)
        second = service.add_block(strategy.id, root_id, "ACTION", log_action)

        inserted = service.add_block(strategy.id, root_id, "ACTION", log_action, order=0)

        children = service.get_strategy(strategy.id).root.children
        assert [c.id for c in children] == [inserted.id, first.id, second.id]
        assert [c.order for c in children] == [0, 1, 2]

    def test_condition_with_target_indicator(self, service, strategy, db_manager):
        node = service.add_block(
            strategy.id,
            strategy.root_block_id,
            "CONDITION_IF",
            {
                "indicatorType": "EMA",
                "symbol": "MSFT",
                "interval": "5min",
                "operator": "↗ (Crosses Above)",
                "targetIndicator": {"indicatorType": "SMA", "symbol": "MSFT", "interval": "5min"},
            },
        )
        assert node.condition.payload.operator is Operator.CROSSES_ABOVE
        assert node.condition.payload.target_indicator.indicator_type == "SMA"
        assert node.condition.target_condition_id is not None
        assert _count(db_manager, Condition) == 2

        service.delete_block(strategy.id, node.id)
        assert _count(db_manager, Condition) == 0

    def test_condition_block_without_payload_rejected(self, service, strategy):
        with pytest.raises(InvalidPayloadError):
            service.add_block(strategy.id, strategy.root_block_id, "CONDITION_IF")

    def test_condition_else_requires_payload(self, service, strategy):
        with pytest.raises(InvalidPayloadError):
            service.add_block(strategy.id, strategy.root_block_id, "CONDITION_ELSE", None)

    def test_wrong_payload_kind_rejected(self, service, strategy, sma_condition, log_action):
        with pytest.raises(InvalidPayloadError):
            service.add_block(strategy.id, strategy.root_block_id, "ACTION", sma_condition)
        with pytest.raises(InvalidPayloadError):
            service.add_block(strategy.id, strategy.root_block_id, "CONDITION_IF", log_action)

    def test_malformed_condition_lists_fields(self, service, strategy):
        with pytest.raises(InvalidPayloadError) as exc_info:
            service.add_block(
                strategy.id, strategy.root_block_id, "CONDITION_IF",
                {"indicator_type": "SMA", "operator": "BOGUS", "target_value": 1},
            )
        fields = [tuple(e["loc"]) for e in exc_info.value.detail["errors"]]
        assert ("operator",) in fields

    def test_buy_without_quantity_rejected(self, service, strategy):
        with pytest.raises(InvalidPayloadError):
            service.add_block(
                strategy.id, strategy.root_block_id, "ACTION",
                {"action_type": "BUY", "parameters": {"symbol": "AAPL", "orderType": "market"}},
            )

    def test_root_type_rejected(self, service, strategy):
        with pytest.raises(InvalidPayloadError):
            service.add_block(strategy.id, strategy.root_block_id, "ROOT")

    def test_unknown_type_rejected(self, service, strategy):
        with pytest.raises(InvalidPayloadError):
            service.add_block(strategy.id, strategy.root_block_id, "LOOP", {})

    def test_negative_order_rejected(self, service, strategy, log_action):
        with pytest.raises(InvalidPayloadError):
            service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action, order=-1)

    def test_missing_parent(self, service, strategy, log_action):
        with pytest.raises(ParentNotFoundError) as exc_info:
            service.add_block(strategy.id, 9999, "ACTION", log_action)
        assert exc_info.value.detail["parent_id"] == 9999

    def test_parent_in_other_strategy(self, service, strategy, log_action):
        other = service.create_strategy(OWNER_ID, "Other")
        with pytest.raises(ParentNotFoundError):
            service.add_block(strategy.id, other.root_block_id, "ACTION", log_action)

    def test_missing_strategy(self, service, log_action):
        with pytest.raises(NotFoundError):
            service.add_block(9999, 1, "ACTION", log_action)

    def test_strategy_without_root(self, service, log_action):
        tree = service.create_strategy(OWNER_ID, "Bare", initialize_root=False)
        with pytest.raises(NotFoundError):
            service.add_block(tree.id, 1, "ACTION", log_action)

    def test_action_parent_rejected(self, service, strategy, log_action, db_manager):
        action = service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action)
        with pytest.raises(InvalidPayloadError):
            service.add_block(strategy.id, action.id, "ACTION", log_action)
        # Rejected mutation left nothing behind
        assert _count(db_manager, Action) == 1

    def test_max_depth(self, db_manager, sma_condition, tree_config):
        tree_config.max_depth = 2
        service = StrategyTreeService(db_manager.get_session, locks=StrategyLockRegistry(), config=tree_config)
        tree = service.create_strategy(OWNER_ID, "Deep")
        level1 = service.add_block(tree.id, tree.root_block_id, "CONDITION_IF", sma_condition)
        level2 = service.add_block(tree.id, level1.id, "CONDITION_IF", sma_condition)
        with pytest.raises(InvalidPayloadError, match="depth"):
            service.add_block(tree.id, level2.id, "CONDITION_IF", sma_condition)


# ---------------------------------------------------------------------------
# update_block
# ---------------------------------------------------------------------------


class TestUpdateBlock:
    """update_block"""

    @pytest.fixture
    def branch(self, service, strategy, sma_condition):
        return service.add_block(strategy.id, strategy.root_block_id, "CONDITION_IF", sma_condition)

    def test_patch_condition_fields_keeps_identity(self, service, strategy, branch):
        node = service.update_block(strategy.id, branch.id, {"condition": {"targetValue": 200, "operator": "<="}})

        assert node.condition_id == branch.condition_id
        assert node.condition.payload.target_value == 200
        assert node.condition.payload.operator is Operator.LESS_THAN_OR_EQUAL
        assert node.condition.payload.symbol == "AAPL"

    def test_condition_details_alias(self, service, strategy, branch):
        node = service.update_block(strategy.id, branch.id, {"conditionDetails": {"symbol": "MSFT"}})
        assert node.condition.payload.symbol == "MSFT"

    def test_switch_to_target_indicator_and_back(self, service, strategy, branch, db_manager):
        node = service.update_block(
            strategy.id, branch.id, {"condition": {"target_indicator": {"indicator_type": "EMA"}}},
        )
        assert node.condition.payload.target_value is None
        assert node.condition.payload.target_indicator.indicator_type == "EMA"
        assert _count(db_manager, Condition) == 2

        node = service.update_block(strategy.id, branch.id, {"condition": {"target_value": 10}})
        assert node.condition.payload.target_indicator is None
        assert node.condition.target_condition_id is None
        assert _count(db_manager, Condition) == 1

    def test_patch_action(self, service, strategy, log_action):
        action = service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action)
        node = service.update_block(strategy.id, action.id, {"action": {"parameters": {"message": "changed"}}})
        assert node.action_id == action.action_id
        assert node.action.payload.parameters == {"message": "changed"}

    def test_invalid_merged_action_rejected(self, service, strategy, log_action):
        action = service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action)
        with pytest.raises(InvalidPayloadError):
            service.update_block(strategy.id, action.id, {"action": {"action_type": "BUY"}})
        assert service.get_strategy(strategy.id).find(action.id).action.payload.action_type.value == "LOG_MESSAGE"

    def test_leaf_patch_of_wrong_kind_rejected(self, service, strategy, branch):
        with pytest.raises(InvalidPayloadError):
            service.update_block(strategy.id, branch.id, {"action": {"action_type": "NOTIFY"}})

    def test_patch_parameters(self, service, strategy, branch):
        node = service.update_block(strategy.id, branch.id, {"parameters": {"collapsed": True}})
        assert node.parameters == {"collapsed": True}

    @pytest.mark.parametrize("field", ["block_type", "parent_id", "condition_id", "strategy_id"])
    def test_locked_fields_rejected(self, service, strategy, branch, field):
        with pytest.raises(ImmutableFieldError) as exc_info:
            service.update_block(strategy.id, branch.id, {field: 424242})
        assert exc_info.value.detail["field"] == field

    def test_unchanged_locked_field_is_accepted(self, service, strategy, branch):
        node = service.update_block(strategy.id, branch.id, {"blockType": "CONDITION_IF", "order": 0})
        assert node.id == branch.id

    def test_unknown_field_rejected(self, service, strategy, branch):
        with pytest.raises(InvalidPayloadError):
            service.update_block(strategy.id, branch.id, {"colour": "red"})

    def test_missing_block(self, service, strategy):
        with pytest.raises(NotFoundError):
            service.update_block(strategy.id, 9999, {"parameters": {}})

    def test_reorder_within_parent(self, service, strategy, log_action):
        root_id = strategy.root_block_id
        a = service.add_block(strategy.id, root_id, "ACTION", log_action)
        b = service.add_block(strategy.id, root_id, "ACTION", log_action)
        c = service.add_block(strategy.id, root_id, "ACTION", log_action)

        service.update_block(strategy.id, c.id, {"order": 0})

        children = service.get_strategy(strategy.id).root.children
        assert [n.id for n in children] == [c.id, a.id, b.id]
        assert len({n.order for n in children}) == 3

    def test_root_order_locked(self, service, strategy):
        with pytest.raises(ImmutableFieldError):
            service.update_block(strategy.id, strategy.root_block_id, {"order": 3})


# ---------------------------------------------------------------------------
# delete_block
# ---------------------------------------------------------------------------


class TestDeleteBlock:
    """delete_block"""

    def test_deletes_exactly_the_subtree(self, service, strategy, sma_condition, log_action):
        root_id = strategy.root_block_id
        keep = service.add_block(strategy.id, root_id, "CONDITION_IF", sma_condition)
        kept_child = service.add_block(strategy.id, keep.id, "ACTION", log_action)
        doomed = service.add_block(strategy.id, root_id, "CONDITION_ELSE", sma_condition)
        nested = service.add_block(strategy.id, doomed.id, "CONDITION_IF", sma_condition)
        leaf = service.add_block(strategy.id, nested.id, "ACTION", log_action)

        before = {r.id for r in flatten(service.get_strategy(strategy.id))}
        result = service.delete_block(strategy.id, doomed.id)
        after = {r.id for r in flatten(service.get_strategy(strategy.id))}

        assert result.deleted_ids == [doomed.id, nested.id, leaf.id]
        assert before - after == set(result.deleted_ids)
        assert after == {root_id, keep.id, kept_child.id}

    def test_deleting_does_not_renumber(self, service, strategy, log_action):
        root_id = strategy.root_block_id
        blocks = [service.add_block(strategy.id, root_id, "ACTION", log_action) for _ in range(3)]
        service.delete_block(strategy.id, blocks[1].id)
        assert [c.order for c in service.get_strategy(strategy.id).root.children] == [0, 2]

    def test_root_deletion_forbidden(self, service, strategy):
        with pytest.raises(RootDeletionForbiddenError):
            service.delete_block(strategy.id, strategy.root_block_id)

    def test_missing_block(self, service, strategy):
        with pytest.raises(NotFoundError):
            service.delete_block(strategy.id, 9999)


# ---------------------------------------------------------------------------
# move_block
# ---------------------------------------------------------------------------


class TestMoveBlock:
    """move_block"""

    @pytest.fixture
    def chain(self, service, strategy, sma_condition):
        """root -> b1 -> b2 -> b3 (all CONDITION_IF)."""
        nodes = []
        parent_id = strategy.root_block_id
        for _ in range(3):
            node = service.add_block(strategy.id, parent_id, "CONDITION_IF", sma_condition)
            nodes.append(node)
            parent_id = node.id
        return nodes

    def test_move_under_descendant_rejected_at_any_depth(self, service, strategy, chain):
        b1, b2, b3 = chain
        for target in (b1, b2, b3):
            with pytest.raises(CycleRejectedError):
                service.move_block(strategy.id, b1.id, target.id)
        with pytest.raises(CycleRejectedError):
            service.move_block(strategy.id, b2.id, b3.id)

    def test_reparent(self, service, strategy, chain, log_action):
        b1, b2, b3 = chain
        sibling = service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action)

        moved = service.move_block(strategy.id, b3.id, strategy.root_block_id, 0)

        assert moved.order == 0
        children = service.get_strategy(strategy.id).root.children
        assert [c.id for c in children] == [b3.id, b1.id, sibling.id]
        assert service.get_strategy(strategy.id).find(b2.id).children == []

    def test_move_keeps_subtree(self, service, strategy, chain):
        b1, b2, b3 = chain
        service.move_block(strategy.id, b2.id, strategy.root_block_id)
        tree = service.get_strategy(strategy.id)
        assert [c.id for c in tree.find(b2.id).children] == [b3.id]
        assert tree.find(b2.id).order == 1

    def test_move_under_action_rejected(self, service, strategy, chain, log_action):
        action = service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action)
        with pytest.raises(InvalidPayloadError):
            service.move_block(strategy.id, chain[2].id, action.id)

    def test_move_root_rejected(self, service, strategy, chain):
        with pytest.raises(ImmutableFieldError):
            service.move_block(strategy.id, strategy.root_block_id, chain[0].id)

    def test_missing_parent(self, service, strategy, chain):
        with pytest.raises(ParentNotFoundError):
            service.move_block(strategy.id, chain[0].id, 9999)

    def test_missing_block(self, service, strategy):
        with pytest.raises(NotFoundError):
            service.move_block(strategy.id, 9999, strategy.root_block_id)


# ---------------------------------------------------------------------------
# Concurrency and corruption
# ---------------------------------------------------------------------------


class TestConcurrency:
    """Per-strategy serialization of mutations."""

    def test_concurrent_adds_get_distinct_orders(self, service, strategy, log_action):
        errors = []
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                results.append(service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action))
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(n.order for n in results) == list(range(8))
        children = service.get_strategy(strategy.id).root.children
        assert len({c.order for c in children}) == 8

    def test_busy_strategy_times_out(self, db_manager, tree_config, log_action):
        locks = StrategyLockRegistry(timeout=0.05)
        service = StrategyTreeService(db_manager.get_session, locks=locks, config=tree_config)
        tree = service.create_strategy(OWNER_ID, "Busy")

        with locks.hold(tree.id):
            with pytest.raises(StrategyBusyError):
                service.add_block(tree.id, tree.root_block_id, "ACTION", log_action)

        # Unrelated strategies never contend
        other = service.create_strategy(OWNER_ID, "Free")
        with locks.hold(tree.id):
            assert service.add_block(other.id, other.root_block_id, "ACTION", log_action).order == 0

    def test_delete_racing_add_under_deleted_block(self, service, strategy, db_manager, sma_condition, log_action):
        for _ in range(20):
            branch = service.add_block(strategy.id, strategy.root_block_id, "CONDITION_IF", sma_condition)
            barrier = threading.Barrier(2)
            outcome = {}

            def delete():
                barrier.wait()
                outcome["deleted"] = service.delete_block(strategy.id, branch.id)

            def add():
                barrier.wait()
                try:
                    outcome["added"] = service.add_block(strategy.id, branch.id, "ACTION", log_action)
                except ParentNotFoundError as e:
                    outcome["add_error"] = e

            threads = [threading.Thread(target=delete), threading.Thread(target=add)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            deleted_ids = outcome["deleted"].deleted_ids
            assert ("added" in outcome) != ("add_error" in outcome)
            if "added" in outcome:
                assert deleted_ids == [branch.id, outcome["added"].id]
            else:
                assert deleted_ids == [branch.id]

            tree = service.get_strategy(strategy.id)
            assert tree.root.children == []

        assert _count(db_manager, StrategyBlock) == 1
        assert _count(db_manager, Condition) == 0
        assert _count(db_manager, Action) == 0


class TestCorruptTree:
    """Persisted inconsistencies surface as CorruptTreeError."""

    def test_corrupt_rows_are_reported_and_logged(self, service, strategy, db_manager, log_action):
        action = service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action)
        with db_manager.get_session() as session:
            session.query(Action).filter(Action.id == action.action_id).update({"action_type": "TELEPORT"})

        with patch("src.strategy_tree.service.tree_logger") as tree_logger:
            with pytest.raises(CorruptTreeError):
                service.get_strategy(strategy.id)

        tree_logger.corrupt_tree.assert_called_once()
        args, kwargs = tree_logger.corrupt_tree.call_args
        assert args[0] == strategy.id
        assert kwargs["action_id"] == action.action_id

    @pytest.fixture
    def detached_cycle(self, service, strategy, db_manager, sma_condition):
        """Two blocks rewired out of band to be each other's parent."""
        a = service.add_block(strategy.id, strategy.root_block_id, "CONDITION_IF", sma_condition)
        b = service.add_block(strategy.id, a.id, "CONDITION_IF", sma_condition)
        with db_manager.get_session() as session:
            session.query(StrategyBlock).filter(StrategyBlock.id == a.id).update({"parent_id": b.id})
        return a, b

    def test_add_under_cycle_is_logged(self, service, strategy, detached_cycle, log_action):
        a, _ = detached_cycle

        with patch("src.strategy_tree.service.tree_logger") as tree_logger:
            with pytest.raises(CorruptTreeError):
                service.add_block(strategy.id, a.id, "ACTION", log_action)

        tree_logger.corrupt_tree.assert_called_once()
        assert tree_logger.corrupt_tree.call_args.args[:2] == (strategy.id, "cycle detected")
        tree_logger.block_added.assert_not_called()

    def test_move_into_cycle_is_logged(self, service, strategy, detached_cycle, log_action, db_manager):
        a, _ = detached_cycle
        action = service.add_block(strategy.id, strategy.root_block_id, "ACTION", log_action)
        blocks_before = _count(db_manager, StrategyBlock)

        with patch("src.strategy_tree.service.tree_logger") as tree_logger:
            with pytest.raises(CorruptTreeError):
                service.move_block(strategy.id, action.id, a.id)

        tree_logger.corrupt_tree.assert_called_once()
        assert tree_logger.corrupt_tree.call_args.args[0] == strategy.id
        assert _count(db_manager, StrategyBlock) == blocks_before

    def test_read_is_logged_once(self, service, strategy, detached_cycle):
        with patch("src.strategy_tree.service.tree_logger") as tree_logger:
            with pytest.raises(CorruptTreeError):
                service.get_strategy(strategy.id)

        tree_logger.corrupt_tree.assert_called_once()


class TestTransfer:
    """export_strategy / import_strategy / indicator requirements"""

    def test_export_import_round_trip(self, service, strategy, sma_condition, log_action, buy_action):
        branch = service.add_block(strategy.id, strategy.root_block_id, "CONDITION_IF", sma_condition)
        service.add_block(strategy.id, branch.id, "ACTION", log_action, order=2)
        service.add_block(strategy.id, branch.id, "ACTION", buy_action, order=7)

        document = service.export_strategy(strategy.id)
        copy = service.import_strategy("user-9", document, name="Copy")

        assert copy.id != strategy.id
        assert copy.owner_id == "user-9"
        assert copy.name == "Copy"
        original = service.get_strategy(strategy.id)
        original_walk = [(n.block_type, n.order, d) for n, _, d in iter_blocks(original.root)]
        copy_walk = [(n.block_type, n.order, d) for n, _, d in iter_blocks(copy.root)]
        assert copy_walk == original_walk
        assert copy.root.children[0].children[1].action.payload.parameters["quantity"] == 10
        assert {n.id for n, _, _ in iter_blocks(copy.root)}.isdisjoint(
            {n.id for n, _, _ in iter_blocks(original.root)}
        )

    def test_import_rejects_malformed_document(self, service):
        with pytest.raises(InvalidPayloadError):
            service.import_strategy(OWNER_ID, {"format_version": 1, "name": "x", "blocks": "nope"})

    def test_import_rejects_newer_format(self, service, strategy):
        document = service.export_strategy(strategy.id)
        document["format_version"] = 99
        with pytest.raises(InvalidPayloadError, match="format_version"):
            service.import_strategy(OWNER_ID, document)

    def test_indicator_requirements(self, service, strategy, sma_condition):
        service.add_block(strategy.id, strategy.root_block_id, "CONDITION_IF", sma_condition)
        service.add_block(strategy.id, strategy.root_block_id, "CONDITION_ELSE", sma_condition)

        requirements = service.get_indicator_requirements(strategy.id)

        assert len(requirements) == 1
        assert requirements[0].symbol == "AAPL"
        assert requirements[0].parameters == {"period": 20}
