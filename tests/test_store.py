"""
Skill Router — Instance Store Tests

Both backends: instance round-trip, status filtering, the action
ledger with idempotency keys, transactions, and stats.
"""

import os
import shutil
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from router.store import InMemoryInstanceStore, SQLiteInstanceStore
from router.types import (
    CriterionResult,
    CriterionStatus,
    FullPipeline,
    Outcome,
    PartialSet,
    WorkflowInstance,
    WorkflowStatus,
)


def _instance(intent=None):
    inst = WorkflowInstance.create(intent or FullPipeline(frozenset({"deploy"})), "contracts only")
    inst.sequence = ["contracts", "testing", "security", "frontend"]
    inst.status = WorkflowStatus.EXECUTING
    inst.current_index = 1
    inst.loop_back_count = 1
    inst.log(None, Outcome.PLANNED, "contracts → testing → security → frontend")
    inst.log("contracts", Outcome.COMPLETED)
    inst.criteria_results.append(CriterionResult(
        phase_id="contracts", criterion_id="access-control",
        status=CriterionStatus.WAIVED, attempt=1,
        justification="no privileged roles", recorded_at=1.0,
    ))
    return inst


class _StoreContract:
    """Behaviour shared by every backend. Mixed into concrete test cases."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def tearDown(self):
        self.store.close()

    def test_round_trip(self):
        inst = _instance()
        self.store.save_instance(inst)
        loaded = self.store.get_instance(inst.instance_id)
        self.assertEqual(loaded.to_dict(), inst.to_dict())
        self.assertEqual(loaded.intent, FullPipeline(frozenset({"deploy"})))
        self.assertEqual(loaded.criteria_results[0].status, CriterionStatus.WAIVED)

    def test_save_overwrites(self):
        inst = _instance()
        self.store.save_instance(inst)
        inst.status = WorkflowStatus.ABORTED
        inst.error = "Cancelled"
        self.store.save_instance(inst)
        loaded = self.store.get_instance(inst.instance_id)
        self.assertEqual(loaded.status, WorkflowStatus.ABORTED)
        self.assertEqual(loaded.error, "Cancelled")

    def test_missing(self):
        self.assertIsNone(self.store.get_instance("wf_nope"))

    def test_list_by_status(self):
        a = _instance()
        b = _instance(PartialSet(frozenset({"security"})))
        b.status = WorkflowStatus.COMPLETED
        self.store.save_instance(a)
        self.store.save_instance(b)
        done = self.store.list_instances(status=WorkflowStatus.COMPLETED)
        self.assertEqual([i.instance_id for i in done], [b.instance_id])
        self.assertEqual(len(self.store.list_instances()), 2)

    def test_ledger(self):
        self.assertTrue(self.store.log_action("wf_a", "start", {"sequence": ["contracts"]}))
        self.assertTrue(self.store.log_action("wf_b", "start", {}))
        self.assertTrue(self.store.log_action("wf_a", "approve", {}, idempotency_key="approve:wf_a"))
        self.assertFalse(self.store.log_action("wf_a", "approve", {}, idempotency_key="approve:wf_a"))

        entries = self.store.get_ledger("wf_a")
        self.assertEqual([e["action_type"] for e in entries], ["start", "approve"])
        self.assertEqual(entries[0]["details"], {"sequence": ["contracts"]})
        self.assertEqual(len(self.store.get_ledger()), 3)

    def test_stats(self):
        self.store.save_instance(_instance())
        self.store.log_action("wf_a", "start", {})
        stats = self.store.stats()
        self.assertEqual(stats["instances"], {"executing": 1})
        self.assertEqual(stats["action_ledger_entries"], 1)


class TestInMemoryStore(_StoreContract, unittest.TestCase):

    def make_store(self):
        return InMemoryInstanceStore()

    def test_returned_copies_are_detached(self):
        inst = _instance()
        self.store.save_instance(inst)
        loaded = self.store.get_instance(inst.instance_id)
        loaded.history.clear()
        self.assertEqual(len(self.store.get_instance(inst.instance_id).history), 2)


class TestSQLiteStore(_StoreContract, unittest.TestCase):

    def make_store(self):
        self.tmpdir = tempfile.mkdtemp()
        return SQLiteInstanceStore(os.path.join(self.tmpdir, "router.db"))

    def tearDown(self):
        super().tearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_survives_reopen(self):
        inst = _instance()
        self.store.save_instance(inst)
        self.store.close()
        self.store = SQLiteInstanceStore(os.path.join(self.tmpdir, "router.db"))
        self.assertEqual(self.store.get_instance(inst.instance_id).to_dict(), inst.to_dict())

    def test_transaction_commits(self):
        inst = _instance()
        with self.store.transaction():
            self.store.save_instance(inst)
            self.store.log_action(inst.instance_id, "start", {})
        self.assertIsNotNone(self.store.get_instance(inst.instance_id))
        self.assertEqual(len(self.store.get_ledger(inst.instance_id)), 1)

    def test_transaction_rolls_back(self):
        inst = _instance()
        with self.assertRaises(RuntimeError):
            with self.store.transaction():
                self.store.save_instance(inst)
                raise RuntimeError("boom")
        self.assertIsNone(self.store.get_instance(inst.instance_id))


if __name__ == "__main__":
    unittest.main()
