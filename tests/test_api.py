"""
Skill Router — API Server Tests

Model validation, then the HTTP surface through FastAPI's TestClient
against an in-memory store and an in-memory guidance locator.
"""

import os
import sys
import unittest
import warnings

from fastapi.testclient import TestClient

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from api.models import (
    AdvanceSignal,
    ApprovalAction,
    ClassifyRequest,
    CriterionSubmission,
    ErrorResponse,
    WorkflowSubmission,
)
from api.server import create_app, error_status
from engine.resources import DictResourceLocator
from registry.phases import load_registry
from router.errors import (
    AmbiguousIntent,
    BudgetViolation,
    LoopLimitExceeded,
    NotFound,
    ResourceUnavailable,
    RouterError,
)
from router.runtime import Router
from router.store import InMemoryInstanceStore

REGISTRY = load_registry()
FULL = {"kind": "full_pipeline"}


# ═══════════════════════════════════════════════════════════════════
# Model Validation Tests
# ═══════════════════════════════════════════════════════════════════

class TestModelValidation(unittest.TestCase):

    def test_classify_request(self):
        self.assertEqual(ClassifyRequest(text="audit my vault").validate(), [])
        self.assertTrue(ClassifyRequest(text="   ").validate())
        self.assertTrue(ClassifyRequest(text=42).validate())

    def test_submission_text_or_intent(self):
        self.assertEqual(WorkflowSubmission(text="build a dex").validate(), [])
        self.assertEqual(WorkflowSubmission(intent={"kind": "repair", "origin": "contracts"}).validate(), [])
        self.assertTrue(any("required" in e for e in WorkflowSubmission().validate()))
        self.assertTrue(any("kind" in e for e in WorkflowSubmission(intent={"kind": "rewrite"}).validate()))
        self.assertTrue(WorkflowSubmission(intent=["partial_set"]).validate())

    def test_approval_action(self):
        self.assertEqual(ApprovalAction(actor="alice", notes="ok").validate(), [])
        self.assertTrue(ApprovalAction(actor=7).validate())

    def test_criterion_submission(self):
        self.assertEqual(CriterionSubmission(criterion_id="compiles", outcome="passed").validate(), [])
        errors = CriterionSubmission(criterion_id="", outcome="unchecked", accept="yes").validate()
        self.assertEqual(len(errors), 3)

    def test_advance_signal(self):
        self.assertEqual(AdvanceSignal(outcome="fail", condition="abi-mismatch").validate(), [])
        self.assertTrue(AdvanceSignal(outcome="skip").validate())
        self.assertTrue(AdvanceSignal(outcome="fail", condition=3).validate())

    def test_error_response_omits_empty_snapshot(self):
        body = ErrorResponse(error="NotFound", message="Instance not found: wf_x").to_dict()
        self.assertNotIn("snapshot", body)
        self.assertEqual(body["errors"], [])

    def test_error_status(self):
        self.assertEqual(error_status(NotFound("x")), 404)
        self.assertEqual(error_status(AmbiguousIntent("x")), 422)
        self.assertEqual(error_status(BudgetViolation("x")), 409)
        self.assertEqual(error_status(LoopLimitExceeded("x")), 409)
        self.assertEqual(error_status(ResourceUnavailable("x")), 503)
        self.assertEqual(error_status(RouterError("x")), 400)


# ═══════════════════════════════════════════════════════════════════
# HTTP Tests
# ═══════════════════════════════════════════════════════════════════

class APITestCase(unittest.TestCase):

    def setUp(self):
        self.router = Router(
            config={},
            locator=DictResourceLocator({p.resource: f"# {p.title}\n" for p in REGISTRY}),
            store=InMemoryInstanceStore(),
        )
        self.client = TestClient(create_app(router=self.router))

    def tearDown(self):
        self.router.close()

    def start(self, **body):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            resp = self.client.post("/v1/workflows", json=body)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def pass_phase(self, iid):
        phase = self.client.get(f"/v1/workflows/{iid}").json()["current_phase"]
        for cid in REGISTRY.lookup(phase).criterion_ids:
            resp = self.client.post(f"/v1/workflows/{iid}/criteria",
                                    json={"criterion_id": cid, "outcome": "passed"})
            self.assertEqual(resp.status_code, 200, resp.text)
        return self.client.post(f"/v1/workflows/{iid}/advance", json={"outcome": "complete"})


class TestWorkflowEndpoints(APITestCase):

    def test_start_from_text(self):
        snap = self.start(text="audit my staking contract")
        self.assertEqual(snap["status"], "awaiting_approval")
        self.assertEqual(snap["sequence"], ["security"])
        self.assertEqual(snap["intent"], {"kind": "partial_set", "phase_ids": ["security"]})

    def test_full_flow(self):
        iid = self.start(intent=FULL, text="build an NFT marketplace")["instance_id"]

        resp = self.client.post(f"/v1/workflows/{iid}/approve", json={"approver": "alice"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["current_phase"], "contracts")
        self.assertEqual(resp.json()["resident_module"], "contracts")

        for _ in range(5):
            resp = self.pass_phase(iid)
            self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "completed")

        report = self.client.get(f"/v1/workflows/{iid}/report").json()
        self.assertEqual(report["exceptions"], [])
        self.assertEqual(set(report["phases"]), {"contracts", "testing", "security", "frontend", "deploy"})

    def test_incomplete_phase(self):
        iid = self.start(intent=FULL)["instance_id"]
        self.client.post(f"/v1/workflows/{iid}/approve")
        resp = self.client.post(f"/v1/workflows/{iid}/advance", json={"outcome": "complete"})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "IncompletePhase")

    def test_loop_back(self):
        iid = self.start(intent=FULL)["instance_id"]
        self.client.post(f"/v1/workflows/{iid}/approve")
        self.pass_phase(iid)
        resp = self.client.post(f"/v1/workflows/{iid}/criteria",
                                json={"criterion_id": "unit-tests-pass", "outcome": "failed"})
        self.assertEqual(resp.json()["criteria"]["unit-tests-pass"], "failed")
        resp = self.client.post(f"/v1/workflows/{iid}/advance", json={"outcome": "fail"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["current_phase"], "contracts")
        self.assertEqual(resp.json()["loop_back_count"], 1)

    def test_loop_limit_is_conflict(self):
        iid = self.start(intent={"kind": "partial_set", "phase_ids": ["testing"]})["instance_id"]
        self.client.post(f"/v1/workflows/{iid}/approve")
        signal = {"outcome": "fail", "condition": "coverage-threshold"}
        for _ in range(3):
            self.assertEqual(self.client.post(f"/v1/workflows/{iid}/advance", json=signal).status_code, 200)
        resp = self.client.post(f"/v1/workflows/{iid}/advance", json=signal)
        self.assertEqual(resp.status_code, 409)
        body = resp.json()
        self.assertEqual(body["error"], "LoopLimitExceeded")
        self.assertEqual(body["snapshot"]["status"], "aborted")

    def test_waiver_without_justification(self):
        iid = self.start(intent=FULL)["instance_id"]
        self.client.post(f"/v1/workflows/{iid}/approve")
        resp = self.client.post(f"/v1/workflows/{iid}/criteria",
                                json={"criterion_id": "access-control", "outcome": "waived"})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "MissingJustification")

    def test_double_approve(self):
        iid = self.start(intent=FULL)["instance_id"]
        self.assertEqual(self.client.post(f"/v1/workflows/{iid}/approve").status_code, 200)
        resp = self.client.post(f"/v1/workflows/{iid}/approve")
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "InvalidTransition")

    def test_reject_and_cancel(self):
        iid = self.start(intent=FULL)["instance_id"]
        resp = self.client.post(f"/v1/workflows/{iid}/reject", json={"rejector": "bob", "reason": "scope"})
        self.assertEqual(resp.json()["status"], "aborted")
        self.assertEqual(resp.json()["error"], "Rejected by bob: scope")
        resp = self.client.post(f"/v1/workflows/{iid}/cancel")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "aborted")

    def test_list_filter(self):
        a = self.start(intent=FULL)["instance_id"]
        b = self.start(intent=FULL)["instance_id"]
        self.client.post(f"/v1/workflows/{b}/approve")
        body = self.client.get("/v1/workflows", params={"status": "awaiting_approval"}).json()
        self.assertEqual([i["instance_id"] for i in body["instances"]], [a])
        self.assertEqual(self.client.get("/v1/workflows").json()["count"], 2)
        self.assertEqual(self.client.get("/v1/workflows", params={"status": "bogus"}).status_code, 422)


class TestErrors(APITestCase):

    def test_unknown_instance(self):
        resp = self.client.get("/v1/workflows/wf_missing")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"], "NotFound")

    def test_ambiguous_classify(self):
        resp = self.client.post("/v1/classify", json={"text": "hello there"})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "AmbiguousIntent")

    def test_validation_errors(self):
        resp = self.client.post("/v1/classify", json={})
        self.assertEqual(resp.status_code, 422)
        self.assertTrue(resp.json()["errors"])

        resp = self.client.post("/v1/workflows", json={"intent": {"kind": "rewrite"}})
        self.assertEqual(resp.status_code, 422)

    def test_bad_json(self):
        resp = self.client.post("/v1/classify", content=b"{not json",
                                headers={"content-type": "application/json"})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "InputError")

    def test_unknown_phase_in_intent(self):
        resp = self.client.post("/v1/workflows",
                                json={"intent": {"kind": "partial_set", "phase_ids": ["marketing"]}})
        self.assertEqual(resp.status_code, 404)

    def test_malformed_intent_fields(self):
        for intent in (
            {"kind": "partial_set", "phase_ids": "security"},
            {"kind": "partial_set", "phase_ids": ["security", 3]},
            {"kind": "full_pipeline", "excluded": "deploy"},
            {"kind": "repair", "origin": ["contracts"]},
        ):
            with self.subTest(intent=intent):
                resp = self.client.post("/v1/workflows", json={"intent": intent})
                self.assertEqual(resp.status_code, 422)
                self.assertEqual(resp.json()["error"], "InputError")
        self.assertEqual(self.client.get("/v1/workflows").json()["count"], 0)


class TestIntrospection(APITestCase):

    def test_classify(self):
        resp = self.client.post("/v1/classify", json={"text": "contracts only, no UI"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["intent"], {"kind": "full_pipeline", "excluded": ["deploy", "frontend"]})

    def test_phases_and_stats(self):
        phases = self.client.get("/v1/phases").json()["phases"]
        self.assertEqual([p["id"] for p in phases], ["contracts", "testing", "security", "frontend", "deploy"])
        stats = self.client.get("/v1/stats").json()
        self.assertEqual(stats["max_loops"], 3)
        self.assertFalse(stats["budget"]["shared_window"])

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")


if __name__ == "__main__":
    unittest.main()
