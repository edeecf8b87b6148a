"""
Skill Router

Routes a free-form engineering request to an ordered subset of
development phases and drives a workflow through them: one phase's
guidance resident at a time, exit criteria gating every transition,
bounded loop-backs on failure.

Submodules are imported directly; this package stays import-free so
`router.errors` and `router.types` can be used from `engine` and
`registry` without pulling in the state machine.

Usage:
    from router.runtime import Router

    router = Router()
    snap = router.submit("write tests for my vault contract")
    router.approve(snap["instance_id"])
"""
