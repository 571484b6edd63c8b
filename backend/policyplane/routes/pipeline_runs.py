"""Evolution pipeline endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from .. import schemas
from ..services.pipeline import PipelineOrchestrator
from ..services.promotion import RuleCompiler
from ..services.proposals import SubmittedProposalProducer
from ..services.store import DatabasePolicyStore
from .common import get_policy_store, get_rule_compiler

# purpose: drive an operator-submitted change-set from proposal to a validated snapshot
# inputs: PipelineRunRequest with the intent, optional base snapshot and change-set
# outputs: PipelineRunOut with the final state, snapshot, report and run log
# status: pilot
# depends_on: policyplane.services.pipeline, policyplane.services.store

router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])

_STEP_ORDER = ("BUILT", "PROMOTED", "VALIDATED")


@router.post("/runs", response_model=schemas.PipelineRunOut)
async def run_pipeline(
    payload: schemas.PipelineRunRequest,
    store: DatabasePolicyStore = Depends(get_policy_store),
    compiler: RuleCompiler = Depends(get_rule_compiler),
):
    """Run evolve and build, then promote and validate up to ``payload.through``.

    Steps stop at the first failure; the response carries the state reached and
    ``lastError`` instead of an error status.
    """

    orchestrator = PipelineOrchestrator(
        store,
        SubmittedProposalProducer(payload.proposal),
        compiler,
        strict_diff=payload.strict,
    )
    steps = [orchestrator.build, orchestrator.promote, orchestrator.validate]
    steps = steps[: _STEP_ORDER.index(payload.through) + 1]

    if await orchestrator.evolve(payload.intent, payload.base_snapshot_id):
        for step in steps:
            if not await step():
                break

    return schemas.PipelineRunOut(
        run_id=orchestrator.run_id,
        state=orchestrator.state.value,
        snapshot=orchestrator.snapshot,
        report=orchestrator.report,
        validation_run_id=orchestrator.validation_run_id,
        last_error=orchestrator.last_error,
        logs=[schemas.AgentLogOut.model_validate(entry) for entry in reversed(orchestrator.logs)],
    )
