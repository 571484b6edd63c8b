"""Proposal producer interface and the operator-submitted producer."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol

from .. import schemas
from .errors import ProposalGenerationFailed

# purpose: wrap the external proposal generator; generation itself lives outside this service
# status: pilot

logger = logging.getLogger(__name__)


class ProposalProducer(Protocol):
    async def generate(
        self,
        intent: str,
        base_snapshot: Optional[schemas.Snapshot],
        base_rules: list[schemas.Rule],
    ) -> Optional[schemas.Proposal]:
        ...


class SubmittedProposalProducer:
    """Hand back an operator-written change-set as the proposal for any intent."""

    def __init__(self, draft: schemas.ProposalDraft) -> None:
        self.draft = draft

    async def generate(
        self,
        intent: str,
        base_snapshot: Optional[schemas.Snapshot],
        base_rules: list[schemas.Rule],
    ) -> schemas.Proposal:
        return schemas.Proposal(
            id=f"prop-{uuid.uuid4().hex[:12]}",
            new_version=self.draft.new_version,
            reason=self.draft.reason or intent,
            changes=list(self.draft.changes),
        )


async def propose_evolution(
    producer: ProposalProducer,
    intent: str,
    base_snapshot: Optional[schemas.Snapshot],
    base_rules: Iterable[schemas.Rule],
) -> schemas.Proposal:
    """Ask ``producer`` for a proposal anchored on ``base_snapshot``.

    The returned proposal always points at the base snapshot (0 for bootstrap)
    and never reuses the base version.
    """

    base_id = base_snapshot.id if base_snapshot is not None else 0
    rules = [rule for rule in base_rules if rule.snapshot_id == base_id]
    proposal = await producer.generate(intent, base_snapshot, rules)
    if proposal is None:
        raise ProposalGenerationFailed(f"no proposal produced for intent {intent!r}")

    update: dict = {"base_snapshot_id": base_id, "status": "PENDING"}
    if base_snapshot is not None and proposal.new_version == base_snapshot.version:
        update["new_version"] = f"{proposal.new_version}-evolved"
    if proposal.generated_at is None:
        update["generated_at"] = datetime.now(timezone.utc)
    proposal = proposal.model_copy(update=update)
    logger.info(
        "Proposal %s targets %s with %s changes",
        proposal.id,
        proposal.new_version,
        len(proposal.changes),
    )
    return proposal
