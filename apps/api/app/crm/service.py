from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.core.database import on_commit
from app.crm.models import CRMIdempotencyKey, CRMOpportunity, CRMOpportunityStageHistory, CRMPipelineUpdate
from app.crm.schemas import (
    OpportunityChangeStageRequest,
    OpportunityNextStagesRead,
    OpportunityRead,
    StageHistoryEntryRead,
)
from app.crm.stages import OpportunityStage, can_transition, is_closed, next_stages
from app.metrics import observe_opportunity_stage_change


logger = logging.getLogger("app.crm.opportunities")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str]
    is_super_admin: bool = False
    correlation_id: str | None = None


class OpportunityService:
    entity_type = "crm.opportunity"

    def create_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        name: str,
        stage: OpportunityStage = OpportunityStage.PROSPECTING,
        source_lead_id: uuid.UUID | None = None,
    ) -> CRMOpportunity:
        opportunity = CRMOpportunity(
            name=name,
            stage=stage.value,
            source_lead_id=source_lead_id,
            owner_user_id=actor_user.user_id,
            closed_at=utcnow() if is_closed(stage) else None,
        )
        session.add(opportunity)
        session.flush()
        session.add(
            CRMOpportunityStageHistory(
                opportunity_id=opportunity.id,
                sequence=1,
                stage=stage.value,
                changed_by_user_id=actor_user.user_id,
            )
        )
        session.flush()
        return opportunity

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        return self._to_read(self._load(session, opportunity_id))

    def get_next_stages(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityNextStagesRead:
        opportunity = self._load(session, opportunity_id)
        current = OpportunityStage(opportunity.stage)
        return OpportunityNextStagesRead(
            opportunity_id=opportunity.id,
            current_stage=current,
            next_stages=next_stages(current),
        )

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityChangeStageRequest,
        idempotency_key: str | None,
    ) -> OpportunityRead:
        endpoint = f"crm.opportunity.change_stage:{opportunity_id}"
        request_hash = self._request_hash(dto.model_dump(mode="json"))
        stored = self._load_idempotent(session, endpoint, idempotency_key, request_hash)
        if stored is not None:
            return stored

        opportunity = self._load(session, opportunity_id)
        if dto.row_version is not None and dto.row_version != opportunity.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        current = OpportunityStage(opportunity.stage)
        if not can_transition(current, dto.new_stage):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "code": "INVALID_STATUS_TRANSITION",
                    "message": f"cannot move from {current.value} to {dto.new_stage.value}",
                    "allowed": [stage.value for stage in next_stages(current)],
                },
            )

        before = self._to_read(opportunity).model_dump(mode="json")
        self.apply_stage(
            session,
            opportunity,
            dto.new_stage,
            actor_user_id=actor_user.user_id,
            source="manual",
            correlation_id=actor_user.correlation_id,
            notes=dto.notes,
        )
        session.flush()
        session.expire(opportunity)
        updated = self._to_read(opportunity)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="change_stage",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            session=session,
        )
        self._store_idempotent(session, endpoint, idempotency_key, request_hash, updated)
        session.commit()
        return updated

    def apply_stage(
        self,
        session: Session,
        opportunity: CRMOpportunity,
        new_stage: OpportunityStage,
        *,
        actor_user_id: str | None,
        source: str,
        correlation_id: str | None,
        notes: str | None = None,
    ) -> CRMPipelineUpdate:
        """Append one legal stage step to the opportunity's history.

        Callers must have checked ``can_transition`` already; this only records
        the step (history entry, pipeline update, closed timestamp). The event and
        the metric are released when the caller commits.
        """
        old_stage = opportunity.stage
        result = session.execute(
            update(CRMOpportunity)
            .where(and_(CRMOpportunity.id == opportunity.id, CRMOpportunity.row_version == opportunity.row_version))
            .values(
                stage=new_stage.value,
                closed_at=utcnow() if is_closed(new_stage) else None,
                updated_at=utcnow(),
                row_version=CRMOpportunity.row_version + 1,
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        last_sequence = session.scalar(
            select(func.max(CRMOpportunityStageHistory.sequence)).where(
                CRMOpportunityStageHistory.opportunity_id == opportunity.id
            )
        )
        session.add(
            CRMOpportunityStageHistory(
                opportunity_id=opportunity.id,
                sequence=(last_sequence or 0) + 1,
                stage=new_stage.value,
                changed_by_user_id=actor_user_id,
            )
        )
        pipeline_update = CRMPipelineUpdate(
            opportunity_id=opportunity.id,
            old_stage=old_stage,
            new_stage=new_stage.value,
            notes=notes,
            source=source,
            correlation_id=correlation_id,
            updated_by_user_id=actor_user_id,
        )
        session.add(pipeline_update)
        session.flush()
        session.refresh(opportunity)

        on_commit(session, partial(observe_opportunity_stage_change, new_stage.value))
        logger.info(
            "opportunity.stage_changed",
            extra={
                "opportunity_id": str(opportunity.id),
                "old_stage": old_stage,
                "new_stage": new_stage.value,
            },
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.opportunity.stage_changed",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user_id,
                "correlation_id": correlation_id,
                "version": 1,
                "payload": {
                    "opportunity_id": str(opportunity.id),
                    "old_stage": old_stage,
                    "new_stage": new_stage.value,
                    "source": source,
                },
            },
            session=session,
        )
        return pipeline_update

    def _load(self, session: Session, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = session.scalar(
            select(CRMOpportunity)
            .where(CRMOpportunity.id == opportunity_id)
            .options(selectinload(CRMOpportunity.stage_history))
        )
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return opportunity

    def _to_read(self, opportunity: CRMOpportunity) -> OpportunityRead:
        return OpportunityRead(
            id=opportunity.id,
            name=opportunity.name,
            stage=OpportunityStage(opportunity.stage),
            source_lead_id=opportunity.source_lead_id,
            owner_user_id=opportunity.owner_user_id,
            closed_at=opportunity.closed_at,
            created_at=opportunity.created_at,
            updated_at=opportunity.updated_at,
            row_version=opportunity.row_version,
            stage_history=[StageHistoryEntryRead.model_validate(entry) for entry in opportunity.stage_history],
        )

    def _request_hash(self, payload: dict[str, Any]) -> str:
        return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()

    def _load_idempotent(
        self,
        session: Session,
        endpoint: str,
        key: str | None,
        request_hash: str,
    ) -> OpportunityRead | None:
        if not key:
            return None
        record = session.scalar(
            select(CRMIdempotencyKey).where(and_(CRMIdempotencyKey.endpoint == endpoint, CRMIdempotencyKey.key == key))
        )
        if record is None:
            return None
        if record.request_hash != request_hash:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="idempotency key payload mismatch")
        return OpportunityRead.model_validate(json.loads(record.response_json))

    def _store_idempotent(
        self,
        session: Session,
        endpoint: str,
        key: str | None,
        request_hash: str,
        response: OpportunityRead,
    ) -> None:
        if not key:
            return
        session.add(
            CRMIdempotencyKey(
                endpoint=endpoint,
                key=key,
                request_hash=request_hash,
                response_json=json.dumps(response.model_dump(mode="json")),
            )
        )


opportunity_service = OpportunityService()
