from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.crm.stages import OpportunityStage


class StageHistoryEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stage: OpportunityStage
    changed_at: datetime
    changed_by_user_id: str | None


class OpportunityRead(BaseModel):
    id: UUID
    name: str
    stage: OpportunityStage
    source_lead_id: UUID | None
    owner_user_id: str | None
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    stage_history: list[StageHistoryEntryRead] = Field(default_factory=list)


class OpportunityChangeStageRequest(BaseModel):
    new_stage: OpportunityStage
    notes: str | None = None
    row_version: int | None = Field(default=None, ge=1)


class OpportunityNextStagesRead(BaseModel):
    opportunity_id: UUID
    current_stage: OpportunityStage
    next_stages: list[OpportunityStage]
