import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from bizcoach.core import get_settings, limiter
from bizcoach.db.models import BusinessPlan
from bizcoach.dependencies import (
    get_current_user_id,
    get_db,
    get_extractor,
    get_plan_or_404,
    get_section_or_404,
    get_session_manager,
)
from bizcoach.domain import SECTIONS, SectionSchema
from bizcoach.schemas import (
    ApplySuggestionRequest,
    BusinessPlanCreate,
    BusinessPlanResponse,
    SectionInfo,
    SectionRecordResponse,
    TurnRequest,
    TurnResponse,
)
from bizcoach.serializers import business_plan_to_response, section_to_info, turn_result_to_response
from bizcoach.services.coaching import post_turn
from bizcoach.services.errors import PipelineError
from bizcoach.services.extraction import StructuredExtractor
from bizcoach.services.plans import (
    apply_field_suggestion,
    create_plan,
    delete_plan,
    read_section_record,
)
from bizcoach.services.threads import ThreadSessionManager
from .errors import pipeline_error_to_http

logger = logging.getLogger(__name__)

router = APIRouter(tags=["business-plans"])


@router.get("/business-plans/sections", response_model=list[SectionInfo])
async def list_sections():
    """Sections a plan can be coached on, with the fields each one captures."""
    return [section_to_info(section) for section in SECTIONS.values()]


@router.post("/business-plans", response_model=BusinessPlanResponse, status_code=status.HTTP_201_CREATED)
async def create_business_plan(
    body: BusinessPlanCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    plan = await create_plan(db, user_id, body)
    return business_plan_to_response(plan)


@router.get("/business-plans/{plan_id}", response_model=BusinessPlanResponse)
async def get_business_plan(plan: BusinessPlan = Depends(get_plan_or_404)):
    return business_plan_to_response(plan)


@router.delete("/business-plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_business_plan(
    plan: BusinessPlan = Depends(get_plan_or_404),
    db: AsyncSession = Depends(get_db),
    sessions: ThreadSessionManager = Depends(get_session_manager),
):
    await delete_plan(db, plan, sessions)


@router.get("/business-plans/{plan_id}/sections/{section_id}", response_model=SectionRecordResponse)
async def get_section_record(
    plan: BusinessPlan = Depends(get_plan_or_404),
    section: SectionSchema = Depends(get_section_or_404),
):
    return SectionRecordResponse(
        plan_id=plan.id,
        section_id=section.id,
        record=read_section_record(plan.content, section),
    )


@router.post("/business-plans/{plan_id}/sections/{section_id}/turns", response_model=TurnResponse)
@limiter.limit(lambda: get_settings().coach_turn_rate_limit)
async def post_section_turn(
    request: Request,
    body: TurnRequest,
    plan: BusinessPlan = Depends(get_plan_or_404),
    section: SectionSchema = Depends(get_section_or_404),
    db: AsyncSession = Depends(get_db),
    sessions: ThreadSessionManager = Depends(get_session_manager),
    extractor: StructuredExtractor = Depends(get_extractor),
):
    """Send one message to the section's coach; returns the cleaned reply, suggestions and the updated record."""
    try:
        result = await post_turn(db, plan, body.message, sessions, section=section, extractor=extractor)
    except PipelineError as e:
        logger.warning("Turn on plan %s section %s failed: %s", plan.id, section.id, e)
        raise pipeline_error_to_http(e)
    return turn_result_to_response(result)


@router.put(
    "/business-plans/{plan_id}/sections/{section_id}/fields/{field_id}",
    response_model=SectionRecordResponse,
)
async def apply_suggestion(
    field_id: str,
    body: ApplySuggestionRequest,
    plan: BusinessPlan = Depends(get_plan_or_404),
    section: SectionSchema = Depends(get_section_or_404),
    db: AsyncSession = Depends(get_db),
):
    if not body.content.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="content must not be empty")
    record = await apply_field_suggestion(db, plan.id, section, field_id, body.content)
    return SectionRecordResponse(plan_id=plan.id, section_id=section.id, record=record)
