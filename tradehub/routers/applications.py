from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tradehub.deps import get_current_user
from tradehub.models.application import ApplicationNotes, ApplicationStatus, Availability, Bid
from tradehub.models.user import User
from tradehub.services import applications as applications_service

# Mounted under /v1/jobs: applications as a sub-resource of a job
jobs_router = APIRouter()
router = APIRouter()


class SubmitApplicationRequest(BaseModel):
    cover_letter: str = Field(min_length=1, max_length=5000)
    bid: Bid
    availability: Availability | None = None
    additional_details: str | None = Field(default=None, max_length=5000)


class UpdateApplicationRequest(BaseModel):
    status: ApplicationStatus | None = None
    notes: ApplicationNotes | None = None
    withdrawal_reason: str | None = Field(default=None, max_length=1000)


@jobs_router.post("/{job_id}/applications")
async def submit_application(
    job_id: str,
    body: SubmitApplicationRequest,
    user: User = Depends(get_current_user),
):
    """Apply for a job; deducts the job's credit cost in the same unit of work."""
    application, credits_remaining = await applications_service.submit_application(
        job_id,
        user,
        body.cover_letter,
        body.bid,
        availability=body.availability,
        additional_details=body.additional_details,
    )
    return {
        "message": "Application submitted successfully",
        "application": applications_service.full_view(application),
        "credits_remaining": credits_remaining,
    }


@jobs_router.get("/{job_id}/applications")
async def list_job_applications(job_id: str, user: User = Depends(get_current_user)):
    return await applications_service.list_job_applications(job_id, user)


@jobs_router.get("/{job_id}/applications/check")
async def check_application(job_id: str, user: User = Depends(get_current_user)):
    """Has the current user already applied for this job?"""
    return await applications_service.check_application(job_id, user)


@router.get("/stats")
async def application_stats(user: User = Depends(get_current_user)):
    """Application counts by status for the dashboard."""
    return await applications_service.get_application_stats(user)


@router.get("/{application_id}")
async def get_application(application_id: str, user: User = Depends(get_current_user)):
    application = await applications_service.get_application(application_id, user)
    return {"application": applications_service.full_view(application)}


@router.patch("/{application_id}")
async def update_application(
    application_id: str,
    body: UpdateApplicationRequest,
    user: User = Depends(get_current_user),
):
    application = await applications_service.update_application(
        application_id,
        user,
        status=body.status,
        notes=body.notes,
        withdrawal_reason=body.withdrawal_reason,
    )
    return {"application": applications_service.full_view(application)}
