"""Job applications: the paid, all-or-nothing submit flow and owner/applicant management."""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from tradehub.core.audit import log_event
from tradehub.core.exceptions import (
    BadRequestError,
    DuplicateApplicationError,
    ForbiddenError,
    InsufficientCreditsError,
    JobClosedError,
    NotFoundError,
    VerificationRequiredError,
)
from tradehub.core.logging import get_logger
from tradehub.core.security import parse_object_id
from tradehub.db.session import UnitOfWork, atomic
from tradehub.models.application import (
    Application,
    ApplicationNotes,
    ApplicationStatus,
    Availability,
    Bid,
    StatusChange,
)
from tradehub.models.credit_ledger import CreditAccount, RelatedModel
from tradehub.models.job import Job, JobStatus
from tradehub.models.transaction import Transaction, TransactionStatus, TransactionType
from tradehub.models.user import User, UserRole
from tradehub.services import credits as credits_service

log = get_logger(__name__)

# Status changes a job owner (or admin) may make
OWNER_STATUSES = {ApplicationStatus.SHORTLISTED, ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED}


async def _find_active_application(job_id: PydanticObjectId, tradesperson_id: PydanticObjectId) -> Application | None:
    return await Application.find_one(
        Application.job_id == job_id,
        Application.tradesperson_id == tradesperson_id,
        Application.status != ApplicationStatus.WITHDRAWN,
    )


async def _attach_to_job(job_id: PydanticObjectId, application_id: PydanticObjectId, session=None) -> None:
    """Link the application to the job; the job must still be open at write time."""
    result = await Job.find_one({"_id": job_id, "status": JobStatus.OPEN.value}).update(
        {
            "$push": {"applications": application_id},
            "$inc": {"application_count": 1},
            "$set": {"updated_at": datetime.utcnow()},
        },
        session=session,
    )
    if result is None or result.matched_count == 0:
        raise JobClosedError()


async def _detach_from_job(job_id: PydanticObjectId, application_id: PydanticObjectId) -> None:
    await Job.find_one({"_id": job_id, "applications": application_id}).update(
        {"$pull": {"applications": application_id}, "$inc": {"application_count": -1}}
    )


async def submit_application(
    job_id: str,
    user: User,
    cover_letter: str,
    bid: Bid,
    availability: Availability | None = None,
    additional_details: str | None = None,
) -> tuple[Application, int]:
    """
    Create a paid application for (job, tradesperson) or change nothing.
    Returns (application, credits_remaining).

    Preconditions are checked in a fixed order so the client can branch on the
    error code (e.g. VERIFICATION_REQUIRED vs INSUFFICIENT_CREDITS).
    """
    if user.role != UserRole.TRADESPERSON:
        raise ForbiddenError("Only tradespeople can apply for jobs")
    job_oid = parse_object_id(job_id, "job ID")
    job = await Job.get(job_oid)
    if not job:
        raise NotFoundError("Job not found")
    if job.status != JobStatus.OPEN:
        raise JobClosedError()
    if await _find_active_application(job_oid, user.id):
        raise DuplicateApplicationError()
    tradesperson = await User.get(user.id)
    if not tradesperson or tradesperson.role != UserRole.TRADESPERSON:
        raise NotFoundError("Tradesperson profile not found")
    if not tradesperson.is_verified:
        raise VerificationRequiredError()
    cost = job.credit_cost or 1
    if not credits_service.has_enough_credits(tradesperson, cost):
        raise InsufficientCreditsError(required=cost, available=tradesperson.credits.available)

    now = datetime.utcnow()
    notes = f"Applied for job: {job.title}"
    application = Application(
        job_id=job_oid,
        tradesperson_id=tradesperson.id,
        cover_letter=cover_letter,
        bid=bid,
        availability=availability or Availability(),
        additional_details=additional_details,
        status=ApplicationStatus.PENDING,
        status_history=[
            StatusChange(status=ApplicationStatus.PENDING, changed_at=now, changed_by=tradesperson.id, note="Application submitted")
        ],
        credit_deducted=True,
        submitted_at=now,
        last_updated=now,
    )

    async def _write(uow: UnitOfWork) -> tuple[Transaction, CreditAccount]:
        try:
            await application.insert(session=uow.session)
        except DuplicateKeyError as e:
            # A concurrent submission for the same job won the unique index
            raise DuplicateApplicationError() from e
        uow.on_rollback(application.delete)

        transaction = Transaction(
            user_id=tradesperson.id,
            amount=-cost,
            type=TransactionType.USAGE,
            status=TransactionStatus.COMPLETED,
            description=notes,
            related_id=application.id,
            related_type="Application",
        )
        await transaction.insert(session=uow.session)
        uow.on_rollback(transaction.delete)

        application.credit_transaction_id = transaction.id
        await application.save(session=uow.session)

        entry, account = await credits_service.use_credits(
            tradesperson.id,
            cost,
            related_to=transaction.id,
            related_model=RelatedModel.TRANSACTION,
            notes=notes,
            session=uow.session,
        )

        async def _refund_entry() -> None:
            await credits_service.revert_ledger_entry(tradesperson.id, entry, spent_delta=cost)

        uow.on_rollback(_refund_entry)

        await _attach_to_job(job_oid, application.id, session=uow.session)

        async def _unlink_job() -> None:
            await _detach_from_job(job_oid, application.id)

        uow.on_rollback(_unlink_job)
        return transaction, account

    transaction, account = await atomic(_write)

    log.info(
        "application_submitted",
        application_id=str(application.id),
        job_id=str(job_oid),
        tradesperson_id=str(tradesperson.id),
        credit_cost=cost,
        credits_remaining=account.available,
    )
    await log_event(
        tradesperson.id,
        "application_submitted",
        "application",
        application.id,
        {"job_id": str(job_oid), "credit_cost": cost, "transaction_id": str(transaction.id)},
    )
    return application, account.available


def public_view(application: Application) -> dict[str, Any]:
    """What other applicants may see of a competing application."""
    return {
        "id": str(application.id),
        "status": application.status,
        "submitted_at": application.submitted_at.isoformat(),
    }


def full_view(application: Application) -> dict[str, Any]:
    out = application.model_dump(mode="json", exclude={"id", "revision_id"})
    out["id"] = str(application.id)
    return out


async def list_job_applications(job_id: str, user: User) -> dict[str, Any]:
    """Owner and admin see everything; a tradesperson sees their own in full and others in outline."""
    job_oid = parse_object_id(job_id, "job ID")
    job = await Job.get(job_oid)
    if not job:
        raise NotFoundError("Job not found")
    is_job_owner = job.customer_id == user.id
    is_admin = user.role == UserRole.ADMIN
    applications = await Application.find(Application.job_id == job_oid).sort(-Application.submitted_at).to_list()
    out = []
    for a in applications:
        if is_job_owner or is_admin or a.tradesperson_id == user.id:
            out.append(full_view(a))
        else:
            out.append(public_view(a))
    return {"applications": out, "is_job_owner": is_job_owner, "total_applications": len(applications)}


async def check_application(job_id: str, user: User) -> dict[str, Any]:
    job_oid = parse_object_id(job_id, "job ID")
    existing = await Application.find(
        Application.job_id == job_oid,
        Application.tradesperson_id == user.id,
    ).sort(-Application.submitted_at).first_or_none()
    return {
        "has_applied": existing is not None and existing.status != ApplicationStatus.WITHDRAWN,
        "application_status": existing.status if existing else None,
        "application_id": str(existing.id) if existing else None,
    }


async def get_application_stats(user: User) -> dict[str, int]:
    """Per-status counts: own applications for a tradesperson, applications to own jobs for a customer."""
    if user.role == UserRole.TRADESPERSON:
        query: dict[str, Any] = {"tradesperson_id": user.id}
    elif user.role == UserRole.CUSTOMER:
        job_ids = [j.id for j in await Job.find(Job.customer_id == user.id).to_list()]
        query = {"job_id": {"$in": job_ids}}
    else:
        query = {}
    rows = await Application.find(query).aggregate(
        [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
    ).to_list()
    counts = {row["_id"]: row["count"] for row in rows}
    stats = {s.value: counts.get(s.value, 0) for s in ApplicationStatus}
    return {"total": sum(stats.values()), **stats}


async def _load_with_roles(application_id: str, user: User) -> tuple[Application, Job, bool, bool, bool]:
    app_oid = parse_object_id(application_id, "application ID")
    application = await Application.get(app_oid)
    if not application:
        raise NotFoundError("Application not found")
    job = await Job.get(application.job_id)
    if not job:
        raise NotFoundError("Job not found")
    is_job_owner = job.customer_id == user.id
    is_applicant = application.tradesperson_id == user.id
    is_admin = user.role == UserRole.ADMIN
    return application, job, is_job_owner, is_applicant, is_admin


async def get_application(application_id: str, user: User) -> Application:
    application, _job, is_job_owner, is_applicant, is_admin = await _load_with_roles(application_id, user)
    if not (is_job_owner or is_applicant or is_admin):
        raise ForbiddenError("You do not have permission to view this application")
    if is_job_owner and not application.customer_viewed:
        application.customer_viewed = True
        await application.save()
    return application


async def update_application(
    application_id: str,
    user: User,
    status: ApplicationStatus | None = None,
    notes: ApplicationNotes | None = None,
    withdrawal_reason: str | None = None,
) -> Application:
    """
    Owner/admin: shortlist, accept or reject, plus customer notes.
    Applicant: withdraw (with reason), plus own notes. Admin: internal notes.
    Withdrawn applications are final; nothing is ever deleted.
    """
    application, _job, is_job_owner, is_applicant, is_admin = await _load_with_roles(application_id, user)
    if not (is_job_owner or is_applicant or is_admin):
        raise ForbiddenError("You do not have permission to update this application")

    if status is not None and status != application.status:
        if application.status == ApplicationStatus.WITHDRAWN:
            raise BadRequestError("Application has been withdrawn")
        if status == ApplicationStatus.WITHDRAWN:
            if not is_applicant:
                raise ForbiddenError("Only the applicant can withdraw an application")
            application.withdrawal_reason = withdrawal_reason
            application.transition(status, user.id, withdrawal_reason or "Application withdrawn")
        elif status in OWNER_STATUSES:
            if not (is_job_owner or is_admin):
                raise ForbiddenError("Only the job owner can change the application status")
            application.transition(status, user.id)
        else:
            raise BadRequestError(f"Cannot move application to {status.value}")

    if notes is not None:
        if notes.customer is not None and (is_job_owner or is_admin):
            application.notes.customer = notes.customer
        if notes.tradesperson is not None and is_applicant:
            application.notes.tradesperson = notes.tradesperson
        if notes.internal is not None and is_admin:
            application.notes.internal = notes.internal

    application.last_updated = datetime.utcnow()
    await application.save()
    log.info("application_updated", application_id=str(application.id), status=application.status, by=str(user.id))
    return application
