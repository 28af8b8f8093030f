import logging
import os
from datetime import date
from decimal import Decimal

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

load_dotenv()

from asset_rental.db.deps import get_rental_db
from asset_rental.models.statuses import RentalStatus, TimesheetStatus
from asset_rental.schemas.rbac import AssignRoleRequest, GrantPermissionRequest, RevokeRoleRequest, UpdateAssignmentExpiryRequest
from asset_rental.schemas.rentals import (
    ApproveRentalRequest,
    CloseRentalRequest,
    CreateRentalDto,
    DispatchRentalRequest,
    RejectRentalRequest,
    ReturnRentalRequest,
)
from asset_rental.schemas.timesheets import (
    ClientApproveTimesheetRequest,
    ClientContactStatusRequest,
    CreateClientContactDto,
    CreateTimesheetDto,
    TimesheetFieldsDto,
    VerifyTimesheetRequest,
)
from asset_rental.services.asset_ports import SqlAssetStatusPort, SqlRentalRatePort
from asset_rental.services.audit_service import list_audit_entries
from asset_rental.services.errors import RentalCoreError
from asset_rental.services.permission_service import AssignmentEvents, Authorizer, PermissionCache, PermissionResolver
from asset_rental.services.rental_service import RentalLifecycle, serialize_handover, serialize_rental
from asset_rental.services.role_service import RoleAssignmentService
from asset_rental.services.session_service import get_session, remove_session
from asset_rental.services.timesheet_service import (
    TimesheetApprovalChain,
    serialize_client_contact,
    serialize_timesheet,
)

logging.basicConfig(
    level=(os.environ.get("LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
API_LOGGER = logging.getLogger("asset_rental.api")

app = FastAPI(title="Asset Rental Core")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

PERMISSION_CACHE_TTL_SECONDS = float(os.environ.get("PERMISSION_CACHE_TTL_SECONDS") or "30")
TIMESHEET_STANDARD_HOURS = Decimal(os.environ.get("TIMESHEET_STANDARD_HOURS") or "8")
RENTAL_NUMBER_PREFIX = (os.environ.get("RENTAL_NUMBER_PREFIX") or "RNT").strip().upper()

PERMISSION_EVENTS = AssignmentEvents()
PERMISSION_CACHE = PermissionCache(ttl_seconds=PERMISSION_CACHE_TTL_SECONDS).attach(PERMISSION_EVENTS)


@app.exception_handler(RentalCoreError)
def handle_rental_core_error(request: Request, exc: RentalCoreError):
    API_LOGGER.warning(
        "Request failed method=%s path=%s status=%s code=%s detail=%s",
        request.method,
        request.url.path,
        exc.status_code,
        exc.error_code,
        exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def _require_session_or_401(session_token: str | None) -> dict:
    session = get_session(session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _actor_id(session_token: str | None) -> int:
    return int(_require_session_or_401(session_token)["userID"])


def _authorizer(db: Session) -> Authorizer:
    return Authorizer(PermissionResolver(db, cache=PERMISSION_CACHE))


def _rental_lifecycle(db: Session) -> RentalLifecycle:
    return RentalLifecycle(
        db,
        _authorizer(db),
        SqlAssetStatusPort(db),
        SqlRentalRatePort(db),
        number_prefix=RENTAL_NUMBER_PREFIX,
    )


def _timesheet_chain(db: Session) -> TimesheetApprovalChain:
    return TimesheetApprovalChain(db, _authorizer(db), standard_hours=TIMESHEET_STANDARD_HOURS)


def _serialize_assignment(assignment) -> dict:
    return {
        "assignmentID": assignment.AssignmentID,
        "userID": assignment.UserID,
        "roleID": assignment.RoleID,
        "roleCode": assignment.Role.Code if assignment.Role else None,
        "organizationID": assignment.OrganizationID,
        "grantedBy": assignment.GrantedBy,
        "grantedAt": assignment.GrantedAt,
        "expiresAt": assignment.ExpiresAt,
    }


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.post("/api/auth/logout")
def auth_logout(x_session_token: str | None = Header(None, alias="X-Session-Token")):
    remove_session(x_session_token)
    return {"ok": True}


# ---- rentals ---------------------------------------------------------------


@app.get("/api/rentals")
def list_rentals(
    status: RentalStatus | None = Query(None),
    client_id: int | None = Query(None, alias="clientID"),
    asset_id: int | None = Query(None, alias="assetID"),
    page: int = Query(1),
    per_page: int = Query(10, alias="perPage"),
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    x_organization_id: int | None = Header(None, alias="X-Organization-ID"),
):
    actor_id = _actor_id(x_session_token)
    rentals, total = _rental_lifecycle(db).list_rentals(
        actor_id,
        organization_id=x_organization_id,
        status=status,
        client_id=client_id,
        asset_id=asset_id,
        page=page,
        per_page=per_page,
    )
    return {
        "items": [serialize_rental(rental) for rental in rentals],
        "total": total,
        "page": page,
        "perPage": per_page,
    }


@app.get("/api/rentals/overdue")
def list_overdue_rentals(
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    x_organization_id: int | None = Header(None, alias="X-Organization-ID"),
):
    actor_id = _actor_id(x_session_token)
    rentals = _rental_lifecycle(db).list_overdue_rentals(actor_id, x_organization_id)
    return [serialize_rental(rental) for rental in rentals]


@app.get("/api/rentals/pending")
def list_pending_rentals(
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    x_organization_id: int | None = Header(None, alias="X-Organization-ID"),
):
    actor_id = _actor_id(x_session_token)
    rentals = _rental_lifecycle(db).list_pending_rentals(actor_id, x_organization_id)
    return [serialize_rental(rental) for rental in rentals]


@app.get("/api/rentals/{rental_id}")
def get_rental(
    rental_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    return serialize_rental(_rental_lifecycle(db).get_rental(_actor_id(x_session_token), rental_id))


@app.post("/api/rentals")
def create_rental(
    payload: CreateRentalDto,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    x_organization_id: int | None = Header(None, alias="X-Organization-ID"),
):
    actor_id = _actor_id(x_session_token)
    rental = _rental_lifecycle(db).create_rental(
        actor_id,
        payload.assetID,
        payload.clientID,
        organization_id=x_organization_id,
        start_date=payload.startDate,
        expected_end_date=payload.expectedEndDate,
        daily_rate=payload.dailyRate,
        deposit_amount=payload.depositAmount,
        notes=payload.notes,
    )
    return serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/approve")
def approve_rental(
    rental_id: int,
    payload: ApproveRentalRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    rental = _rental_lifecycle(db).approve_rental(
        _actor_id(x_session_token),
        rental_id,
        start_date=payload.startDate,
        expected_end_date=payload.expectedEndDate,
        daily_rate=payload.dailyRate,
        deposit_amount=payload.depositAmount,
    )
    return serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/reject")
def reject_rental(
    rental_id: int,
    payload: RejectRentalRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    rental = _rental_lifecycle(db).reject_rental(_actor_id(x_session_token), rental_id, payload.reason)
    return serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/dispatch")
def dispatch_rental(
    rental_id: int,
    payload: DispatchRentalRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    rental = _rental_lifecycle(db).dispatch_rental(
        _actor_id(x_session_token),
        rental_id,
        condition_rating=payload.conditionRating,
        condition_notes=payload.conditionNotes,
        photos=payload.photos,
    )
    return serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/return")
def return_rental(
    rental_id: int,
    payload: ReturnRentalRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    rental = _rental_lifecycle(db).return_rental(
        _actor_id(x_session_token),
        rental_id,
        condition_rating=payload.conditionRating,
        has_damage=payload.hasDamage,
        condition_notes=payload.conditionNotes,
        photos=payload.photos,
        damage_description=payload.damageDescription,
        damage_photos=payload.damagePhotos,
    )
    return serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/close")
def close_rental(
    rental_id: int,
    payload: CloseRentalRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    rental = _rental_lifecycle(db).close_rental(_actor_id(x_session_token), rental_id, payload.notes)
    return serialize_rental(rental)


@app.get("/api/rentals/{rental_id}/handovers")
def list_rental_handovers(
    rental_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    handovers = _rental_lifecycle(db).list_handovers(_actor_id(x_session_token), rental_id)
    return [serialize_handover(handover) for handover in handovers]


@app.get("/api/rentals/{rental_id}/audit")
def list_rental_audit(
    rental_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _rental_lifecycle(db).get_rental(_actor_id(x_session_token), rental_id)
    return [
        {
            "auditID": entry.AuditID,
            "action": entry.Action,
            "details": entry.Details,
            "userID": entry.UserID,
            "createdAt": entry.CreatedAt,
        }
        for entry in list_audit_entries(db, "Rental", rental_id)
    ]


# ---- timesheets ------------------------------------------------------------


@app.get("/api/rentals/{rental_id}/timesheets")
def list_rental_timesheets(
    rental_id: int,
    status: TimesheetStatus | None = Query(None),
    date_from: date | None = Query(None, alias="dateFrom"),
    date_to: date | None = Query(None, alias="dateTo"),
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    timesheets = _timesheet_chain(db).list_timesheets(
        _actor_id(x_session_token),
        rental_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
    )
    return [serialize_timesheet(timesheet) for timesheet in timesheets]


@app.get("/api/rentals/{rental_id}/timesheets/summary")
def get_rental_timesheet_summary(
    rental_id: int,
    date_from: date | None = Query(None, alias="dateFrom"),
    date_to: date | None = Query(None, alias="dateTo"),
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    summary = _timesheet_chain(db).get_timesheet_summary(_actor_id(x_session_token), rental_id, date_from, date_to)
    return {
        "rentalID": summary.rental_id,
        "periodStart": summary.period_start,
        "periodEnd": summary.period_end,
        "approvedDays": summary.approved_days,
        "operatingHours": str(summary.operating_hours),
        "standbyHours": str(summary.standby_hours),
        "overtimeHours": str(summary.overtime_hours),
        "breakdownHours": str(summary.breakdown_hours),
        "hmKmUsage": str(summary.hm_km_usage),
    }


@app.post("/api/rentals/{rental_id}/timesheets")
def create_rental_timesheet(
    rental_id: int,
    payload: CreateTimesheetDto,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    timesheet = _timesheet_chain(db).create_timesheet(
        _actor_id(x_session_token),
        rental_id,
        payload.workDate,
        **payload.to_service_fields(),
    )
    return serialize_timesheet(timesheet)


@app.get("/api/timesheets/{timesheet_id}")
def get_timesheet(
    timesheet_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    return serialize_timesheet(_timesheet_chain(db).get_timesheet(_actor_id(x_session_token), timesheet_id))


@app.put("/api/timesheets/{timesheet_id}")
def update_timesheet(
    timesheet_id: int,
    payload: TimesheetFieldsDto,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    timesheet = _timesheet_chain(db).update_timesheet(_actor_id(x_session_token), timesheet_id, **payload.to_service_fields())
    return serialize_timesheet(timesheet)


@app.post("/api/timesheets/{timesheet_id}/submit")
def submit_timesheet(
    timesheet_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    return serialize_timesheet(_timesheet_chain(db).submit_timesheet(_actor_id(x_session_token), timesheet_id))


@app.post("/api/timesheets/{timesheet_id}/verify")
def verify_timesheet(
    timesheet_id: int,
    payload: VerifyTimesheetRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    timesheet = _timesheet_chain(db).verify_timesheet(_actor_id(x_session_token), timesheet_id, payload.approved, payload.notes)
    return serialize_timesheet(timesheet)


@app.post("/api/timesheets/{timesheet_id}/revise")
def revise_timesheet(
    timesheet_id: int,
    payload: TimesheetFieldsDto,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    timesheet = _timesheet_chain(db).revise_timesheet(_actor_id(x_session_token), timesheet_id, **payload.to_service_fields())
    return serialize_timesheet(timesheet)


@app.post("/api/timesheets/{timesheet_id}/client-approve")
def client_approve_timesheet(
    timesheet_id: int,
    payload: ClientApproveTimesheetRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    timesheet = _timesheet_chain(db).client_approve_timesheet(
        _actor_id(x_session_token),
        timesheet_id,
        payload.contactID,
        payload.signature,
        payload.notes,
    )
    return serialize_timesheet(timesheet)


# ---- client contacts -------------------------------------------------------


@app.get("/api/clients/{client_id}/contacts")
def list_client_contacts(
    client_id: int,
    include_inactive: bool = Query(False, alias="includeInactive"),
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    x_organization_id: int | None = Header(None, alias="X-Organization-ID"),
):
    contacts = _timesheet_chain(db).list_client_contacts(
        _actor_id(x_session_token),
        client_id,
        organization_id=x_organization_id,
        active_only=not include_inactive,
    )
    return [serialize_client_contact(contact) for contact in contacts]


@app.post("/api/client-contacts")
def create_client_contact(
    payload: CreateClientContactDto,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    x_organization_id: int | None = Header(None, alias="X-Organization-ID"),
):
    contact = _timesheet_chain(db).create_client_contact(
        _actor_id(x_session_token),
        payload.clientID,
        payload.name,
        organization_id=x_organization_id,
        position=payload.position,
        email=payload.email,
        phone=payload.phone,
        can_approve_timesheet=payload.canApproveTimesheet,
        can_approve_billing=payload.canApproveBilling,
        approval_limit=payload.approvalLimit,
        is_primary=payload.isPrimary,
    )
    return serialize_client_contact(contact)


@app.post("/api/client-contacts/{contact_id}/status")
def set_client_contact_status(
    contact_id: int,
    payload: ClientContactStatusRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    contact = _timesheet_chain(db).set_client_contact_active(_actor_id(x_session_token), contact_id, payload.isActive)
    return serialize_client_contact(contact)


# ---- rbac ------------------------------------------------------------------


@app.get("/api/rbac/me")
def rbac_me(
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    x_organization_id: int | None = Header(None, alias="X-Organization-ID"),
):
    session = _require_session_or_401(x_session_token)
    access = PermissionResolver(db, cache=PERMISSION_CACHE).access_for(int(session["userID"]), x_organization_id)
    return {
        "user": session,
        "organizationID": x_organization_id,
        "permissions": sorted(access.permissions),
        "privilegeLevel": access.privilege_level,
    }


@app.get("/api/rbac/users/{user_id}/permissions")
def resolve_user_permissions(
    user_id: int,
    organization_id: int | None = Query(None, alias="organizationID"),
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    authorizer = _authorizer(db)
    authorizer.require(_actor_id(x_session_token), "rbac:read", organization_id)
    access = authorizer.resolver.access_for(user_id, organization_id)
    return {
        "userID": user_id,
        "organizationID": organization_id,
        "permissions": sorted(access.permissions),
        "privilegeLevel": access.privilege_level,
    }


@app.get("/api/rbac/users/{user_id}/assignments")
def list_user_assignments(
    user_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    x_organization_id: int | None = Header(None, alias="X-Organization-ID"),
):
    actor_id = _actor_id(x_session_token)
    authorizer = _authorizer(db)
    service = RoleAssignmentService(db, PERMISSION_EVENTS)
    if authorizer.resolver.access_for(actor_id).allows("rbac:read"):
        assignments = service.list_assignments(user_id)
    else:
        authorizer.require(actor_id, "rbac:read", x_organization_id)
        assignments = service.list_assignments_in_scope(user_id, x_organization_id)
    return [_serialize_assignment(assignment) for assignment in assignments]


@app.post("/api/rbac/assignments")
def assign_role(
    payload: AssignRoleRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _actor_id(x_session_token)
    _authorizer(db).require(actor_id, "rbac:manage", payload.organizationID)
    assignment = RoleAssignmentService(db, PERMISSION_EVENTS).assign_role(
        payload.userID,
        payload.roleCode,
        organization_id=payload.organizationID,
        granted_by=actor_id,
        expires_at=payload.expiresAt,
    )
    return _serialize_assignment(assignment)


@app.put("/api/rbac/assignments/{assignment_id}/expiry")
def update_assignment_expiry(
    assignment_id: int,
    payload: UpdateAssignmentExpiryRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor_id = _actor_id(x_session_token)
    service = RoleAssignmentService(db, PERMISSION_EVENTS)
    # the assignment's own scope decides, unknown ids need global rights
    existing = service.find_assignment(assignment_id)
    _authorizer(db).require(actor_id, "rbac:manage", existing.OrganizationID if existing else None)
    assignment = service.update_assignment_expiry(assignment_id, payload.expiresAt)
    return _serialize_assignment(assignment)


@app.post("/api/rbac/assignments/revoke")
def revoke_role(
    payload: RevokeRoleRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _authorizer(db).require(_actor_id(x_session_token), "rbac:manage", payload.organizationID)
    removed = RoleAssignmentService(db, PERMISSION_EVENTS).revoke_role(payload.userID, payload.roleCode, payload.organizationID)
    return {"removed": removed}


@app.post("/api/rbac/role-permissions")
def grant_role_permission(
    payload: GrantPermissionRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _authorizer(db).require(_actor_id(x_session_token), "rbac:manage")
    added = RoleAssignmentService(db, PERMISSION_EVENTS).grant_permission(payload.roleCode, payload.permissionCode)
    return {"added": added}
