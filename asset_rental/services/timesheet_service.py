"""Daily operating timesheets and their two sign-off tracks.

A checker records the day, a supervisor verifies (or disputes) the hours and
a client contact signs. The record is approved only once both the verifier
and the client have signed, in whichever order they arrive.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from asset_rental.models.rental_models import Rental
from asset_rental.models.statuses import OperationStatus, RentalStatus, TimesheetStatus, VerifierStatus
from asset_rental.models.timesheet_models import ClientContact, RentalTimesheet
from asset_rental.services.audit_service import log_audit
from asset_rental.services.errors import NegativeUsageError, NotFound, PermissionDenied, StateConflict, ValidationError
from asset_rental.services.permission_service import Authorizer
from asset_rental.services.state_guard import claim_transition, load_for_update


TIMESHEET_LOGGER = logging.getLogger("asset_rental.timesheets")

DEFAULT_STANDARD_HOURS = Decimal("8")
MAX_DAILY_HOURS = Decimal("24")
HUNDREDTH = Decimal("0.01")

EDITABLE_STATES = {TimesheetStatus.DRAFT, TimesheetStatus.REVISED}
CLIENT_SIGNABLE_STATES = {TimesheetStatus.SUBMITTED, TimesheetStatus.VERIFIED}

# keyword -> column, for create/update
TIMESHEET_FIELDS = {
    "start_time": "StartTime",
    "end_time": "EndTime",
    "operating_hours": "OperatingHours",
    "standby_hours": "StandbyHours",
    "breakdown_hours": "BreakdownHours",
    "hm_km_start": "HmKmStart",
    "hm_km_end": "HmKmEnd",
    "operation_status": "OperationStatus",
    "breakdown_reason": "BreakdownReason",
    "work_description": "WorkDescription",
    "work_location": "WorkLocation",
    "photos": "Photos",
    "checker_notes": "CheckerNotes",
}
HOUR_COLUMNS = ("OperatingHours", "StandbyHours", "BreakdownHours")
DECIMAL_COLUMNS = HOUR_COLUMNS + ("HmKmStart", "HmKmEnd")


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value).quantize(HUNDREDTH, rounding=ROUND_HALF_UP)


def calculate_overtime(timesheet: RentalTimesheet, standard_hours: Decimal = DEFAULT_STANDARD_HOURS) -> Decimal:
    operating = Decimal(timesheet.OperatingHours or 0)
    overtime = max(Decimal("0"), operating - Decimal(standard_hours))
    timesheet.OvertimeHours = _decimal(overtime)
    return timesheet.OvertimeHours


def calculate_usage(timesheet: RentalTimesheet) -> Optional[Decimal]:
    """Meter usage for the day; raises NegativeUsageError and leaves HmKmUsage alone when end < start."""
    if timesheet.HmKmStart is None or timesheet.HmKmEnd is None:
        timesheet.HmKmUsage = None
        return None
    usage = Decimal(timesheet.HmKmEnd) - Decimal(timesheet.HmKmStart)
    if usage < 0:
        raise NegativeUsageError(timesheet.HmKmStart, timesheet.HmKmEnd)
    timesheet.HmKmUsage = _decimal(usage)
    return timesheet.HmKmUsage


def is_fully_approved(timesheet: RentalTimesheet) -> bool:
    return timesheet.VerifierStatus == VerifierStatus.APPROVED and timesheet.ClientApprovedAt is not None


def validate_hours(timesheet: RentalTimesheet) -> None:
    total = Decimal("0")
    for column in HOUR_COLUMNS:
        value = Decimal(getattr(timesheet, column) or 0)
        if value < 0:
            raise ValidationError(column, "hours must not be negative")
        total += value
    if total > MAX_DAILY_HOURS:
        raise ValidationError("hours", f"operating, standby and breakdown hours add up to {total}, more than {MAX_DAILY_HOURS}")
    if timesheet.OperationStatus == OperationStatus.BREAKDOWN and not (timesheet.BreakdownReason or "").strip():
        raise ValidationError("breakdown_reason", "required when the operation status is breakdown")
    if timesheet.StartTime and timesheet.EndTime and timesheet.EndTime < timesheet.StartTime:
        raise ValidationError("end_time", "must not be before start_time")


@dataclass(frozen=True)
class TimesheetSummary:
    rental_id: int
    period_start: Optional[date]
    period_end: Optional[date]
    approved_days: int
    operating_hours: Decimal
    standby_hours: Decimal
    overtime_hours: Decimal
    breakdown_hours: Decimal
    hm_km_usage: Decimal


def _parse_photos(raw: str | None) -> list:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (ValueError, json.JSONDecodeError):
        return []
    return parsed if isinstance(parsed, list) else []


def _hours_text(value) -> str | None:
    return None if value is None else str(_decimal(value))


def serialize_timesheet(timesheet: RentalTimesheet) -> dict:
    return {
        "timesheetID": timesheet.TimesheetID,
        "rentalID": timesheet.RentalID,
        "workDate": timesheet.WorkDate,
        "version": timesheet.Version,
        "startTime": timesheet.StartTime.isoformat() if isinstance(timesheet.StartTime, time) else None,
        "endTime": timesheet.EndTime.isoformat() if isinstance(timesheet.EndTime, time) else None,
        "operatingHours": _hours_text(timesheet.OperatingHours),
        "standbyHours": _hours_text(timesheet.StandbyHours),
        "overtimeHours": _hours_text(timesheet.OvertimeHours),
        "breakdownHours": _hours_text(timesheet.BreakdownHours),
        "hmKmStart": _hours_text(timesheet.HmKmStart),
        "hmKmEnd": _hours_text(timesheet.HmKmEnd),
        "hmKmUsage": _hours_text(timesheet.HmKmUsage),
        "operationStatus": timesheet.OperationStatus.value,
        "breakdownReason": timesheet.BreakdownReason,
        "workDescription": timesheet.WorkDescription,
        "workLocation": timesheet.WorkLocation,
        "photos": _parse_photos(timesheet.Photos),
        "checkerID": timesheet.CheckerID,
        "checkerAt": timesheet.CheckerAt,
        "checkerNotes": timesheet.CheckerNotes,
        "verifierID": timesheet.VerifierID,
        "verifierAt": timesheet.VerifierAt,
        "verifierStatus": timesheet.VerifierStatus.value,
        "verifierNotes": timesheet.VerifierNotes,
        "clientPicID": timesheet.ClientPicID,
        "clientApprovedAt": timesheet.ClientApprovedAt,
        "clientNotes": timesheet.ClientNotes,
        "hasClientSignature": bool(timesheet.ClientSignature),
        "status": timesheet.Status.value,
        "isFullyApproved": is_fully_approved(timesheet),
    }


def _contact_scope(organization_id: Optional[int], include_global: bool = True):
    if organization_id is None:
        return ClientContact.OrganizationID.is_(None)
    own = ClientContact.OrganizationID == organization_id
    return or_(own, ClientContact.OrganizationID.is_(None)) if include_global else own


def serialize_client_contact(contact: ClientContact) -> dict:
    return {
        "contactID": contact.ContactID,
        "clientID": contact.ClientID,
        "organizationID": contact.OrganizationID,
        "name": contact.Name,
        "position": contact.Position,
        "email": contact.Email,
        "phone": contact.Phone,
        "canApproveTimesheet": bool(contact.CanApproveTimesheet),
        "canApproveBilling": bool(contact.CanApproveBilling),
        "approvalLimit": _hours_text(contact.ApprovalLimit),
        "isPrimary": bool(contact.IsPrimary),
        "isActive": bool(contact.IsActive),
    }


class TimesheetApprovalChain:
    def __init__(
        self,
        db: Session,
        authorizer: Authorizer,
        *,
        standard_hours: Decimal = DEFAULT_STANDARD_HOURS,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.authorizer = authorizer
        self.standard_hours = Decimal(standard_hours)
        self._now = now

    def _rental(self, rental_id: int) -> Rental:
        rental = self.db.get(Rental, rental_id)
        if not rental:
            raise NotFound("Rental", rental_id)
        return rental

    def _authorize(self, actor_id: int, timesheet_id: int, code: str) -> None:
        scope = self.db.execute(
            select(Rental.OrganizationID)
            .join(RentalTimesheet, RentalTimesheet.RentalID == Rental.RentalID)
            .where(RentalTimesheet.TimesheetID == timesheet_id)
        ).first()
        self.authorizer.require(actor_id, code, scope[0] if scope else None)
        if scope is None:
            raise NotFound("RentalTimesheet", timesheet_id)

    def _apply_fields(self, timesheet: RentalTimesheet, values: dict) -> None:
        for key, value in values.items():
            column = TIMESHEET_FIELDS.get(key)
            if column is None:
                raise ValidationError(key, "is not an editable timesheet field")
            if column in DECIMAL_COLUMNS:
                value = _decimal(value)
            elif column == "OperationStatus":
                value = OperationStatus(value) if value is not None else OperationStatus.OPERATING
            elif column == "Photos":
                value = json.dumps(list(value or []), ensure_ascii=True)
            setattr(timesheet, column, value)
        calculate_overtime(timesheet, self.standard_hours)
        calculate_usage(timesheet)
        validate_hours(timesheet)

    # ---- queries -------------------------------------------------------

    def get_timesheet(self, actor_id: int, timesheet_id: int) -> RentalTimesheet:
        self._authorize(actor_id, timesheet_id, "timesheet:read")
        return self.db.get(RentalTimesheet, timesheet_id)

    def list_timesheets(
        self,
        actor_id: int,
        rental_id: int,
        *,
        status: Optional[TimesheetStatus] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[RentalTimesheet]:
        rental = self._rental(rental_id)
        self.authorizer.require(actor_id, "timesheet:read", rental.OrganizationID)
        stmt = select(RentalTimesheet).where(RentalTimesheet.RentalID == rental_id)
        if status is not None:
            stmt = stmt.where(RentalTimesheet.Status == status)
        if date_from is not None:
            stmt = stmt.where(RentalTimesheet.WorkDate >= date_from)
        if date_to is not None:
            stmt = stmt.where(RentalTimesheet.WorkDate <= date_to)
        return self.db.execute(stmt.order_by(RentalTimesheet.WorkDate)).scalars().all()

    def get_timesheet_summary(
        self,
        actor_id: int,
        rental_id: int,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
    ) -> TimesheetSummary:
        """Totals over approved records only; unsigned days are not billable."""
        rows = self.list_timesheets(
            actor_id,
            rental_id,
            status=TimesheetStatus.APPROVED,
            date_from=period_start,
            date_to=period_end,
        )
        zero = Decimal("0.00")
        return TimesheetSummary(
            rental_id=rental_id,
            period_start=period_start,
            period_end=period_end,
            approved_days=len(rows),
            operating_hours=sum((Decimal(row.OperatingHours or 0) for row in rows), zero),
            standby_hours=sum((Decimal(row.StandbyHours or 0) for row in rows), zero),
            overtime_hours=sum((Decimal(row.OvertimeHours or 0) for row in rows), zero),
            breakdown_hours=sum((Decimal(row.BreakdownHours or 0) for row in rows), zero),
            hm_km_usage=sum((Decimal(row.HmKmUsage or 0) for row in rows), zero),
        )

    # ---- checker track -------------------------------------------------

    def create_timesheet(self, actor_id: int, rental_id: int, work_date: date, **values) -> RentalTimesheet:
        rental = self._rental(rental_id)
        self.authorizer.require(actor_id, "timesheet:create", rental.OrganizationID)
        if rental.Status != RentalStatus.DISPATCHED:
            raise StateConflict(rental.Status, "record timesheet")
        if rental.StartDate and work_date < rental.StartDate:
            raise ValidationError("work_date", "is before the rental start date")
        if work_date > self._now().date():
            raise ValidationError("work_date", "must not be in the future")
        existing = self.db.execute(
            select(RentalTimesheet.TimesheetID)
            .where(RentalTimesheet.RentalID == rental_id)
            .where(RentalTimesheet.WorkDate == work_date)
        ).first()
        if existing:
            raise ValidationError("work_date", f"a timesheet for {work_date} already exists on this rental")

        timesheet = RentalTimesheet(
            RentalID=rental_id,
            WorkDate=work_date,
            Version=0,
            OperatingHours=Decimal("0.00"),
            StandbyHours=Decimal("0.00"),
            BreakdownHours=Decimal("0.00"),
            OperationStatus=OperationStatus.OPERATING,
            VerifierStatus=VerifierStatus.PENDING,
            Status=TimesheetStatus.DRAFT,
            CheckerID=actor_id,
            CheckerAt=self._now(),
            CreatedDate=self._now(),
            UpdatedDate=self._now(),
        )
        self._apply_fields(timesheet, values)
        try:
            self.db.add(timesheet)
            self.db.flush()
            log_audit(self.db, "RentalTimesheet", timesheet.TimesheetID, "Create", f"Recorded {work_date} for rental {rental_id}", user_id=actor_id)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ValidationError("work_date", f"a timesheet for {work_date} already exists on this rental") from exc
        except Exception:
            self.db.rollback()
            raise
        TIMESHEET_LOGGER.info("Timesheet created timesheet_id=%s rental_id=%s work_date=%s", timesheet.TimesheetID, rental_id, work_date)
        return timesheet

    def update_timesheet(self, actor_id: int, timesheet_id: int, **values) -> RentalTimesheet:
        try:
            self._authorize(actor_id, timesheet_id, "timesheet:update")
            timesheet = load_for_update(self.db, RentalTimesheet, timesheet_id, "RentalTimesheet")
            if timesheet.Status not in EDITABLE_STATES:
                raise StateConflict(timesheet.Status, "update")
            if timesheet.CheckerID != actor_id:
                raise PermissionDenied("timesheet:update (recording checker only)")
            claim_transition(self.db, timesheet, "update", EDITABLE_STATES, None, "RentalTimesheet", self._now())
            self._apply_fields(timesheet, values)
            log_audit(self.db, "RentalTimesheet", timesheet_id, "Update", ", ".join(sorted(values)) or None, user_id=actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        TIMESHEET_LOGGER.info("Timesheet updated timesheet_id=%s by=%s", timesheet_id, actor_id)
        return timesheet

    def submit_timesheet(self, actor_id: int, timesheet_id: int) -> RentalTimesheet:
        try:
            self._authorize(actor_id, timesheet_id, "timesheet:submit")
            timesheet = load_for_update(self.db, RentalTimesheet, timesheet_id, "RentalTimesheet")
            validate_hours(timesheet)
            claim_transition(self.db, timesheet, "submit", EDITABLE_STATES, TimesheetStatus.SUBMITTED, "RentalTimesheet", self._now())
            timesheet.CheckerAt = self._now()
            log_audit(self.db, "RentalTimesheet", timesheet_id, "Submit", None, user_id=actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        TIMESHEET_LOGGER.info("Timesheet submitted timesheet_id=%s by=%s", timesheet_id, actor_id)
        return timesheet

    def revise_timesheet(self, actor_id: int, timesheet_id: int, **values) -> RentalTimesheet:
        """Reopen a disputed record for the checker; both sign-offs start over."""
        try:
            self._authorize(actor_id, timesheet_id, "timesheet:update")
            timesheet = load_for_update(self.db, RentalTimesheet, timesheet_id, "RentalTimesheet")
            if timesheet.Status != TimesheetStatus.DISPUTED:
                raise StateConflict(timesheet.Status, "revise")
            if timesheet.CheckerID != actor_id:
                raise PermissionDenied("timesheet:update (recording checker only)")
            claim_transition(
                self.db,
                timesheet,
                "revise",
                {TimesheetStatus.DISPUTED},
                TimesheetStatus.REVISED,
                "RentalTimesheet",
                self._now(),
            )
            timesheet.VerifierStatus = VerifierStatus.PENDING
            timesheet.VerifierID = None
            timesheet.VerifierAt = None
            timesheet.ClientPicID = None
            timesheet.ClientApprovedAt = None
            timesheet.ClientSignature = None
            timesheet.ClientNotes = None
            self._apply_fields(timesheet, values)
            log_audit(self.db, "RentalTimesheet", timesheet_id, "Revise", timesheet.VerifierNotes, user_id=actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        TIMESHEET_LOGGER.info("Timesheet revised timesheet_id=%s by=%s", timesheet_id, actor_id)
        return timesheet

    # ---- verifier track ------------------------------------------------

    def verify_timesheet(self, actor_id: int, timesheet_id: int, approved: bool, notes: Optional[str] = None) -> RentalTimesheet:
        notes = (notes or "").strip() or None
        try:
            self._authorize(actor_id, timesheet_id, "timesheet:verify")
            timesheet = load_for_update(self.db, RentalTimesheet, timesheet_id, "RentalTimesheet")
            if timesheet.Status != TimesheetStatus.SUBMITTED:
                raise StateConflict(timesheet.Status, "verify")
            if timesheet.CheckerID == actor_id:
                raise PermissionDenied("timesheet:verify (verifier must differ from the recording checker)")
            if not approved and not notes:
                raise ValidationError("verifier_notes", "a dispute needs verifier notes")

            if approved:
                target = TimesheetStatus.APPROVED if timesheet.ClientApprovedAt is not None else TimesheetStatus.VERIFIED
            else:
                target = TimesheetStatus.DISPUTED
            claim_transition(self.db, timesheet, "verify", {TimesheetStatus.SUBMITTED}, target, "RentalTimesheet", self._now())
            timesheet.VerifierStatus = VerifierStatus.APPROVED if approved else VerifierStatus.DISPUTED
            timesheet.VerifierID = actor_id
            timesheet.VerifierAt = self._now()
            timesheet.VerifierNotes = notes
            log_audit(self.db, "RentalTimesheet", timesheet_id, "Verify" if approved else "Dispute", notes, user_id=actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        TIMESHEET_LOGGER.info("Timesheet verified timesheet_id=%s approved=%s status=%s", timesheet_id, approved, timesheet.Status.value)
        return timesheet

    # ---- client track --------------------------------------------------

    def client_approve_timesheet(
        self,
        actor_id: int,
        timesheet_id: int,
        contact_id: int,
        signature: str,
        notes: Optional[str] = None,
    ) -> RentalTimesheet:
        signature = (signature or "").strip()
        try:
            self._authorize(actor_id, timesheet_id, "timesheet:client_approve")
            timesheet = load_for_update(self.db, RentalTimesheet, timesheet_id, "RentalTimesheet")
            rental = self._rental(timesheet.RentalID)
            if timesheet.Status not in CLIENT_SIGNABLE_STATES or timesheet.ClientApprovedAt is not None:
                raise StateConflict(timesheet.Status, "client_approve")

            contact = self.db.get(ClientContact, contact_id)
            if not contact:
                raise NotFound("ClientContact", contact_id)
            if contact.OrganizationID is not None and contact.OrganizationID != rental.OrganizationID:
                TIMESHEET_LOGGER.warning("Client contact belongs to another organization contact_id=%s timesheet_id=%s", contact_id, timesheet_id)
                raise PermissionDenied("timesheet:client_approve (contact belongs to another organization)")
            if not contact.IsActive or not contact.CanApproveTimesheet:
                TIMESHEET_LOGGER.warning("Client contact cannot approve timesheets contact_id=%s timesheet_id=%s", contact_id, timesheet_id)
                raise PermissionDenied("timesheet:client_approve (contact is inactive or cannot approve timesheets)")
            if contact.ClientID != rental.ClientID:
                TIMESHEET_LOGGER.warning("Client contact belongs to another client contact_id=%s timesheet_id=%s", contact_id, timesheet_id)
                raise PermissionDenied("timesheet:client_approve (contact does not belong to the rental's client)")
            if not signature:
                raise ValidationError("signature", "client signature is required")

            target = TimesheetStatus.APPROVED if timesheet.VerifierStatus == VerifierStatus.APPROVED else None
            claim_transition(self.db, timesheet, "client_approve", CLIENT_SIGNABLE_STATES, target, "RentalTimesheet", self._now())
            timesheet.ClientPicID = contact_id
            timesheet.ClientApprovedAt = self._now()
            timesheet.ClientSignature = signature
            timesheet.ClientNotes = notes
            log_audit(self.db, "RentalTimesheet", timesheet_id, "ClientApprove", f"Signed by contact {contact_id}", user_id=actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        TIMESHEET_LOGGER.info("Timesheet client-approved timesheet_id=%s contact_id=%s status=%s", timesheet_id, contact_id, timesheet.Status.value)
        return timesheet

    # ---- client contacts -----------------------------------------------

    def create_client_contact(
        self,
        actor_id: int,
        client_id: int,
        name: str,
        *,
        organization_id: Optional[int] = None,
        position: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        can_approve_timesheet: bool = False,
        can_approve_billing: bool = False,
        approval_limit: Optional[Decimal] = None,
        is_primary: bool = False,
    ) -> ClientContact:
        self.authorizer.require(actor_id, "client:manage", organization_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("name", "is required")
        if approval_limit is not None and Decimal(approval_limit) < 0:
            raise ValidationError("approval_limit", "must not be negative")
        contact = ClientContact(
            ClientID=client_id,
            OrganizationID=organization_id,
            Name=name,
            Position=position,
            Email=email,
            Phone=phone,
            CanApproveTimesheet=bool(can_approve_timesheet),
            CanApproveBilling=bool(can_approve_billing),
            ApprovalLimit=_decimal(approval_limit),
            IsPrimary=bool(is_primary),
            IsActive=True,
        )
        try:
            if is_primary:
                for other in self.db.execute(
                    select(ClientContact)
                    .where(ClientContact.ClientID == client_id)
                    .where(_contact_scope(organization_id, include_global=False))
                    .where(ClientContact.IsPrimary.is_(True))
                ).scalars():
                    other.IsPrimary = False
            self.db.add(contact)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        TIMESHEET_LOGGER.info("Client contact created contact_id=%s client_id=%s", contact.ContactID, client_id)
        return contact

    def set_client_contact_active(self, actor_id: int, contact_id: int, is_active: bool) -> ClientContact:
        scope = self.db.execute(select(ClientContact.OrganizationID).where(ClientContact.ContactID == contact_id)).first()
        self.authorizer.require(actor_id, "client:manage", scope[0] if scope else None)
        contact = self.db.get(ClientContact, contact_id)
        if not contact:
            raise NotFound("ClientContact", contact_id)
        try:
            contact.IsActive = bool(is_active)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        TIMESHEET_LOGGER.info("Client contact updated contact_id=%s is_active=%s", contact_id, contact.IsActive)
        return contact

    def list_client_contacts(
        self,
        actor_id: int,
        client_id: int,
        *,
        organization_id: Optional[int] = None,
        active_only: bool = True,
    ) -> list[ClientContact]:
        """Contacts of ``client_id`` visible from ``organization_id``.

        Without an organization every contact is listed and global ``client:manage`` is needed;
        an organization sees its own contacts plus the globally managed ones.
        """
        self.authorizer.require(actor_id, "client:manage", organization_id)
        stmt = select(ClientContact).where(ClientContact.ClientID == client_id)
        if organization_id is not None:
            stmt = stmt.where(_contact_scope(organization_id))
        if active_only:
            stmt = stmt.where(ClientContact.IsActive.is_(True))
        return self.db.execute(stmt.order_by(ClientContact.IsPrimary.desc(), ClientContact.Name)).scalars().all()
