from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from asset_rental.models.asset_models import Asset
from asset_rental.models.rental_models import Rental, RentalHandover
from asset_rental.models.statuses import AssetStatus, ConditionRating, HandoverType, RentalStatus
from asset_rental.services.asset_ports import AssetStatusPort, RentalRatePort, RentalTerms
from asset_rental.services.audit_service import log_audit, queue_notification
from asset_rental.services.errors import (
    AssetConflict,
    ConcurrencyConflict,
    NotFound,
    PermissionDenied,
    StateConflict,
    ValidationError,
)
from asset_rental.services.permission_service import Authorizer
from asset_rental.services.state_guard import claim_transition, load_for_update


RENTAL_LOGGER = logging.getLogger("asset_rental.rentals")

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
DEFAULT_PAGE = 1
DEFAULT_PER_PAGE = 10
MAX_PER_PAGE = 100

# transition -> (required source state, resulting state)
RENTAL_TRANSITIONS = {
    "approve": (RentalStatus.REQUESTED, RentalStatus.APPROVED),
    "reject": (RentalStatus.REQUESTED, RentalStatus.REJECTED),
    "dispatch": (RentalStatus.APPROVED, RentalStatus.DISPATCHED),
    "return": (RentalStatus.DISPATCHED, RentalStatus.RETURNED),
    "close": (RentalStatus.RETURNED, RentalStatus.CLOSED),
}
DISPATCHABLE_ASSET_STATES = {AssetStatus.IN_INVENTORY, AssetStatus.DEPLOYED}


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Settlement:
    total_days: int
    subtotal: Decimal
    overdue_days: int
    penalty_amount: Decimal
    total_amount: Decimal


def compute_settlement(
    *,
    start_date: date,
    expected_end_date: Optional[date],
    actual_end_date: date,
    daily_rate: Decimal,
    late_fee_per_day: Optional[Decimal] = None,
    minimum_duration: Optional[int] = None,
) -> Settlement:
    """Charge for the days elapsed between start and actual end.

    Days count the start date but not the end date (2024-01-01 to
    2024-01-07 is 6 days), floored by the minimum duration and never below 1.
    """
    elapsed = (actual_end_date - start_date).days
    total_days = max(elapsed, int(minimum_duration or 0), 1)
    subtotal = money(Decimal(daily_rate or 0) * total_days)

    overdue_days = 0
    if expected_end_date is not None:
        overdue_days = max(0, (actual_end_date - expected_end_date).days)
    penalty = ZERO
    if overdue_days and late_fee_per_day:
        penalty = money(Decimal(late_fee_per_day) * overdue_days)

    return Settlement(
        total_days=total_days,
        subtotal=subtotal,
        overdue_days=overdue_days,
        penalty_amount=penalty,
        total_amount=subtotal + penalty,
    )


def recalc_total_amount(rental: Rental) -> None:
    if rental.DailyRate is None or rental.TotalDays is None:
        rental.Subtotal = None
        rental.TotalAmount = None
        return
    subtotal = money(Decimal(rental.DailyRate) * int(rental.TotalDays))
    rental.Subtotal = subtotal
    rental.TotalAmount = subtotal + money(rental.PenaltyAmount or 0)


def is_overdue(rental: Rental, today: date) -> bool:
    if rental.Status == RentalStatus.DISPATCHED:
        return rental.ExpectedEndDate is not None and rental.ExpectedEndDate < today
    if rental.Status in {RentalStatus.RETURNED, RentalStatus.CLOSED}:
        return Decimal(rental.PenaltyAmount or 0) > 0
    return False


def generate_rental_number(db: Session, prefix: str = "RNT", on_date: date | None = None) -> str:
    token = f"{(prefix or 'RNT').upper()}-{(on_date or date.today()).year}"
    # longest first so RNT-2024-10000 sorts above RNT-2024-9999
    last = db.execute(
        select(Rental.RentalNumber)
        .where(Rental.RentalNumber.like(f"{token}-%"))
        .order_by(func.length(Rental.RentalNumber).desc(), Rental.RentalNumber.desc())
        .limit(1)
    ).scalar_one_or_none()
    max_suffix = 0
    if last:
        try:
            max_suffix = int(last.replace(f"{token}-", ""))
        except ValueError:
            max_suffix = 0
    return f"{token}-{max_suffix + 1:04d}"


def _to_json(values: Optional[list]) -> str:
    return json.dumps(list(values or []), ensure_ascii=True)


def _parse_json_list(raw: str | None) -> list:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (ValueError, json.JSONDecodeError):
        return []
    return parsed if isinstance(parsed, list) else []


def _money_text(value) -> str | None:
    return None if value is None else str(money(value))


def serialize_handover(handover: RentalHandover) -> dict:
    return {
        "handoverID": handover.HandoverID,
        "rentalID": handover.RentalID,
        "handoverType": handover.HandoverType.value,
        "conditionRating": handover.ConditionRating.value,
        "conditionNotes": handover.ConditionNotes,
        "photos": _parse_json_list(handover.Photos),
        "hasDamage": bool(handover.HasDamage),
        "damageDescription": handover.DamageDescription,
        "damagePhotos": _parse_json_list(handover.DamagePhotos),
        "recordedBy": handover.RecordedBy,
        "recordedAt": handover.RecordedAt,
    }


def serialize_rental(rental: Rental, today: date | None = None) -> dict:
    return {
        "rentalID": rental.RentalID,
        "rentalNumber": rental.RentalNumber,
        "assetID": rental.AssetID,
        "clientID": rental.ClientID,
        "organizationID": rental.OrganizationID,
        "rentalRateID": rental.RentalRateID,
        "status": rental.Status.value,
        "version": rental.Version,
        "requestDate": rental.RequestDate,
        "startDate": rental.StartDate,
        "expectedEndDate": rental.ExpectedEndDate,
        "actualEndDate": rental.ActualEndDate,
        "dailyRate": _money_text(rental.DailyRate),
        "lateFeePerDay": _money_text(rental.LateFeePerDay),
        "minimumDuration": rental.MinimumDuration,
        "totalDays": rental.TotalDays,
        "subtotal": _money_text(rental.Subtotal),
        "depositAmount": _money_text(rental.DepositAmount),
        "penaltyAmount": _money_text(rental.PenaltyAmount),
        "totalAmount": _money_text(rental.TotalAmount),
        "requestedBy": rental.RequestedBy,
        "approvedBy": rental.ApprovedBy,
        "approvedAt": rental.ApprovedAt,
        "rejectionReason": rental.RejectionReason,
        "dispatchedBy": rental.DispatchedBy,
        "dispatchedAt": rental.DispatchedAt,
        "returnedBy": rental.ReturnedBy,
        "returnedAt": rental.ReturnedAt,
        "closedBy": rental.ClosedBy,
        "closedAt": rental.ClosedAt,
        "notes": rental.Notes,
        "isOverdue": is_overdue(rental, today or date.today()),
    }


def _append_note(rental: Rental, note: str | None) -> None:
    if note:
        rental.Notes = (rental.Notes + "\n" if rental.Notes else "") + note


class RentalLifecycle:
    """request -> approve/reject -> dispatch -> return -> close, one transaction per call."""

    def __init__(
        self,
        db: Session,
        authorizer: Authorizer,
        asset_port: AssetStatusPort,
        rate_port: RentalRatePort,
        *,
        today: Callable[[], date] = date.today,
        now: Callable[[], datetime] = datetime.now,
        number_prefix: str = "RNT",
    ):
        self.db = db
        self.authorizer = authorizer
        self.asset_port = asset_port
        self.rate_port = rate_port
        self._today = today
        self._now = now
        self.number_prefix = number_prefix

    def _authorize(self, actor_id: int, rental_id: int, code: str) -> None:
        """Check ``code`` in the rental's organization before the row is loaded or locked.

        Unknown ids are checked at global scope, so a caller without the
        permission gets the same denial for a missing rental as for one
        outside its organization.
        """
        scope = self.db.execute(select(Rental.OrganizationID).where(Rental.RentalID == rental_id)).first()
        self.authorizer.require(actor_id, code, scope[0] if scope else None)
        if scope is None:
            raise NotFound("Rental", rental_id)

    def _scoped_asset(self, asset_id: int, organization_id: Optional[int]) -> None:
        """Assets owned by an organization can only be rented within it."""
        row = self.db.execute(select(Asset.OrganizationID).where(Asset.AssetID == asset_id)).first()
        if row is None:
            raise NotFound("Asset", asset_id)
        asset_org = row[0]
        if asset_org is not None and asset_org != organization_id:
            RENTAL_LOGGER.warning(
                "Asset outside rental organization asset_id=%s asset_org=%s rental_org=%s",
                asset_id,
                asset_org,
                organization_id,
            )
            raise PermissionDenied(f"asset {asset_id} belongs to another organization")

    # ---- queries -------------------------------------------------------

    def get_rental(self, actor_id: int, rental_id: int) -> Rental:
        self._authorize(actor_id, rental_id, "rental:read")
        return self.db.get(Rental, rental_id)

    def list_rentals(
        self,
        actor_id: int,
        *,
        organization_id: Optional[int] = None,
        status: Optional[RentalStatus] = None,
        client_id: Optional[int] = None,
        asset_id: Optional[int] = None,
        page: int = DEFAULT_PAGE,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> tuple[list[Rental], int]:
        self.authorizer.require(actor_id, "rental:read", organization_id)
        if page < 1:
            raise ValidationError("page", "must be 1 or greater")
        if per_page < 1 or per_page > MAX_PER_PAGE:
            raise ValidationError("per_page", f"must be between 1 and {MAX_PER_PAGE}")

        stmt = select(Rental)
        if organization_id is not None:
            stmt = stmt.where(Rental.OrganizationID == organization_id)
        if status is not None:
            stmt = stmt.where(Rental.Status == status)
        if client_id is not None:
            stmt = stmt.where(Rental.ClientID == client_id)
        if asset_id is not None:
            stmt = stmt.where(Rental.AssetID == asset_id)

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rentals = self.db.execute(
            stmt.order_by(Rental.RentalID.desc()).limit(per_page).offset((page - 1) * per_page)
        ).scalars().all()
        return rentals, total

    def list_overdue_rentals(self, actor_id: int, organization_id: Optional[int] = None) -> list[Rental]:
        self.authorizer.require(actor_id, "rental:read", organization_id)
        stmt = (
            select(Rental)
            .where(Rental.Status == RentalStatus.DISPATCHED)
            .where(Rental.ExpectedEndDate < self._today())
            .order_by(Rental.ExpectedEndDate)
        )
        if organization_id is not None:
            stmt = stmt.where(Rental.OrganizationID == organization_id)
        return self.db.execute(stmt).scalars().all()

    def list_pending_rentals(self, actor_id: int, organization_id: Optional[int] = None) -> list[Rental]:
        self.authorizer.require(actor_id, "rental:read", organization_id)
        stmt = select(Rental).where(Rental.Status == RentalStatus.REQUESTED).order_by(Rental.RequestDate, Rental.RentalID)
        if organization_id is not None:
            stmt = stmt.where(Rental.OrganizationID == organization_id)
        return self.db.execute(stmt).scalars().all()

    def list_handovers(self, actor_id: int, rental_id: int) -> list[RentalHandover]:
        self.get_rental(actor_id, rental_id)
        return self.db.execute(
            select(RentalHandover).where(RentalHandover.RentalID == rental_id).order_by(RentalHandover.HandoverID)
        ).scalars().all()

    # ---- transitions ---------------------------------------------------

    def create_rental(
        self,
        actor_id: int,
        asset_id: int,
        client_id: int,
        *,
        organization_id: Optional[int] = None,
        start_date: Optional[date] = None,
        expected_end_date: Optional[date] = None,
        daily_rate: Optional[Decimal] = None,
        deposit_amount: Optional[Decimal] = None,
        notes: Optional[str] = None,
    ) -> Rental:
        self.authorizer.require(actor_id, "rental:create", organization_id)
        if start_date and expected_end_date and expected_end_date <= start_date:
            raise ValidationError("expected_end_date", "must be after start_date")
        if daily_rate is not None and Decimal(daily_rate) < 0:
            raise ValidationError("daily_rate", "must not be negative")
        if deposit_amount is not None and Decimal(deposit_amount) < 0:
            raise ValidationError("deposit_amount", "must not be negative")
        if organization_id is None:
            # a globally scoped requester books the asset into its own organization
            organization_id = self.db.execute(
                select(Asset.OrganizationID).where(Asset.AssetID == asset_id)
            ).scalar_one_or_none()
        self._scoped_asset(asset_id, organization_id)

        today = self._today()
        rental = Rental(
            RentalNumber=generate_rental_number(self.db, self.number_prefix, today),
            AssetID=asset_id,
            ClientID=client_id,
            OrganizationID=organization_id,
            Status=RentalStatus.REQUESTED,
            Version=0,
            RequestDate=today,
            StartDate=start_date,
            ExpectedEndDate=expected_end_date,
            DailyRate=money(daily_rate) if daily_rate is not None else None,
            DepositAmount=money(deposit_amount) if deposit_amount is not None else ZERO,
            PenaltyAmount=ZERO,
            RequestedBy=actor_id,
            Notes=notes,
            CreatedDate=self._now(),
            UpdatedDate=self._now(),
        )
        try:
            self.db.add(rental)
            self.db.flush()
            log_audit(self.db, "Rental", rental.RentalID, "Request", f"Requested asset {asset_id} for client {client_id}", user_id=actor_id)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConcurrencyConflict("Rental", rental.RentalNumber) from exc
        except Exception:
            self.db.rollback()
            raise
        RENTAL_LOGGER.info("Rental requested rental_id=%s number=%s asset_id=%s", rental.RentalID, rental.RentalNumber, asset_id)
        return rental

    def approve_rental(
        self,
        actor_id: int,
        rental_id: int,
        *,
        start_date: date,
        expected_end_date: date,
        daily_rate: Optional[Decimal] = None,
        deposit_amount: Optional[Decimal] = None,
    ) -> Rental:
        try:
            self._authorize(actor_id, rental_id, "rental:approve")
            rental = load_for_update(self.db, Rental, rental_id, "Rental")
            source, target = RENTAL_TRANSITIONS["approve"]
            if rental.Status != source:
                raise StateConflict(rental.Status, "approve")

            if expected_end_date <= start_date:
                raise ValidationError("expected_end_date", "must be after start_date")
            planned_days = (expected_end_date - start_date).days
            terms = self.rate_port.lookup(asset_id=rental.AssetID)
            if terms and terms.minimum_duration and planned_days < terms.minimum_duration:
                raise ValidationError(
                    "expected_end_date",
                    f"rental span of {planned_days} days is below the minimum duration of {terms.minimum_duration} days",
                )
            rate = self._resolve_daily_rate(rental, daily_rate, terms)
            deposit = self._resolve_deposit(rental, deposit_amount, terms, rate, planned_days)

            claim_transition(self.db, rental, "approve", {source}, target, "Rental", self._now())
            rental.StartDate = start_date
            rental.ExpectedEndDate = expected_end_date
            rental.DailyRate = rate
            rental.DepositAmount = deposit
            if terms:
                rental.RentalRateID = terms.rental_rate_id
                rental.LateFeePerDay = money(terms.late_fee_per_day) if terms.late_fee_per_day is not None else None
                rental.MinimumDuration = terms.minimum_duration
            rental.ApprovedBy = actor_id
            rental.ApprovedAt = self._now()
            log_audit(self.db, "Rental", rental_id, "Approve", f"Approved {start_date}..{expected_end_date} at {rate}/day", user_id=actor_id)
            queue_notification(self.db, rental_id, "RentalApproved", f"Rental {rental.RentalNumber} approved.")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        RENTAL_LOGGER.info("Rental approved rental_id=%s by=%s", rental_id, actor_id)
        return rental

    def reject_rental(self, actor_id: int, rental_id: int, reason: str) -> Rental:
        reason = (reason or "").strip()
        try:
            self._authorize(actor_id, rental_id, "rental:reject")
            rental = load_for_update(self.db, Rental, rental_id, "Rental")
            source, target = RENTAL_TRANSITIONS["reject"]
            if rental.Status != source:
                raise StateConflict(rental.Status, "reject")
            if not reason:
                raise ValidationError("reason", "reject reason is required")

            claim_transition(self.db, rental, "reject", {source}, target, "Rental", self._now())
            rental.RejectionReason = reason
            log_audit(self.db, "Rental", rental_id, "Reject", f"Rejected: {reason}", user_id=actor_id)
            queue_notification(self.db, rental_id, "RentalRejected", f"Rental {rental.RentalNumber} rejected: {reason}")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        RENTAL_LOGGER.info("Rental rejected rental_id=%s by=%s", rental_id, actor_id)
        return rental

    def dispatch_rental(
        self,
        actor_id: int,
        rental_id: int,
        *,
        condition_rating: ConditionRating,
        condition_notes: Optional[str] = None,
        photos: Optional[list[str]] = None,
    ) -> Rental:
        try:
            self._authorize(actor_id, rental_id, "rental:dispatch")
            rental = load_for_update(self.db, Rental, rental_id, "Rental")
            source, target = RENTAL_TRANSITIONS["dispatch"]
            if rental.Status != source:
                raise StateConflict(rental.Status, "dispatch")
            self._scoped_asset(rental.AssetID, rental.OrganizationID)

            asset_status = self.asset_port.get_status(rental.AssetID)
            if asset_status not in DISPATCHABLE_ASSET_STATES:
                raise AssetConflict(rental.AssetID, asset_status, DISPATCHABLE_ASSET_STATES)

            claim_transition(self.db, rental, "dispatch", {source}, target, "Rental", self._now())
            self.asset_port.set_status(rental.AssetID, asset_status, AssetStatus.RENTED_OUT)
            rental.AssetStatusAtDispatch = asset_status
            rental.DispatchedBy = actor_id
            rental.DispatchedAt = self._now()
            self.db.add(
                RentalHandover(
                    RentalID=rental_id,
                    HandoverType=HandoverType.DISPATCH,
                    ConditionRating=ConditionRating(condition_rating),
                    ConditionNotes=condition_notes,
                    Photos=_to_json(photos),
                    HasDamage=False,
                    DamagePhotos=_to_json(None),
                    RecordedBy=actor_id,
                    RecordedAt=self._now(),
                )
            )
            log_audit(self.db, "Rental", rental_id, "Dispatch", f"Asset {rental.AssetID} handed over ({ConditionRating(condition_rating).value})", user_id=actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        RENTAL_LOGGER.info("Rental dispatched rental_id=%s asset_id=%s by=%s", rental_id, rental.AssetID, actor_id)
        return rental

    def return_rental(
        self,
        actor_id: int,
        rental_id: int,
        *,
        condition_rating: ConditionRating,
        has_damage: bool = False,
        condition_notes: Optional[str] = None,
        photos: Optional[list[str]] = None,
        damage_description: Optional[str] = None,
        damage_photos: Optional[list[str]] = None,
    ) -> Rental:
        try:
            self._authorize(actor_id, rental_id, "rental:return")
            rental = load_for_update(self.db, Rental, rental_id, "Rental")
            source, target = RENTAL_TRANSITIONS["return"]
            if rental.Status != source:
                raise StateConflict(rental.Status, "return")
            if has_damage and not (damage_description or "").strip():
                raise ValidationError("damage_description", "required when has_damage is set")

            actual_end = self._today()
            settlement = compute_settlement(
                start_date=rental.StartDate or rental.RequestDate,
                expected_end_date=rental.ExpectedEndDate,
                actual_end_date=actual_end,
                daily_rate=Decimal(rental.DailyRate or 0),
                late_fee_per_day=rental.LateFeePerDay,
                minimum_duration=rental.MinimumDuration,
            )

            claim_transition(self.db, rental, "return", {source}, target, "Rental", self._now())
            released_to = AssetStatus.UNDER_MAINTENANCE if has_damage else (rental.AssetStatusAtDispatch or AssetStatus.IN_INVENTORY)
            self.asset_port.set_status(rental.AssetID, AssetStatus.RENTED_OUT, released_to)

            rental.ActualEndDate = actual_end
            rental.TotalDays = settlement.total_days
            rental.PenaltyAmount = settlement.penalty_amount
            recalc_total_amount(rental)
            rental.ReturnedBy = actor_id
            rental.ReturnedAt = self._now()
            self.db.add(
                RentalHandover(
                    RentalID=rental_id,
                    HandoverType=HandoverType.RETURN,
                    ConditionRating=ConditionRating(condition_rating),
                    ConditionNotes=condition_notes,
                    Photos=_to_json(photos),
                    HasDamage=bool(has_damage),
                    DamageDescription=damage_description,
                    DamagePhotos=_to_json(damage_photos),
                    RecordedBy=actor_id,
                    RecordedAt=self._now(),
                )
            )
            log_audit(
                self.db,
                "Rental",
                rental_id,
                "Return",
                f"days={settlement.total_days} overdue={settlement.overdue_days} total={rental.TotalAmount} asset->{released_to.value}",
                user_id=actor_id,
            )
            if has_damage:
                queue_notification(self.db, rental_id, "RentalReturnedDamaged", f"Rental {rental.RentalNumber} returned damaged: {damage_description}")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        RENTAL_LOGGER.info(
            "Rental returned rental_id=%s total_days=%s penalty=%s total=%s",
            rental_id,
            rental.TotalDays,
            rental.PenaltyAmount,
            rental.TotalAmount,
        )
        return rental

    def close_rental(self, actor_id: int, rental_id: int, notes: Optional[str] = None) -> Rental:
        try:
            self._authorize(actor_id, rental_id, "rental:close")
            rental = load_for_update(self.db, Rental, rental_id, "Rental")
            source, target = RENTAL_TRANSITIONS["close"]
            claim_transition(self.db, rental, "close", {source}, target, "Rental", self._now())
            rental.ClosedBy = actor_id
            rental.ClosedAt = self._now()
            _append_note(rental, notes)
            log_audit(self.db, "Rental", rental_id, "Close", notes or "Rental closed", user_id=actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        RENTAL_LOGGER.info("Rental closed rental_id=%s by=%s", rental_id, actor_id)
        return rental

    # ---- helpers -------------------------------------------------------

    @staticmethod
    def _resolve_daily_rate(rental: Rental, daily_rate: Optional[Decimal], terms: Optional[RentalTerms]) -> Decimal:
        for candidate in (daily_rate, rental.DailyRate, terms.daily_rate if terms else None):
            if candidate is None:
                continue
            if Decimal(candidate) < 0:
                raise ValidationError("daily_rate", "must not be negative")
            return money(candidate)
        raise ValidationError("daily_rate", "no daily rate given and no rental rate applies")

    @staticmethod
    def _resolve_deposit(
        rental: Rental,
        deposit_amount: Optional[Decimal],
        terms: Optional[RentalTerms],
        daily_rate: Decimal,
        planned_days: int,
    ) -> Decimal:
        if deposit_amount is not None:
            if Decimal(deposit_amount) < 0:
                raise ValidationError("deposit_amount", "must not be negative")
            return money(deposit_amount)
        if terms and terms.deposit_percentage:
            return money(daily_rate * planned_days * Decimal(terms.deposit_percentage) / Decimal(100))
        return money(rental.DepositAmount or 0)
