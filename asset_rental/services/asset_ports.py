"""Narrow contracts the rental lifecycle uses to reach the asset register.

The lifecycle only ever sees ``AssetStatusPort`` and ``RentalRatePort``; the
SQL adapters below share the caller's session so an asset claim commits or
rolls back together with the rental change that triggered it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from asset_rental.models.asset_models import Asset
from asset_rental.models.rental_models import RentalRate
from asset_rental.models.statuses import AssetStatus, RateType
from asset_rental.services.errors import AssetConflict, NotFound


DAYS_PER_WEEK = Decimal(7)
DAYS_PER_MONTH = Decimal(30)


@dataclass(frozen=True)
class RentalTerms:
    daily_rate: Decimal
    late_fee_per_day: Optional[Decimal]
    minimum_duration: Optional[int]
    deposit_percentage: Optional[Decimal]
    rental_rate_id: Optional[int] = None


class AssetStatusPort(Protocol):
    def get_status(self, asset_id: int) -> AssetStatus:
        ...

    def set_status(self, asset_id: int, expected: AssetStatus, new_status: AssetStatus) -> None:
        """Compare-and-set; raises AssetConflict when the asset is no longer ``expected``."""
        ...


class RentalRatePort(Protocol):
    def lookup(self, category_id: Optional[int] = None, asset_id: Optional[int] = None) -> Optional[RentalTerms]:
        ...


class SqlAssetStatusPort:
    def __init__(self, db: Session):
        self.db = db

    def get_status(self, asset_id: int) -> AssetStatus:
        status = self.db.execute(select(Asset.Status).where(Asset.AssetID == asset_id)).scalar_one_or_none()
        if status is None:
            raise NotFound("Asset", asset_id)
        return status

    def set_status(self, asset_id: int, expected: AssetStatus, new_status: AssetStatus) -> None:
        result = self.db.execute(
            update(Asset)
            .where(Asset.AssetID == asset_id)
            .where(Asset.Status == expected)
            .values(Status=new_status, UpdatedDate=datetime.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self.get_status(asset_id)
            raise AssetConflict(asset_id, current, expected)


def to_daily_rate(rate: RentalRate) -> Decimal:
    amount = Decimal(rate.RateAmount or 0)
    if rate.RateType == RateType.WEEKLY:
        return (amount / DAYS_PER_WEEK).quantize(Decimal("0.01"))
    if rate.RateType == RateType.MONTHLY:
        return (amount / DAYS_PER_MONTH).quantize(Decimal("0.01"))
    return amount


def _to_terms(rate: RentalRate) -> RentalTerms:
    return RentalTerms(
        daily_rate=to_daily_rate(rate),
        late_fee_per_day=Decimal(rate.LateFeePerDay) if rate.LateFeePerDay is not None else None,
        minimum_duration=int(rate.MinimumDuration) if rate.MinimumDuration else None,
        deposit_percentage=Decimal(rate.DepositPercentage) if rate.DepositPercentage is not None else None,
        rental_rate_id=rate.RentalRateID,
    )


class SqlRentalRatePort:
    """Asset-specific active rates win over the asset's category rate."""

    def __init__(self, db: Session):
        self.db = db

    def lookup(self, category_id: Optional[int] = None, asset_id: Optional[int] = None) -> Optional[RentalTerms]:
        if asset_id is not None:
            rate = self.db.execute(
                select(RentalRate)
                .where(RentalRate.AssetID == asset_id)
                .where(RentalRate.IsActive.is_(True))
                .order_by(RentalRate.RentalRateID.desc())
            ).scalars().first()
            if rate:
                return _to_terms(rate)
            if category_id is None:
                category_id = self.db.execute(
                    select(Asset.CategoryID).where(Asset.AssetID == asset_id)
                ).scalar_one_or_none()

        if category_id is None:
            return None
        rate = self.db.execute(
            select(RentalRate)
            .where(RentalRate.CategoryID == category_id)
            .where(RentalRate.AssetID.is_(None))
            .where(RentalRate.IsActive.is_(True))
            .order_by(RentalRate.RentalRateID.desc())
        ).scalars().first()
        return _to_terms(rate) if rate else None
