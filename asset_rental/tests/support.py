import os
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


os.environ.setdefault("ASSET_RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)

from asset_rental.db.base import Base
from asset_rental.models import asset_models, rbac_models, rental_models, timesheet_models  # noqa: F401
from asset_rental.models.asset_models import Asset, Category
from asset_rental.models.rental_models import RentalRate
from asset_rental.models.rbac_models import UserRoleAssignment
from asset_rental.models.statuses import AssetStatus, RateType
from asset_rental.services.role_service import get_role_by_code


ADMIN = 1
MANAGER = 2
SUPERVISOR = 3
CHECKER = 4
LIAISON = 5
VIEWER = 6
NOBODY = 99

CLIENT = 500
OTHER_CLIENT = 501


def make_engine(url: str = "sqlite+pysqlite:///:memory:"):
    if ":memory:" in url:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    else:
        engine = create_engine(url, future=True)
    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


class Clock:
    """Mutable stand-in for date.today / datetime.now."""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def today(self) -> date:
        return self.current.date()

    def set_day(self, day: date) -> None:
        self.current = datetime.combine(day, self.current.time())

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


def add_asset(db, code: str, status: AssetStatus = AssetStatus.IN_INVENTORY, organization_id=None, category_id=None) -> Asset:
    asset = Asset(AssetCode=code, AssetName=f"Asset {code}", Status=status, OrganizationID=organization_id, CategoryID=category_id)
    db.add(asset)
    db.commit()
    return asset


def add_category(db, name: str = "Excavators") -> Category:
    category = Category(CategoryName=name)
    db.add(category)
    db.commit()
    return category


def add_rate(
    db,
    *,
    amount: str = "100.00",
    asset_id=None,
    category_id=None,
    rate_type: RateType = RateType.DAILY,
    late_fee: str | None = "20.00",
    minimum_duration: int | None = 1,
    deposit_percentage: str | None = None,
) -> RentalRate:
    rate = RentalRate(
        Name=f"{rate_type.value} rate",
        AssetID=asset_id,
        CategoryID=category_id,
        RateType=rate_type,
        RateAmount=Decimal(amount),
        LateFeePerDay=Decimal(late_fee) if late_fee is not None else None,
        MinimumDuration=minimum_duration,
        DepositPercentage=Decimal(deposit_percentage) if deposit_percentage is not None else None,
        IsActive=True,
    )
    db.add(rate)
    db.commit()
    return rate


def assign(db, user_id: int, role_code: str, organization_id=None, expires_at=None) -> UserRoleAssignment:
    """Insert an assignment row directly, bypassing the future-expiry check."""
    assignment = UserRoleAssignment(
        UserID=user_id,
        RoleID=get_role_by_code(db, role_code).RoleID,
        OrganizationID=organization_id,
        GrantedAt=datetime(2020, 1, 1),
        ExpiresAt=expires_at,
    )
    db.add(assignment)
    db.commit()
    return assignment


def assign_default_staff(db, organization_id=None) -> None:
    assign(db, ADMIN, "super_admin")
    assign(db, MANAGER, "manager", organization_id)
    assign(db, SUPERVISOR, "supervisor", organization_id)
    assign(db, CHECKER, "checker", organization_id)
    assign(db, LIAISON, "client_liaison", organization_id)
    assign(db, VIEWER, "viewer", organization_id)
