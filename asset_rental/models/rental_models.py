from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from asset_rental.db.base import Base
from asset_rental.models.statuses import (
    AssetStatus,
    ConditionRating,
    HandoverType,
    RateType,
    RentalStatus,
    status_column_type,
)


class RentalRate(Base):
    __tablename__ = "RentalRates"

    RentalRateID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    CategoryID = Column(Integer, ForeignKey("Categories.CategoryID"))
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"))
    RateType = Column(status_column_type(RateType), nullable=False, default=RateType.DAILY)
    RateAmount = Column(Numeric(18, 2), nullable=False)
    Currency = Column(String(3), default="IDR")
    MinimumDuration = Column(Integer, default=1)
    DepositPercentage = Column(Numeric(5, 2))
    LateFeePerDay = Column(Numeric(18, 2))
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class Rental(Base):
    __tablename__ = "Rentals"

    RentalID = Column(Integer, primary_key=True)
    RentalNumber = Column(String(50), nullable=False, unique=True)
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"), nullable=False)
    ClientID = Column(Integer, nullable=False)
    OrganizationID = Column(Integer)
    RentalRateID = Column(Integer, ForeignKey("RentalRates.RentalRateID"))
    Status = Column(status_column_type(RentalStatus), nullable=False, default=RentalStatus.REQUESTED)
    Version = Column(Integer, nullable=False, default=0)

    RequestDate = Column(Date, nullable=False)
    StartDate = Column(Date)
    ExpectedEndDate = Column(Date)
    ActualEndDate = Column(Date)

    DailyRate = Column(Numeric(18, 2))
    LateFeePerDay = Column(Numeric(18, 2))
    MinimumDuration = Column(Integer)
    TotalDays = Column(Integer)
    Subtotal = Column(Numeric(18, 2))
    DepositAmount = Column(Numeric(18, 2))
    PenaltyAmount = Column(Numeric(18, 2))
    TotalAmount = Column(Numeric(18, 2))

    RequestedBy = Column(Integer)
    ApprovedBy = Column(Integer)
    ApprovedAt = Column(DateTime)
    RejectionReason = Column(String(1000))
    DispatchedBy = Column(Integer)
    DispatchedAt = Column(DateTime)
    AssetStatusAtDispatch = Column(status_column_type(AssetStatus))
    ReturnedBy = Column(Integer)
    ReturnedAt = Column(DateTime)
    ClosedBy = Column(Integer)
    ClosedAt = Column(DateTime)

    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Handovers = relationship("RentalHandover", back_populates="Rental", order_by="RentalHandover.HandoverID")


class RentalHandover(Base):
    __tablename__ = "RentalHandovers"

    HandoverID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    HandoverType = Column(status_column_type(HandoverType), nullable=False)
    ConditionRating = Column(status_column_type(ConditionRating), nullable=False)
    ConditionNotes = Column(String(1000))
    Photos = Column(String)
    HasDamage = Column(Boolean, default=False)
    DamageDescription = Column(String(1000))
    DamagePhotos = Column(String)
    RecordedBy = Column(Integer)
    RecordedAt = Column(DateTime)

    Rental = relationship("Rental", back_populates="Handovers")
