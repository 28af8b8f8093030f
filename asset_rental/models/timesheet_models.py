from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Time, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from asset_rental.db.base import Base
from asset_rental.models.statuses import OperationStatus, TimesheetStatus, VerifierStatus, status_column_type


class RentalTimesheet(Base):
    __tablename__ = "RentalTimesheets"
    __table_args__ = (UniqueConstraint("RentalID", "WorkDate", name="uq_timesheet_rental_day"),)

    TimesheetID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    WorkDate = Column(Date, nullable=False)
    Version = Column(Integer, nullable=False, default=0)

    StartTime = Column(Time)
    EndTime = Column(Time)
    OperatingHours = Column(Numeric(6, 2), default=0)
    StandbyHours = Column(Numeric(6, 2), default=0)
    OvertimeHours = Column(Numeric(6, 2), default=0)
    BreakdownHours = Column(Numeric(6, 2), default=0)

    HmKmStart = Column(Numeric(12, 2))
    HmKmEnd = Column(Numeric(12, 2))
    HmKmUsage = Column(Numeric(12, 2))

    OperationStatus = Column(status_column_type(OperationStatus), nullable=False, default=OperationStatus.OPERATING)
    BreakdownReason = Column(String(500))
    WorkDescription = Column(String(1000))
    WorkLocation = Column(String(255))
    Photos = Column(String)

    CheckerID = Column(Integer)
    CheckerAt = Column(DateTime)
    CheckerNotes = Column(String(1000))

    VerifierID = Column(Integer)
    VerifierAt = Column(DateTime)
    VerifierStatus = Column(status_column_type(VerifierStatus), nullable=False, default=VerifierStatus.PENDING)
    VerifierNotes = Column(String(1000))

    ClientPicID = Column(Integer, ForeignKey("ClientContacts.ContactID"))
    ClientApprovedAt = Column(DateTime)
    ClientSignature = Column(String)
    ClientNotes = Column(String(1000))

    Status = Column(status_column_type(TimesheetStatus), nullable=False, default=TimesheetStatus.DRAFT)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    ClientPic = relationship("ClientContact")


class ClientContact(Base):
    __tablename__ = "ClientContacts"

    ContactID = Column(Integer, primary_key=True)
    ClientID = Column(Integer, nullable=False)
    OrganizationID = Column(Integer)
    Name = Column(String(255), nullable=False)
    Position = Column(String(100))
    Email = Column(String(255))
    Phone = Column(String(50))
    CanApproveTimesheet = Column(Boolean, default=False)
    CanApproveBilling = Column(Boolean, default=False)
    ApprovalLimit = Column(Numeric(18, 2))
    IsPrimary = Column(Boolean, default=False)
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())
