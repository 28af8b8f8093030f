from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from asset_rental.db.base import Base
from asset_rental.models.statuses import AssetStatus, status_column_type


class Category(Base):
    __tablename__ = "Categories"

    CategoryID = Column(Integer, primary_key=True)
    CategoryName = Column(String(100), nullable=False)
    Description = Column(String(500))
    ParentCategoryID = Column(Integer, ForeignKey("Categories.CategoryID"))
    CreatedDate = Column(DateTime, server_default=func.now())

    ParentCategory = relationship("Category", remote_side=[CategoryID])
    Assets = relationship("Asset", back_populates="Category")


class Asset(Base):
    """Availability view of an asset; the asset register owns the full record."""

    __tablename__ = "Assets"

    AssetID = Column(Integer, primary_key=True)
    AssetCode = Column(String(50), nullable=False, unique=True)
    AssetName = Column(String(255))
    CategoryID = Column(Integer, ForeignKey("Categories.CategoryID"))
    OrganizationID = Column(Integer)
    Status = Column(status_column_type(AssetStatus), nullable=False, default=AssetStatus.IN_INVENTORY)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Category = relationship("Category", back_populates="Assets")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    RentalID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
