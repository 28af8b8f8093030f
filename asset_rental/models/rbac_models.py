from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from asset_rental.db.base import Base


class Role(Base):
    __tablename__ = "Roles"

    RoleID = Column(Integer, primary_key=True)
    Code = Column(String(50), nullable=False, unique=True)
    Name = Column(String(100), nullable=False)
    Description = Column(String(500))
    RoleLevel = Column(Integer)
    IsSystem = Column(Boolean, default=False, nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    RolePermissions = relationship("RolePermission", back_populates="Role", cascade="all, delete-orphan")


class Permission(Base):
    __tablename__ = "Permissions"

    PermissionID = Column(Integer, primary_key=True)
    Code = Column(String(100), nullable=False, unique=True)
    Name = Column(String(255))
    Resource = Column(String(50), nullable=False)
    Action = Column(String(50), nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())

    RolePermissions = relationship("RolePermission", back_populates="Permission")


class RolePermission(Base):
    __tablename__ = "RolePermissions"
    __table_args__ = (UniqueConstraint("RoleID", "PermissionID", name="uq_role_permission"),)

    RolePermissionID = Column(Integer, primary_key=True)
    RoleID = Column(Integer, ForeignKey("Roles.RoleID"), nullable=False, index=True)
    PermissionID = Column(Integer, ForeignKey("Permissions.PermissionID"), nullable=False, index=True)
    CreatedAt = Column(DateTime, server_default=func.now())

    Role = relationship("Role", back_populates="RolePermissions")
    Permission = relationship("Permission", back_populates="RolePermissions")


class UserRoleAssignment(Base):
    __tablename__ = "UserRoleAssignments"

    AssignmentID = Column(Integer, primary_key=True)
    UserID = Column(Integer, nullable=False, index=True)
    RoleID = Column(Integer, ForeignKey("Roles.RoleID"), nullable=False)
    OrganizationID = Column(Integer)
    GrantedBy = Column(Integer)
    GrantedAt = Column(DateTime, nullable=False)
    ExpiresAt = Column(DateTime)

    Role = relationship("Role")
