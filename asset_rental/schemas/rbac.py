from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class AssignRoleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userID: int
    roleCode: str
    organizationID: Optional[int] = None
    expiresAt: Optional[datetime] = None


class RevokeRoleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userID: int
    roleCode: str
    organizationID: Optional[int] = None


class UpdateAssignmentExpiryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    expiresAt: Optional[datetime] = None


class GrantPermissionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    roleCode: str
    permissionCode: str
