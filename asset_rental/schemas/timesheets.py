from datetime import date, time
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from asset_rental.models.statuses import OperationStatus


class TimesheetFieldsDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startTime: Optional[time] = None
    endTime: Optional[time] = None
    operatingHours: Optional[Decimal] = None
    standbyHours: Optional[Decimal] = None
    breakdownHours: Optional[Decimal] = None
    hmKmStart: Optional[Decimal] = None
    hmKmEnd: Optional[Decimal] = None
    operationStatus: Optional[OperationStatus] = None
    breakdownReason: Optional[str] = None
    workDescription: Optional[str] = None
    workLocation: Optional[str] = None
    photos: Optional[List[str]] = None
    checkerNotes: Optional[str] = None

    def to_service_fields(self) -> dict:
        """Only the fields the caller actually sent, keyed the way the chain expects."""
        mapping = {
            "startTime": "start_time",
            "endTime": "end_time",
            "operatingHours": "operating_hours",
            "standbyHours": "standby_hours",
            "breakdownHours": "breakdown_hours",
            "hmKmStart": "hm_km_start",
            "hmKmEnd": "hm_km_end",
            "operationStatus": "operation_status",
            "breakdownReason": "breakdown_reason",
            "workDescription": "work_description",
            "workLocation": "work_location",
            "photos": "photos",
            "checkerNotes": "checker_notes",
        }
        return {mapping[key]: value for key, value in self.model_dump(exclude_unset=True).items() if key in mapping}


class CreateTimesheetDto(TimesheetFieldsDto):
    workDate: date


class VerifyTimesheetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    approved: bool
    notes: Optional[str] = None


class ClientApproveTimesheetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    contactID: int
    signature: str
    notes: Optional[str] = None


class CreateClientContactDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    clientID: int
    name: str
    position: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    canApproveTimesheet: bool = False
    canApproveBilling: bool = False
    approvalLimit: Optional[Decimal] = None
    isPrimary: bool = False


class ClientContactStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    isActive: bool
