from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from asset_rental.models.statuses import ConditionRating


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: int
    clientID: int
    startDate: Optional[date] = None
    expectedEndDate: Optional[date] = None
    dailyRate: Optional[Decimal] = None
    depositAmount: Optional[Decimal] = None
    notes: Optional[str] = None


class ApproveRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startDate: date
    expectedEndDate: date
    dailyRate: Optional[Decimal] = None
    depositAmount: Optional[Decimal] = None


class RejectRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: str


class DispatchRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conditionRating: ConditionRating
    conditionNotes: Optional[str] = None
    photos: List[str] = []


class ReturnRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conditionRating: ConditionRating
    conditionNotes: Optional[str] = None
    photos: List[str] = []
    hasDamage: bool = False
    damageDescription: Optional[str] = None
    damagePhotos: List[str] = []


class CloseRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None
