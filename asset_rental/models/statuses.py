"""Closed status vocabularies shared by the models, schemas and services."""

from __future__ import annotations

import enum

from sqlalchemy import Enum


class RentalStatus(str, enum.Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISPATCHED = "dispatched"
    RETURNED = "returned"
    CLOSED = "closed"


class AssetStatus(str, enum.Enum):
    IN_INVENTORY = "in_inventory"
    DEPLOYED = "deployed"
    RENTED_OUT = "rented_out"
    UNDER_MAINTENANCE = "under_maintenance"


class ConditionRating(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class HandoverType(str, enum.Enum):
    DISPATCH = "dispatch"
    RETURN = "return"


class TimesheetStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    APPROVED = "approved"
    DISPUTED = "disputed"
    REVISED = "revised"


class VerifierStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DISPUTED = "disputed"


class OperationStatus(str, enum.Enum):
    OPERATING = "operating"
    STANDBY = "standby"
    BREAKDOWN = "breakdown"
    OFF = "off"
    MAINTENANCE = "maintenance"


class RateType(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def status_column_type(enum_cls: type[enum.Enum], length: int = 30) -> Enum:
    # Stored as the lowercase value, not the member name.
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )
