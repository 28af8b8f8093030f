"""Domain errors raised by the rental, timesheet and RBAC services.

Every error carries the HTTP status and error code the API layer answers
with, so route handlers never translate them by hand.
"""

from __future__ import annotations

from typing import Any


class RentalCoreError(Exception):
    status_code = 400
    error_code = "RENTAL_CORE_ERROR"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.detail, "code": self.error_code}


class ValidationError(RentalCoreError):
    status_code = 400
    error_code = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["field"] = self.field
        return payload


class NegativeUsageError(ValidationError, ArithmeticError):
    def __init__(self, hm_km_start: Any, hm_km_end: Any):
        super().__init__(
            "hm_km_end",
            f"meter reading {hm_km_end} is below the start reading {hm_km_start}",
        )


class StateConflict(RentalCoreError):
    status_code = 409
    error_code = "STATE_CONFLICT"

    def __init__(self, current_state: Any, attempted_transition: str):
        current = getattr(current_state, "value", current_state)
        super().__init__(f"Cannot {attempted_transition} from state '{current}'")
        self.current_state = current
        self.attempted_transition = attempted_transition

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["currentState"] = self.current_state
        payload["attemptedTransition"] = self.attempted_transition
        return payload


class PermissionDenied(RentalCoreError):
    status_code = 403
    error_code = "PERMISSION_DENIED"

    def __init__(self, required: str):
        super().__init__(f"Missing required permission: {required}")
        self.required = required


class NotFound(RentalCoreError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class AssetConflict(RentalCoreError):
    status_code = 409
    error_code = "ASSET_CONFLICT"

    def __init__(self, asset_id: int, current: Any, expected: Any):
        current_value = getattr(current, "value", current)
        if isinstance(expected, (set, frozenset, list, tuple)):
            expected_value = ", ".join(sorted(getattr(item, "value", str(item)) for item in expected))
        else:
            expected_value = getattr(expected, "value", expected)
        super().__init__(f"Asset {asset_id} is '{current_value}', expected '{expected_value}'")
        self.asset_id = asset_id
        self.current = current_value
        self.expected = expected_value


class ConcurrencyConflict(RentalCoreError):
    status_code = 409
    error_code = "CONCURRENCY_CONFLICT"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} was modified concurrently; retry the request")
        self.entity = entity
        self.entity_id = entity_id
