"""
Response envelopes.

Covers:
- Every kernel error type maps to its status code
- Error details carry the remediation data for each type
- Wire conversion of DTOs, enums, dates, UUIDs and sets
- Production hides non-kernel and persistence messages
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from uuid import UUID

import pytest

from caisse_kernel.domain.lifecycle import DeclarationStatus
from caisse_kernel.exceptions import (
    AccessError,
    AuthenticationError,
    BusinessRuleError,
    EmptyUpdateError,
    IllegalTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from caisse_services.envelope import GENERIC_MESSAGE, failure, status_for, success, to_wire

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestStatusCodes:
    @pytest.mark.parametrize(
        "exc, status",
        [
            (ValidationError([{"field": "x", "message": "is required"}]), 400),
            (EmptyUpdateError("abc"), 400),
            (AuthenticationError(AuthenticationError.TOKEN_MISSING, "missing"), 401),
            (AccessError(AccessError.SCOPE_VIOLATION, "S1", "SUPERVISEUR", "no"), 403),
            (NotFoundError("Declaration", "abc"), 404),
            (IllegalTransitionError("SOUMIS", "VALIDE", frozenset({"EN_COURS"})), 409),
            (BusinessRuleError(BusinessRuleError.DATE_FUTURE, "future"), 422),
            (PersistenceError("create", "deadlock"), 500),
            (RuntimeError("boom"), 500),
        ],
    )
    def test_mapping(self, exc, status):
        assert status_for(exc) == status
        assert failure(exc, request_id="r", now=NOW).status_code == status


class TestFailureBody:
    def test_validation_details(self):
        details = [{"field": "ecart.montant_dt", "message": "is required"}]
        envelope = failure(ValidationError(details), request_id="r1", now=NOW)

        assert envelope.body["success"] is False
        assert envelope.error["code"] == "VALIDATION_ERROR"
        assert envelope.error["details"] == details
        assert envelope.meta == {"timestamp": "2024-01-01T12:00:00+00:00", "request_id": "r1"}

    def test_business_context(self):
        exc = BusinessRuleError(BusinessRuleError.AGENCE_INCONNUE, "unknown", agency_code="999")
        envelope = failure(exc, request_id=None, now=NOW)
        assert envelope.error["code"] == "AGENCE_INCONNUE"
        assert envelope.error["details"] == {"agency_code": "999"}

    def test_no_details_for_plain_errors(self):
        envelope = failure(NotFoundError("Declaration", "abc"), request_id=None, now=NOW)
        assert "details" not in envelope.error

    def test_persistence_in_production(self):
        exc = PersistenceError("create", "could not serialize access")
        dev = failure(exc, request_id=None, now=NOW)
        prod = failure(exc, request_id=None, now=NOW, production=True)

        assert "could not serialize" in dev.error["message"]
        assert prod.error["message"] == GENERIC_MESSAGE
        assert prod.error["code"] == "PERSISTENCE_ERROR"
        assert prod.error["details"] == {"retryable": True}

    def test_unexpected_error(self):
        dev = failure(KeyError("x"), request_id=None, now=NOW)
        prod = failure(KeyError("x"), request_id=None, now=NOW, production=True)
        assert dev.error["code"] == prod.error["code"] == "INTERNAL_ERROR"
        assert prod.error["message"] == GENERIC_MESSAGE


class TestWire:
    def test_nested_values(self):
        @dataclass(frozen=True)
        class Row:
            id: UUID
            status: DeclarationStatus
            day: date
            at: datetime
            tags: frozenset

        row = Row(
            id=UUID("12345678-1234-5678-1234-567812345678"),
            status=DeclarationStatus.EN_COURS,
            day=date(2023, 12, 31),
            at=datetime(2024, 1, 1, 13, 0, tzinfo=timezone(timedelta(hours=1))),
            tags=frozenset({"b", "a"}),
        )

        assert to_wire({"rows": (row,)}) == {
            "rows": [{
                "id": "12345678-1234-5678-1234-567812345678",
                "status": "EN_COURS",
                "day": "2023-12-31",
                "at": "2024-01-01T12:00:00+00:00",
                "tags": ["a", "b"],
            }]
        }

    def test_success_meta(self):
        envelope = success([1, 2], request_id="r", now=NOW, status_code=201, pagination={"total": 2})
        assert envelope.status_code == 201
        assert envelope.success
        assert envelope.data == [1, 2]
        assert envelope.meta["pagination"] == {"total": 2}
