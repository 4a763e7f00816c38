"""
Declaration creation.

Covers:
- 1500 DT, no recurrence, submitted level 1 -> level 4, SOUMIS, one CREATION event
- Business rules run before any write (DATE_FUTURE, AGENCE_INCONNUE, AGENCE_MISMATCH)
- Recipients: region CP mailbox plus director mailbox, empty values removed
- Client-supplied references must be unique
- Causes and measures are stored in submission order
- A failed audit write rolls back the whole creation or transition
"""

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from caisse_kernel.db.engine import session_scope
from caisse_kernel.domain.lifecycle import DeclarationStatus
from caisse_kernel.exceptions import BusinessRuleError, PersistenceError, ValidationError
from caisse_kernel.models.audit_event import AuditAction, AuditEvent
from caisse_kernel.models.declaration import Declaration
from caisse_kernel.services.auditor_service import AuditorService
from caisse_kernel.services.lifecycle_service import generate_ref


def _counts() -> tuple[int, int]:
    with session_scope("count") as sess:
        declarations = sess.execute(select(func.count(Declaration.id))).scalar_one()
        events = sess.execute(select(func.count(AuditEvent.id))).scalar_one()
    return declarations, events


class TestReferenceScenario:
    def test_escalates_to_level_four(self, create_declaration):
        result = create_declaration(amount=1500)

        assert result.level == 4
        assert result.status is DeclarationStatus.SOUMIS
        assert result.declaration.is_critical

    def test_single_creation_event(self, create_declaration):
        result = create_declaration(amount=1500)

        with session_scope("read") as sess:
            events = sess.execute(
                select(AuditEvent).where(AuditEvent.declaration_id == result.id)
            ).scalars().all()
            assert len(events) == 1
            event = events[0]
            assert event.action == AuditAction.CREATION.value
            assert event.prior_status is None
            assert event.new_status == "SOUMIS"
            assert event.actor_id == "M1001"
            assert event.network_address == "10.0.0.5"
            assert event.detail == {"ref": result.ref, "niveau": 4}

    def test_ref_format(self, create_declaration, clock):
        result = create_declaration()
        assert result.ref == generate_ref(result.id, clock.now())
        assert result.ref.startswith("DC-20240101-")
        assert len(result.ref) == len("DC-20240101-") + 8

    def test_snapshot(self, create_declaration):
        result = create_declaration(
            mesures={"actions": ["Recomptage", "Rapport"], "autres": "Audit interne"},
        )
        record = result.declaration
        assert record.agency_code == "056"
        assert record.agency_name == "Agence Lac"
        assert record.submitted_by == "M1001"
        assert record.submitted_by_role == "CAISSIER"
        assert record.measures == ("Recomptage", "Rapport")
        assert record.other_measures == "Audit interne"
        assert record.amount_display == "1500,250 DT"

    def test_recipients(self, create_declaration):
        result = create_declaration()
        assert result.recipients == ("cp.tunisnord@banque.tn", "dir.056@banque.tn")

    def test_recipients_skip_missing_director(self, create_declaration, supervisor_057):
        result = create_declaration(agency="057", identity=supervisor_057)
        assert result.recipients == ("cp.tunisnord@banque.tn",)


class TestLevelResolution:
    def test_submitted_level_kept_when_higher(self, create_declaration):
        result = create_declaration(amount=10, niveau=3)
        assert result.level == 3

    def test_recurrence_gives_level_four(self, create_declaration):
        result = create_declaration(amount=5, recidive={"oui": True, "nb_ecarts": 2})
        assert result.level == 4
        assert result.declaration.recurrence_count == 2


class TestBusinessRules:
    def test_future_date(self, create_declaration, make_submission):
        raw = make_submission()
        raw["ecart"]["date_constat"] = "2024-01-02"
        with pytest.raises(BusinessRuleError) as exc_info:
            create_declaration(raw)
        assert exc_info.value.code == BusinessRuleError.DATE_FUTURE
        assert _counts() == (0, 0)

    def test_later_today_timestamp_is_future(self, create_declaration, make_submission):
        raw = make_submission()
        raw["ecart"]["date_constat"] = "2024-01-01T23:30:00Z"
        with pytest.raises(BusinessRuleError) as exc_info:
            create_declaration(raw)
        assert exc_info.value.code == BusinessRuleError.DATE_FUTURE
        assert _counts() == (0, 0)

    def test_earlier_today_timestamp_is_allowed(self, create_declaration, make_submission):
        raw = make_submission()
        raw["ecart"]["date_constat"] = "2024-01-01T11:59:00Z"
        result = create_declaration(raw)
        assert result.declaration.discrepancy_date.isoformat() == "2024-01-01"

    def test_today_is_allowed(self, create_declaration, make_submission):
        raw = make_submission()
        raw["ecart"]["date_constat"] = "2024-01-01"
        assert create_declaration(raw).status is DeclarationStatus.SOUMIS

    def test_unknown_agency(self, create_declaration, cp_user):
        with pytest.raises(BusinessRuleError) as exc_info:
            create_declaration(agency="999", identity=cp_user)
        assert exc_info.value.code == BusinessRuleError.AGENCE_INCONNUE

    def test_inactive_agency_is_unknown(self, create_declaration, cp_user):
        with pytest.raises(BusinessRuleError) as exc_info:
            create_declaration(agency="058", identity=cp_user)
        assert exc_info.value.code == BusinessRuleError.AGENCE_INCONNUE

    def test_cashier_agency_mismatch_leaves_no_row(self, create_declaration):
        with pytest.raises(BusinessRuleError) as exc_info:
            create_declaration(agency="057")
        assert exc_info.value.code == BusinessRuleError.AGENCE_MISMATCH
        assert _counts() == (0, 0)

    def test_supervisor_may_declare_for_another_agency(self, create_declaration, supervisor):
        result = create_declaration(agency="057", identity=supervisor)
        assert result.declaration.agency_code == "057"

    def test_validation_error_before_any_write(self, create_declaration, make_submission):
        raw = make_submission()
        raw["niveau"] = 0
        with pytest.raises(ValidationError):
            create_declaration(raw)
        assert _counts() == (0, 0)


class TestClientReference:
    def test_client_ref_used(self, create_declaration):
        result = create_declaration(ref_client="AG056-2023-0042")
        assert result.ref == "AG056-2023-0042"

    def test_duplicate_client_ref(self, create_declaration):
        create_declaration(ref_client="AG056-2023-0042")
        with pytest.raises(ValidationError) as exc_info:
            create_declaration(ref_client="AG056-2023-0042")
        assert exc_info.value.details[0]["field"] == "ref_client"
        assert _counts() == (1, 1)


class TestPersistence:
    def test_tags_in_order(self, create_declaration):
        causes = ["Omission de saisie", "Erreur de comptage", "Double saisie"]
        result = create_declaration(
            circonstances={
                "declaration_caissier": "Trois causes possibles relevees par le caissier.",
                "observations_sup": "Verification faite sur le journal.",
                "causes": causes,
            }
        )
        with session_scope("read") as sess:
            stored = sess.get(Declaration, result.id)
            assert [c.cause for c in stored.causes] == causes

    def test_creation_logged(self, create_declaration, captured_logs):
        result = create_declaration(amount=1500)
        record = next(r for r in captured_logs() if r["message"] == "declaration_created")
        assert record["ref"] == result.ref
        assert record["declaration_level"] == 4
        assert record["submitted_level"] == 1


def _failing_record(*args, **kwargs):
    raise OperationalError("INSERT INTO audit_events", {}, Exception("lock timeout"))


class TestRollback:
    def test_audit_failure_rolls_back_creation(self, create_declaration, monkeypatch):
        monkeypatch.setattr(AuditorService, "record", _failing_record)

        with pytest.raises(PersistenceError) as exc_info:
            create_declaration(amount=1500)

        assert exc_info.value.retryable is True
        assert exc_info.value.operation == "create_declaration"
        assert _counts() == (0, 0)

    def test_audit_failure_rolls_back_transition(
        self, create_declaration, transition, monkeypatch
    ):
        created = create_declaration()
        monkeypatch.setattr(AuditorService, "record", _failing_record)

        with pytest.raises(PersistenceError) as exc_info:
            transition(created.id, {"statut": "EN_COURS"})

        assert exc_info.value.retryable is True
        with session_scope("read") as sess:
            assert sess.get(Declaration, created.id).status == DeclarationStatus.SOUMIS.value
        assert _counts() == (1, 1)
