"""
DeclarationGateway: envelopes, role checks, and post-commit publication.

Covers:
- Creation returns 201 with {id, ref, statut, niveau, created_at}
- Role checks run before any store access
- Kernel errors map to their status code and never escape
- Side effects are published only after commit, and never for failures
- Unexpected errors become INTERNAL_ERROR with a generic production message
- Reference-data writes are ADMIN-only and refresh the agency list
"""

import dataclasses
import threading
from uuid import uuid4

import pytest

from caisse_kernel.domain.events import DeclarationCreated, RecurrenceAlert, SeverityFourAlert
from caisse_services.gateway import DeclarationGateway, wire_side_effects


class Outbox:
    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, notification):
        with self._lock:
            self.sent.append(notification)


class FileRenderer:
    def render(self, declaration, path):
        path.write_bytes(b"%PDF-1.4\n")


class RecordingDispatcher:
    """Stands in for the dispatcher; keeps published events in order."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return 1


@pytest.fixture
def published(gateway):
    dispatcher = RecordingDispatcher()
    gateway.attach_dispatcher(dispatcher)
    return dispatcher.events


class TestCreate:
    def test_created(self, gateway, cashier, make_submission, published):
        envelope = gateway.create(cashier, make_submission(amount=150), "10.0.0.5", request_id="req-1")

        assert envelope.status_code == 201
        assert envelope.success
        data = envelope.data
        assert set(data) == {"id", "ref", "statut", "niveau", "created_at"}
        assert data["statut"] == "SOUMIS"
        assert data["niveau"] == 2
        assert data["ref"].startswith("DC-20240101-")
        assert data["created_at"] == "2024-01-01T12:00:00+00:00"
        assert envelope.meta["request_id"] == "req-1"

        (event,) = published
        assert isinstance(event, DeclarationCreated)
        assert event.correlation_id == "req-1"
        assert event.recipients == ("cp.tunisnord@banque.tn", "dir.056@banque.tn")

    def test_level_four_with_recurrence_publishes_alerts(self, gateway, cashier, make_submission, published):
        raw = make_submission(amount=1500, recidive={"oui": True, "nb_ecarts": 2})
        assert gateway.create(cashier, raw).status_code == 201
        assert [type(e) for e in published] == [DeclarationCreated, SeverityFourAlert, RecurrenceAlert]

    def test_generated_request_id(self, gateway, cashier, make_submission):
        envelope = gateway.create(cashier, make_submission())
        assert envelope.meta["request_id"]

    def test_validation_failure(self, gateway, cashier, make_submission, published):
        raw = make_submission()
        del raw["ecart"]
        envelope = gateway.create(cashier, raw)

        assert envelope.status_code == 400
        assert envelope.error["code"] == "VALIDATION_ERROR"
        assert any(d["field"].startswith("ecart") for d in envelope.error["details"])
        assert published == []

    def test_amount_too_large_is_a_validation_error(self, gateway, cashier, make_submission, published):
        envelope = gateway.create(cashier, make_submission(amount=10**20))

        assert envelope.status_code == 400
        assert envelope.error["details"] == [
            {"field": "ecart.montant_dt", "message": "must be less than or equal to 9007199254740991"}
        ]
        assert published == []

    def test_business_rule_failure(self, gateway, cashier, make_submission, published):
        envelope = gateway.create(cashier, make_submission(agency="057"))
        assert envelope.status_code == 422
        assert envelope.error["code"] == "AGENCE_MISMATCH"
        assert published == []

    def test_director_may_create(self, gateway, director, make_submission):
        assert gateway.create(director, make_submission()).status_code == 201

    def test_unknown_role(self, gateway, make_submission, cashier):
        stranger = dataclasses.replace(cashier, role="VISITEUR")
        envelope = gateway.create(stranger, make_submission())
        assert envelope.status_code == 403
        assert envelope.error["code"] == "ROLE_INSUFFICIENT"


class TestReadAndTransition:
    def test_cashier_cannot_list(self, gateway, cashier):
        envelope = gateway.list(cashier)
        assert envelope.status_code == 403

    def test_list_with_pagination(self, gateway, cashier, supervisor, make_submission):
        for amount in (10, 150, 500):
            gateway.create(cashier, make_submission(amount=amount))

        envelope = gateway.list(supervisor, {"sort": "montant", "limit": "2"})

        assert envelope.status_code == 200
        assert [item["amount_major"] for item in envelope.data] == [10, 150]
        assert envelope.meta["pagination"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}

    def test_list_rejects_unknown_filter(self, gateway, supervisor):
        envelope = gateway.list(supervisor, {"montant_min": "10"})
        assert envelope.status_code == 400

    def test_get(self, gateway, cashier, other_cashier, make_submission):
        declaration_id = gateway.create(cashier, make_submission()).data["id"]

        own = gateway.get(cashier, declaration_id)
        assert own.status_code == 200
        assert own.data["id"] == declaration_id
        assert own.data["causes"] == ["Erreur de comptage"]

        assert gateway.get(other_cashier, declaration_id).status_code == 403
        assert gateway.get(cashier, str(uuid4())).status_code == 404
        assert gateway.get(cashier, "not-a-uuid").status_code == 400

    def test_transition(self, gateway, cashier, cp_user, make_submission):
        declaration_id = gateway.create(cashier, make_submission()).data["id"]

        envelope = gateway.transition(cp_user, declaration_id, {"statut": "EN_COURS"})
        assert envelope.status_code == 200
        assert envelope.data == {
            "id": declaration_id,
            "ancien_statut": "SOUMIS",
            "statut": "EN_COURS",
            "action": "CHANGEMENT_STATUT",
        }

    def test_illegal_transition_details(self, gateway, cashier, cp_user, make_submission):
        declaration_id = gateway.create(cashier, make_submission()).data["id"]

        envelope = gateway.transition(cp_user, declaration_id, {"statut": "CLOTURE"})

        assert envelope.status_code == 409
        assert envelope.error["code"] == "STATUT_INCOMPATIBLE"
        assert envelope.error["details"] == {
            "current": "SOUMIS",
            "attempted": "CLOTURE",
            "allowed": ["EN_COURS", "REJETE"],
        }

    def test_empty_transition(self, gateway, cashier, cp_user, make_submission):
        declaration_id = gateway.create(cashier, make_submission()).data["id"]
        envelope = gateway.transition(cp_user, declaration_id, {})
        assert envelope.status_code == 400
        assert envelope.error["code"] == "EMPTY_UPDATE"

    def test_cashier_cannot_transition(self, gateway, cashier, make_submission):
        declaration_id = gateway.create(cashier, make_submission()).data["id"]
        envelope = gateway.transition(cashier, declaration_id, {"statut": "EN_COURS"})
        assert envelope.error["code"] == "ROLE_INSUFFICIENT"


class TestAudit:
    def test_declaration_history(self, gateway, cashier, cp_user, make_submission):
        declaration_id = gateway.create(cashier, make_submission()).data["id"]
        gateway.transition(cp_user, declaration_id, {"statut": "EN_COURS"})

        envelope = gateway.audit_for_declaration(cashier, declaration_id)
        assert envelope.status_code == 200
        assert [entry["action"] for entry in envelope.data] == ["CREATION", "CHANGEMENT_STATUT"]

    def test_global_search_requires_cp(self, gateway, supervisor, cp_user, cashier, make_submission):
        gateway.create(cashier, make_submission())

        assert gateway.search_audit(supervisor).status_code == 403
        envelope = gateway.search_audit(cp_user, {"action": "CREATION"})
        assert envelope.status_code == 200
        assert envelope.meta["pagination"]["total"] == 1

    def test_verify_chain(self, gateway, cashier, admin, make_submission):
        gateway.create(cashier, make_submission())
        envelope = gateway.verify_audit_chain(admin)
        assert envelope.data == {"valid": True}


class TestReferenceData:
    def test_open_reads(self, gateway, cashier):
        agencies = gateway.list_agencies(cashier)
        assert [a["code"] for a in agencies.data] == ["056", "057"]
        assert "Erreur de comptage" in gateway.causes(cashier).data
        assert "Caisse Devises" in gateway.cash_register_types(cashier).data

    def test_admin_only_writes(self, gateway, cp_user):
        envelope = gateway.upsert_region(cp_user, {"nom": "Sfax"})
        assert envelope.status_code == 403

    def test_upsert_refreshes_agencies(self, gateway, admin, cashier):
        gateway.list_agencies(cashier)
        region = gateway.upsert_region(admin, {"nom": "Sfax", "email_cp": "cp.sfax@banque.tn"})
        assert region.data == {"nom": "Sfax", "email_cp": "cp.sfax@banque.tn"}

        agency = gateway.upsert_agency(
            admin, {"code": "101", "nom": "Agence Sfax Centre", "region": "Sfax"}
        )
        assert agency.status_code == 200
        assert agency.data["region_name"] == "Sfax"

        codes = [a["code"] for a in gateway.list_agencies(cashier).data]
        assert codes == ["056", "057", "101"]

    def test_upsert_agency_inactive_from_string(self, gateway, admin, cashier):
        envelope = gateway.upsert_agency(
            admin,
            {"code": "057", "nom": "Agence Marsa", "region": "Tunis Nord", "actif": "false"},
        )
        assert envelope.status_code == 200

        codes = [a["code"] for a in gateway.list_agencies(cashier).data]
        assert codes == ["056"]

    def test_upsert_agency_malformed_flag(self, gateway, admin):
        envelope = gateway.upsert_agency(
            admin, {"code": "057", "nom": "Agence Marsa", "region": "Tunis Nord", "actif": "peut-etre"}
        )
        assert envelope.status_code == 400
        assert envelope.error["details"][0]["field"] == "actif"

    def test_upsert_agency_unknown_region(self, gateway, admin):
        envelope = gateway.upsert_agency(admin, {"code": "101", "nom": "X", "region": "Nowhere"})
        assert envelope.status_code == 404


class TestFailureHandling:
    def test_unexpected_error_is_internal(self, gateway, cashier, make_submission, monkeypatch, captured_logs):
        def explode(session):
            raise RuntimeError("connection pool exhausted")

        monkeypatch.setattr(gateway, "_services", explode)
        envelope = gateway.create(cashier, make_submission())

        assert envelope.status_code == 500
        assert envelope.error["code"] == "INTERNAL_ERROR"
        assert "connection pool exhausted" in envelope.error["message"]
        assert any(r["message"] == "request_failed" for r in captured_logs())

    def test_production_hides_message(self, engine, seeded_agencies, settings, clock, cashier, make_submission, monkeypatch):
        gateway = DeclarationGateway(dataclasses.replace(settings, production=True), clock=clock)

        def explode(session):
            raise RuntimeError("secret dsn")

        monkeypatch.setattr(gateway, "_services", explode)
        envelope = gateway.create(cashier, make_submission())
        assert envelope.error["message"] == "Internal server error."

    def test_publish_failure_does_not_fail_creation(self, gateway, cashier, make_submission):
        class BrokenDispatcher:
            def publish(self, event):
                raise RuntimeError("queue gone")

        gateway.attach_dispatcher(BrokenDispatcher())
        assert gateway.create(cashier, make_submission()).status_code == 201

    def test_request_context_logged(self, gateway, cashier, make_submission, captured_logs):
        gateway.create(cashier, make_submission(), request_id="req-77")
        created = [r for r in captured_logs() if r["message"] == "declaration_created"]
        assert created[0]["correlation_id"] == "req-77"
        assert created[0]["actor_id"] == "M1001"


class TestWiredSideEffects:
    def test_notices_and_archive(self, gateway, settings, cashier, make_submission, tmp_path):
        settings = dataclasses.replace(
            settings,
            documents=dataclasses.replace(settings.documents, archive_path=str(tmp_path / "archive")),
        )
        outbox = Outbox()
        dispatcher = wire_side_effects(gateway, settings, outbox, FileRenderer())
        dispatcher.start()
        try:
            raw = make_submission(amount=1500)
            declaration_id = gateway.create(cashier, raw).data["id"]
            assert dispatcher.drain(timeout=10)
        finally:
            dispatcher.stop(timeout=5)

        assert dispatcher.failures == ()
        kinds = sorted(n.kind for n in outbox.sent)
        assert kinds == ["declaration_created", "severity_four_alert"]

        record = gateway.get(cashier, declaration_id).data
        assert record["document_path"].endswith(f"{record['ref']}.pdf")
        history = gateway.audit_for_declaration(cashier, declaration_id).data
        assert history[-1]["action"] == "ARCHIVAGE_DOCUMENT"
        assert history[-1]["actor_id"] == "SYSTEM"
