"""
ORM immutability rules.

Covers:
- Audit events cannot be updated or deleted
- Declarations cannot be deleted, and submission fields never change
- Status writes outside the transition table are refused at flush
- Cause and measure tags are append-only
- Case-processing columns stay writable
"""

import pytest
from sqlalchemy import select

from caisse_kernel.db.engine import session_scope
from caisse_kernel.exceptions import ImmutabilityViolationError
from caisse_kernel.models.audit_event import AuditEvent
from caisse_kernel.models.declaration import Declaration


@pytest.fixture
def declaration_id(create_declaration):
    return create_declaration().id


def _load(sess, declaration_id) -> Declaration:
    return sess.execute(
        select(Declaration).where(Declaration.id == declaration_id)
    ).scalar_one()


class TestAuditEvents:
    def test_update_blocked(self, declaration_id):
        with pytest.raises(ImmutabilityViolationError):
            with session_scope("tamper") as sess:
                event = sess.execute(select(AuditEvent)).scalars().first()
                event.actor_id = "X9999"
                sess.flush()

    def test_delete_blocked(self, declaration_id):
        with pytest.raises(ImmutabilityViolationError):
            with session_scope("tamper") as sess:
                sess.delete(sess.execute(select(AuditEvent)).scalars().first())
                sess.flush()


class TestDeclarations:
    @pytest.mark.parametrize(
        "field, value",
        [
            ("amount_major", 1),
            ("level", 1),
            ("cashier_matricule", "M9999"),
            ("ref", "DC-FORGED"),
            ("submitted_by", "M9999"),
        ],
    )
    def test_submission_fields_frozen(self, declaration_id, field, value):
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            with session_scope("tamper") as sess:
                setattr(_load(sess, declaration_id), field, value)
                sess.flush()
        assert field in str(exc_info.value)

    def test_status_outside_table(self, declaration_id):
        with pytest.raises(ImmutabilityViolationError):
            with session_scope("tamper") as sess:
                _load(sess, declaration_id).status = "CLOTURE"
                sess.flush()

    def test_delete_blocked(self, declaration_id):
        with pytest.raises(ImmutabilityViolationError):
            with session_scope("tamper") as sess:
                sess.delete(_load(sess, declaration_id))
                sess.flush()

    def test_case_fields_writable(self, declaration_id):
        with session_scope("annotate") as sess:
            _load(sess, declaration_id).case_comment = "Verifie"

        with session_scope("read") as sess:
            assert _load(sess, declaration_id).case_comment == "Verifie"


class TestTags:
    def test_cause_update_blocked(self, declaration_id):
        with pytest.raises(ImmutabilityViolationError):
            with session_scope("tamper") as sess:
                _load(sess, declaration_id).causes[0].cause = "Faux billet"
                sess.flush()

    def test_measure_delete_blocked(self, declaration_id):
        with pytest.raises(ImmutabilityViolationError):
            with session_scope("tamper") as sess:
                sess.delete(_load(sess, declaration_id).measures[0])
                sess.flush()
