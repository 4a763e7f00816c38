"""
Submission parsing (``caisse_kernel.domain.submission``).

Turns the raw wire mappings into frozen value objects:

* ``parse_submission(raw) -> Submission`` for a new declaration;
* ``parse_transition_request(raw) -> TransitionRequest`` for a status change
  or case-processing annotation;
* ``parse_listing_query`` / ``parse_audit_query`` for query-string filters.

Every offending field is collected before raising, so a caller gets the
whole list in one ``ValidationError`` (``details=[{field, message}, ...]``).
Field paths use the wire names (``ecart.montant_dt``,
``circonstances.causes.0``).  Unknown keys are rejected.  Optional text
fields that arrive as ``""`` are stored as None.

Business rules that need the clock or reference data (future date, unknown
agency, agency mismatch) are not checked here; the lifecycle service runs
them after parsing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Mapping
from uuid import UUID

from caisse_kernel.domain.dtos import AuditFilters, ListingFilters
from caisse_kernel.domain.level import LEVEL_MAX, LEVEL_MIN
from caisse_kernel.domain.lifecycle import DeclarationStatus
from caisse_kernel.exceptions import ValidationError

AGENCY_CODE_RE = re.compile(r"^\d{3}$")
CLOCK_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

CASHIER_FUNCTIONS: tuple[str, ...] = (
    "Caissier Principal",
    "Caissier Adjoint",
    "Stagiaire Caissier",
    "Autre",
)

NATURES: tuple[str, ...] = ("MANQUANT", "EXCEDENT")

# Largest amount a JSON client can send exactly; the column is a BigInteger.
MAX_AMOUNT_DT = 2**53 - 1
# Integer column bound.
MAX_RECURRENCE_COUNT = 2**31 - 1

_MISSING = object()


# =========================================================================
# Value objects
# =========================================================================


@dataclass(frozen=True)
class AgencyPart:
    code: str
    region: str | None = None


@dataclass(frozen=True)
class CashierPart:
    matricule: str
    name: str
    function: str
    grade: str | None = None
    function_other: str | None = None


@dataclass(frozen=True)
class DiscrepancyPart:
    discrepancy_date: date
    discovered_time: str
    amount_major: int
    nature: str
    cash_register_type: str
    amount_minor: int = 0
    closing_time: str | None = None
    cash_register_other: str | None = None
    observed_at: datetime | None = None


@dataclass(frozen=True)
class Circumstances:
    cashier_statement: str
    supervisor_observation: str
    causes: tuple[str, ...]


@dataclass(frozen=True)
class Measures:
    actions: tuple[str, ...] = ()
    other: str | None = None


@dataclass(frozen=True)
class Recurrence:
    flag: bool
    count: int | None = None


@dataclass(frozen=True)
class Submission:
    """A syntactically valid declaration submission."""

    agency: AgencyPart
    cashier: CashierPart
    discrepancy: DiscrepancyPart
    level: int
    circumstances: Circumstances
    recurrence: Recurrence
    measures: Measures = Measures()
    client_ref: str | None = None


@dataclass(frozen=True)
class CaseProcessing:
    """Annotations written by the central control unit."""

    handled_by: str | None = None
    file_number: str | None = None
    comment: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.handled_by or self.file_number or self.comment)

    def as_columns(self) -> dict[str, str]:
        """Non-empty annotations keyed by declaration column."""
        columns = {
            "case_handled_by": self.handled_by,
            "case_file_number": self.file_number,
            "case_comment": self.comment,
        }
        return {k: v for k, v in columns.items() if v}

    def as_wire(self) -> dict[str, str | None]:
        return {
            "traite_par": self.handled_by,
            "n_dossier": self.file_number,
            "commentaire": self.comment,
        }


@dataclass(frozen=True)
class TransitionRequest:
    status: DeclarationStatus | None = None
    case_processing: CaseProcessing | None = None

    @property
    def is_empty(self) -> bool:
        return self.status is None and (
            self.case_processing is None or self.case_processing.is_empty
        )


# =========================================================================
# Field reader
# =========================================================================


class _FieldReader:
    """Reads typed fields out of nested mappings, collecting errors."""

    def __init__(self) -> None:
        self.errors: list[dict[str, str]] = []

    def fail(self, path: str, message: str) -> None:
        self.errors.append({"field": path, "message": message})

    def section(
        self,
        raw: Mapping[str, Any],
        key: str,
        allowed: frozenset[str],
        *,
        required: bool = True,
    ) -> Mapping[str, Any] | None:
        value = raw.get(key, _MISSING)
        if value is _MISSING or value is None:
            if required:
                self.fail(key, "is required")
            return None
        if not isinstance(value, Mapping):
            self.fail(key, "must be an object")
            return None
        self.reject_unknown(value, allowed, prefix=f"{key}.")
        return value

    def reject_unknown(
        self, raw: Mapping[str, Any], allowed: frozenset[str], prefix: str = ""
    ) -> None:
        for key in raw:
            if key not in allowed:
                self.fail(f"{prefix}{key}", "is not allowed")

    def text(
        self,
        raw: Mapping[str, Any],
        key: str,
        path: str,
        *,
        required: bool = False,
        min_len: int = 1,
        max_len: int | None = None,
        allow_empty: bool = False,
        pattern: re.Pattern | None = None,
        choices: tuple[str, ...] | None = None,
    ) -> str | None:
        value = raw.get(key, _MISSING)
        if value is _MISSING or value is None:
            if required:
                self.fail(path, "is required")
            return None
        if not isinstance(value, str):
            self.fail(path, "must be a string")
            return None
        if value == "":
            if allow_empty and not required:
                return None
            self.fail(path, "is not allowed to be empty")
            return None
        if choices is not None and value not in choices:
            self.fail(path, f"must be one of [{', '.join(choices)}]")
            return None
        if len(value) < min_len:
            self.fail(path, f"length must be at least {min_len} characters long")
            return None
        if max_len is not None and len(value) > max_len:
            self.fail(path, f"length must be less than or equal to {max_len} characters long")
            return None
        if pattern is not None and not pattern.match(value):
            self.fail(path, "fails to match the required pattern")
            return None
        return value

    def integer(
        self,
        raw: Mapping[str, Any],
        key: str,
        path: str,
        *,
        required: bool = False,
        minimum: int | None = None,
        maximum: int | None = None,
        default: int | None = None,
    ) -> int | None:
        value = raw.get(key, _MISSING)
        if value is _MISSING or value is None:
            if required:
                self.fail(path, "is required")
            return default
        number = _as_integer(value)
        if number is None:
            self.fail(path, "must be an integer")
            return None
        if minimum is not None and number < minimum:
            self.fail(path, f"must be greater than or equal to {minimum}")
            return None
        if maximum is not None and number > maximum:
            self.fail(path, f"must be less than or equal to {maximum}")
            return None
        return number

    def boolean(self, raw: Mapping[str, Any], key: str, path: str) -> bool | None:
        value = raw.get(key, _MISSING)
        if value is _MISSING or value is None:
            self.fail(path, "is required")
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        self.fail(path, "must be a boolean")
        return None

    def iso_date(
        self,
        raw: Mapping[str, Any],
        key: str,
        path: str,
        *,
        required: bool = True,
    ) -> date | None:
        value = raw.get(key, _MISSING)
        if value is _MISSING or value is None or (value == "" and not required):
            if required:
                self.fail(path, "is required")
            return None
        if not isinstance(value, str) or not value:
            self.fail(path, "must be a valid ISO 8601 date")
            return None
        try:
            return date.fromisoformat(value)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            self.fail(path, "must be a valid ISO 8601 date")
            return None

    def observation(
        self,
        raw: Mapping[str, Any],
        key: str,
        path: str,
    ) -> tuple[date | None, datetime | None]:
        """
        Calendar date of ``raw[key]``, plus its UTC instant when the value
        carries a time part.  A timestamp without an offset is read as UTC.
        """
        day = self.iso_date(raw, key, path)
        value = raw.get(key)
        if day is None or not isinstance(value, str):
            return day, None
        try:
            date.fromisoformat(value)
            return day, None
        except ValueError:
            pass
        instant = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return day, instant.astimezone(timezone.utc)

    def string_list(
        self,
        raw: Mapping[str, Any],
        key: str,
        path: str,
        *,
        required: bool = False,
        min_items: int = 0,
        max_len: int = 200,
    ) -> tuple[str, ...]:
        value = raw.get(key, _MISSING)
        if value is _MISSING or value is None:
            if required:
                self.fail(path, "is required")
            return ()
        if not isinstance(value, (list, tuple)):
            self.fail(path, "must be an array")
            return ()
        if len(value) < min_items:
            self.fail(path, f"must contain at least {min_items} items")
            return ()
        items: list[str] = []
        for index, item in enumerate(value):
            if not isinstance(item, str) or item == "":
                self.fail(f"{path}.{index}", "must be a non-empty string")
                continue
            if len(item) > max_len:
                self.fail(
                    f"{path}.{index}",
                    f"length must be less than or equal to {max_len} characters long",
                )
                continue
            items.append(item)
        return tuple(items)


def _as_integer(value: Any) -> int | None:
    """Integer value of ``value``, or None.  Booleans are not integers."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip() or "x"):
        return int(value.strip())
    return None


# =========================================================================
# Declaration submission
# =========================================================================

_TOP_KEYS = frozenset({
    "agence", "caissier", "ecart", "niveau", "circonstances",
    "mesures", "recidive", "ref_client",
})
_AGENCY_KEYS = frozenset({"code", "region"})
_CASHIER_KEYS = frozenset({"matricule", "nom", "grade", "fonction", "fonctionAutre"})
_DISCREPANCY_KEYS = frozenset({
    "date_constat", "heure_constat", "heure_arrete", "montant_dt",
    "montant_mm", "nature", "type_caisse", "caisseAutre",
})
_CIRCUMSTANCE_KEYS = frozenset({"declaration_caissier", "observations_sup", "causes"})
_MEASURE_KEYS = frozenset({"actions", "autres"})
_RECURRENCE_KEYS = frozenset({"oui", "nb_ecarts"})


def parse_submission(raw: Any) -> Submission:
    """
    Validate a raw submission mapping.

    Raises:
        ValidationError: With one detail entry per offending field.
    """
    reader = _FieldReader()
    if not isinstance(raw, Mapping):
        raise ValidationError([{"field": "body", "message": "must be an object"}])

    reader.reject_unknown(raw, _TOP_KEYS)

    agency = None
    section = reader.section(raw, "agence", _AGENCY_KEYS)
    if section is not None:
        code = reader.text(
            section, "code", "agence.code", required=True,
            min_len=3, max_len=3, pattern=AGENCY_CODE_RE,
        )
        region = reader.text(section, "region", "agence.region", max_len=60)
        if code is not None:
            agency = AgencyPart(code=code, region=region)

    cashier = None
    section = reader.section(raw, "caissier", _CASHIER_KEYS)
    if section is not None:
        matricule = reader.text(
            section, "matricule", "caissier.matricule", required=True, max_len=20
        )
        name = reader.text(
            section, "nom", "caissier.nom", required=True, min_len=2, max_len=100
        )
        grade = reader.text(
            section, "grade", "caissier.grade", max_len=40, allow_empty=True
        )
        function = reader.text(
            section, "fonction", "caissier.fonction", required=True,
            choices=CASHIER_FUNCTIONS,
        )
        function_other = reader.text(
            section, "fonctionAutre", "caissier.fonctionAutre",
            max_len=60, allow_empty=True,
        )
        if matricule and name and function:
            cashier = CashierPart(
                matricule=matricule,
                name=name,
                function=function,
                grade=grade,
                function_other=function_other,
            )

    discrepancy = None
    section = reader.section(raw, "ecart", _DISCREPANCY_KEYS)
    if section is not None:
        when, observed_at = reader.observation(
            section, "date_constat", "ecart.date_constat"
        )
        discovered = reader.text(
            section, "heure_constat", "ecart.heure_constat",
            required=True, pattern=CLOCK_TIME_RE,
        )
        closing = reader.text(
            section, "heure_arrete", "ecart.heure_arrete",
            pattern=CLOCK_TIME_RE, allow_empty=True,
        )
        amount_major = reader.integer(
            section, "montant_dt", "ecart.montant_dt",
            required=True, minimum=0, maximum=MAX_AMOUNT_DT,
        )
        amount_minor = reader.integer(
            section, "montant_mm", "ecart.montant_mm",
            minimum=0, maximum=999, default=0,
        )
        nature = reader.text(
            section, "nature", "ecart.nature", required=True, choices=NATURES
        )
        register_type = reader.text(
            section, "type_caisse", "ecart.type_caisse", required=True, max_len=50
        )
        register_other = reader.text(
            section, "caisseAutre", "ecart.caisseAutre", max_len=60, allow_empty=True
        )
        if (
            when is not None
            and discovered is not None
            and amount_major is not None
            and amount_minor is not None
            and nature is not None
            and register_type is not None
        ):
            discrepancy = DiscrepancyPart(
                discrepancy_date=when,
                discovered_time=discovered,
                amount_major=amount_major,
                amount_minor=amount_minor,
                nature=nature,
                cash_register_type=register_type,
                closing_time=closing,
                cash_register_other=register_other,
                observed_at=observed_at,
            )

    level = reader.integer(
        raw, "niveau", "niveau", required=True, minimum=LEVEL_MIN, maximum=LEVEL_MAX
    )

    circumstances = None
    section = reader.section(raw, "circonstances", _CIRCUMSTANCE_KEYS)
    if section is not None:
        statement = reader.text(
            section, "declaration_caissier", "circonstances.declaration_caissier",
            required=True, min_len=20, max_len=2000,
        )
        observation = reader.text(
            section, "observations_sup", "circonstances.observations_sup",
            required=True, min_len=10, max_len=2000,
        )
        causes = reader.string_list(
            section, "causes", "circonstances.causes", required=True, min_items=1
        )
        if statement and observation and causes:
            circumstances = Circumstances(
                cashier_statement=statement,
                supervisor_observation=observation,
                causes=causes,
            )

    measures = Measures()
    section = reader.section(raw, "mesures", _MEASURE_KEYS, required=False)
    if section is not None:
        measures = Measures(
            actions=reader.string_list(section, "actions", "mesures.actions"),
            other=reader.text(
                section, "autres", "mesures.autres", max_len=500, allow_empty=True
            ),
        )

    recurrence = None
    section = reader.section(raw, "recidive", _RECURRENCE_KEYS)
    if section is not None:
        flag = reader.boolean(section, "oui", "recidive.oui")
        count = None
        if flag:
            count = reader.integer(
                section, "nb_ecarts", "recidive.nb_ecarts",
                required=True, minimum=1, maximum=MAX_RECURRENCE_COUNT,
            )
        if flag is not None:
            recurrence = Recurrence(flag=flag, count=count)

    client_ref = reader.text(raw, "ref_client", "ref_client", max_len=60)

    if reader.errors:
        raise ValidationError(reader.errors)

    return Submission(
        agency=agency,
        cashier=cashier,
        discrepancy=discrepancy,
        level=level,
        circumstances=circumstances,
        recurrence=recurrence,
        measures=measures,
        client_ref=client_ref,
    )


# =========================================================================
# Transition request
# =========================================================================

_TRANSITION_KEYS = frozenset({"statut", "cp_central"})
_CASE_KEYS = frozenset({"traite_par", "n_dossier", "commentaire"})


def parse_transition_request(raw: Any) -> TransitionRequest:
    """
    Validate ``{statut?, cp_central?: {traite_par?, n_dossier?, commentaire?}}``.

    An empty request parses fine; the lifecycle service turns it into
    ``EmptyUpdateError``.

    Raises:
        ValidationError: Unknown status name, unknown key, or non-string value.
    """
    reader = _FieldReader()
    if raw is None:
        return TransitionRequest()
    if not isinstance(raw, Mapping):
        raise ValidationError([{"field": "body", "message": "must be an object"}])

    reader.reject_unknown(raw, _TRANSITION_KEYS)

    status = None
    status_name = reader.text(
        raw, "statut", "statut", allow_empty=True,
        choices=tuple(s.value for s in DeclarationStatus),
    )
    if status_name is not None:
        status = DeclarationStatus(status_name)

    case_processing = None
    section = reader.section(raw, "cp_central", _CASE_KEYS, required=False)
    if section is not None:
        case_processing = CaseProcessing(
            handled_by=reader.text(
                section, "traite_par", "cp_central.traite_par",
                max_len=100, allow_empty=True,
            ),
            file_number=reader.text(
                section, "n_dossier", "cp_central.n_dossier",
                max_len=60, allow_empty=True,
            ),
            comment=reader.text(
                section, "commentaire", "cp_central.commentaire",
                max_len=2000, allow_empty=True,
            ),
        )

    if reader.errors:
        raise ValidationError(reader.errors)

    return TransitionRequest(status=status, case_processing=case_processing)


# =========================================================================
# Listing and audit queries
# =========================================================================

_LISTING_KEYS = frozenset({
    "agence", "statut", "niveau", "date_debut", "date_fin", "sort", "page", "limit",
})
_AUDIT_KEYS = frozenset({
    "declaration_id", "matricule", "action", "date_debut", "date_fin", "page", "limit",
})


def parse_listing_query(raw: Mapping[str, Any] | None) -> ListingFilters:
    """
    Query-string filters for the declaration listing.

    Values may arrive as strings.  ``sort`` is passed through unchecked; the
    selector falls back to newest-first for unknown keys.
    """
    raw = raw or {}
    reader = _FieldReader()
    reader.reject_unknown(raw, _LISTING_KEYS)

    if isinstance(raw.get("statut"), str):
        raw = {**raw, "statut": raw["statut"].strip().upper()}
    status_name = reader.text(
        raw, "statut", "statut", allow_empty=True,
        choices=tuple(s.value for s in DeclarationStatus),
    )
    filters = ListingFilters(
        status=DeclarationStatus(status_name) if status_name else None,
        level=reader.integer(raw, "niveau", "niveau", minimum=LEVEL_MIN, maximum=LEVEL_MAX),
        date_from=reader.iso_date(raw, "date_debut", "date_debut", required=False),
        date_to=reader.iso_date(raw, "date_fin", "date_fin", required=False),
        agency=reader.text(
            raw, "agence", "agence", allow_empty=True, pattern=AGENCY_CODE_RE
        ),
        sort=reader.text(raw, "sort", "sort", allow_empty=True, max_len=30),
        page=reader.integer(raw, "page", "page", minimum=1, default=1),
        limit=reader.integer(raw, "limit", "limit"),
    )
    if reader.errors:
        raise ValidationError(reader.errors)
    return filters


def parse_audit_query(raw: Mapping[str, Any] | None) -> AuditFilters:
    """Query-string filters for the global audit journal; dates are inclusive days."""
    raw = raw or {}
    reader = _FieldReader()
    reader.reject_unknown(raw, _AUDIT_KEYS)

    declaration_id = None
    id_text = reader.text(raw, "declaration_id", "declaration_id", allow_empty=True)
    if id_text is not None:
        try:
            declaration_id = UUID(id_text)
        except ValueError:
            reader.fail("declaration_id", "must be a valid UUID")

    date_from = reader.iso_date(raw, "date_debut", "date_debut", required=False)
    date_to = reader.iso_date(raw, "date_fin", "date_fin", required=False)

    filters = AuditFilters(
        declaration_id=declaration_id,
        actor_id=reader.text(raw, "matricule", "matricule", allow_empty=True, max_len=20),
        action=reader.text(raw, "action", "action", allow_empty=True, max_len=40),
        date_from=(
            datetime.combine(date_from, time.min, tzinfo=timezone.utc)
            if date_from else None
        ),
        date_to=(
            datetime.combine(date_to, time.max, tzinfo=timezone.utc)
            if date_to else None
        ),
        page=reader.integer(raw, "page", "page", minimum=1, default=1),
        limit=reader.integer(raw, "limit", "limit"),
    )
    if reader.errors:
        raise ValidationError(reader.errors)
    return filters


def parse_flag(raw: Mapping[str, Any], key: str, default: bool = False) -> bool:
    """Boolean form field; ``"true"``/``"false"`` strings are accepted, absent means ``default``."""
    if raw.get(key) is None:
        return default
    reader = _FieldReader()
    value = reader.boolean(raw, key, key)
    if reader.errors:
        raise ValidationError(reader.errors)
    return value
