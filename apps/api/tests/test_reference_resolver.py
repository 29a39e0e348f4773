"""Tests for upsert-by-external-reference across organisations, users and cases."""

import threading
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from app.core.actors import EXTERNAL_SYSTEM
from app.core.config import settings
from app.core.exceptions import DependencyNotFound, DuplicateReference, MissingField
from app.core.security import verify_password
from app.db.base import Base
from app.db.enums import ResolveOutcome, Role
from app.db.models import Case, MutedCase, Organisation, User, UserOrganisation
from app.db.session import build_engine
from app.schemas.external import CaseUpsert, OrganisationUpsert, UserUpsert
from app.services import case_service, organisation_service, reference_service, user_service


# =============================================================================
# Organisations
# =============================================================================

def test_organisation_upsert_is_idempotent(db):
    payload = OrganisationUpsert(external_ref="ORG-1", name="Acme Ltd", contact_email="AP@Acme.com")

    first = organisation_service.upsert_organisation(db, payload, EXTERNAL_SYSTEM)
    second = organisation_service.upsert_organisation(db, payload, EXTERNAL_SYSTEM)

    assert first.outcome == ResolveOutcome.CREATED
    assert second.outcome == ResolveOutcome.UPDATED
    assert first.internal_id == second.internal_id
    assert db.execute(select(func.count(Organisation.id))).scalar_one() == 1
    assert second.entity.contact_email == "ap@acme.com"


def test_partial_update_leaves_absent_fields(db):
    organisation_service.upsert_organisation(
        db,
        OrganisationUpsert(external_ref="ORG-1", name="Acme Ltd", contact_phone="0123"),
        EXTERNAL_SYSTEM,
    )
    result = organisation_service.upsert_organisation(
        db,
        OrganisationUpsert.model_validate({"externalRef": "ORG-1", "address": "1 High St", "contactPhone": None}),
        EXTERNAL_SYSTEM,
    )

    org = result.entity
    assert org.name == "Acme Ltd"
    assert org.contact_phone == "0123"
    assert org.address == "1 High St"


def test_organisation_create_requires_name(db):
    with pytest.raises(MissingField) as exc_info:
        organisation_service.upsert_organisation(db, OrganisationUpsert(external_ref="ORG-X"), EXTERNAL_SYSTEM)
    assert exc_info.value.field == "name"


def test_insert_race_falls_back_to_update(db, monkeypatch):
    """A concurrent insert that wins between lookup and insert turns ours into an update."""
    winner = Organisation(name="Winner", external_ref="ORG-RACE")
    original_find = reference_service.find_by_external_ref
    calls = {"n": 0}

    def racing_find(session, model, external_ref):
        calls["n"] += 1
        if calls["n"] == 1:
            # Simulate the other writer committing right after our lookup
            session.add(winner)
            session.commit()
            return None
        return original_find(session, model, external_ref)

    monkeypatch.setattr(reference_service, "find_by_external_ref", racing_find)

    result = organisation_service.upsert_organisation(
        db, OrganisationUpsert(external_ref="ORG-RACE", name="Loser"), EXTERNAL_SYSTEM
    )

    assert result.outcome == ResolveOutcome.UPDATED
    assert result.internal_id == winner.id
    assert db.execute(select(func.count(Organisation.id))).scalar_one() == 1
    assert result.entity.name == "Loser"


def test_concurrent_upserts_create_one_row(tmp_path):
    """Threads pushing the same reference at once converge on one entity."""
    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    outcomes: list[ResolveOutcome] = []
    errors: list[Exception] = []
    barrier = threading.Barrier(6)

    def worker(index: int) -> None:
        session = factory()
        try:
            barrier.wait()
            result = organisation_service.upsert_organisation(
                session,
                OrganisationUpsert(external_ref="ORG-THREAD", name=f"Name {index}"),
                EXTERNAL_SYSTEM,
            )
            outcomes.append(result.outcome)
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    with factory() as session:
        count = session.execute(select(func.count(Organisation.id))).scalar_one()
    engine.dispose()

    assert errors == []
    assert count == 1
    assert outcomes.count(ResolveOutcome.CREATED) == 1
    assert outcomes.count(ResolveOutcome.UPDATED) == 5


# =============================================================================
# Users
# =============================================================================

def test_user_create_issues_one_time_password(db, test_org):
    result = user_service.upsert_user(
        db,
        UserUpsert(
            external_ref="USR-1",
            email="New.User@Example.com",
            first_name="New",
            last_name="User",
            organisation_external_ref=test_org.external_ref,
        ),
        EXTERNAL_SYSTEM,
    )

    user = result.user
    assert result.resolution.created
    assert result.temp_password
    assert user.email == "new.user@example.com"
    assert user.must_change_password is True
    assert user.hashed_password != result.temp_password
    assert verify_password(result.temp_password, user.hashed_password)

    membership = db.execute(
        select(UserOrganisation).where(UserOrganisation.user_id == user.id)
    ).scalar_one()
    assert membership.organisation_id == test_org.id
    assert membership.role == Role.MEMBER.value


def test_user_update_returns_no_password(db):
    user_service.upsert_user(db, UserUpsert(external_ref="USR-1", email="a@example.com"), EXTERNAL_SYSTEM)
    result = user_service.upsert_user(
        db, UserUpsert(external_ref="USR-1", phone="07700900000"), EXTERNAL_SYSTEM
    )

    assert not result.resolution.created
    assert result.temp_password is None
    assert result.user.phone == "07700900000"
    assert result.user.email == "a@example.com"


def test_user_email_collision(db):
    user_service.upsert_user(db, UserUpsert(external_ref="USR-1", email="a@example.com"), EXTERNAL_SYSTEM)
    with pytest.raises(DuplicateReference) as exc_info:
        user_service.upsert_user(db, UserUpsert(external_ref="USR-2", email="A@example.com"), EXTERNAL_SYSTEM)
    assert exc_info.value.field == "email"


def test_user_with_unknown_organisation(db):
    with pytest.raises(DependencyNotFound):
        user_service.upsert_user(
            db,
            UserUpsert(external_ref="USR-1", email="a@example.com", organisation_external_ref="NOPE"),
            EXTERNAL_SYSTEM,
        )
    assert db.execute(select(func.count(User.id))).scalar_one() == 0


def test_super_admin_not_demoted(db, super_admin):
    super_admin.external_ref = "USR-ROOT"
    db.commit()

    result = user_service.upsert_user(db, UserUpsert(external_ref="USR-ROOT", is_admin=False), EXTERNAL_SYSTEM)

    assert result.user.role == Role.SUPER_ADMIN.value


# =============================================================================
# Cases
# =============================================================================

def _case_payload(org, **overrides) -> CaseUpsert:
    data = {
        "externalRef": "CASE-1",
        "organisationExternalRef": org.external_ref,
        "accountNumber": "ACC-100",
        "caseName": "Debtor Ltd",
        "originalAmount": "1,500.00",
        "costsAdded": "25.50",
    }
    data.update(overrides)
    return CaseUpsert.model_validate(data)


def test_case_create_computes_outstanding(db, test_org):
    result = case_service.upsert_case(db, _case_payload(test_org), EXTERNAL_SYSTEM)

    case = result.entity
    assert result.created
    assert case.original_amount == Decimal("1500.00")
    assert case.costs_added == Decimal("25.50")
    assert case.outstanding_amount == Decimal("1525.50")
    assert case.status == "active"


def test_case_requires_existing_organisation(db):
    with pytest.raises(DependencyNotFound) as exc_info:
        case_service.upsert_case(
            db,
            CaseUpsert(external_ref="CASE-1", organisation_external_ref="MISSING", account_number="A", case_name="B", original_amount="1"),
            EXTERNAL_SYSTEM,
        )
    assert exc_info.value.field == "organisationExternalRef"
    assert db.execute(select(func.count(Case.id))).scalar_one() == 0


def test_case_create_requires_original_amount(db, test_org):
    with pytest.raises(MissingField) as exc_info:
        case_service.upsert_case(
            db,
            CaseUpsert(external_ref="CASE-1", organisation_external_ref=test_org.external_ref, account_number="A", case_name="B"),
            EXTERNAL_SYSTEM,
        )
    assert exc_info.value.field == "originalAmount"


def test_account_number_collision_without_fallback(db, test_org):
    case_service.upsert_case(db, _case_payload(test_org), EXTERNAL_SYSTEM)

    with pytest.raises(DuplicateReference) as exc_info:
        case_service.upsert_case(db, _case_payload(test_org, externalRef="CASE-2"), EXTERNAL_SYSTEM)
    assert exc_info.value.field == "accountNumber"


def test_account_number_fallback_adopts_unlinked_case(db, test_org, monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_ACCOUNT_NUMBER_FALLBACK", True)
    legacy = Case(
        organisation_id=test_org.id,
        account_number="ACC-100",
        case_name="Legacy",
        original_amount=Decimal("1500.00"),
    )
    db.add(legacy)
    db.commit()

    result = case_service.upsert_case(db, _case_payload(test_org), EXTERNAL_SYSTEM)

    assert result.outcome == ResolveOutcome.UPDATED
    assert result.internal_id == legacy.id
    assert result.entity.external_ref == "CASE-1"
    assert db.execute(select(func.count(Case.id))).scalar_one() == 1


def test_account_number_fallback_refuses_linked_case(db, test_org, monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_ACCOUNT_NUMBER_FALLBACK", True)
    case_service.upsert_case(db, _case_payload(test_org), EXTERNAL_SYSTEM)

    with pytest.raises(DuplicateReference):
        case_service.upsert_case(db, _case_payload(test_org, externalRef="CASE-2"), EXTERNAL_SYSTEM)


def test_new_case_auto_muted_for_opted_in_members(db, test_org, user_factory):
    quiet = user_factory(organisation=test_org, auto_mute_new_cases=True)
    loud = user_factory(organisation=test_org)

    case = case_service.upsert_case(db, _case_payload(test_org), EXTERNAL_SYSTEM).entity

    muted = set(db.execute(select(MutedCase.user_id).where(MutedCase.case_id == case.id)).scalars())
    assert muted == {quiet.id}
    assert loud.id not in muted


def test_case_update_recomputes_on_amount_change(db, test_org):
    case_service.upsert_case(db, _case_payload(test_org), EXTERNAL_SYSTEM)
    result = case_service.upsert_case(
        db, CaseUpsert(external_ref="CASE-1", interest_added="10.00"), EXTERNAL_SYSTEM
    )
    assert result.entity.outstanding_amount == Decimal("1535.50")
