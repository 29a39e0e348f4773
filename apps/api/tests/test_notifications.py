"""Tests for notification routing, suppression, mutes and blocks."""

import pytest

from app.core.actors import EXTERNAL_SYSTEM, human_from_user
from app.core.config import settings
from app.core.exceptions import PermissionDenied
from app.db.enums import NotificationCategory, RecipientType, Role
from app.schemas.external import CaseUpsert, MessagePush
from app.services import case_service, document_service, message_service, notification_service
from app.services.notification_service import NotificationEvent, SuppressionReason


def _event(case, category=NotificationCategory.MESSAGE, **kwargs) -> NotificationEvent:
    return NotificationEvent(category=category, subject="Hello", lines=["Body"], case=case, **kwargs)


# =============================================================================
# Routing
# =============================================================================

def test_member_write_goes_to_case_handler(db, test_case, admin_user, member_user, user_factory, outbox):
    user_factory(organisation=test_case.organisation)  # another member sharing the case

    result = message_service.send_case_message(
        db, test_case.id, human_from_user(member_user), "Can we set up a plan?"
    )

    assert result.notifications_sent == 1
    assert outbox.recipients == [admin_user.email]
    assert outbox.sent[0].idempotency_key == f"message:{result.message.id}:{admin_user.email}"


def test_handler_match_ignores_case_and_spacing(db, test_case, admin_user, member_user, outbox):
    test_case.assigned_to = "  alice   HANDLER "
    db.commit()

    message_service.send_case_message(db, test_case.id, human_from_user(member_user), "Hi")

    assert outbox.recipients == [admin_user.email]


def test_member_write_without_handler_uses_default_address(db, test_case, member_user, outbox, monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_NOTIFICATION_EMAIL", "casework@example.com")
    test_case.assigned_to = "Nobody Known"
    db.commit()

    message_service.send_case_message(db, test_case.id, human_from_user(member_user), "Hi")

    assert outbox.recipients == ["casework@example.com"]


def test_member_write_without_handler_or_default_sends_nothing(db, test_case, member_user, outbox):
    test_case.assigned_to = None
    db.commit()

    result = message_service.send_case_message(db, test_case.id, human_from_user(member_user), "Hi")

    assert result.notifications_sent == 0
    assert outbox.sent == []


def test_admin_write_fans_out_to_members_only(db, test_case, admin_user, member_user, user_factory, outbox):
    second = user_factory(organisation=test_case.organisation)
    user_factory(role=Role.ADMIN, organisation=test_case.organisation)

    result = message_service.send_case_message(db, test_case.id, human_from_user(admin_user), "Update")

    assert sorted(outbox.recipients) == sorted([member_user.email, second.email])
    assert result.notifications_sent == 2


def test_originator_is_never_notified(db, test_case, member_user):
    decisions = notification_service.resolve_recipients(
        db,
        _event(test_case, target_type=RecipientType.USER, target_id=member_user.id),
        human_from_user(member_user),
    )
    assert decisions == []


def test_admin_direct_message_to_one_user(db, admin_user, member_user, user_factory, test_org, outbox):
    user_factory(organisation=test_org)

    message_service.send_admin_message(
        db, human_from_user(admin_user), RecipientType.USER, member_user.id, "Just you"
    )

    assert outbox.recipients == [member_user.email]


def test_admin_message_to_organisation(db, admin_user, member_user, user_factory, test_org, outbox):
    other = user_factory(organisation=test_org)

    result = message_service.send_admin_message(
        db, human_from_user(admin_user), RecipientType.ORGANISATION, test_org.id, "Everyone"
    )

    assert result.notifications_sent == 2
    assert set(outbox.recipients) == {member_user.email, other.email}


def test_member_cannot_send_admin_message(db, member_user, test_org):
    with pytest.raises(PermissionDenied):
        message_service.send_admin_message(
            db, human_from_user(member_user), RecipientType.ORGANISATION, test_org.id, "Hi"
        )


def test_external_message_notifies_members_unless_disabled(db, test_case, member_user, outbox):
    pushed = message_service.push_external_message(
        db, MessagePush(case_external_ref=test_case.external_ref, message="Statement attached")
    )
    assert pushed.notifications_sent == 1
    assert pushed.message.sender_id is None
    assert pushed.message.sender_name == "External System"

    quiet = message_service.push_external_message(
        db,
        MessagePush(case_external_ref=test_case.external_ref, message="FYI", send_notifications=False),
    )
    assert quiet.notifications_sent == 0
    assert len(outbox.sent) == 1


def test_case_status_change_notifies_members(db, test_case, member_user, outbox):
    case_service.upsert_case(
        db, CaseUpsert(external_ref=test_case.external_ref, status="closed"), EXTERNAL_SYSTEM
    )

    assert outbox.recipients == [member_user.email]
    assert "Status: closed" in outbox.sent[0].html


def test_case_update_without_notified_change_is_quiet(db, test_case, member_user, outbox):
    case_service.upsert_case(
        db, CaseUpsert(external_ref=test_case.external_ref, debtor_phone="0123"), EXTERNAL_SYSTEM
    )
    assert outbox.sent == []


def test_transport_failure_lowers_count(db, test_case, member_user, user_factory, outbox):
    other = user_factory(organisation=test_case.organisation)
    outbox.fail_for.add(member_user.email)

    pushed = message_service.push_external_message(
        db, MessagePush(case_external_ref=test_case.external_ref, message="Hi")
    )

    assert pushed.notifications_sent == 1
    assert outbox.recipients == [other.email]


# =============================================================================
# Suppression
# =============================================================================

def test_first_login_pending_suppresses(db, test_case, user_factory):
    pending = user_factory(organisation=test_case.organisation, must_change_password=True)
    decision = notification_service.evaluate(db, pending, NotificationCategory.MESSAGE, test_case.id)
    assert decision.suppressed_by == SuppressionReason.MUST_CHANGE_PASSWORD


@pytest.mark.parametrize(
    "category, setting",
    [
        (NotificationCategory.MESSAGE, "email_notifications"),
        (NotificationCategory.DOCUMENT_UPLOADED, "document_notifications"),
        (NotificationCategory.CASE_UPDATED, "case_update_notifications"),
    ],
)
def test_category_preference_suppresses(db, test_case, user_factory, category, setting):
    user = user_factory(organisation=test_case.organisation, **{setting: False})
    decision = notification_service.evaluate(db, user, category, test_case.id)
    assert decision.suppressed_by == SuppressionReason.CATEGORY_DISABLED


def test_muted_case_suppresses(db, test_case, member_user, outbox):
    assert notification_service.mute_case(db, member_user.id, test_case.id, human_from_user(member_user))
    assert not notification_service.mute_case(db, member_user.id, test_case.id, human_from_user(member_user))
    db.commit()

    outcome = notification_service.notify(db, _event(test_case), EXTERNAL_SYSTEM)

    assert outcome.sent == 0
    assert outcome.suppressed[0].suppressed_by == SuppressionReason.CASE_MUTED
    assert outbox.sent == []


def test_blocked_user_suppressed_and_denied(db, test_case, admin_user, member_user, outbox):
    notification_service.block_user(db, test_case.id, member_user.id, human_from_user(admin_user))
    db.commit()

    outcome = notification_service.notify(db, _event(test_case), EXTERNAL_SYSTEM)
    assert outcome.suppressed[0].suppressed_by == SuppressionReason.CASE_BLOCKED

    with pytest.raises(PermissionDenied):
        case_service.check_case_access(db, test_case, human_from_user(member_user))


def test_non_member_denied(db, test_case, user_factory):
    outsider = user_factory()
    with pytest.raises(PermissionDenied):
        message_service.send_case_message(db, test_case.id, human_from_user(outsider), "Hi")


def test_unmute_and_unblock(db, test_case, member_user, admin_user):
    notification_service.mute_case(db, member_user.id, test_case.id, human_from_user(member_user))
    notification_service.block_user(db, test_case.id, member_user.id, human_from_user(admin_user))
    db.commit()

    assert notification_service.unmute_case(db, member_user.id, test_case.id, human_from_user(member_user))
    assert notification_service.unblock_user(db, test_case.id, member_user.id, human_from_user(admin_user))
    assert not notification_service.unblock_user(db, test_case.id, member_user.id, human_from_user(admin_user))
    assert not notification_service.is_muted(db, member_user.id, test_case.id)


def test_settings_round_trip(db, member_user):
    updated = notification_service.update_user_settings(
        db, member_user.id, {"document_notifications": False, "unknown": True}, human_from_user(member_user)
    )
    assert updated["document_notifications"] is False
    assert "unknown" not in updated
    assert notification_service.get_user_settings(db, member_user.id) == updated


# =============================================================================
# Documents
# =============================================================================

def test_document_upload_by_member_notifies_handler(db, test_case, admin_user, member_user, outbox):
    document, sent = document_service.upload_document(
        db,
        test_case.id,
        human_from_user(member_user),
        file_name="statement.pdf",
        file_size=2048,
        file_path="cases/statement.pdf",
        file_type="application/pdf",
    )

    assert sent == 1
    assert document.organisation_id == test_case.organisation_id
    assert outbox.recipients == [admin_user.email]


def test_document_notification_respects_preference(db, test_case, admin_user, user_factory, outbox):
    user_factory(organisation=test_case.organisation, document_notifications=False)

    _, sent = document_service.upload_document(
        db,
        test_case.id,
        human_from_user(admin_user),
        file_name="letter.pdf",
        file_size=10,
        file_path="cases/letter.pdf",
    )

    assert sent == 0
    assert outbox.sent == []
