import pytest

from directory.classifier import classify_group, decode_record
from directory.models import ObjectKind


def test_security_type_details_classifies_as_security_group():
    record = {"RecipientTypeDetails": "MailUniversalSecurityGroup", "GroupType": "Universal"}
    assert classify_group(record) is ObjectKind.MAIL_SECURITY_GROUP


def test_security_flag_alone_is_sufficient():
    record = {"RecipientTypeDetails": "MailUniversalDistributionGroup", "GroupType": "Universal, SecurityEnabled"}
    assert classify_group(record) is ObjectKind.MAIL_SECURITY_GROUP


def test_security_flag_as_list():
    record = {"RecipientTypeDetails": "MailUniversalDistributionGroup", "GroupType": ["Universal", "SecurityEnabled"]}
    assert classify_group(record) is ObjectKind.MAIL_SECURITY_GROUP


def test_plain_distribution_group():
    record = {"RecipientTypeDetails": "MailUniversalDistributionGroup", "GroupType": "Universal"}
    assert classify_group(record) is ObjectKind.DISTRIBUTION_GROUP


def test_missing_group_type_is_distribution_group():
    assert classify_group({"RecipientTypeDetails": "MailUniversalDistributionGroup"}) is ObjectKind.DISTRIBUTION_GROUP


@pytest.mark.parametrize(
    "type_details, kind",
    [
        ("SharedMailbox", ObjectKind.SHARED_MAILBOX),
        ("RoomMailbox", ObjectKind.ROOM_MAILBOX),
        ("EquipmentMailbox", ObjectKind.EQUIPMENT_MAILBOX),
        ("DynamicDistributionGroup", ObjectKind.DYNAMIC_DISTRIBUTION_GROUP),
    ],
)
def test_fixed_recipient_types(type_details, kind):
    ref = decode_record({"RecipientTypeDetails": type_details, "DisplayName": "X", "Guid": "g"})
    assert ref.kind is kind


def test_decode_record_prefers_guid_and_keeps_bucket_kind():
    record = {
        "DisplayName": "Sales Team",
        "PrimarySmtpAddress": "sales@contoso.com",
        "Identity": "sales",
        "Guid": "guid-sales",
        "RecipientTypeDetails": "SharedMailbox",
    }
    ref = decode_record(record, ObjectKind.SHARED_MAILBOX)
    assert ref.kind is ObjectKind.SHARED_MAILBOX
    assert ref.remote_identity == "guid-sales"
    assert ref.primary_email == "sales@contoso.com"
    assert ref.display_name == "Sales Team"


def test_decode_group_record_without_kind_hint_is_classified():
    record = {"DisplayName": "Admins", "Guid": "g1", "RecipientTypeDetails": "MailUniversalSecurityGroup"}
    assert decode_record(record).kind is ObjectKind.MAIL_SECURITY_GROUP
