"""
Test uploads, listing, visibility changes and deletion.
"""

import os

import pytest

from secureshare.errors import (
    AuthenticationRequired,
    NotFound,
    PermissionDenied,
    QuotaExceeded,
    TooLarge,
    TypeNotAllowed,
    ValidationError,
)
from secureshare.models import LogCategory, Visibility
from secureshare.storage import SCOPE_ALL, file_extension, sanitize_filename

from conftest import ledger

MB = 1024 * 1024


def stored_files(core):
    return sorted(os.listdir(core.store.upload_root))


def test_upload_stores_bytes_and_metadata(core, alice):
    """Test a successful upload writes the file and one ledger entry."""
    user, token = alice
    record = core.upload_file(token, b"hello", "notes.txt", "text/plain", "private", "10.0.0.1")

    assert record.owner_id == user.id
    assert record.size == 5
    assert record.mime_type == "text/plain"
    assert record.visibility == Visibility.PRIVATE
    assert (core.store.upload_root / record.storage_path).read_bytes() == b"hello"

    entries = ledger(core, category=LogCategory.FILE, user_id=user.id)
    assert [e.action for e in entries] == ["upload"]
    assert entries[0].resource_id == record.id
    assert entries[0].ip_address == "10.0.0.1"


def test_storage_name_is_sanitized_and_unique(core, alice):
    """Test storage names never reuse the raw display name."""
    _, token = alice
    first = core.upload_file(token, b"a", "my report (final).pdf")
    second = core.upload_file(token, b"b", "my report (final).pdf")

    assert first.name == "my report (final).pdf"
    assert first.storage_path.endswith("-my_report__final_.pdf")
    assert first.storage_path != second.storage_path
    timestamp, random_part, _ = first.storage_path.split("-", 2)
    assert timestamp.isdigit()
    assert len(random_part) == 16


def test_too_large_leaves_no_trace(core, alice):
    """Test an oversized upload stores nothing and writes no metadata."""
    _, token = alice
    core.settings.update({"fileSizeLimitMB": 1})

    with pytest.raises(TooLarge):
        core.upload_file(token, b"x" * (MB + 1), "big.txt")

    assert stored_files(core) == []
    assert core.list_files(token) == []


def test_size_exactly_at_limit_is_accepted(core, alice):
    """Test the limit is inclusive."""
    _, token = alice
    core.settings.update({"fileSizeLimitMB": 1})

    assert core.upload_file(token, b"x" * MB, "edge.txt").size == MB


def test_type_not_allowed(core, alice):
    """Test extensions outside the allow-list are refused."""
    _, token = alice

    with pytest.raises(TypeNotAllowed):
        core.upload_file(token, b"MZ", "setup.exe")
    assert stored_files(core) == []


def test_extension_check_is_case_insensitive(core, alice):
    """Test upper-case extensions match lower-case entries."""
    _, token = alice
    assert core.upload_file(token, b"%PDF", "SCAN.PDF").name == "SCAN.PDF"


def test_empty_allow_list_admits_everything(core, alice):
    """Test an empty allow-list disables the type check."""
    _, token = alice
    core.settings.update({"allowedFileTypes": ""})

    assert core.upload_file(token, b"MZ", "setup.exe").name == "setup.exe"


def test_quota_is_enforced_per_owner(core, alice, bob):
    """Test uploads beyond the owner's quota are refused."""
    _, alice_token = alice
    _, bob_token = bob
    core.settings.update({"storageQuotaMB": 10, "allowedFileTypes": "bin"})

    for i in range(10):
        core.upload_file(alice_token, b"x" * MB, f"chunk{i}.bin")

    with pytest.raises(QuotaExceeded) as excinfo:
        core.upload_file(alice_token, b"x", "one-more.bin")
    assert isinstance(excinfo.value, TooLarge)

    assert core.upload_file(bob_token, b"x" * MB, "bob.bin").size == MB


@pytest.mark.parametrize("name", ["", "   ", "..", "."])
def test_empty_name_is_rejected(core, alice, name):
    """Test uploads need a usable name."""
    _, token = alice
    with pytest.raises(ValidationError):
        core.upload_file(token, b"data", name)


def test_unknown_visibility_is_rejected(core, alice):
    """Test visibility must be private or public."""
    _, token = alice
    with pytest.raises(ValidationError):
        core.upload_file(token, b"data", "a.txt", visibility="friends")


def test_anonymous_upload_is_refused(core):
    """Test an unknown token cannot upload."""
    with pytest.raises(AuthenticationRequired):
        core.upload_file("0" * 64, b"data", "a.txt")
    assert stored_files(core) == []


def test_list_is_own_plus_public(core, alice, bob, admin_token):
    """Test the listing is the union of own files and others' public files."""
    _, alice_token = alice
    _, bob_token = bob
    own_private = core.upload_file(alice_token, b"1", "mine.txt", visibility="private")
    bob_public = core.upload_file(bob_token, b"2", "shared.txt", visibility="public")
    bob_private = core.upload_file(bob_token, b"3", "secret.txt", visibility="private")

    alice_view = {f.id for f in core.list_files(alice_token)}
    assert alice_view == {own_private.id, bob_public.id}

    all_view = {f.id for f in core.list_files(admin_token, SCOPE_ALL)}
    assert all_view == {own_private.id, bob_public.id, bob_private.id}


def test_scope_all_is_admin_only(core, alice):
    """Test users cannot list every file."""
    _, token = alice
    with pytest.raises(PermissionDenied):
        core.list_files(token, SCOPE_ALL)


def test_toggle_visibility_twice_logs_twice(core, alice, bob):
    """Test each change is audited and the listing follows."""
    user, alice_token = alice
    _, bob_token = bob
    record = core.upload_file(alice_token, b"x", "doc.txt")

    core.toggle_visibility(alice_token, record.id, "public")
    assert record.id in {f.id for f in core.list_files(bob_token)}

    core.toggle_visibility(alice_token, record.id, "private")
    assert record.id not in {f.id for f in core.list_files(bob_token)}

    changes = [e for e in ledger(core, category=LogCategory.FILE) if e.action == "visibility_change"]
    assert len(changes) == 2
    assert all(e.user_id == user.id and e.resource_id == record.id for e in changes)


def test_toggle_to_current_value_is_a_noop(core, alice):
    """Test setting the current visibility succeeds without an audit entry."""
    _, token = alice
    record = core.upload_file(token, b"x", "doc.txt")

    updated = core.toggle_visibility(token, record.id, "private")

    assert updated.visibility == Visibility.PRIVATE
    assert not [e for e in ledger(core) if e.action == "visibility_change"]


def test_admin_cannot_toggle_others_files(core, alice, admin_token):
    """Test the admin override does not extend to visibility."""
    _, token = alice
    record = core.upload_file(token, b"x", "doc.txt")

    with pytest.raises(PermissionDenied):
        core.toggle_visibility(admin_token, record.id, "public")


def test_non_owner_delete_is_denied_and_audited(core, alice, bob):
    """Test a denied delete leaves the file and writes one security entry."""
    _, alice_token = alice
    bob_user, bob_token = bob
    record = core.upload_file(alice_token, b"x", "doc.txt", visibility="public")

    with pytest.raises(PermissionDenied):
        core.delete_file(bob_token, record.id)

    security = ledger(core, category=LogCategory.SECURITY, user_id=bob_user.id)
    assert len(security) == 1
    assert security[0].resource_id == record.id
    assert not [e for e in ledger(core, category=LogCategory.FILE) if e.action == "delete"]
    assert record.id in {f.id for f in core.list_files(bob_token)}
    assert (core.store.upload_root / record.storage_path).exists()


def test_owner_delete_removes_metadata_then_bytes(core, alice):
    """Test deletion removes both the row and the stored file."""
    _, token = alice
    record = core.upload_file(token, b"x", "doc.txt")

    core.delete_file(token, record.id)

    assert core.list_files(token) == []
    assert stored_files(core) == []
    assert [e.action for e in ledger(core, category=LogCategory.FILE)] == ["upload", "delete"]


def test_admin_may_delete_any_file(core, alice, admin_token):
    """Test the admin override for deletion."""
    _, token = alice
    record = core.upload_file(token, b"x", "doc.txt")

    core.delete_file(admin_token, record.id)

    assert core.list_files(token) == []


def test_delete_with_missing_bytes_still_succeeds(core, alice):
    """Test a missing backing file is only a warning."""
    _, token = alice
    record = core.upload_file(token, b"x", "doc.txt")
    (core.store.upload_root / record.storage_path).unlink()

    core.delete_file(token, record.id)

    with pytest.raises(NotFound):
        core.store.get(record.id)


def test_delete_unknown_file(core, alice):
    """Test deleting a missing id is NotFound."""
    _, token = alice
    with pytest.raises(NotFound):
        core.delete_file(token, 9999)


def test_storage_stats(core, alice, admin_token):
    """Test usage is reported per user and platform-wide for admins."""
    _, token = alice
    core.upload_file(token, b"x" * 10, "a.txt")
    core.upload_file(admin_token, b"y" * 5, "b.txt")

    assert core.storage_stats(token)["total_size"] == 10
    assert core.storage_stats(admin_token) == {"total_size": 15, "file_count": 2, "total_size_mb": 0.0}


def test_filename_helpers():
    """Test sanitizing and extension extraction."""
    assert sanitize_filename("../../etc/pass wd") == "pass_wd"
    assert sanitize_filename("résumé.pdf") == "r_sum_.pdf"
    assert file_extension("Archive.TAR.GZ") == "gz"
    assert file_extension("README") == ""
