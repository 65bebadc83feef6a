"""
Test the audit ledger: appending, filtering, searching and paging.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from secureshare.audit import DELETED_USER, AuditLedger, LogQuery
from secureshare.errors import PermissionDenied
from secureshare.models import LogCategory, utcnow


@pytest.fixture
def audit(engine):
    return AuditLedger(engine)


@pytest.fixture
def populated(audit, admin):
    """A handful of entries across categories."""
    audit.append(admin.id, "10.0.0.1", "upload", "Uploaded 'alpha.txt'", LogCategory.FILE, 7)
    audit.append(admin.id, "10.0.0.2", "delete", "Deleted 'beta.txt'", LogCategory.FILE, 8)
    audit.append(None, "192.168.1.9", "login_failure", "Attempted login for non-existent user 'mallory'", LogCategory.AUTH)
    audit.append(admin.id, "10.0.0.1", "unauthorized_action", "Denied 'delete'", LogCategory.SECURITY, 8)
    return audit


def test_append_then_query(populated, admin):
    """Test entries come back with the actor's username."""
    rows, total = populated.query(LogQuery(category=LogCategory.FILE))

    assert total == 2
    assert {row.action for row in rows} == {"upload", "delete"}
    assert all(row.username == admin.username for row in rows)


def test_anonymous_rows_show_deleted_user(populated):
    """Test rows without a user render the placeholder name."""
    rows, _ = populated.query(LogQuery(category=LogCategory.AUTH, search="mallory"))
    assert [row.username for row in rows] == [DELETED_USER]


def test_search_is_case_insensitive_over_fields(populated):
    """Test search matches action, details and ip address."""
    assert populated.query(LogQuery(search="ALPHA"))[1] == 1
    assert populated.query(LogQuery(search="192.168"))[1] == 1
    assert populated.query(LogQuery(search="login_fail"))[1] == 1


def test_numeric_search_matches_resource_id(populated):
    """Test a numeric term also matches the resource id."""
    rows, total = populated.query(LogQuery(search="8", category=LogCategory.SECURITY))
    assert total == 1
    assert rows[0].resource_id == 8


def test_search_by_username(populated, admin):
    """Test search covers the joined username."""
    _, total = populated.query(LogQuery(search=admin.username.upper(), category=LogCategory.FILE))
    assert total == 2


def test_user_filter(populated, admin):
    """Test filtering by actor."""
    rows, _ = populated.query(LogQuery(user_id=admin.id, page_size=500))
    assert all(row.user_id == admin.id for row in rows)
    assert "login_failure" not in {row.action for row in rows}


def test_date_range(populated):
    """Test date bounds are inclusive and can exclude everything."""
    now = utcnow()
    assert populated.query(LogQuery(date_from=now + timedelta(days=1)))[1] == 0
    assert populated.query(LogQuery(date_to=now - timedelta(days=1)))[1] == 0
    assert populated.query(LogQuery(date_from=now - timedelta(minutes=5), category=LogCategory.FILE))[1] == 2


def test_pagination_and_sorting(populated):
    """Test pages are disjoint and the total is independent of paging."""
    first, total = populated.query(LogQuery(page=1, page_size=2, sort_order="asc"))
    second, total_again = populated.query(LogQuery(page=2, page_size=2, sort_order="asc"))

    assert total == total_again
    assert len(first) == 2
    assert not {row.id for row in first} & {row.id for row in second}
    assert [row.id for row in first] == sorted(row.id for row in first)


def test_sort_by_username(populated):
    """Test ordering by the joined username."""
    rows, _ = populated.query(LogQuery(sort_by="username", sort_order="asc", page_size=500))
    names = [row.username for row in rows]
    assert names == sorted(names)


@pytest.mark.parametrize(
    "filters",
    [{"page": 0}, {"page_size": 0}, {"page_size": 501}, {"sort_by": "details"}, {"sort_order": "up"}],
)
def test_invalid_query(filters):
    """Test out-of-range query parameters are rejected."""
    with pytest.raises(PydanticValidationError):
        LogQuery(**filters)


def test_categories(populated):
    """Test the distinct categories present."""
    assert {"auth", "file", "security", "system"} <= set(populated.categories())


def test_append_failure_is_swallowed(audit, monkeypatch):
    """Test a broken ledger never raises into the caller."""
    import secureshare.audit as audit_module

    def broken(engine):
        raise RuntimeError("disk full")

    monkeypatch.setattr(audit_module, "get_session", broken)

    audit.append(1, "::1", "upload", "x", LogCategory.FILE)


def test_query_logs_is_admin_only(core, alice, admin_token):
    """Test only administrators may read the ledger."""
    user, token = alice

    with pytest.raises(PermissionDenied):
        core.query_logs(token)

    rows, total = core.query_logs(admin_token, LogQuery(user_id=user.id, category=LogCategory.SECURITY))
    assert total == 1
    assert rows[0].action == "unauthorized_action"


def test_search_treats_wildcards_literally(populated, admin):
    """Test percent and underscore in a search term match only themselves."""
    populated.append(admin.id, "10.0.0.1", "quota_warning", "Storage at 95% for team_a", LogCategory.SYSTEM)
    populated.append(admin.id, "10.0.0.1", "rename", "Renamed teamxa", LogCategory.FILE)

    rows, total = populated.query(LogQuery(search="%"))
    assert total == 1
    assert rows[0].action == "quota_warning"

    rows, total = populated.query(LogQuery(search="team_a"))
    assert [row.action for row in rows] == ["quota_warning"]
