"""
Audit trail helpers.
- Diffs record added/removed/changed fields
- Audit writes never raise into the caller
- Clinic audit pages are newest first and filterable by action
"""
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import AuditAction  # noqa: E402
from utils.audit import calculate_diff, create_audit_log, get_clinic_audit_logs  # noqa: E402


def test_calculate_diff():
    diff = calculate_diff({"plan": "basic", "auto_renew": False}, {"plan": "standard", "limits": 5, "auto_renew": False})
    assert diff == {
        "added": {"limits": 5},
        "changed": {"plan": {"from": "basic", "to": "standard"}},
    }
    assert calculate_diff({}, {}) == {}


@pytest.mark.asyncio
async def test_create_audit_log_stores_diff():
    db = MagicMock()
    db.audit_logs.insert_one = AsyncMock()
    with patch("utils.audit.database.get_db", return_value=db):
        audit_id = await create_audit_log(
            action=AuditAction.EMR_PLAN_UPGRADED,
            clinic_id="clinic_1",
            resource_type="emr_subscription",
            resource_id="EMRS-1",
            before_state={"plan": "basic"},
            after_state={"plan": "advanced"},
        )

    assert audit_id
    doc = db.audit_logs.insert_one.call_args[0][0]
    assert doc["action"] == "EMR_PLAN_UPGRADED"
    assert doc["clinic_id"] == "clinic_1"
    assert doc["metadata"]["changes_count"] == 1


@pytest.mark.asyncio
async def test_create_audit_log_swallows_store_errors():
    db = MagicMock()
    db.audit_logs.insert_one = AsyncMock(side_effect=RuntimeError("write failed"))
    with patch("utils.audit.database.get_db", return_value=db):
        assert await create_audit_log(action=AuditAction.EMR_ACCESS_DENIED, clinic_id="clinic_1") == ""


@pytest.mark.asyncio
async def test_get_clinic_audit_logs_pages_newest_first():
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=[{"action": "EMR_ACCESS_DENIED"}])
    db = MagicMock()
    db.audit_logs.count_documents = AsyncMock(return_value=11)
    db.audit_logs.find.return_value = cursor

    with patch("utils.audit.database.get_db", return_value=db):
        result = await get_clinic_audit_logs("clinic_1", limit=10, skip=10, action="EMR_ACCESS_DENIED")

    assert result == {"logs": [{"action": "EMR_ACCESS_DENIED"}], "total": 11}
    query = db.audit_logs.find.call_args[0][0]
    assert query == {"clinic_id": "clinic_1", "action": "EMR_ACCESS_DENIED"}
    cursor.sort.assert_called_with("timestamp", -1)
    cursor.skip.assert_called_with(10)
    cursor.limit.assert_called_with(10)
