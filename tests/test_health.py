"""Unit tests for the health endpoint"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.responses import JSONResponse

from filevault import main
from filevault.exceptions import AuthorizationError, NotFoundError


@pytest.mark.asyncio
async def test_health_ok(test_settings, storage_root):
    with patch.object(main, "settings", test_settings), \
         patch.object(main.database, "health_check", AsyncMock(return_value=True)):
        result = await main.health_check()

    assert result["status"] == "ok"
    assert result["database"] is True
    assert result["storage"] is True
    assert "usage_mb" in result["memory"]


@pytest.mark.asyncio
async def test_health_reports_missing_storage(test_settings, storage_root):
    storage_root.rmdir()

    with patch.object(main, "settings", test_settings), \
         patch.object(main.database, "health_check", AsyncMock(return_value=True)):
        result = await main.health_check()

    assert isinstance(result, JSONResponse)
    assert result.status_code == 503


@pytest.mark.asyncio
async def test_errors_map_to_status_codes():
    not_found = await main.file_vault_error_handler(None, NotFoundError("File not found"))
    denied = await main.file_vault_error_handler(None, AuthorizationError("nope"))

    assert not_found.status_code == 404
    assert denied.status_code == 401
    assert not_found.body == b'{"kind":"not_found","message":"File not found"}'
