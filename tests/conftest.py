"""Shared test configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from inboxwatch.privacy.audit import AuditLogger


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def audit_logger(workspace: Path) -> AuditLogger:
    return AuditLogger(workspace / "audit")
