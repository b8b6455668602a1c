"""Unit tests for identity validation and repo-name disambiguation."""

from __future__ import annotations

import re

import pytest

from quietsync.sync_engine.execution.handshake import (
    PathKeyMismatchError,
    build_mismatch_report,
    disambiguate_repo_name,
    validate_identity,
)
from quietsync.sync_engine.models.enums import CodebaseStatus, IdentityVerdict
from quietsync.sync_engine.models.identity import WorkspaceIdentity
from quietsync.sync_engine.models.protocol import HandshakeResult

ROOT = "/home/dev/project"
HASH_A = "a" * 64
HASH_B = "b" * 64


def _persisted(**overrides) -> WorkspaceIdentity:
    data = {
        "workspace_root": ROOT,
        "codebase_id": "cb-1",
        "path_key": "key-a",
        "path_key_hash": HASH_A,
    }
    data.update(overrides)
    return WorkspaceIdentity(**data)


def _result(codebase_id: str = "cb-1", status: CodebaseStatus = CodebaseStatus.UP_TO_DATE) -> HandshakeResult:
    return HandshakeResult(codebase_id=codebase_id, status=status)


# ---------------------------------------------------------------------------
# validate_identity
# ---------------------------------------------------------------------------


def test_same_codebase_same_key_is_ok() -> None:
    assert validate_identity(_result(), _persisted(), HASH_A) is IdentityVerdict.OK


def test_same_codebase_different_key_is_confirmed_mismatch() -> None:
    assert validate_identity(_result(), _persisted(), HASH_B) is IdentityVerdict.CONFIRMED_MISMATCH


def test_different_codebase_is_not_a_mismatch() -> None:
    verdict = validate_identity(_result("cb-2", CodebaseStatus.NOT_FOUND), _persisted(), HASH_B)
    assert verdict is IdentityVerdict.OK


@pytest.mark.parametrize("status", [CodebaseStatus.UP_TO_DATE, CodebaseStatus.OUT_OF_SYNC])
def test_existing_codebase_without_local_key_is_latent_collision(status: CodebaseStatus) -> None:
    persisted = WorkspaceIdentity(workspace_root=ROOT)
    assert validate_identity(_result(status=status), persisted, HASH_A) is IdentityVerdict.LATENT_COLLISION


@pytest.mark.parametrize("status", [CodebaseStatus.NOT_FOUND, CodebaseStatus.UNSPECIFIED])
def test_new_codebase_without_local_key_is_ok(status: CodebaseStatus) -> None:
    persisted = WorkspaceIdentity(workspace_root=ROOT)
    assert validate_identity(_result(status=status), persisted, HASH_A) is IdentityVerdict.OK


def test_mismatch_takes_precedence_over_collision() -> None:
    # Key hash recorded but key itself lost: still bound to the stored hash.
    persisted = _persisted(path_key=None)
    assert validate_identity(_result(), persisted, HASH_B) is IdentityVerdict.CONFIRMED_MISMATCH


# ---------------------------------------------------------------------------
# Reports and names
# ---------------------------------------------------------------------------


def test_mismatch_report_renders_hashes_and_remediation() -> None:
    report = build_mismatch_report("cb-1", HASH_A, HASH_B)
    error = PathKeyMismatchError(report)
    assert error.report is report
    assert "cb-1" in str(error)

    text = report.render()
    assert HASH_A in text
    assert HASH_B in text
    assert "1." in text
    assert "2." in text


def test_disambiguate_repo_name_format() -> None:
    assert disambiguate_repo_name("local-abc", now_ms=1718000000000, suffix="k3x9qa") == "local-abc-1718000000000-k3x9qa"


def test_disambiguate_repo_name_is_fresh() -> None:
    first = disambiguate_repo_name("local-abc")
    second = disambiguate_repo_name("local-abc")
    pattern = re.compile(r"^local-abc-\d+-[0-9a-z]{6}$")
    assert pattern.match(first)
    assert pattern.match(second)
    assert first != second
