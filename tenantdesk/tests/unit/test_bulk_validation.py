from __future__ import annotations

from types import SimpleNamespace

import pytest

from tenantdesk.core.errors import ValidationError
from tenantdesk.services.rbac.bulk import BulkAssignmentCoordinator, _index_by_ref


def _coordinator() -> BulkAssignmentCoordinator:
    # Shape validation runs before any storage access, so no session is needed.
    return BulkAssignmentCoordinator(None)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_empty_lists_are_rejected_together() -> None:
    with pytest.raises(ValidationError) as excinfo:
        await _coordinator().assign("w1", [], [], actor_id="u-admin")
    assert set(excinfo.value.details) == {"subjects", "grants"}


@pytest.mark.asyncio
async def test_length_mismatch_is_rejected() -> None:
    with pytest.raises(ValidationError) as excinfo:
        await _coordinator().assign("w1", ["u1", "u2"], ["r1"], actor_id="u-admin")
    assert excinfo.value.details == {"length": ["subjects=2", "grants=1"]}


@pytest.mark.asyncio
async def test_blank_positions_are_reported_per_list() -> None:
    with pytest.raises(ValidationError) as excinfo:
        await _coordinator().assign("w1", ["u1", " ", "u3"], ["r1", "r2", ""], actor_id="u-admin")
    assert excinfo.value.details == {"blank_subjects": ["1"], "blank_grants": ["2"]}


def test_index_by_ref_matches_ids_then_unique_names() -> None:
    rows = [
        SimpleNamespace(id="r-1", name="Developer"),
        SimpleNamespace(id="r-2", name="Lead"),
        SimpleNamespace(id="r-3", name="lead"),
    ]

    resolved, missing, ambiguous = _index_by_ref(rows, ["r-1", "developer", "LEAD", "Ghost"], lambda row: row.name)

    assert {ref: row.id for ref, row in resolved.items()} == {"r-1": "r-1", "developer": "r-1"}
    assert missing == ["Ghost"]
    assert ambiguous == ["LEAD"]
