"""
api/routes/v1/parliament.py -- Parliament date administration (admin only).

Routes:
  DELETE /api/v1/parliament/dates/{date_id}  -- cascade delete a date, its
                                               subjects and their notes

A date that does not exist (or was already deleted) returns 200 with zero
counts; re-running after a partial failure finishes the job. A partial
failure returns 500 with code "cascade_partial_failure" and the last stage
that completed in detail, so the admin knows a retry is needed.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import CascadeResponse
from auth.dependencies import Caller, require_roles
from auth.models import Role
from docstore.cascade import CascadeDeleter

router = APIRouter()


@router.delete("/parliament/dates/{date_id}", response_model=CascadeResponse)
def delete_parliament_date(
    request: Request,
    date_id: str,
    caller: Caller = Depends(require_roles(Role.ADMIN)),
) -> CascadeResponse:
    outcome = CascadeDeleter(request.app.state.docstore).delete(date_id)
    if not outcome.ok:
        raise HTTPException(
            status_code=500,
            detail={
                "code": "cascade_partial_failure",
                "message": "Deletion stopped part way. Retry to finish removing this date.",
                "detail": outcome.stage.value,
            },
        )
    return CascadeResponse(
        parent_id=outcome.parent_id,
        stage=outcome.stage.value,
        dependents_deleted=outcome.dependents_deleted,
        nested_items_deleted=outcome.nested_items_deleted,
        batches_committed=outcome.batches_committed,
    )
