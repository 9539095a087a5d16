"""Derived id lookup for operators."""

from fastapi import APIRouter, HTTPException, Query

from ..models import IdentityResponse
from ...services.identity import derive

router = APIRouter()


@router.get("", response_model=IdentityResponse)
async def derive_identity(
    type_full_name: str = Query(..., min_length=1),
    key_property: str = Query(..., min_length=1),
    value: str = Query(...),
):
    """Compute the document id and partition key of a saga."""
    try:
        document_id = derive(type_full_name, key_property, value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return IdentityResponse(id=document_id, type_full_name=type_full_name, key_property=key_property, value=value)
