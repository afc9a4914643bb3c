"""
api/routes/v1/openapi.py -- Machine-client endpoints authenticated by X-API-Key.

Routes:
  GET /openapi/me -- identity behind the presented API key

Mounted without the /api/v1 prefix. The gate attaches the API-key identity to
a request-scoped session (api_user_id, api_username, api_role_id); no cookie
is issued for it.
"""

from fastapi import APIRouter, Request

from api.models import ApiIdentityResponse
from auth.gate import Gate, protect
from auth.policies import RequireApiKey

router = APIRouter()


@router.get("/openapi/me", response_model=ApiIdentityResponse)
@protect(RequireApiKey())
async def api_identity(request: Request) -> ApiIdentityResponse:
    gate: Gate = request.app.state.gate
    _, data = gate.session(request)
    return ApiIdentityResponse(
        user_id=data["api_user_id"],
        username=data.get("api_username"),
        role_id=data.get("api_role_id"),
    )
