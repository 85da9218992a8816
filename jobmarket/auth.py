# jobmarket/auth.py
import os
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException
from supabase import Client, create_client

_client: Optional[Client] = None


# ──────────────────────────────────────────────────────────────────────────────
# Supabase client (service role so it can look up any user's token)
# Set env vars:
#   SUPABASE_URL=https://YOUR-PROJECT-REF.supabase.co
#   SUPABASE_SERVICE_ROLE=eyJhbGciOiJI...  (service role key)
# ──────────────────────────────────────────────────────────────────────────────
def get_supabase() -> Client:
    global _client
    if _client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_ROLE")
        if not url or not key:
            raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE")
        _client = create_client(url, key)
    return _client


async def get_user(authorization: str = Header(...)) -> Dict[str, Any]:
    """Verify the Supabase user JWT sent from the mobile app."""
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1]

    try:
        sb = get_supabase()
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))

    try:
        u = sb.auth.get_user(token)
    except Exception as e:
        raise HTTPException(status_code=401, detail=f"Could not verify token with Supabase: {e}")
    if not u or not u.user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    meta = u.user.user_metadata or {}
    return {
        "id": u.user.id,
        "email": u.user.email or "",
        "role": meta.get("role"),  # "customer" | "mechanic", set at sign-up
    }
