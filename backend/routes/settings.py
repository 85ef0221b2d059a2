"""Health check and settings endpoints."""

from typing import Any

from fastapi import APIRouter

from backend import stores

router = APIRouter()

_MASK = "****"


def _masked(config: dict[str, Any]) -> dict[str, Any]:
    """Config with api keys reduced to their last four characters."""
    providers = {}
    for name, vals in config["providers"].items():
        key = vals["api_key"]
        providers[name] = {**vals, "api_key": _MASK + key[-4:] if key else ""}
    return {**config, "providers": providers}


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings():
    """Get app settings (model connections, pacing, history cap). Keys are masked."""
    return _masked(stores.config_store().get_config())


@router.patch("/settings")
async def update_settings(body: dict):
    """Update app settings (partial merge). Masked keys sent back are ignored."""
    for vals in body.get("providers", {}).values():
        if isinstance(vals, dict) and str(vals.get("api_key", "")).startswith(_MASK):
            del vals["api_key"]
    return _masked(stores.config_store().update_config(body))
