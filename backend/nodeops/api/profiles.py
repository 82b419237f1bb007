"""Profile endpoints."""
from fastapi import APIRouter, Depends
from typing import List
import logging

from nodeops.api.dependencies import get_resolver
from nodeops.utils.profiles import ProfileResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/profiles", tags=["Profiles"])


@router.get("", response_model=List[str])
async def list_profiles(resolver: ProfileResolver = Depends(get_resolver)):
    """Canonical profile ids present in the registry."""
    return resolver.profiles()


@router.get("/{profile_id}/services")
async def list_profile_services(profile_id: str, resolver: ProfileResolver = Depends(get_resolver)):
    """Services of a profile. Legacy ids are accepted; unknown ids yield an empty list."""
    canonical = list(resolver.canonical_ids(profile_id))
    if canonical != [profile_id]:
        logger.debug(f"Legacy profile '{profile_id}' resolved to {canonical}")

    return {
        "profile": profile_id,
        "canonical_profiles": canonical,
        "services": [s.to_dict() for s in resolver.resolve(profile_id)],
    }
