"""
Learner profile API routes.
"""
from fastapi import APIRouter, HTTPException, Request

from api.models.requests import ProfileRequest
from api.models.responses import ProfileResponse
from models.profile_models import UserProfile

router = APIRouter()


@router.get("", response_model=ProfileResponse)
async def get_profile(request: Request):
    profile = await request.app.state.profile_repository.get()
    return ProfileResponse(profile=profile.to_dict() if profile else None)


@router.put("", response_model=ProfileResponse)
async def save_profile(payload: ProfileRequest, request: Request):
    """Create or replace the profile; new sessions pick it up."""
    profile = UserProfile.from_dict(payload.model_dump())
    saved = await request.app.state.profile_repository.save(profile)
    return ProfileResponse(profile=saved.to_dict())


@router.delete("")
async def delete_profile(request: Request):
    repository = request.app.state.profile_repository
    if not await repository.exists():
        raise HTTPException(status_code=404, detail="Profile not found")
    await repository.delete()
    return {"deleted": True}
