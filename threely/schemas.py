# schemas.py
"""
Pydantic request bodies shared by the API routers.

The browser client speaks camelCase, so every body accepts camelCase keys
(and snake_case, for scripts and tests).
"""
import uuid
from typing import Dict, List, Literal, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def parse_uuid(value, detail: str = "Invalid id") -> uuid.UUID:
    """Parses a path/body id, turning malformed ids into a 400."""
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


# ===================================================================
# Auth
# ===================================================================

class RegisterRequest(CamelModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None


class LoginRequest(CamelModel):
    # Either a username or an email address.
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LikeAssetRequest(CamelModel):
    asset_id: Optional[str] = None


class SaveGeneratedModelRequest(CamelModel):
    task_id: Optional[str] = None
    name: Optional[str] = None


# ===================================================================
# Generation / Assets
# ===================================================================

class SaveAssetRequest(CamelModel):
    name: Optional[str] = Field(None, max_length=100)
    breed: Optional[str] = Field(None, max_length=50)
    icon: Optional[str] = Field(None, max_length=10)
    description: Optional[str] = Field(None, max_length=500)
    tags: Optional[List[str]] = None
    topology: Optional[Literal["triangle", "quad", "triangles", "quads"]] = None
    texture: Optional[bool] = None
    symmetry: Optional[Literal["auto", "on", "off"]] = None
    pbr: Optional[bool] = None
    polygons: Optional[int] = Field(None, ge=100, le=1_000_000)
    auto_saved: bool = False


class FromMeshyRequest(SaveAssetRequest):
    task_id: Optional[str] = None
    model_urls: Optional[Dict[str, str]] = None
    model_url: Optional[str] = None
    thumbnail_url: Optional[str] = None


class AssetUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, max_length=100)
    breed: Optional[str] = Field(None, max_length=50)
    icon: Optional[str] = Field(None, max_length=10)
    description: Optional[str] = Field(None, max_length=500)
    tags: Optional[List[str]] = None
    polygons: Optional[int] = Field(None, ge=100, le=1_000_000)
    popularity: Optional[int] = Field(None, ge=0, le=100)
    topology: Optional[Literal["triangle", "quad", "triangles", "quads"]] = None
    texture: Optional[bool] = None
    symmetry: Optional[Literal["auto", "on", "off"]] = None
    pbr: Optional[bool] = None
    category: Optional[Literal["public", "featured", "user_generated"]] = None
    is_public: Optional[bool] = None
    is_active: Optional[bool] = None


class PublishAssetRequest(CamelModel):
    name: Optional[str] = Field(None, max_length=100)
    breed: Optional[str] = Field(None, max_length=50)
    icon: Optional[str] = Field(None, max_length=10)
    description: Optional[str] = Field(None, max_length=500)
    tags: Optional[List[str]] = None
    category: Literal["public", "featured"] = "public"


# ===================================================================
# Payment
# ===================================================================

class CreatePaymentIntentRequest(CamelModel):
    tier_id: Optional[str] = None


class ConfirmPaymentRequest(CamelModel):
    payment_intent_id: Optional[str] = None


class ConsumeTokenRequest(CamelModel):
    task_id: Optional[str] = None
    action: str = "model_generation"


class GrantTokensRequest(CamelModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    tokens: int = Field(..., gt=0)
    reason: Optional[str] = None
