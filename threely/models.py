# models.py
"""
Database models for Threely.

This file defines all SQLAlchemy models used by the application,
providing a single source of truth for the database schema:

- `User`: account, role, token balance and likes.
- `Asset`: a generated or curated 3D model with its per-format files.
- `GeneratedModel`: a user's generation history entry.
- `TokenTransaction` / `TokenUsage`: the token ledger.
"""

import math
import re
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Column, String, Boolean, DateTime, Text, Integer, Float, ForeignKey, JSON,
    Table, Uuid as SA_UUID, event, func, select, or_, inspect,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import relationship, validates

from threely.db import Base

MODEL_FORMATS = ("glb", "fbx", "obj", "usdz")
ASSET_TOPOLOGIES = ("triangle", "quad", "triangles", "quads")
ASSET_SYMMETRIES = ("auto", "on", "off")
ASSET_CATEGORIES = ("public", "featured", "user_generated")
USER_ROLES = ("user", "premium", "admin")

UNLIMITED_TOKENS = 999999

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AssetValidationError(ValueError):
    """Raised when an asset would be saved without any usable model file."""


# -----------------------
# Association Tables
# -----------------------

user_liked_assets = Table(
    "user_liked_assets",
    Base.metadata,
    Column("user_id", SA_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("asset_id", SA_UUID(as_uuid=True), ForeignKey("assets.id", ondelete="CASCADE"), primary_key=True),
)


# -----------------------
# Models
# -----------------------

class User(Base):
    __tablename__ = "users"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String(20), unique=True, nullable=False, index=True)
    email = Column(String(320), unique=True, nullable=False, index=True)
    hashed_password = Column(String(512), nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    role = Column(String(16), nullable=False, default="user")
    tokens = Column(Integer, nullable=False, default=1)
    total_spent = Column(Float, nullable=False, default=0.0)
    last_token_purchase = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    liked_assets = relationship("Asset", secondary=user_liked_assets, lazy="selectin")
    generated_models = relationship(
        "GeneratedModel",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="GeneratedModel.created_at",
    )

    @validates("username")
    def _validate_username(self, key, value):
        value = (value or "").strip()
        if not 3 <= len(value) <= 20:
            raise ValueError("Username must be between 3 and 20 characters")
        if not USERNAME_RE.match(value):
            raise ValueError("Username can only contain letters, numbers, and underscores")
        return value

    @validates("email")
    def _validate_email(self, key, value):
        value = (value or "").strip().lower()
        if not EMAIL_RE.match(value):
            raise ValueError("Please enter a valid email address")
        return value

    @validates("tokens")
    def _validate_tokens(self, key, value):
        if value is not None and value < 0:
            raise ValueError("Token balance cannot be negative")
        return value

    @validates("role")
    def _validate_role(self, key, value):
        if value not in USER_ROLES:
            raise ValueError(f"Invalid role: {value}")
        return value

    @property
    def has_unlimited_tokens(self) -> bool:
        return bool(self.is_admin) or self.role == "admin"

    def has_enough_tokens(self, amount: int = 1) -> bool:
        return self.has_unlimited_tokens or (self.tokens or 0) >= amount

    def toggle_liked_asset(self, asset: "Asset") -> bool:
        """Adds or removes `asset` from the user's likes. Returns True when now liked."""
        for liked in self.liked_assets:
            if liked.id == asset.id:
                self.liked_assets.remove(liked)
                return False
        self.liked_assets.append(asset)
        return True

    def add_generated_model(self, task_id: str, name: Optional[str] = None) -> "GeneratedModel":
        entry = GeneratedModel(task_id=task_id, name=name or "Generated Model", created_at=utcnow())
        self.generated_models.append(entry)
        return entry

    def to_public_dict(self) -> dict:
        state = inspect(self)
        liked = [] if "liked_assets" in state.unloaded else [str(a.id) for a in self.liked_assets]
        generated = (
            [] if "generated_models" in state.unloaded
            else [m.to_dict() for m in self.generated_models]
        )
        return {
            "id": str(self.id),
            "username": self.username,
            "email": self.email,
            "isAdmin": bool(self.is_admin),
            "role": self.role,
            "tokens": UNLIMITED_TOKENS if self.has_unlimited_tokens else self.tokens,
            "totalSpent": self.total_spent or 0.0,
            "likedAssets": liked,
            "generatedModels": generated,
            "createdAt": _iso(self.created_at),
        }

    # --- Queries ---

    @classmethod
    async def find_by_login(cls, db: AsyncSession, identifier: str) -> Optional["User"]:
        """Active user whose email, or case-insensitive username, matches."""
        identifier = identifier.strip().lower()
        result = await db.execute(
            select(cls).where(
                cls.is_active.is_(True),
                or_(cls.email == identifier, func.lower(cls.username) == identifier),
            )
        )
        return result.scalars().first()

    @classmethod
    async def find_by_email(cls, db: AsyncSession, email: str) -> Optional["User"]:
        result = await db.execute(select(cls).where(cls.email == email.strip().lower()))
        return result.scalars().first()

    @classmethod
    async def find_by_username(cls, db: AsyncSession, username: str) -> Optional["User"]:
        result = await db.execute(
            select(cls).where(func.lower(cls.username) == username.strip().lower())
        )
        return result.scalars().first()


class GeneratedModel(Base):
    __tablename__ = "generated_models"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(SA_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id = Column(String(128), nullable=False)
    name = Column(String(100), nullable=False, default="Generated Model")
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="generated_models")

    def to_dict(self) -> dict:
        return {"taskId": self.task_id, "name": self.name, "createdAt": _iso(self.created_at)}


class TokenTransaction(Base):
    __tablename__ = "token_transactions"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(SA_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(DateTime(timezone=True), default=utcnow, index=True)
    type = Column(String(16), nullable=False, default="purchase")  # purchase | grant | refund
    tier_id = Column(String(32), nullable=True)
    tokens = Column(Integer, nullable=False)
    amount = Column(Float, nullable=False, default=0.0)
    currency = Column(String(8), nullable=False, default="eur")
    status = Column(String(16), nullable=False, default="completed")
    # Unique so a payment intent can only ever be credited once.
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True)
    payment_method = Column(String(32), nullable=True)
    profit = Column(Float, nullable=True)
    reason = Column(Text, nullable=True)
    granted_by = Column(SA_UUID(as_uuid=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "date": _iso(self.date),
            "type": self.type,
            "tierId": self.tier_id,
            "tokens": self.tokens,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "stripePaymentIntentId": self.stripe_payment_intent_id,
            "paymentMethod": self.payment_method,
            "reason": self.reason,
        }


class TokenUsage(Base):
    __tablename__ = "token_usage"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(SA_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(DateTime(timezone=True), default=utcnow)
    action = Column(String(32), nullable=False, default="model_generation")
    task_id = Column(String(128), nullable=True)


class Asset(Base):
    __tablename__ = "assets"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # --- Display ---
    name = Column(String(100), nullable=False)
    breed = Column(String(50), nullable=False, default="Mixed Breed")
    icon = Column(String(10), nullable=False, default="🐕")
    file_size = Column(String(32), nullable=False, default="0 MB")
    polygons = Column(Integer, nullable=False, default=30000)
    popularity = Column(Integer, nullable=False, default=0)
    tags = Column(JSON, nullable=False, default=list)
    description = Column(String(500), nullable=True)

    # --- Generation parameters ---
    topology = Column(String(16), nullable=False, default="triangle")
    texture = Column(Boolean, nullable=False, default=True)
    symmetry = Column(String(8), nullable=False, default="auto")
    pbr = Column(Boolean, nullable=False, default=False)

    # --- Files ---
    # format -> {filename, url, publicId, size, isProxy, originalMeshyUrl}
    model_files = Column(JSON, nullable=False, default=dict)
    available_formats = Column(JSON, nullable=False, default=list)
    model_file = Column(JSON, nullable=True)  # legacy single-file entry, mirrors the glb
    preview_image = Column(JSON, nullable=True)
    original_image = Column(JSON, nullable=True)

    # --- Counters ---
    downloads = Column(Integer, nullable=False, default=0)
    views = Column(Integer, nullable=False, default=0)

    # --- Ownership ---
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_by = Column(String(64), nullable=False, default="admin")
    user_id = Column(SA_UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    is_public = Column(Boolean, nullable=False, default=True)
    is_user_generated = Column(Boolean, nullable=False, default=False)
    category = Column(String(32), nullable=False, default="public")

    # --- Provenance ---
    meshy_task_id = Column(String(128), unique=True, nullable=True)
    generated_from_image = Column(Boolean, nullable=False, default=False)
    original_image_url = Column(String(1024), nullable=True)
    was_user_generated = Column(Boolean, nullable=False, default=False)
    source_user_asset_id = Column(SA_UUID(as_uuid=True), ForeignKey("assets.id", ondelete="SET NULL"), nullable=True)
    published_to_homepage_at = Column(DateTime(timezone=True), nullable=True)
    generation_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # --- Field validation ---

    @validates("name")
    def _validate_name(self, key, value):
        value = (value or "").strip()
        if not value:
            raise ValueError("Asset name is required")
        if len(value) > 100:
            raise ValueError("Asset name cannot exceed 100 characters")
        return value

    @validates("breed")
    def _validate_breed(self, key, value):
        if value and len(value) > 50:
            raise ValueError("Breed cannot exceed 50 characters")
        return value

    @validates("icon")
    def _validate_icon(self, key, value):
        if value and len(value) > 10:
            raise ValueError("Icon cannot exceed 10 characters")
        return value

    @validates("description")
    def _validate_description(self, key, value):
        if value and len(value) > 500:
            raise ValueError("Description cannot exceed 500 characters")
        return value

    @validates("polygons")
    def _validate_polygons(self, key, value):
        if value is not None and not 100 <= value <= 1_000_000:
            raise ValueError("Polygons must be between 100 and 1,000,000")
        return value

    @validates("popularity")
    def _validate_popularity(self, key, value):
        if value is not None and not 0 <= value <= 100:
            raise ValueError("Popularity must be between 0 and 100")
        return value

    @validates("topology")
    def _validate_topology(self, key, value):
        if value not in ASSET_TOPOLOGIES:
            raise ValueError(f"Invalid topology: {value}")
        return value

    @validates("symmetry")
    def _validate_symmetry(self, key, value):
        if value not in ASSET_SYMMETRIES:
            raise ValueError(f"Invalid symmetry: {value}")
        return value

    @validates("category")
    def _validate_category(self, key, value):
        if value not in ASSET_CATEGORIES:
            raise ValueError(f"Invalid category: {value}")
        return value

    @validates("tags")
    def _validate_tags(self, key, value):
        return [str(tag).strip().lower() for tag in (value or []) if str(tag).strip()]

    # --- Model file helpers ---

    def validate_model_files(self) -> None:
        """
        Mirrors `model_files.glb` into the legacy `model_file` entry when the
        latter is missing, then requires at least one of them to carry a URL.
        """
        glb = (self.model_files or {}).get("glb") or {}
        legacy = self.model_file or {}

        if glb.get("url") and not legacy.get("url"):
            self.model_file = {
                "filename": glb.get("filename") or "model.glb",
                "url": glb["url"],
                "publicId": glb.get("publicId") or "model",
                "size": glb.get("size") or 0,
            }
            legacy = self.model_file

        if not legacy.get("url") and not glb.get("url"):
            raise AssetValidationError(
                "Asset must have at least one model file (modelFile.url or modelFiles.glb.url)"
            )

    def get_model_file(self, fmt: str = "glb") -> Optional[dict]:
        entry = (self.model_files or {}).get(fmt)
        if entry and entry.get("url"):
            return entry
        if fmt == "glb" and self.model_file and self.model_file.get("url"):
            return self.model_file
        return None

    def has_format(self, fmt: str) -> bool:
        return self.get_model_file(fmt) is not None

    def add_format(self, fmt: str, entry: dict) -> None:
        if fmt not in MODEL_FORMATS:
            raise ValueError(f"Unsupported format: {fmt}")
        # Reassign so SQLAlchemy sees the JSON change.
        self.model_files = {**(self.model_files or {}), fmt: entry}
        formats = list(self.available_formats or [])
        if fmt not in formats:
            formats.append(fmt)
        self.available_formats = formats

    def increment_downloads(self) -> None:
        self.downloads = (self.downloads or 0) + 1
        self.update_popularity()

    def increment_views(self) -> None:
        self.views = (self.views or 0) + 1
        self.update_popularity()

    def update_popularity(self) -> int:
        score = ((self.downloads or 0) * 10 + (self.views or 0)) / 10
        self.popularity = min(100, math.floor(score))
        return self.popularity

    # --- Ownership ---

    def is_owned_by(self, user: Optional[User]) -> bool:
        return bool(user and self.user_id and self.user_id == user.id)

    def can_be_viewed_by(self, user: Optional[User]) -> bool:
        if user is not None and user.is_admin:
            return True
        if self.is_public:
            return True
        return self.is_owned_by(user)

    def mark_as_published(self, source_asset_id: uuid.UUID) -> None:
        self.was_user_generated = True
        self.source_user_asset_id = source_asset_id
        self.published_to_homepage_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "breed": self.breed,
            "icon": self.icon,
            "fileSize": self.file_size,
            "polygons": self.polygons,
            "popularity": self.popularity,
            "tags": list(self.tags or []),
            "description": self.description,
            "topology": self.topology,
            "texture": self.texture,
            "symmetry": self.symmetry,
            "pbr": self.pbr,
            "modelFiles": dict(self.model_files or {}),
            "availableFormats": list(self.available_formats or []),
            "modelFile": self.model_file,
            "previewImage": self.preview_image,
            "originalImage": self.original_image,
            "downloads": self.downloads,
            "views": self.views,
            "isActive": self.is_active,
            "createdBy": self.created_by,
            "userId": str(self.user_id) if self.user_id else None,
            "isPublic": self.is_public,
            "isUserGenerated": self.is_user_generated,
            "category": self.category,
            "meshyTaskId": self.meshy_task_id,
            "generatedFromImage": self.generated_from_image,
            "originalImageUrl": self.original_image_url,
            "wasUserGenerated": self.was_user_generated,
            "sourceUserAssetId": str(self.source_user_asset_id) if self.source_user_asset_id else None,
            "publishedToHomepageAt": _iso(self.published_to_homepage_at),
            "generationMetadata": self.generation_metadata,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    # --- Factories & Queries ---

    @classmethod
    def create_user_asset(cls, user: User, **fields) -> "Asset":
        """A private, user-generated asset owned by `user`."""
        fields.update(
            user_id=user.id,
            created_by=str(user.id),
            is_public=False,
            is_user_generated=True,
            category="user_generated",
        )
        return cls(**fields)

    @classmethod
    async def find_by_breed(cls, db: AsyncSession, breed: str) -> List["Asset"]:
        result = await db.execute(
            select(cls).where(cls.is_active.is_(True), func.lower(cls.breed) == breed.lower())
        )
        return list(result.scalars().all())

    @classmethod
    async def find_popular(cls, db: AsyncSession, limit: int = 10) -> List["Asset"]:
        result = await db.execute(
            select(cls)
            .where(cls.is_active.is_(True), cls.is_public.is_(True))
            .order_by(cls.popularity.desc(), cls.downloads.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @classmethod
    async def find_by_meshy_task(cls, db: AsyncSession, task_id: str) -> Optional["Asset"]:
        result = await db.execute(select(cls).where(cls.meshy_task_id == task_id))
        return result.scalars().first()

    @classmethod
    async def find_public_assets(cls, db: AsyncSession, limit: int = 20) -> List["Asset"]:
        result = await db.execute(
            select(cls)
            .where(
                cls.is_active.is_(True),
                or_(cls.is_public.is_(True), cls.category.in_(("featured", "public"))),
                cls.is_user_generated.is_(False),
            )
            .order_by(cls.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @classmethod
    async def find_user_assets(cls, db: AsyncSession, user_id: uuid.UUID, limit: int = 100) -> List["Asset"]:
        result = await db.execute(
            select(cls)
            .where(cls.user_id == user_id, cls.is_active.is_(True))
            .order_by(cls.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @classmethod
    async def find_published_user_assets(cls, db: AsyncSession, limit: int = 50) -> List["Asset"]:
        result = await db.execute(
            select(cls)
            .where(
                cls.is_active.is_(True),
                cls.was_user_generated.is_(True),
                cls.source_user_asset_id.is_not(None),
            )
            .order_by(cls.published_to_homepage_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @classmethod
    async def is_user_asset_published(cls, db: AsyncSession, user_asset_id: uuid.UUID) -> bool:
        result = await db.execute(
            select(cls.id).where(
                cls.source_user_asset_id == user_asset_id,
                cls.is_active.is_(True),
            )
        )
        return result.first() is not None


@event.listens_for(Asset, "before_insert")
@event.listens_for(Asset, "before_update")
def _validate_asset_before_save(mapper, connection, target: Asset) -> None:
    target.validate_model_files()
