import asyncio
import os
import sys

from dotenv import load_dotenv
from sqlalchemy import select

# Load .env before settings are read (hosting platforms also provide env vars directly)
load_dotenv()

from threely.auth import get_password_hash  # noqa: E402
from threely.db import Base, async_session_maker, engine  # noqa: E402
from threely.models import MODEL_FORMATS, UNLIMITED_TOKENS, Asset, User  # noqa: E402


async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ensure_admin(session, username: str, email: str, password: str) -> bool:
    """Creates the admin account unless a user with that name or email exists."""
    if await User.find_by_username(session, username) or await User.find_by_email(session, email):
        return False
    session.add(
        User(
            username=username,
            email=email,
            hashed_password=get_password_hash(password),
            is_admin=True,
            role="admin",
            tokens=UNLIMITED_TOKENS,
            liked_assets=[],
            generated_models=[],
        )
    )
    await session.commit()
    return True


async def backfill_assets(session) -> int:
    """
    Brings older asset rows up to the current shape: every asset lists its
    stored formats, and the legacy `model_file` mirrors the glb entry.
    """
    result = await session.execute(select(Asset))
    updated = 0
    for asset in result.scalars():
        model_files = dict(asset.model_files or {})
        if not model_files.get("glb") and asset.model_file and asset.model_file.get("url"):
            model_files["glb"] = {**asset.model_file, "isProxy": False, "originalMeshyUrl": None}
        formats = [fmt for fmt in MODEL_FORMATS if (model_files.get(fmt) or {}).get("url")]

        if model_files != (asset.model_files or {}) or formats != list(asset.available_formats or []):
            asset.model_files = model_files
            asset.available_formats = formats
            updated += 1
    await session.commit()
    return updated


async def main():
    print("📦 Creating tables...")
    await create_tables()

    admin_username = os.getenv("ADMIN_USERNAME", "admin")
    admin_email = os.getenv("ADMIN_EMAIL", "admin@threely.com")
    admin_password = os.getenv("ADMIN_PASSWORD", "admin1234")

    async with async_session_maker() as session:
        if await ensure_admin(session, admin_username, admin_email, admin_password):
            print(f"👤 Created admin user {admin_username}.")
        else:
            print(f"✅ Admin user {admin_username} already exists.")

        print("📦 Backfilling asset formats...")
        updated = await backfill_assets(session)
        print(f"✅ {updated} asset(s) updated.")

    await engine.dispose()
    print("🎉 Backend initialization complete.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception as e:
        print("❌ Error:", e)
        sys.exit(1)
