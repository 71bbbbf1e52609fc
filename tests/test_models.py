import uuid

import pytest

from threely.models import Asset, AssetValidationError, User, utcnow


def _user(is_admin=False):
    return User(
        id=uuid.uuid4(),
        username="viewer",
        email="viewer@example.com",
        hashed_password="x",
        is_admin=is_admin,
        liked_assets=[],
    )


async def test_glb_entry_is_mirrored_into_legacy_model_file(session):
    asset = Asset(
        name="Rex",
        model_files={"glb": {"filename": "rex.glb", "url": "https://cdn.example.com/rex.glb", "publicId": "m/rex", "size": 10}},
        available_formats=["glb"],
    )
    session.add(asset)
    await session.commit()

    assert asset.model_file["url"] == "https://cdn.example.com/rex.glb"
    assert asset.model_file["filename"] == "rex.glb"
    assert asset.model_file["publicId"] == "m/rex"


async def test_mirrored_model_file_gets_defaults(session):
    asset = Asset(name="Rex", model_files={"glb": {"url": "https://cdn.example.com/rex.glb"}})
    session.add(asset)
    await session.commit()

    assert asset.model_file == {
        "filename": "model.glb",
        "url": "https://cdn.example.com/rex.glb",
        "publicId": "model",
        "size": 0,
    }


async def test_asset_without_any_model_url_is_rejected(session):
    session.add(Asset(name="Empty", model_files={"fbx": {"url": "https://cdn.example.com/a.fbx"}}))
    with pytest.raises(AssetValidationError):
        await session.commit()


async def test_legacy_model_file_alone_is_enough(session):
    asset = Asset(name="Old", model_file={"filename": "old.glb", "url": "https://cdn.example.com/old.glb"})
    session.add(asset)
    await session.commit()

    assert asset.get_model_file("glb")["url"] == "https://cdn.example.com/old.glb"
    assert asset.has_format("glb")
    assert not asset.has_format("fbx")


def test_validate_model_files_directly():
    with pytest.raises(AssetValidationError):
        Asset(name="Nothing").validate_model_files()


@pytest.mark.parametrize("polygons", [99, 1_000_001])
def test_polygon_bounds(polygons):
    with pytest.raises(ValueError):
        Asset(name="Rex", polygons=polygons)


def test_tags_are_lowercased():
    asset = Asset(name="Rex", tags=["Generated", " AI ", ""])
    assert asset.tags == ["generated", "ai"]


def test_popularity_is_derived_and_capped():
    asset = Asset(name="Rex", downloads=2, views=15)
    assert asset.update_popularity() == 3

    asset.downloads = 500
    asset.increment_views()
    assert asset.popularity == 100


def test_add_format_updates_available_formats():
    asset = Asset(name="Rex", model_files={}, available_formats=[])
    asset.add_format("fbx", {"url": "https://cdn.example.com/rex.fbx"})
    asset.add_format("fbx", {"url": "https://cdn.example.com/rex2.fbx"})

    assert asset.available_formats == ["fbx"]
    assert asset.model_files["fbx"]["url"] == "https://cdn.example.com/rex2.fbx"
    with pytest.raises(ValueError):
        asset.add_format("stl", {"url": "x"})


def test_private_asset_visibility():
    owner, stranger, admin = _user(), _user(), _user(is_admin=True)
    asset = Asset(name="Mine", is_public=False, user_id=owner.id)

    assert asset.can_be_viewed_by(owner)
    assert asset.can_be_viewed_by(admin)
    assert not asset.can_be_viewed_by(stranger)
    assert not asset.can_be_viewed_by(None)


def test_create_user_asset_is_private():
    owner = _user()
    asset = Asset.create_user_asset(owner, name="Mine")

    assert asset.is_public is False
    assert asset.is_user_generated is True
    assert asset.category == "user_generated"
    assert asset.created_by == str(owner.id)
    assert asset.is_owned_by(owner)


@pytest.mark.parametrize("username", ["ab", "a" * 21, "bad name!"])
def test_invalid_usernames(username):
    with pytest.raises(ValueError):
        User(username=username, email="a@example.com", hashed_password="x")


def test_email_is_normalized():
    user = User(username="bob", email="  Bob@Example.COM ", hashed_password="x")
    assert user.email == "bob@example.com"


def test_toggle_liked_asset():
    user = _user()
    asset = Asset(id=uuid.uuid4(), name="Rex")

    assert user.toggle_liked_asset(asset) is True
    assert user.liked_assets == [asset]
    assert user.toggle_liked_asset(asset) is False
    assert user.liked_assets == []


def test_admin_has_unlimited_tokens():
    assert _user(is_admin=True).has_enough_tokens(50)
    poor = _user()
    poor.tokens = 0
    assert not poor.has_enough_tokens()


async def test_public_gallery_filters(make_asset, make_user, session):
    owner = await make_user("owner")
    await make_asset(name="Public")
    await make_asset(name="Featured", is_public=False, category="featured")
    await make_asset(name="Private", is_public=False, category="user_generated", is_user_generated=True, user_id=owner.id)
    await make_asset(name="Hidden", is_active=False)

    names = {a.name for a in await Asset.find_public_assets(session)}
    assert names == {"Public", "Featured"}

    mine = await Asset.find_user_assets(session, owner.id)
    assert [a.name for a in mine] == ["Private"]


async def test_find_by_login_matches_email_or_username(make_user, session):
    await make_user("CamelCase", email="camel@example.com")

    assert (await User.find_by_login(session, "camelcase")).username == "CamelCase"
    assert (await User.find_by_login(session, "CAMEL@example.com")).username == "CamelCase"
    assert await User.find_by_login(session, "nobody") is None


async def test_breed_popularity_and_published_finders(make_asset, session):
    await make_asset(name="Beagle One", breed="Beagle", popularity=5)
    await make_asset(name="Poodle", breed="Poodle", popularity=90)
    source = await make_asset(name="Source", breed="Beagle", is_public=False, popularity=100)
    await make_asset(
        name="Published",
        was_user_generated=True,
        source_user_asset_id=source.id,
        published_to_homepage_at=utcnow(),
    )

    assert {a.name for a in await Asset.find_by_breed(session, "beagle")} == {"Beagle One", "Source"}
    assert [a.name for a in await Asset.find_popular(session, limit=2)] == ["Poodle", "Beagle One"]
    assert [a.name for a in await Asset.find_published_user_assets(session)] == ["Published"]
    assert await Asset.is_user_asset_published(session, source.id) is True
