import time

import pytest
from bson import ObjectId

from lostfound_chat.errors import NotAuthenticated
from lostfound_chat.utils.security import bearer_token, create_access_token

from conftest import SECRET


async def test_authenticate_resolves_display_fields(services, users, alice):
    principal = await services.identity.authenticate(create_access_token(alice.id, SECRET))
    assert principal == alice


async def test_legacy_user_id_claim(services, users, bob):
    token = create_access_token(None, SECRET, userId=bob.id)
    assert (await services.identity.authenticate(token)).id == bob.id


@pytest.mark.parametrize(
    "token",
    [
        None,
        "",
        "not-a-jwt",
        create_access_token(str(ObjectId()), "another-secret"),
        create_access_token(str(ObjectId()), SECRET, exp=int(time.time()) - 60),
    ],
)
async def test_rejects_bad_tokens(services, users, token):
    with pytest.raises(NotAuthenticated):
        await services.identity.authenticate(token)


async def test_rejects_unknown_and_inactive_users(services, db, users, carol):
    with pytest.raises(NotAuthenticated):
        await services.identity.authenticate(create_access_token(str(ObjectId()), SECRET))

    await db.users.update_one({"_id": ObjectId(carol.id)}, {"$set": {"is_active": False}})
    with pytest.raises(NotAuthenticated):
        await services.identity.authenticate(create_access_token(carol.id, SECRET))
    assert await services.identity.lookup(carol.id) is None


@pytest.mark.parametrize(
    "header, expected",
    [("Bearer abc", "abc"), ("bearer abc ", "abc"), ("Basic abc", None), ("Bearer", None), (None, None)],
)
def test_bearer_token(header, expected):
    assert bearer_token(header) == expected
