from carechat.apps.accounts import directory
from carechat.apps.accounts.models import User


def _user(db, username, **fields):
    user = User(username=username, email=f"{username}@example.com", **fields)
    db.add(user)
    db.commit()
    return user


def test_users_table_carries_directory_fields_only():
    assert set(User.__table__.c.keys()) == {
        "id",
        "username",
        "email",
        "full_name",
        "avatar_url",
        "is_active",
        "is_anonymous",
        "created_at",
    }


def test_lookups_respect_the_active_flag(db_session):
    active = _user(db_session, "rosa", full_name="Rosa Reyes")
    retired = _user(db_session, "sam", is_active=False)

    assert active.id.startswith("USR-")
    assert directory.get_user(db_session, f"  {active.id} ") is active
    assert directory.get_user(db_session, "") is None
    assert directory.get_active_user(db_session, retired.id) is None
    assert set(directory.get_users(db_session, [active.id, retired.id, None])) == {active.id, retired.id}


def test_anonymous_members_show_only_their_username(db_session):
    hidden = _user(
        db_session,
        "quietfox",
        full_name="Quinn Fox",
        avatar_url="https://cdn.example.com/q.png",
        is_anonymous=True,
    )

    assert directory.display_name(hidden) == "quietfox"
    assert directory.public_profile(hidden) == {
        "id": hidden.id,
        "username": "quietfox",
        "fullName": None,
        "avatarURL": None,
    }
    assert directory.public_profile(None) is None
