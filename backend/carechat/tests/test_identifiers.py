import uuid
from datetime import datetime, timedelta, timezone

from carechat.user_id import generate_user_id
from carechat.utils.identifiers import as_utc, generate_uuid7


def test_uuid7_ids_are_version_7_and_strictly_increasing():
    ids = [generate_uuid7() for _ in range(2000)]

    assert all(uuid.UUID(value).version == 7 for value in ids)
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)


def test_as_utc_normalises_naive_and_offset_datetimes():
    naive = datetime(2026, 1, 2, 3, 4, 5)
    plus_two = datetime(2026, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2)))

    assert as_utc(None) is None
    assert as_utc(naive) == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert as_utc(plus_two).tzinfo == timezone.utc
    assert as_utc(plus_two).hour == 3


def test_user_ids_carry_a_prefix():
    assert generate_user_id().startswith("USR-")
    assert len(generate_user_id(prefix="")) == 8
