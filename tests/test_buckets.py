import pytest

from dtmstore.buckets import BucketDB, BucketError


@pytest.fixture
def db(tmp_path):
    database = BucketDB(tmp_path / "test.db", timeout=1.0)
    yield database
    database.close()


def test_put_get_round_trip(db):
    with db.update() as tx:
        tx.create_bucket(b"data").put(b"key", b"value")
    with db.view() as tx:
        assert tx.bucket(b"data").get(b"key") == b"value"
        assert tx.bucket(b"data").get(b"other") is None


def test_str_keys_are_encoded(db):
    with db.update() as tx:
        tx.create_bucket("data").put("k", "v")
    with db.view() as tx:
        assert tx.bucket(b"data").get(b"k") == b"v"


def test_keys_are_sorted_bytewise(db):
    inserted = [b"z", b"a", b"gid101", b"gid001", b"B"]
    with db.update() as tx:
        bucket = tx.create_bucket(b"data")
        for key in inserted:
            bucket.put(key, key)
    with db.view() as tx:
        assert tx.bucket(b"data").keys() == sorted(inserted)


def test_items_seek_from_start(db):
    with db.update() as tx:
        bucket = tx.create_bucket(b"data")
        for key in (b"a", b"gid001", b"gid002", b"gid101", b"z"):
            bucket.put(key, b"v" + key)
    with db.view() as tx:
        got = [k for k, _ in tx.bucket(b"data").items(b"gid0")]
        pairs = list(tx.bucket(b"data").items(b"gid1"))
    assert got == [b"gid001", b"gid002", b"gid101", b"z"]
    assert pairs[0] == (b"gid101", b"vgid101")


def test_delete_during_iteration(db):
    with db.update() as tx:
        bucket = tx.create_bucket(b"data")
        for key in (b"a", b"b", b"c"):
            bucket.put(key, key)
    with db.update() as tx:
        bucket = tx.bucket(b"data")
        for key, _ in bucket.items():
            bucket.delete(key)
        bucket.delete(b"missing")
    with db.view() as tx:
        assert tx.bucket(b"data").keys() == []


def test_missing_bucket_is_none(db):
    with db.view() as tx:
        assert tx.bucket(b"nothing") is None
        assert tx.bucket_names() == []


def test_create_existing_bucket_raises(db):
    with db.update() as tx:
        tx.create_bucket(b"data")
    with pytest.raises(BucketError):
        with db.update() as tx:
            tx.create_bucket(b"data")


def test_create_if_not_exists_keeps_contents(db):
    with db.update() as tx:
        tx.create_bucket(b"data").put(b"k", b"v")
    with db.update() as tx:
        assert tx.create_bucket_if_not_exists(b"data").get(b"k") == b"v"


def test_delete_bucket(db):
    with db.update() as tx:
        tx.create_bucket(b"data").put(b"k", b"v")
    with db.update() as tx:
        tx.delete_bucket(b"data")
    with db.update() as tx:
        assert tx.bucket(b"data") is None
        with pytest.raises(BucketError):
            tx.delete_bucket(b"data")


def test_bucket_names_sorted(db):
    with db.update() as tx:
        for name in (b"kv", b"global", b"index", b"branches"):
            tx.create_bucket(name)
    with db.view() as tx:
        assert tx.bucket_names() == [b"branches", b"global", b"index", b"kv"]


def test_view_rejects_writes(db):
    with db.update() as tx:
        tx.create_bucket(b"data")
    with db.view() as tx:
        with pytest.raises(BucketError):
            tx.bucket(b"data").put(b"k", b"v")
        with pytest.raises(BucketError):
            tx.create_bucket(b"other")


def test_empty_key_rejected(db):
    with db.update() as tx:
        bucket = tx.create_bucket(b"data")
        with pytest.raises(BucketError):
            bucket.put(b"", b"v")


def test_exception_rolls_back(db):
    with db.update() as tx:
        tx.create_bucket(b"data")
    with pytest.raises(RuntimeError):
        with db.update() as tx:
            tx.bucket(b"data").put(b"k", b"v")
            raise RuntimeError("boom")
    with db.view() as tx:
        assert tx.bucket(b"data").get(b"k") is None


def test_closed_transaction_unusable(db):
    with db.update() as tx:
        bucket = tx.create_bucket(b"data")
    with pytest.raises(BucketError):
        bucket.get(b"k")


def test_nested_transaction_rejected(db):
    with db.update():
        with pytest.raises(BucketError):
            with db.view():
                pass


def test_persists_across_reopen(tmp_path):
    path = tmp_path / "persist.db"
    first = BucketDB(path)
    with first.update() as tx:
        tx.create_bucket(b"data").put(b"k", b"v")
    first.close()
    with BucketDB(path) as second:
        with second.view() as tx:
            assert tx.bucket(b"data").get(b"k") == b"v"


def test_closed_db_raises(tmp_path):
    database = BucketDB(tmp_path / "closed.db")
    database.close()
    with pytest.raises(BucketError):
        with database.view():
            pass