import pytest

from faktory.storage.raw import NilValueError, RedisKV


class FakeRedis:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = bytes(value)
        return True


@pytest.fixture
def kv():
    return RedisKV(FakeRedis())


def test_redis_kv(kv):
    assert kv.get("mike") is None

    with pytest.raises(NilValueError):
        kv.set("bob", None)

    kv.set("mike", b"bob")
    assert kv.get("mike") == b"bob"


def test_nil_value_error_message():
    assert str(NilValueError()) == "Nil value not allowed"


def test_overwrite(kv):
    kv.set("k", b"one")
    kv.set("k", b"two")
    assert kv.get("k") == b"two"


def test_str_values_come_back_as_bytes():
    client = FakeRedis()
    client.data["k"] = "text"
    assert RedisKV(client).get("k") == b"text"