import datetime as dt
import threading

import pytest

from webcontext.store import KeyStore


def test_set_get_and_missing():
    store = KeyStore()
    store.set("foo", "bar")
    assert store.get("foo") == "bar"
    assert "foo" in store
    assert store.get("foo2") is None
    assert "foo2" not in store
    assert store.get("foo2", "fallback") == "fallback"
    assert store.must_get("foo") == "bar"


def test_must_get_missing_raises():
    store = KeyStore()
    with pytest.raises(KeyError, match='Key "no_exist" does not exist'):
        store.must_get("no_exist")


def test_set_get_values_keep_their_types():
    store = KeyStore()
    store.set("string", "this is a string")
    store.set("int", -42)
    store.set("big", 42424242424242)
    store.set("float", 4.2)
    assert store.must_get("string") == "this is a string"
    assert store.must_get("int") == -42
    assert store.must_get("big") == 42424242424242
    assert store.must_get("float") == pytest.approx(4.2, abs=0.01)


def test_typed_getters():
    store = KeyStore()
    store.set("string", "this is a string")
    store.set("bool", True)
    store.set("int", 1)
    store.set("uint64", 18446744073709551615)
    store.set("float64", 4.2)
    moment = dt.datetime(2017, 1, 1, 12, 0, 0)
    store.set("time", moment)
    store.set("duration", dt.timedelta(seconds=1))
    store.set("slice", ["foo"])
    assert store.get_string("string") == "this is a string"
    assert store.get_bool("bool") is True
    assert store.get_int("int") == 1
    assert store.get_int("uint64") == 18446744073709551615
    assert store.get_float("float64") == pytest.approx(4.2, abs=0.01)
    assert store.get_time("time") == moment
    assert store.get_duration("duration") == dt.timedelta(seconds=1)
    assert store.get_string_list("slice") == ["foo"]


def test_typed_getters_return_zero_values_on_mismatch():
    store = KeyStore()
    store.set("string", "text")
    store.set("bool", True)
    assert store.get_int("string") == 0
    assert store.get_int("bool") == 0
    assert store.get_bool("string") is False
    assert store.get_string("missing") == ""
    assert store.get_float("string") == 0.0
    assert store.get_time("string") is None
    assert store.get_duration("string") == dt.timedelta(0)
    assert store.get_string_list("string") == []
    assert store.get_string_map("string") == {}


def test_string_maps():
    store = KeyStore()
    store.set("map", {"foo": 1})
    store.set("strmap", {"foo": "bar"})
    store.set("listmap", {"foo": ["foo"]})
    assert store.get_string_map("map") == {"foo": 1}
    assert store.get_string_map("map")["foo"] == 1
    assert store.get_string_map_string("strmap")["foo"] == "bar"
    assert store.get_string_map_string("map") == {}
    assert store.get_string_map_string_list("listmap") == {"foo": ["foo"]}
    assert store.get_string_map_string_list("strmap") == {}


def test_copy_is_independent():
    store = KeyStore()
    store.set("foo", "bar")
    duplicate = store.copy()
    assert duplicate == store
    duplicate.set("foo", "notBar")
    assert store.get("foo") == "bar"
    assert duplicate.get("foo") == "notBar"


def test_clear_empties_store():
    store = KeyStore({"a": 1, "b": 2})
    assert len(store) == 2
    store.clear()
    assert len(store) == 0
    assert store.to_dict() == {}


def test_concurrent_sets():
    store = KeyStore()

    def writer(prefix):
        for number in range(200):
            store.set(f"{prefix}{number}", number)

    threads = [threading.Thread(target=writer, args=(p,)) for p in "abcd"]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(store) == 800
    assert store.get("c199") == 199