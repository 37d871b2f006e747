import pytest

from api.v1.infra.jobs.params import canonicalize, params_equal, params_hash


def test_key_order_does_not_matter():
    left = {"account": "acc1", "options": {"depth": 2, "full": True}}
    right = {"options": {"full": True, "depth": 2}, "account": "acc1"}

    assert params_equal(left, right)
    assert params_hash(left) == params_hash(right)


def test_integral_floats_equal_ints():
    assert params_equal({"limit": 10}, {"limit": 10.0})
    assert params_hash({"limit": 10}) == params_hash({"limit": 10.0})
    assert not params_equal({"limit": 10}, {"limit": 10.5})


def test_booleans_are_not_numbers():
    assert not params_equal({"flag": True}, {"flag": 1})
    assert params_hash({"flag": True}) != params_hash({"flag": 1})


def test_list_order_matters():
    assert not params_equal({"ids": [1, 2]}, {"ids": [2, 1]})


def test_missing_params_equal_empty():
    assert params_equal(None, {})
    assert params_hash({}) == params_hash({})


def test_canonicalize_rejects_non_json_values():
    with pytest.raises(TypeError, match="JSON-compatible"):
        canonicalize({"when": object()})


def test_hash_is_hex_sha256():
    digest = params_hash({"account": "acc1"})
    assert len(digest) == 64
    int(digest, 16)
