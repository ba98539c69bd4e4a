"""Row filters: PostgREST encoding and local evaluation."""

import pytest

from inbox_sync.transport import filters


def test_plain_values_encode_as_eq():
    assert filters.to_params({"user_id": "u1"}, order="created_at.asc") == {
        "user_id": "eq.u1",
        "order": "created_at.asc",
    }


def test_operators_encode():
    params = filters.to_params({
        "id": filters.in_(["P1", "P2"]),
        "phone": filters.ilike("%555%"),
        "name": filters.neq("x"),
    })
    assert params == {"id": "in.(P1,P2)", "phone": "ilike.%555%", "name": "neq.x"}


def test_between_encodes_or_of_and():
    params = filters.to_params(filters.between("u1", "P1"))
    assert params == {
        "or": "(and(sender_id.eq.u1,receiver_id.eq.P1),and(sender_id.eq.P1,receiver_id.eq.u1))",
    }


def test_involving_encodes_flat_or():
    assert filters.to_params(filters.involving("u1")) == {"or": "(sender_id.eq.u1,receiver_id.eq.u1)"}


def test_between_matches_both_directions_only():
    f = filters.between("u1", "P1")
    assert filters.matches({"sender_id": "u1", "receiver_id": "P1"}, f)
    assert filters.matches({"sender_id": "P1", "receiver_id": "u1"}, f)
    assert not filters.matches({"sender_id": "P2", "receiver_id": "u1"}, f)


def test_matches_compares_as_text():
    assert filters.matches({"id": 5}, {"id": "5"})
    assert filters.matches({"id": 5}, {"id": filters.in_(["4", "5"])})
    assert not filters.matches({"id": None}, {"id": "5"})
    assert filters.matches({}, {"id": filters.neq("5")})


def test_ilike_is_case_insensitive_wildcard():
    cond = {"phone": filters.ilike("%55-01%")}
    assert filters.matches({"phone": "555-0101"}, cond)
    assert not filters.matches({"phone": "444"}, cond)
    assert filters.matches({"name": "ALICE"}, {"name": filters.ilike("al%")})


def test_empty_filter_matches_everything():
    assert filters.matches({"a": 1}, None)
    assert filters.to_params(None) == {}


def test_unknown_operator_rejected():
    with pytest.raises(ValueError):
        filters.Condition("gt", 1).test(2)
