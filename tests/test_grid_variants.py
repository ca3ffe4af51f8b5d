import types

import pytest

from backend.grid_variants import (
    InsufficientMembersError,
    InvalidOrderError,
    build_positions,
    find_variant,
    generate_grid_variants,
    iter_grid_variants,
    resolve_member_id,
)


def member(identifier, photo=True):
    entry = {"id": identifier, "name": identifier.upper()}
    if photo:
        entry["photo"] = f"https://cdn.example.com/{identifier}.jpg"
    return entry


def test_one_variant_per_photographed_member():
    order = {
        "id": "order-1",
        "gridTemplate": "square",
        "members": [member("a"), member("b", photo=False), member("c"), member("d")],
    }
    variants = generate_grid_variants(order)
    assert [variant.id for variant in variants] == ["variant-a", "variant-c", "variant-d"]


def test_center_member_sits_at_center_index_and_others_fill_in_order():
    order = {"members": [member(name) for name in "abcde"]}
    variants = generate_grid_variants(order)

    # 5 members -> 3x3 grid, center index 4.
    third = variants[2]
    assert third.grid_dimensions == {"cols": 3, "rows": 3, "total_cells": 9}
    assert third.center_index == 4
    assert [m["id"] if m else None for m in third.members] == ["a", "b", "d", "e", "c"]


def test_trailing_empty_cells_are_dropped():
    order = {"members": [member(name) for name in "abc"]}
    variant = generate_grid_variants(order)[0]
    assert variant.center_index == 2
    assert [m["id"] for m in variant.members] == ["b", "c", "a"]


def test_two_members_leave_interior_gap():
    order = {"members": [member("a"), member("b")]}
    variant = generate_grid_variants(order)[1]
    assert [m["id"] if m else None for m in variant.members] == ["a", None, "b"]


def test_every_member_appears_exactly_once():
    order = {"members": [member(f"m{index}") for index in range(12)]}
    for variant in generate_grid_variants(order):
        ids = [m["id"] for m in variant.members if m]
        assert sorted(ids) == sorted(f"m{index}" for index in range(12))
        assert variant.members[variant.center_index]["id"] == variant.center_member["id"]


def test_defaults_template_to_square_and_accepts_snake_case():
    order = {"members": [member("a"), member("b"), member("c")]}
    assert generate_grid_variants(order)[0].grid_template == "square"
    order["grid_template"] = "circle"
    assert generate_grid_variants(order)[0].grid_template == "circle"


def test_member_ids_fall_back_to_roll_number_then_index():
    assert resolve_member_id({"id": "x"}, 3) == "x"
    assert resolve_member_id({"memberRollNumber": "R-9"}, 3) == "R-9"
    assert resolve_member_id({}, 3) == "member-3"

    order = {
        "members": [
            {"memberRollNumber": "R-1", "photo": "p1"},
            {"photo": "p2"},
            {"name": "no photo"},
        ]
    }
    assert [variant.id for variant in generate_grid_variants(order)] == ["variant-R-1", "variant-member-1"]


def test_missing_members_raise_invalid_order():
    with pytest.raises(InvalidOrderError, match="members array is missing or invalid"):
        generate_grid_variants({"members": "nope"})
    with pytest.raises(InvalidOrderError, match="Order has no members"):
        generate_grid_variants({"members": []})


def test_fewer_than_two_photos_raise():
    order = {"members": [member("a"), member("b", photo=False), member("c", photo=False)]}
    with pytest.raises(InsufficientMembersError, match=r"found 1, need at least 2"):
        generate_grid_variants(order)


def test_iter_grid_variants_is_lazy():
    order = {"members": [member(name) for name in "abcd"]}
    iterator = iter_grid_variants(order)
    assert isinstance(iterator, types.GeneratorType)
    assert next(iterator).id == "variant-a"


def test_to_dict_uses_camel_case_keys():
    variant = generate_grid_variants({"members": [member("a"), member("b"), member("c")]})[0]
    payload = variant.to_dict()
    assert set(payload) == {"id", "centerMember", "members", "centerIndex", "gridTemplate", "gridDimensions"}
    assert payload["centerMember"]["id"] == "a"


def test_find_variant():
    variants = generate_grid_variants({"members": [member("a"), member("b")]})
    assert find_variant(variants, "variant-b") is variants[1]
    assert find_variant(variants, "variant-z") is None


def test_build_positions_without_center_member_elsewhere():
    members = [{"id": "a"}, {"id": "b"}]
    assert build_positions(members, members[0], 0, 4) == [members[0], members[1]]
