from __future__ import annotations

import pytest

import idlctx

A = idlctx.DefId(1)
B = idlctx.DefId(2)
C = idlctx.DefId(3)


@pytest.mark.parametrize(
    "ty",
    [idlctx.I32, idlctx.STR, idlctx.FASTSTR, idlctx.Vec(idlctx.BYTES), idlctx.Map(idlctx.STR, idlctx.F64)],
)
def test_types_without_references_report_nothing(ty: idlctx.Ty) -> None:
    assert idlctx.type_paths(ty) == []


def test_named_reference_is_reported_once() -> None:
    assert idlctx.type_paths(idlctx.DefRef(A)) == [A]


def test_wrappers_are_walked_but_not_reported() -> None:
    ty = idlctx.StaticRef(idlctx.LazyStaticRef(idlctx.Array(idlctx.Vec(idlctx.DefRef(A)), 4)))

    assert idlctx.type_paths(ty) == [A]


def test_references_are_reported_in_tree_order() -> None:
    ty = idlctx.Map(
        idlctx.DefRef(B),
        idlctx.Vec(idlctx.Map(idlctx.DefRef(A), idlctx.DefRef(C))),
    )

    assert idlctx.type_paths(ty) == [B, A, C]


def test_repeated_references_are_reported_per_occurrence() -> None:
    ty = idlctx.Map(idlctx.DefRef(A), idlctx.DefRef(A))

    seen: list[idlctx.DefId] = []
    idlctx.visit_type_paths(ty, seen.append)

    assert seen == [A, A]


def test_unknown_primitive_name_is_rejected() -> None:
    with pytest.raises(ValueError):
        idlctx.Prim("u128")
