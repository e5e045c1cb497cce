from __future__ import annotations

from collections.abc import Callable
from types import SimpleNamespace

import pytest

import idlctx


@pytest.mark.parametrize(
    ("name", "snake", "camel", "shouty"),
    [
        ("user_info", "user_info", "UserInfo", "USER_INFO"),
        ("maxRetries", "max_retries", "MaxRetries", "MAX_RETRIES"),
        ("HTTPServer", "http_server", "HttpServer", "HTTP_SERVER"),
        ("InnerMod", "inner_mod", "InnerMod", "INNER_MOD"),
        ("kebab-name.v2", "kebab_name_v2", "KebabNameV2", "KEBAB_NAME_V2"),
    ],
)
def test_case_conversions(name: str, snake: str, camel: str, shouty: str) -> None:
    assert idlctx.to_snake_case(name) == snake
    assert idlctx.to_upper_camel_case(name) == camel
    assert idlctx.to_shouty_snake_case(name) == shouty


@pytest.mark.parametrize(
    ("ident", "expected"),
    [("type", "r#type"), ("match", "r#match"), ("self", "self_"), ("Self", "Self_"), ("id", "id")],
)
def test_keywords_are_escaped(ident: str, expected: str) -> None:
    assert idlctx.escape_ident(ident) == expected


def _naming_db(b: idlctx.DatabaseBuilder) -> SimpleNamespace:
    api = b.add_file("api.thrift", ["demo", "api"])
    other = b.add_file("other.thrift", ["demo", "other"])

    user_info = b.add_message(
        api,
        "user_info",
        [idlctx.FieldDecl("userName", idlctx.STR), idlctx.FieldDecl("type", idlctx.I32)],
    )
    status = b.add_enum(api, "status_code", [idlctx.VariantDecl("not_found", discr=1)])
    err_kind = b.add_enum(
        api,
        "err_kind",
        [idlctx.VariantDecl("not_found", discr=1)],
        tags={idlctx.TagKind.ENUM_MODE: idlctx.EnumMode.NEW_TYPE},
    )
    service = b.add_service(
        api,
        "user_service",
        [idlctx.MethodDecl("GetUser", (("userName", idlctx.STR),), idlctx.DefRef(user_info))],
    )
    user_id = b.add_newtype(api, "user_id", idlctx.I64)
    max_retries = b.add_const(api, "maxRetries", idlctx.I32, idlctx.IntLit(3))
    server = b.add_message(api, "HTTPServer")
    renamed = b.add_message(
        api, "legacy_thing", tags={idlctx.TagKind.NAME_OVERRIDE: "Legacy_Thing"}
    )
    self_mod = b.add_mod(api, "self")

    foo = b.add_message(api, "Foo", [idlctx.FieldDecl("count", idlctx.I32)])
    inner = b.add_mod(api, "InnerMod")
    bar = b.add_message(api, "Bar", parent=inner)
    baz = b.add_message(other, "Baz")

    return SimpleNamespace(
        db=b.freeze(),
        user_info=user_info,
        status=status,
        err_kind=err_kind,
        service=service,
        user_id=user_id,
        max_retries=max_retries,
        server=server,
        renamed=renamed,
        self_mod=self_mod,
        foo=foo,
        inner=inner,
        bar=bar,
        baz=baz,
    )


@pytest.fixture
def names(db_builder: idlctx.DatabaseBuilder) -> SimpleNamespace:
    return _naming_db(db_builder)


# ===--- Canonical names ---=== #


def test_items_follow_kind_case_conventions(
    names: SimpleNamespace, make_context: Callable[..., idlctx.Context]
) -> None:
    cx = make_context(names.db)

    assert cx.canonical_name(names.user_info) == "UserInfo"
    assert cx.canonical_name(names.status) == "StatusCode"
    assert cx.canonical_name(names.service) == "UserService"
    assert cx.canonical_name(names.user_id) == "UserId"
    assert cx.canonical_name(names.max_retries) == "MAX_RETRIES"
    assert cx.canonical_name(names.inner) == "inner_mod"
    assert cx.canonical_name(names.server) == "HttpServer"
    assert cx.canonical_name(names.self_mod) == "self_"


def test_sub_nodes_follow_kind_case_conventions(
    names: SimpleNamespace, make_context: Callable[..., idlctx.Context]
) -> None:
    cx = make_context(names.db)
    user_name, type_field = names.db.item(names.user_info).fields
    method = names.db.item(names.service).methods[0]

    assert cx.canonical_name(user_name.def_id) == "user_name"
    assert cx.canonical_name(type_field.def_id) == "r#type"
    assert cx.canonical_name(method.def_id) == "get_user"
    assert cx.canonical_name(method.args[0].def_id) == "user_name"


def test_variant_case_depends_on_enum_mode(
    names: SimpleNamespace, make_context: Callable[..., idlctx.Context]
) -> None:
    cx = make_context(names.db)
    plain = names.db.item(names.status).variants[0]
    newtype = names.db.item(names.err_kind).variants[0]

    assert cx.canonical_name(plain.def_id) == "NotFound"
    assert cx.canonical_name(newtype.def_id) == "NOT_FOUND"


def test_names_pass_through_with_case_change_off(
    names: SimpleNamespace, make_context: Callable[..., idlctx.Context]
) -> None:
    cx = make_context(names.db, change_case=False)
    variant = names.db.item(names.err_kind).variants[0]

    assert cx.canonical_name(names.user_info) == "user_info"
    assert cx.canonical_name(names.max_retries) == "maxRetries"
    assert cx.canonical_name(variant.def_id) == "not_found"


@pytest.mark.parametrize("change_case", [True, False])
def test_name_override_always_wins(
    names: SimpleNamespace,
    make_context: Callable[..., idlctx.Context],
    change_case: bool,
) -> None:
    cx = make_context(names.db, change_case=change_case)

    assert cx.canonical_name(names.renamed) == "Legacy_Thing"
    assert cx.symbol_name(names.renamed) == "legacy_thing"


# ===--- Single-unit paths ---=== #


def test_item_path_is_package_then_name(
    names: SimpleNamespace, make_context: Callable[..., idlctx.Context]
) -> None:
    cx = make_context(names.db)

    assert cx.item_path(names.foo) == ("demo", "api", "Foo")
    assert cx.item_path(names.bar) == ("demo", "api", "inner_mod", "Bar")
    assert cx.mod_path(names.bar) == ("demo", "api", "inner_mod")


def test_sub_node_path_extends_its_owner(
    names: SimpleNamespace, make_context: Callable[..., idlctx.Context]
) -> None:
    cx = make_context(names.db)
    count = names.db.item(names.foo).fields[0]

    assert cx.item_path(count.def_id) == ("demo", "api", "Foo", "count")
    assert cx.mod_path(count.def_id) == ("demo", "api", "Foo")


def test_related_paths_walk_up_and_down(
    names: SimpleNamespace, make_context: Callable[..., idlctx.Context]
) -> None:
    cx = make_context(names.db)

    assert cx.related_item_path(names.foo, names.bar) == "inner_mod::Bar"
    assert cx.related_item_path(names.bar, names.foo) == "super::Foo"
    assert cx.related_item_path(names.foo, names.baz) == "super::other::Baz"
    assert cx.related_item_path(names.bar, names.baz) == "super::super::other::Baz"
    assert cx.related_item_path(names.foo, names.foo) == "Foo"


def test_current_item_relative_path(
    names: SimpleNamespace, make_context: Callable[..., idlctx.Context]
) -> None:
    cx = make_context(names.db)

    with idlctx.rendering(cx, names.bar):
        assert cx.cur_related_item_path(names.user_id) == "super::UserId"


@pytest.mark.parametrize(
    ("from_mod", "to_path", "expected"),
    [
        ((), ("a", "B"), "a::B"),
        (("a",), ("a", "B"), "B"),
        (("a", "x", "y"), ("a", "B"), "super::super::B"),
        (("a",), ("b", "c", "D"), "super::b::c::D"),
    ],
)
def test_related_path_without_context(
    from_mod: tuple[str, ...], to_path: tuple[str, ...], expected: str
) -> None:
    assert idlctx.PathResolver().related_path(from_mod, to_path) == expected


def test_def_id_info_uses_source_names(
    names: SimpleNamespace, make_context: Callable[..., idlctx.Context]
) -> None:
    cx = make_context(names.db)

    assert cx.def_id_info(names.user_info) == "demo::api::user_info"
