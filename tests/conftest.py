import sys
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

PROJECT_DIR = Path(__file__).resolve().parent.parent
if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

import idlctx  # noqa: E402


@pytest.fixture
def db_builder() -> idlctx.DatabaseBuilder:
    return idlctx.DatabaseBuilder()


@pytest.fixture
def make_context() -> Callable[..., idlctx.Context]:
    def _make_context(
        db: idlctx.Database,
        *,
        mode: idlctx.Mode | None = None,
        collect: idlctx.CollectMode | None = None,
        input_items: Iterable[idlctx.DefId] = (),
        change_case: bool = True,
    ) -> idlctx.Context:
        builder = idlctx.ContextBuilder(
            db,
            mode if mode is not None else idlctx.SingleFile(Path("out.rs")),
            input_items,
        )
        builder.collect(collect if collect is not None else idlctx.CollectAll())
        return builder.build(change_case=change_case)

    return _make_context


class SampleIds:
    """Definition ids of the shared sample database, by source name."""

    def __init__(self, **ids: idlctx.DefId):
        self.__dict__.update(ids)


@pytest.fixture
def sample(db_builder: idlctx.DatabaseBuilder) -> tuple[idlctx.Database, SampleIds]:
    """A small single-package database used by literal and naming tests.

    Package `demo`:
        enum Color { A = 1, B = 2 }
        struct Point { x: i32, y: optional i32 }
        newtype UserId(i64)
        const greeting: str = "hi"
        const max_size: i16 = 5
    """
    b = db_builder
    file_id = b.add_file("idl/demo.thrift", ["demo"])
    color = b.add_enum(
        file_id,
        "Color",
        [idlctx.VariantDecl("A", discr=1), idlctx.VariantDecl("B", discr=2)],
    )
    point = b.add_message(
        file_id,
        "Point",
        [
            idlctx.FieldDecl("x", idlctx.I32),
            idlctx.FieldDecl("y", idlctx.I32, optional=True),
        ],
    )
    user_id = b.add_newtype(file_id, "UserId", idlctx.I64)
    greeting = b.add_const(file_id, "greeting", idlctx.STR, idlctx.StrLit("hi"))
    max_size = b.add_const(file_id, "max_size", idlctx.I16, idlctx.IntLit(5))
    db = b.freeze()
    return db, SampleIds(
        color=color,
        point=point,
        user_id=user_id,
        greeting=greeting,
        max_size=max_size,
    )
