"""Code generation context for IDL compilers.

Drives the whole-graph decisions a code generator makes before and while
emitting text from a database of parsed interface definitions: which
definitions must be emitted, which output unit owns each one when output is
split across packages, how declared constant values lower into target
expressions, and which names and cross-reference paths to print.

Usage:
    db = DatabaseBuilder(...).freeze()
    config = parse_build_config({"mode": "single-file", "path": "out.rs"})
    cx = build_context(db, config)
    cx.exec_plugin(plugin)
"""

from __future__ import annotations

import contextvars
import enum
import logging
import os
import re
import sys
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import NamedTuple, NewType, Protocol

import structlog

logger = structlog.get_logger(__name__)


# ===--- Error contracts ---=== #


VALID_FATAL_CODES = {
    "UNKNOWN_DEF_ID",
    "UNKNOWN_FILE_ID",
    "UNSUPPORTED_LITERAL",
    "NO_ENUM_DISCRIMINANT",
    "INVALID_ANNOTATION",
    "NOT_WORKSPACE_MODE",
    "NO_CURRENT_ITEM",
    "UNLOCATED_DEF_ID",
}

VALID_CONFIG_CODES = {
    "INVALID_MODE",
    "INVALID_COLLECT_MODE",
    "INVALID_CHANGE_CASE",
    "MISSING_PATH",
    "TOUCHES_WITHOUT_ONLY_USED",
    "INVALID_TOUCH",
}


class FatalError(Exception):
    """Unrecoverable generation failure; the whole run must be discarded."""

    def __init__(self, code: str, message: str):
        if code not in VALID_FATAL_CODES:
            raise ValueError(f"Unknown fatal error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_CONFIG_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


# ===--- Logging ---=== #


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog and the standard-library root logger.

    Call once at start-up, before the first context is built.

    Args:
        log_level: Minimum severity level (e.g. "DEBUG", "INFO").
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ===--- Identities ---=== #


DefId = NewType("DefId", int)
FileId = NewType("FileId", int)
TagId = NewType("TagId", int)

EMPTY_TAG_ID = TagId(0)


# ===--- Type descriptions ---=== #


INTEGER_TYPE_NAMES = ("i8", "i16", "i32", "i64")
FLOAT_TYPE_NAMES = ("f32", "f64")
_INTEGER_RANGES = {
    name: (-(1 << (bits - 1)), (1 << (bits - 1)) - 1)
    for name, bits in (("i8", 8), ("i16", 16), ("i32", 32), ("i64", 64))
}
PRIMITIVE_TYPE_NAMES = frozenset(
    INTEGER_TYPE_NAMES + FLOAT_TYPE_NAMES + ("bool", "bytes", "str", "faststr")
)


@dataclass(frozen=True)
class Prim:
    """A primitive target type.

    `str` is the borrowed string view, `faststr` the owned string handle.
    """

    name: str

    def __post_init__(self) -> None:
        if self.name not in PRIMITIVE_TYPE_NAMES:
            raise ValueError(f"Unknown primitive type: {self.name}")


@dataclass(frozen=True)
class Array:
    elem: Ty
    size: int | None = None


@dataclass(frozen=True)
class Vec:
    elem: Ty


@dataclass(frozen=True)
class Map:
    key: Ty
    value: Ty


@dataclass(frozen=True)
class StaticRef:
    """Reference to an eagerly-initialized global."""

    inner: Ty


@dataclass(frozen=True)
class LazyStaticRef:
    """A lazily-initialized global holding `inner`."""

    inner: Ty


@dataclass(frozen=True)
class DefRef:
    """Reference to a named Message, Enum or NewType definition."""

    def_id: DefId


Ty = Prim | Array | Vec | Map | StaticRef | LazyStaticRef | DefRef

I8 = Prim("i8")
I16 = Prim("i16")
I32 = Prim("i32")
I64 = Prim("i64")
F32 = Prim("f32")
F64 = Prim("f64")
BOOL = Prim("bool")
BYTES = Prim("bytes")
STR = Prim("str")
FASTSTR = Prim("faststr")


# ===--- Literals ---=== #


@dataclass(frozen=True)
class StrLit:
    value: str


@dataclass(frozen=True)
class IntLit:
    value: int


@dataclass(frozen=True)
class FloatLit:
    """Float literal kept as its source text; parsed only when lowered."""

    text: str


@dataclass(frozen=True)
class BoolLit:
    value: bool


@dataclass(frozen=True)
class ListLit:
    items: tuple[Lit, ...]


@dataclass(frozen=True)
class MapLit:
    pairs: tuple[tuple[Lit, Lit], ...]


@dataclass(frozen=True)
class RefLit:
    """Reference to another definition (a constant or an enum variant)."""

    def_id: DefId


Lit = StrLit | IntLit | FloatLit | BoolLit | ListLit | MapLit | RefLit


# ===--- Annotations ---=== #


class TagKind(enum.Enum):
    NAME_OVERRIDE = "name_override"
    ENUM_MODE = "enum_mode"
    KEEP_UNKNOWN_FIELDS = "keep_unknown_fields"


class EnumMode(enum.Enum):
    """How an enum is represented in the target language."""

    ENUM = "enum"
    NEW_TYPE = "new_type"


_TAG_VALUE_TYPES: dict[TagKind, type] = {
    TagKind.NAME_OVERRIDE: str,
    TagKind.ENUM_MODE: EnumMode,
    TagKind.KEEP_UNKNOWN_FIELDS: bool,
}


class Tags:
    """Annotation set attached to a node, one value per TagKind.

    Raises:
        FatalError: INVALID_ANNOTATION when a value does not match its kind.
    """

    def __init__(self, entries: Mapping[TagKind, object] | None = None):
        checked: dict[TagKind, object] = {}
        for kind, value in (entries or {}).items():
            if not isinstance(kind, TagKind):
                raise FatalError("INVALID_ANNOTATION", f"Unknown annotation kind: {kind!r}")
            expected = _TAG_VALUE_TYPES[kind]
            if not isinstance(value, expected):
                raise FatalError(
                    "INVALID_ANNOTATION",
                    f"Annotation {kind.value} expects {expected.__name__}, "
                    f"got {type(value).__name__}",
                )
            checked[kind] = value
        self._entries = MappingProxyType(checked)

    def get(self, kind: TagKind, default: object = None) -> object:
        return self._entries.get(kind, default)

    def contains(self, kind: TagKind) -> bool:
        return kind in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k.value}={v!r}" for k, v in self._entries.items())
        return f"Tags({inner})"


# ===--- IDL nodes ---=== #


@dataclass(frozen=True)
class Variant:
    def_id: DefId
    name: str
    discr: int | None = None
    fields: tuple[Ty, ...] = ()


@dataclass(frozen=True)
class Field:
    def_id: DefId
    name: str
    ty: Ty
    optional: bool = False
    default: Lit | None = None


@dataclass(frozen=True)
class Arg:
    def_id: DefId
    name: str
    ty: Ty


@dataclass(frozen=True)
class Method:
    def_id: DefId
    name: str
    args: tuple[Arg, ...]
    ret: Ty


@dataclass(frozen=True)
class Message:
    name: str
    fields: tuple[Field, ...] = ()


@dataclass(frozen=True)
class Enum:
    name: str
    variants: tuple[Variant, ...] = ()


@dataclass(frozen=True)
class Service:
    name: str
    methods: tuple[Method, ...] = ()
    extend: tuple[DefId, ...] = ()


@dataclass(frozen=True)
class NewType:
    name: str
    ty: Ty


@dataclass(frozen=True)
class Const:
    name: str
    ty: Ty
    lit: Lit


@dataclass(frozen=True)
class Mod:
    """Pure namespace container; never emitted itself."""

    name: str
    items: tuple[DefId, ...] = ()


Item = Message | Enum | Service | NewType | Const | Mod
NodeKind = Item | Variant | Field | Method | Arg

ITEM_TYPES = (Message, Enum, Service, NewType, Const, Mod)


def is_item(kind: object) -> bool:
    return isinstance(kind, ITEM_TYPES)


@dataclass(frozen=True)
class Node:
    file_id: FileId
    kind: NodeKind
    parent: DefId | None = None
    related_nodes: tuple[DefId, ...] = ()
    tags: TagId = EMPTY_TAG_ID

    @property
    def name(self) -> str:
        return self.kind.name


@dataclass(frozen=True)
class File:
    """One source IDL file.

    Attributes:
        path: Normalized absolute path of the source file.
        package: Package path segments declared by the file.
        items: Top-level item ids defined in the file, in source order.
    """

    path: str
    package: tuple[str, ...]
    items: tuple[DefId, ...] = ()


# ===--- Definition database ---=== #


def normalize_path(path: str | os.PathLike[str]) -> str:
    return os.path.normpath(os.path.abspath(os.fspath(path)))


class Database:
    """Immutable store of nodes, files and annotation sets.

    Storage lives in read-only mapping proxies. snapshot() hands out a new
    view over the same storage; nothing is copied.
    """

    def __init__(
        self,
        nodes: Mapping[DefId, Node],
        files: Mapping[FileId, File],
        input_files: frozenset[FileId],
        tags_map: Mapping[TagId, Tags],
    ):
        self._nodes = MappingProxyType(dict(nodes))
        self._files = MappingProxyType(dict(files))
        self._input_files = frozenset(input_files)
        self._tags_map = MappingProxyType(dict(tags_map))
        self._file_ids = MappingProxyType({f.path: file_id for file_id, f in self._files.items()})

    def snapshot(self) -> Database:
        view = object.__new__(Database)
        view._nodes = self._nodes
        view._files = self._files
        view._input_files = self._input_files
        view._tags_map = self._tags_map
        view._file_ids = self._file_ids
        return view

    def shares_storage_with(self, other: Database) -> bool:
        return self._nodes is other._nodes and self._files is other._files

    def nodes(self) -> Mapping[DefId, Node]:
        return self._nodes

    def node(self, def_id: DefId) -> Node:
        try:
            return self._nodes[def_id]
        except KeyError:
            raise FatalError("UNKNOWN_DEF_ID", f"No node for definition id {def_id}") from None

    def item(self, def_id: DefId) -> Item:
        kind = self.node(def_id).kind
        if not is_item(kind):
            raise FatalError(
                "UNKNOWN_DEF_ID",
                f"Definition id {def_id} is a {type(kind).__name__}, not an item",
            )
        return kind

    def file(self, file_id: FileId) -> File:
        try:
            return self._files[file_id]
        except KeyError:
            raise FatalError("UNKNOWN_FILE_ID", f"No file for file id {file_id}") from None

    def files(self) -> Mapping[FileId, File]:
        return self._files

    def input_files(self) -> frozenset[FileId]:
        return self._input_files

    def file_ids_map(self) -> Mapping[str, FileId]:
        return self._file_ids

    def tags_map(self) -> Mapping[TagId, Tags]:
        return self._tags_map

    def tags(self, tag_id: TagId) -> Tags | None:
        return self._tags_map.get(tag_id)


@dataclass(frozen=True)
class FieldDecl:
    name: str
    ty: Ty
    optional: bool = False
    default: Lit | None = None
    tags: Mapping[TagKind, object] | None = None


@dataclass(frozen=True)
class VariantDecl:
    name: str
    discr: int | None = None
    fields: tuple[Ty, ...] = ()
    tags: Mapping[TagKind, object] | None = None


@dataclass(frozen=True)
class MethodDecl:
    name: str
    args: tuple[tuple[str, Ty], ...] = ()
    ret: Ty = BOOL


@dataclass
class _PendingNode:
    file_id: FileId
    kind: NodeKind
    parent: DefId | None
    tags: TagId
    related: list[DefId] = field(default_factory=list)


class DatabaseBuilder:
    """Assigns dense ids while a database is assembled, then freezes it.

    Ids are never reused. reserve() hands out an id before its item exists
    so self-referential and mutually-referential types can be declared.
    """

    def __init__(self) -> None:
        self._pending: dict[DefId, _PendingNode] = {}
        self._reserved: set[DefId] = set()
        self._files: dict[FileId, File] = {}
        self._file_items: dict[FileId, list[DefId]] = {}
        self._mod_items: dict[DefId, list[DefId]] = {}
        self._input_files: set[FileId] = set()
        self._tags: dict[TagId, Tags] = {EMPTY_TAG_ID: Tags()}
        self._next_def = 0
        self._next_file = 0
        self._next_tag = 1

    def add_file(
        self,
        path: str | os.PathLike[str],
        package: Sequence[str],
        *,
        is_input: bool = True,
    ) -> FileId:
        file_id = FileId(self._next_file)
        self._next_file += 1
        self._files[file_id] = File(path=normalize_path(path), package=tuple(package))
        self._file_items[file_id] = []
        if is_input:
            self._input_files.add(file_id)
        return file_id

    def add_tags(self, entries: Mapping[TagKind, object]) -> TagId:
        tag_id = TagId(self._next_tag)
        self._next_tag += 1
        self._tags[tag_id] = Tags(entries)
        return tag_id

    def reserve(self) -> DefId:
        def_id = self._mint()
        self._reserved.add(def_id)
        return def_id

    def relate(self, def_id: DefId, *related: DefId) -> None:
        self._pending[def_id].related.extend(related)

    def add_message(
        self,
        file_id: FileId,
        name: str,
        fields: Iterable[FieldDecl] = (),
        **options: object,
    ) -> DefId:
        def_id = self._claim(options)
        decls = list(fields)
        built = tuple(
            Field(self._mint(), f.name, f.ty, optional=f.optional, default=f.default)
            for f in decls
        )
        self._register(def_id, file_id, Message(name, built), options)
        for decl, f in zip(decls, built):
            self._register(f.def_id, file_id, f, {"parent": def_id, "tags": decl.tags})
        return def_id

    def add_enum(
        self,
        file_id: FileId,
        name: str,
        variants: Iterable[VariantDecl] = (),
        **options: object,
    ) -> DefId:
        def_id = self._claim(options)
        decls = list(variants)
        built = tuple(
            Variant(self._mint(), v.name, discr=v.discr, fields=tuple(v.fields))
            for v in decls
        )
        self._register(def_id, file_id, Enum(name, built), options)
        for decl, v in zip(decls, built):
            self._register(v.def_id, file_id, v, {"parent": def_id, "tags": decl.tags})
        return def_id

    def add_service(
        self,
        file_id: FileId,
        name: str,
        methods: Iterable[MethodDecl] = (),
        extend: Sequence[DefId] = (),
        **options: object,
    ) -> DefId:
        def_id = self._claim(options)
        built: list[Method] = []
        for decl in methods:
            method_id = self._mint()
            args = tuple(Arg(self._mint(), arg_name, arg_ty) for arg_name, arg_ty in decl.args)
            built.append(Method(method_id, decl.name, args, decl.ret))
        self._register(def_id, file_id, Service(name, tuple(built), tuple(extend)), options)
        for method in built:
            self._register(method.def_id, file_id, method, {"parent": def_id})
            for arg in method.args:
                self._register(arg.def_id, file_id, arg, {"parent": method.def_id})
        return def_id

    def add_newtype(self, file_id: FileId, name: str, ty: Ty, **options: object) -> DefId:
        def_id = self._claim(options)
        self._register(def_id, file_id, NewType(name, ty), options)
        return def_id

    def add_const(
        self, file_id: FileId, name: str, ty: Ty, lit: Lit, **options: object
    ) -> DefId:
        def_id = self._claim(options)
        self._register(def_id, file_id, Const(name, ty, lit), options)
        return def_id

    def add_mod(self, file_id: FileId, name: str, **options: object) -> DefId:
        """Add a module; items added later with parent=<this id> become its children."""
        def_id = self._claim(options)
        self._register(def_id, file_id, Mod(name), options)
        self._mod_items[def_id] = []
        return def_id

    def freeze(self) -> Database:
        """Materialize the database.

        Raises:
            ValueError: If a reserved id was never given an item.
            FatalError: INVALID_ANNOTATION for an enum mode on a non-enum node.
        """
        missing = sorted(self._reserved - self._pending.keys())
        if missing:
            raise ValueError(f"Reserved definition ids never defined: {missing}")

        nodes: dict[DefId, Node] = {}
        for def_id, pending in self._pending.items():
            kind = pending.kind
            if isinstance(kind, Mod):
                kind = replace(kind, items=tuple(self._mod_items[def_id]))
            if self._tags[pending.tags].contains(TagKind.ENUM_MODE) and not isinstance(
                kind, Enum
            ):
                raise FatalError(
                    "INVALID_ANNOTATION",
                    f"enum_mode annotation on {type(kind).__name__} `{kind.name}`",
                )
            nodes[def_id] = Node(
                file_id=pending.file_id,
                kind=kind,
                parent=pending.parent,
                related_nodes=tuple(pending.related),
                tags=pending.tags,
            )

        files = {
            file_id: replace(f, items=tuple(self._file_items[file_id]))
            for file_id, f in self._files.items()
        }
        return Database(nodes, files, frozenset(self._input_files), self._tags)

    def _mint(self) -> DefId:
        def_id = DefId(self._next_def)
        self._next_def += 1
        return def_id

    def _claim(self, options: Mapping[str, object]) -> DefId:
        reserved = options.get("def_id")
        if reserved is None:
            return self._mint()
        if reserved not in self._reserved or reserved in self._pending:
            raise ValueError(f"Definition id {reserved} was not reserved or is already defined")
        return reserved  # type: ignore[return-value]

    def _register(
        self,
        def_id: DefId,
        file_id: FileId,
        kind: NodeKind,
        options: Mapping[str, object],
    ) -> None:
        unknown = set(options) - {"def_id", "parent", "tags", "related"}
        if unknown:
            raise ValueError(f"Unknown node options: {sorted(unknown)}")
        if file_id not in self._files:
            raise ValueError(f"Unknown file id: {file_id}")

        parent = options.get("parent")
        raw_tags = options.get("tags")
        tag_id = self.add_tags(raw_tags) if raw_tags else EMPTY_TAG_ID  # type: ignore[arg-type]
        self._pending[def_id] = _PendingNode(
            file_id=file_id,
            kind=kind,
            parent=parent,  # type: ignore[arg-type]
            tags=tag_id,
            related=list(options.get("related", ())),  # type: ignore[call-overload]
        )

        if not is_item(kind):
            return
        if parent is None:
            self._file_items[file_id].append(def_id)
        elif parent in self._mod_items:
            self._mod_items[parent].append(def_id)  # type: ignore[index]
        else:
            raise ValueError(f"Item `{kind.name}` must be top-level or inside a module")


# ===--- Type visitor ---=== #


def visit_type_paths(ty: Ty, on_path: Callable[[DefId], None]) -> None:
    """Call on_path once per named-definition reference in ty, in tree order.

    Composite and wrapper nodes are walked but never reported.
    """
    if isinstance(ty, DefRef):
        on_path(ty.def_id)
    elif isinstance(ty, (Array, Vec)):
        visit_type_paths(ty.elem, on_path)
    elif isinstance(ty, (StaticRef, LazyStaticRef)):
        visit_type_paths(ty.inner, on_path)
    elif isinstance(ty, Map):
        visit_type_paths(ty.key, on_path)
        visit_type_paths(ty.value, on_path)


def type_paths(ty: Ty) -> list[DefId]:
    found: list[DefId] = []
    visit_type_paths(ty, found.append)
    return found


# ===--- Dependency collection ---=== #


def definition_edges(db: Database, def_id: DefId) -> list[DefId]:
    """Return the definitions def_id pulls in, in traversal order.

    Edges: structural adjacency first, then type references by item kind,
    service extension, and module containment.
    """
    node = db.node(def_id)
    edges: list[DefId] = list(node.related_nodes)
    item = db.item(def_id)

    if isinstance(item, Message):
        for f in item.fields:
            visit_type_paths(f.ty, edges.append)
    elif isinstance(item, Enum):
        for variant in item.variants:
            for ty in variant.fields:
                visit_type_paths(ty, edges.append)
    elif isinstance(item, Service):
        edges.extend(item.extend)
        for method in item.methods:
            for arg in method.args:
                visit_type_paths(arg.ty, edges.append)
            visit_type_paths(method.ret, edges.append)
    elif isinstance(item, (NewType, Const)):
        visit_type_paths(item.ty, edges.append)
    elif isinstance(item, Mod):
        edges.extend(item.items)
    return edges


def _depth_first(
    db: Database,
    roots: Iterable[DefId],
    enter: Callable[[DefId], bool],
) -> None:
    # Explicit stack; children pushed reversed so visits match recursive preorder.
    stack = list(reversed(list(roots)))
    while stack:
        def_id = stack.pop()
        if not enter(def_id):
            continue
        logger.debug("collecting", def_id=def_id, name=db.node(def_id).name)
        stack.extend(reversed(definition_edges(db, def_id)))


def collect_items(db: Database, roots: Iterable[DefId]) -> tuple[DefId, ...]:
    """Return every definition that must be emitted for roots, in discovery order.

    Modules are walked but never included. After the roots, every Const in
    the database is added and traversed whether reachable or not.

    Args:
        db: Definition database.
        roots: Root definition ids chosen by the caller's selection policy.

    Returns:
        Tuple of definition ids, each exactly once, closed under structural
        adjacency, type reference, service extension and module containment.

    Raises:
        FatalError: UNKNOWN_DEF_ID for a dangling reference.
    """
    visited: set[DefId] = set()
    result: dict[DefId, None] = {}

    def enter(def_id: DefId) -> bool:
        if def_id in visited:
            return False
        visited.add(def_id)
        if not isinstance(db.item(def_id), Mod):
            result[def_id] = None
        return True

    _depth_first(db, roots, enter)

    nodes = db.nodes()
    const_ids = [def_id for def_id in sorted(nodes) if isinstance(nodes[def_id].kind, Const)]
    _depth_first(db, const_ids, enter)

    return tuple(result)


# ===--- Locations and modes ---=== #


DYNAMIC_UNIT_NAME = "common"


@dataclass(frozen=True)
class Fixed:
    """First-party home: the package of one of the build's input files."""

    package: tuple[str, ...]


@dataclass(frozen=True)
class Dynamic:
    """Reached only through a dependency outside the build's inputs."""


DYNAMIC = Dynamic()

Location = Fixed | Dynamic


def unit_name(location: Location) -> str:
    if isinstance(location, Fixed):
        return "_".join(location.package)
    return DYNAMIC_UNIT_NAME


def collect_locations(db: Database, roots: Iterable[DefId]) -> dict[DefId, Location]:
    """Assign exactly one Location to every non-module definition reached from roots.

    Same traversal as collect_items; an assigned location doubles as the
    visited guard.
    """
    location_map: dict[DefId, Location] = {}
    input_files = db.input_files()

    def enter(def_id: DefId) -> bool:
        if def_id in location_map:
            return False
        if not isinstance(db.item(def_id), Mod):
            file_id = db.node(def_id).file_id
            if file_id in input_files:
                location_map[def_id] = Fixed(db.file(file_id).package)
            else:
                location_map[def_id] = DYNAMIC
        return True

    _depth_first(db, roots, enter)
    return location_map


@dataclass(frozen=True)
class Workspace:
    """Multi-package output rooted at dir; location_map is filled by the builder."""

    dir: Path
    location_map: Mapping[DefId, Location] = field(default_factory=dict)


@dataclass(frozen=True)
class SingleFile:
    file_path: Path


Mode = Workspace | SingleFile


# ===--- Adjustments ---=== #


@dataclass
class Adjust:
    """Generation-phase annotations for one definition, unrelated to the IDL source."""

    boxed: bool = False
    attrs: list[str] = field(default_factory=list)
    nested_items: list[DefId] = field(default_factory=list)

    def add_attrs(self, *attrs: str) -> None:
        for attr in attrs:
            if attr not in self.attrs:
                self.attrs.append(attr)


_ADJUST_SHARD_COUNT = 16


class AdjustTable:
    """Concurrent per-definition side table.

    Keys are spread over independently locked shards, so writers touching
    different definitions rarely contend. A callback runs while its shard's
    lock is held and must not re-enter the table.
    """

    def __init__(self, shard_count: int = _ADJUST_SHARD_COUNT):
        if shard_count < 1:
            raise ValueError("shard_count must be positive")
        self._locks = tuple(threading.Lock() for _ in range(shard_count))
        self._shards: tuple[dict[DefId, Adjust], ...] = tuple({} for _ in range(shard_count))

    def _shard(self, def_id: DefId) -> int:
        return hash(def_id) % len(self._shards)

    def with_adjust(self, def_id: DefId, fn: Callable[[Adjust | None], object]) -> object:
        index = self._shard(def_id)
        with self._locks[index]:
            return fn(self._shards[index].get(def_id))

    def with_adjust_mut(self, def_id: DefId, fn: Callable[[Adjust], object]) -> object:
        index = self._shard(def_id)
        with self._locks[index]:
            adjust = self._shards[index].get(def_id)
            if adjust is None:
                adjust = self._shards[index][def_id] = Adjust()
            return fn(adjust)

    def __len__(self) -> int:
        total = 0
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                total += len(shard)
        return total


# ===--- Naming ---=== #


RUST_KEYWORDS = {
    "as", "async", "await", "break", "const", "continue", "dyn", "else", "enum",
    "extern", "false", "fn", "for", "if", "impl", "in", "let", "loop", "match",
    "mod", "move", "mut", "pub", "ref", "return", "static", "struct", "trait",
    "true", "type", "unsafe", "use", "where", "while", "abstract", "become",
    "box", "do", "final", "macro", "override", "priv", "typeof", "unsized",
    "virtual", "yield", "try",
}
# Path keywords cannot be raw identifiers.
_NON_RAW_KEYWORDS = {"self", "super", "crate", "Self"}

_WORD_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_NON_WORD_RE = re.compile(r"[^A-Za-z0-9]+")


def split_words(name: str) -> list[str]:
    words: list[str] = []
    for chunk in _NON_WORD_RE.split(name):
        words.extend(w for w in _WORD_BOUNDARY_RE.split(chunk) if w)
    return words


def to_snake_case(name: str) -> str:
    return "_".join(w.lower() for w in split_words(name))


def to_upper_camel_case(name: str) -> str:
    return "".join(w[:1].upper() + w[1:].lower() for w in split_words(name))


def to_shouty_snake_case(name: str) -> str:
    return "_".join(w.upper() for w in split_words(name))


def escape_ident(ident: str) -> str:
    if ident in _NON_RAW_KEYWORDS:
        return ident + "_"
    if ident in RUST_KEYWORDS:
        return "r#" + ident
    return ident


def struct_ident(name: str) -> str:
    return escape_ident(to_upper_camel_case(name))


def enum_ident(name: str) -> str:
    return escape_ident(to_upper_camel_case(name))


def trait_ident(name: str) -> str:
    return escape_ident(to_upper_camel_case(name))


def newtype_ident(name: str) -> str:
    return escape_ident(to_upper_camel_case(name))


def const_ident(name: str) -> str:
    return escape_ident(to_shouty_snake_case(name))


def mod_ident(name: str) -> str:
    return escape_ident(to_snake_case(name))


def variant_ident(name: str) -> str:
    return escape_ident(to_upper_camel_case(name))


def field_ident(name: str) -> str:
    return escape_ident(to_snake_case(name))


def fn_ident(name: str) -> str:
    return escape_ident(to_snake_case(name))


_ITEM_IDENT: dict[type, Callable[[str], str]] = {
    Message: struct_ident,
    Enum: enum_ident,
    Service: trait_ident,
    NewType: newtype_ident,
    Const: const_ident,
    Mod: mod_ident,
    Field: field_ident,
    Method: fn_ident,
    Arg: field_ident,
}


# ===--- Path resolution ---=== #


class PathResolver:
    """Single-unit placement: every package is a module tree in one output."""

    def path_for_def_id(self, cx: Context, def_id: DefId) -> tuple[str, ...]:
        return self._source_path(cx, def_id)

    def _source_path(self, cx: Context, def_id: DefId) -> tuple[str, ...]:
        # Package segments, then the canonical name of every enclosing node.
        node = cx.node(def_id)
        name = cx.canonical_name(def_id)
        if node.parent is not None:
            return self._source_path(cx, node.parent) + (name,)
        return cx.file(node.file_id).package + (name,)

    def mod_prefix(self, cx: Context, def_id: DefId) -> tuple[str, ...]:
        return self.path_for_def_id(cx, def_id)[:-1]

    def related_path(self, from_mod: Sequence[str], to_path: Sequence[str]) -> str:
        common = 0
        while (
            common < len(from_mod)
            and common < len(to_path)
            and from_mod[common] == to_path[common]
        ):
            common += 1
        segments = ["super"] * (len(from_mod) - common) + list(to_path[common:])
        return "::".join(segments)


DefaultPathResolver = PathResolver


class WorkspacePathResolver(PathResolver):
    """Multi-unit placement: each path is prefixed by the owning unit name."""

    def path_for_def_id(self, cx: Context, def_id: DefId) -> tuple[str, ...]:
        location = cx.location_of(def_id)
        return (cx.crate_name(location),) + self._source_path(cx, def_id)

    def related_path(self, from_mod: Sequence[str], to_path: Sequence[str]) -> str:
        if not from_mod or not to_path or from_mod[0] != to_path[0]:
            return "::" + "::".join(to_path)
        return super().related_path(from_mod, to_path)


# ===--- Rendering binding ---=== #


_CURRENT_ITEM: contextvars.ContextVar[DefId] = contextvars.ContextVar("idlctx_current_item")
_CURRENT_CONTEXT: contextvars.ContextVar[Context] = contextvars.ContextVar(
    "idlctx_current_context"
)


@contextmanager
def rendering(cx: Context, def_id: DefId) -> Iterator[Context]:
    """Bind def_id as the definition being rendered for the enclosed block.

    The binding lives in a context variable: it is visible only to the
    current thread (or task) for the dynamic extent of the block, and is
    restored on every exit path. Concurrent workers must each enter their
    own binding.
    """
    item_token = _CURRENT_ITEM.set(def_id)
    cx_token = _CURRENT_CONTEXT.set(cx)
    try:
        yield cx
    finally:
        _CURRENT_CONTEXT.reset(cx_token)
        _CURRENT_ITEM.reset(item_token)


def current_item() -> DefId:
    try:
        return _CURRENT_ITEM.get()
    except LookupError:
        raise FatalError(
            "NO_CURRENT_ITEM", "No definition is being rendered on this call stack"
        ) from None


def current_context() -> Context:
    try:
        return _CURRENT_CONTEXT.get()
    except LookupError:
        raise FatalError(
            "NO_CURRENT_ITEM", "No context is bound on this call stack"
        ) from None


# ===--- Literal evaluation ---=== #


class Evaluated(NamedTuple):
    """A lowered literal: target expression plus whether it is constant-expressible."""

    expr: str
    is_const: bool


_PRIM_RENDER = {
    "i8": "i8",
    "i16": "i16",
    "i32": "i32",
    "i64": "i64",
    "f32": "f32",
    "f64": "f64",
    "bool": "bool",
    "bytes": "::bytes::Bytes",
    "str": "&'static str",
    "faststr": "::faststr::FastStr",
}

_STR_ESCAPES = {"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r", "\t": "\\t", "\0": "\\0"}


def quote_str(value: str) -> str:
    escaped = "".join(_STR_ESCAPES.get(ch, ch) for ch in value)
    return f'"{escaped}"'


def render_ty(cx: Context, ty: Ty) -> str:
    """Render a type description as target type text relative to the current item."""
    if isinstance(ty, Prim):
        return _PRIM_RENDER[ty.name]
    if isinstance(ty, Array):
        if ty.size is None:
            raise ValueError(f"Array size is unresolved for {ty!r}")
        return f"[{render_ty(cx, ty.elem)}; {ty.size}]"
    if isinstance(ty, Vec):
        return f"::std::vec::Vec<{render_ty(cx, ty.elem)}>"
    if isinstance(ty, Map):
        return (
            f"::std::collections::HashMap<{render_ty(cx, ty.key)}, "
            f"{render_ty(cx, ty.value)}>"
        )
    if isinstance(ty, StaticRef):
        return f"&'static {render_ty(cx, ty.inner)}"
    if isinstance(ty, LazyStaticRef):
        return f"::std::sync::LazyLock<{render_ty(cx, ty.inner)}>"
    return cx.cur_related_item_path(ty.def_id)


def type_of_def(cx: Context, def_id: DefId) -> Ty:
    """Return the target type a reference to def_id evaluates to."""
    kind = cx.node(def_id).kind
    if isinstance(kind, Const):
        return kind.ty
    if isinstance(kind, Variant):
        return DefRef(cx.node(def_id).parent)  # type: ignore[arg-type]
    if isinstance(kind, (Message, Enum, NewType)):
        return DefRef(def_id)
    raise FatalError(
        "UNSUPPORTED_LITERAL",
        f"{type(kind).__name__} `{kind.name}` cannot be referenced from a literal",
    )


def _fatal_literal(lit: Lit, ty: Ty) -> FatalError:
    return FatalError("UNSUPPORTED_LITERAL", f"unexpected literal {lit!r} with type {ty!r}")


def ident_into_ty(cx: Context, def_id: DefId, ident_ty: Ty, target: Ty) -> Evaluated:
    if ident_ty == target:
        return Evaluated(cx.cur_related_item_path(def_id), True)
    if ident_ty == STR and target == FASTSTR:
        path = cx.cur_related_item_path(def_id)
        return Evaluated(f"::faststr::FastStr::from_static_str({path})", True)
    raise FatalError("UNSUPPORTED_LITERAL", f"invalid convert {ident_ty!r} to {target!r}")


def _map_expr(cx: Context, lit: MapLit, map_ty: Map) -> str:
    inserts = " ".join(
        f"map.insert({lit_into_ty(cx, k, map_ty.key).expr}, "
        f"{lit_into_ty(cx, v, map_ty.value).expr});"
        for k, v in lit.pairs
    )
    return (
        f"{{ let mut map = ::std::collections::HashMap::with_capacity({len(lit.pairs)}); "
        f"{inserts} map }}"
    )


def _struct_expr(cx: Context, lit: MapLit, def_id: DefId, message: Message) -> Evaluated:
    values: dict[str, Lit] = {}
    for key, value in lit.pairs:
        if not isinstance(key, StrLit):
            raise FatalError("UNSUPPORTED_LITERAL", f"struct literal key must be a string: {key!r}")
        values.setdefault(key.value, value)

    parts: list[str] = []
    is_const = True
    for f in message.fields:
        name = cx.canonical_name(f.def_id)
        value = values.get(f.name)
        if value is None:
            parts.append(f"{name}: ::std::default::Default::default()")
            is_const = False
            continue
        evaluated = lit_into_ty(cx, value, f.ty)
        expr = f"Some({evaluated.expr})" if f.optional else evaluated.expr
        parts.append(f"{name}: {expr}")
        is_const = is_const and evaluated.is_const

    return Evaluated(f"{cx.cur_related_item_path(def_id)} {{ {', '.join(parts)} }}", is_const)


def lit_into_ty(cx: Context, lit: Lit, ty: Ty) -> Evaluated:
    """Lower lit into an expression of type ty.

    Raises:
        FatalError: UNSUPPORTED_LITERAL for an uncovered literal/type pair,
            NO_ENUM_DISCRIMINANT when no enum variant matches an integer.
    """
    if isinstance(lit, RefLit):
        return ident_into_ty(cx, lit.def_id, type_of_def(cx, lit.def_id), ty)

    if isinstance(ty, DefRef):
        item = cx.item(ty.def_id)
        if isinstance(item, NewType):
            inner = lit_into_ty(cx, lit, item.ty)
            return Evaluated(f"{cx.cur_related_item_path(ty.def_id)}({inner.expr})", inner.is_const)
        if isinstance(lit, IntLit) and isinstance(item, Enum):
            for variant in item.variants:
                if variant.discr == lit.value:
                    return Evaluated(cx.cur_related_item_path(variant.def_id), True)
            raise FatalError(
                "NO_ENUM_DISCRIMINANT",
                f"enum `{item.name}` has no variant with discriminant {lit.value}",
            )
        if isinstance(lit, MapLit) and isinstance(item, Message):
            return _struct_expr(cx, lit, ty.def_id, item)
        raise _fatal_literal(lit, ty)

    if isinstance(lit, StrLit):
        if ty == STR:
            return Evaluated(quote_str(lit.value), True)
        if ty == FASTSTR:
            return Evaluated(f"::faststr::FastStr::new({quote_str(lit.value)})", False)
        if ty == BYTES:
            return Evaluated(f"::bytes::Bytes::from_static({quote_str(lit.value)}.as_bytes())", True)
    elif isinstance(lit, BoolLit):
        if ty == BOOL:
            return Evaluated("true" if lit.value else "false", True)
    elif isinstance(lit, IntLit) and isinstance(ty, Prim):
        if ty.name in INTEGER_TYPE_NAMES:
            low, high = _INTEGER_RANGES[ty.name]
            if not low <= lit.value <= high:
                raise FatalError(
                    "UNSUPPORTED_LITERAL", f"integer {lit.value} out of range for {ty.name}"
                )
            return Evaluated(f"{lit.value}{ty.name}", True)
        if ty.name in FLOAT_TYPE_NAMES:
            try:
                value = float(lit.value)
            except OverflowError:
                raise FatalError(
                    "UNSUPPORTED_LITERAL", f"integer {lit.value} too large for {ty.name}"
                ) from None
            return Evaluated(f"{value!r}{ty.name}", True)
    elif isinstance(lit, FloatLit) and isinstance(ty, Prim) and ty.name in FLOAT_TYPE_NAMES:
        return Evaluated(f"{_parse_float(lit.text)!r}{ty.name}", True)
    elif isinstance(lit, ListLit):
        if isinstance(ty, Array):
            elems = [lit_into_ty(cx, el, ty.elem) for el in lit.items]
            return Evaluated(
                f"[{', '.join(e.expr for e in elems)}]", all(e.is_const for e in elems)
            )
        if isinstance(ty, Vec):
            elems = [lit_into_ty(cx, el, ty.elem) for el in lit.items]
            return Evaluated(f"::std::vec![{', '.join(e.expr for e in elems)}]", False)
    elif isinstance(lit, MapLit):
        if isinstance(ty, Map):
            return Evaluated(_map_expr(cx, lit, ty), False)
        if isinstance(ty, LazyStaticRef) and isinstance(ty.inner, Map):
            return Evaluated(
                f"::std::sync::LazyLock::new(|| {_map_expr(cx, lit, ty.inner)})", False
            )
        if isinstance(ty, StaticRef) and isinstance(ty.inner, Map):
            lazy_map = def_lit(cx, "INNER_MAP", lit, LazyStaticRef(ty.inner))
            return Evaluated(f"{{ {lazy_map} &*INNER_MAP }}", False)
    raise _fatal_literal(lit, ty)


def _parse_float(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise FatalError("UNSUPPORTED_LITERAL", f"malformed float literal {text!r}") from None
    if value != value or value in (float("inf"), float("-inf")):
        raise FatalError("UNSUPPORTED_LITERAL", f"non-finite float literal {text!r}")
    return value


def lit_as_rvalue(cx: Context, lit: Lit, ty: Ty) -> Evaluated:
    """Lower lit as the initializer of a declaration of type ty.

    Map targets, including lazily-initialized global maps, always build
    the map at runtime; the declaration decides where that happens.
    """
    if isinstance(lit, MapLit) and isinstance(ty, Map):
        return Evaluated(_map_expr(cx, lit, ty), False)
    if isinstance(ty, LazyStaticRef):
        if isinstance(lit, MapLit) and isinstance(ty.inner, Map):
            return Evaluated(_map_expr(cx, lit, ty.inner), False)
        return Evaluated(lit_into_ty(cx, lit, ty.inner).expr, False)
    return lit_into_ty(cx, lit, ty)


def def_lit(cx: Context, ident: str, lit: Lit, ty: Ty) -> str:
    """Render a declaration of ident holding lit; ident is printed as given.

    Constant-expressible values become a compile-time constant; anything
    else becomes a one-time-initialized global. A list assigned to an array
    fixes the array's declared size to the list's length.
    """
    if isinstance(lit, ListLit) and isinstance(ty, Array):
        ty = replace(ty, size=len(lit.items))

    value = lit_as_rvalue(cx, lit, ty)
    if value.is_const and not isinstance(ty, LazyStaticRef):
        return f"pub const {ident}: {render_ty(cx, ty)} = {value.expr};"

    stored = ty.inner if isinstance(ty, LazyStaticRef) else ty
    return (
        f"pub static {ident}: ::std::sync::LazyLock<{render_ty(cx, stored)}> = "
        f"::std::sync::LazyLock::new(|| {value.expr});"
    )


# ===--- Context ---=== #


class Plugin(Protocol):
    def on_item(self, cx: Context, def_id: DefId, item: Item) -> None: ...

    def on_emit(self, cx: Context) -> None: ...


class Context:
    """Frozen view over one generation run, handed to every rendering step.

    clone() takes a fresh database snapshot and shares the adjustment table;
    nothing else is copied.
    """

    def __init__(
        self,
        db: Database,
        *,
        codegen_items: tuple[DefId, ...],
        mode: Mode,
        path_resolver: PathResolver,
        adjusts: AdjustTable,
        change_case: bool,
    ):
        self.db = db
        self.codegen_items = codegen_items
        self.mode = mode
        self.path_resolver = path_resolver
        self.adjusts = adjusts
        self.change_case = change_case

    def clone(self) -> Context:
        return Context(
            self.db.snapshot(),
            codegen_items=self.codegen_items,
            mode=self.mode,
            path_resolver=self.path_resolver,
            adjusts=self.adjusts,
            change_case=self.change_case,
        )

    def node(self, def_id: DefId) -> Node:
        return self.db.node(def_id)

    def item(self, def_id: DefId) -> Item:
        return self.db.item(def_id)

    def file(self, file_id: FileId) -> File:
        return self.db.file(file_id)

    # Adjustments

    def with_adjust(self, def_id: DefId, fn: Callable[[Adjust | None], object]) -> object:
        return self.adjusts.with_adjust(def_id, fn)

    def with_adjust_mut(self, def_id: DefId, fn: Callable[[Adjust], object]) -> object:
        return self.adjusts.with_adjust_mut(def_id, fn)

    # Annotations

    def tags(self, tag_id: TagId) -> Tags | None:
        return self.db.tags(tag_id)

    def node_tags(self, def_id: DefId) -> Tags | None:
        return self.tags(self.node(def_id).tags)

    def contains_tag(self, tag_id: TagId, kind: TagKind) -> bool:
        tags = self.tags(tag_id)
        return tags is not None and tags.contains(kind)

    def node_contains_tag(self, def_id: DefId, kind: TagKind) -> bool:
        return self.contains_tag(self.node(def_id).tags, kind)

    # Names and paths

    def symbol_name(self, def_id: DefId) -> str:
        return self.item(def_id).name

    def canonical_name(self, def_id: DefId) -> str:
        """Name printed for def_id.

        An explicit name override always wins; otherwise the kind-specific
        case convention applies when case changing is on, else the source
        name passes through.
        """
        node = self.node(def_id)
        tags = self.tags(node.tags)
        if tags is not None and tags.contains(TagKind.NAME_OVERRIDE):
            return tags.get(TagKind.NAME_OVERRIDE)  # type: ignore[return-value]

        if not self.change_case:
            return node.name

        kind = node.kind
        if isinstance(kind, Variant):
            if self._enum_mode(node.parent) is EnumMode.NEW_TYPE:  # type: ignore[arg-type]
                return const_ident(kind.name)
            return variant_ident(kind.name)
        return _ITEM_IDENT[type(kind)](kind.name)

    def _enum_mode(self, enum_id: DefId) -> EnumMode:
        tags = self.node_tags(enum_id)
        if tags is None:
            return EnumMode.ENUM
        return tags.get(TagKind.ENUM_MODE, EnumMode.ENUM)  # type: ignore[return-value]

    def mod_path(self, def_id: DefId) -> tuple[str, ...]:
        return self.path_resolver.mod_prefix(self, def_id)

    def item_path(self, def_id: DefId) -> tuple[str, ...]:
        return self.path_resolver.path_for_def_id(self, def_id)

    def related_item_path(self, from_id: DefId, to_id: DefId) -> str:
        from_mod = self.item_path(from_id)[:-1]
        return self.path_resolver.related_path(from_mod, self.item_path(to_id))

    def cur_related_item_path(self, def_id: DefId) -> str:
        return self.related_item_path(current_item(), def_id)

    def def_id_info(self, def_id: DefId) -> str:
        node = self.node(def_id)
        return "::".join(self.file(node.file_id).package + (node.name,))

    # Workspace placement

    def workspace_info(self) -> Workspace:
        if not isinstance(self.mode, Workspace):
            raise FatalError(
                "NOT_WORKSPACE_MODE",
                f"can not access workspace info in mode `{type(self.mode).__name__}`",
            )
        return self.mode

    def location_of(self, def_id: DefId) -> Location:
        """Location of def_id, or of its nearest located ancestor for sub-nodes."""
        location_map = self.workspace_info().location_map
        current: DefId | None = def_id
        while current is not None:
            location = location_map.get(current)
            if location is not None:
                return location
            current = self.node(current).parent
        raise FatalError("UNLOCATED_DEF_ID", f"Definition {def_id} has no resolved location")

    def crate_name(self, location: Location) -> str:
        return unit_name(location)

    # Literals

    def default_val(self, f: Field) -> Evaluated | None:
        if f.default is None:
            return None
        try:
            return lit_as_rvalue(self, f.default, f.ty)
        except FatalError as err:
            raise FatalError(
                err.code, f"calc the default value for field {f.name}: {err.message}"
            ) from err

    def render_const(self, def_id: DefId) -> str:
        item = self.item(def_id)
        if not isinstance(item, Const):
            raise FatalError(
                "UNSUPPORTED_LITERAL", f"`{item.name}` is a {type(item).__name__}, not a constant"
            )
        return def_lit(self, self.canonical_name(def_id), item.lit, item.ty)

    # Plugins

    def exec_plugin(self, plugin: Plugin) -> None:
        """Visit every selected item once with it bound as current, then finish the run."""
        for def_id in self.codegen_items:
            kind = self.node(def_id).kind
            if not is_item(kind):
                continue
            with rendering(self, def_id):
                plugin.on_item(self, def_id, kind)
        plugin.on_emit(self)


# ===--- Builder ---=== #


@dataclass(frozen=True)
class Touch:
    """Entry points requested by name from one source file."""

    path: str
    item_names: tuple[str, ...]


@dataclass(frozen=True)
class CollectAll:
    """Select every non-module item in the database."""


@dataclass(frozen=True)
class CollectOnlyUsed:
    """Select only what the touched entry points and input roots reach."""

    touches: tuple[Touch, ...] = ()


CollectMode = CollectAll | CollectOnlyUsed


@dataclass(frozen=True)
class CollectWarning:
    path: str
    item_name: str | None
    message: str


@dataclass(frozen=True)
class CollectReport:
    items: tuple[DefId, ...]
    warnings: tuple[CollectWarning, ...]


def resolve_touches(
    db: Database, touches: Iterable[Touch]
) -> tuple[list[DefId], list[CollectWarning]]:
    """Map (file, item names) touches onto top-level item ids.

    Unknown files and names are reported as warnings and skipped.
    """
    found: list[DefId] = []
    warnings: list[CollectWarning] = []
    file_ids = db.file_ids_map()

    for touch in touches:
        path = normalize_path(touch.path)
        file_id = file_ids.get(path)
        if file_id is None:
            warnings.append(CollectWarning(path, None, f"file `{path}` not exists"))
            continue
        items = db.file(file_id).items
        for item_name in touch.item_names:
            def_id = next((d for d in items if db.item(d).name == item_name), None)
            if def_id is None:
                warnings.append(
                    CollectWarning(path, item_name, f"item `{item_name}` of `{path}` not exists")
                )
                continue
            found.append(def_id)
    return found, warnings


class ContextBuilder:
    """Runs the one-time collection and placement passes, then freezes a Context."""

    def __init__(self, db: Database, mode: Mode, input_items: Iterable[DefId] = ()):
        self.db = db
        self.mode = mode
        self.input_items: list[DefId] = list(input_items)
        self.codegen_items: list[DefId] = []
        self._built = False

    def collect(self, collect_mode: CollectMode) -> CollectReport:
        warnings: list[CollectWarning] = []
        if isinstance(collect_mode, CollectAll):
            nodes = self.db.nodes()
            selected = [
                def_id
                for def_id in sorted(nodes)
                if is_item(nodes[def_id].kind) and not isinstance(nodes[def_id].kind, Mod)
            ]
        else:
            extra, warnings = resolve_touches(self.db, collect_mode.touches)
            self.input_items.extend(extra)
            selected = list(collect_items(self.db, self.input_items))

        for warning in warnings:
            if warning.item_name is None:
                logger.warning("touch_file_missing", file=warning.path)
            else:
                logger.warning("touch_item_missing", item=warning.item_name, file=warning.path)

        self.codegen_items = list(dict.fromkeys(self.codegen_items + selected))

        if isinstance(self.mode, Workspace):
            location_map = collect_locations(self.db, self.codegen_items)
            self.mode = replace(self.mode, location_map=location_map)

        logger.info("collect_finished", items=len(self.codegen_items), warnings=len(warnings))
        return CollectReport(tuple(self.codegen_items), tuple(warnings))

    def build(self, *, change_case: bool = True) -> Context:
        """Consume the builder into a Context.

        Raises:
            ValueError: If the builder was already consumed.
        """
        if self._built:
            raise ValueError("ContextBuilder.build() called twice")
        self._built = True

        path_resolver: PathResolver
        if isinstance(self.mode, Workspace):
            path_resolver = WorkspacePathResolver()
        else:
            path_resolver = DefaultPathResolver()

        return Context(
            self.db.snapshot(),
            codegen_items=tuple(self.codegen_items),
            mode=self.mode,
            path_resolver=path_resolver,
            adjusts=AdjustTable(),
            change_case=change_case,
        )


# ===--- Configuration ---=== #


VALID_MODES = {"workspace", "single-file"}
VALID_COLLECT_MODES = {"all", "only-used"}


@dataclass(frozen=True)
class BuildConfig:
    mode: str
    path: Path
    change_case: bool = True
    collect: str = "all"
    touches: tuple[Touch, ...] = ()


def _parse_touches(raw: object) -> tuple[Touch, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        raise ConfigError(
            "INVALID_TOUCH",
            f"Invalid touches value type: {type(raw).__name__}",
            'Use a table mapping file paths to item names: {"a.thrift": ["Foo"]}.',
        )
    touches: list[Touch] = []
    for path, names in raw.items():
        if not isinstance(path, str) or not path:
            raise ConfigError("INVALID_TOUCH", f"Invalid touch file path: {path!r}")
        if isinstance(names, str) or not isinstance(names, Sequence):
            raise ConfigError(
                "INVALID_TOUCH",
                f"Touch entry for {path} must be a list of item names",
                f'Write "{path}" = ["ItemName", ...].',
            )
        for name in names:
            if not isinstance(name, str) or not name:
                raise ConfigError("INVALID_TOUCH", f"Invalid item name for {path}: {name!r}")
        touches.append(Touch(path=path, item_names=tuple(names)))
    return tuple(touches)


def parse_build_config(raw: Mapping[str, object]) -> BuildConfig:
    """Validate a raw configuration table into a BuildConfig.

    Raises:
        ConfigError: On any invalid or inconsistent entry.
    """
    mode = raw.get("mode", "single-file")
    if mode not in VALID_MODES:
        raise ConfigError(
            "INVALID_MODE",
            f"Unsupported mode: {mode!r}",
            "Use one of: workspace, single-file.",
        )

    raw_path = raw.get("path")
    if raw_path is None or raw_path == "":
        raise ConfigError(
            "MISSING_PATH",
            "path is required: no output path provided.",
            "Set path to the workspace directory or the output file.",
        )
    if not isinstance(raw_path, (str, os.PathLike)):
        raise ConfigError("MISSING_PATH", f"Invalid path value type: {type(raw_path).__name__}")

    change_case = raw.get("change_case", True)
    if not isinstance(change_case, bool):
        raise ConfigError(
            "INVALID_CHANGE_CASE",
            f"change_case must be a boolean, got {type(change_case).__name__}",
        )

    collect = raw.get("collect", "all")
    if collect not in VALID_COLLECT_MODES:
        raise ConfigError(
            "INVALID_COLLECT_MODE",
            f"Unsupported collect mode: {collect!r}",
            "Use one of: all, only-used.",
        )

    touches = _parse_touches(raw.get("touches"))
    if touches and collect != "only-used":
        raise ConfigError(
            "TOUCHES_WITHOUT_ONLY_USED",
            "touches require collect = only-used.",
            'Set collect = "only-used" or remove touches.',
        )

    return BuildConfig(
        mode=mode,  # type: ignore[arg-type]
        path=Path(raw_path),
        change_case=change_case,
        collect=collect,  # type: ignore[arg-type]
        touches=touches,
    )


def build_mode(config: BuildConfig) -> Mode:
    if config.mode == "workspace":
        return Workspace(dir=config.path)
    return SingleFile(file_path=config.path)


def build_context(
    db: Database,
    config: BuildConfig,
    input_items: Iterable[DefId] = (),
) -> Context:
    """Run collection and placement for config and return the frozen Context."""
    builder = ContextBuilder(db, build_mode(config), input_items)
    if config.collect == "all":
        builder.collect(CollectAll())
    else:
        builder.collect(CollectOnlyUsed(config.touches))
    cx = builder.build(change_case=config.change_case)
    logger.info("context_built", mode=config.mode, items=len(cx.codegen_items))
    return cx
