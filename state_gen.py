"""Match/log extension generator for Bloc and Cubit state hierarchies.

Reads Python modules, finds state containers marked with @enhance_state and
writes a companion `<stem>_match.py` module holding one `<State>Extension`
class per state type, with exhaustive `map`, partial `map_some` and `log`.

Usage:
    python state_gen.py app/search/search_cubit.py --package app.search
"""

import argparse
import ast
import logging
import re
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Protocol

from enhance_state import ANNOTATION_OPTIONS

logger = logging.getLogger(__name__)


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    sources: tuple[Path, ...]
    output_dir: Path | None
    package: str | None
    to_stdout: bool
    verbose: bool


VALID_ERROR_CODES = {
    "MISSING_SOURCES",
    "PATH_NOT_FOUND",
    "NOT_A_PYTHON_FILE",
    "INVALID_PACKAGE_NAME",
    "CONFLICT_OUTPUT_FLAGS",
    "OUTPUT_COLLISION",
}
_PACKAGE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this argument.",
    )


def validate_source_file(path: Path) -> Path:
    source = validate_path_exists(path, "SOURCE")
    if source.is_dir() or source.suffix != ".py":
        raise ConfigError(
            "NOT_A_PYTHON_FILE",
            f"Source is not a Python file: {source}",
            "Pass the .py module that declares the Bloc/Cubit class.",
        )
    return source


def validate_package_name(name: str) -> str:
    if _PACKAGE_NAME_RE.match(name):
        return name
    raise ConfigError(
        "INVALID_PACKAGE_NAME",
        f"Invalid package name: {name}",
        "Use a dotted import path, for example --package app.search.",
    )


def validate_output_paths(sources: list[Path], output_dir: Path | None) -> None:
    """Reject runs where two sources, or a source and an output, share a file.

    Raises:
        ConfigError: OUTPUT_COLLISION naming the first conflicting pair.
    """
    inputs = {source.resolve(): source for source in sources}
    claimed: dict[Path, Path] = {}
    for source in sources:
        target = output_path_for(source, output_dir).resolve()
        if target in inputs:
            raise ConfigError(
                "OUTPUT_COLLISION",
                f"Output for {source} would overwrite source {inputs[target]}.",
                "Rename the source module or leave it off the command line.",
            )
        if target in claimed:
            raise ConfigError(
                "OUTPUT_COLLISION",
                f"{claimed[target]} and {source} would both write {target}.",
                "Run them with different --output-dir values or rename one source.",
            )
        claimed[target] = source


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate match/log extensions for Bloc and Cubit state types"
    )

    parser.add_argument("sources", nargs="*", type=Path)
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument("--package", type=str, default=None)
    parser.add_argument("--stdout", action="store_true", default=False)
    parser.add_argument("--verbose", "-v", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig:
    if not args.sources:
        raise ConfigError(
            "MISSING_SOURCES",
            "No source files given.",
            "Pass one or more modules: state_gen.py app/search_cubit.py",
        )

    if args.stdout and args.output_dir is not None:
        raise ConfigError(
            "CONFLICT_OUTPUT_FLAGS",
            "Cannot combine --stdout with --output-dir.",
            "Use --stdout to preview, or --output-dir to choose where files go.",
        )

    package = validate_package_name(args.package) if args.package else None

    sources: list[Path] = []
    seen: set[Path] = set()
    for raw in args.sources:
        source = validate_source_file(raw)
        if source.resolve() not in seen:
            seen.add(source.resolve())
            sources.append(source)

    if not args.stdout:
        validate_output_paths(sources, args.output_dir)

    return GenerateConfig(
        sources=tuple(sources),
        output_dir=args.output_dir,
        package=package,
        to_stdout=bool(args.stdout),
        verbose=bool(args.verbose),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig:
    return validate_config(parse_args(argv))


# ===--- Logging ---=== #

_LOG_FORMAT = "%(message)s"
_LOG_FORMAT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d %(message)s"
_LOG_DATEFMT = "%H:%M:%S"


def setup_logging(verbose: bool = False) -> None:
    """Route log records to stderr; DEBUG with --verbose, WARNING otherwise.

    Leaves an already configured root logger alone.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=_LOG_FORMAT_DEBUG if verbose else _LOG_FORMAT,
        datefmt=_LOG_DATEFMT,
        stream=sys.stderr,
    )


# ===--- Constants ---=== #

ANNOTATION_NAME = "enhance_state"
RUNTIME_MODULE = "enhance_state"
OUTPUT_SUFFIX = "_match"
LOG_PREFIX = "Current State"

STATE_CONTAINER_MARKERS = ("Bloc", "Cubit")
STATE_CONTAINER_SHAPES = {
    "Bloc": 2,
    "HydratedBloc": 2,
    "ReplayBloc": 2,
    "Cubit": 1,
    "HydratedCubit": 1,
    "ReplayCubit": 1,
}
"""Recognized container name -> generic arity. The state is the last argument."""

STRIPPED_SUFFIXES = ("State", "Bloc", "Cubit")
FIXED_HANDLER_NAMES = (
    ("Initial", "onInitial"),
    ("Loading", "onLoading"),
    ("Success", "onSuccess"),
    ("Failure", "onFailure"),
    ("Error", "onError"),
    ("Empty", "onEmpty"),
    ("NoResults", "onEmpty"),
)
_BARE_WORD_ONLY = frozenset({"Error"})
_HANDLER_PREFIX_RE = re.compile(
    r"^(\w+?)(Loading|Success|Error|State|Initial|Empty|NoResults|Failure)$"
)

ORELSE_HANDLER = "orElse"
_CONFIG_FIELDS = dict(
    zip(
        ANNOTATION_OPTIONS,
        ("generate_exhaustive_match", "generate_partial_match", "generate_log"),
    )
)


# ===--- Type universe ---=== #


@dataclass(frozen=True)
class TypeRef:
    name: str
    type_arguments: tuple["TypeRef", ...] = ()

    @property
    def short_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]

    def __str__(self) -> str:
        if not self.type_arguments:
            return self.name
        args = ", ".join(str(arg) for arg in self.type_arguments)
        return f"{self.name}[{args}]"


@dataclass(frozen=True)
class ParamInfo:
    name: str
    type_name: str

    @property
    def is_private(self) -> bool:
        return self.name.startswith("_")


@dataclass(frozen=True)
class ConstructorInfo:
    name: str
    params: tuple[ParamInfo, ...]


@dataclass(frozen=True)
class NonLiteralOption:
    """Marker keyword whose value is not a Python literal (kept as source text)."""

    text: str


@dataclass(frozen=True)
class EntityInfo:
    """Structural snapshot of one declaration in a source module.

    Attributes:
        name: Declared name, e.g. "SearchCubit".
        qualname: Dotted path inside the module, e.g. "SearchCubit.Loading"
            for a nested class.
        kind: "class" or "function".
        bases: Direct base classes in declaration order.
        constructors: Primary constructor (name "") when one is declared
            or synthesized by @dataclass. Empty tuple otherwise.
        nested: Classes (and marked functions) declared in the class body,
            in declaration order.
        annotation: Keyword arguments of the @enhance_state marker as
            (name, value) pairs, or None when the entity is not marked.
        enclosing: Qualname of the enclosing class, None at module level.
        lineno: Line of the declaration in the source file.
    """

    name: str
    qualname: str
    kind: str
    bases: tuple[TypeRef, ...] = ()
    constructors: tuple[ConstructorInfo, ...] = ()
    nested: tuple["EntityInfo", ...] = ()
    annotation: tuple[tuple[str, object], ...] | None = None
    enclosing: str | None = None
    lineno: int = 0

    @property
    def is_private(self) -> bool:
        return self.name.startswith("_")

    @property
    def is_class(self) -> bool:
        return self.kind == "class"

    @property
    def root_name(self) -> str:
        """Module-level name that has to be imported to reach this entity."""
        return self.qualname.split(".", 1)[0]


@dataclass(frozen=True)
class ImportInfo:
    """Module-level `from module import name as alias` binding."""

    alias: str
    module: str
    name: str
    level: int = 0


@dataclass(frozen=True)
class TypeUniverse:
    """Read-only snapshot of every declaration in one source module.

    Attributes:
        module_name: Import path of the source module, e.g. "app.search_cubit".
        source_name: Source filename used in the part-of marker.
        entities: Module-level entities in declaration order.
        imports: Module-level `from ... import` bindings in declaration order.
        source_path: File the snapshot was read from, None for in-memory text.
    """

    module_name: str
    source_name: str
    entities: tuple[EntityInfo, ...]
    imports: tuple[ImportInfo, ...] = ()
    source_path: Path | None = None

    def find_import(self, alias: str) -> ImportInfo | None:
        for imported in self.imports:
            if imported.alias == alias:
                return imported
        return None

    def iter_entities(self) -> Iterator[EntityInfo]:
        """Yield every entity depth-first, in declaration order."""
        stack = list(reversed(self.entities))
        while stack:
            entity = stack.pop()
            yield entity
            stack.extend(reversed(entity.nested))

    def find(self, qualname: str) -> EntityInfo | None:
        for entity in self.iter_entities():
            if entity.qualname == qualname:
                return entity
        return None

    def annotated(self) -> tuple[EntityInfo, ...]:
        return tuple(e for e in self.iter_entities() if e.annotation is not None)


# ===--- Generation errors ---=== #


class GenerationError(Exception):
    """Terminal failure for one annotated entity. Nothing is emitted for it.

    Attributes:
        code: Machine-readable kind, one of GENERATION_ERROR_CODES.
        message: Human-readable description.
        entity: Qualname of the annotated entity that failed.
        module: Import path of the module declaring the entity.
        todo: Remediation hint surfaced to the user.
    """

    code: ClassVar[str] = "GENERATION_FAILED"

    def __init__(self, message: str, *, entity: str, todo: str, module: str = ""):
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.todo = todo
        self.module = module

    @property
    def location(self) -> str:
        return f"{self.module}.{self.entity}" if self.module else self.entity


class NotAClassError(GenerationError):
    code = "NOT_A_CLASS"


class PrivateClassError(GenerationError):
    code = "PRIVATE_CLASS"


class NotAStateContainerError(GenerationError):
    code = "NOT_A_STATE_CONTAINER"


class MissingTypeArgumentsError(GenerationError):
    code = "MISSING_TYPE_ARGUMENTS"


class StateTypeNotFoundError(GenerationError):
    code = "STATE_TYPE_NOT_FOUND"


class NoVariantsFoundError(GenerationError):
    code = "NO_VARIANTS_FOUND"


class DuplicateHandlerNameError(GenerationError):
    code = "DUPLICATE_HANDLER_NAME"


class InvalidAnnotationError(GenerationError):
    code = "INVALID_ANNOTATION"


class DuplicateExtensionNameError(GenerationError):
    code = "DUPLICATE_EXTENSION_NAME"


GENERATION_ERROR_CODES = frozenset(
    cls.code
    for cls in (
        NotAClassError,
        PrivateClassError,
        NotAStateContainerError,
        MissingTypeArgumentsError,
        StateTypeNotFoundError,
        NoVariantsFoundError,
        DuplicateHandlerNameError,
        InvalidAnnotationError,
        DuplicateExtensionNameError,
    )
)


# ===--- Source introspection ---=== #


class TypeIntrospectionProvider(Protocol):
    def load(self, source: Path, module_name: str) -> TypeUniverse: ...


def _last_name(node: ast.expr) -> str:
    if isinstance(node, ast.Call):
        node = node.func
    return ast.unparse(node).rsplit(".", 1)[-1]


def _annotation_text(node: ast.expr | None) -> str:
    if node is None:
        return "Any"
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value
    return ast.unparse(node)


def parse_type_ref(node: ast.expr) -> TypeRef:
    """Convert a base-class expression such as `Bloc[Event, State]` to a TypeRef.

    String forward references (`Cubit["State"]`) are parsed as expressions.
    Anything that is not a name, attribute or subscript keeps its source text.
    """
    if isinstance(node, ast.Subscript):
        base = parse_type_ref(node.value)
        if isinstance(node.slice, ast.Tuple):
            args = tuple(parse_type_ref(elt) for elt in node.slice.elts)
        else:
            args = (parse_type_ref(node.slice),)
        return TypeRef(base.name, args)
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        try:
            parsed = ast.parse(node.value, mode="eval").body
        except SyntaxError:
            return TypeRef(node.value)
        return parse_type_ref(parsed)
    return TypeRef(ast.unparse(node))


def _marker_options(
    decorators: list[ast.expr],
) -> tuple[tuple[str, object], ...] | None:
    for decorator in decorators:
        if _last_name(decorator) != ANNOTATION_NAME:
            continue
        if not isinstance(decorator, ast.Call):
            return ()
        options: list[tuple[str, object]] = []
        for keyword in decorator.keywords:
            key = keyword.arg if keyword.arg is not None else "**"
            try:
                value = ast.literal_eval(keyword.value)
            except (ValueError, TypeError):
                value = NonLiteralOption(ast.unparse(keyword.value))
            options.append((key, value))
        for arg in decorator.args:
            options.append(("*", NonLiteralOption(ast.unparse(arg))))
        return tuple(options)
    return None


_PSEUDO_FIELD_TYPES = frozenset({"ClassVar", "InitVar"})
"""Dataclass annotations that never become instance attributes."""


def _is_dataclass(node: ast.ClassDef) -> bool:
    return any(_last_name(d) == "dataclass" for d in node.decorator_list)


def _is_init_false(value: ast.expr | None) -> bool:
    if not isinstance(value, ast.Call) or _last_name(value.func) != "field":
        return False
    for keyword in value.keywords:
        if keyword.arg == "init" and isinstance(keyword.value, ast.Constant):
            return keyword.value.value is False
    return False


def _init_params(func: ast.FunctionDef | ast.AsyncFunctionDef) -> tuple[ParamInfo, ...]:
    positional = [*func.args.posonlyargs, *func.args.args][1:]
    return tuple(
        ParamInfo(arg.arg, _annotation_text(arg.annotation))
        for arg in [*positional, *func.args.kwonlyargs]
    )


def _lookup_class(
    class_nodes: dict[str, ast.ClassDef], name: str, enclosing: str | None
) -> ast.ClassDef | None:
    if enclosing is not None and f"{enclosing}.{name}" in class_nodes:
        return class_nodes[f"{enclosing}.{name}"]
    return class_nodes.get(name)


def _dataclass_params(
    node: ast.ClassDef,
    enclosing: str | None,
    class_nodes: dict[str, ast.ClassDef],
    visiting: frozenset[int] = frozenset(),
) -> dict[str, ParamInfo]:
    params: dict[str, ParamInfo] = {}
    visiting = visiting | {id(node)}
    for base in node.bases:
        base_node = _lookup_class(class_nodes, parse_type_ref(base).name, enclosing)
        if base_node is None or id(base_node) in visiting or not _is_dataclass(base_node):
            continue
        params.update(_dataclass_params(base_node, enclosing, class_nodes, visiting))
    for stmt in node.body:
        if not isinstance(stmt, ast.AnnAssign) or not isinstance(stmt.target, ast.Name):
            continue
        annotation = _annotation_text(stmt.annotation)
        head = annotation.split("[", 1)[0].rsplit(".", 1)[-1].strip()
        if head in _PSEUDO_FIELD_TYPES or _is_init_false(stmt.value):
            continue
        params[stmt.target.id] = ParamInfo(stmt.target.id, annotation)
    return params


def _primary_constructor(
    node: ast.ClassDef,
    enclosing: str | None,
    class_nodes: dict[str, ast.ClassDef],
) -> tuple[ConstructorInfo, ...]:
    for stmt in node.body:
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)) and stmt.name == "__init__":
            return (ConstructorInfo("", _init_params(stmt)),)
    if _is_dataclass(node):
        params = _dataclass_params(node, enclosing, class_nodes)
        return (ConstructorInfo("", tuple(params.values())),)
    return ()


def _extract_entity(
    node: ast.stmt,
    enclosing: str | None,
    class_nodes: dict[str, ast.ClassDef],
) -> EntityInfo | None:
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
        annotation = _marker_options(node.decorator_list)
        if annotation is None:
            return None
        return EntityInfo(
            name=node.name,
            qualname=f"{enclosing}.{node.name}" if enclosing else node.name,
            kind="function",
            annotation=annotation,
            enclosing=enclosing,
            lineno=node.lineno,
        )
    if not isinstance(node, ast.ClassDef):
        return None

    qualname = f"{enclosing}.{node.name}" if enclosing else node.name
    nested = tuple(
        entity
        for entity in (_extract_entity(stmt, qualname, class_nodes) for stmt in node.body)
        if entity is not None
    )
    return EntityInfo(
        name=node.name,
        qualname=qualname,
        kind="class",
        bases=tuple(parse_type_ref(base) for base in node.bases),
        constructors=_primary_constructor(node, enclosing, class_nodes),
        nested=nested,
        annotation=_marker_options(node.decorator_list),
        enclosing=enclosing,
        lineno=node.lineno,
    )


def _index_classes(body: list[ast.stmt], prefix: str = "") -> dict[str, ast.ClassDef]:
    index: dict[str, ast.ClassDef] = {}
    for stmt in body:
        if isinstance(stmt, ast.ClassDef):
            qualname = f"{prefix}{stmt.name}"
            index[qualname] = stmt
            index.update(_index_classes(stmt.body, f"{qualname}."))
    return index


def _module_imports(body: list[ast.stmt]) -> tuple[ImportInfo, ...]:
    return tuple(
        ImportInfo(alias.asname or alias.name, stmt.module or "", alias.name, stmt.level)
        for stmt in body
        if isinstance(stmt, ast.ImportFrom)
        for alias in stmt.names
        if alias.name != "*"
    )


def load_type_universe(
    source_text: str,
    module_name: str,
    source_name: str = "<string>",
    source_path: Path | None = None,
) -> TypeUniverse:
    """Parse Python source and build its TypeUniverse.

    Only module-level declarations and class bodies are scanned; classes
    defined inside functions are invisible to generation.

    Raises:
        SyntaxError: If source_text is not valid Python.
    """
    tree = ast.parse(source_text, filename=source_name)
    class_nodes = _index_classes(tree.body)
    entities = tuple(
        entity
        for entity in (_extract_entity(stmt, None, class_nodes) for stmt in tree.body)
        if entity is not None
    )
    return TypeUniverse(
        module_name=module_name,
        source_name=source_name,
        entities=entities,
        imports=_module_imports(tree.body),
        source_path=source_path,
    )


class AstIntrospectionProvider:
    """TypeIntrospectionProvider backed by the standard-library ast module."""

    def load(self, source: Path, module_name: str) -> TypeUniverse:
        source = Path(source)
        text = source.read_text(encoding="utf-8")
        universe = load_type_universe(text, module_name, source.name, source)
        logger.debug(
            "Loaded %s: %d top-level entities, %d marked",
            source,
            len(universe.entities),
            len(universe.annotated()),
        )
        return universe


def _ancestor(path: Path, levels: int) -> Path:
    for _ in range(levels):
        path = path.parent
    return path


def locate_import(
    universe: TypeUniverse, imported: ImportInfo
) -> tuple[Path, str] | None:
    """Find the source file and import path behind a `from ... import` binding.

    Absolute imports are looked up from the root of the importing module's
    package, then next to the importing file. Relative imports start from
    the importing file's directory. Modules outside that tree (stdlib,
    installed packages) give None.
    """
    if universe.source_path is None or not imported.module:
        return None

    directory = Path(universe.source_path).parent
    package = universe.module_name.split(".")[:-1]
    target = imported.module.split(".")

    if imported.level:
        up = imported.level - 1
        base_parts = package[: max(len(package) - up, 0)]
        candidates = [(_ancestor(directory, up), [*base_parts, *target])]
    else:
        candidates = [(_ancestor(directory, len(package)), target)]
        if package:
            candidates.append((directory, target))

    for base_dir, module_parts in candidates:
        stem = base_dir.joinpath(*target)
        for path in (stem.with_suffix(".py"), stem / "__init__.py"):
            if path.is_file():
                return path, ".".join(module_parts)
    return None


# ===--- Variant resolution ---=== #


def find_container_base(entity: EntityInfo) -> TypeRef | None:
    for base in entity.bases:
        if any(marker in base.short_name for marker in STATE_CONTAINER_MARKERS):
            return base
    return None


def _find_state_class(
    universe: TypeUniverse,
    name: str,
    scope: str | None,
    provider: TypeIntrospectionProvider,
    visited: frozenset[Path],
) -> tuple[EntityInfo, TypeUniverse] | None:
    candidates = [name] if scope is None else [name, f"{scope}.{name}"]
    for qualname in candidates:
        found = universe.find(qualname)
        if found is not None and found.is_class:
            return found, universe

    head, _, rest = name.partition(".")
    imported = universe.find_import(head)
    if imported is None:
        return None
    location = locate_import(universe, imported)
    if location is None or location[0].resolve() in visited:
        return None

    path, module_name = location
    logger.debug("Following import of %s to %s (%s)", head, path, module_name)
    other = provider.load(path, module_name)
    target = f"{imported.name}.{rest}" if rest else imported.name
    return _find_state_class(
        other, target, None, provider, visited | {path.resolve()}
    )


def resolve_state_type(
    entity: EntityInfo,
    universe: TypeUniverse,
    provider: TypeIntrospectionProvider | None = None,
) -> tuple[EntityInfo, TypeUniverse]:
    """Find the state class carried by the entity's Bloc/Cubit base.

    Two-argument containers (Bloc<Event, State>) use the second argument,
    one-argument containers (Cubit<State>) the first. The argument is looked
    up in this module, then inside the entity's own body, then through
    `from ... import` bindings to sibling modules read with provider.

    Returns:
        The state class and the universe of the module that declares it.

    Raises:
        NotAStateContainerError: No base name contains "Bloc" or "Cubit".
        MissingTypeArgumentsError: The container base has no generic arguments.
        StateTypeNotFoundError: Unknown container shape, wrong arity, or a
            state argument that is not a class this module can reach.
    """
    where = {"entity": entity.qualname, "module": universe.module_name}
    container = find_container_base(entity)
    if container is None:
        raise NotAStateContainerError(
            "enhance_state must be applied to a class that extends Bloc or Cubit.",
            todo="Make sure your class extends either Bloc or Cubit.",
            **where,
        )
    if not container.type_arguments:
        raise MissingTypeArgumentsError(
            f"Missing generic type arguments in {entity.qualname}.",
            todo="Specify the state type in your Bloc/Cubit base, e.g. Cubit[MyState].",
            **where,
        )

    arity = STATE_CONTAINER_SHAPES.get(container.short_name)
    if arity is None or len(container.type_arguments) != arity:
        raise StateTypeNotFoundError(
            f"Could not find state class in {entity.qualname}: "
            f"{container} is not a recognized state container shape.",
            todo="Extend one of: " + ", ".join(sorted(STATE_CONTAINER_SHAPES)) + ".",
            **where,
        )

    state_ref = container.type_arguments[arity - 1]
    visited: frozenset[Path] = frozenset()
    if universe.source_path is not None:
        visited = frozenset({Path(universe.source_path).resolve()})
    found = _find_state_class(
        universe,
        state_ref.name,
        entity.qualname,
        provider or AstIntrospectionProvider(),
        visited,
    )
    if found is None:
        raise StateTypeNotFoundError(
            f"Could not find state class {state_ref} for {entity.qualname}.",
            todo="Declare the state class in this module, or import it with "
            "`from <module> import <State>` from a module next to it.",
            **where,
        )
    return found


def _names_state(base: TypeRef, state: EntityInfo, scope: str | None) -> bool:
    if base.name == state.qualname:
        return True
    return scope is not None and scope == state.enclosing and base.name == state.name


def resolve_variants(state: EntityInfo, universe: TypeUniverse) -> tuple[EntityInfo, ...]:
    """Return the direct subclasses of state: module level first, then nested.

    Nested candidates are the classes declared next to state inside its
    enclosing class. Grandchildren are not variants. A class seen by both
    scans is kept once, at its first position.
    """
    candidates = [e for e in universe.entities if e.is_class]
    if state.enclosing is not None:
        parent = universe.find(state.enclosing)
        if parent is not None:
            candidates.extend(e for e in parent.nested if e.is_class)

    variants: list[EntityInfo] = []
    seen: set[str] = set()
    for candidate in candidates:
        if candidate.qualname in seen or candidate.qualname == state.qualname:
            continue
        if any(_names_state(base, state, candidate.enclosing) for base in candidate.bases):
            seen.add(candidate.qualname)
            variants.append(candidate)

    logger.debug(
        "Resolved %d variants for %s: %s",
        len(variants),
        state.qualname,
        ", ".join(v.qualname for v in variants),
    )
    return tuple(variants)


# ===--- Field extraction ---=== #


@dataclass(frozen=True)
class Field:
    name: str
    type_name: str
    owner: str


def extract_fields(variant: EntityInfo) -> tuple[Field, ...]:
    primary = next((c for c in variant.constructors if c.name == ""), None)
    if primary is None:
        return ()
    return tuple(
        Field(p.name, p.type_name, variant.name)
        for p in primary.params
        if not p.is_private
    )


# ===--- Handler naming ---=== #


def _upper_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def strip_state_suffix(name: str) -> str:
    for suffix in STRIPPED_SUFFIXES:
        if name.endswith(suffix) and len(name) > len(suffix):
            return name[: -len(suffix)]
    return name


def handler_name(variant_name: str) -> str:
    """Derive the handler parameter name for a variant class name.

    SearchLoading -> onLoading, SearchError -> onSearch, Idle -> onIdle.
    Not injective: SearchEmpty and SearchNoResults both give onEmpty.
    """
    if not variant_name:
        raise ValueError("variant_name must not be empty")

    token = strip_state_suffix(variant_name)
    for word, fixed in FIXED_HANDLER_NAMES:
        if token == word or (word not in _BARE_WORD_ONLY and token.endswith(word)):
            return fixed

    match = _HANDLER_PREFIX_RE.match(token)
    if match is not None:
        return f"on{_upper_first(match.group(1))}"

    return f"on{_upper_first(token)}"


@dataclass(frozen=True)
class HandlerSpec:
    """One variant's dispatch handler, derived per generation run.

    Attributes:
        variant: Qualname used in the generated class pattern.
        variant_name: Declared variant name, used in docstrings.
        handler: Handler parameter name from handler_name().
        fields: Public primary-constructor fields, in declaration order.
    """

    variant: str
    variant_name: str
    handler: str
    fields: tuple[Field, ...]

    @property
    def callable_type(self) -> str:
        arg_types = ", ".join(f.type_name for f in self.fields)
        return f"Callable[[{arg_types}], T]"

    @property
    def call_args(self) -> str:
        return ", ".join(f"state.{f.name}" for f in self.fields)

    @property
    def signature(self) -> str:
        params = ", ".join(f"{f.name}: {f.type_name}" for f in self.fields)
        return f"{self.variant_name}({params})"


def build_handler_specs(variants: tuple[EntityInfo, ...]) -> tuple[HandlerSpec, ...]:
    return tuple(
        HandlerSpec(
            variant=variant.qualname,
            variant_name=variant.name,
            handler=handler_name(variant.name),
            fields=extract_fields(variant),
        )
        for variant in variants
    )


def check_handler_names(
    specs: tuple[HandlerSpec, ...], state: EntityInfo, entity: EntityInfo, module: str
) -> None:
    """Reject two variants whose handlers would share one parameter name.

    Raises:
        DuplicateHandlerNameError: Naming the first colliding pair.
    """
    owners: dict[str, str] = {}
    for spec in specs:
        if spec.handler in owners:
            raise DuplicateHandlerNameError(
                f"Variants {owners[spec.handler]} and {spec.variant_name} of {state.qualname} "
                f"both map to handler '{spec.handler}'.",
                entity=entity.qualname,
                module=module,
                todo=f"Rename {spec.variant_name} so its handler name differs.",
            )
        owners[spec.handler] = spec.variant_name


# ===--- Dispatch synthesis ---=== #


@dataclass(frozen=True)
class GenerationConfig:
    """Which extension members to generate. Read from @enhance_state keywords.

    Attributes:
        generate_exhaustive_match: `map` (keyword `map`).
        generate_partial_match: `map_some` (keyword `map_some`).
        generate_log: `log` (keyword `log`).
    """

    generate_exhaustive_match: bool = True
    generate_partial_match: bool = True
    generate_log: bool = True

    @property
    def has_matchers(self) -> bool:
        return self.generate_exhaustive_match or self.generate_partial_match


def read_generation_config(entity: EntityInfo, module: str = "") -> GenerationConfig:
    """Build the GenerationConfig from the entity's marker keywords.

    Raises:
        InvalidAnnotationError: Unknown keyword, or a value that is not a
            literal True/False.
    """
    values: dict[str, bool] = {}
    for key, value in entity.annotation or ():
        field_name = _CONFIG_FIELDS.get(key)
        if field_name is None:
            raise InvalidAnnotationError(
                f"Unknown @{ANNOTATION_NAME} option '{key}' on {entity.qualname}.",
                entity=entity.qualname,
                module=module,
                todo="Use only keyword options: " + ", ".join(ANNOTATION_OPTIONS) + ".",
            )
        if not isinstance(value, bool):
            shown = value.text if isinstance(value, NonLiteralOption) else repr(value)
            raise InvalidAnnotationError(
                f"@{ANNOTATION_NAME} option '{key}' must be True or False, got {shown}.",
                entity=entity.qualname,
                module=module,
                todo=f"Write {key}=True or {key}=False literally.",
            )
        values[field_name] = value
    return GenerationConfig(**values)


def extension_class_name(state: EntityInfo) -> str:
    return state.qualname.replace(".", "") + "Extension"


def generate_map_method(specs: tuple[HandlerSpec, ...]) -> list[str]:
    lines = ["    def map(", "        self,", "        *,"]
    for spec in specs:
        lines.append(f"        {spec.handler}: {spec.callable_type},")
    lines += [
        "    ) -> T:",
        '        """Match the current state and return the result of its handler.',
        "",
        "        Every variant needs a handler:",
        "",
    ]
    for spec in specs:
        lines.append(f"            {spec.handler}: {spec.signature}")
    lines += [
        "",
        "        Raises UnknownVariantError for a variant added after generation.",
        '        """',
        "        state = self.state",
        "        match state:",
    ]
    for spec in specs:
        lines.append(f"            case {spec.variant}():")
        lines.append(f"                return {spec.handler}({spec.call_args})")
    lines.append("        raise UnknownVariantError(type(state).__name__)")
    return lines


def generate_map_some_method(specs: tuple[HandlerSpec, ...]) -> list[str]:
    lines = ["    def map_some(", "        self,", "        *,"]
    for spec in specs:
        lines.append(f"        {spec.handler}: {spec.callable_type} | None = None,")
    lines += [
        f"        {ORELSE_HANDLER}: Callable[[], T],",
        "    ) -> T:",
        '        """Match the current state with optional handlers.',
        "",
        f"        A state whose handler is omitted falls through to {ORELSE_HANDLER}.",
        '        """',
        "        state = self.state",
        "        match state:",
    ]
    for spec in specs:
        lines.append(f"            case {spec.variant}() if {spec.handler} is not None:")
        lines.append(f"                return {spec.handler}({spec.call_args})")
    lines.append(f"        return {ORELSE_HANDLER}()")
    return lines


def generate_log_method() -> list[str]:
    return [
        "    def log(",
        "        self,",
        "        *,",
        "        onLog: Callable[[str], None],",
        "        showTime: bool = False,",
        "    ) -> None:",
        '        """Pass a description of the current state to onLog.',
        "",
        "        With showTime the message starts with an ISO-8601 timestamp.",
        '        """',
        '        timestamp = f"[{datetime.now().isoformat()}] " if showTime else ""',
        f'        onLog(f"{{timestamp}}{LOG_PREFIX}: {{self.state}}")',
    ]


def generate_extension_class(
    state: EntityInfo,
    specs: tuple[HandlerSpec, ...],
    config: GenerationConfig,
) -> list[str]:
    lines = [
        f"class {extension_class_name(state)}:",
        f'    """Extension methods for {state.qualname} state management."""',
        "",
        '    __slots__ = ("state",)',
        "",
        f"    def __init__(self, state: {state.qualname}) -> None:",
        "        self.state = state",
    ]
    if config.generate_exhaustive_match:
        lines.append("")
        lines.extend(generate_map_method(specs))
    if config.generate_partial_match:
        lines.append("")
        lines.extend(generate_map_some_method(specs))
    if config.generate_log:
        lines.append("")
        lines.extend(generate_log_method())
    return lines


# ===--- Artifact assembly ---=== #


@dataclass(frozen=True)
class ExtensionSpec:
    """Generated extension for one annotated entity, ready for assembly.

    Attributes:
        entity: Qualname of the annotated Bloc/Cubit.
        state: Qualname of the resolved state type.
        class_name: Name of the generated extension class.
        members: Generated member names, in emission order.
        source_names: Module-level names of the state and its variants.
        state_module: Import path of the module declaring the state, which
            is the source module unless the state was imported.
        uses_any: True when some handler field had no annotation.
        content_lines: Class source lines without trailing newlines.
    """

    entity: str
    state: str
    class_name: str
    members: tuple[str, ...]
    source_names: tuple[str, ...]
    state_module: str
    uses_any: bool
    content_lines: tuple[str, ...]


_HEADER_BORDER: str = "# x-------------------------------------------x #"


def format_file_header(source_name: str) -> list[str]:
    """Return the banner and part-of marker for a generated module.

    Output format:
        # GENERATED CODE - DO NOT MODIFY BY HAND
        # flake8: noqa
        # x-------------------------------------------x #
        # | part of 'search_cubit.py'
        # | Generated by enhance-state-gen
        # x-------------------------------------------x #

    Raises:
        ValueError: If source_name is empty.
    """
    if not source_name:
        raise ValueError("source_name must not be empty")
    return [
        "# GENERATED CODE - DO NOT MODIFY BY HAND",
        "# flake8: noqa",
        _HEADER_BORDER,
        f"# | part of '{source_name}'",
        "# | Generated by enhance-state-gen",
        _HEADER_BORDER,
    ]


def format_import_block(extensions: tuple[ExtensionSpec, ...]) -> list[str]:
    """Return the import lines needed by the given extensions.

    Stdlib imports come first, then a blank line, then the runtime and
    state-module imports. Only what the enabled members use is imported.
    Modules and names are sorted and de-duplicated for deterministic output.
    """
    members = {m for ext in extensions for m in ext.members}
    has_matchers = bool(members & {"map", "map_some"})

    stdlib: list[str] = ["from __future__ import annotations", ""]
    if members:
        stdlib.append("from collections.abc import Callable")
    if "log" in members:
        stdlib.append("from datetime import datetime")
    typing_names = []
    if any(ext.uses_any for ext in extensions if ext.members):
        typing_names.append("Any")
    if has_matchers:
        typing_names.append("TypeVar")
    if typing_names:
        stdlib.append(f"from typing import {', '.join(typing_names)}")
    if stdlib[-1] == "":
        stdlib.pop()

    local: list[str] = []
    if "map" in members:
        local.append(f"from {RUNTIME_MODULE} import UnknownVariantError")
    by_module: dict[str, set[str]] = {}
    for ext in extensions:
        by_module.setdefault(ext.state_module, set()).update(ext.source_names)
    for module_name in sorted(by_module):
        names = ", ".join(sorted(by_module[module_name]))
        local.append(f"from {module_name} import {names}")

    return [*stdlib, "", *local]


def assemble_artifact_source(
    source_name: str, extensions: tuple[ExtensionSpec, ...]
) -> str:
    """Assemble the complete companion module for one source file.

    File structure:
        <banner + part-of marker>   <- format_file_header
                                    <- blank line
        <imports>                   <- format_import_block
                                    <- blank line
        T = TypeVar("T")            <- only when a matcher is generated
                                    <- two blank lines
        <extension class> ...       <- one per ExtensionSpec, in order
                                    <- trailing newline

    Raises:
        ValueError: If extensions is empty or source_name is empty.
    """
    if not extensions:
        raise ValueError("at least one ExtensionSpec is required")

    parts: list[str] = list(format_file_header(source_name))
    parts.append("")
    parts.extend(format_import_block(extensions))

    if any({"map", "map_some"} & set(ext.members) for ext in extensions):
        parts.append("")
        parts.append('T = TypeVar("T")')

    for ext in extensions:
        parts.extend(["", ""])
        parts.extend(ext.content_lines)

    return "\n".join(parts) + "\n"


# ===--- Orchestration ---=== #


def validate_entity(entity: EntityInfo, module: str = "") -> None:
    if not entity.is_class:
        raise NotAClassError(
            f"{ANNOTATION_NAME} can only be applied to classes.",
            entity=entity.qualname,
            module=module,
            todo=f"Apply @{ANNOTATION_NAME} to a Bloc or Cubit class.",
        )
    if entity.is_private:
        raise PrivateClassError(
            f"{ANNOTATION_NAME} cannot be applied to private classes.",
            entity=entity.qualname,
            module=module,
            todo="Make the class public by removing the underscore prefix.",
        )


def generate_extension(
    entity: EntityInfo,
    universe: TypeUniverse,
    config: GenerationConfig | None = None,
    provider: TypeIntrospectionProvider | None = None,
) -> ExtensionSpec:
    """Validate one annotated entity and synthesize its extension class.

    Steps (first failure wins): class check, visibility check, marker
    options, state container and state type, variants, handler names.
    Variants are looked up in the module that declares the state.

    Args:
        entity: The annotated Bloc/Cubit entity.
        universe: Snapshot of the module declaring the entity.
        config: Member selection. Read from the entity's marker when None.
        provider: Reads modules the state is imported from.

    Returns:
        ExtensionSpec holding the generated class lines.

    Raises:
        GenerationError: One of the subclasses, carrying entity and hint.
    """
    module = universe.module_name
    validate_entity(entity, module)
    if config is None:
        config = read_generation_config(entity, module)

    state, state_universe = resolve_state_type(entity, universe, provider)
    variants = resolve_variants(state, state_universe)
    if not variants:
        raise NoVariantsFoundError(
            f"No subclasses found for {state.qualname}.",
            entity=entity.qualname,
            module=module,
            todo=f"Create at least one subclass of {state.qualname} "
            "to represent different states.",
        )

    specs = build_handler_specs(variants)
    if config.has_matchers:
        check_handler_names(specs, state, entity, module)

    members = tuple(
        name
        for name, enabled in (
            ("map", config.generate_exhaustive_match),
            ("map_some", config.generate_partial_match),
            ("log", config.generate_log),
        )
        if enabled
    )
    source_names = tuple(dict.fromkeys([state.root_name, *(v.root_name for v in variants)]))
    uses_any = config.has_matchers and any(
        f.type_name == "Any" for spec in specs for f in spec.fields
    )
    logger.debug("Generating %s for %s: %s", members, entity.qualname, state.qualname)

    return ExtensionSpec(
        entity=entity.qualname,
        state=state.qualname,
        class_name=extension_class_name(state),
        members=members,
        source_names=source_names,
        state_module=state_universe.module_name,
        uses_any=uses_any,
        content_lines=tuple(generate_extension_class(state, specs, config)),
    )


def generate(
    entity: EntityInfo,
    universe: TypeUniverse,
    config: GenerationConfig | None = None,
) -> str:
    """Return the complete companion module text for a single annotated entity."""
    extension = generate_extension(entity, universe, config)
    return assemble_artifact_source(universe.source_name, (extension,))


# ===--- Source processing ---=== #


@dataclass(frozen=True)
class SourceArtifact:
    """Generated companion module for one source file, not yet written.

    Attributes:
        source: Source path the artifact was generated from.
        module_name: Import path used for the source module.
        entities: Qualnames of the annotated entities covered, in order.
        content: Complete module text including trailing newline.
    """

    source: Path
    module_name: str
    entities: tuple[str, ...]
    content: str


def module_name_for(source: Path, package: str | None = None) -> str:
    return f"{package}.{source.stem}" if package else source.stem


def output_path_for(source: Path, output_dir: Path | None = None) -> Path:
    directory = source.parent if output_dir is None else Path(output_dir)
    return directory / f"{source.stem}{OUTPUT_SUFFIX}.py"


def generate_for_source(
    source: Path,
    module_name: str,
    provider: TypeIntrospectionProvider | None = None,
) -> SourceArtifact | None:
    """Generate the companion module for every marked entity of one source.

    Returns None when the source has no @enhance_state entities. Two entities
    sharing a state type produce one extension class (the first wins).

    Raises:
        GenerationError: First failing entity; nothing is produced for the file.
            DuplicateExtensionNameError when two distinct states would
            generate the same extension class name.
        SyntaxError: Source is not valid Python.
        OSError: Source cannot be read.
    """
    provider = provider or AstIntrospectionProvider()
    universe = provider.load(Path(source), module_name)
    annotated = universe.annotated()
    if not annotated:
        return None

    extensions: list[ExtensionSpec] = []
    for entity in annotated:
        extension = generate_extension(entity, universe, provider=provider)
        duplicate = next(
            (
                e
                for e in extensions
                if (e.state_module, e.state) == (extension.state_module, extension.state)
            ),
            None,
        )
        if duplicate is not None:
            logger.warning(
                "%s shares state %s with %s; keeping the extension of %s",
                entity.qualname,
                extension.state,
                duplicate.entity,
                duplicate.entity,
            )
            continue
        clash = next((e for e in extensions if e.class_name == extension.class_name), None)
        if clash is not None:
            raise DuplicateExtensionNameError(
                f"States {clash.state_module}.{clash.state} and "
                f"{extension.state_module}.{extension.state} both generate "
                f"class {extension.class_name}.",
                entity=entity.qualname,
                module=module_name,
                todo=f"Rename {extension.state} or {clash.state} so the "
                "extension names differ.",
            )
        extensions.append(extension)

    return SourceArtifact(
        source=Path(source),
        module_name=module_name,
        entities=tuple(entity.qualname for entity in annotated),
        content=assemble_artifact_source(universe.source_name, tuple(extensions)),
    )


# ===--- Writer ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing one companion module.

    Attributes:
        source: Source path the module was generated from.
        filename: Filename written, e.g. "search_cubit_match.py".
        path: Absolute path of the written file.
        entities: Annotated entities covered by the file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    source: Path
    filename: str
    path: Path
    entities: tuple[str, ...]
    line_count: int
    byte_count: int


def write_artifact(artifact: SourceArtifact, output_dir: Path | None = None) -> FileWriteResult:
    """Write one companion module to disk, creating the directory if absent.

    Raises:
        OSError: Propagated directly if the filesystem write fails.
    """
    file_path = output_path_for(artifact.source, output_dir)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(artifact.content, encoding="utf-8")
    resolved = file_path.resolve()
    logger.debug("Wrote %s", resolved)
    return FileWriteResult(
        source=artifact.source,
        filename=file_path.name,
        path=resolved,
        entities=artifact.entities,
        line_count=artifact.content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    """Data for the post-generation console report.

    Attributes:
        scanned: Number of source files read.
        skipped: Sources without @enhance_state entities, in input order.
        files: Write results, in input order.
    """

    scanned: int
    skipped: tuple[Path, ...]
    files: tuple[FileWriteResult, ...]

    @property
    def total_lines(self) -> int:
        return sum(f.line_count for f in self.files)


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary. Ends with exactly one trailing newline."""
    lines: list[str] = ["State extensions generated:", ""]
    lines.append(
        f"  Sources:    {summary.scanned} scanned, "
        f"{len(summary.skipped)} without @{ANNOTATION_NAME}"
    )

    if summary.files:
        lines.append("")
        lines.append("  Files written:")
        for result in summary.files:
            line_str = f"{result.line_count:>6,} lines"
            entities = ", ".join(result.entities)
            lines.append(f"    {result.filename:<28} {line_str}  ({entities})")

    lines.append("")
    lines.append(
        f"  Total: {summary.total_lines:,} lines across {len(summary.files)} files"
    )
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main generation ---=== #


def run_generate(
    config: GenerateConfig,
    provider: TypeIntrospectionProvider | None = None,
) -> tuple[FileWriteResult, ...]:
    """Generate companion modules for every configured source.

    All sources are generated before anything is written, so a failing
    entity leaves the output directory untouched. With to_stdout the
    artifacts are printed instead of written.

    Raises:
        GenerationError: First failing annotated entity.
        SyntaxError: A source is not valid Python.
        OSError: A source is unreadable or a write fails.
    """
    artifacts: list[SourceArtifact] = []
    skipped: list[Path] = []
    for source in config.sources:
        module_name = module_name_for(source, config.package)
        if not config.to_stdout:
            print(f"Scanning: {source} ({module_name})")
        artifact = generate_for_source(source, module_name, provider)
        if artifact is None:
            skipped.append(source)
            continue
        artifacts.append(artifact)

    if config.to_stdout:
        for artifact in artifacts:
            print(artifact.content, end="")
        return ()

    results = tuple(write_artifact(a, config.output_dir) for a in artifacts)
    print_generation_summary(
        GenerationSummary(
            scanned=len(config.sources), skipped=tuple(skipped), files=results
        )
    )
    return results


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    setup_logging(config.verbose)

    try:
        run_generate(config)
    except GenerationError as err:
        print(f"Generation error [{err.code}] in {err.location}: {err.message}")
        print(f"Hint: {err.todo}")
        raise SystemExit(1) from err
    except (OSError, SyntaxError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
