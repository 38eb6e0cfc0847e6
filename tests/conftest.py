import argparse
import importlib
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path
from types import ModuleType

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import state_gen  # noqa: E402

CONTAINER_PRELUDE = '''
from dataclasses import dataclass
from typing import Generic, TypeVar

from enhance_state import enhance_state

E = TypeVar("E")
S = TypeVar("S")


class Cubit(Generic[S]):
    def __init__(self, state: S) -> None:
        self.state = state


class Bloc(Generic[E, S]):
    def __init__(self, state: S) -> None:
        self.state = state
'''

SEARCH_SOURCE = CONTAINER_PRELUDE + '''

class SearchState:
    pass


class SearchInitial(SearchState):
    def __str__(self) -> str:
        return "SearchInitial()"


@dataclass
class Searching(SearchState):
    query: str


@dataclass
class SearchResults(SearchState):
    query: str
    results: list[str]


@enhance_state
class SearchCubit(Cubit[SearchState]):
    pass
'''


@pytest.fixture
def make_universe() -> Callable[..., state_gen.TypeUniverse]:
    def _make_universe(
        source: str, module_name: str = "search_cubit"
    ) -> state_gen.TypeUniverse:
        return state_gen.load_type_universe(
            textwrap.dedent(source), module_name, f"{module_name}.py"
        )

    return _make_universe


@pytest.fixture
def search_universe(
    make_universe: Callable[..., state_gen.TypeUniverse],
) -> state_gen.TypeUniverse:
    return make_universe(SEARCH_SOURCE)


@pytest.fixture
def write_source(tmp_path: Path) -> Callable[..., Path]:
    def _write_source(source: str, name: str = "search_cubit.py") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return path

    return _write_source


@pytest.fixture
def load_generated(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    write_source: Callable[..., Path],
) -> Callable[..., tuple[ModuleType, ModuleType]]:
    """Write a source module, generate its companion and import both."""

    def _load_generated(
        source: str, module_name: str = "search_cubit"
    ) -> tuple[ModuleType, ModuleType]:
        source_path = write_source(source, f"{module_name}.py")
        artifact = state_gen.generate_for_source(source_path, module_name)
        assert artifact is not None
        state_gen.write_artifact(artifact)

        monkeypatch.syspath_prepend(str(tmp_path))
        for name in (module_name, f"{module_name}_match"):
            monkeypatch.delitem(sys.modules, name, raising=False)
        importlib.invalidate_caches()
        return (
            importlib.import_module(module_name),
            importlib.import_module(f"{module_name}_match"),
        )

    return _load_generated


@pytest.fixture
def make_args(tmp_path: Path) -> Callable[..., argparse.Namespace]:
    source = tmp_path / "search_cubit.py"
    source.write_text(SEARCH_SOURCE, encoding="utf-8")

    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "sources": [source],
            "output_dir": None,
            "package": None,
            "stdout": False,
            "verbose": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args
