from __future__ import annotations

from pathlib import Path

import pytest

import state_gen


def _make_extension(
    *,
    members: tuple[str, ...] = ("map", "map_some", "log"),
    source_names: tuple[str, ...] = ("SearchState", "Searching"),
    state_module: str = "search_cubit",
    uses_any: bool = False,
    content_lines: tuple[str, ...] = ("class SearchStateExtension:", "    pass"),
) -> state_gen.ExtensionSpec:
    return state_gen.ExtensionSpec(
        entity="SearchCubit",
        state="SearchState",
        class_name="SearchStateExtension",
        members=members,
        source_names=source_names,
        state_module=state_module,
        uses_any=uses_any,
        content_lines=content_lines,
    )


def _make_result(
    filename: str, line_count: int, entities: tuple[str, ...] = ("SearchCubit",)
) -> state_gen.FileWriteResult:
    return state_gen.FileWriteResult(
        source=Path(filename.replace("_match", "")),
        filename=filename,
        path=Path("/tmp") / filename,
        entities=entities,
        line_count=line_count,
        byte_count=line_count * 10,
    )


def test_format_file_header_names_source_between_borders() -> None:
    header = state_gen.format_file_header("search_cubit.py")

    assert header == [
        "# GENERATED CODE - DO NOT MODIFY BY HAND",
        "# flake8: noqa",
        "# x-------------------------------------------x #",
        "# | part of 'search_cubit.py'",
        "# | Generated by enhance-state-gen",
        "# x-------------------------------------------x #",
    ]


def test_format_file_header_rejects_empty_source_name() -> None:
    with pytest.raises(ValueError):
        state_gen.format_file_header("")


def test_format_import_block_for_all_members() -> None:
    block = state_gen.format_import_block(
        (_make_extension(state_module="app.search_cubit"),)
    )

    assert block == [
        "from __future__ import annotations",
        "",
        "from collections.abc import Callable",
        "from datetime import datetime",
        "from typing import TypeVar",
        "",
        "from enhance_state import UnknownVariantError",
        "from app.search_cubit import SearchState, Searching",
    ]


def test_format_import_block_log_only_skips_matcher_imports() -> None:
    block = state_gen.format_import_block(
        (_make_extension(members=("log",), uses_any=True),)
    )

    assert "from typing import TypeVar" not in block
    assert "from enhance_state import UnknownVariantError" not in block
    assert "from datetime import datetime" in block
    assert block[-1] == "from search_cubit import SearchState, Searching"


def test_format_import_block_without_members_imports_only_the_state() -> None:
    block = state_gen.format_import_block(
        (_make_extension(members=(), source_names=("SearchState",)),)
    )

    assert block == [
        "from __future__ import annotations",
        "",
        "from search_cubit import SearchState",
    ]


def test_format_import_block_sorts_and_merges_source_names() -> None:
    block = state_gen.format_import_block(
        (
            _make_extension(source_names=("TimerState", "Ticking"), state_module="states"),
            _make_extension(source_names=("AuthState", "Ticking"), state_module="states"),
        ),
    )

    assert block[-1] == "from states import AuthState, Ticking, TimerState"


def test_format_import_block_groups_names_by_state_module() -> None:
    block = state_gen.format_import_block(
        (
            _make_extension(source_names=("TimerState",), state_module="timer_state"),
            _make_extension(source_names=("AuthState",), state_module="app.auth_state"),
        ),
    )

    assert block[-2:] == [
        "from app.auth_state import AuthState",
        "from timer_state import TimerState",
    ]


def test_assemble_artifact_source_layout() -> None:
    text = state_gen.assemble_artifact_source("search_cubit.py", (_make_extension(),))

    lines = text.split("\n")
    assert lines[6] == ""
    assert lines[7] == "from __future__ import annotations"
    assert 'T = TypeVar("T")\n\n\nclass SearchStateExtension:\n    pass\n' in text
    assert text.endswith("    pass\n")
    assert not text.endswith("\n\n")


def test_assemble_artifact_source_requires_an_extension() -> None:
    with pytest.raises(ValueError):
        state_gen.assemble_artifact_source("search_cubit.py", ())


@pytest.mark.parametrize(
    ("source", "output_dir", "expected"),
    [
        (Path("app/search_cubit.py"), None, Path("app/search_cubit_match.py")),
        (Path("app/search_cubit.py"), Path("gen"), Path("gen/search_cubit_match.py")),
    ],
)
def test_output_path_for(source: Path, output_dir: Path | None, expected: Path) -> None:
    assert state_gen.output_path_for(source, output_dir) == expected


def test_module_name_for_prefixes_package() -> None:
    assert state_gen.module_name_for(Path("app/timer_bloc.py")) == "timer_bloc"
    assert state_gen.module_name_for(Path("app/timer_bloc.py"), "app") == "app.timer_bloc"


def test_write_artifact_creates_directory_and_counts(tmp_path: Path) -> None:
    artifact = state_gen.SourceArtifact(
        source=tmp_path / "search_cubit.py",
        module_name="search_cubit",
        entities=("SearchCubit",),
        content="# one\n# twø\n",
    )
    output_dir = tmp_path / "nested" / "out"

    result = state_gen.write_artifact(artifact, output_dir)

    assert result.filename == "search_cubit_match.py"
    assert result.path == (output_dir / "search_cubit_match.py").resolve()
    assert result.path.read_text(encoding="utf-8") == "# one\n# twø\n"
    assert result.line_count == 2
    assert result.byte_count == len("# one\n# twø\n".encode("utf-8"))
    assert result.entities == ("SearchCubit",)


def test_write_artifact_overwrites_previous_output(tmp_path: Path) -> None:
    target = tmp_path / "search_cubit_match.py"
    target.write_text("stale\n", encoding="utf-8")
    artifact = state_gen.SourceArtifact(
        source=tmp_path / "search_cubit.py",
        module_name="search_cubit",
        entities=("SearchCubit",),
        content="fresh\n",
    )

    state_gen.write_artifact(artifact)

    assert target.read_text(encoding="utf-8") == "fresh\n"


def test_generate_for_source_skips_unmarked_modules(write_source) -> None:
    source = write_source("class Plain:\n    pass\n", "plain.py")

    assert state_gen.generate_for_source(source, "plain") is None


def test_generate_for_source_keeps_first_extension_for_shared_state(
    write_source, caplog: pytest.LogCaptureFixture
) -> None:
    source = write_source(
        """
        class PingState:
            pass

        class Pinged(PingState):
            pass

        @enhance_state
        class PingCubit(Cubit[PingState]):
            pass

        @enhance_state
        class EchoCubit(Cubit[PingState]):
            pass
        """,
        "ping_cubit.py",
    )

    with caplog.at_level("WARNING", logger="state_gen"):
        artifact = state_gen.generate_for_source(source, "ping_cubit")

    assert artifact is not None
    assert artifact.entities == ("PingCubit", "EchoCubit")
    assert artifact.content.count("class PingStateExtension:") == 1
    assert "EchoCubit shares state PingState with PingCubit" in caplog.text


def test_generate_for_source_rejects_colliding_extension_names(write_source) -> None:
    source = write_source(
        """
        class A:
            class BState:
                pass

            class Ready(BState):
                pass

        class AB:
            class State:
                pass

            class Done(State):
                pass

        @enhance_state
        class FirstCubit(Cubit["A.BState"]):
            pass

        @enhance_state
        class SecondCubit(Cubit["AB.State"]):
            pass
        """,
        "pair_cubit.py",
    )

    with pytest.raises(state_gen.DuplicateExtensionNameError) as exc_info:
        state_gen.generate_for_source(source, "pair_cubit")

    err = exc_info.value
    assert err.code == "DUPLICATE_EXTENSION_NAME"
    assert err.entity == "SecondCubit"
    assert "ABStateExtension" in err.message
    assert "pair_cubit.A.BState" in err.message
    assert "pair_cubit.AB.State" in err.message


def test_generate_for_source_follows_state_imported_from_sibling(write_source) -> None:
    write_source(
        """
        from dataclasses import dataclass

        class SearchState:
            pass

        class SearchInitial(SearchState):
            pass

        @dataclass
        class Searching(SearchState):
            query: str
        """,
        "search_state.py",
    )
    source = write_source(
        """
        from enhance_state import enhance_state
        from search_state import SearchState

        class Stray(SearchState):
            pass

        @enhance_state
        class SearchCubit(Cubit[SearchState]):
            pass
        """,
        "search_cubit.py",
    )

    artifact = state_gen.generate_for_source(source, "search_cubit")

    assert artifact is not None
    assert "# | part of 'search_cubit.py'" in artifact.content
    assert "from search_state import SearchInitial, SearchState, Searching\n" in (
        artifact.content
    )
    assert "from search_cubit import" not in artifact.content
    assert "case Searching():" in artifact.content
    assert "Stray" not in artifact.content


def test_format_generation_summary_layout() -> None:
    summary = state_gen.GenerationSummary(
        scanned=3,
        skipped=(Path("helpers.py"),),
        files=(
            _make_result("search_cubit_match.py", 120),
            _make_result("timer_bloc_match.py", 1500, ("TimerBloc", "ClockCubit")),
        ),
    )

    text = state_gen.format_generation_summary(summary)
    lines = text.splitlines()

    assert lines[0] == "State extensions generated:"
    assert "  Sources:    3 scanned, 1 without @enhance_state" in lines
    assert "  Files written:" in lines
    assert any(
        "search_cubit_match.py" in line and "120 lines" in line and "(SearchCubit)" in line
        for line in lines
    )
    assert any(
        "1,500 lines" in line and "(TimerBloc, ClockCubit)" in line for line in lines
    )
    assert lines[-1] == "  Total: 1,620 lines across 2 files"
    assert text.endswith("\n") and not text.endswith("\n\n")


def test_format_generation_summary_without_files() -> None:
    summary = state_gen.GenerationSummary(
        scanned=1, skipped=(Path("helpers.py"),), files=()
    )

    text = state_gen.format_generation_summary(summary)

    assert "Files written:" not in text
    assert "  Total: 0 lines across 0 files\n" in text
