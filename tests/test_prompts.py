from datetime import datetime, timezone

from aipair.prompts import (
    PromptBuilder,
    collect_files_with_extension,
    collect_test_files,
    extract_class_name_from_test,
    render_prompt,
)
from aipair.state import BuildState, CycleRecord, CycleState, TestResults


def _finished_record(compiled=True, failed=()):
    return CycleRecord(
        cycle_number=1,
        model="gpt-4o",
        ended_at=datetime.now(timezone.utc),
        build_state=BuildState(compiled_successfully=compiled),
        test_results=TestResults(failed_tests=set(failed)),
        run_output="AppTest > addsNumbers FAILED",
    )


def test_extract_class_name_from_test():
    assert extract_class_name_from_test("org.example.AppTest.addsNumbers") == "org.example.AppTest"
    assert extract_class_name_from_test("addsNumbers(org.example.AppTest)") == "org.example.AppTest"
    assert extract_class_name_from_test("org.example.AppTest") == "org.example.AppTest"


def test_collect_files_with_extension(project):
    files = collect_files_with_extension([project / "src", project / "missing"], ".java")
    names = [f.path.name for f in files]
    assert sorted(names) == ["App.java", "AppTest.java"]


def test_collect_test_files_only_failing_classes(config, project):
    other = project / "src/test/java/org/example/OtherTest.java"
    other.write_text("class OtherTest {}\n")

    files = collect_test_files(config, _finished_record(failed={"org.example.AppTest.addsNumbers"}))

    assert [f.path.name for f in files] == ["AppTest.java"]


def test_collect_test_files_falls_back_to_all(config, project):
    (project / "src/test/java/org/example/OtherTest.java").write_text("class OtherTest {}\n")

    assert len(collect_test_files(config, None)) == 2
    assert len(collect_test_files(config, _finished_record(compiled=False))) == 2
    assert len(collect_test_files(config, _finished_record(failed={"gone.Missing.test"}))) == 2


def test_render_prompt_with_hints(config):
    prompt = render_prompt(
        config,
        hints=["Fix failing test: AppTest.addsNumbers", "check overflow"],
        previous_output="expected 3 but was 0",
        files_content="File: App.java",
        build_file_content="plugins {}",
    )
    assert prompt.startswith("Fix:\nexpected 3 but was 0\nFile: App.java\nplugins {}")
    assert prompt.endswith(
        "Hints for improvement: Fix failing test: AppTest.addsNumbers; check overflow"
    )


def test_render_prompt_without_hints(config):
    prompt = render_prompt(config, [], "ignored", "File: App.java", "plugins {}")
    assert prompt == "Improve:\nFile: App.java\nplugins {}"


def test_prompt_builder_includes_sources_tests_and_build_file(config):
    state = CycleState()
    prompt = PromptBuilder(config).build(state)

    assert prompt.startswith("Improve:")
    assert "File: src/main/java/org/example/App.java" in prompt
    assert "File: src/test/java/org/example/AppTest.java" in prompt
    assert "File: build.gradle" in prompt
    assert "plugins { id 'java' }" in prompt


def test_prompt_builder_uses_previous_cycle_output(config):
    state = CycleState()
    state.cycles.append(_finished_record(failed={"org.example.AppTest.addsNumbers"}))
    state.add_hint("Fix failing test: org.example.AppTest.addsNumbers")

    prompt = PromptBuilder(config).build(state)

    assert prompt.startswith("Fix:\nAppTest > addsNumbers FAILED")
    assert "Hints for improvement: Fix failing test: org.example.AppTest.addsNumbers" in prompt
