from pathlib import Path

import pytest

from aipair.config_loader import RunConfig

APP_JAVA = """package org.example;

public class App {
    public int add(int a, int b) {
        return 0;
    }
}
"""

APP_TEST_JAVA = """package org.example;

public class AppTest {
    public void addsNumbers() {}
}
"""


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A minimal Gradle-style Java project."""
    root = tmp_path / "project"
    src = root / "src" / "main" / "java" / "org" / "example"
    tests = root / "src" / "test" / "java" / "org" / "example"
    src.mkdir(parents=True)
    tests.mkdir(parents=True)
    (src / "App.java").write_text(APP_JAVA)
    (tests / "AppTest.java").write_text(APP_TEST_JAVA)
    (root / "build.gradle").write_text("plugins { id 'java' }\n")
    return root


@pytest.fixture
def config(project: Path) -> RunConfig:
    return RunConfig(
        project_root=project,
        tmp_dir=".ai-pair",
        log_level="info",
        api_keys={"openai": "sk-test"},
        system_prompt="You write Java.",
        prompt_template="Fix:\n{testOutput}\n{filesContent}\n{buildFileContent}",
        no_issue_prompt_template="Improve:\n{filesContent}\n{buildFileContent}",
    )
