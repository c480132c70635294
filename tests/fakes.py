"""Scripted collaborators for orchestrator and session tests."""

from aipair.router import GenerationError
from aipair.runner import BuildOutcome, TestOutcome
from aipair.state import BuildState, TestResults

FAILING_TEST = "org.example.AppTest.addsNumbers"


class FakeGenerator:
    """Factory and generator in one: records the models asked for and the prompts sent."""

    def __init__(self, fail_on=(), on_call=None):
        self.models: list[str] = []
        self.prompts: list[str] = []
        self.fail_on = set(fail_on)
        self.on_call = on_call

    def __call__(self, model):
        self.models.append(model)
        return self

    def generate_code(self, prompt):
        self.prompts.append(prompt)
        call = len(self.prompts)
        if self.on_call:
            self.on_call(call)
        if call in self.fail_on:
            raise GenerationError("rate limited")
        return (
            "File: src/main/java/org/example/App.java\n"
            f"```java\nclass App {{ int attempt = {call}; }}\n```\n"
        )


class FakeRunner:
    def __init__(self, builds=(), tests=(), test_error=None):
        self.builds = list(builds)
        self.tests = list(tests)
        self.test_error = test_error
        self.build_calls = 0
        self.test_calls = 0

    def build(self, config):
        self.build_calls += 1
        ok = self.builds.pop(0) if self.builds else True
        output = "BUILD SUCCESSFUL" if ok else "App.java:3: error: ';' expected\nBUILD FAILED"
        return BuildOutcome(state=BuildState(compiled_successfully=ok), output=output)

    def test(self, config):
        self.test_calls += 1
        if self.test_error:
            raise self.test_error
        passed = self.tests.pop(0) if self.tests else False
        results = TestResults(
            passed=passed,
            total_tests=2,
            passed_tests={"org.example.AppTest.startsUp"} | ({FAILING_TEST} if passed else set()),
            failed_tests=set() if passed else {FAILING_TEST},
        )
        return TestOutcome(results=results, output="" if passed else f"{FAILING_TEST} FAILED")
