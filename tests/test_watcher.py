from aipair.changes import ChangeTracker
from aipair.watcher import ChangeWatcher


def _watcher(project, seen, on_change=None):
    tracker = ChangeTracker(project, [project / "src"])
    return ChangeWatcher(tracker, on_change or seen.append, interval=0.01)


def test_first_poll_takes_baseline(project):
    seen = []
    watcher = _watcher(project, seen)
    assert watcher.poll() is None
    assert watcher.poll() is None
    assert seen == []


def test_change_fires_callback(project):
    seen = []
    watcher = _watcher(project, seen)
    watcher.poll()

    (project / "src/main/java/org/example/Extra.java").write_text("class Extra {}\n")
    summary = watcher.poll()

    assert summary.new_files == {"src/main/java/org/example/Extra.java"}
    assert seen == [summary]
    assert watcher.poll() is None


def test_files_written_by_the_callback_do_not_retrigger(project):
    seen = []
    app = project / "src/main/java/org/example/App.java"

    def regenerate(summary):
        seen.append(summary)
        app.write_text("class App { int generated = 1; }\n")

    watcher = _watcher(project, seen, on_change=regenerate)
    watcher.poll()
    (project / "src/test/java/org/example/AppTest.java").write_text("class AppTest { }\n")

    watcher.poll()
    assert watcher.poll() is None
    assert len(seen) == 1


def test_run_stops_on_event(project):
    seen = []
    watcher = _watcher(project, seen)
    watcher.stop()
    watcher.run()
    assert seen == []


def test_run_with_poll_limit(project):
    seen = []
    watcher = _watcher(project, seen)
    watcher.run(max_polls=2)
    assert seen == []
