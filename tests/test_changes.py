from aipair.changes import ChangeTracker, is_build_file


def _tracker(project):
    return ChangeTracker(project, [project / "src" / "main" / "java", project / "src" / "test" / "java"])


def test_diff_classifies_files(project):
    tracker = _tracker(project)
    src = project / "src" / "main" / "java" / "org" / "example"

    before = tracker.snapshot()
    (src / "App.java").write_text("class App {}\n")
    (src / "Util.java").write_text("class Util {}\n")
    (project / "src" / "test" / "java" / "org" / "example" / "AppTest.java").unlink()
    (project / "build.gradle").write_text("plugins { id 'application' }\n")
    after = tracker.snapshot()

    summary = tracker.diff(before, after)

    assert summary.new_files == {"src/main/java/org/example/Util.java"}
    assert summary.deleted_files == {"src/test/java/org/example/AppTest.java"}
    assert summary.modified_files == {"src/main/java/org/example/App.java", "build.gradle"}
    assert summary.build_files == {"build.gradle"}
    assert summary.last_change_time == after.taken_at


def test_no_changes(project):
    tracker = _tracker(project)
    summary = tracker.diff(tracker.snapshot(), tracker.snapshot())
    assert summary.is_empty
    assert summary.build_files == set()


def test_unchanged_content_is_not_modified(project):
    tracker = _tracker(project)
    app = project / "src" / "main" / "java" / "org" / "example" / "App.java"
    before = tracker.snapshot()
    app.write_text(app.read_text())
    assert tracker.diff(before, tracker.snapshot()).is_empty


def test_custom_build_file_predicate(project):
    tracker = ChangeTracker(
        project,
        [project / "src"],
        build_file_predicate=lambda path: path.endswith(".properties"),
    )
    before = tracker.snapshot()
    (project / "src" / "main" / "app.properties").write_text("debug=true\n")
    summary = tracker.diff(before, tracker.snapshot())
    assert summary.build_files == {"src/main/app.properties"}


def test_missing_watch_dir_is_ignored(tmp_path):
    tracker = ChangeTracker(tmp_path, [tmp_path / "does-not-exist"])
    assert tracker.snapshot().files == {}


def test_is_build_file():
    assert is_build_file("build.gradle")
    assert is_build_file("sub/pom.xml")
    assert not is_build_file("src/main/java/App.java")
