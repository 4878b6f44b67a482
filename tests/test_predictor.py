"""Tests for tandem.predictor: heuristic file prediction."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import commit_file
from tandem.predictor import (
    FilePredictor,
    PredictionMethod,
    RepoIndex,
    extract_keywords,
    find_path_tokens,
    name_variants,
    parse_history,
    predict_explicit,
    predict_from_history,
    predict_heuristics,
    predict_modules,
    predict_patterns,
    related_files,
)
from tandem.tasks.model import Task

INDEX = RepoIndex([
    "README.md",
    "src/auth/login.py",
    "src/auth/session.py",
    "src/api/routes.py",
    "src/models/user.py",
    "src/user_profile.py",
    "src/components/Button.tsx",
    "src/components/index.tsx",
    "src/components/Button.test.tsx",
    "styles/main.css",
    "tests/test_routes.py",
    "config/settings.yaml",
    "src/utils/format.py",
    "tests/test_format.py",
])


def _predictor(**kwargs) -> FilePredictor:
    kwargs.setdefault("use_git_history", False)
    return FilePredictor(Path("."), index=INDEX, **kwargs)


class TestHelpers:
    def test_find_path_tokens(self):
        assert find_path_tokens("Edit ./src/app.py and docs/README.md.") == ["src/app.py", "docs/README.md"]

    def test_urls_are_not_paths(self):
        assert find_path_tokens("see https://example.com/index.html") == []

    def test_keywords_drop_stop_words(self):
        assert extract_keywords("Fix the login form for users") == ["login", "form", "users"]

    def test_name_variants(self):
        assert name_variants("UserProfile") == ["UserProfile", "user-profile", "userProfile", "user_profile", "userprofile"]

    def test_index_match(self):
        assert INDEX.match("**/*.css") == ["styles/main.css"]
        assert INDEX.match("src/auth/**") == ["src/auth/login.py", "src/auth/session.py"]
        assert INDEX.has_dir("src/components")
        assert not INDEX.has_dir("src/nothing")

    def test_related_files(self):
        related = related_files({"src/components/Button.tsx"}, INDEX)
        assert related == {"src/components/index.tsx", "src/components/Button.test.tsx"}
        assert related_files({"src/components/Button.tsx"}, INDEX, include_tests=False) == {
            "src/components/index.tsx"
        }


class TestMethods:
    def test_explicit_keeps_new_files(self):
        files, conf = predict_explicit("Create src/new_feature.py", INDEX)
        assert files == {"src/new_feature.py"}
        assert conf == 0.95

    def test_explicit_widens_to_similar_stems(self):
        files, _ = predict_explicit("Rewrite session.ts", INDEX)
        assert "session.ts" in files
        assert "src/auth/session.py" in files

    def test_patterns_all_tests(self):
        files, conf = predict_patterns("Update all tests for the new API", INDEX)
        assert "tests/test_routes.py" in files
        assert "src/components/Button.test.tsx" in files
        assert conf == 0.8

    def test_patterns_directory_mention(self):
        files, _ = predict_patterns("Refactor code in src/auth", INDEX)
        assert files == {"src/auth", "src/auth/login.py", "src/auth/session.py"}

    def test_patterns_unknown_directory_ignored(self):
        files, _ = predict_patterns("Write code in the morning", INDEX)
        assert files == set()

    def test_modules_from_identifiers(self):
        files, conf = predict_modules("Extend the UserProfile page", INDEX)
        assert files == {"src/user_profile.py"}
        assert conf == 0.7

    def test_history(self):
        history = parse_history("COMMIT: Improve billing export\nsrc/billing.py\n\nCOMMIT: docs\nREADME.md\n")
        files, conf = predict_from_history("billing totals are wrong", history)
        assert files == {"src/billing.py"}
        assert conf == 0.6

    def test_heuristics_match_whole_words(self):
        files, _ = predict_heuristics("Add a new api endpoint", INDEX)
        assert "src/api/routes.py" in files
        files, _ = predict_heuristics("Fix the rapid build", INDEX)
        assert files == set()

    def test_heuristic_styles(self):
        files, conf = predict_heuristics("Tweak the css colors", INDEX)
        assert files == {"styles/main.css"}
        assert conf == 0.5


class TestFilePredictor:
    def test_union_of_methods_and_max_confidence(self):
        task = Task(id="t", description="Fix login bug in src/auth/login.py and the api routes")
        prediction = _predictor().predict(task)
        assert "src/auth/login.py" in prediction.files
        assert "src/api/routes.py" in prediction.files
        assert prediction.method == PredictionMethod.EXPLICIT
        assert prediction.confidence == 0.95

    def test_declared_files_have_full_confidence(self):
        task = Task(id="t", description="something", declared_files=("lib/x.py",))
        prediction = _predictor().predict(task)
        assert prediction.files == frozenset({"lib/x.py"})
        assert prediction.confidence == 1.0
        assert prediction.method == PredictionMethod.DECLARED

    def test_unknown_task_degrades_to_empty(self):
        prediction = _predictor().predict(Task(id="t", description="Make it better somehow"))
        assert prediction.is_empty
        assert prediction.confidence == 0.0
        assert prediction.method is None

    def test_include_related(self):
        task = Task(id="t", description="Speed up src/utils/format.py")
        with_related = _predictor().predict(task)
        without = _predictor(include_related=False).predict(task)
        assert with_related.files == frozenset({"src/utils/format.py", "tests/test_format.py"})
        assert without.files == frozenset({"src/utils/format.py"})

    def test_predict_all(self):
        tasks = [Task(id="a", description="Edit a.py"), Task(id="b", description="Edit b.py")]
        predictions = _predictor().predict_all(tasks)
        assert set(predictions) == {"a", "b"}
        assert predictions["b"].files == frozenset({"b.py"})

    def test_to_dict(self):
        prediction = _predictor().predict(Task(id="t", description="Edit a.py"))
        data = prediction.to_dict()
        assert data["files"] == ["a.py"]
        assert data["method"] == "explicit"

    def test_history_from_real_repository(self, git_repo: Path):
        commit_file(git_repo, "billing.py", "x = 1\n", "Improve billing export")
        predictor = FilePredictor(git_repo, use_git_history=True)
        prediction = predictor.predict(Task(id="t", description="Billing totals are wrong"))
        assert "billing.py" in prediction.files
        assert PredictionMethod.GIT_HISTORY.value in prediction.contributions

    @pytest.mark.parametrize("use_history", [True, False])
    def test_index_from_repository(self, git_repo: Path, use_history: bool):
        predictor = FilePredictor(git_repo, use_git_history=use_history)
        assert predictor.index.has_file("README.md")
