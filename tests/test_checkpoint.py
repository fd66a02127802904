import subprocess

import pytest

from phasekeeper.checkpoint import (
    CheckpointManager,
    format_checkpoint_message,
    parse_checkpoint_message,
)


def _log(repo) -> list[str]:
    out = subprocess.run(["git", "log", "--format=%s"], cwd=repo, capture_output=True, text=True, check=True)
    return out.stdout.splitlines()


def _touch(repo, name, text="x\n"):
    (repo / name).write_text(text)


# ---------------------------------------------------------------------------
# Message format
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("task_id, number, name", [
    ("T1", 1, "Setup"),
    ("auth-042", 12, "Wire the login form"),
    ("T.7", 3, "Phase: with colon"),
    ("T1", 2, "Core  logic"),
])
def test_message_round_trip(task_id, number, name):
    message = format_checkpoint_message(task_id, number, name)
    assert parse_checkpoint_message(message) == (task_id, number, name)


def test_message_shape():
    assert format_checkpoint_message("T1", 2, "Core logic\n  extras ") == "[T1] Phase 2: Core logic extras complete"


@pytest.mark.parametrize("name", ["", "   ", "\n", None])
def test_blank_name_falls_back_to_phase_number(name):
    message = format_checkpoint_message("T1", 3, name)
    assert message == "[T1] Phase 3: Phase 3 complete"
    assert parse_checkpoint_message(message) == ("T1", 3, "Phase 3")


def test_padded_name_reads_back_trimmed():
    assert parse_checkpoint_message(format_checkpoint_message("T1", 1, "  Setup  ")) == ("T1", 1, "Setup")


@pytest.mark.parametrize("message", [
    "initial",
    "T1 Phase 1: Setup complete",
    "[T1] Phase one: Setup complete",
    "[T1] Phase 1: Setup completed",
    "[T1] Phase 1: complete",
])
def test_non_checkpoint_messages(message):
    assert parse_checkpoint_message(message) is None


# ---------------------------------------------------------------------------
# Git-backed
# ---------------------------------------------------------------------------

def test_resume_point_follows_history(git_repo):
    manager = CheckpointManager(git_repo)
    assert manager.get_next_phase("T1", 4) == 1
    assert manager.get_last_checkpoint("T1") is None

    _touch(git_repo, "a.py")
    manager.create_checkpoint("T1", 1, "Setup")
    _touch(git_repo, "b.py")
    manager.create_checkpoint("T1", 2, "Core")
    assert manager.get_next_phase("T1", 4) == 3

    _touch(git_repo, "c.py")
    manager.create_checkpoint("T1", 3, "Tests")
    _touch(git_repo, "d.py")
    manager.create_checkpoint("T1", 4, "Docs")
    assert manager.get_next_phase("T1", 4) == 4


def test_create_checkpoint_commits_everything(git_repo):
    manager = CheckpointManager(git_repo)
    _touch(git_repo, "new.py")
    _touch(git_repo, "README.md", "# changed\n")

    result = manager.create_checkpoint("T1", 1, "Setup")

    assert result.success
    assert result.message == "[T1] Phase 1: Setup complete"
    assert len(result.commit_hash) == 40
    assert _log(git_repo)[0] == "[T1] Phase 1: Setup complete"
    assert manager.changed_files() == []


def test_clean_tree_is_a_noop(git_repo):
    result = CheckpointManager(git_repo).create_checkpoint("T1", 1, "Setup")
    assert result.success
    assert result.commit_hash is None
    assert result.message == "No changes to commit"
    assert _log(git_repo) == ["initial"]


def test_allow_empty_still_commits(git_repo):
    manager = CheckpointManager(git_repo)
    result = manager.create_checkpoint("T1", 2, "Core", allow_empty=True)
    assert result.success
    assert result.commit_hash
    assert manager.has_checkpoint("T1", 2)


def test_checkpoints_are_newest_first_and_scoped_to_task(git_repo):
    manager = CheckpointManager(git_repo)
    for n, task in [(1, "T1"), (1, "T10"), (2, "T1"), (1, "other")]:
        manager.create_checkpoint(task, n, f"Step {n}", allow_empty=True)

    checkpoints = manager.get_all_checkpoints("T1")
    assert [(c.task_id, c.phase_number) for c in checkpoints] == [("T1", 2), ("T1", 1)]
    assert checkpoints[0].phase_name == "Step 2"
    assert manager.get_all_checkpoints("T1", limit=1)[0].phase_number == 2

    assert manager.has_checkpoint("T1", 1)
    assert not manager.has_checkpoint("T1", 3)
    assert [c.phase_number for c in manager.get_all_checkpoints("T10")] == [1]


def test_changed_files_include_untracked_and_staged(git_repo):
    manager = CheckpointManager(git_repo)
    _touch(git_repo, "README.md", "edited\n")
    (git_repo / "src").mkdir()
    _touch(git_repo / "src", "new.py")
    _touch(git_repo, "staged.py")
    subprocess.run(["git", "add", "staged.py"], cwd=git_repo, check=True)

    assert sorted(manager.changed_files()) == ["README.md", "src/new.py", "staged.py"]


def test_changed_files_are_repo_relative_from_subdir(git_repo):
    sub = git_repo / "pkg"
    sub.mkdir()
    _touch(sub, "mod.py")
    manager = CheckpointManager(sub)
    assert manager.repo_root == git_repo.resolve()
    assert manager.changed_files() == ["pkg/mod.py"]


def test_outside_a_repository(tmp_path):
    manager = CheckpointManager(tmp_path)
    _touch(tmp_path, "a.py")

    result = manager.create_checkpoint("T1", 1, "Setup")
    assert result.success is False
    assert result.commit_hash is None
    assert manager.get_all_checkpoints("T1") == []
    assert manager.get_next_phase("T1", 3) == 1
    assert manager.repo_root == tmp_path.resolve()
