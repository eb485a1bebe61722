"""Tests for project grouping."""

import errno
from pathlib import Path
from unittest.mock import patch

from conftest import make_process

from processscope.projects import group_by_project, infer_project_root


def test_infer_root_from_marker(tmp_path):
    project = tmp_path / "atlas"
    (project / "src" / "api").mkdir(parents=True)
    (project / "pyproject.toml").write_text("")
    assert infer_project_root(str(project / "src" / "api")) == str(project)


def test_infer_root_without_marker(tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    assert infer_project_root(str(scratch)) == str(scratch)


def test_group_by_project(tmp_path):
    atlas = tmp_path / "atlas"
    (atlas / "web").mkdir(parents=True)
    (atlas / ".git").mkdir()
    shop = tmp_path / "shop"
    shop.mkdir()
    (shop / "package.json").write_text("{}")

    processes = [
        make_process(pid=1, name="python3", working_directory=str(atlas)),
        make_process(pid=2, name="node", working_directory=str(atlas / "web")),
        make_process(pid=3, name="node", working_directory=str(shop)),
        make_process(pid=4, name="launchd", working_directory="/"),
        make_process(pid=5, name="kernel_task", working_directory=None),
    ]
    groups = group_by_project(processes)

    assert [g.root for g in groups] == [str(atlas), str(shop)]
    assert groups[0].display_name == "atlas"
    assert groups[0].count == 2
    assert [p.name for p in groups[0].processes] == ["node", "python3"]


def test_groups_of_equal_size_sorted_by_root(tmp_path):
    names = ["zeta", "alpha"]
    for name in names:
        (tmp_path / name).mkdir()
    processes = [
        make_process(pid=i, working_directory=str(tmp_path / name)) for i, name in enumerate(names)
    ]
    groups = group_by_project(processes)
    assert [g.display_name for g in groups] == ["alpha", "zeta"]


def test_unreadable_directory_has_no_marker(tmp_path):
    """A directory that cannot be stat'ed is treated as having no marker."""
    locked = tmp_path / "locked"
    locked.mkdir()
    (tmp_path / ".git").mkdir()
    real_exists = Path.exists

    def exists(path, *args, **kwargs):
        if path.parent == locked:
            raise PermissionError(errno.EACCES, "Permission denied", str(path))
        return real_exists(path, *args, **kwargs)

    processes = [
        make_process(pid=1, name="root-daemon", working_directory=str(locked)),
        make_process(pid=2, name="python3", working_directory=str(tmp_path)),
    ]
    with patch.object(Path, "exists", autospec=True, side_effect=exists):
        groups = group_by_project(processes)

    # Walking up past the locked directory still finds the .git marker
    assert [g.root for g in groups] == [str(tmp_path)]
    assert groups[0].count == 2
