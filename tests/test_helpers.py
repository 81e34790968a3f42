from __future__ import annotations

import pytest

from git_reporter import (
    RemoteURLError,
    WorkingTreeStatus,
    commit_text,
    has_conflicts,
    is_included,
    parse_remote_url,
)


@pytest.mark.parametrize(
    "count, expected",
    [("1", "commit"), ("2", "commits"), ("10", "commits"), ("11", "commits"), ("01", "commits")],
)
def test_commit_text(count, expected):
    assert commit_text(count) == expected


@pytest.mark.parametrize(
    "url",
    [
        "https://github.com/clark/daily-planet.git",
        "https://github.com/clark/daily-planet",
        "http://gitlab.example.com/clark/daily-planet.git",
        "ssh://git@github.com/clark/daily-planet.git",
        "git://github.com/clark/daily-planet.git",
        "git@github.com:clark/daily-planet.git",
        "git@github.com:clark/daily-planet",
        "deploy@git.example.com:clark/daily-planet.git",
    ],
)
def test_parse_remote_url_same_identity_for_every_style(url):
    assert parse_remote_url(url) == ("clark", "daily-planet")


def test_parse_remote_url_uses_last_two_segments():
    assert parse_remote_url("https://gitlab.com/group/sub/clark/planet.git") == ("clark", "planet")


@pytest.mark.parametrize(
    "url",
    ["https://github.com/daily-planet.git", "git@github.com:daily-planet.git", "https://github.com/", ""],
)
def test_parse_remote_url_rejects_short_paths(url):
    with pytest.raises(RemoteURLError) as excinfo:
        parse_remote_url(url)
    assert excinfo.value.kind == "path"
    assert "invalid URL path" in str(excinfo.value)


def test_parse_remote_url_rejects_unparseable_url():
    with pytest.raises(RemoteURLError) as excinfo:
        parse_remote_url("http://[::1/owner/repo")
    assert excinfo.value.kind == "url"


class TestIsIncluded:
    def test_no_lists_includes_everything(self):
        assert is_included("anything", [], [])

    def test_include_list_is_an_allow_list(self):
        assert not is_included("other", ["api"], [])
        assert not is_included("other", ["api"], ["other"])
        assert is_included("api", ["api"], [])

    def test_include_wins_over_exclude(self):
        assert is_included("api", ["api"], ["api"])

    def test_exclude_removes_name(self):
        assert not is_included("legacy", [], ["legacy"])
        assert is_included("api", [], ["legacy"])


class TestHasConflicts:
    def test_clean_and_plain_changes(self):
        assert has_conflicts([]) == (False, False)
        assert has_conflicts([" M app.py", "?? notes.txt", "A  new.py"]) == (False, False)

    @pytest.mark.parametrize("line", ["U  file.txt", "UA file.txt", "UD file.txt"])
    def test_merge_conflicts(self, line):
        assert has_conflicts([" M other.py", line]) == (True, False)

    def test_both_modified_marks_rebase(self):
        assert has_conflicts(["UU file.txt"]) == (True, True)
        assert has_conflicts(["UA a.txt", "UU b.txt"]) == (True, True)

    def test_other_unmerged_codes_are_not_classified(self):
        assert has_conflicts(["AA file.txt", "DU file.txt"]) == (False, False)


class TestWorkingTreeStatus:
    def test_parses_porcelain_keeping_leading_space(self):
        status = WorkingTreeStatus.from_porcelain(" M app.py\n?? notes.txt\n")
        assert [e.code for e in status.entries] == [" M", "??"]
        assert [e.path for e in status.entries] == ["app.py", "notes.txt"]
        assert status.lines == [" M app.py", "?? notes.txt"]
        assert status.is_dirty

    def test_empty_output_is_clean(self):
        status = WorkingTreeStatus.from_porcelain("")
        assert not status.is_dirty
        assert status.conflicts() == (False, False)

    def test_conflicts_delegate_to_classifier(self):
        assert WorkingTreeStatus.from_porcelain("UU README.md\n").conflicts() == (True, True)
