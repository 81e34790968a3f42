from __future__ import annotations

import shutil
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not found")


def git(cwd: Path, *args: str, check: bool = True) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=False)
    if check and result.returncode != 0:
        raise AssertionError(f"git {' '.join(args)} failed: {result.stderr}")
    return result.stdout


class Workspace:
    """A bare origin, an upstream clone that pushes to it, and local clones."""

    def __init__(self, root: Path):
        self.root = root
        self.origin = root / "owner" / "service.git"
        self.upstream = root / "upstream"
        self.repos = root / "repos"
        self.repos.mkdir()

        seed = root / "seed"
        seed.mkdir()
        git(seed, "init", "-q")
        git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
        (seed / "README.md").write_text("# service\n")
        git(seed, "add", "README.md")
        git(seed, "commit", "-q", "-m", "Initial commit")

        self.origin.parent.mkdir()
        git(root, "clone", "-q", "--bare", str(seed), str(self.origin))
        git(root, "clone", "-q", str(self.origin), str(self.upstream))

    git = staticmethod(git)

    def clone(self, name: str) -> Path:
        path = self.repos / name
        git(self.root, "clone", "-q", str(self.origin), str(path))
        return path

    def push_commits(self, count: int, subject: str = "fix: provide db transaction context") -> None:
        for i in range(count):
            change = self.upstream / f"change_{i}.txt"
            change.write_text(f"{subject} {i}\n")
            git(self.upstream, "add", change.name)
            git(self.upstream, "commit", "-q", "-m", subject)
        git(self.upstream, "push", "-q", "origin", "main")

    def push_raw_message(self, message: bytes) -> None:
        """Push one commit whose message is written byte for byte."""
        (self.upstream / "raw.txt").write_bytes(message)
        message_file = self.root / "message.txt"
        message_file.write_bytes(message)
        git(self.upstream, "add", "raw.txt")
        git(self.upstream, "commit", "-q", "-F", str(message_file))
        git(self.upstream, "push", "-q", "origin", "main")

    def push_file(self, filename: str, content: str, subject: str) -> None:
        (self.upstream / filename).write_text(content)
        git(self.upstream, "add", filename)
        git(self.upstream, "commit", "-q", "-m", subject)
        git(self.upstream, "push", "-q", "origin", "main")


@pytest.fixture(autouse=True)
def git_environment(monkeypatch, tmp_path_factory):
    """Isolate git from the user's configuration and give it an identity."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Lois Lane")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "lois@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Lois Lane")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "lois@example.com")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


@pytest.fixture
def workspace(tmp_path) -> Workspace:
    if shutil.which("git") is None:
        pytest.skip("git executable not found")
    return Workspace(tmp_path)
