import subprocess

import pytest

import rendergit_changelog as rc


class FakeGit:
    """Stands in for `rc.run`, answering by git subcommand."""

    def __init__(self, tags_out="", origin_out="", commits=None, fail=()):
        self.tags_out = tags_out
        self.origin_out = origin_out
        self.commits = commits or {}
        self.fail = set(fail)
        self.calls = []

    def __call__(self, cmd, cwd=None, check=True):
        self.calls.append(cmd)
        if cmd[1] in self.fail:
            raise subprocess.CalledProcessError(128, cmd, output="", stderr="fatal: not a git repository")
        if cmd[1] == "config":
            out = self.origin_out
        elif "--tags" in cmd:
            out = self.tags_out
        else:
            out = self.commits.get(cmd[-1], "")
        return subprocess.CompletedProcess(cmd, 0, stdout=out, stderr="")


def record(short, full, author, email, date, message):
    return "\x1f".join([short, full, author, email, date, message]) + "\x1e"


@pytest.fixture
def fake_git(monkeypatch):
    def install(**kwargs):
        fake = FakeGit(**kwargs)
        monkeypatch.setattr(rc, "run", fake)
        return fake

    return install
