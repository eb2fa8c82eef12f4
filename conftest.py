import asyncio
import shutil
import subprocess

import pytest

from gitback import GitbackConfig, ProgressReporter
from gitback_log import RepositoryIdentity
from gitback_sources import Discussion, RepoInfo


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def identity():
    return RepositoryIdentity("octo", "widgets")


@pytest.fixture
def two_commit_log():
    """Two commits: a text change by alice, a binary file by bob."""
    return [
        "hash1|alice|1000000000|fix bug\n",
        "5\t2\tmain.go\n",
        "\n",
        "hash2|bob|1000000100|-\n",
        "-\t-\tbinary.png\n",
    ]


@pytest.fixture
def sample_log():
    """Four commits, three authors, overlapping files."""
    return [
        "aaa1111111|Alice Smith|1700000000|initial commit",
        "50\t0\tsrc/main.py",
        "30\t0\tsrc/utils.py",
        "",
        "bbb2222222|Bob Jones|1700100000|add feature",
        "10\t3\tsrc/main.py",
        "20\t0\ttests/test_main.py",
        "",
        "ccc3333333|Alice Smith|1700200000|fix bug",
        "5\t8\tsrc/main.py",
        "2\t2\tsrc/utils.py",
        "",
        "ddd4444444|alice smith|1700300000|docs",
        "4\t0\tREADME.md",
    ]


def make_config(**overrides) -> GitbackConfig:
    defaults = dict(analysis_timeout=5.0, max_commits=None)
    defaults.update(overrides)
    return GitbackConfig(**defaults)


@pytest.fixture
def config():
    return make_config()


class FakeHandle:
    """Stands in for LogStreamHandle with canned log lines."""

    def __init__(self, lines, delay=None, fail_with=None, history_truncated=False):
        self._lines = lines
        self.delay = delay
        self.fail_with = fail_with
        self.history_truncated = history_truncated
        self.release_calls = 0

    async def lines(self):
        for line in self._lines:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield line
        if self.fail_with is not None:
            raise self.fail_with

    async def release(self):
        self.release_calls += 1


class FakeSource:
    def __init__(self, lines=None, error=None, delay=None, fail_with=None, shallow=False):
        self.lines = lines or []
        self.error = error
        self.delay = delay
        self.fail_with = fail_with
        self.shallow = shallow
        self.acquired = []
        self.handles = []

    async def acquire(self, identity):
        self.acquired.append(identity)
        if self.error is not None:
            raise self.error
        handle = FakeHandle(
            self.lines,
            delay=self.delay,
            fail_with=self.fail_with,
            history_truncated=self.shallow,
        )
        self.handles.append(handle)
        return handle


class FakeMetadata:
    def __init__(self, info_error=None, discussions_error=None):
        self.info_error = info_error
        self.discussions_error = discussions_error
        self.calls = []

    async def fetch_repo_info(self, identity):
        self.calls.append(("info", identity))
        if self.info_error is not None:
            raise self.info_error
        return RepoInfo(stars=42, language="Go", size_kb=1024)

    async def fetch_top_discussions(self, identity, limit=None):
        self.calls.append(("discussions", identity))
        if self.discussions_error is not None:
            raise self.discussions_error
        return [
            Discussion(
                id=1,
                number=7,
                title="Speed up parser",
                author="carol",
                author_avatar=None,
                created_at="2026-01-02T00:00:00Z",
                state="closed",
                url="https://github.com/octo/widgets/pull/7",
                comments=3,
                reactions=12,
                merged=True,
            )
        ]


@pytest.fixture
def fake_source(two_commit_log):
    return FakeSource(two_commit_log)


@pytest.fixture
def fake_metadata():
    return FakeMetadata()


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def git_repo(tmp_path):
    """
    A small real repository at tmp_path/remotes/octo/widgets with three
    commits by two authors, one of them touching a binary file.
    """
    repo_path = tmp_path / "remotes" / "octo" / "widgets"
    repo_path.mkdir(parents=True)

    def run_git(*args, author="Test User 1", email="test1@example.com"):
        subprocess.run(
            ["git", "-C", str(repo_path),
             "-c", f"user.name={author}", "-c", f"user.email={email}"] + list(args),
            check=True,
            capture_output=True,
            text=True,
        )

    run_git("init", "-q")
    (repo_path / "main.go").write_text("package main\nfunc main() {}\n")
    (repo_path / "README.md").write_text("hello\n")
    run_git("add", ".")
    run_git("commit", "-q", "-m", "Initial commit")

    (repo_path / "main.go").write_text("package main\n\nfunc main() {\n}\n")
    run_git("add", ".")
    run_git("commit", "-q", "-m", "Reformat main", author="Test User 2", email="t2@example.com")

    (repo_path / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00binary")
    run_git("add", ".")
    run_git("commit", "-q", "-m", "Add logo")

    return repo_path
