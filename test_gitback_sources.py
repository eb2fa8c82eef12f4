import asyncio
import json
import os

import httpx
import pytest

from conftest import requires_git
from gitback_log import RepositoryIdentity, aggregate, decode_async
from gitback_sources import (
    AnalysisCache,
    CacheError,
    GitHubMetadataClient,
    GitLogSource,
    LogStreamHandle,
    MetadataError,
    MetadataRateLimitError,
    RepoDatabase,
    SourceError,
    SourceNotFoundError,
    is_not_found_message,
    read_shallow_boundaries,
)


def make_payload(owner="octo", repo="widgets", **overrides):
    payload = {
        "owner": owner,
        "repo": repo,
        "totalAdded": 5,
        "totalRemoved": 2,
        "totalLines": 3,
        "totalContributors": 2,
        "totalCommits": 2,
        "fileTouchCounts": {"main.go": 1},
        "mostTouchedFiles": [{"file": "main.go", "count": 1}],
        "linesHistogram": [],
        "truncated": False,
        "github": None,
        "pullRequests": None,
        "degraded": [],
    }
    payload.update(overrides)
    return payload


# ============================================================================
# GIT LOG SOURCE
# ============================================================================


def test_log_args_request_one_extra_commit():
    source = GitLogSource(max_commits=10)
    args = source.log_args()
    assert args[:3] == ["log", "--numstat", "--format=%H|%an|%at|%s"]
    assert "--reverse" in args
    assert args[-1] == "--max-count=11"


def test_log_args_newest_first_without_cap():
    args = GitLogSource(oldest_first=False).log_args()
    assert "--reverse" not in args
    assert not any(a.startswith("--max-count") for a in args)


def test_git_env_disables_prompts_and_user_config():
    env = GitLogSource.git_env()
    assert env["GIT_TERMINAL_PROMPT"] == "0"
    assert env["GIT_CONFIG_NOSYSTEM"] == "1"
    assert env["GIT_CONFIG_GLOBAL"] == os.devnull


def test_clone_url_template():
    source = GitLogSource(clone_url_template="https://example.com/{owner}/{name}.git")
    assert source.clone_url(RepositoryIdentity("octo", "widgets")) == (
        "https://example.com/octo/widgets.git"
    )


@pytest.mark.parametrize(
    "stderr,expected",
    [
        ("remote: Repository not found.\nfatal: repository 'x' not found", True),
        ("fatal: could not read Username for 'https://github.com'", True),
        ("fatal: repository '/tmp/x' does not exist", True),
        ("fatal: unable to access: Could not resolve host: github.com", False),
        ("error: RPC failed; curl 56", False),
    ],
)
def test_is_not_found_message(stderr, expected):
    assert is_not_found_message(stderr) is expected


@requires_git
@pytest.mark.asyncio
async def test_acquire_and_stream_real_repository(git_repo, tmp_path):
    source = GitLogSource(
        clone_url_template=str(tmp_path / "remotes") + "/{owner}/{name}",
        work_root=str(tmp_path / "work"),
    )
    handle = await source.acquire(RepositoryIdentity("octo", "widgets"))
    try:
        assert os.path.isdir(handle.work_dir)
        stream = decode_async(handle.lines())
        commits = [c async for c in stream]
    finally:
        await handle.release()

    assert [c.message for c in commits] == ["Initial commit", "Reformat main", "Add logo"]
    assert all(len(c.hash) == 7 for c in commits)

    logo = commits[-1]
    assert (logo.added, logo.removed, logo.files_touched_count) == (0, 0, 1)

    result = aggregate(commits)
    assert result.total_commits == 3
    assert result.total_contributors == 2
    assert result.file_touch_counts == {"README.md": 1, "main.go": 2, "logo.png": 1}
    assert result.total_added == 6
    assert result.total_removed == 1
    assert not os.path.exists(handle.work_dir)


@requires_git
@pytest.mark.asyncio
async def test_acquire_missing_repository_is_not_found(tmp_path):
    work_root = tmp_path / "work"
    source = GitLogSource(
        clone_url_template=str(tmp_path / "remotes") + "/{owner}/{name}",
        work_root=str(work_root),
    )
    with pytest.raises(SourceNotFoundError):
        await source.acquire(RepositoryIdentity("octo", "missing"))
    assert os.listdir(work_root) == []


@requires_git
@pytest.mark.asyncio
async def test_release_is_idempotent(git_repo, tmp_path):
    source = GitLogSource(clone_url_template=str(tmp_path / "remotes") + "/{owner}/{name}")
    handle = await source.acquire(RepositoryIdentity("octo", "widgets"))
    await handle.release()
    await handle.release()
    assert handle.released
    assert not os.path.exists(handle.work_dir)

    with pytest.raises(SourceError):
        async for _ in handle.lines():
            pass


@requires_git
@pytest.mark.asyncio
async def test_release_mid_stream_stops_git(git_repo, tmp_path):
    source = GitLogSource(clone_url_template=str(tmp_path / "remotes") + "/{owner}/{name}")
    handle = await source.acquire(RepositoryIdentity("octo", "widgets"))
    lines = handle.lines()
    first = await lines.__anext__()
    assert "|" in first
    await lines.aclose()
    await handle.release()
    assert handle.process.returncode is not None
    assert not os.path.exists(handle.work_dir)


@requires_git
@pytest.mark.asyncio
async def test_shallow_clone_drops_boundary_and_flags_truncation(git_repo, tmp_path):
    source = GitLogSource(
        clone_url_template="file://" + str(tmp_path / "remotes") + "/{owner}/{name}",
        clone_depth=2,
    )
    handle = await source.acquire(RepositoryIdentity("octo", "widgets"))
    try:
        assert handle.history_truncated is True
        assert len(handle.shallow_boundaries) == 1
        commits = [c async for c in decode_async(handle.lines())]
    finally:
        await handle.release()

    # the boundary commit would report its whole tree as added
    assert [c.message for c in commits] == ["Add logo"]


@requires_git
@pytest.mark.asyncio
async def test_depth_beyond_history_is_complete(git_repo, tmp_path):
    source = GitLogSource(
        clone_url_template="file://" + str(tmp_path / "remotes") + "/{owner}/{name}",
        clone_depth=50,
    )
    handle = await source.acquire(RepositoryIdentity("octo", "widgets"))
    try:
        assert handle.history_truncated is False
        commits = [c async for c in decode_async(handle.lines())]
    finally:
        await handle.release()
    assert len(commits) == 3


def test_read_shallow_boundaries(tmp_path):
    assert read_shallow_boundaries(str(tmp_path)) == []
    (tmp_path / "shallow").write_text("abc123\n\ndef456\n", encoding="ascii")
    assert read_shallow_boundaries(str(tmp_path)) == ["abc123", "def456"]


def test_log_command_excludes_shallow_boundaries(identity):
    handle = LogStreamHandle(
        identity, "/scratch", "git", ["log", "--numstat"], {}, 1024, ["abc123"]
    )
    assert handle.command() == [
        "git", "--git-dir", "/scratch", "log", "--numstat", "HEAD", "--not", "abc123",
    ]


requires_sh = pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="needs /bin/sh")


def fake_git(tmp_path, body):
    script = tmp_path / "fake-git"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    return str(script), str(scratch)


@requires_sh
@pytest.mark.asyncio
async def test_noisy_stderr_does_not_stall_stream(tmp_path, identity):
    git_binary, scratch = fake_git(
        tmp_path,
        "i=0\n"
        "while [ $i -lt 4000 ]; do\n"
        "  echo 'warning: padding the stderr pipe well past its buffer size' >&2\n"
        "  i=$((i+1))\n"
        "done\n"
        "printf 'h1|alice|100|msg\\n1\\t0\\ta.txt\\n'\n",
    )
    handle = LogStreamHandle(identity, scratch, git_binary, ["log"], dict(os.environ), 1024)

    async def collect():
        return [line async for line in handle.lines()]

    try:
        lines = await asyncio.wait_for(collect(), timeout=10)
    finally:
        await handle.release()
    assert lines == ["h1|alice|100|msg\n", "1\t0\ta.txt\n"]


@requires_sh
@pytest.mark.asyncio
async def test_failed_git_log_reports_stderr(tmp_path, identity):
    git_binary, scratch = fake_git(tmp_path, "echo 'fatal: bad object HEAD' >&2\nexit 128\n")
    handle = LogStreamHandle(identity, scratch, git_binary, ["log"], dict(os.environ), 1024)
    try:
        with pytest.raises(SourceError, match="bad object HEAD"):
            async for _ in handle.lines():
                pass
    finally:
        await handle.release()


# ============================================================================
# METADATA CLIENT
# ============================================================================


def metadata_client(handler, **kwargs):
    return GitHubMetadataClient(transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_fetch_repo_info_with_token():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["path"] = request.url.path
        return httpx.Response(
            200, json={"stargazers_count": 10, "language": "Python", "size": 300}
        )

    async with metadata_client(handler, token="secret") as client:
        info = await client.fetch_repo_info(RepositoryIdentity("octo", "widgets"))

    assert seen == {"auth": "token secret", "path": "/repos/octo/widgets"}
    assert info.to_dict() == {"stars": 10, "language": "Python", "sizeKB": 300}


@pytest.mark.asyncio
async def test_anonymous_requests_send_no_authorization():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={})

    async with metadata_client(handler) as client:
        info = await client.fetch_repo_info(RepositoryIdentity("octo", "widgets"))

    assert seen["auth"] is None
    assert (info.stars, info.language, info.size_kb) == (0, None, 0)


@pytest.mark.asyncio
async def test_fetch_top_discussions_query():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "items": [
                    {
                        "id": 99,
                        "number": 7,
                        "title": "Speed up parser",
                        "user": {"login": "carol", "avatar_url": "https://a/c.png"},
                        "created_at": "2026-01-02T00:00:00Z",
                        "state": "closed",
                        "html_url": "https://github.com/octo/widgets/pull/7",
                        "comments": 3,
                        "reactions": {"total_count": 12},
                        "pull_request": {"merged_at": "2026-01-03T00:00:00Z"},
                    }
                ]
            },
        )

    async with metadata_client(handler, discussions_limit=5) as client:
        discussions = await client.fetch_top_discussions(RepositoryIdentity("octo", "widgets"))

    assert seen["path"] == "/search/issues"
    assert seen["params"]["q"].startswith("repo:octo/widgets type:pr created:>=")
    assert seen["params"]["sort"] == "reactions"
    assert seen["params"]["order"] == "desc"
    assert seen["params"]["per_page"] == "5"

    assert len(discussions) == 1
    pr = discussions[0]
    assert (pr.number, pr.author, pr.reactions, pr.merged) == (7, "carol", 12, True)
    assert pr.to_dict()["authorAvatar"] == "https://a/c.png"


@pytest.mark.asyncio
async def test_non_200_is_metadata_error():
    def handler(request):
        return httpx.Response(404, json={"message": "Not Found"})

    async with metadata_client(handler) as client:
        with pytest.raises(MetadataError) as exc_info:
            await client.fetch_repo_info(RepositoryIdentity("octo", "widgets"))

    assert exc_info.value.status_code == 404
    assert not isinstance(exc_info.value, MetadataRateLimitError)


@pytest.mark.asyncio
async def test_exhausted_rate_limit():
    def handler(request):
        return httpx.Response(403, headers={"X-RateLimit-Remaining": "0"}, json={})

    async with metadata_client(handler) as client:
        with pytest.raises(MetadataRateLimitError):
            await client.fetch_repo_info(RepositoryIdentity("octo", "widgets"))


@pytest.mark.asyncio
async def test_transport_failure_is_metadata_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with metadata_client(handler) as client:
        with pytest.raises(MetadataError):
            await client.fetch_repo_info(RepositoryIdentity("octo", "widgets"))


# ============================================================================
# CACHE
# ============================================================================


def entry_path(cache_dir, owner="octo", name="widgets"):
    path = cache_dir / owner / f"{name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def test_cache_round_trip(tmp_path, identity):
    cache = AnalysisCache(str(tmp_path / "cache"))
    assert cache.get(identity) is None

    cache.put(identity, make_payload())
    assert cache.get(identity) == make_payload()
    # no temporary files left behind
    assert os.listdir(tmp_path / "cache" / "octo") == ["widgets.json"]


def test_cache_keys_do_not_collide_on_underscores(tmp_path):
    cache = AnalysisCache(str(tmp_path))
    first = RepositoryIdentity("a__b", "c")
    second = RepositoryIdentity("a", "b__c")

    cache.put(first, make_payload(owner="a__b", repo="c"))
    assert cache.get(second) is None

    cache.put(second, make_payload(owner="a", repo="b__c", totalAdded=9))
    assert (cache.get(first)["repo"], cache.get(first)["totalAdded"]) == ("c", 5)
    assert (cache.get(second)["repo"], cache.get(second)["totalAdded"]) == ("b__c", 9)


def test_cache_expired_entry_is_miss(tmp_path, identity):
    cache = AnalysisCache(str(tmp_path), ttl_seconds=60)
    entry_path(tmp_path).write_text(
        json.dumps({"stored_at": 0, "response": make_payload()})
    )
    assert cache.get(identity) is None


def test_cache_without_ttl_never_expires(tmp_path, identity):
    cache = AnalysisCache(str(tmp_path), ttl_seconds=None)
    entry_path(tmp_path).write_text(
        json.dumps({"stored_at": 0, "response": make_payload()})
    )
    assert cache.get(identity)["totalAdded"] == 5


def test_cache_rejects_invalid_entries(tmp_path, identity):
    cache = AnalysisCache(str(tmp_path))
    path = entry_path(tmp_path)
    path.write_text("{not json")
    with pytest.raises(CacheError):
        cache.get(identity)

    bad = make_payload()
    del bad["totalCommits"]
    cache.put(identity, bad)
    with pytest.raises(CacheError):
        cache.get(identity)


def test_cache_invalidate(tmp_path, identity):
    cache = AnalysisCache(str(tmp_path))
    cache.put(identity, make_payload())
    cache.invalidate(identity)
    cache.invalidate(identity)
    assert cache.get(identity) is None


# ============================================================================
# DATABASE
# ============================================================================


def summary(**overrides):
    data = {
        "total_additions": 5,
        "total_removals": 2,
        "total_lines": 3,
        "total_commits": 2,
        "total_contributors": 2,
        "stars": 42,
        "language": "Go",
        "size_kb": 1024,
        "lines_histogram": [{"bucket": 0, "firstCommit": 0, "lastCommit": 1, "added": 5, "removed": 2}],
    }
    data.update(overrides)
    return data


def test_upsert_keeps_view_count(tmp_path, identity):
    db = RepoDatabase(str(tmp_path / "data" / "gitback.db"))
    db.upsert_summary(identity, summary())
    db.increment_views(identity)
    db.increment_views(identity)
    db.upsert_summary(identity, summary(total_commits=9))

    row = db.get_summary(identity)
    assert row["views"] == 2
    assert row["total_commits"] == 9
    assert row["lines_histogram"][0]["added"] == 5


def test_increment_views_creates_row(tmp_path, identity):
    db = RepoDatabase(str(tmp_path / "gitback.db"))
    db.increment_views(identity)
    row = db.get_summary(identity)
    assert row["views"] == 1
    assert row["total_commits"] == 0


def test_get_summary_missing(tmp_path, identity):
    db = RepoDatabase(str(tmp_path / "gitback.db"))
    assert db.get_summary(identity) is None


def test_top_repos_ordering(tmp_path):
    db = RepoDatabase(str(tmp_path / "gitback.db"))
    popular = RepositoryIdentity("octo", "popular")
    quiet = RepositoryIdentity("octo", "quiet")
    db.upsert_summary(quiet, summary(total_commits=500))
    db.upsert_summary(popular, summary(total_commits=5))
    for _ in range(3):
        db.increment_views(popular)

    names = [row["name"] for row in db.top_repos(limit=10)]
    assert names == ["popular", "quiet"]
    assert len(db.top_repos(limit=1)) == 1

    frame = db.top_repos_frame(limit=10)
    assert list(frame["name"]) == ["popular", "quiet"]
    assert list(frame["views"]) == [3, 0]
