"""
External collaborators of the gitback pipeline.

- GitLogSource: clones a repository into a scratch directory and streams
  ``git log --numstat`` line by line
- GitHubMetadataClient: repository info and top pull requests from the
  GitHub REST API
- AnalysisCache: JSON file cache of finished analyses
- RepoDatabase: sqlite store of per-repository summaries and view counts
"""

import asyncio
import json
import logging
import os
import shutil
import sqlite3
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import jsonschema
import pandas as pd

from gitback_log import DEFAULT_MAX_LINE_LENGTH, RepositoryIdentity

logger = logging.getLogger(__name__)

GIT_LOG_FORMAT = "--format=%H|%an|%at|%s"
DEFAULT_CLONE_URL = "https://github.com/{owner}/{name}.git"
DEFAULT_GITHUB_API = "https://api.github.com"

# Markers git prints when a remote is missing or private. Anything else is
# an infrastructure failure.
NOT_FOUND_MARKERS = (
    "repository not found",
    "not found",
    "does not exist",
    "could not read username",
    "authentication failed",
    "access denied",
)


# ============================================================================
# ERRORS
# ============================================================================


class SourceError(Exception):
    """Acquiring or reading the commit log failed."""


class SourceNotFoundError(SourceError):
    """The repository does not exist or cannot be accessed."""


class MetadataError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MetadataRateLimitError(MetadataError):
    pass


class CacheError(Exception):
    pass


# ============================================================================
# LOG STREAM SOURCE
# ============================================================================


class LogStreamHandle:
    """
    An acquired commit log: a scratch clone plus a running ``git log``.

    ``release()`` kills the process if it is still running and removes the
    scratch directory. It is safe to call more than once.

    ``shallow_boundaries`` lists the commits where a shallow clone was cut.
    Their numstat would report the whole tree as added, so they and their
    (missing) ancestors are left out of the log and the history is flagged
    as truncated.
    """

    def __init__(
        self,
        identity: RepositoryIdentity,
        work_dir: str,
        git_binary: str,
        log_args: List[str],
        env: Dict[str, str],
        max_line_length: int,
        shallow_boundaries: Optional[List[str]] = None,
    ):
        self.identity = identity
        self.work_dir = work_dir
        self.git_binary = git_binary
        self.log_args = log_args
        self.env = env
        self.max_line_length = max_line_length
        self.shallow_boundaries = list(shallow_boundaries or [])
        self.process: Optional[asyncio.subprocess.Process] = None
        self.released = False

    @property
    def history_truncated(self) -> bool:
        return bool(self.shallow_boundaries)

    def command(self) -> List[str]:
        cmd = [self.git_binary, "--git-dir", self.work_dir, *self.log_args]
        if self.shallow_boundaries:
            cmd += ["HEAD", "--not", *self.shallow_boundaries]
        return cmd

    async def lines(self) -> AsyncIterator[str]:
        """Yield decoded log lines as git produces them."""
        if self.released:
            raise SourceError("log stream already released")
        if self.process is not None:
            raise SourceError("log stream can only be read once")

        self.process = await asyncio.create_subprocess_exec(
            *self.command(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.env,
            # readline() fails instead of growing past this
            limit=self.max_line_length + 1,
        )
        # stderr is drained concurrently so a chatty git never blocks on a full pipe
        stderr_task = asyncio.ensure_future(self.process.stderr.read())
        try:
            stdout = self.process.stdout
            while True:
                try:
                    raw = await stdout.readline()
                except (ValueError, asyncio.LimitOverrunError) as e:
                    raise SourceError(
                        f"git log line exceeds {self.max_line_length} bytes"
                    ) from e
                if not raw:
                    break
                yield raw.decode("utf-8", errors="replace")

            returncode = await self.process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
            if returncode != 0:
                raise SourceError(f"git log failed ({returncode}): {stderr.strip()}")
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    async def release(self):
        if self.released:
            return
        self.released = True
        process = self.process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        shutil.rmtree(self.work_dir, ignore_errors=True)
        logger.debug("Released scratch clone %s", self.work_dir)


class GitLogSource:
    """
    Turns a repository identity into a streaming commit log.

    Args:
        clone_url_template: format string with ``{owner}`` and ``{name}``
        work_root: parent directory for scratch clones (system temp if None)
        clone_depth: shallow clone depth (full history if None)
        max_commits: commit cap; git is asked for one more so the decoder can
            tell that the history was cut
        oldest_first: emit history oldest commit first
    """

    def __init__(
        self,
        clone_url_template: str = DEFAULT_CLONE_URL,
        work_root: Optional[str] = None,
        clone_depth: Optional[int] = None,
        max_commits: Optional[int] = None,
        oldest_first: bool = True,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
        git_binary: str = "git",
    ):
        self.clone_url_template = clone_url_template
        self.work_root = work_root
        self.clone_depth = clone_depth
        self.max_commits = max_commits
        self.oldest_first = oldest_first
        self.max_line_length = max_line_length
        self.git_binary = git_binary

    def clone_url(self, identity: RepositoryIdentity) -> str:
        return self.clone_url_template.format(owner=identity.owner, name=identity.name)

    def log_args(self) -> List[str]:
        args = ["log", "--numstat", GIT_LOG_FORMAT]
        if self.oldest_first:
            args.append("--reverse")
        if self.max_commits is not None:
            args.append(f"--max-count={self.max_commits + 1}")
        return args

    @staticmethod
    def git_env() -> Dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "GIT_CONFIG_GLOBAL": os.devnull,
                "GIT_CONFIG_NOSYSTEM": "1",
                "GIT_TERMINAL_PROMPT": "0",
            }
        )
        return env

    async def acquire(self, identity: RepositoryIdentity) -> LogStreamHandle:
        """
        Clone ``identity`` into a scratch directory.

        Raises:
            SourceNotFoundError: git reports the remote missing or private
            SourceError: any other clone failure
        """
        if self.work_root:
            os.makedirs(self.work_root, exist_ok=True)
        work_dir = tempfile.mkdtemp(prefix="gitback-analysis-", dir=self.work_root)
        env = self.git_env()
        handle = LogStreamHandle(
            identity, work_dir, self.git_binary, self.log_args(), env, self.max_line_length
        )

        cmd = [
            self.git_binary,
            "clone",
            "--bare",
            "--single-branch",
            "--no-tags",
            "--quiet",
        ]
        if self.clone_depth:
            cmd.append(f"--depth={self.clone_depth}")
        cmd += [self.clone_url(identity), work_dir]

        start = time.time()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
            try:
                _, stderr = await process.communicate()
            except asyncio.CancelledError:
                if process.returncode is None:
                    process.kill()
                    await process.wait()
                raise
        except BaseException:
            await handle.release()
            raise

        if process.returncode != 0:
            await handle.release()
            message = stderr.decode("utf-8", errors="replace").strip()
            if is_not_found_message(message):
                raise SourceNotFoundError(f"{identity}: {message}")
            raise SourceError(f"git clone failed ({process.returncode}): {message}")

        if self.clone_depth:
            handle.shallow_boundaries = read_shallow_boundaries(work_dir)
            if handle.shallow_boundaries:
                logger.info(
                    "%s: shallow clone cut at depth %d", identity, self.clone_depth
                )

        logger.info("Cloned %s in %.2fs", identity, time.time() - start)
        return handle


def read_shallow_boundaries(git_dir: str) -> List[str]:
    """Commit ids listed in ``<git_dir>/shallow``; empty for a complete clone."""
    try:
        with open(os.path.join(git_dir, "shallow"), "r", encoding="ascii") as f:
            return [line.strip() for line in f if line.strip()]
    except FileNotFoundError:
        return []


def is_not_found_message(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in NOT_FOUND_MARKERS)


# ============================================================================
# METADATA SERVICE
# ============================================================================


@dataclass
class RepoInfo:
    stars: int
    language: Optional[str]
    size_kb: int

    def to_dict(self) -> Dict[str, Any]:
        return {"stars": self.stars, "language": self.language, "sizeKB": self.size_kb}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepoInfo":
        return cls(stars=data["stars"], language=data.get("language"), size_kb=data["sizeKB"])


@dataclass
class Discussion:
    """Summary of a pull request thread ranked by reactions."""

    id: int
    number: int
    title: str
    author: str
    author_avatar: Optional[str]
    created_at: str
    state: str
    url: str
    comments: int
    reactions: int
    merged: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "title": self.title,
            "author": self.author,
            "authorAvatar": self.author_avatar,
            "createdAt": self.created_at,
            "state": self.state,
            "url": self.url,
            "comments": self.comments,
            "reactions": self.reactions,
            "merged": self.merged,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Discussion":
        return cls(
            id=data["id"],
            number=data["number"],
            title=data["title"],
            author=data["author"],
            author_avatar=data.get("authorAvatar"),
            created_at=data["createdAt"],
            state=data["state"],
            url=data["url"],
            comments=data["comments"],
            reactions=data["reactions"],
            merged=data["merged"],
        )

    @classmethod
    def from_github(cls, item: Dict[str, Any]) -> "Discussion":
        user = item.get("user") or {}
        pull_request = item.get("pull_request") or {}
        reactions = item.get("reactions") or {}
        return cls(
            id=item["id"],
            number=item.get("number", 0),
            title=item.get("title") or "",
            author=user.get("login") or "",
            author_avatar=user.get("avatar_url"),
            created_at=item.get("created_at") or "",
            state=item.get("state") or "",
            url=item.get("html_url") or "",
            comments=item.get("comments", 0),
            reactions=reactions.get("total_count", 0),
            merged=pull_request.get("merged_at") is not None,
        )


class GitHubMetadataClient:
    """
    Async GitHub REST client for repository attributes and top pull requests.

    Use as an async context manager. The token is optional; anonymous calls
    work with GitHub's lower rate limit.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = DEFAULT_GITHUB_API,
        timeout: float = 15.0,
        discussions_limit: int = 5,
        discussions_window_days: int = 365,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.discussions_limit = discussions_limit
        self.discussions_window_days = discussions_window_days
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github.v3+json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self.transport,
            )
        return self._client

    async def __aenter__(self) -> "GitHubMetadataClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self.client.get(path, params=params)
        except httpx.HTTPError as e:
            raise MetadataError(f"GET {path} failed: {e}") from e

        if response.status_code in (403, 429) and response.headers.get(
            "X-RateLimit-Remaining"
        ) == "0":
            raise MetadataRateLimitError(
                f"GitHub API rate limit exhausted for {path}", response.status_code
            )
        if response.status_code != 200:
            raise MetadataError(
                f"GitHub API returned status {response.status_code} for {path}",
                response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise MetadataError(f"GitHub API returned invalid JSON for {path}") from e

    async def fetch_repo_info(self, identity: RepositoryIdentity) -> RepoInfo:
        data = await self._get_json(f"/repos/{identity.owner}/{identity.name}")
        return RepoInfo(
            stars=data.get("stargazers_count", 0),
            language=data.get("language"),
            size_kb=data.get("size", 0),
        )

    def discussions_query(self, identity: RepositoryIdentity) -> str:
        since = (
            datetime.now(timezone.utc) - timedelta(days=self.discussions_window_days)
        ).strftime("%Y-%m-%d")
        return f"repo:{identity.slug} type:pr created:>={since}"

    async def fetch_top_discussions(
        self, identity: RepositoryIdentity, limit: Optional[int] = None
    ) -> List[Discussion]:
        params = {
            "q": self.discussions_query(identity),
            "sort": "reactions",
            "order": "desc",
            "per_page": limit or self.discussions_limit,
        }
        data = await self._get_json("/search/issues", params=params)
        return [Discussion.from_github(item) for item in data.get("items", [])]


# ============================================================================
# CACHE
# ============================================================================

RESPONSE_SCHEMA = {
    "type": "object",
    "required": [
        "owner",
        "repo",
        "totalAdded",
        "totalRemoved",
        "totalContributors",
        "totalCommits",
        "mostTouchedFiles",
        "linesHistogram",
        "truncated",
    ],
    "properties": {
        "owner": {"type": "string"},
        "repo": {"type": "string"},
        "totalAdded": {"type": "integer", "minimum": 0},
        "totalRemoved": {"type": "integer", "minimum": 0},
        "totalContributors": {"type": "integer", "minimum": 0},
        "totalCommits": {"type": "integer", "minimum": 0},
        "fileTouchCounts": {
            "type": "object",
            "additionalProperties": {"type": "integer"},
        },
        "mostTouchedFiles": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["file", "count"],
                "properties": {
                    "file": {"type": "string"},
                    "count": {"type": "integer"},
                },
            },
        },
        "linesHistogram": {"type": "array"},
        "commits": {"type": "array"},
        "truncated": {"type": "boolean"},
        "github": {"type": ["object", "null"]},
        "pullRequests": {"type": ["array", "null"]},
        "degraded": {"type": "array", "items": {"type": "string"}},
    },
}


class AnalysisCache:
    """
    One JSON file per repository at ``cache_dir/<owner>/<name>.json``.

    Entries older than ``ttl_seconds`` are misses. Writes go through a
    temporary file and ``os.replace`` so concurrent readers never see a
    partial entry.
    """

    def __init__(self, cache_dir: str, ttl_seconds: Optional[float] = 86400):
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = ttl_seconds

    def _path(self, identity: RepositoryIdentity) -> Path:
        owner, name = identity.cache_key
        return self.cache_dir / owner / f"{name}.json"

    def get(self, identity: RepositoryIdentity) -> Optional[Dict[str, Any]]:
        path = self._path(identity)
        try:
            with open(path, "r", encoding="utf-8") as f:
                entry = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise CacheError(f"unreadable cache entry {path}: {e}") from e

        stored_at = entry.get("stored_at", 0)
        if self.ttl_seconds is not None and time.time() - stored_at > self.ttl_seconds:
            logger.debug("Cache entry for %s expired", identity)
            return None

        payload = entry.get("response")
        try:
            jsonschema.validate(payload, RESPONSE_SCHEMA)
        except jsonschema.ValidationError as e:
            raise CacheError(f"invalid cache entry for {identity}: {e.message}") from e
        return payload

    def put(self, identity: RepositoryIdentity, payload: Dict[str, Any]):
        path = self._path(identity)
        path.parent.mkdir(parents=True, exist_ok=True)
        entry = {"stored_at": time.time(), "response": payload}
        fd, tmp_path = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry, f, ensure_ascii=False)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def invalidate(self, identity: RepositoryIdentity):
        try:
            self._path(identity).unlink()
        except FileNotFoundError:
            pass


# ============================================================================
# DATABASE
# ============================================================================


class RepoDatabase:
    """
    sqlite store of repository summaries.

    A connection is opened per call so the adapter can be used from worker
    threads concurrently.

    Schema:
        CREATE TABLE repos (
            owner TEXT, name TEXT, total_additions INTEGER,
            total_removals INTEGER, total_lines INTEGER, total_commits INTEGER,
            total_contributors INTEGER, stars INTEGER, language TEXT,
            size_kb INTEGER, lines_histogram TEXT, views INTEGER,
            updated_at TEXT, PRIMARY KEY (owner, name)
        );
    """

    SUMMARY_COLUMNS = (
        "total_additions",
        "total_removals",
        "total_lines",
        "total_commits",
        "total_contributors",
        "stars",
        "language",
        "size_kb",
        "lines_histogram",
    )

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        parent = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(parent, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS repos (
                    owner TEXT NOT NULL,
                    name TEXT NOT NULL,
                    total_additions INTEGER DEFAULT 0,
                    total_removals INTEGER DEFAULT 0,
                    total_lines INTEGER DEFAULT 0,
                    total_commits INTEGER DEFAULT 0,
                    total_contributors INTEGER DEFAULT 0,
                    stars INTEGER,
                    language TEXT,
                    size_kb INTEGER,
                    lines_histogram TEXT,
                    views INTEGER DEFAULT 0,
                    updated_at TEXT,
                    PRIMARY KEY (owner, name)
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_repos_views ON repos(views DESC)"
            )
            conn.commit()
        finally:
            conn.close()

    def upsert_summary(self, identity: RepositoryIdentity, summary: Dict[str, Any]):
        """Insert or update the summary columns; ``views`` is left untouched."""
        values = {column: summary.get(column) for column in self.SUMMARY_COLUMNS}
        if isinstance(values["lines_histogram"], (list, dict)):
            values["lines_histogram"] = json.dumps(values["lines_histogram"])
        values["updated_at"] = datetime.now(timezone.utc).isoformat()

        columns = list(values)
        placeholders = ", ".join(f":{c}" for c in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns)
        conn = self._connect()
        try:
            conn.execute(
                f"""
                INSERT INTO repos (owner, name, {", ".join(columns)})
                VALUES (:owner, :name, {placeholders})
                ON CONFLICT(owner, name) DO UPDATE SET {updates}
            """,
                {"owner": identity.owner, "name": identity.name, **values},
            )
            conn.commit()
        finally:
            conn.close()

    def increment_views(self, identity: RepositoryIdentity):
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO repos (owner, name, views, updated_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(owner, name) DO UPDATE SET views = views + 1
            """,
                (identity.owner, identity.name, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def get_summary(self, identity: RepositoryIdentity) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM repos WHERE owner = ? AND name = ?",
                (identity.owner, identity.name),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_dict(row) if row else None

    def top_repos(self, limit: int = 10) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM repos ORDER BY views DESC, total_commits DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_dict(row) for row in rows]

    def top_repos_frame(self, limit: int = 10) -> pd.DataFrame:
        """Top repositories as a DataFrame for tabular display."""
        conn = self._connect()
        try:
            return pd.read_sql_query(
                """
                SELECT owner, name, views, total_commits, total_contributors,
                       total_additions, total_removals, stars, language
                FROM repos ORDER BY views DESC, total_commits DESC LIMIT ?
            """,
                conn,
                params=(limit,),
            )
        finally:
            conn.close()

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        if data.get("lines_histogram"):
            data["lines_histogram"] = json.loads(data["lines_histogram"])
        return data
